"""Configuration value objects for omnistore backends.

One frozen Pydantic model per backend. Models carry data only; every
derived value (resolved region, service clients, bucket handles) is owned
by the adapter built from them.

Durations are expressed in seconds.
"""

from __future__ import annotations

from typing import Any
from urllib.parse import urlsplit

from pydantic import BaseModel, ConfigDict, Field, field_validator

DEFAULT_S3_MAX_RETRIES = 3


class ProxyConfig(BaseModel):
    """HTTP(S) proxy used for provider traffic.

    When both username and password are set, a Basic Proxy-Authorization
    header is sent with the CONNECT request.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    url: str = Field(..., min_length=1, description="Proxy URL, e.g. http://proxy:3128")
    username: str = ""
    password: str = Field(default="", repr=False)

    @field_validator("url")
    @classmethod
    def url_has_scheme_and_host(cls, v: str) -> str:
        parts = urlsplit(v)
        if not parts.scheme or not parts.hostname:
            raise ValueError(f"Proxy URL must include scheme and host: {v!r}")
        return v

    @property
    def has_credentials(self) -> bool:
        return bool(self.username and self.password)


class S3Config(BaseModel):
    """S3-compatible backend configuration.

    Attributes:
        access_key: Static access key id. Ignored unless secret is also set.
        secret: Static secret access key.
        session_token: Optional session token paired with the static keys.
        assume_role_arn: Role to assume through STS before any transfer.
        assume_role_external_id: External id passed with the AssumeRole call.
        region: Bucket region. When both region and endpoint are empty the
            region is discovered with GetBucketLocation at construction.
        endpoint: Endpoint override for S3-compatible providers.
        bucket: Bucket name.
        force_path_style: Use path-style addressing (endpoint/bucket/key).
        proxy_config: Optional proxy for all S3 and STS traffic.
        max_retries: Maximum attempts per data-plane operation. 0 selects
            the default of DEFAULT_S3_MAX_RETRIES.
        min_retry_delay: Initial backoff delay.
        max_retry_delay: Backoff cap.
        metadata: User metadata attached to every upload.
        tagging: URL-encoded tag set attached to every upload.
        content_disposition: Content-Disposition for uploads ("inline" if unset).
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    access_key: str = ""
    secret: str = Field(default="", repr=False)
    session_token: str = Field(default="", repr=False)
    assume_role_arn: str = ""
    assume_role_external_id: str = ""
    region: str = ""
    endpoint: str = ""
    bucket: str = ""
    force_path_style: bool = False
    proxy_config: ProxyConfig | None = None

    max_retries: int = Field(default=DEFAULT_S3_MAX_RETRIES, ge=0)
    min_retry_delay: float = Field(default=0.1, ge=0)
    max_retry_delay: float = Field(default=20.0, ge=0)

    metadata: dict[str, str] = Field(default_factory=dict)
    tagging: str = ""
    content_disposition: str = ""

    @field_validator("max_retries")
    @classmethod
    def zero_retries_means_default(cls, v: int) -> int:
        return v or DEFAULT_S3_MAX_RETRIES

    @field_validator("endpoint")
    @classmethod
    def endpoint_is_url_or_host(cls, v: str) -> str:
        if not v:
            return v
        candidate = v if "://" in v else f"https://{v}"
        parts = urlsplit(candidate)
        if parts.scheme not in ("http", "https") or not parts.hostname:
            raise ValueError(f"Endpoint must be an http(s) URL or a host name: {v!r}")
        return v


class AzureConfig(BaseModel):
    """Azure Blob backend configuration.

    token_credential is any azure.core.credentials.TokenCredential (for
    example azure.identity.DefaultAzureCredential). It is only needed for
    presigned URL generation and is never serialized.
    """

    model_config = ConfigDict(frozen=True, extra="forbid", arbitrary_types_allowed=True)

    account_name: str = ""
    account_key: str = Field(default="", repr=False)
    container_name: str = ""
    token_credential: Any = Field(default=None, exclude=True, repr=False)


class GCPConfig(BaseModel):
    """Google Cloud Storage backend configuration.

    An empty credentials_json falls back to application-default credentials.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    credentials_json: str = Field(default="", repr=False)
    bucket: str = ""
    proxy_config: ProxyConfig | None = None


class AliOSSConfig(BaseModel):
    """Alibaba Cloud OSS backend configuration."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    access_key: str = ""
    secret: str = Field(default="", repr=False)
    endpoint: str = ""
    bucket: str = ""


class LocalConfig(BaseModel):
    """Local filesystem backend configuration."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    storage_dir: str = Field(..., min_length=1)


StorageConfig = S3Config | AzureConfig | GCPConfig | AliOSSConfig | LocalConfig
