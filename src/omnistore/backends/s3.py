"""omnistore S3-compatible backend.

Works against AWS S3 and S3-compatible providers (MinIO, Oracle Cloud,
DigitalOcean Spaces, ...) through boto3.

Construction resolves, in order:
1. Credentials: static access key/secret, else the boto3 default chain.
2. Assume-role: when assume_role_arn is set, a refreshable STS AssumeRole
   provider is placed ahead of the default chain.
3. Region: when neither region nor endpoint is set, GetBucketLocation is
   called once and the result is kept for the adapter's lifetime.

Uploads and downloads go through the boto3 transfer manager (multipart,
ranged parallel GETs). botocore's own retries are disabled; every
data-plane call runs under the configured RetryPolicy instead.
"""

from __future__ import annotations

import functools
import io
import logging
import os
from collections.abc import Callable
from datetime import timedelta
from pathlib import Path
from typing import Any, TypeVar
from urllib.parse import urlsplit

import boto3
import botocore.session
from boto3.s3.transfer import TransferConfig
from botocore.config import Config
from botocore.credentials import (
    AssumeRoleCredentialFetcher,
    CredentialProvider,
    DeferredRefreshableCredentials,
)
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    HTTPClientError,
    NoCredentialsError,
)
from botocore.exceptions import ConnectionError as BotoConnectionError
from s3transfer.exceptions import RetriesExceededError

from omnistore.config import S3Config
from omnistore.errors import (
    CapabilityError,
    ConfigurationError,
    ObjectNotFoundError,
    ObjectStorageError,
    StorageBackendError,
)
from omnistore.object_store import LocalPath, Storage, UploadResult
from omnistore.proxy import proxy_mapping
from omnistore.retry import RetryPolicy
from omnistore.staging import staged_download
from omnistore.tracing import traced_storage_operation

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_BUCKET_LOCATION = "us-east-1"
DEFAULT_ENDPOINT = "s3.amazonaws.com"
DEFAULT_CONTENT_DISPOSITION = "inline"

MULTIPART_THRESHOLD = 8 * 1024 * 1024
MULTIPART_CHUNKSIZE = 8 * 1024 * 1024
TRANSFER_CONCURRENCY = 16

# Hosts whose S3 API rejects the flexible checksum headers botocore sends by default.
_LEGACY_CHECKSUM_HOST_SUFFIXES = ("oraclecloud.com",)

_NOT_FOUND_CODES = frozenset({"404", "NoSuchKey", "NotFound"})
_RETRYABLE_ERROR_CODES = frozenset(
    {
        "InternalError",
        "PriorRequestNotComplete",
        "RequestLimitExceeded",
        "RequestTimeout",
        "RequestTimeoutException",
        "ServiceUnavailable",
        "SlowDown",
        "Throttling",
        "ThrottlingException",
        "TooManyRequestsException",
    }
)

_S3_ERRORS = (BotoCoreError, ClientError, RetriesExceededError)


def _is_retryable(exc: BaseException) -> bool:
    """Transient S3 failure: throttling, 5xx, or a dropped connection."""
    if isinstance(exc, ClientError):
        error = exc.response.get("Error", {})
        status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode", 0)
        return error.get("Code", "") in _RETRYABLE_ERROR_CODES or status >= 500
    return isinstance(exc, (BotoConnectionError, HTTPClientError))


def _error_code(exc: BaseException) -> str:
    if isinstance(exc, ClientError):
        return str(exc.response.get("Error", {}).get("Code", ""))
    return ""


class _AssumeRoleProvider(CredentialProvider):
    """Credential provider yielding refreshable STS AssumeRole credentials."""

    METHOD = "assume-role"
    CANONICAL_NAME = "omnistore-assume-role"

    def __init__(self, fetcher: AssumeRoleCredentialFetcher) -> None:
        super().__init__()
        self._fetcher = fetcher

    def load(self) -> DeferredRefreshableCredentials:
        return DeferredRefreshableCredentials(
            method=self.METHOD,
            refresh_using=self._fetcher.fetch_credentials,
        )


class S3Storage(Storage):
    """S3-compatible storage implementation."""

    def __init__(self, config: S3Config) -> None:
        """Build the S3 adapter.

        Args:
            config: S3 backend configuration.

        Raises:
            ConfigurationError: If the bucket is missing, or assume-role is
                requested without any base credentials.
            StorageBackendError: If region discovery fails.
        """
        if not config.bucket:
            raise ConfigurationError("S3 bucket is required", backend="s3")

        self._config = config
        self._retry = RetryPolicy(
            max_attempts=config.max_retries,
            initial_delay=config.min_retry_delay,
            max_delay=max(config.max_retry_delay, config.min_retry_delay),
        )
        self._endpoint_url = self._normalize_endpoint(config.endpoint)
        self._transfer_config = TransferConfig(
            multipart_threshold=MULTIPART_THRESHOLD,
            multipart_chunksize=MULTIPART_CHUNKSIZE,
            max_concurrency=TRANSFER_CONCURRENCY,
        )

        region = config.region or DEFAULT_BUCKET_LOCATION
        self._session = self._build_session(config, region)

        if not config.region and not config.endpoint:
            region = self._discover_region()
        self._region = region

        self._client = self._session.client(
            "s3",
            region_name=self._region,
            endpoint_url=self._endpoint_url,
            config=self._client_config(),
        )
        logger.debug(
            "S3Storage initialized: bucket=%s region=%s endpoint=%s",
            config.bucket,
            self._region,
            self._endpoint_url or DEFAULT_ENDPOINT,
        )

    @property
    def backend_name(self) -> str:
        """Return the backend identifier."""
        return "s3"

    @property
    def region(self) -> str:
        """Region the adapter signs requests for."""
        return self._region

    @staticmethod
    def _normalize_endpoint(endpoint: str) -> str | None:
        if not endpoint:
            return None
        if "://" not in endpoint:
            return f"https://{endpoint}"
        return endpoint

    def _uses_legacy_checksums(self) -> bool:
        if not self._endpoint_url:
            return False
        host = urlsplit(self._endpoint_url).hostname or ""
        return host.endswith(_LEGACY_CHECKSUM_HOST_SUFFIXES)

    def _client_config(self) -> Config:
        """botocore client config shared by every client this adapter builds."""
        options: dict[str, Any] = {
            "signature_version": "s3v4",
            "retries": {"mode": "standard", "total_max_attempts": 1},
        }
        if self._config.proxy_config is not None:
            options["proxies"] = proxy_mapping(self._config.proxy_config)
        if self._config.force_path_style:
            options["s3"] = {"addressing_style": "path"}
        if self._uses_legacy_checksums():
            options["request_checksum_calculation"] = "when_required"
            options["response_checksum_validation"] = "when_required"
        return Config(**options)

    def _build_session(self, config: S3Config, region: str) -> boto3.Session:
        """Create the boto3 session carrying the resolved credential chain."""
        base = botocore.session.get_session()
        if config.access_key and config.secret:
            base.set_credentials(config.access_key, config.secret, config.session_token or None)

        if not config.assume_role_arn:
            return boto3.Session(botocore_session=base, region_name=region)

        source_credentials = base.get_credentials()
        if source_credentials is None:
            raise ConfigurationError(
                "assume_role_arn is set but no base credentials are available",
                backend="s3",
            )

        extra_args: dict[str, Any] = {}
        if config.assume_role_external_id:
            extra_args["ExternalId"] = config.assume_role_external_id

        sts_config = Config(
            retries={"mode": "standard", "max_attempts": self._retry.max_attempts},
            proxies=proxy_mapping(config.proxy_config) or None,
        )
        fetcher = AssumeRoleCredentialFetcher(
            client_creator=functools.partial(base.create_client, region_name=region, config=sts_config),
            source_credentials=source_credentials,
            role_arn=config.assume_role_arn,
            extra_args=extra_args,
        )

        role_session = botocore.session.get_session()
        resolver = role_session.get_component("credential_provider")
        resolver.insert_before("env", _AssumeRoleProvider(fetcher))
        logger.info("S3 credentials will be derived from role %s", config.assume_role_arn)
        return boto3.Session(botocore_session=role_session, region_name=region)

    def _discover_region(self) -> str:
        """Look up the bucket's region so requests are signed for it."""
        client = self._session.client(
            "s3",
            region_name=DEFAULT_BUCKET_LOCATION,
            config=self._client_config(),
        )
        try:
            response = self._retry.call(
                lambda: client.get_bucket_location(Bucket=self._config.bucket),
                retryable=_is_retryable,
                operation="s3 get_bucket_location",
            )
        except _S3_ERRORS as e:
            raise StorageBackendError(
                message=f"Failed to discover bucket region: {e}",
                backend="s3",
                cause=e,
            ) from e

        region = response.get("LocationConstraint") or DEFAULT_BUCKET_LOCATION
        if region == "EU":
            region = "eu-west-1"
        logger.info("Discovered region %s for bucket %s", region, self._config.bucket)
        return str(region)

    def _run(self, fn: Callable[[], T], *, action: str, storage_path: str) -> T:
        """Run one data-plane call under the retry policy and translate errors."""
        try:
            return self._retry.call(fn, retryable=_is_retryable, operation=f"s3 {action}")
        except _S3_ERRORS as e:
            raise self._translate(e, action=action, storage_path=storage_path) from e

    def _translate(self, exc: Exception, *, action: str, storage_path: str) -> ObjectStorageError:
        if _error_code(exc) in _NOT_FOUND_CODES:
            return ObjectNotFoundError(backend="s3", key=storage_path)
        return StorageBackendError(
            message=f"S3 {action} failed: {exc}",
            backend="s3",
            key=storage_path,
            cause=exc,
        )

    def _extra_args(self, content_type: str) -> dict[str, Any]:
        extra_args: dict[str, Any] = {
            "ContentType": content_type,
            "ContentDisposition": self._config.content_disposition or DEFAULT_CONTENT_DISPOSITION,
        }
        if self._config.metadata:
            extra_args["Metadata"] = dict(self._config.metadata)
        if self._config.tagging:
            extra_args["Tagging"] = self._config.tagging
        return extra_args

    def _location(self, storage_path: str) -> str:
        endpoint = self._config.endpoint or DEFAULT_ENDPOINT
        if self._config.force_path_style:
            if not endpoint.startswith("http"):
                endpoint = f"https://{endpoint}"
            return f"{endpoint.rstrip('/')}/{self._config.bucket}/{storage_path}"
        host = urlsplit(endpoint).netloc if "://" in endpoint else endpoint
        return f"https://{self._config.bucket}.{host}/{storage_path}"

    @traced_storage_operation("upload_data")
    def upload_data(self, data: bytes, storage_path: str, content_type: str) -> UploadResult:
        """Upload an in-memory payload with the multipart transfer manager."""
        extra_args = self._extra_args(content_type)

        def _attempt() -> None:
            self._client.upload_fileobj(
                io.BytesIO(data),
                self._config.bucket,
                storage_path,
                ExtraArgs=extra_args,
                Config=self._transfer_config,
            )

        self._run(_attempt, action="upload", storage_path=storage_path)
        logger.debug("Uploaded object: key=%s size=%d", storage_path, len(data))
        return UploadResult(self._location(storage_path), len(data))

    @traced_storage_operation("upload_file")
    def upload_file(
        self, local_path: LocalPath, storage_path: str, content_type: str
    ) -> UploadResult:
        """Upload a local file with the multipart transfer manager."""
        try:
            size = os.stat(local_path).st_size
        except OSError as e:
            raise StorageBackendError(
                message=f"Cannot read source file: {e}",
                backend="s3",
                key=storage_path,
                cause=e,
            ) from e

        extra_args = self._extra_args(content_type)

        def _attempt() -> None:
            with open(local_path, "rb") as src:
                self._client.upload_fileobj(
                    src,
                    self._config.bucket,
                    storage_path,
                    ExtraArgs=extra_args,
                    Config=self._transfer_config,
                )

        try:
            self._run(_attempt, action="upload", storage_path=storage_path)
        except OSError as e:
            raise StorageBackendError(
                message=f"Cannot read source file: {e}",
                backend="s3",
                key=storage_path,
                cause=e,
            ) from e

        logger.debug("Uploaded file: key=%s size=%d", storage_path, size)
        return UploadResult(self._location(storage_path), size)

    @traced_storage_operation("download_data")
    def download_data(self, storage_path: str) -> bytes:
        """Download an object into memory with parallel ranged GETs."""

        def _attempt() -> bytes:
            buffer = io.BytesIO()
            self._client.download_fileobj(
                self._config.bucket,
                storage_path,
                buffer,
                Config=self._transfer_config,
            )
            return buffer.getvalue()

        return self._run(_attempt, action="download", storage_path=storage_path)

    @traced_storage_operation("download_file")
    def download_file(self, local_path: LocalPath, storage_path: str) -> int:
        """Download an object to local_path with parallel ranged GETs."""

        def _attempt(staging: Path) -> int:
            with open(staging, "wb") as dst:
                self._client.download_fileobj(
                    self._config.bucket,
                    storage_path,
                    dst,
                    Config=self._transfer_config,
                )
            return staging.stat().st_size

        try:
            with staged_download(Path(local_path)) as staging:
                return self._run(
                    lambda: _attempt(staging), action="download", storage_path=storage_path
                )
        except OSError as e:
            raise StorageBackendError(
                message=f"Failed to write destination file: {e}",
                backend="s3",
                key=storage_path,
                cause=e,
            ) from e

    @traced_storage_operation("list_objects")
    def list_objects(self, prefix: str) -> list[str]:
        """List keys under prefix, following ListObjectsV2 continuation tokens."""

        def _attempt() -> list[str]:
            keys: list[str] = []
            paginator = self._client.get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=self._config.bucket, Prefix=prefix):
                keys.extend(item["Key"] for item in page.get("Contents", []))
            return keys

        return self._run(_attempt, action="list", storage_path=prefix)

    @traced_storage_operation("generate_presigned_url")
    def generate_presigned_url(self, storage_path: str, expiration: timedelta) -> str:
        """Sign a GET URL (SigV4) valid for expiration."""
        try:
            return str(
                self._client.generate_presigned_url(
                    "get_object",
                    Params={"Bucket": self._config.bucket, "Key": storage_path},
                    ExpiresIn=int(expiration.total_seconds()),
                )
            )
        except NoCredentialsError as e:
            raise CapabilityError(
                "No credentials available to sign the URL",
                backend="s3",
                key=storage_path,
                operation="generate_presigned_url",
            ) from e
        except _S3_ERRORS as e:
            raise self._translate(e, action="presign", storage_path=storage_path) from e

    @traced_storage_operation("delete_object")
    def delete_object(self, storage_path: str) -> None:
        """Delete one object. S3 reports success for keys that do not exist."""
        self._run(
            lambda: self._client.delete_object(Bucket=self._config.bucket, Key=storage_path),
            action="delete",
            storage_path=storage_path,
        )
        logger.debug("Deleted object: key=%s", storage_path)
