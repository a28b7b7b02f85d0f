"""omnistore Google Cloud Storage backend.

Credentials come from an inline service account JSON payload when one is
configured, otherwise from application-default credentials. When a proxy is
configured the client gets its own AuthorizedSession with a proxies mapping;
no process-wide transport default is touched.

SDK retries are disabled on every call (retry=None) and the shared
RetryPolicy retries transient failures instead.
"""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Callable
from datetime import timedelta
from pathlib import Path
from typing import Any, TypeVar

import google.auth
import requests
from google.api_core import exceptions as api_exceptions
from google.auth import exceptions as auth_exceptions
from google.auth.credentials import Signing
from google.auth.transport.requests import AuthorizedSession
from google.cloud import storage
from google.oauth2 import service_account

from omnistore.config import GCPConfig
from omnistore.errors import (
    CapabilityError,
    ConfigurationError,
    ObjectNotFoundError,
    StorageBackendError,
)
from omnistore.object_store import LocalPath, Storage, UploadResult
from omnistore.proxy import proxy_mapping
from omnistore.retry import RetryPolicy
from omnistore.staging import staged_download
from omnistore.tracing import traced_storage_operation

logger = logging.getLogger(__name__)

T = TypeVar("T")

STORAGE_SCOPE = "https://www.googleapis.com/auth/devstorage.read_write"

GCS_RETRY = RetryPolicy(max_attempts=5, initial_delay=0.1, max_delay=5.0, multiplier=2.0)

_TRANSIENT_API_ERRORS = (
    api_exceptions.TooManyRequests,
    api_exceptions.InternalServerError,
    api_exceptions.BadGateway,
    api_exceptions.ServiceUnavailable,
    api_exceptions.GatewayTimeout,
)

_GCS_ERRORS = (
    api_exceptions.GoogleAPIError,
    auth_exceptions.GoogleAuthError,
    requests.RequestException,
)


def _is_retryable(exc: BaseException) -> bool:
    """Transient GCS failures: 429, 5xx and transport errors."""
    return isinstance(
        exc,
        (
            *_TRANSIENT_API_ERRORS,
            requests.ConnectionError,
            requests.Timeout,
            auth_exceptions.TransportError,
        ),
    )


def _load_credentials(credentials_json: str) -> tuple[Any, str | None]:
    """Return (credentials, project) for the configured credential source."""
    if credentials_json:
        try:
            info = json.loads(credentials_json)
            credentials = service_account.Credentials.from_service_account_info(
                info, scopes=[STORAGE_SCOPE]
            )
        except (ValueError, TypeError, KeyError) as e:
            raise ConfigurationError(
                f"Invalid GCP service account credentials: {e}",
                backend="gcp",
            ) from e
        return credentials, info.get("project_id")

    try:
        credentials, project = google.auth.default(scopes=[STORAGE_SCOPE])
    except auth_exceptions.DefaultCredentialsError as e:
        raise ConfigurationError(
            f"No GCP credentials configured and none found in the environment: {e}",
            backend="gcp",
        ) from e
    return credentials, project


class GCPStorage(Storage):
    """Google Cloud Storage implementation."""

    def __init__(self, config: GCPConfig) -> None:
        """Build the GCS adapter.

        Raises:
            ConfigurationError: If the bucket is missing or credentials cannot
                be loaded.
        """
        if not config.bucket:
            raise ConfigurationError("GCP bucket is required", backend="gcp")

        self._config = config
        self._credentials, project = _load_credentials(config.credentials_json)

        client_kwargs: dict[str, Any] = {"project": project, "credentials": self._credentials}
        proxies = proxy_mapping(config.proxy_config)
        if proxies:
            session = AuthorizedSession(self._credentials)
            session.proxies.update(proxies)
            client_kwargs["_http"] = session

        self._client = storage.Client(**client_kwargs)
        self._bucket = self._client.bucket(config.bucket)
        logger.debug(
            "GCPStorage initialized: bucket=%s proxied=%s", config.bucket, bool(proxies)
        )

    @property
    def backend_name(self) -> str:
        """Return the backend identifier."""
        return "gcp"

    def _run(self, fn: Callable[[], T], *, action: str, storage_path: str) -> T:
        try:
            return GCS_RETRY.call(fn, retryable=_is_retryable, operation=f"gcp {action}")
        except api_exceptions.NotFound as e:
            raise ObjectNotFoundError(backend="gcp", key=storage_path) from e
        except _GCS_ERRORS as e:
            raise StorageBackendError(
                message=f"GCS {action} failed: {e}",
                backend="gcp",
                key=storage_path,
                cause=e,
            ) from e

    def _location(self, storage_path: str) -> str:
        return f"https://{self._config.bucket}.storage.googleapis.com/{storage_path}"

    @traced_storage_operation("upload_data")
    def upload_data(self, data: bytes, storage_path: str, content_type: str) -> UploadResult:
        """Upload a buffer."""
        blob = self._bucket.blob(storage_path)
        self._run(
            lambda: blob.upload_from_string(data, content_type=content_type, retry=None),
            action="upload",
            storage_path=storage_path,
        )
        logger.debug("Uploaded object: key=%s size=%d", storage_path, len(data))
        return UploadResult(self._location(storage_path), len(data))

    @traced_storage_operation("upload_file")
    def upload_file(
        self, local_path: LocalPath, storage_path: str, content_type: str
    ) -> UploadResult:
        """Upload a local file. Each attempt rewinds the source."""
        blob = self._bucket.blob(storage_path)
        try:
            with open(local_path, "rb") as src:
                size = os.fstat(src.fileno()).st_size
                self._run(
                    lambda: blob.upload_from_file(
                        src,
                        rewind=True,
                        size=size,
                        content_type=content_type,
                        retry=None,
                    ),
                    action="upload",
                    storage_path=storage_path,
                )
        except OSError as e:
            raise StorageBackendError(
                message=f"Cannot read source file: {e}",
                backend="gcp",
                key=storage_path,
                cause=e,
            ) from e

        logger.debug("Uploaded file: key=%s size=%d", storage_path, size)
        return UploadResult(self._location(storage_path), size)

    @traced_storage_operation("download_data")
    def download_data(self, storage_path: str) -> bytes:
        """Download an object into memory."""
        blob = self._bucket.blob(storage_path)
        return self._run(
            lambda: blob.download_as_bytes(retry=None),
            action="download",
            storage_path=storage_path,
        )

    @traced_storage_operation("download_file")
    def download_file(self, local_path: LocalPath, storage_path: str) -> int:
        """Download an object to local_path.

        Each attempt truncates a staging file beside local_path, which
        replaces local_path only after a complete download.
        """
        blob = self._bucket.blob(storage_path)

        def _attempt(staging: Path) -> int:
            with open(staging, "wb") as dst:
                blob.download_to_file(dst, retry=None)
                return dst.tell()

        try:
            with staged_download(Path(local_path)) as staging:
                return self._run(
                    lambda: _attempt(staging), action="download", storage_path=storage_path
                )
        except OSError as e:
            raise StorageBackendError(
                message=f"Failed to write destination file: {e}",
                backend="gcp",
                key=storage_path,
                cause=e,
            ) from e

    @traced_storage_operation("list_objects")
    def list_objects(self, prefix: str) -> list[str]:
        """List object names under prefix across all result pages."""

        def _list() -> list[str]:
            iterator = self._client.list_blobs(self._bucket, prefix=prefix or None, retry=None)
            return [blob.name for page in iterator.pages for blob in page]

        return self._run(_list, action="list", storage_path=prefix)

    @traced_storage_operation("generate_presigned_url")
    def generate_presigned_url(self, storage_path: str, expiration: timedelta) -> str:
        """Return a V4 signed GET URL.

        Requires credentials that can sign locally (a service account key).
        """
        if not isinstance(self._credentials, Signing):
            raise CapabilityError(
                "Presigned URLs require signing-capable credentials (service account key)",
                backend="gcp",
                key=storage_path,
                operation="generate_presigned_url",
            )

        blob = self._bucket.blob(storage_path)
        try:
            return blob.generate_signed_url(
                version="v4",
                expiration=expiration,
                method="GET",
                credentials=self._credentials,
            )
        except (ValueError, auth_exceptions.GoogleAuthError) as e:
            raise StorageBackendError(
                message=f"Failed to sign URL: {e}",
                backend="gcp",
                key=storage_path,
                cause=e,
            ) from e

    @traced_storage_operation("delete_object")
    def delete_object(self, storage_path: str) -> None:
        """Delete one object."""
        blob = self._bucket.blob(storage_path)
        self._run(lambda: blob.delete(retry=None), action="delete", storage_path=storage_path)
        logger.debug("Deleted object: key=%s", storage_path)
