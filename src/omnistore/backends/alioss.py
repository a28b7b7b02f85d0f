"""omnistore Alibaba Cloud OSS backend.

An adapter built without an access key and secret uses anonymous access.
It can still read from and list public-read buckets, but upload, delete and
presign raise CapabilityError instead of attempting an unauthenticated write
or producing an unsigned URL.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Callable
from datetime import timedelta
from pathlib import Path
from typing import TypeVar

import oss2
from oss2 import exceptions as oss_exceptions

from omnistore.config import AliOSSConfig
from omnistore.errors import (
    CapabilityError,
    ConfigurationError,
    ObjectNotFoundError,
    StorageBackendError,
)
from omnistore.object_store import LocalPath, Storage, UploadResult
from omnistore.retry import RetryPolicy
from omnistore.staging import staged_download
from omnistore.tracing import traced_storage_operation

logger = logging.getLogger(__name__)

T = TypeVar("T")

OSS_RETRY = RetryPolicy(max_attempts=3, initial_delay=0.2, max_delay=5.0, multiplier=2.0)


def _is_retryable(exc: BaseException) -> bool:
    """Network failures, throttling and 5xx responses."""
    if isinstance(exc, oss_exceptions.RequestError):
        return True
    if isinstance(exc, oss_exceptions.OssError):
        return exc.status == 429 or exc.status >= 500
    return False


class AliOSSStorage(Storage):
    """Alibaba Cloud OSS implementation."""

    def __init__(self, config: AliOSSConfig) -> None:
        if not config.endpoint or not config.bucket:
            raise ConfigurationError("AliOSS endpoint and bucket are required", backend="alioss")

        self._config = config
        self._authenticated = bool(config.access_key and config.secret)
        auth = (
            oss2.Auth(config.access_key, config.secret)
            if self._authenticated
            else oss2.AnonymousAuth()
        )
        self._bucket = oss2.Bucket(auth, config.endpoint, config.bucket)
        self._host = config.endpoint.split("://", 1)[-1].rstrip("/")

        if not self._authenticated:
            logger.warning(
                "AliOSS adapter for bucket %s has no credentials; "
                "upload, delete and presign are unavailable",
                config.bucket,
            )

    @property
    def backend_name(self) -> str:
        """Return the backend identifier."""
        return "alioss"

    def _require_credentials(self, operation: str, storage_path: str) -> None:
        if not self._authenticated:
            raise CapabilityError(
                f"AliOSS {operation} requires an access key and secret",
                backend="alioss",
                key=storage_path,
                operation=operation,
            )

    def _run(self, fn: Callable[[], T], *, action: str, storage_path: str) -> T:
        try:
            return OSS_RETRY.call(fn, retryable=_is_retryable, operation=f"alioss {action}")
        except oss_exceptions.NoSuchKey as e:
            raise ObjectNotFoundError(backend="alioss", key=storage_path) from e
        except oss_exceptions.OssError as e:
            raise StorageBackendError(
                message=f"AliOSS {action} failed: {e}",
                backend="alioss",
                key=storage_path,
                cause=e,
            ) from e

    def _location(self, storage_path: str) -> str:
        return f"https://{self._config.bucket}.{self._host}/{storage_path}"

    @traced_storage_operation("upload_data")
    def upload_data(self, data: bytes, storage_path: str, content_type: str) -> UploadResult:
        self._require_credentials("upload_data", storage_path)
        self._run(
            lambda: self._bucket.put_object(
                storage_path, data, headers={"Content-Type": content_type}
            ),
            action="upload",
            storage_path=storage_path,
        )
        return UploadResult(self._location(storage_path), len(data))

    @traced_storage_operation("upload_file")
    def upload_file(
        self, local_path: LocalPath, storage_path: str, content_type: str
    ) -> UploadResult:
        self._require_credentials("upload_file", storage_path)
        try:
            with open(local_path, "rb") as src:
                size = os.fstat(src.fileno()).st_size
        except OSError as e:
            raise StorageBackendError(
                message=f"Cannot read source file: {e}",
                backend="alioss",
                key=storage_path,
                cause=e,
            ) from e

        self._run(
            lambda: self._bucket.put_object_from_file(
                storage_path, os.fspath(local_path), headers={"Content-Type": content_type}
            ),
            action="upload",
            storage_path=storage_path,
        )
        return UploadResult(self._location(storage_path), size)

    @traced_storage_operation("download_data")
    def download_data(self, storage_path: str) -> bytes:
        return self._run(
            lambda: self._bucket.get_object(storage_path).read(),
            action="download",
            storage_path=storage_path,
        )

    @traced_storage_operation("download_file")
    def download_file(self, local_path: LocalPath, storage_path: str) -> int:
        try:
            with staged_download(Path(local_path)) as staging:
                self._run(
                    lambda: self._bucket.get_object_to_file(storage_path, os.fspath(staging)),
                    action="download",
                    storage_path=storage_path,
                )
                return staging.stat().st_size
        except OSError as e:
            raise StorageBackendError(
                message=f"Failed to write destination file: {e}",
                backend="alioss",
                key=storage_path,
                cause=e,
            ) from e

    @traced_storage_operation("list_objects")
    def list_objects(self, prefix: str) -> list[str]:
        return self._run(
            lambda: [obj.key for obj in oss2.ObjectIterator(self._bucket, prefix=prefix)],
            action="list",
            storage_path=prefix,
        )

    @traced_storage_operation("generate_presigned_url")
    def generate_presigned_url(self, storage_path: str, expiration: timedelta) -> str:
        """Return a signed GET URL. Signing is local; no request is made."""
        self._require_credentials("generate_presigned_url", storage_path)
        return self._bucket.sign_url("GET", storage_path, int(expiration.total_seconds()))

    @traced_storage_operation("delete_object")
    def delete_object(self, storage_path: str) -> None:
        """Delete one object. OSS reports success for keys that do not exist."""
        self._require_credentials("delete_object", storage_path)
        self._run(
            lambda: self._bucket.delete_object(storage_path),
            action="delete",
            storage_path=storage_path,
        )
        logger.debug("Deleted object: key=%s", storage_path)
