"""omnistore Azure Blob backend.

One BlobServiceClient is built at construction with shared-key credentials
and a capped exponential retry policy; the container client is derived
from it once and reused by every call.

Presigned URLs use a user delegation SAS, which is a two-step exchange:
first a delegation key is requested with the configured token credential
for exactly the presign window, then the SAS is signed with that key.
Shared-key account SAS is deliberately not offered.
"""

from __future__ import annotations

import base64
import binascii
import logging
import os
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any, TypeVar

from azure.core.credentials import AzureNamedKeyCredential
from azure.core.exceptions import (
    AzureError,
    IncompleteReadError,
    ResourceNotFoundError,
    ServiceRequestError,
    ServiceResponseError,
)
from azure.storage.blob import (
    BlobSasPermissions,
    BlobServiceClient,
    ContentSettings,
    ExponentialRetry,
    generate_blob_sas,
)

from omnistore.config import AzureConfig
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

BLOCK_SIZE = 4 * 1024 * 1024
TRANSFER_CONCURRENCY = 16

PIPELINE_RETRY = RetryPolicy(max_attempts=5, initial_delay=1.0, max_delay=5.0, multiplier=2.0)
DOWNLOAD_RETRY = RetryPolicy(max_attempts=3, initial_delay=0.5, max_delay=2.0, multiplier=2.0)


class _CappedExponentialRetry(ExponentialRetry):
    """Azure pipeline retry whose delays follow a RetryPolicy."""

    def __init__(self, policy: RetryPolicy) -> None:
        super().__init__(
            initial_backoff=policy.initial_delay,
            increment_base=policy.multiplier,
            retry_total=policy.max_attempts - 1,
            random_jitter_range=0,
        )
        self._policy = policy

    def get_backoff_time(self, settings: dict[str, Any]) -> float:
        # settings["count"] is the number of attempts already made
        return self._policy.backoff(max(settings["count"] - 1, 0))


def _is_interrupted_read(exc: BaseException) -> bool:
    return isinstance(exc, (IncompleteReadError, ServiceRequestError, ServiceResponseError))


class AzureStorage(Storage):
    """Azure Blob storage implementation."""

    def __init__(self, config: AzureConfig) -> None:
        """Build the Azure adapter.

        Args:
            config: Azure backend configuration.

        Raises:
            ConfigurationError: If account name, key or container is missing,
                or the account key is not valid base64.
        """
        missing = [
            name
            for name in ("account_name", "account_key", "container_name")
            if not getattr(config, name)
        ]
        if missing:
            raise ConfigurationError(
                f"Azure configuration incomplete, missing: {', '.join(missing)}",
                backend="azure",
            )
        try:
            base64.b64decode(config.account_key, validate=True)
        except binascii.Error as e:
            raise ConfigurationError("Azure account key is not valid base64", backend="azure") from e

        self._config = config
        self._account_url = f"https://{config.account_name}.blob.core.windows.net"
        client_options: dict[str, Any] = {
            "retry_policy": _CappedExponentialRetry(PIPELINE_RETRY),
            "max_block_size": BLOCK_SIZE,
            "max_single_put_size": BLOCK_SIZE,
            "max_chunk_get_size": BLOCK_SIZE,
            "max_single_get_size": BLOCK_SIZE,
        }
        self._service = BlobServiceClient(
            self._account_url,
            credential=AzureNamedKeyCredential(config.account_name, config.account_key),
            **client_options,
        )
        self._container = self._service.get_container_client(config.container_name)

        self._delegation_service: BlobServiceClient | None = None
        if config.token_credential is not None:
            self._delegation_service = BlobServiceClient(
                self._account_url,
                credential=config.token_credential,
                retry_policy=_CappedExponentialRetry(PIPELINE_RETRY),
            )

        logger.debug(
            "AzureStorage initialized: account=%s container=%s",
            config.account_name,
            config.container_name,
        )

    @property
    def backend_name(self) -> str:
        """Return the backend identifier."""
        return "azure"

    def _run(
        self,
        fn: Callable[[], T],
        *,
        action: str,
        storage_path: str,
        retry: RetryPolicy | None = None,
    ) -> T:
        """Run one call (pipeline retries apply inside) and translate errors."""
        try:
            if retry is None:
                return fn()
            return retry.call(fn, retryable=_is_interrupted_read, operation=f"azure {action}")
        except ResourceNotFoundError as e:
            raise ObjectNotFoundError(backend="azure", key=storage_path) from e
        except AzureError as e:
            raise StorageBackendError(
                message=f"Azure {action} failed: {e}",
                backend="azure",
                key=storage_path,
                cause=e,
            ) from e

    @traced_storage_operation("upload_data")
    def upload_data(self, data: bytes, storage_path: str, content_type: str) -> UploadResult:
        """Upload a buffer; blobs larger than one block are sent as parallel blocks."""
        blob = self._container.get_blob_client(storage_path)
        self._run(
            lambda: blob.upload_blob(
                data,
                overwrite=True,
                content_settings=ContentSettings(content_type=content_type),
                max_concurrency=TRANSFER_CONCURRENCY,
            ),
            action="upload",
            storage_path=storage_path,
        )
        logger.debug("Uploaded blob: key=%s size=%d", storage_path, len(data))
        return UploadResult(blob.url, len(data))

    @traced_storage_operation("upload_file")
    def upload_file(
        self, local_path: LocalPath, storage_path: str, content_type: str
    ) -> UploadResult:
        """Upload a local file in parallel blocks."""
        blob = self._container.get_blob_client(storage_path)
        try:
            with open(local_path, "rb") as src:
                size = os.fstat(src.fileno()).st_size
                self._run(
                    lambda: blob.upload_blob(
                        src,
                        length=size,
                        overwrite=True,
                        content_settings=ContentSettings(content_type=content_type),
                        max_concurrency=TRANSFER_CONCURRENCY,
                    ),
                    action="upload",
                    storage_path=storage_path,
                )
        except OSError as e:
            raise StorageBackendError(
                message=f"Cannot read source file: {e}",
                backend="azure",
                key=storage_path,
                cause=e,
            ) from e

        logger.debug("Uploaded file: key=%s size=%d", storage_path, size)
        return UploadResult(blob.url, size)

    @traced_storage_operation("download_data")
    def download_data(self, storage_path: str) -> bytes:
        """Download a blob into memory in parallel chunks."""
        return self._run(
            lambda: self._container.download_blob(
                storage_path, max_concurrency=TRANSFER_CONCURRENCY
            ).readall(),
            action="download",
            storage_path=storage_path,
            retry=DOWNLOAD_RETRY,
        )

    @traced_storage_operation("download_file")
    def download_file(self, local_path: LocalPath, storage_path: str) -> int:
        """Download a blob to local_path in parallel chunks.

        local_path is only replaced once the whole blob has been written.
        """

        def _attempt(staging: Path) -> int:
            downloader = self._container.download_blob(
                storage_path, max_concurrency=TRANSFER_CONCURRENCY
            )
            with open(staging, "wb") as dst:
                return int(downloader.readinto(dst))

        try:
            with staged_download(Path(local_path)) as staging:
                return self._run(
                    lambda: _attempt(staging),
                    action="download",
                    storage_path=storage_path,
                    retry=DOWNLOAD_RETRY,
                )
        except OSError as e:
            raise StorageBackendError(
                message=f"Failed to write destination file: {e}",
                backend="azure",
                key=storage_path,
                cause=e,
            ) from e

    @traced_storage_operation("list_objects")
    def list_objects(self, prefix: str) -> list[str]:
        """List blob names under prefix, following continuation markers."""
        keys: list[str] = []
        marker: str | None = None

        while True:
            pages = self._container.list_blobs(name_starts_with=prefix or None).by_page(
                continuation_token=marker
            )
            page = self._run(lambda: list(next(pages)), action="list", storage_path=prefix)
            keys.extend(item.name for item in page)
            marker = pages.continuation_token
            if not marker:
                return keys

    @traced_storage_operation("generate_presigned_url")
    def generate_presigned_url(self, storage_path: str, expiration: timedelta) -> str:
        """Return an HTTPS read-only user delegation SAS URL for one blob."""
        if self._delegation_service is None:
            raise CapabilityError(
                "Presigned URLs require a token credential (OAuth)",
                backend="azure",
                key=storage_path,
                operation="generate_presigned_url",
            )

        delegation_service = self._delegation_service
        start = datetime.now(UTC)
        expiry = start + expiration

        delegation_key = self._run(
            lambda: delegation_service.get_user_delegation_key(
                key_start_time=start, key_expiry_time=expiry
            ),
            action="get user delegation key",
            storage_path=storage_path,
        )

        sas = generate_blob_sas(
            account_name=self._config.account_name,
            container_name=self._config.container_name,
            blob_name=storage_path,
            user_delegation_key=delegation_key,
            permission=BlobSasPermissions(read=True),
            start=start,
            expiry=expiry,
            protocol="https",
        )
        return f"{self._container.get_blob_client(storage_path).url}?{sas}"

    @traced_storage_operation("delete_object")
    def delete_object(self, storage_path: str) -> None:
        """Delete one blob. Snapshots are not cascaded."""
        self._run(
            lambda: self._container.delete_blob(storage_path),
            action="delete",
            storage_path=storage_path,
        )
        logger.debug("Deleted blob: key=%s", storage_path)
