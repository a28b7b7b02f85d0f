"""omnistore storage interface definition.

Provides the Storage abstract base class that every backend implements.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Iterable
from datetime import timedelta
from pathlib import Path
from typing import NamedTuple

LocalPath = str | Path


class UploadResult(NamedTuple):
    """Outcome of an upload.

    Attributes:
        location: Fully qualified, backend-specific reference to the object
            (URL for cloud backends, absolute path for the local backend).
        size: Size in bytes. For upload_data this is len(data); for
            upload_file it is the file size observed when it was opened.
    """

    location: str
    size: int


class Storage(ABC):
    """Abstract base class for storage backends.

    All implementations share these semantics:
    - Storage paths are provider-relative keys (root-relative for local).
    - Calls are synchronous and blocking; any internal parallelism is
      hidden inside a single call.
    - Transient provider errors are retried inside the adapter; what
      escapes is an ObjectStorageError subclass.

    Implementations:
    - S3Storage, AzureStorage, GCPStorage, AliOSSStorage, LocalStorage
    """

    @property
    @abstractmethod
    def backend_name(self) -> str:
        """Return the backend identifier for logging and tracing.

        Returns:
            Backend name string (e.g., "s3", "local").
        """
        ...

    @abstractmethod
    def upload_data(self, data: bytes, storage_path: str, content_type: str) -> UploadResult:
        """Write a complete in-memory payload.

        Args:
            data: Object content.
            storage_path: Destination key.
            content_type: MIME type recorded with the object where supported.

        Returns:
            UploadResult with size == len(data).

        Raises:
            CapabilityError: If the backend is not configured for writes.
            StorageBackendError: If the upload fails after retries.
        """
        ...

    @abstractmethod
    def upload_file(
        self, local_path: LocalPath, storage_path: str, content_type: str
    ) -> UploadResult:
        """Stream a local file into storage.

        The reported size is the on-disk size when the file was opened, not
        the number of bytes sent. If the source changes mid-upload the two
        may diverge; this is accepted and not corrected.

        Args:
            local_path: Source file on local disk.
            storage_path: Destination key.
            content_type: MIME type recorded with the object where supported.

        Returns:
            UploadResult for the stored object.

        Raises:
            StorageBackendError: If the source cannot be read or the upload fails.
        """
        ...

    @abstractmethod
    def download_data(self, storage_path: str) -> bytes:
        """Read an entire object into memory.

        Raises:
            ObjectNotFoundError: If the object does not exist.
            StorageBackendError: If the download fails after retries.
        """
        ...

    @abstractmethod
    def download_file(self, local_path: LocalPath, storage_path: str) -> int:
        """Stream an object to a local file, creating parent directories.

        Returns:
            Number of bytes written to local_path.

        Raises:
            ObjectNotFoundError: If the object does not exist.
            StorageBackendError: If the download or local write fails.
        """
        ...

    @abstractmethod
    def list_objects(self, prefix: str) -> list[str]:
        """List every key starting with prefix.

        Provider pagination is followed to exhaustion and the full list is
        returned.

        Raises:
            StorageBackendError: If listing fails after retries.
        """
        ...

    @abstractmethod
    def generate_presigned_url(self, storage_path: str, expiration: timedelta) -> str:
        """Produce a read-only URL valid for expiration from now.

        Raises:
            CapabilityError: If no signing-capable credential is configured.
            StorageBackendError: If signing requires a provider call that fails.
        """
        ...

    @abstractmethod
    def delete_object(self, storage_path: str) -> None:
        """Delete a single object.

        Raises:
            ObjectNotFoundError: If the backend reports the object missing.
            StorageBackendError: If the deletion fails after retries.
        """
        ...

    def delete_objects(self, storage_paths: Iterable[str]) -> None:
        """Delete several objects one after the other.

        Stops at the first failure and raises it. Objects deleted before the
        failure stay deleted; there is no rollback.
        """
        for storage_path in storage_paths:
            self.delete_object(storage_path)
