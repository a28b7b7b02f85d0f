"""omnistore error types.

Provides typed exceptions shared by every storage backend.
Callers should treat any raised ObjectStorageError as "the operation did not
complete as requested". Provider SDK errors are never leaked bare: adapters
translate them into one of the types below and chain the original as __cause__.
"""

from __future__ import annotations


class ObjectStorageError(Exception):
    """Base exception for object storage operations.

    Attributes:
        message: Human-readable error message.
        backend: Backend identifier (e.g. "s3", "local") if applicable.
        key: Storage path associated with the operation (if applicable).
    """

    def __init__(
        self,
        message: str,
        *,
        backend: str | None = None,
        key: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.backend = backend
        self.key = key

    def __str__(self) -> str:
        parts = [self.message]
        if self.backend:
            parts.append(f"backend={self.backend}")
        if self.key:
            parts.append(f"key={self.key}")
        return " ".join(parts)


class ConfigurationError(ObjectStorageError):
    """Raised when a backend cannot be built from its configuration.

    Covers missing required fields, malformed endpoint or proxy URLs and
    unparseable credential payloads. Always raised before any network call.
    """

    def __init__(
        self,
        message: str = "Invalid storage configuration",
        *,
        backend: str | None = None,
    ) -> None:
        super().__init__(message, backend=backend)


class CapabilityError(ObjectStorageError):
    """Raised when the configured backend cannot perform an operation.

    Distinct from a transport error: retrying will not help. Examples are
    presigning on Azure without a delegation token credential, or writing
    through an AliOSS adapter built without credentials.
    """

    def __init__(
        self,
        message: str = "Operation not supported by this backend",
        *,
        backend: str | None = None,
        key: str | None = None,
        operation: str | None = None,
    ) -> None:
        super().__init__(message, backend=backend, key=key)
        self.operation = operation


class ObjectNotFoundError(ObjectStorageError):
    """Raised when an object is not found in storage."""

    def __init__(
        self,
        message: str = "Object not found",
        *,
        backend: str | None = None,
        key: str | None = None,
    ) -> None:
        super().__init__(message, backend=backend, key=key)


class PathTraversalError(ObjectStorageError):
    """Raised when a local storage path escapes the storage root.

    Also raised when an operation would target the storage root itself.
    """

    def __init__(
        self,
        message: str = "Invalid storage path: resolves outside storage root",
        *,
        backend: str | None = None,
        key: str | None = None,
    ) -> None:
        super().__init__(message, backend=backend, key=key)


class StorageBackendError(ObjectStorageError):
    """Raised when the storage backend cannot complete an operation.

    This error indicates the backend itself failed (network failure,
    authentication rejection, permission denied, disk full, I/O error)
    rather than a logical error like object not found. Raised after the
    adapter's retry budget is exhausted.
    """

    def __init__(
        self,
        message: str = "Storage backend error",
        *,
        backend: str | None = None,
        key: str | None = None,
        cause: Exception | None = None,
    ) -> None:
        super().__init__(message, backend=backend, key=key)
        self.cause = cause
