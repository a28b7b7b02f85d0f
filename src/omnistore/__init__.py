"""omnistore - one object storage interface over several providers.

Backends:
- S3Storage: AWS S3 and S3-compatible services (MinIO, R2, OCI, ...)
- AzureStorage: Azure Blob Storage
- GCPStorage: Google Cloud Storage
- AliOSSStorage: Alibaba Cloud OSS
- LocalStorage: Local filesystem

Environment Variables:
    OMNISTORE_OTEL_ENABLED: Emit OpenTelemetry spans for storage calls
"""

from omnistore.config import (
    AliOSSConfig,
    AzureConfig,
    GCPConfig,
    LocalConfig,
    ProxyConfig,
    S3Config,
    StorageConfig,
)
from omnistore.errors import (
    CapabilityError,
    ConfigurationError,
    ObjectNotFoundError,
    ObjectStorageError,
    PathTraversalError,
    StorageBackendError,
)
from omnistore.factory import create_storage
from omnistore.loader import load_storage_config
from omnistore.object_store import Storage, UploadResult
from omnistore.retry import RetryPolicy

__all__ = [
    "Storage",
    "UploadResult",
    "create_storage",
    "load_storage_config",
    "RetryPolicy",
    "StorageConfig",
    "S3Config",
    "AzureConfig",
    "GCPConfig",
    "AliOSSConfig",
    "LocalConfig",
    "ProxyConfig",
    "ObjectStorageError",
    "ConfigurationError",
    "CapabilityError",
    "ObjectNotFoundError",
    "PathTraversalError",
    "StorageBackendError",
]
