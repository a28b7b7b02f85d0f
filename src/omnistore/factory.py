"""Storage adapter factory.

Maps a config model to its adapter. Adapter modules are imported on demand
so that building a local store does not import every cloud SDK.
"""

from __future__ import annotations

from omnistore.config import (
    AliOSSConfig,
    AzureConfig,
    GCPConfig,
    LocalConfig,
    S3Config,
    StorageConfig,
)
from omnistore.errors import ConfigurationError
from omnistore.object_store import Storage


def create_storage(config: StorageConfig) -> Storage:
    """Return the storage adapter for config.

    Raises:
        ConfigurationError: If config is not a known backend config, or the
            adapter rejects it.
    """
    if isinstance(config, S3Config):
        from omnistore.backends.s3 import S3Storage

        return S3Storage(config)

    if isinstance(config, AzureConfig):
        from omnistore.backends.azure import AzureStorage

        return AzureStorage(config)

    if isinstance(config, GCPConfig):
        from omnistore.backends.gcp import GCPStorage

        return GCPStorage(config)

    if isinstance(config, AliOSSConfig):
        from omnistore.backends.alioss import AliOSSStorage

        return AliOSSStorage(config)

    if isinstance(config, LocalConfig):
        from omnistore.backends.local import LocalStorage

        return LocalStorage(config)

    raise ConfigurationError(f"Unknown storage config type: {type(config).__name__}")
