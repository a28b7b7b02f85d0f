"""Storage configuration loader.

Reads a YAML document (or an already-parsed mapping) holding exactly one
backend section and returns the matching config model:

    s3:
      bucket: recordings
      region: us-east-1

Environment fallbacks, applied only when the field is empty:
    AZURE_STORAGE_ACCOUNT: Azure account_name
    AZURE_STORAGE_KEY: Azure account_key
    GOOGLE_APPLICATION_CREDENTIALS: GCP credentials_json, either a path to a
        service account JSON file or the JSON document itself
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ValidationError

from omnistore.config import (
    AliOSSConfig,
    AzureConfig,
    GCPConfig,
    LocalConfig,
    S3Config,
    StorageConfig,
)
from omnistore.errors import ConfigurationError

AZURE_ACCOUNT_ENV = "AZURE_STORAGE_ACCOUNT"
AZURE_KEY_ENV = "AZURE_STORAGE_KEY"
GCP_CREDENTIALS_ENV = "GOOGLE_APPLICATION_CREDENTIALS"

BACKEND_SECTIONS: dict[str, type[BaseModel]] = {
    "s3": S3Config,
    "azure": AzureConfig,
    "gcp": GCPConfig,
    "alioss": AliOSSConfig,
    "local": LocalConfig,
}


def _read_yaml(path: Path) -> Any:
    path_str = str(path)
    if not path.is_file():
        raise ConfigurationError(f"Storage config file not found: {path_str}")

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigurationError(f"Failed to read storage config {path_str}: {e}") from e

    try:
        return yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in storage config {path_str}: {e}") from e


def _gcp_credentials_from_env() -> str:
    value = os.environ.get(GCP_CREDENTIALS_ENV, "").strip()
    if not value or value.startswith("{"):
        return value

    try:
        return Path(value).read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigurationError(
            f"Cannot read {GCP_CREDENTIALS_ENV} file {value}: {e}", backend="gcp"
        ) from e


def _apply_env_fallbacks(backend: str, fields: dict[str, Any]) -> dict[str, Any]:
    if backend == "azure":
        if not fields.get("account_name"):
            fields["account_name"] = os.environ.get(AZURE_ACCOUNT_ENV, "")
        if not fields.get("account_key"):
            fields["account_key"] = os.environ.get(AZURE_KEY_ENV, "")
    elif backend == "gcp" and not fields.get("credentials_json"):
        fields["credentials_json"] = _gcp_credentials_from_env()
    return fields


def load_storage_config(source: str | Path | Mapping[str, Any]) -> StorageConfig:
    """Build a backend config from a YAML file path or a mapping.

    Args:
        source: Path to a YAML file, or a mapping with a single backend key.

    Returns:
        One of S3Config, AzureConfig, GCPConfig, AliOSSConfig, LocalConfig.

    Raises:
        ConfigurationError: If the file cannot be read or parsed, zero or
            several backend sections are present, or field validation fails.
    """
    raw = source if isinstance(source, Mapping) else _read_yaml(Path(source))

    if not isinstance(raw, Mapping):
        raise ConfigurationError(
            f"Storage config must be a mapping, got {type(raw).__name__}"
        )

    unknown = sorted(set(raw) - set(BACKEND_SECTIONS))
    if unknown:
        raise ConfigurationError(f"Unknown storage backend section(s): {', '.join(unknown)}")

    present = [name for name in BACKEND_SECTIONS if raw.get(name) is not None]
    if len(present) != 1:
        raise ConfigurationError(
            f"Exactly one storage backend must be configured, found {len(present)}: "
            f"{sorted(BACKEND_SECTIONS)}"
        )

    backend = present[0]
    section = raw[backend]
    if not isinstance(section, Mapping):
        raise ConfigurationError(
            f"Backend section must be a mapping, got {type(section).__name__}",
            backend=backend,
        )

    fields = _apply_env_fallbacks(backend, dict(section))
    try:
        return BACKEND_SECTIONS[backend].model_validate(fields)  # type: ignore[return-value]
    except ValidationError as e:
        raise ConfigurationError(f"Invalid {backend} configuration: {e}", backend=backend) from e
