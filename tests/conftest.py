"""Pytest configuration and fixtures for omnistore tests.

This module provides common fixtures and configuration for all tests.
"""

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest

from omnistore.config import LocalConfig
from omnistore.tracing import OMNISTORE_OTEL_ENABLED_ENV, configure_tracing


@pytest.fixture(autouse=True)
def disable_tracing(monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    """Keep tracing off unless a test turns it on explicitly."""
    monkeypatch.delenv(OMNISTORE_OTEL_ENABLED_ENV, raising=False)
    yield
    configure_tracing(None)


@pytest.fixture(autouse=True)
def retry_sleeps(monkeypatch: pytest.MonkeyPatch) -> list[float]:
    """Record retry backoff delays instead of sleeping.

    Returns:
        The list every RetryPolicy delay is appended to.
    """
    sleeps: list[float] = []
    monkeypatch.setattr("omnistore.retry.time.sleep", sleeps.append)
    return sleeps


@pytest.fixture
def storage_dir(tmp_path: Path) -> Path:
    """Return an empty directory to use as a local storage root."""
    root = tmp_path / "storage"
    root.mkdir()
    return root


@pytest.fixture
def local_config(storage_dir: Path) -> LocalConfig:
    """Return a LocalConfig rooted at storage_dir."""
    return LocalConfig(storage_dir=str(storage_dir))
