"""Tests for the Azure Blob storage backend.

The service client is built for real (no request is made at construction)
and the container client is then replaced with a mock.
"""

from __future__ import annotations

from datetime import timedelta
from pathlib import Path
from types import SimpleNamespace
from typing import Any
from unittest.mock import MagicMock

import pytest
from azure.core.exceptions import (
    ClientAuthenticationError,
    IncompleteReadError,
    ResourceNotFoundError,
)

from omnistore.backends import azure as azure_module
from omnistore.backends.azure import (
    PIPELINE_RETRY,
    AzureStorage,
    _CappedExponentialRetry,
)
from omnistore.config import AzureConfig
from omnistore.errors import (
    CapabilityError,
    ConfigurationError,
    ObjectNotFoundError,
    StorageBackendError,
)

ACCOUNT_KEY = "c2VjcmV0LWFjY291bnQta2V5"
BLOB_URL = "https://acct.blob.core.windows.net/media/rec/a.mp4"


class _Pages:
    """Stand-in for the page iterator returned by ItemPaged.by_page()."""

    def __init__(self, names: list[str], continuation_token: str | None) -> None:
        self._items = [SimpleNamespace(name=name) for name in names]
        self.continuation_token = continuation_token

    def __next__(self) -> Any:
        return iter(self._items)


def _make(**overrides: Any) -> AzureStorage:
    fields: dict[str, Any] = {
        "account_name": "acct",
        "account_key": ACCOUNT_KEY,
        "container_name": "media",
    }
    fields.update(overrides)
    return AzureStorage(AzureConfig(**fields))


@pytest.fixture
def container() -> MagicMock:
    """Return a mock container client with a blob client for BLOB_URL."""
    mock = MagicMock(name="container_client")
    mock.get_blob_client.return_value.url = BLOB_URL
    return mock


@pytest.fixture
def storage(container: MagicMock) -> AzureStorage:
    """Return an AzureStorage wired to the mock container client."""
    adapter = _make()
    adapter._container = container
    return adapter


class TestConstruction:
    """Tests for configuration validation."""

    @pytest.mark.parametrize("missing", ["account_name", "account_key", "container_name"])
    def test_requires_account_key_and_container(self, missing: str) -> None:
        """Every shared-key field is required."""
        with pytest.raises(ConfigurationError, match=missing):
            _make(**{missing: ""})

    def test_rejects_non_base64_key(self) -> None:
        """Account keys are base64; anything else fails at construction."""
        with pytest.raises(ConfigurationError):
            _make(account_key="not base64 !!")

    def test_backend_name(self) -> None:
        """Backend name should be "azure"."""
        assert _make().backend_name == "azure"


class TestPipelineRetry:
    """Tests for the capped exponential pipeline retry."""

    def test_backoff_is_capped(self) -> None:
        """Delays grow exponentially and never exceed five seconds."""
        policy = _CappedExponentialRetry(PIPELINE_RETRY)

        assert policy.get_backoff_time({"count": 1}) == pytest.approx(1.0)
        assert policy.get_backoff_time({"count": 2}) == pytest.approx(2.0)
        assert policy.get_backoff_time({"count": 4}) == pytest.approx(5.0)
        assert policy.get_backoff_time({"count": 10}) == pytest.approx(5.0)

    def test_total_attempts(self) -> None:
        """Five attempts in total means four retries."""
        assert _CappedExponentialRetry(PIPELINE_RETRY).total_retries == 4


class TestUploadDownload:
    """Tests for transfers."""

    def test_upload_data(self, storage: AzureStorage, container: MagicMock) -> None:
        """Uploads overwrite, run in parallel and record the content type."""
        result = storage.upload_data(b"hello", "rec/a.mp4", "video/mp4")

        assert result.location == BLOB_URL
        assert result.size == 5
        container.get_blob_client.assert_called_with("rec/a.mp4")
        call = container.get_blob_client.return_value.upload_blob.call_args
        assert call.args == (b"hello",)
        assert call.kwargs["overwrite"] is True
        assert call.kwargs["max_concurrency"] == 16
        assert call.kwargs["content_settings"].content_type == "video/mp4"

    def test_upload_file(
        self, storage: AzureStorage, container: MagicMock, tmp_path: Path
    ) -> None:
        """upload_file streams the file and reports its size."""
        source = tmp_path / "a.mp4"
        source.write_bytes(b"x" * 1000)

        result = storage.upload_file(source, "rec/a.mp4", "video/mp4")

        assert result.size == 1000
        call = container.get_blob_client.return_value.upload_blob.call_args
        assert call.kwargs["length"] == 1000

    def test_download_data(self, storage: AzureStorage, container: MagicMock) -> None:
        """download_data returns the whole blob."""
        container.download_blob.return_value.readall.return_value = b"blob body"

        assert storage.download_data("rec/a.mp4") == b"blob body"
        container.download_blob.assert_called_with("rec/a.mp4", max_concurrency=16)

    def test_interrupted_download_is_retried(
        self, storage: AzureStorage, container: MagicMock, retry_sleeps: list[float]
    ) -> None:
        """An interrupted stream should be retried by the download policy."""
        downloader = MagicMock()
        downloader.readall.return_value = b"ok"
        container.download_blob.side_effect = [IncompleteReadError("cut off"), downloader]

        assert storage.download_data("rec/a.mp4") == b"ok"
        assert container.download_blob.call_count == 2
        assert len(retry_sleeps) == 1

    def test_missing_blob(self, storage: AzureStorage, container: MagicMock) -> None:
        """ResourceNotFoundError maps to ObjectNotFoundError."""
        container.download_blob.side_effect = ResourceNotFoundError("BlobNotFound")

        with pytest.raises(ObjectNotFoundError):
            storage.download_data("missing")

    def test_other_errors_are_backend_errors(
        self, storage: AzureStorage, container: MagicMock
    ) -> None:
        """Any other AzureError maps to StorageBackendError and is not retried here."""
        container.delete_blob.side_effect = ClientAuthenticationError("bad signature")

        with pytest.raises(StorageBackendError):
            storage.delete_object("rec/a.mp4")

        assert container.delete_blob.call_count == 1

    def test_download_file(
        self, storage: AzureStorage, container: MagicMock, tmp_path: Path
    ) -> None:
        """download_file writes into the destination and reports bytes written."""

        def _readinto(stream: Any) -> int:
            return stream.write(b"0123456789")

        container.download_blob.return_value.readinto.side_effect = _readinto
        destination = tmp_path / "out" / "a.mp4"

        assert storage.download_file(destination, "rec/a.mp4") == 10
        assert destination.read_bytes() == b"0123456789"
        assert list(destination.parent.iterdir()) == [destination]

    def test_missing_blob_keeps_existing_file(
        self, storage: AzureStorage, container: MagicMock, tmp_path: Path
    ) -> None:
        """A missing blob raises ObjectNotFoundError and leaves the destination alone."""
        container.download_blob.side_effect = ResourceNotFoundError("BlobNotFound")
        destination = tmp_path / "keep.txt"
        destination.write_bytes(b"keep me")

        with pytest.raises(ObjectNotFoundError):
            storage.download_file(destination, "missing")

        assert destination.read_bytes() == b"keep me"
        assert list(tmp_path.iterdir()) == [destination]

    def test_interrupted_download_keeps_existing_file(
        self, storage: AzureStorage, container: MagicMock, tmp_path: Path
    ) -> None:
        """A stream that keeps failing mid-write never replaces the destination."""

        def _readinto(stream: Any) -> int:
            stream.write(b"trunc")
            raise IncompleteReadError("cut off")

        container.download_blob.return_value.readinto.side_effect = _readinto
        destination = tmp_path / "keep.txt"
        destination.write_bytes(b"keep me")

        with pytest.raises(StorageBackendError):
            storage.download_file(destination, "rec/a.mp4")

        assert destination.read_bytes() == b"keep me"
        assert list(tmp_path.iterdir()) == [destination]


class TestListObjects:
    """Tests for paginated listing."""

    def test_follows_continuation_tokens(
        self, storage: AzureStorage, container: MagicMock
    ) -> None:
        """Every page should be fetched until no continuation token remains."""
        by_page = container.list_blobs.return_value.by_page
        by_page.side_effect = [_Pages(["p/a", "p/b"], "token-1"), _Pages(["p/c"], None)]

        assert storage.list_objects("p/") == ["p/a", "p/b", "p/c"]
        container.list_blobs.assert_called_with(name_starts_with="p/")
        tokens = [call.kwargs["continuation_token"] for call in by_page.call_args_list]
        assert tokens == [None, "token-1"]


class TestPresign:
    """Tests for user delegation SAS URLs."""

    def test_requires_token_credential(self, storage: AzureStorage) -> None:
        """Without a token credential presigning is unsupported."""
        with pytest.raises(CapabilityError) as exc_info:
            storage.generate_presigned_url("rec/a.mp4", timedelta(hours=1))

        assert exc_info.value.operation == "generate_presigned_url"

    def test_user_delegation_sas(
        self, monkeypatch: pytest.MonkeyPatch, container: MagicMock
    ) -> None:
        """The SAS is signed with a delegation key scoped to the URL lifetime."""
        adapter = _make(token_credential=MagicMock(name="token_credential"))
        adapter._container = container
        delegation_service = MagicMock(name="delegation_service")
        delegation_service.get_user_delegation_key.return_value = "delegation-key"
        adapter._delegation_service = delegation_service
        generate_sas = MagicMock(return_value="sv=2024&sig=abc")
        monkeypatch.setattr(azure_module, "generate_blob_sas", generate_sas)

        url = adapter.generate_presigned_url("rec/a.mp4", timedelta(hours=2))

        assert url == f"{BLOB_URL}?sv=2024&sig=abc"
        key_call = delegation_service.get_user_delegation_key.call_args.kwargs
        assert key_call["key_expiry_time"] - key_call["key_start_time"] == timedelta(hours=2)

        sas_kwargs = generate_sas.call_args.kwargs
        assert sas_kwargs["user_delegation_key"] == "delegation-key"
        assert sas_kwargs["container_name"] == "media"
        assert sas_kwargs["blob_name"] == "rec/a.mp4"
        assert sas_kwargs["protocol"] == "https"
        assert sas_kwargs["permission"].read is True
        assert sas_kwargs["permission"].write is False
        assert sas_kwargs["expiry"] == key_call["key_expiry_time"]
