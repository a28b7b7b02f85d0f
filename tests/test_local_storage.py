"""Tests for the local filesystem storage backend.

Covers:
- Roundtrip: upload then download returns identical bytes for empty, tiny
  and multi-megabyte payloads
- Listing: a prefix matches file names and directory names alike
- Delete: empty parent directories are pruned, the root never is
- Path traversal prevention: keys resolving outside the root are rejected
- Downloads replace an existing destination only once the copy completed
- Concurrent uploads, deletes and listings under one directory
"""

from __future__ import annotations

import errno
import os
import threading
from datetime import timedelta
from pathlib import Path
from typing import BinaryIO

import pytest

from omnistore.backends import local as local_module
from omnistore.backends.local import LocalStorage
from omnistore.config import LocalConfig
from omnistore.errors import (
    ConfigurationError,
    ObjectNotFoundError,
    PathTraversalError,
    StorageBackendError,
)


@pytest.fixture
def store(local_config: LocalConfig) -> LocalStorage:
    """Create a LocalStorage rooted at a temp directory."""
    return LocalStorage(local_config)


@pytest.fixture
def populated(store: LocalStorage) -> LocalStorage:
    """Store holding foo.txt, foo/a.txt, foo/sub/b.txt and bar.txt."""
    for key in ("foo.txt", "foo/a.txt", "foo/sub/b.txt", "bar.txt"):
        store.upload_data(key.encode(), key, "text/plain")
    return store


class TestRoundtrip:
    """Tests for upload/download roundtrips."""

    @pytest.mark.parametrize("size", [0, 1, 3 * 1024 * 1024 + 17])
    def test_upload_data_then_download_data(self, store: LocalStorage, size: int) -> None:
        """Downloaded bytes should equal the uploaded bytes."""
        data = os.urandom(size)

        result = store.upload_data(data, "blobs/payload.bin", "application/octet-stream")

        assert result.size == size
        assert store.download_data("blobs/payload.bin") == data

    def test_upload_returns_absolute_location(
        self, store: LocalStorage, storage_dir: Path
    ) -> None:
        """Location should be the absolute path of the stored file."""
        result = store.upload_data(b"hello", "a/b/c.txt", "text/plain")

        assert Path(result.location) == storage_dir.resolve() / "a" / "b" / "c.txt"
        assert Path(result.location).read_bytes() == b"hello"

    def test_upload_file_then_download_file(self, store: LocalStorage, tmp_path: Path) -> None:
        """upload_file/download_file should copy content both ways."""
        source = tmp_path / "source.bin"
        data = os.urandom(2 * 1024 * 1024 + 5)
        source.write_bytes(data)

        result = store.upload_file(source, "recordings/room/track.bin", "video/mp4")
        assert result.size == len(data)

        destination = tmp_path / "out" / "nested" / "track.bin"
        written = store.download_file(destination, "recordings/room/track.bin")

        assert written == len(data)
        assert destination.read_bytes() == data

    def test_overwrite_replaces_content(self, store: LocalStorage) -> None:
        """Uploading to an existing key should replace its content."""
        store.upload_data(b"first version", "doc.txt", "text/plain")
        store.upload_data(b"v2", "doc.txt", "text/plain")

        assert store.download_data("doc.txt") == b"v2"

    def test_root_created_on_first_upload(self, tmp_path: Path) -> None:
        """A missing storage_dir should be created when first written to."""
        root = tmp_path / "not-yet"
        store = LocalStorage(LocalConfig(storage_dir=str(root)))

        store.upload_data(b"x", "k", "text/plain")

        assert (root / "k").read_bytes() == b"x"


class TestListObjects:
    """Tests for prefix listing."""

    def test_prefix_matches_files_and_directories(self, populated: LocalStorage) -> None:
        """A bare prefix should return the matching file and the matching tree."""
        keys = populated.list_objects("foo")

        assert sorted(keys) == ["foo.txt", "foo/a.txt", "foo/sub/b.txt"]

    def test_trailing_slash_lists_directory(self, populated: LocalStorage) -> None:
        """A prefix ending in "/" should list everything under that directory."""
        keys = populated.list_objects("foo/")

        assert sorted(keys) == ["foo/a.txt", "foo/sub/b.txt"]

    def test_partial_name_inside_directory(self, populated: LocalStorage) -> None:
        """The last prefix component should match entry names in its parent."""
        assert populated.list_objects("foo/su") == ["foo/sub/b.txt"]

    def test_empty_prefix_lists_everything(self, populated: LocalStorage) -> None:
        """An empty prefix should list the whole store."""
        keys = populated.list_objects("")

        assert sorted(keys) == ["bar.txt", "foo.txt", "foo/a.txt", "foo/sub/b.txt"]

    def test_no_match_returns_empty_list(self, populated: LocalStorage) -> None:
        """A prefix matching nothing should return an empty list."""
        assert populated.list_objects("missing") == []
        assert populated.list_objects("nope/deeper/") == []

    def test_prefix_matches_name_start(self, store: LocalStorage) -> None:
        """A prefix matches the start of file names in its directory."""
        store.upload_data(b"x", "test-x.txt", "text/plain")

        keys = store.list_objects("test")

        assert any(key.endswith("test-x.txt") for key in keys)

    def test_listed_keys_can_be_downloaded(self, populated: LocalStorage) -> None:
        """Keys returned by list_objects should be valid storage paths."""
        for key in populated.list_objects(""):
            assert populated.download_data(key) == key.encode()


class TestDelete:
    """Tests for delete and empty-directory cleanup."""

    def test_delete_removes_object(self, populated: LocalStorage) -> None:
        """Deleted objects should no longer be downloadable."""
        populated.delete_object("bar.txt")

        with pytest.raises(ObjectNotFoundError):
            populated.download_data("bar.txt")

    def test_delete_prunes_empty_parents(
        self, populated: LocalStorage, storage_dir: Path
    ) -> None:
        """Empty directories left behind should be removed up to the first non-empty one."""
        populated.delete_object("foo/sub/b.txt")

        assert not (storage_dir / "foo" / "sub").exists()
        assert (storage_dir / "foo").is_dir()

        populated.delete_object("foo/a.txt")

        assert not (storage_dir / "foo").exists()

    def test_delete_never_removes_root(self, store: LocalStorage, storage_dir: Path) -> None:
        """Deleting the last object should leave the storage root in place."""
        store.upload_data(b"only", "deep/tree/only.txt", "text/plain")

        store.delete_object("deep/tree/only.txt")

        assert storage_dir.is_dir()
        assert list(storage_dir.iterdir()) == []

    def test_delete_missing_raises_not_found(self, store: LocalStorage) -> None:
        """Deleting a missing object should raise ObjectNotFoundError."""
        with pytest.raises(ObjectNotFoundError) as exc_info:
            store.delete_object("ghost.txt")

        assert exc_info.value.key == "ghost.txt"
        assert exc_info.value.backend == "local"

    def test_delete_objects_stops_at_first_failure(self, store: LocalStorage) -> None:
        """Batch delete should stop on the first error without rolling back."""
        store.upload_data(b"a", "a.txt", "text/plain")
        store.upload_data(b"c", "c.txt", "text/plain")

        with pytest.raises(ObjectNotFoundError):
            store.delete_objects(["a.txt", "missing.txt", "c.txt"])

        assert store.list_objects("") == ["c.txt"]


class TestPathTraversalPrevention:
    """Tests for path traversal attack prevention."""

    @pytest.mark.parametrize(
        "invalid_key",
        [
            "../escape",
            "foo/../../escape",
            "normal/../../../etc/passwd",
        ],
    )
    def test_upload_rejects_traversal_keys(self, store: LocalStorage, invalid_key: str) -> None:
        """Upload should reject keys that resolve outside the root."""
        with pytest.raises(PathTraversalError):
            store.upload_data(b"data", invalid_key, "text/plain")

    @pytest.mark.parametrize("invalid_key", ["../escape", "a/../../b"])
    def test_download_rejects_traversal_keys(
        self, store: LocalStorage, invalid_key: str
    ) -> None:
        """Download should reject keys that resolve outside the root."""
        with pytest.raises(PathTraversalError):
            store.download_data(invalid_key)

    def test_delete_rejects_traversal_keys(self, store: LocalStorage) -> None:
        """Delete should reject keys that resolve outside the root."""
        with pytest.raises(PathTraversalError):
            store.delete_object("../outside.txt")

    def test_root_itself_is_not_an_object(self, store: LocalStorage) -> None:
        """Keys resolving to the root should be rejected."""
        with pytest.raises(PathTraversalError):
            store.upload_data(b"data", "", "text/plain")
        with pytest.raises(PathTraversalError):
            store.delete_object("sub/..")

    def test_list_rejects_traversal_prefix(self, store: LocalStorage) -> None:
        """Listing outside the root should be rejected."""
        with pytest.raises(PathTraversalError):
            store.list_objects("../")


class TestErrorHandling:
    """Tests for error translation."""

    def test_download_missing_raises_not_found(self, store: LocalStorage) -> None:
        """Downloading a missing object should raise ObjectNotFoundError."""
        with pytest.raises(ObjectNotFoundError):
            store.download_data("nope.bin")

    def test_download_directory_raises_not_found(self, populated: LocalStorage) -> None:
        """A directory is not an object."""
        with pytest.raises(ObjectNotFoundError):
            populated.download_data("foo")

    def test_download_file_missing_raises_not_found(
        self, store: LocalStorage, tmp_path: Path
    ) -> None:
        """download_file of a missing object should not create the destination."""
        destination = tmp_path / "dl" / "out.bin"

        with pytest.raises(ObjectNotFoundError):
            store.download_file(destination, "nope.bin")

        assert not destination.exists()

    def test_upload_file_missing_source(self, store: LocalStorage, tmp_path: Path) -> None:
        """A missing source file should surface as StorageBackendError."""
        with pytest.raises(StorageBackendError) as exc_info:
            store.upload_file(tmp_path / "absent.bin", "k", "text/plain")

        assert isinstance(exc_info.value.cause, FileNotFoundError)

    def test_storage_dir_must_be_directory(self, tmp_path: Path) -> None:
        """A storage_dir that is a regular file should be rejected."""
        not_a_dir = tmp_path / "file"
        not_a_dir.write_text("x")

        with pytest.raises(ConfigurationError):
            LocalStorage(LocalConfig(storage_dir=str(not_a_dir)))


class TestBackendProperties:
    """Tests for backend identity and presigned URLs."""

    def test_backend_name(self, store: LocalStorage) -> None:
        """Backend name should be "local"."""
        assert store.backend_name == "local"

    def test_root_is_absolute(self, store: LocalStorage) -> None:
        """Root should be resolved to an absolute path."""
        assert store.root.is_absolute()

    def test_presigned_url_is_file_uri(self, store: LocalStorage) -> None:
        """Presigned URLs are plain file:// URIs."""
        store.upload_data(b"x", "media/clip.mp4", "video/mp4")

        url = store.generate_presigned_url("media/clip.mp4", timedelta(minutes=5))

        assert url.startswith("file://")
        assert url.endswith("/media/clip.mp4")


class TestDownloadDestination:
    """Tests for how download_file treats an existing destination."""

    def test_missing_object_keeps_existing_file(
        self, store: LocalStorage, tmp_path: Path
    ) -> None:
        """A missing object leaves a pre-existing destination untouched."""
        destination = tmp_path / "keep.txt"
        destination.write_bytes(b"keep me")

        with pytest.raises(ObjectNotFoundError):
            store.download_file(destination, "missing.bin")

        assert destination.read_bytes() == b"keep me"

    def test_failed_copy_keeps_existing_file(
        self, store: LocalStorage, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """A copy failing midway neither truncates the destination nor leaves a partial file."""
        store.upload_data(b"0123456789", "obj.bin", "application/octet-stream")
        out_dir = tmp_path / "out"
        out_dir.mkdir()
        destination = out_dir / "obj.bin"
        destination.write_bytes(b"keep me")

        def _failing_copy(src: BinaryIO, dst: BinaryIO, length: int = 0) -> None:
            dst.write(src.read(3))
            raise OSError(errno.ENOSPC, "No space left on device")

        monkeypatch.setattr(local_module.shutil, "copyfileobj", _failing_copy)

        with pytest.raises(StorageBackendError):
            store.download_file(destination, "obj.bin")

        assert destination.read_bytes() == b"keep me"
        assert list(out_dir.iterdir()) == [destination]

    def test_download_replaces_existing_file(self, store: LocalStorage, tmp_path: Path) -> None:
        """A successful download overwrites the destination."""
        store.upload_data(b"new", "obj.bin", "application/octet-stream")
        destination = tmp_path / "obj.bin"
        destination.write_bytes(b"old and longer")

        assert store.download_file(destination, "obj.bin") == 3
        assert destination.read_bytes() == b"new"


class TestConcurrentUse:
    """Tests for one adapter shared between threads."""

    def test_uploads_and_deletes_under_shared_directory(self, store: LocalStorage) -> None:
        """Directory cleanup racing with uploads and listings never fails a call."""
        errors: list[BaseException] = []
        stop_listing = threading.Event()

        def _writer(name: str) -> None:
            try:
                for i in range(500):
                    key = f"a/b/{name}-{i}.txt"
                    store.upload_data(b"x", key, "text/plain")
                    store.delete_object(key)
            except BaseException as e:  # noqa: BLE001
                errors.append(e)

        def _lister() -> None:
            try:
                while not stop_listing.is_set():
                    store.list_objects("a/")
            except BaseException as e:  # noqa: BLE001
                errors.append(e)

        writers = [threading.Thread(target=_writer, args=(name,)) for name in ("w1", "w2")]
        lister = threading.Thread(target=_lister)
        lister.start()
        for thread in writers:
            thread.start()
        for thread in writers:
            thread.join()
        stop_listing.set()
        lister.join()

        assert errors == []
        assert store.list_objects("") == []
