"""omnistore local filesystem backend.

Provides local filesystem storage rooted at one absolute directory with:
- Root-relative storage paths, checked to resolve inside the root
- Intermediate directory creation on upload
- Prefix listing that matches both file names and directory names
- Upward cleanup of empty directories on delete, never past the root

Local failures are not retried.
"""

from __future__ import annotations

import errno
import logging
import os
import shutil
from datetime import timedelta
from pathlib import Path
from typing import BinaryIO

from omnistore.config import LocalConfig
from omnistore.errors import (
    ConfigurationError,
    ObjectNotFoundError,
    PathTraversalError,
    StorageBackendError,
)
from omnistore.object_store import LocalPath, Storage, UploadResult
from omnistore.staging import staged_download
from omnistore.tracing import traced_storage_operation

logger = logging.getLogger(__name__)

_COPY_BUFFER_SIZE = 1024 * 1024
_CREATE_ATTEMPTS = 5


class LocalStorage(Storage):
    """Filesystem-based storage implementation.

    Objects live at {storage_dir}/{storage_path}. Directories are created on
    demand and removed again once the last object below them is deleted, so
    the tree mirrors a flat object namespace.
    """

    def __init__(self, config: LocalConfig) -> None:
        """Initialize filesystem storage.

        Args:
            config: Local backend configuration. storage_dir is resolved to
                an absolute path once, here.

        Raises:
            ConfigurationError: If storage_dir exists and is not a directory.
        """
        root = Path(config.storage_dir).expanduser().resolve()
        if root.exists() and not root.is_dir():
            raise ConfigurationError(
                f"storage_dir is not a directory: {config.storage_dir}",
                backend="local",
            )
        self._root = root
        logger.debug("LocalStorage initialized with root=%s", self._root)

    @property
    def backend_name(self) -> str:
        """Return the backend identifier."""
        return "local"

    @property
    def root(self) -> Path:
        """Return the storage root directory."""
        return self._root

    def _resolve(self, storage_path: str) -> Path:
        """Join storage_path onto the root and ensure it stays inside it."""
        path = self._root / storage_path.lstrip("/")
        resolved = path.resolve()
        try:
            resolved.relative_to(self._root)
        except ValueError as e:
            raise PathTraversalError(backend="local", key=storage_path) from e
        return resolved

    def _object_path(self, storage_path: str) -> Path:
        """Resolve a path that must name an object, never the root itself."""
        path = self._resolve(storage_path)
        if path == self._root:
            raise PathTraversalError(
                message="Invalid storage path: the storage root is not an object",
                backend="local",
                key=storage_path,
            )
        return path

    def _create(self, target: Path) -> BinaryIO:
        """Open target for writing, creating its parent directories.

        A concurrent delete may prune a freshly created parent before the
        file exists in it. The parents are then recreated and the open is
        retried.
        """
        attempt = 1
        while True:
            try:
                target.parent.mkdir(parents=True, exist_ok=True)
                return open(target, "wb")
            except FileNotFoundError:
                if attempt >= _CREATE_ATTEMPTS:
                    raise
                attempt += 1

    @traced_storage_operation("upload_data")
    def upload_data(self, data: bytes, storage_path: str, content_type: str) -> UploadResult:
        """Write data to {root}/{storage_path}. content_type is not recorded."""
        target = self._object_path(storage_path)

        try:
            with self._create(target) as dst:
                dst.write(data)
        except OSError as e:
            raise StorageBackendError(
                message=f"Failed to write object: {e}",
                backend="local",
                key=storage_path,
                cause=e,
            ) from e

        logger.debug("Stored object: key=%s size=%d", storage_path, len(data))
        return UploadResult(str(target), len(data))

    @traced_storage_operation("upload_file")
    def upload_file(
        self, local_path: LocalPath, storage_path: str, content_type: str
    ) -> UploadResult:
        """Copy a local file into storage."""
        target = self._object_path(storage_path)

        try:
            with open(local_path, "rb") as src:
                size = os.fstat(src.fileno()).st_size
                with self._create(target) as dst:
                    shutil.copyfileobj(src, dst, _COPY_BUFFER_SIZE)
        except OSError as e:
            raise StorageBackendError(
                message=f"Failed to copy file into storage: {e}",
                backend="local",
                key=storage_path,
                cause=e,
            ) from e

        logger.debug("Stored file: key=%s size=%d", storage_path, size)
        return UploadResult(str(target), size)

    @traced_storage_operation("download_data")
    def download_data(self, storage_path: str) -> bytes:
        """Read {root}/{storage_path} into memory."""
        source = self._object_path(storage_path)
        try:
            return source.read_bytes()
        except (FileNotFoundError, IsADirectoryError) as e:
            raise ObjectNotFoundError(backend="local", key=storage_path) from e
        except OSError as e:
            raise StorageBackendError(
                message=f"Failed to read object: {e}",
                backend="local",
                key=storage_path,
                cause=e,
            ) from e

    @traced_storage_operation("download_file")
    def download_file(self, local_path: LocalPath, storage_path: str) -> int:
        """Copy {root}/{storage_path} to local_path, creating its parents.

        local_path is only replaced once the copy is complete.
        """
        source = self._object_path(storage_path)

        try:
            with open(source, "rb") as src, staged_download(Path(local_path)) as staging:
                with open(staging, "wb") as dst:
                    shutil.copyfileobj(src, dst, _COPY_BUFFER_SIZE)
                    size = dst.tell()
            return size
        except (FileNotFoundError, IsADirectoryError) as e:
            if not source.is_file():
                raise ObjectNotFoundError(backend="local", key=storage_path) from e
            raise StorageBackendError(
                message=f"Failed to write destination file: {e}",
                backend="local",
                key=storage_path,
                cause=e,
            ) from e
        except OSError as e:
            raise StorageBackendError(
                message=f"Failed to copy object to file: {e}",
                backend="local",
                key=storage_path,
                cause=e,
            ) from e

    @traced_storage_operation("list_objects")
    def list_objects(self, prefix: str) -> list[str]:
        """List root-relative keys matching prefix.

        The last component of prefix is matched against entry names in its
        parent directory: matching files are returned and matching
        directories are walked recursively. list_objects("foo") therefore
        returns both "foo.txt" and everything under "foo/". An empty prefix,
        or one ending in "/", lists the whole directory.
        """
        if not prefix or prefix.endswith("/"):
            directory = self._resolve(prefix)
            name_prefix = ""
        else:
            target = self._resolve(prefix)
            if target == self._root:
                directory, name_prefix = target, ""
            else:
                directory, name_prefix = target.parent, target.name

        try:
            entries = sorted(os.scandir(directory), key=lambda entry: entry.name)
        except (FileNotFoundError, NotADirectoryError):
            return []
        except OSError as e:
            raise StorageBackendError(
                message=f"Failed to list directory: {e}",
                backend="local",
                key=prefix,
                cause=e,
            ) from e

        keys: list[str] = []
        for entry in entries:
            if not entry.name.startswith(name_prefix):
                continue
            if entry.is_dir(follow_symlinks=False):
                keys.extend(self._walk(Path(entry.path), prefix))
            else:
                keys.append(self._key_for(Path(entry.path)))
        return keys

    def _walk(self, directory: Path, prefix: str) -> list[str]:
        def _raise(e: OSError) -> None:
            if isinstance(e, FileNotFoundError):
                # Removed by a concurrent delete after it was listed.
                return
            raise StorageBackendError(
                message=f"Failed to walk directory: {e}",
                backend="local",
                key=prefix,
                cause=e,
            ) from e

        keys: list[str] = []
        for dirpath, dirnames, filenames in os.walk(directory, onerror=_raise):
            dirnames.sort()
            for filename in sorted(filenames):
                keys.append(self._key_for(Path(dirpath) / filename))
        return keys

    def _key_for(self, path: Path) -> str:
        return path.relative_to(self._root).as_posix()

    @traced_storage_operation("generate_presigned_url")
    def generate_presigned_url(self, storage_path: str, expiration: timedelta) -> str:
        """Return a file:// URI. Local files have no expiry."""
        return self._object_path(storage_path).as_uri()

    @traced_storage_operation("delete_object")
    def delete_object(self, storage_path: str) -> None:
        """Delete a file, then remove directories it leaves empty.

        Walks up from the file's directory and removes each empty directory,
        stopping at the first non-empty one or at the storage root. The root
        itself is never removed.
        """
        target = self._object_path(storage_path)

        try:
            target.unlink()
        except (FileNotFoundError, IsADirectoryError) as e:
            raise ObjectNotFoundError(backend="local", key=storage_path) from e
        except OSError as e:
            raise StorageBackendError(
                message=f"Failed to delete object: {e}",
                backend="local",
                key=storage_path,
                cause=e,
            ) from e

        directory = target.parent
        while directory != self._root:
            try:
                directory.rmdir()
            except FileNotFoundError:
                # Already pruned by a concurrent delete.
                break
            except OSError as e:
                if e.errno in (errno.ENOTEMPTY, errno.EEXIST):
                    break
                raise StorageBackendError(
                    message=f"Failed to remove empty directory: {e}",
                    backend="local",
                    key=storage_path,
                    cause=e,
                ) from e
            directory = directory.parent

        logger.debug("Deleted object: key=%s", storage_path)
