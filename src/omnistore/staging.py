"""Atomic replacement of download destinations.

Downloads are written to a temporary file beside the destination and moved
into place with os.replace only once the transfer completed. A failed
download therefore leaves an existing destination file untouched and never
leaves partial content behind.
"""

from __future__ import annotations

import os
import tempfile
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path


@contextmanager
def staged_download(destination: Path) -> Iterator[Path]:
    """Yield a temporary path to write; move it onto destination on success.

    Parent directories of destination are created first. Any exception
    raised inside the block, or by the final rename, removes the temporary
    file and propagates unchanged.
    """
    destination.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_name = tempfile.mkstemp(
        dir=str(destination.parent),
        prefix=f".{destination.name}.",
        suffix=".part",
    )
    os.close(fd)
    temp_path = Path(temp_name)
    try:
        yield temp_path
        os.replace(temp_path, destination)
    except Exception:
        temp_path.unlink(missing_ok=True)
        raise
