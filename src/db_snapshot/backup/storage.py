"""Blob storage for artifact bytes.

``BlobSink`` is the storage boundary the engine writes artifacts to and
reads uploads from.  ``LocalBlobSink`` keeps blobs as files in one
directory; locations are absolute file paths.

Usage:
    sink = LocalBlobSink("backups")
    location = await sink.put("oga-backup-2026-01-01.json", data)
    data = await sink.get(location)
"""

import os
import tempfile
from pathlib import Path
from typing import Protocol


class BlobSink(Protocol):
    """Storage boundary for artifact bytes."""

    async def put(self, name: str, data: bytes) -> str:
        """Store ``data`` under ``name`` and return its location."""
        ...

    async def get(self, location: str) -> bytes:
        """Return the bytes at ``location``.

        Raises:
            FileNotFoundError: If nothing is stored there.
        """
        ...

    async def exists(self, location: str) -> bool:
        ...

    async def delete(self, location: str) -> None:
        """Remove the blob; missing blobs are ignored."""
        ...


class LocalBlobSink:
    """``BlobSink`` backed by a local directory.

    Writes go to a temporary file in the same directory and are renamed
    into place, so a partially written artifact is never visible under its
    final name.
    """

    def __init__(self, root: str | Path) -> None:
        self._root = Path(root).resolve()

    @property
    def root(self) -> Path:
        return self._root

    def _resolve(self, location: str) -> Path:
        path = Path(location).resolve()
        if not path.is_relative_to(self._root):
            raise ValueError(f"Location outside blob root: {location}")
        return path

    async def put(self, name: str, data: bytes) -> str:
        self._root.mkdir(parents=True, exist_ok=True)
        target = self._resolve(str(self._root / Path(name).name))

        fd, tmp_name = tempfile.mkstemp(dir=self._root, prefix=".tmp-")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            os.replace(tmp_name, target)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        return str(target)

    async def get(self, location: str) -> bytes:
        return self._resolve(location).read_bytes()

    async def exists(self, location: str) -> bool:
        return self._resolve(location).is_file()

    async def delete(self, location: str) -> None:
        self._resolve(location).unlink(missing_ok=True)
