"""
File-backed durable store.

One file per key under a directory. Writes go to a temp file that is
fsynced and then renamed over the target, so a crash leaves either the old
or the new value, never a torn one. Blocking I/O runs in a worker thread.
"""

import asyncio
import hashlib
import logging
import os
import tempfile
from pathlib import Path
from urllib.parse import quote

logger = logging.getLogger(__name__)

_MAX_NAME = 200
_SUFFIX = ".bin"
_TMP_SUFFIX = ".tmp"


class FileStore:
    """DurableStore persisting each key to its own file."""

    def __init__(self, directory: Path | str, fsync: bool = True):
        """
        Initialize file store.

        Args:
            directory: Directory holding the value files (created if missing)
            fsync: Flush file and directory to disk on every write
        """
        self.directory = Path(directory).expanduser()
        self.directory.mkdir(parents=True, exist_ok=True)
        self.fsync = fsync

    def path_for(self, key: str) -> Path:
        """Filesystem path that holds ``key``."""
        if not key:
            raise ValueError("key must be non-empty")
        name = quote(key, safe="")
        if len(name) > _MAX_NAME:
            name = hashlib.sha256(key.encode("utf-8")).hexdigest()
        return self.directory / f"{name}{_SUFFIX}"

    async def get(self, key: str) -> bytes | None:
        return await asyncio.to_thread(self._read, self.path_for(key))

    async def set(self, key: str, value: bytes) -> None:
        if not isinstance(value, (bytes, bytearray)):
            raise TypeError(f"value must be bytes, got {type(value).__name__}")
        await asyncio.to_thread(self._atomic_write, self.path_for(key), bytes(value))

    async def delete(self, key: str) -> None:
        await asyncio.to_thread(self._unlink, self.path_for(key))

    def _read(self, path: Path) -> bytes | None:
        try:
            return path.read_bytes()
        except FileNotFoundError:
            return None

    def _atomic_write(self, path: Path, data: bytes) -> None:
        """Write data atomically using a per-write temp file + rename; last rename wins."""
        fd, tmp_name = tempfile.mkstemp(
            dir=self.directory, prefix=f".{path.stem[:50]}.", suffix=_TMP_SUFFIX
        )
        tmp_path = Path(tmp_name)

        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
                f.flush()
                if self.fsync:
                    os.fsync(f.fileno())

            os.replace(tmp_path, path)

            if self.fsync:
                self._sync_directory()

        except Exception:
            tmp_path.unlink(missing_ok=True)
            raise

    def _sync_directory(self) -> None:
        # Directory fsync is not available on every platform
        if not hasattr(os, "O_DIRECTORY"):
            return
        dir_fd = os.open(str(self.directory), os.O_RDONLY | os.O_DIRECTORY)
        try:
            os.fsync(dir_fd)
        finally:
            os.close(dir_fd)

    def _unlink(self, path: Path) -> None:
        try:
            path.unlink()
        except FileNotFoundError:
            pass


__all__ = ["FileStore"]
