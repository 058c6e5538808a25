"""
Object storage for encrypted uploads

Structure Map for reference:
==============================
 - <storage_root>/
      - {object_key}        (ciphertext, complete)
      - {object_key}.part   (ciphertext being written)
==============================
For reference:
> The store is a plain byte sink/source. It never sees plaintext and knows
  nothing about keys or records.
> Objects are written under a temporary ``.part`` name and renamed on success,
  so a reader never observes a half-written object.
> The services only depend on the ObjectStorage interface (streamed write of
  unknown length, streamed read, exists, delete); LocalObjectStorage is the
  filesystem backend.
"""

from __future__ import annotations

import abc
import contextlib
import logging
from pathlib import Path
from typing import AsyncIterable, AsyncIterator, Optional

import aiofiles
import aiofiles.os

from .exceptions import StorageError

logger = logging.getLogger(__name__)

PART_SUFFIX = ".part"


@contextlib.contextmanager
def _sink_errors(key: str):
    """Report filesystem failures of the sink itself as StorageError."""
    try:
        yield
    except OSError as e:
        raise StorageError(f"Failed to write object {key}: {e}") from e


class ObjectStorage(abc.ABC):
    """Minimal streaming object store used by the upload and download services."""

    @abc.abstractmethod
    async def write_stream(self, key: str, source: AsyncIterable[bytes]) -> int:
        """Consume ``source`` into object ``key`` and return the number of bytes stored."""

    @abc.abstractmethod
    def read_stream(self, key: str, chunk_size: int = 64 * 1024) -> AsyncIterator[bytes]:
        """Return an async iterator over the bytes of object ``key``."""

    @abc.abstractmethod
    async def exists(self, key: str) -> bool:
        """Return True if object ``key`` is stored."""

    @abc.abstractmethod
    async def delete(self, key: str) -> bool:
        """Remove object ``key``; return False if it did not exist."""


class LocalObjectStorage(ObjectStorage):
    """Filesystem-backed object store with an optional total quota."""

    def __init__(self, root_path: Optional[str] = None, quota_bytes: Optional[int] = None):
        self.root = (
            Path(root_path).expanduser() if root_path else Path.home() / ".vaultzip" / "objects"
        )
        self.root.mkdir(parents=True, exist_ok=True)
        self.quota_bytes = quota_bytes

    def object_path(self, key: str) -> Path:
        if not key or key in (".", "..") or "/" in key or "\\" in key or "\x00" in key:
            raise StorageError(f"Invalid object key: {key!r}")
        if key.endswith(PART_SUFFIX):
            raise StorageError(f"Object keys may not end with {PART_SUFFIX}")
        return self.root / key

    def used_bytes(self) -> int:
        total = 0
        for entry in self.root.iterdir():
            if entry.is_file() and not entry.name.endswith(PART_SUFFIX):
                total += entry.stat().st_size
        return total

    async def write_stream(self, key: str, source: AsyncIterable[bytes]) -> int:
        destination = self.object_path(key)
        tmp_path = destination.with_name(destination.name + PART_SUFFIX)
        budget = None
        if self.quota_bytes is not None:
            budget = self.quota_bytes - self.used_bytes()

        written = 0
        try:
            with _sink_errors(key):
                f = await aiofiles.open(tmp_path, "wb")
            try:
                # errors raised by the source propagate unchanged
                async for chunk in source:
                    written += len(chunk)
                    if budget is not None and written > budget:
                        raise StorageError(
                            f"Storage quota exceeded while writing {key}"
                        )
                    with _sink_errors(key):
                        await f.write(chunk)
            finally:
                with _sink_errors(key):
                    await f.close()
            with _sink_errors(key):
                await aiofiles.os.replace(tmp_path, destination)
        except BaseException:
            # includes cancellation: never leave a partial object behind
            await self._discard(tmp_path)
            raise

        logger.debug("stored object %s (%d bytes)", key, written)
        return written

    def read_stream(self, key: str, chunk_size: int = 64 * 1024) -> AsyncIterator[bytes]:
        path = self.object_path(key)
        if not path.is_file():
            raise StorageError(f"Object {key} not found")
        return self._read(path, key, chunk_size)

    async def _read(self, path: Path, key: str, chunk_size: int) -> AsyncIterator[bytes]:
        try:
            async with aiofiles.open(path, "rb") as f:
                while True:
                    chunk = await f.read(chunk_size)
                    if not chunk:
                        break
                    yield chunk
        except OSError as e:
            raise StorageError(f"Failed to read object {key}: {e}") from e

    async def exists(self, key: str) -> bool:
        return await aiofiles.os.path.isfile(self.object_path(key))

    async def delete(self, key: str) -> bool:
        path = self.object_path(key)
        try:
            await aiofiles.os.remove(path)
        except FileNotFoundError:
            return False
        except OSError as e:
            raise StorageError(f"Failed to delete object {key}: {e}") from e
        return True

    async def _discard(self, path: Path) -> None:
        try:
            await aiofiles.os.remove(path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning("could not remove partial object %s: %s", path.name, e)
