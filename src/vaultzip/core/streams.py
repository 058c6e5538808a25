"""Composable async byte streams.

Everything that moves file bytes in VaultZip is an async iterable of
``bytes`` chunks. Consumers pull one chunk at a time, so a slow sink slows the
source down (backpressure) and memory stays bounded by the chunk size.

:class:`ByteStream` wraps a source and adds two one-shot hooks:

- ``on_end`` runs at most once, when the source is exhausted normally
- ``on_cancel`` runs at most once, when the stream is torn down early
  (consumer stopped, task cancelled, or :meth:`ByteStream.cancel` called)

Exactly one of the two ever runs.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from pathlib import Path
from typing import AsyncIterable, AsyncIterator, Awaitable, Callable, Optional, Union

import aiofiles

logger = logging.getLogger(__name__)

Hook = Callable[[], Union[None, Awaitable[None]]]


async def _call_hook(hook: Optional[Hook]) -> None:
    if hook is None:
        return
    result = hook()
    if inspect.isawaitable(result):
        await result


async def aclose_quietly(stream) -> None:
    """Close an async iterator if it supports it; cleanup failures are logged, not raised."""
    aclose = getattr(stream, "aclose", None)
    if aclose is None:
        return
    try:
        await aclose()
    except Exception as e:
        logger.debug("error while closing stream: %s", e)


class ByteStream:
    """Async iterator over a byte source with one-shot end and cancel hooks."""

    def __init__(
        self,
        source: AsyncIterable[bytes],
        on_end: Optional[Hook] = None,
        on_cancel: Optional[Hook] = None,
    ):
        self._source = source.__aiter__()
        self._on_end = on_end
        self._on_cancel = on_cancel
        self.bytes_read = 0
        self.ended = False
        self.cancelled = False

    @property
    def closed(self) -> bool:
        return self.ended or self.cancelled

    def __aiter__(self) -> "ByteStream":
        return self

    async def __anext__(self) -> bytes:
        if self.closed:
            raise StopAsyncIteration
        try:
            chunk = await self._source.__anext__()
        except StopAsyncIteration:
            self.ended = True
            await _call_hook(self._on_end)
            raise
        except asyncio.CancelledError:
            await self.cancel()
            raise
        self.bytes_read += len(chunk)
        return chunk

    async def cancel(self) -> None:
        """Tear the stream down. Safe to call more than once; the hook runs once."""
        if self.closed:
            return
        self.cancelled = True
        await aclose_quietly(self._source)
        await _call_hook(self._on_cancel)

    async def aclose(self) -> None:
        await self.cancel()


async def iter_bytes(data: bytes, chunk_size: int = 64 * 1024) -> AsyncIterator[bytes]:
    """Yield an in-memory buffer in fixed-size chunks."""
    view = memoryview(data)
    for start in range(0, len(view), chunk_size):
        yield bytes(view[start:start + chunk_size])
        await asyncio.sleep(0)


async def iter_file(path: Union[str, Path], chunk_size: int = 64 * 1024) -> AsyncIterator[bytes]:
    """Yield the contents of a file in fixed-size chunks."""
    async with aiofiles.open(path, "rb") as f:
        while True:
            chunk = await f.read(chunk_size)
            if not chunk:
                break
            yield chunk


async def concat(*sources: Union[bytes, AsyncIterable[bytes]]) -> AsyncIterator[bytes]:
    """
    Yield from each source in order. ``bytes`` items are emitted as-is.

    If the consumer stops early every source that was not fully consumed is
    closed.
    """
    pending = list(sources)
    try:
        while pending:
            source = pending.pop(0)
            if isinstance(source, (bytes, bytearray)):
                if source:
                    yield bytes(source)
                continue
            try:
                async for chunk in source:
                    yield chunk
            finally:
                await aclose_quietly(source)
    finally:
        for source in pending:
            if not isinstance(source, (bytes, bytearray)):
                await aclose_quietly(source)
