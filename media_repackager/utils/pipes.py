"""
Streaming transport between media sources, the packager process and storage.

When streaming mode is enabled, inputs bypass local disk: a SourcePipe pumps a
MediaSource into a named FIFO (or a process's stdin) and a SinkPipe drains a
FIFO (or a process's stdout) into an ObjectContainer upload. Producer and
consumer are decoupled by a BoundedPipe so a slow consumer blocks the producer
instead of letting it buffer without limit.
"""

import asyncio
import collections
import logging
import os
from typing import BinaryIO, Optional

from media_repackager.configs import settings
from media_repackager.remuxer.media_source import MediaSource
from media_repackager.storage import ObjectContainer

logger = logging.getLogger(__name__)


class PipeClosedError(Exception):
    """Raised when writing to, or reading from, a pipe closed before end of stream."""


class BoundedPipe:
    """
    Bounded producer/consumer channel of byte chunks.

    ``write`` blocks while ``max_chunks`` chunks are buffered. ``finish`` marks
    the end of stream; ``close`` discards buffered data and wakes every waiter.
    """

    def __init__(self, max_chunks: int):
        if max_chunks < 1:
            raise ValueError("max_chunks must be at least 1")
        self.max_chunks = max_chunks
        self.buffered_bytes = 0
        self.max_buffered_bytes = 0
        self._chunks: collections.deque[bytes] = collections.deque()
        self._condition = asyncio.Condition()
        self._finished = False
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def write(self, chunk: bytes) -> None:
        async with self._condition:
            await self._condition.wait_for(lambda: self._closed or len(self._chunks) < self.max_chunks)
            if self._closed or self._finished:
                raise PipeClosedError("Write to a closed pipe")
            self._chunks.append(chunk)
            self.buffered_bytes += len(chunk)
            self.max_buffered_bytes = max(self.max_buffered_bytes, self.buffered_bytes)
            self._condition.notify_all()

    async def read(self) -> Optional[bytes]:
        """Return the next chunk, or None at end of stream."""
        async with self._condition:
            await self._condition.wait_for(lambda: self._chunks or self._finished or self._closed)
            if self._chunks:
                chunk = self._chunks.popleft()
                self.buffered_bytes -= len(chunk)
                self._condition.notify_all()
                return chunk
            if self._closed:
                raise PipeClosedError("Read from a closed pipe")
            return None

    async def finish(self) -> None:
        async with self._condition:
            self._finished = True
            self._condition.notify_all()

    async def close(self) -> None:
        """Discard buffered chunks; blocked readers and writers wake up."""
        async with self._condition:
            self._closed = True
            self._chunks.clear()
            self.buffered_bytes = 0
            self._condition.notify_all()

    def __aiter__(self):
        return self

    async def __anext__(self) -> bytes:
        chunk = await self.read()
        if chunk is None:
            raise StopAsyncIteration
        return chunk


async def open_fifo(path: str, mode: str) -> BinaryIO:
    """
    Open one end of a FIFO without blocking the event loop.

    Opening a FIFO blocks until the other end is opened. If the caller is
    cancelled meanwhile, the opposite end is opened briefly so the pending
    open returns and its file can be closed.
    """
    opening = asyncio.ensure_future(asyncio.to_thread(open, path, mode, buffering=0))
    try:
        return await asyncio.shield(opening)
    except asyncio.CancelledError:
        flags = (os.O_RDONLY if "w" in mode else os.O_WRONLY) | os.O_NONBLOCK
        try:
            fd = os.open(path, flags)
        except OSError:
            fd = None
        try:
            f = await opening
            f.close()
        finally:
            if fd is not None:
                os.close(fd)
        raise


class _FifoPipe:
    """Base for pipes that may own a named FIFO at ``path``."""

    def __init__(self, path: Optional[str]):
        self.path = path
        self._file: Optional[BinaryIO] = None

    async def __aenter__(self):
        if self.path:
            if os.path.exists(self.path):
                os.remove(self.path)
            os.mkfifo(self.path)
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def close(self) -> None:
        if self._file is not None:
            self._file.close()
            self._file = None
        if self.path and os.path.exists(self.path):
            os.remove(self.path)


class SourcePipe(_FifoPipe):
    """
    Feeds a MediaSource into a named FIFO or into a process's stdin.

    Args:
        path: FIFO path; None when the source feeds a process's stdin.
        source: The media source to stream.
        max_chunks: Chunks buffered between the source and the consumer.
    """

    def __init__(self, path: Optional[str], source: MediaSource, max_chunks: Optional[int] = None):
        super().__init__(path)
        self.source = source
        self.pipe = BoundedPipe(max_chunks or settings.pipe_buffer_chunks)
        self.bytes_written = 0

    async def _produce(self) -> None:
        try:
            async for chunk in self.source.stream():
                await self.pipe.write(chunk)
            await self.pipe.finish()
        except BaseException:
            await self.pipe.close()
            raise

    async def _pump(self, write) -> int:
        producer = asyncio.create_task(self._produce())
        try:
            while (chunk := await self.pipe.read()) is not None:
                await write(chunk)
                self.bytes_written += len(chunk)
            await producer
        except PipeClosedError:
            # Surface the producer's failure rather than the closed pipe.
            await producer
            raise
        finally:
            await self.pipe.close()
            if not producer.done():
                producer.cancel()
            await asyncio.gather(producer, return_exceptions=True)
        logger.debug(f"Streamed {self.bytes_written} bytes of {self.source.name}")
        return self.bytes_written

    async def run(self) -> int:
        """Stream the source into the FIFO; returns when the consumer has received everything."""
        if not self.path:
            raise ValueError("SourcePipe.run requires a FIFO path")
        self._file = await open_fifo(self.path, "wb")
        fifo = self._file

        async def write(chunk: bytes) -> None:
            view = memoryview(chunk)
            while view:
                written = await asyncio.to_thread(fifo.write, view)
                view = view[written:]

        try:
            return await self._pump(write)
        finally:
            self.close()

    async def run_to_writer(self, writer: asyncio.StreamWriter) -> int:
        """Stream the source into a process's stdin, closing it at the end."""

        async def write(chunk: bytes) -> None:
            writer.write(chunk)
            await writer.drain()

        try:
            return await self._pump(write)
        finally:
            writer.close()


class SinkPipe(_FifoPipe):
    """
    Drains a named FIFO or a process's stdout into an object upload.

    Args:
        path: FIFO path; None when draining a process's stdout.
        container: Destination container.
        object_name: Name of the uploaded object.
    """

    def __init__(
        self, path: Optional[str], container: ObjectContainer, object_name: str, chunk_size: Optional[int] = None
    ):
        super().__init__(path)
        self.container = container
        self.object_name = object_name
        self.chunk_size = chunk_size or settings.chunk_size

    async def run(self) -> int:
        if not self.path:
            raise ValueError("SinkPipe.run requires a FIFO path")
        self._file = await open_fifo(self.path, "rb")
        fifo = self._file

        async def chunks():
            while chunk := await asyncio.to_thread(fifo.read, self.chunk_size):
                yield chunk

        try:
            return await self.container.upload(self.object_name, chunks())
        finally:
            self.close()

    async def run_from_reader(self, reader: asyncio.StreamReader) -> int:
        async def chunks():
            while chunk := await reader.read(self.chunk_size):
                yield chunk

        return await self.container.upload(self.object_name, chunks())
