import asyncio
import os
import sys

import pytest

from media_repackager.remuxer.media_source import BaseMediaSource
from media_repackager.storage import LocalContainer
from media_repackager.utils.pipes import BoundedPipe, PipeClosedError, SinkPipe, SourcePipe, open_fifo

CHUNK = b"x" * 1024


class _EndlessSource(BaseMediaSource):
    def __init__(self):
        self.produced = 0

    @property
    def name(self) -> str:
        return "endless"

    async def stream(self):
        while True:
            self.produced += 1
            yield CHUNK


class _ChunkSource(BaseMediaSource):
    def __init__(self, chunks: list[bytes]):
        self.chunks = chunks

    @property
    def name(self) -> str:
        return "chunks"

    async def stream(self):
        for chunk in self.chunks:
            yield chunk


class _FailingSource(BaseMediaSource):
    @property
    def name(self) -> str:
        return "failing"

    async def stream(self):
        yield CHUNK
        raise RuntimeError("source broke")


@pytest.mark.asyncio
async def test_bounded_pipe_delivers_in_order():
    pipe = BoundedPipe(2)

    async def produce():
        for i in range(5):
            await pipe.write(bytes([i]))
        await pipe.finish()

    producer = asyncio.create_task(produce())
    received = [chunk async for chunk in pipe]
    await producer

    assert received == [bytes([i]) for i in range(5)]
    assert pipe.max_buffered_bytes <= 2


@pytest.mark.asyncio
async def test_producer_blocks_when_consumer_never_reads():
    pipe = BoundedPipe(4)
    written = 0

    async def produce():
        nonlocal written
        while True:
            await pipe.write(CHUNK)
            written += 1

    producer = asyncio.create_task(produce())
    await asyncio.sleep(0.1)

    assert written == 4
    assert pipe.buffered_bytes <= 4 * len(CHUNK)
    assert not producer.done()

    await pipe.close()
    with pytest.raises(PipeClosedError):
        await asyncio.wait_for(producer, timeout=1)


@pytest.mark.asyncio
async def test_cancelling_blocked_producer_is_prompt():
    pipe = BoundedPipe(1)
    await pipe.write(CHUNK)
    producer = asyncio.create_task(pipe.write(CHUNK))
    await asyncio.sleep(0.01)

    producer.cancel()
    with pytest.raises(asyncio.CancelledError):
        await asyncio.wait_for(producer, timeout=1)


@pytest.mark.asyncio
async def test_close_wakes_blocked_consumer():
    pipe = BoundedPipe(2)
    consumer = asyncio.create_task(pipe.read())
    await asyncio.sleep(0.01)
    assert not consumer.done()

    await pipe.close()
    with pytest.raises(PipeClosedError):
        await asyncio.wait_for(consumer, timeout=1)


@pytest.mark.asyncio
async def test_read_after_close_raises():
    pipe = BoundedPipe(1)
    await pipe.close()

    with pytest.raises(PipeClosedError):
        await pipe.read()


def test_bounded_pipe_requires_capacity():
    with pytest.raises(ValueError):
        BoundedPipe(0)


@pytest.mark.asyncio
async def test_source_pipe_to_process_stdin():
    source = _ChunkSource([b"hello ", b"world"] * 100)
    process = await asyncio.create_subprocess_exec(
        sys.executable,
        "-c",
        "import sys; data = sys.stdin.buffer.read(); print(len(data))",
        stdin=asyncio.subprocess.PIPE,
        stdout=asyncio.subprocess.PIPE,
    )

    written = await SourcePipe(None, source, 2).run_to_writer(process.stdin)
    stdout, _ = await process.communicate()

    assert written == 1100
    assert stdout.strip() == b"1100"


@pytest.mark.asyncio
async def test_source_pipe_bounds_buffer_of_endless_source():
    source = _EndlessSource()
    pipe = SourcePipe(None, source, 3)
    received = 0

    async def slow_write(chunk: bytes) -> None:
        nonlocal received
        received += 1
        await asyncio.sleep(60)

    task = asyncio.create_task(pipe._pump(slow_write))
    await asyncio.sleep(0.1)

    assert received == 1
    assert pipe.pipe.buffered_bytes <= 3 * len(CHUNK)
    assert source.produced <= 3 + 2

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await asyncio.wait_for(task, timeout=1)


@pytest.mark.asyncio
async def test_source_failure_propagates():
    pipe = SourcePipe(None, _FailingSource(), 2)
    chunks = []

    async def write(chunk: bytes) -> None:
        chunks.append(chunk)

    with pytest.raises(RuntimeError, match="source broke"):
        await pipe._pump(write)


@pytest.mark.fifo
@pytest.mark.asyncio
async def test_fifo_round_trip(tmp_path):
    fifo_path = str(tmp_path / "input.mp4")
    output = LocalContainer(tmp_path / "output")
    payload = [bytes([i]) * 4096 for i in range(16)]

    async with SourcePipe(fifo_path, _ChunkSource(payload), 2) as source_pipe:
        sink_pipe = SinkPipe(fifo_path, output, "copy.mp4")
        results = await asyncio.wait_for(asyncio.gather(source_pipe.run(), sink_pipe.run()), timeout=10)

    assert results == [len(payload) * 4096, len(payload) * 4096]
    assert (tmp_path / "output" / "copy.mp4").read_bytes() == b"".join(payload)
    assert not os.path.exists(fifo_path)


@pytest.mark.fifo
@pytest.mark.asyncio
async def test_fifo_is_removed_when_consumer_never_opens(tmp_path):
    fifo_path = str(tmp_path / "input.mp4")

    async with SourcePipe(fifo_path, _EndlessSource(), 2) as source_pipe:
        assert os.path.exists(fifo_path)
        task = asyncio.create_task(source_pipe.run())
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await asyncio.wait_for(task, timeout=5)

    assert not os.path.exists(fifo_path)


@pytest.mark.fifo
@pytest.mark.asyncio
async def test_open_fifo_cancellation_returns(tmp_path):
    fifo_path = str(tmp_path / "pipe")
    os.mkfifo(fifo_path)

    task = asyncio.create_task(open_fifo(fifo_path, "rb"))
    await asyncio.sleep(0.05)
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await asyncio.wait_for(task, timeout=5)
