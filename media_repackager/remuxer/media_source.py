"""
Media source protocol for the reconstruction pipeline.

Decouples reconstruction, staging and the pipe transport from how an input
is stored. Every input, whether one object or a live-archive track spread
over many fragment objects, is pulled as one continuous byte stream with
storage decryption applied on the fly.
"""

import inspect
import logging
import os
from collections.abc import AsyncIterator
from typing import Any, Optional, Protocol, Union, runtime_checkable

import aiofiles
import aiofiles.os

from media_repackager.drm.decrypter import decrypter_for
from media_repackager.schemas import ClientManifest, ClientStream, DecryptInfo, StreamType, Track
from media_repackager.storage import ObjectContainer, ObjectNotFoundError
from media_repackager.utils.http_utils import DownloadError
from media_repackager.utils.mp4_utils import find_box
from media_repackager.utils.vtt_utils import WEBVTT_HEADER, format_cue, ttml_to_cues

logger = logging.getLogger(__name__)

Destination = Union[str, os.PathLike, Any]


class ReconstructionError(Exception):
    """Raised when a track of an asset cannot be reconstructed."""


@runtime_checkable
class MediaSource(Protocol):
    """
    Protocol for pulling one input of a packaging run.

    Implementations must provide:
    - name: identity of the input used in logs
    - stream(): async iterator of plaintext bytes
    - download(): copy the stream to a path or an async writable
    """

    @property
    def name(self) -> str:
        ...

    def stream(self) -> AsyncIterator[bytes]:
        ...

    async def download(self, destination: Destination) -> int:
        """
        Copy the whole stream to ``destination``.

        Returns:
            int: Bytes transferred.
        """
        ...


class BaseMediaSource:
    """Shared download logic; subclasses implement ``stream``."""

    bytes_transferred: int = 0

    @property
    def name(self) -> str:
        raise NotImplementedError

    def stream(self) -> AsyncIterator[bytes]:
        raise NotImplementedError

    async def download(self, destination: Destination) -> int:
        """
        Copy the stream to a file path or to an object with ``write`` (and optionally ``drain``).

        A path destination is written as ``<path>.part`` and renamed once the
        stream is complete; on any failure, cancellation included, the partial
        file is removed and the error propagates.
        """
        self.bytes_transferred = 0
        if isinstance(destination, (str, os.PathLike)):
            return await self._download_to_path(os.fspath(destination))

        async for chunk in self.stream():
            result = destination.write(chunk)
            if inspect.isawaitable(result):
                await result
            drain = getattr(destination, "drain", None)
            if drain is not None:
                await drain()
            self.bytes_transferred += len(chunk)
        return self.bytes_transferred

    async def _download_to_path(self, path: str) -> int:
        part_path = f"{path}.part"
        try:
            async with aiofiles.open(part_path, "wb") as f:
                async for chunk in self.stream():
                    await f.write(chunk)
                    self.bytes_transferred += len(chunk)
            await aiofiles.os.replace(part_path, path)
        except BaseException:
            if await aiofiles.os.path.exists(part_path):
                await aiofiles.os.remove(part_path)
            raise
        logger.debug(f"Downloaded {self.name} to {path} ({self.bytes_transferred} bytes)")
        return self.bytes_transferred


class ObjectSource(BaseMediaSource):
    """MediaSource backed by a single storage object."""

    def __init__(
        self, container: ObjectContainer, object_name: str, decrypt_info: Optional[DecryptInfo] = None
    ) -> None:
        self._container = container
        self._object_name = object_name
        self._decrypt_info = decrypt_info

    @property
    def name(self) -> str:
        return f"{self._container.name}/{self._object_name}"

    async def stream(self) -> AsyncIterator[bytes]:
        decrypter = decrypter_for(self._decrypt_info, self._object_name)
        async for chunk in self._container.open_read(self._object_name):
            yield decrypter.decrypt(chunk) if decrypter else chunk


class MultiFileSource(BaseMediaSource):
    """
    MediaSource presenting the fragment objects of a live-archive track as one stream.

    Audio and video yield the initialization header followed by every fragment
    in time order. Text tracks carry one TTML document per fragment mdat; they
    are converted and yielded as a single WebVTT document.

    The stream entry is resolved at construction, so ``start_time`` and
    ``time_scale`` are known before any byte is read.
    """

    def __init__(
        self,
        container: ObjectContainer,
        track: Track,
        client_manifest: Optional[ClientManifest],
        decrypt_info: Optional[DecryptInfo] = None,
    ) -> None:
        self._container = container
        self._track = track
        self._decrypt_info = decrypt_info

        stream = client_manifest.get_stream(track) if client_manifest else None
        if stream is None:
            raise ReconstructionError(
                f"No client manifest stream for {track.type.value} track {track.track_name} "
                f"({track.source}) in container {container.name}"
            )
        self._stream: ClientStream = stream
        self._fragment_names = stream.fragment_names(track.source)

    @property
    def name(self) -> str:
        return f"{self._container.name}/{self._track.source}"

    @property
    def track(self) -> Track:
        return self._track

    @property
    def start_time(self) -> int:
        return self._stream.start_time

    @property
    def time_scale(self) -> int:
        return self._stream.time_scale

    @property
    def fragment_names(self) -> list[str]:
        return list(self._fragment_names)

    async def _read_fragment(self, fragment_name: str) -> AsyncIterator[bytes]:
        decrypter = decrypter_for(self._decrypt_info, fragment_name)
        try:
            async for chunk in self._container.open_read(fragment_name):
                yield decrypter.decrypt(chunk) if decrypter else chunk
        except (ObjectNotFoundError, DownloadError) as e:
            raise ReconstructionError(
                f"Failed to read fragment {fragment_name} of track {self._track.track_id} "
                f"in container {self._container.name}: {e}"
            ) from e

    async def stream(self) -> AsyncIterator[bytes]:
        logger.info(
            f"Reconstructing {self._track.type.value} track {self._track.track_id} of {self._container.name} "
            f"from {len(self._fragment_names) - 1} fragments"
        )
        if self._track.type == StreamType.TEXT:
            async for chunk in self._stream_captions():
                yield chunk
            return

        for fragment_name in self._fragment_names:
            async for chunk in self._read_fragment(fragment_name):
                yield chunk

    async def _stream_captions(self) -> AsyncIterator[bytes]:
        yield f"{WEBVTT_HEADER}\n".encode()
        # The caption header object holds no cues.
        for fragment_name in self._fragment_names[1:]:
            data = bytearray()
            async for chunk in self._read_fragment(fragment_name):
                data.extend(chunk)
            mdat = find_box(data, b"mdat")
            if mdat is None:
                raise ReconstructionError(f"Caption fragment {fragment_name} in {self._container.name} has no mdat")
            for cue in ttml_to_cues(bytes(mdat)):
                yield f"\n{format_cue(cue)}\n".encode()

