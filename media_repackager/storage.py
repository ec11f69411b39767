"""
Object storage containers holding the source objects of an asset and
receiving the packaged output.

Each transport implements the ObjectContainer protocol:
- LocalContainer: a directory on the local file system (aiofiles)
- HttpContainer: an Azure-style blob container reached over HTTPS (httpx)
"""

import asyncio
import base64
import logging
import os
import uuid
from collections.abc import AsyncIterable, AsyncIterator
from pathlib import Path
from typing import Protocol, runtime_checkable
from urllib.parse import quote

import aiofiles
import aiofiles.os
import httpx
import xmltodict

from media_repackager.configs import settings
from media_repackager.utils.http_utils import DownloadError, create_httpx_client, request_with_retry

logger = logging.getLogger(__name__)


class ObjectNotFoundError(Exception):
    def __init__(self, container: str, name: str):
        self.container = container
        self.name = name
        super().__init__(f"Object {name} not found in container {container}")


@runtime_checkable
class ObjectContainer(Protocol):
    """
    Protocol for reading and writing the objects of one container.

    Implementations must provide:
    - name: container identity used in logs
    - exists(): whether the container itself exists
    - object_exists(): whether an object exists
    - list_objects(): object names under a prefix, sorted
    - open_read(): async iterator of the object's bytes
    - upload(): store an object from an async iterable of chunks
    """

    @property
    def name(self) -> str: ...

    async def exists(self) -> bool: ...

    async def object_exists(self, name: str) -> bool: ...

    async def list_objects(self, prefix: str = "") -> list[str]: ...

    def open_read(self, name: str) -> AsyncIterator[bytes]: ...

    async def upload(self, name: str, chunks: AsyncIterable[bytes]) -> int: ...


async def read_object(container: ObjectContainer, name: str) -> bytes:
    """Read a whole (small) object into memory."""
    data = bytearray()
    async for chunk in container.open_read(name):
        data.extend(chunk)
    return bytes(data)


async def iter_file(path: str | Path, chunk_size: int | None = None) -> AsyncIterator[bytes]:
    """Stream a local file in chunks."""
    async with aiofiles.open(path, "rb") as f:
        while chunk := await f.read(chunk_size or settings.chunk_size):
            yield chunk


class LocalContainer:
    """ObjectContainer backed by a local directory; object names are relative POSIX paths."""

    def __init__(self, root: str | Path, chunk_size: int | None = None) -> None:
        self._root = Path(root)
        self._chunk_size = chunk_size or settings.chunk_size

    @property
    def name(self) -> str:
        return self._root.name

    @property
    def root(self) -> Path:
        return self._root

    def _path(self, name: str) -> Path:
        return self._root.joinpath(*name.split("/"))

    async def exists(self) -> bool:
        return await aiofiles.os.path.isdir(self._root)

    async def object_exists(self, name: str) -> bool:
        return await aiofiles.os.path.isfile(self._path(name))

    async def list_objects(self, prefix: str = "") -> list[str]:
        def _walk() -> list[str]:
            names = []
            for directory, _, files in os.walk(self._root):
                for file_name in files:
                    relative = Path(directory, file_name).relative_to(self._root).as_posix()
                    if relative.startswith(prefix):
                        names.append(relative)
            return sorted(names)

        return await asyncio.to_thread(_walk)

    async def open_read(self, name: str) -> AsyncIterator[bytes]:
        path = self._path(name)
        if not await aiofiles.os.path.isfile(path):
            raise ObjectNotFoundError(self.name, name)
        async for chunk in iter_file(path, self._chunk_size):
            yield chunk

    async def upload(self, name: str, chunks: AsyncIterable[bytes]) -> int:
        path = self._path(name)
        await aiofiles.os.makedirs(path.parent, exist_ok=True)
        temp_path = path.with_name(f".{path.name}.{uuid.uuid4().hex}.tmp")
        written = 0
        try:
            async with aiofiles.open(temp_path, "wb") as f:
                async for chunk in chunks:
                    await f.write(chunk)
                    written += len(chunk)
            await aiofiles.os.replace(temp_path, path)
        except BaseException:
            if await aiofiles.os.path.exists(temp_path):
                await aiofiles.os.remove(temp_path)
            raise
        logger.debug(f"Uploaded {name} ({written} bytes) to {self._root}")
        return written


class HttpContainer:
    """
    ObjectContainer backed by a blob container reached over HTTPS.

    ``base_url`` is the container URL (``https://account.blob.core.windows.net/container``)
    and ``sas_token`` an optional shared access signature query string.
    Uploads are staged as blocks of ``chunk_size`` and committed with a block list.
    """

    def __init__(self, base_url: str, sas_token: str | None = None, chunk_size: int | None = None) -> None:
        self._base_url = base_url.rstrip("/")
        self._sas_token = (sas_token or "").lstrip("?")
        self._chunk_size = chunk_size or settings.chunk_size

    @property
    def name(self) -> str:
        return self._base_url.rsplit("/", 1)[-1]

    def _url(self, name: str | None = None, **query: str) -> str:
        url = self._base_url if name is None else f"{self._base_url}/{quote(name)}"
        params = [f"{key}={quote(str(value), safe='')}" for key, value in query.items()]
        if self._sas_token:
            params.append(self._sas_token)
        return f"{url}?{'&'.join(params)}" if params else url

    @staticmethod
    def _check(response: httpx.Response, url: str) -> None:
        if not response.is_success:
            raise DownloadError(response.status_code, f"HTTP error {response.status_code} for {url}")

    async def exists(self) -> bool:
        url = self._url(restype="container")
        async with create_httpx_client() as client:
            response = await request_with_retry(client, "GET", url)
            if response.status_code == 404:
                return False
            self._check(response, url)
            return True

    async def object_exists(self, name: str) -> bool:
        url = self._url(name)
        async with create_httpx_client() as client:
            response = await request_with_retry(client, "HEAD", url)
            if response.status_code == 404:
                return False
            self._check(response, url)
            return True

    async def list_objects(self, prefix: str = "") -> list[str]:
        names = []
        marker = ""
        async with create_httpx_client() as client:
            while True:
                url = self._url(restype="container", comp="list", prefix=prefix, marker=marker)
                response = await request_with_retry(client, "GET", url)
                self._check(response, url)
                result = xmltodict.parse(response.content)["EnumerationResults"]
                blobs = (result.get("Blobs") or {}).get("Blob") or []
                blobs = blobs if isinstance(blobs, list) else [blobs]
                names.extend(blob["Name"] for blob in blobs)
                marker = result.get("NextMarker") or ""
                if not marker:
                    break
        return sorted(names)

    async def open_read(self, name: str) -> AsyncIterator[bytes]:
        url = self._url(name)
        async with create_httpx_client() as client:
            response = await request_with_retry(client, "GET", url, stream=True)
            try:
                if response.status_code == 404:
                    raise ObjectNotFoundError(self.name, name)
                self._check(response, url)
                async for chunk in response.aiter_bytes(self._chunk_size):
                    yield chunk
            finally:
                await response.aclose()

    async def upload(self, name: str, chunks: AsyncIterable[bytes]) -> int:
        block_ids = []
        written = 0
        buffer = bytearray()
        async with create_httpx_client() as client:

            async def put_block(data: bytes) -> None:
                block_id = base64.b64encode(f"{len(block_ids):08d}".encode()).decode()
                url = self._url(name, comp="block", blockid=block_id)
                response = await request_with_retry(client, "PUT", url, content=data)
                self._check(response, url)
                block_ids.append(block_id)

            async for chunk in chunks:
                buffer.extend(chunk)
                written += len(chunk)
                while len(buffer) >= self._chunk_size:
                    await put_block(bytes(buffer[: self._chunk_size]))
                    del buffer[: self._chunk_size]
            if buffer or not block_ids:
                await put_block(bytes(buffer))

            block_list = "".join(f"<Latest>{block_id}</Latest>" for block_id in block_ids)
            url = self._url(name, comp="blocklist")
            response = await request_with_retry(
                client,
                "PUT",
                url,
                content=f'<?xml version="1.0" encoding="utf-8"?><BlockList>{block_list}</BlockList>',
            )
            self._check(response, url)
        logger.debug(f"Uploaded {name} ({written} bytes) to {self._base_url}")
        return written
