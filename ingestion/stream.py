"""
Chunked stream reader for large feeds.

Reads a URL or a local file in fixed-size byte windows so an export of
any size is moved through a bounded amount of memory. The memory guard
is consulted after every window.
"""

import asyncio
import logging
import os
import tempfile
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import AsyncIterator, BinaryIO, Dict, Optional, Union

import httpx

from core.config import settings
from core.exceptions import StreamIOError
from core.memory import MB, MemoryGuard, format_bytes

logger = logging.getLogger(__name__)


def _is_url(source: str) -> bool:
    return source.startswith(("http://", "https://"))


@dataclass
class StreamHandle:
    """An open source; either an HTTP response stream or a local file."""
    source: str
    chunk_size: int
    bytes_read: int = 0
    closed: bool = False
    _file: Optional[BinaryIO] = field(default=None, repr=False)
    _client: Optional[httpx.AsyncClient] = field(default=None, repr=False)
    _response: Optional[httpx.Response] = field(default=None, repr=False)
    _chunks: Optional[AsyncIterator[bytes]] = field(default=None, repr=False)


class ChunkedStreamReader:
    """
    Read a source window by window.

    Attributes:
        chunk_size: Window size in bytes (default STREAM_CHUNK_SIZE_MB)
        progress_every: Log a progress line every this many bytes
        timeout: HTTP timeout in seconds
    """

    def __init__(
        self,
        chunk_size: Optional[int] = None,
        memory_guard: Optional[MemoryGuard] = None,
        progress_every: Optional[int] = None,
        timeout: Optional[float] = None,
        headers: Optional[Dict[str, str]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.chunk_size = chunk_size or settings.STREAM_CHUNK_SIZE_MB * MB
        self.memory_guard = memory_guard or MemoryGuard()
        self.progress_every = progress_every or settings.STREAM_PROGRESS_EVERY_MB * MB
        self.timeout = timeout or settings.HTTP_TIMEOUT_SECONDS
        self.headers = headers or {}
        self.transport = transport

    async def open(self, source: Union[str, Path]) -> StreamHandle:
        """
        Open a URL or a local path for windowed reading.

        Raises:
            StreamIOError: If the source cannot be opened
        """
        source = str(source)
        handle = StreamHandle(source=source, chunk_size=self.chunk_size)

        if _is_url(source):
            client = httpx.AsyncClient(timeout=self.timeout, follow_redirects=True, transport=self.transport)
            try:
                request = client.build_request("GET", source, headers=self.headers)
                response = await client.send(request, stream=True)
            except httpx.HTTPError as e:
                await client.aclose()
                raise StreamIOError(
                    "Could not open download stream",
                    context={"source": source},
                    original_exception=e
                )

            if response.status_code >= 400:
                await response.aclose()
                await client.aclose()
                raise StreamIOError(
                    f"Download stream returned HTTP {response.status_code}",
                    context={"source": source, "status_code": response.status_code}
                )

            handle._client = client
            handle._response = response
            handle._chunks = response.aiter_bytes(self.chunk_size)
        else:
            try:
                handle._file = open(source, "rb")
            except OSError as e:
                raise StreamIOError(
                    "Could not open source file",
                    context={"source": source},
                    original_exception=e
                )

        logger.debug(f"Opened stream {source} (window {format_bytes(self.chunk_size)})")
        return handle

    async def read_next(self, handle: StreamHandle) -> Optional[bytes]:
        """
        Read the next window.

        Returns:
            Up to ``chunk_size`` bytes, or None at end of stream

        Raises:
            StreamIOError: If the read fails
        """
        if handle.closed:
            raise StreamIOError("Stream is closed", context={"source": handle.source})

        try:
            if handle._chunks is not None:
                try:
                    chunk = await handle._chunks.__anext__()
                except StopAsyncIteration:
                    return None
            else:
                # Blocking file I/O runs in a worker thread
                chunk = await asyncio.to_thread(handle._file.read, handle.chunk_size)
                if not chunk:
                    return None
        except (httpx.HTTPError, OSError) as e:
            raise StreamIOError(
                "Read from stream failed",
                context={"source": handle.source, "bytes_transferred": handle.bytes_read},
                original_exception=e
            )

        handle.bytes_read += len(chunk)
        return chunk

    async def close(self, handle: StreamHandle) -> None:
        if handle.closed:
            return
        handle.closed = True
        if handle._response is not None:
            await handle._response.aclose()
        if handle._client is not None:
            await handle._client.aclose()
        if handle._file is not None:
            handle._file.close()

    async def download(self, source: Union[str, Path], sink_path: Union[str, Path]) -> int:
        """
        Copy a source into ``sink_path`` window by window.

        Returns:
            Total number of bytes written

        Raises:
            StreamIOError: If the source cannot be read or the sink written
        """
        logger.info(f"Starting download of {source}")
        self.memory_guard.log_snapshot("Before download")

        handle = await self.open(source)
        downloaded = 0
        next_report = self.progress_every

        try:
            try:
                sink = open(sink_path, "wb")
            except OSError as e:
                raise StreamIOError(
                    "Could not create download sink",
                    context={"source": str(source), "sink": str(sink_path)},
                    original_exception=e
                )

            with sink:
                while True:
                    chunk = await self.read_next(handle)
                    if chunk is None:
                        break

                    try:
                        await asyncio.to_thread(sink.write, chunk)
                    except OSError as e:
                        raise StreamIOError(
                            "Write to download sink failed",
                            context={"source": str(source), "sink": str(sink_path), "bytes_transferred": downloaded},
                            original_exception=e
                        )

                    downloaded += len(chunk)
                    self.memory_guard.check_usage()

                    if downloaded >= next_report:
                        logger.info(f"Downloaded: {format_bytes(downloaded)}")
                        while next_report <= downloaded:
                            next_report += self.progress_every
        finally:
            await self.close(handle)

        logger.info(f"Total downloaded: {format_bytes(downloaded)}")
        self.memory_guard.log_snapshot("After download")
        return downloaded

    @asynccontextmanager
    async def temporary_download(
        self,
        source: Union[str, Path],
        prefix: str = "feed_",
        suffix: str = ".tmp"
    ):
        """
        Download into a temporary file that is removed on exit.

        Yields:
            Path of the downloaded file
        """
        fd, name = tempfile.mkstemp(prefix=prefix, suffix=suffix)
        os.close(fd)
        path = Path(name)
        try:
            await self.download(source, path)
            yield path
        finally:
            if path.exists():
                path.unlink()
                logger.debug(f"Removed temporary file {path}")
