"""Image sources accepted by the decoder.

Content handles and URLs are resolved to one of these variants before the
pipeline sees them: either a path on the local filesystem or an in-memory
byte buffer.
"""

from __future__ import annotations

import io
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO

import httpx

from retinoscan.errors import DecodeError, ErrorKind, FetchError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LocalFile:
    """An image stored on the local filesystem."""

    path: Path

    @classmethod
    def from_str(cls, path: str) -> LocalFile:
        if path.startswith("file://"):
            path = path[len("file://") :]
        return cls(Path(path))

    def describe(self) -> str:
        return str(self.path)

    def open(self) -> BinaryIO:
        try:
            size = self.path.stat().st_size
        except OSError as exc:
            raise DecodeError(ErrorKind.EMPTY_OR_UNREADABLE, f"Image file not readable: {self.path}") from exc
        if size == 0:
            raise DecodeError(ErrorKind.EMPTY_OR_UNREADABLE, f"Image file is empty: {self.path}")
        try:
            return self.path.open("rb")
        except OSError as exc:
            raise DecodeError(ErrorKind.EMPTY_OR_UNREADABLE, f"Image file not readable: {self.path}") from exc


@dataclass(frozen=True)
class ImageBytes:
    """An image already materialized in memory (upload or download)."""

    data: bytes
    name: str = "<bytes>"

    def describe(self) -> str:
        return self.name

    def open(self) -> BinaryIO:
        if not self.data:
            raise DecodeError(ErrorKind.EMPTY_OR_UNREADABLE, "Image data is empty")
        return io.BytesIO(self.data)


ImageSource = LocalFile | ImageBytes


async def fetch_remote_image(
    url: str,
    *,
    timeout: float,
    max_bytes: int,
    client: httpx.AsyncClient | None = None,
) -> ImageBytes:
    """Download an image over HTTP(S) into memory.

    A caller-supplied ``client`` is used as-is and left open; otherwise a
    short-lived client bounded by ``timeout`` is created.

    Raises:
        FetchError: On an unsupported scheme, a transport error or timeout, a
            non-2xx response, or a body larger than ``max_bytes``.
    """
    if not url.startswith(("http://", "https://")):
        raise FetchError(ErrorKind.FETCH_FAILED, "Only http and https image URLs are supported")

    try:
        if client is None:
            async with httpx.AsyncClient(timeout=httpx.Timeout(timeout), follow_redirects=True) as own_client:
                data = await _download(own_client, url, max_bytes)
        else:
            data = await _download(client, url, max_bytes)
    except httpx.HTTPStatusError as exc:
        logger.warning("Image fetch from %s returned %s", url, exc.response.status_code)
        raise FetchError(
            ErrorKind.FETCH_FAILED, f"Image download failed with HTTP {exc.response.status_code}"
        ) from exc
    except httpx.HTTPError as exc:
        logger.warning("Image fetch from %s failed: %s", url, exc)
        raise FetchError(ErrorKind.FETCH_FAILED, "Image download failed") from exc

    if not data:
        raise FetchError(ErrorKind.FETCH_FAILED, "Downloaded image is empty")
    return ImageBytes(data=data, name=url)


async def _download(client: httpx.AsyncClient, url: str, max_bytes: int) -> bytes:
    buffer = bytearray()
    async with client.stream("GET", url) as response:
        response.raise_for_status()
        async for chunk in response.aiter_bytes():
            buffer.extend(chunk)
            if len(buffer) > max_bytes:
                raise FetchError(ErrorKind.FETCH_FAILED, f"Remote image exceeds {max_bytes} bytes")
    return bytes(buffer)
