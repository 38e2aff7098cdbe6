"""Download a remote image into a local scratch file."""

import asyncio
import logging
from pathlib import Path
from typing import Optional

import httpx

from service_config import DEFAULT_FETCH_TIMEOUT_SECONDS, DEFAULT_MAX_DOWNLOAD_BYTES, LOG_NAME

logger = logging.getLogger(f"{LOG_NAME}.fetch")


class DownloadError(Exception):
    """Raised when the source image cannot be retrieved."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


async def download_image(
    url: str,
    destination: Path,
    *,
    timeout: float = DEFAULT_FETCH_TIMEOUT_SECONDS,
    max_bytes: int = DEFAULT_MAX_DOWNLOAD_BYTES,
    client: Optional[httpx.AsyncClient] = None,
) -> int:
    """Stream ``url`` into ``destination`` and return the number of bytes written.

    A single attempt is made. Non-2xx responses, transport failures and
    bodies larger than ``max_bytes`` raise ``DownloadError``.
    """
    if client is None:
        async with httpx.AsyncClient(timeout=timeout, follow_redirects=True) as own_client:
            return await _stream_to_file(own_client, url, destination, max_bytes)
    return await _stream_to_file(client, url, destination, max_bytes)


async def _stream_to_file(client: httpx.AsyncClient, url: str, destination: Path, max_bytes: int) -> int:
    written = 0
    try:
        async with client.stream("GET", url) as response:
            if not response.is_success:
                raise DownloadError(
                    f"Failed to download image: {response.status_code} {response.reason_phrase}",
                    status_code=response.status_code,
                )
            # Disk writes run in worker threads so a slow volume never stalls the event loop.
            handle = await asyncio.to_thread(open, destination, "wb")
            try:
                async for chunk in response.aiter_bytes():
                    written += len(chunk)
                    if written > max_bytes:
                        raise DownloadError(
                            f"Failed to download image: body exceeds the {max_bytes} byte limit"
                        )
                    await asyncio.to_thread(handle.write, chunk)
            finally:
                await asyncio.to_thread(handle.close)
    except httpx.InvalidURL as exc:
        raise DownloadError(f"Failed to download image: invalid URL '{url}'") from exc
    except httpx.UnsupportedProtocol as exc:
        raise DownloadError(f"Failed to download image: unsupported URL '{url}'") from exc
    except httpx.TimeoutException as exc:
        raise DownloadError(f"Failed to download image: timed out fetching {url}") from exc
    except httpx.HTTPError as exc:
        raise DownloadError(f"Failed to download image: {exc}") from exc
    logger.info("downloaded %s (%s bytes) to %s", url, written, destination)
    return written
