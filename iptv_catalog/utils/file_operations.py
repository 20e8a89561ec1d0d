"""
File and network operation utilities

This module handles source downloads with retry logic and local file access.
"""
import asyncio
import logging
from pathlib import Path

import aiofiles
import aiofiles.os
import httpx

from iptv_catalog.config import settings
from iptv_catalog.errors import SourceFetchError
from iptv_catalog.utils.logging_helpers import sanitize_url


logger = logging.getLogger(__name__)


class HttpFetcher:
    """
    Fetches remote documents with exponential backoff retry logic

    Retries on transient network errors (timeouts, connection errors) and on
    5xx responses. Does NOT retry on 4xx HTTP errors (client errors).
    """

    def __init__(
        self,
        *,
        timeout: float | None = None,
        max_retries: int | None = None,
        backoff_factor: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.timeout = timeout if timeout is not None else settings.http_timeout_sec
        self.max_retries = max(1, max_retries if max_retries is not None else settings.http_max_retries)
        self.backoff_factor = backoff_factor if backoff_factor is not None else settings.http_backoff_factor
        self._transport = transport

    async def get_bytes(self, url: str, headers: dict[str, str] | None = None) -> bytes:
        """
        Download a URL and return the raw body

        Args:
            url: URL to download from
            headers: Optional request headers

        Returns:
            Response body as bytes

        Raises:
            SourceFetchError: If download fails after all retries
        """
        response = await self._get(url, headers)
        return response.content

    async def get_text(self, url: str, headers: dict[str, str] | None = None) -> str:
        """Download a URL and return the decoded body"""
        response = await self._get(url, headers)
        return response.text

    async def _get(self, url: str, headers: dict[str, str] | None) -> httpx.Response:
        safe_url = sanitize_url(url)
        last_error: Exception | None = None

        for attempt in range(self.max_retries):
            try:
                async with httpx.AsyncClient(
                    timeout=self.timeout,
                    follow_redirects=True,
                    transport=self._transport,
                ) as client:
                    response = await client.get(url.strip(), headers=headers)
                    response.raise_for_status()
                    logger.debug(
                        "Downloaded %.2f KB from %s",
                        len(response.content) / 1024,
                        safe_url,
                    )
                    return response

            except (httpx.TimeoutException, httpx.TransportError) as e:
                # Transient network errors - retry
                last_error = e
                if attempt < self.max_retries - 1:
                    wait_time = self.backoff_factor ** attempt
                    logger.warning(
                        "Download attempt %s/%s for %s failed (transient error): %s. Retrying in %.1fs...",
                        attempt + 1,
                        self.max_retries,
                        safe_url,
                        type(e).__name__,
                        wait_time,
                    )
                    await asyncio.sleep(wait_time)

            except httpx.HTTPStatusError as e:
                status = e.response.status_code
                if 400 <= status < 500:
                    raise SourceFetchError(safe_url, f"HTTP {status} (client error)") from e

                # 5xx server error - retry
                last_error = e
                if attempt < self.max_retries - 1:
                    wait_time = self.backoff_factor ** attempt
                    logger.warning(
                        "Download attempt %s/%s for %s failed (HTTP %s server error). Retrying in %.1fs...",
                        attempt + 1,
                        self.max_retries,
                        safe_url,
                        status,
                        wait_time,
                    )
                    await asyncio.sleep(wait_time)

            except httpx.HTTPError as e:
                raise SourceFetchError(safe_url, f"Invalid request: {e}") from e

        raise SourceFetchError(
            safe_url,
            f"Download failed after {self.max_retries} attempts: {last_error}",
        ) from last_error


async def read_text_file(path: Path | str) -> str:
    """Read a local text file without blocking the event loop"""
    async with aiofiles.open(path, "r", encoding="utf-8") as f:
        return await f.read()


async def remove_file(file_path: Path | str) -> bool:
    """
    Safely delete a file

    Args:
        file_path: Path to file to delete

    Returns:
        True if deleted successfully, False otherwise
    """
    path = Path(file_path)
    if not await aiofiles.os.path.exists(path):
        return False

    try:
        await aiofiles.os.remove(path)
        logger.debug("Removed file: %s", path)
        return True
    except (OSError, PermissionError) as e:
        logger.warning("Failed to delete file %s: %s", path, e)
        return False
