"""
Guide Downloader Service

Handles resolving, downloading, decompressing and parsing guide documents.
Separated from the store logic for better testability.
"""
import asyncio
import gzip
import logging
import zlib
from collections.abc import Sequence
from datetime import datetime, timedelta

from iptv_catalog.errors import CatalogError, ParseError
from iptv_catalog.services.fetch_types import ParsedGuide
from iptv_catalog.services.xmltv_parser_service import parse_xmltv_bytes
from iptv_catalog.utils.file_operations import HttpFetcher
from iptv_catalog.utils.logging_helpers import sanitize_url


logger = logging.getLogger(__name__)

GUIDE_REQUEST_HEADERS = {
    "User-Agent": "Mozilla/5.0",
    "Accept-Encoding": "gzip, deflate",
}


def decompress_guide(data: bytes) -> bytes:
    """
    Undo transport compression of a guide document

    Tries gzip, then raw deflate, then falls back to the bytes as-is.
    """
    try:
        return gzip.decompress(data)
    except (OSError, EOFError, zlib.error):
        pass
    try:
        return zlib.decompress(data, -zlib.MAX_WBITS)
    except zlib.error:
        return data


async def resolve_guide_urls(
    url: str | Sequence[str],
    fetcher: HttpFetcher,
    log: logging.LoggerAdapter | logging.Logger = logger,
) -> list[str]:
    """
    Expand a guide reference into concrete guide document URLs

    A list is used as-is, a comma-separated string is split, '.gz' URLs and
    documents that look like XML are taken directly. Anything else is read as
    a newline-delimited list of guide URLs. On failure the URL itself is used.
    """
    if not isinstance(url, str):
        return [u.strip() for u in url if u and u.strip()]

    if "," in url:
        return [u.strip() for u in url.split(",") if u.strip()]

    url = url.strip()
    if url.endswith(".gz"):
        return [url]

    try:
        content = await fetcher.get_text(url)
    except CatalogError as e:
        log.error("EPG read file error: %s", e)
        return [url]

    if "<?xml" in content or "<tv" in content:
        return [url]

    urls = [line.strip() for line in content.splitlines() if line.strip().startswith("http")]
    if urls:
        log.info("EPG URL list found, contains %s document(s)", len(urls))
        return urls
    return [url]


async def parse_guide_async(
    data: bytes,
    now: datetime,
    past_window: timedelta,
    future_window: timedelta,
    *,
    parse_timeout_seconds: int | None = None,
) -> ParsedGuide:
    """
    Parse a guide document asynchronously with timeout protection.

    Parsing is offloaded to the thread pool to avoid blocking the event loop.

    Raises:
        ParseError: If the document is malformed or parsing times out
    """
    effective_timeout = parse_timeout_seconds if parse_timeout_seconds and parse_timeout_seconds > 0 else None

    loop = asyncio.get_running_loop()
    parse_task = loop.run_in_executor(
        None,
        parse_xmltv_bytes,
        data,
        now,
        past_window,
        future_window,
    )
    try:
        if effective_timeout:
            return await asyncio.wait_for(parse_task, timeout=effective_timeout)
        return await parse_task
    except asyncio.TimeoutError:
        logger.error("XML parsing timed out after %ss", effective_timeout)
        raise ParseError("XML parsing timed out - document may be too large or malformed")


async def download_guide(
    guide_url: str,
    fetcher: HttpFetcher,
    now: datetime,
    past_window: timedelta,
    future_window: timedelta,
    *,
    parse_timeout_seconds: int | None = None,
) -> ParsedGuide:
    """
    Download, decompress and parse one guide document

    Raises:
        SourceFetchError: If the download fails
        ParseError: If the document cannot be parsed
    """
    logger.debug("Downloading guide document %s", sanitize_url(guide_url))
    raw = await fetcher.get_bytes(guide_url, headers=GUIDE_REQUEST_HEADERS)
    data = decompress_guide(raw)
    logger.debug(
        "Guide document size: %.2f MB (compressed %.2f MB)",
        len(data) / 1024 / 1024,
        len(raw) / 1024 / 1024,
    )
    return await parse_guide_async(
        data,
        now,
        past_window,
        future_window,
        parse_timeout_seconds=parse_timeout_seconds,
    )
