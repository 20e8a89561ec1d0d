from datetime import datetime, timedelta
from typing import Optional
import logging

from lxml import etree # type: ignore

from iptv_catalog.errors import ParseError
from iptv_catalog.identifiers import normalize_id
from iptv_catalog.services.fetch_types import IconPayload, ParsedGuide, ProgramPayload
from iptv_catalog.utils.timezone import DateFormatError, parse_xmltv_time

logger = logging.getLogger(__name__)

DEFAULT_TITLE = "No title"


def parse_xmltv_bytes(
    data: bytes,
    now: datetime,
    past_window: timedelta,
    future_window: timedelta,
) -> ParsedGuide:
    """
    Parse an XMLTV document and return channel icons and programs

    Programs ending before now - past_window or starting after
    now + future_window are dropped, as are programs with malformed
    timestamps or stop <= start.

    Args:
        data: Decompressed XMLTV document
        now: Reference instant for the retention window
        past_window: How far back a program may have ended
        future_window: How far ahead a program may start

    Returns:
        ParsedGuide with icons and programs (channel ids normalized)

    Raises:
        ParseError: If XML is malformed or the root is not <tv>
    """
    parser = etree.XMLParser(huge_tree=True, resolve_entities=False, no_network=True)
    try:
        root = etree.fromstring(data.lstrip(), parser=parser)
    except etree.XMLSyntaxError as e:
        logger.error("XML parsing error: %s", e)
        raise ParseError(f"Malformed guide document: {e}") from e

    if root is None or root.tag != "tv":
        raise ParseError("Invalid guide XML structure (missing <tv> root)")

    icons = _parse_icons(root)
    logger.debug("Found %s channel icons", len(icons))

    result = ParsedGuide(icons=icons, programs=[])
    oldest_stop = now - past_window
    latest_start = now + future_window

    for programme in root.iterfind("programme"):
        program = _parse_single_program(programme)
        if program is None:
            result.skipped_invalid += 1
            continue

        # Skip programs that are too old
        if program.stop_time < oldest_stop:
            result.skipped_old += 1
            continue

        # Skip programs too far in the future
        if program.start_time > latest_start:
            result.skipped_future += 1
            continue

        result.programs.append(program)

    logger.info(
        "XMLTV parsing complete: %s icons, %s programs (skipped old: %s, future: %s, invalid: %s)",
        len(result.icons),
        len(result.programs),
        result.skipped_old,
        result.skipped_future,
        result.skipped_invalid,
    )
    return result


def _parse_icons(root: etree._Element) -> list[IconPayload]:
    """Extract channel icons from XMLTV root element"""
    icons = []

    for channel in root.iterfind("channel"):
        channel_id = normalize_id(channel.get("id"))
        if not channel_id:
            logger.debug("Skipping channel with missing ID attribute")
            continue

        icon_elem = channel.find("icon")
        icon_url = icon_elem.get("src") if icon_elem is not None else None
        if icon_url:
            icons.append(IconPayload(channel_id=channel_id, icon_url=icon_url.strip()))

    return icons


def _parse_single_program(programme: etree._Element) -> Optional[ProgramPayload]:
    """Parse single programme element"""
    channel_id = normalize_id(programme.get("channel"))
    if not channel_id:
        return None

    # Parse times (skip invalid formats)
    try:
        start_time = parse_xmltv_time(programme.get("start"))
        stop_time = parse_xmltv_time(programme.get("stop"))
    except DateFormatError:
        return None

    if stop_time <= start_time:
        return None

    return ProgramPayload(
        channel_id=channel_id,
        start_time=start_time,
        stop_time=stop_time,
        title=_get_text(programme, "title", default=DEFAULT_TITLE),
        description=_get_text(programme, "desc"),
        category=_get_text(programme, "category"),
    )


def _get_text(element: etree._Element, tag: str, default: str = "") -> str:
    """Plain text of the first child with the given tag, nested nodes included"""
    child = element.find(tag)
    if child is None:
        return default
    text = "".join(child.itertext()).strip()
    return text or default
