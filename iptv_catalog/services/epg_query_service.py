"""
EPG Query Service

Read operations on a session's guide store. Every lookup normalizes the
requested channel id and retries once without its trailing '.<segment>', so
a suffixed playlist id ('news.it') finds an unsuffixed guide ('news').
"""
from datetime import datetime
import logging
from collections.abc import Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from iptv_catalog.identifiers import normalize_id
from iptv_catalog.models import Program
from iptv_catalog.schemas import Channel, ProgramInfo
from iptv_catalog.services.db_service import (
    find_channel_icon,
    find_current_program,
    find_upcoming_programs,
    list_program_channel_ids,
)
from iptv_catalog.utils.timezone import from_epoch_ms, to_epoch_ms

logger = logging.getLogger(__name__)

UPCOMING_LIMIT = 2


def lookup_ids(channel_id: str | None) -> list[str]:
    """
    Candidate guide ids for a channel id, most specific first

    Args:
        channel_id: Raw or canonical channel id

    Returns:
        [normalized] or [normalized, normalized without last '.segment']
    """
    normalized = normalize_id(channel_id)
    if not normalized:
        return []
    candidates = [normalized]
    last_dot = normalized.rfind(".")
    if last_dot > 0:
        candidates.append(normalized[:last_dot])
    return candidates


def to_program_info(program: Program) -> ProgramInfo:
    """Convert a stored program row to its API model"""
    return ProgramInfo(
        channel_id=program.channel_id,
        title=program.title,
        description=program.description or None,
        category=program.category or None,
        start=from_epoch_ms(program.start_time),
        stop=from_epoch_ms(program.stop_time),
    )


async def get_current_program(db: AsyncSession, channel_id: str, now: datetime) -> ProgramInfo | None:
    """Program airing now on the first candidate id that has one"""
    now_ms = to_epoch_ms(now)
    for candidate in lookup_ids(channel_id):
        program = await find_current_program(db, candidate, now_ms)
        if program is not None:
            return to_program_info(program)
    return None


async def get_upcoming_programs(
    db: AsyncSession,
    channel_id: str,
    now: datetime,
    limit: int = UPCOMING_LIMIT,
) -> list[ProgramInfo]:
    """Next programs (start >= now) on the first candidate id that has any"""
    now_ms = to_epoch_ms(now)
    for candidate in lookup_ids(channel_id):
        programs = await find_upcoming_programs(db, candidate, now_ms, limit)
        if programs:
            return [to_program_info(program) for program in programs]
    return []


async def get_channel_icon(db: AsyncSession, channel_id: str) -> str | None:
    for candidate in lookup_ids(channel_id):
        icon = await find_channel_icon(db, candidate)
        if icon:
            return icon
    return None


async def find_channels_without_guide(db: AsyncSession, channels: Sequence[Channel]) -> list[Channel]:
    """
    Channels for which no candidate id has programs

    Args:
        db: Database session
        channels: Catalog channels to check

    Returns:
        Channels without guide data, in input order
    """
    known_ids = await list_program_channel_ids(db)
    missing = [
        channel
        for channel in channels
        if not any(candidate in known_ids for candidate in lookup_ids(channel.tvg_id))
    ]
    logger.debug("Guide coverage check: %s of %s channel(s) without programs", len(missing), len(channels))
    return missing
