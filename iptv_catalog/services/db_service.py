"""
Database operations for guide data

This module contains the CRUD operations for programs, channel icons and
store metadata.
"""
import logging
from collections.abc import Mapping, Sequence
from time import perf_counter
from typing import cast

from sqlalchemy import delete, distinct, func, select
from sqlalchemy.dialects.sqlite import insert
from sqlalchemy.engine import CursorResult
from sqlalchemy.ext.asyncio import AsyncSession

from iptv_catalog.models import CatalogMetadata, ChannelIcon, GuideMetadata, Program
from iptv_catalog.services.fetch_types import IconPayload, ProgramPayload
from iptv_catalog.utils.timezone import to_epoch_ms


logger = logging.getLogger(__name__)

MetadataModel = type[CatalogMetadata] | type[GuideMetadata]


async def upsert_metadata(db: AsyncSession, model: MetadataModel, values: Mapping[str, str | None]) -> None:
    """Insert or replace key/value metadata rows"""
    if not values:
        return
    stmt = insert(model)
    stmt = stmt.on_conflict_do_update(index_elements=["key"], set_={"value": stmt.excluded.value})
    await db.execute(stmt, [{"key": key, "value": value} for key, value in values.items()])


async def load_metadata(db: AsyncSession, model: MetadataModel) -> dict[str, str | None]:
    """Read every metadata row as a dict"""
    result = await db.execute(select(model.key, model.value))
    return {key: value for key, value in result.all()}


async def clear_guide(db: AsyncSession) -> None:
    """Remove all programs and channel icons (full-replace refresh)"""
    await db.execute(delete(Program))
    await db.execute(delete(ChannelIcon))
    logger.debug("Cleared programs and channel icons")


async def delete_old_programs(db: AsyncSession, cutoff_ms: int) -> int:
    """
    Delete programs that ended before the cutoff.

    Args:
        db: Database session
        cutoff_ms: Delete programs with stop_time before this (epoch ms)

    Returns:
        Number of deleted programs
    """
    result = cast(CursorResult, await db.execute(delete(Program).where(Program.stop_time < cutoff_ms)))
    deleted_count = result.rowcount if result.rowcount and result.rowcount > 0 else 0
    logger.debug("Deleted %s old programs (stop_time < %s)", deleted_count, cutoff_ms)
    return deleted_count


async def store_icons(db: AsyncSession, icons: Sequence[IconPayload]) -> int:
    """
    Store channel icons using UPSERT semantics.

    Args:
        db: Database session
        icons: Iterable of IconPayload objects

    Returns:
        Number of icons written
    """
    # Deduplicate by channel_id while preserving last occurrence
    deduped: dict[str, str] = {icon.channel_id: icon.icon_url for icon in icons}
    if not deduped:
        logger.debug("No channel icons to store")
        return 0

    stmt = insert(ChannelIcon)
    stmt = stmt.on_conflict_do_update(
        index_elements=["channel_id"],
        set_={"icon_url": stmt.excluded.icon_url},
    )
    await db.execute(
        stmt,
        [{"channel_id": channel_id, "icon_url": icon_url} for channel_id, icon_url in deduped.items()],
    )
    return len(deduped)


async def store_programs(db: AsyncSession, programs: Sequence[ProgramPayload]) -> int:
    """
    Store one batch of programs, replacing rows with the same channel slot.

    Args:
        db: Database session
        programs: Batch of ProgramPayload objects

    Returns:
        Number of programs written
    """
    if not programs:
        return 0

    execute_start = perf_counter()
    payload = [
        {
            "channel_id": program.channel_id,
            "start_time": to_epoch_ms(program.start_time),
            "stop_time": to_epoch_ms(program.stop_time),
            "title": program.title,
            "description": program.description,
            "category": program.category,
        }
        for program in programs
    ]

    stmt = insert(Program)
    stmt = stmt.on_conflict_do_update(
        index_elements=["channel_id", "start_time", "stop_time"],
        set_={
            "title": stmt.excluded.title,
            "description": stmt.excluded.description,
            "category": stmt.excluded.category,
        },
    )
    await db.execute(stmt, payload)

    logger.debug(
        "Program batch persisted: %s rows in %.2fs",
        len(payload),
        perf_counter() - execute_start,
    )
    return len(payload)


async def find_current_program(db: AsyncSession, channel_id: str, now_ms: int) -> Program | None:
    """Program airing at now_ms on the channel, if any"""
    stmt = (
        select(Program)
        .where(
            Program.channel_id == channel_id,
            Program.start_time <= now_ms,
            Program.stop_time >= now_ms,
        )
        .order_by(Program.start_time)
        .limit(1)
    )
    result = await db.execute(stmt)
    return result.scalars().first()


async def find_upcoming_programs(db: AsyncSession, channel_id: str, now_ms: int, limit: int = 2) -> list[Program]:
    """Next programs starting at or after now_ms, ascending"""
    stmt = (
        select(Program)
        .where(Program.channel_id == channel_id, Program.start_time >= now_ms)
        .order_by(Program.start_time.asc())
        .limit(limit)
    )
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def find_channel_icon(db: AsyncSession, channel_id: str) -> str | None:
    """Icon URL for the channel, if the guide advertised one"""
    result = await db.execute(select(ChannelIcon.icon_url).where(ChannelIcon.channel_id == channel_id))
    return result.scalar_one_or_none()


async def count_guide_rows(db: AsyncSession) -> tuple[int, int, int]:
    """Return (distinct program channels, icons, programs)"""
    channels = await db.scalar(select(func.count(distinct(Program.channel_id))))
    icons = await db.scalar(select(func.count()).select_from(ChannelIcon))
    programs = await db.scalar(select(func.count()).select_from(Program))
    return channels or 0, icons or 0, programs or 0


async def list_program_channel_ids(db: AsyncSession) -> set[str]:
    """Distinct channel ids that have at least one program"""
    result = await db.execute(select(distinct(Program.channel_id)))
    return set(result.scalars().all())
