"""
Catalog persistence

Writes and reads the per-session catalog snapshot: one JSON document per
channel, the ordered genre list and the build metadata.
"""
import json
import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime

from pydantic import ValidationError
from sqlalchemy import delete, select
from sqlalchemy.dialects.sqlite import insert
from sqlalchemy.ext.asyncio import AsyncSession

from iptv_catalog.models import CatalogMetadata, ChannelRecord, GenreRecord
from iptv_catalog.schemas import Channel
from iptv_catalog.services.db_service import load_metadata, upsert_metadata
from iptv_catalog.utils.timezone import from_epoch_ms, to_epoch_ms


logger = logging.getLogger(__name__)

META_LAST_UPDATED = "lastUpdated"
META_SOURCE_URL = "m3uUrl"
META_EPG_URLS = "epgUrls"
META_SESSION_CONFIG = "sessionConfig"


@dataclass(slots=True)
class StoredCatalog:
    """Snapshot as read back from disk."""
    channels: list[Channel] = field(default_factory=list)
    genres: list[str] = field(default_factory=list)
    last_updated: datetime | None = None
    source_url: str | None = None
    epg_urls: list[str] = field(default_factory=list)
    config: dict = field(default_factory=dict)


async def save_catalog(
    db: AsyncSession,
    channels: Sequence[Channel],
    genres: Sequence[str],
    last_updated: datetime | None,
    source_url: str | None,
    epg_urls: Sequence[str],
    config: Mapping[str, object] | None = None,
) -> None:
    """Replace the stored snapshot with the given one"""
    metadata: dict[str, str | None] = {META_EPG_URLS: json.dumps(list(epg_urls))}
    if config is not None:
        metadata[META_SESSION_CONFIG] = json.dumps(dict(config), ensure_ascii=False)
    if last_updated is not None:
        metadata[META_LAST_UPDATED] = str(to_epoch_ms(last_updated))
    if source_url:
        metadata[META_SOURCE_URL] = source_url
    await upsert_metadata(db, CatalogMetadata, metadata)

    await db.execute(delete(ChannelRecord))
    if channels:
        rows = {}
        for position, channel in enumerate(channels):
            rows[channel.id] = {"id": channel.id, "position": position, "data": channel.model_dump_json()}
        await db.execute(insert(ChannelRecord), list(rows.values()))

    await db.execute(delete(GenreRecord))
    if genres:
        unique_genres = list(dict.fromkeys(genres))
        await db.execute(
            insert(GenreRecord),
            [{"genre": genre, "position": position} for position, genre in enumerate(unique_genres)],
        )

    logger.debug("Catalog saved: %s channels, %s genres", len(channels), len(genres))


async def save_session_config(db: AsyncSession, config: Mapping[str, object]) -> None:
    """Store the session configuration next to the snapshot"""
    await upsert_metadata(db, CatalogMetadata, {META_SESSION_CONFIG: json.dumps(dict(config), ensure_ascii=False)})


async def load_catalog(db: AsyncSession) -> StoredCatalog:
    """Read the stored snapshot; undecodable channel rows are skipped"""
    metadata = await load_metadata(db, CatalogMetadata)

    channels: list[Channel] = []
    result = await db.execute(select(ChannelRecord).order_by(ChannelRecord.position))
    for record in result.scalars().all():
        try:
            channels.append(Channel.model_validate_json(record.data))
        except ValidationError as exc:
            logger.error("Channel parse error for %s: %s", record.id, exc)

    genre_result = await db.execute(select(GenreRecord.genre).order_by(GenreRecord.position))
    genres = list(genre_result.scalars().all())

    last_updated = None
    raw_last_updated = metadata.get(META_LAST_UPDATED)
    if raw_last_updated:
        try:
            last_updated = from_epoch_ms(int(raw_last_updated))
        except ValueError:
            logger.warning("Ignoring malformed lastUpdated metadata: %r", raw_last_updated)

    epg_urls: list[str] = []
    raw_epg_urls = metadata.get(META_EPG_URLS)
    if raw_epg_urls:
        try:
            decoded = json.loads(raw_epg_urls)
            if isinstance(decoded, list):
                epg_urls = [str(url) for url in decoded]
        except json.JSONDecodeError:
            logger.warning("Ignoring malformed epgUrls metadata")

    config: dict = {}
    raw_config = metadata.get(META_SESSION_CONFIG)
    if raw_config:
        try:
            decoded = json.loads(raw_config)
            if isinstance(decoded, dict):
                config = decoded
        except json.JSONDecodeError:
            logger.warning("Ignoring malformed sessionConfig metadata")

    return StoredCatalog(
        channels=channels,
        genres=genres,
        last_updated=last_updated,
        source_url=metadata.get(META_SOURCE_URL) or None,
        epg_urls=epg_urls,
        config=config,
    )
