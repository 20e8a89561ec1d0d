"""
Catalog cache of one session

Holds the current catalog snapshot in memory, persists it to the session's
SQLite file, rebuilds it from the playlists (single-flight) and polls for
staleness.
"""
from __future__ import annotations

import logging
import re
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Literal

from iptv_catalog.config import settings
from iptv_catalog.database import SqliteStore, store_file_name
from iptv_catalog.errors import CatalogError, ConfigurationError, PersistenceError
from iptv_catalog.identifiers import normalize_id
from iptv_catalog.models import CatalogBase
from iptv_catalog.schemas import CacheEvent, CatalogData, Channel, SessionConfig
from iptv_catalog.services.catalog_repository import load_catalog, save_catalog, save_session_config
from iptv_catalog.services.fetch_coordinator import FetchCoordinator
from iptv_catalog.services.playlist_pipeline import PlaylistIngestionPipeline, as_session_config
from iptv_catalog.services.scheduler_service import JobScheduler
from iptv_catalog.utils.data_merging import CATALOG_ID_PREFIX
from iptv_catalog.utils.logging_helpers import DEFAULT_SESSION_KEY, get_session_logger, sanitize_url
from iptv_catalog.utils.timezone import Clock, utc_now


logger = logging.getLogger(__name__)

SETTINGS_GENRE = "⚙️"
SETTINGS_GENRE_ALIASES = frozenset({SETTINGS_GENRE, "~SETTINGS~", "Settings"})

_INTERVAL_RE = re.compile(r"^(\d{1,2}):(\d{2})$")

CacheListener = Callable[[CacheEvent], None]


@dataclass(slots=True)
class ActiveFilter:
    kind: Literal["genre", "search"]
    value: str


@dataclass(slots=True)
class CacheRecord:
    """In-memory snapshot; channels is None until a catalog exists."""
    channels: list[Channel] | None = None
    genres: list[str] = field(default_factory=list)
    last_updated: datetime | None = None
    source_url: str | None = None
    epg_urls: list[str] = field(default_factory=list)


def parse_interval(value: str) -> timedelta:
    """
    Parse an 'HH:MM' interval with hours below 24 and minutes below 60

    Raises:
        ConfigurationError: If the value has any other format
    """
    match = _INTERVAL_RE.match(value.strip())
    if match:
        hours, minutes = int(match.group(1)), int(match.group(2))
        if hours < 24 and minutes < 60:
            return timedelta(hours=hours, minutes=minutes)
    raise ConfigurationError(f"Invalid time format {value!r}, expected HH:MM")


def parse_refresh_interval(
    value: str | None,
    default: timedelta,
    log: logging.LoggerAdapter | logging.Logger = logger,
) -> timedelta:
    """Refresh threshold from config; a missing or malformed value gives the default"""
    if not value:
        return default
    try:
        return parse_interval(value)
    except ConfigurationError as e:
        log.warning("%s, using default value", e)
        return default


def matches_genre(channel: Channel, genre: str) -> bool:
    if genre in channel.genres:
        return True
    if genre in SETTINGS_GENRE_ALIASES:
        return any(g in SETTINGS_GENRE_ALIASES for g in channel.genres)
    return False


class CacheOrchestrator:
    """
    Catalog cache for one session.

    Readers always see a complete snapshot: a rebuild swaps the whole record
    at once. At most one rebuild runs at a time; a concurrent request is
    skipped and rebuild_cache returns False.
    """

    def __init__(
        self,
        session_key: str | None = None,
        config: SessionConfig | Mapping | None = None,
        *,
        pipeline: PlaylistIngestionPipeline | None = None,
        scheduler: JobScheduler | None = None,
        data_dir: str | Path | None = None,
        clock: Clock = utc_now,
    ):
        self.session_key = session_key or DEFAULT_SESSION_KEY
        self.log = get_session_logger(__name__, self.session_key)
        self.config = as_session_config(config)
        self.store = SqliteStore(
            Path(data_dir or settings.data_dir) / store_file_name("cache", self.session_key),
            CatalogBase.metadata,
        )
        self.pipeline = pipeline or PlaylistIngestionPipeline()
        self._scheduler = scheduler
        self._clock = clock
        self._rebuild = FetchCoordinator("Cache rebuild", self.session_key)
        self._listeners: list[CacheListener] = []
        self._loaded = False

        self.record = CacheRecord()
        self.last_filter: ActiveFilter | None = None
        self.default_refresh = timedelta(hours=settings.default_refresh_hours)

    @property
    def poll_job_id(self) -> str:
        return f"{self.session_key}:cache_poll"

    @property
    def in_flight(self) -> bool:
        return self._rebuild.in_flight

    async def open(self) -> None:
        """Open the session store and start staleness polling"""
        await self.store.open()
        self.start_polling()

    async def ensure_loaded(self) -> None:
        """Load the persisted snapshot once; a rebuild that already ran wins"""
        if self._loaded:
            return
        self._loaded = True
        try:
            async with self.store.session_scope() as db:
                stored = await load_catalog(db)
        except PersistenceError as e:
            self.log.error("Cache load from database error: %s", e)
            return

        self._restore_config(stored.config)
        if self.record.last_updated is not None or self.record.channels is not None:
            return
        self.record = CacheRecord(
            channels=stored.channels or None,
            genres=stored.genres,
            last_updated=stored.last_updated,
            source_url=stored.source_url,
            epg_urls=stored.epg_urls,
        )
        if stored.channels or stored.genres:
            self.log.info(
                "Loaded %s channels and %s genres from database",
                len(stored.channels),
                len(stored.genres),
            )

    async def rebuild_cache(self, source_url: str, config: SessionConfig | Mapping | None = None) -> bool:
        """
        Rebuild the catalog from `source_url` and publish it.

        Returns:
            True if the rebuild ran, False if one was already in flight

        Raises:
            CatalogError: If ingestion failed; the previous snapshot is kept
        """
        try:
            ran, data = await self._rebuild.execute(lambda: self._run_rebuild(source_url, config))
        except CatalogError as e:
            self.log.error("Cache rebuild error: %s", e)
            self._notify(CacheEvent(kind="error", session_key=self.session_key, error=e))
            raise

        if ran and data is not None:
            self._notify(
                CacheEvent(
                    kind="updated",
                    session_key=self.session_key,
                    channels=len(data.channels),
                    genres=len(data.genres),
                )
            )
        return ran

    async def _run_rebuild(self, source_url: str, config: SessionConfig | Mapping | None = None) -> CatalogData:
        if config is not None:
            self._merge_config(as_session_config(config))
        self.log.info("Cache rebuild started, M3U URL: %s", sanitize_url(source_url))
        data = await self.pipeline.load_and_transform(source_url, self.config, self.session_key)

        self.record = CacheRecord(
            channels=data.channels,
            genres=data.genres,
            last_updated=self._clock(),
            source_url=source_url,
            epg_urls=data.epg_urls,
        )
        self._loaded = True
        self.log.info("Channels in cache: %s, genres: %s, cache rebuilt", len(data.channels), len(data.genres))

        try:
            async with self.store.session_scope() as db:
                await save_catalog(
                    db,
                    data.channels,
                    data.genres,
                    self.record.last_updated,
                    source_url,
                    data.epg_urls,
                    self._persisted_config(),
                )
            self.log.info("Cache saved to database")
        except PersistenceError as e:
            self.log.error("Cache save to database error: %s", e)
        return data

    async def is_stale(self, config: SessionConfig | Mapping | None = None) -> bool:
        """True if no catalog exists or the refresh threshold has elapsed"""
        await self.ensure_loaded()
        if self.record.channels is None or self.record.last_updated is None:
            return True

        session_config = as_session_config(config) if config is not None else self.config
        threshold = parse_refresh_interval(session_config.update_interval, self.default_refresh, self.log)
        stale = self._clock() - self.record.last_updated >= threshold
        if stale:
            self.log.info("Cache stale, update needed")
        return stale

    async def update_config(self, new_config: SessionConfig | Mapping) -> None:
        """
        Apply a configuration update.

        Only fields present in `new_config` are compared. A playlist change
        clears the snapshot and rebuilds; interval, suffix or remapper
        changes restart polling; guide changes are left to the guide store.

        Raises:
            CatalogError: If the triggered rebuild fails
        """
        await self.ensure_loaded()
        update = as_session_config(new_config)
        changed = {
            name for name in update.model_fields_set
            if getattr(self.config, name, None) != getattr(update, name, None)
        }
        self._merge_config(update)

        if "m3u" in changed:
            self.log.info("M3U playlist changed, reloading playlist data...")
            self.record = CacheRecord(last_updated=self.record.last_updated, epg_urls=self.record.epg_urls)
            if self.config.m3u:
                await self.rebuild_cache(self.config.m3u)

        if changed & {"epg", "epg_enabled"}:
            self.log.info("EPG config changed, updating EPG only...")

        if changed & {"update_interval", "id_suffix", "remapper_path"}:
            self.log.info("Other config changed, restarting polling...")
            self.start_polling()

        if changed:
            await self._save_config()

    def _merge_config(self, update: SessionConfig) -> None:
        self.config = self.config.model_copy(update=update.model_dump(include=update.model_fields_set))

    def _persisted_config(self) -> dict:
        return self.config.model_dump(exclude_none=True, exclude={"session_id"})

    def _restore_config(self, stored: dict) -> None:
        """Fill fields missing from the in-memory config with the persisted ones"""
        if not stored:
            return
        current = self.config.model_dump(exclude_none=True)
        merged = {**stored, **current}
        if merged != current:
            self.config = SessionConfig.model_validate(merged)
            self.log.info("Session config restored from database")

    async def _save_config(self) -> None:
        try:
            async with self.store.session_scope() as db:
                await save_session_config(db, self._persisted_config())
        except PersistenceError as e:
            self.log.error("Session config save error: %s", e)

    def start_polling(self) -> None:
        """(Re)install the staleness poll job"""
        if self._scheduler is None:
            return
        self._scheduler.add_interval_job(self.poll_job_id, self._poll, settings.cache_poll_interval_sec)

    def stop_polling(self) -> None:
        if self._scheduler is not None:
            self._scheduler.remove_job(self.poll_job_id)

    async def _poll(self) -> None:
        await self.ensure_loaded()
        if self.record.channels is None or not self.record.source_url:
            return
        if not await self.is_stale():
            return
        self.log.info("Checking cache update...")
        try:
            await self.rebuild_cache(self.record.source_url)
        except CatalogError as e:
            self.log.error("Auto-update error: %s", e)

    def add_listener(self, listener: CacheListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: CacheListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _notify(self, event: CacheEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                self.log.error("Cache listener error: %s", e, exc_info=True)

    async def get_cached_data(self) -> CatalogData:
        await self.ensure_loaded()
        return CatalogData(
            channels=list(self.record.channels or []),
            genres=list(self.record.genres),
            epg_urls=list(self.record.epg_urls),
        )

    async def get_channel(self, channel_id: str) -> Channel | None:
        """
        Find a channel by catalog id or tvg id, falling back to the display name

        The 'tv|' prefix is accepted on the query.
        """
        await self.ensure_loaded()
        channels = self.record.channels
        if not channel_id or not channels:
            return None

        wanted = normalize_id(channel_id.removeprefix(CATALOG_ID_PREFIX))
        for channel in channels:
            if (
                normalize_id(channel.id.removeprefix(CATALOG_ID_PREFIX)) == wanted
                or normalize_id(channel.tvg_id) == wanted
            ):
                return channel
        return next((channel for channel in channels if normalize_id(channel.name) == wanted), None)

    async def get_channels_by_genre(self, genre: str) -> list[Channel]:
        await self.ensure_loaded()
        if not genre or not self.record.channels:
            return []
        return [channel for channel in self.record.channels if matches_genre(channel, genre)]

    async def search_channels(self, query: str | None) -> list[Channel]:
        """Channels whose normalized name contains the normalized query; empty query matches all"""
        await self.ensure_loaded()
        channels = self.record.channels or []
        if not query:
            return list(channels)
        wanted = normalize_id(query)
        return [channel for channel in channels if wanted in normalize_id(channel.name)]

    def set_last_filter(self, kind: Literal["genre", "search"], value: str) -> None:
        self.last_filter = ActiveFilter(kind, value)

    def clear_last_filter(self) -> None:
        self.last_filter = None

    def record_request_filter(self, genre: str | None = None, search: str | None = None, skip: int | str = 0) -> int:
        """
        Remember the filter of a catalog request and return its page offset

        Search wins over genre. A request without filter and without offset
        clears the remembered filter; a bare page request keeps it. A genre
        like 'News&skip=100' carries its own offset.
        """
        if genre and "&skip" in genre:
            genre, _, rest = genre.partition("&skip")
            if rest.startswith("="):
                skip = rest[1:]

        try:
            offset = max(0, int(skip or 0))
        except (TypeError, ValueError):
            offset = 0

        if search:
            self.set_last_filter("search", search)
        elif genre:
            self.set_last_filter("genre", genre)
        elif not offset:
            self.clear_last_filter()
        return offset

    async def get_filtered_channels(self) -> list[Channel]:
        """Channels under the remembered filter, or all channels"""
        await self.ensure_loaded()
        if self.last_filter is None:
            return list(self.record.channels or [])
        if self.last_filter.kind == "genre":
            return await self.get_channels_by_genre(self.last_filter.value)
        return await self.search_channels(self.last_filter.value)

    async def close(self) -> None:
        self.stop_polling()
        await self.store.close()

    async def destroy(self) -> None:
        """Stop polling, drop the snapshot and delete the session's cache file"""
        self.stop_polling()
        self._listeners.clear()
        self.record = CacheRecord()
        self.last_filter = None
        try:
            await self.store.delete()
        except OSError as e:
            self.log.error("Session cache removal error: %s", e)
            return
        self.log.info("Session cache removed: %s", self.store.path.name)
