"""
EPG Fetching Service

Per-session guide store: refreshes programs and channel icons from XMLTV
documents into the session's SQLite file and answers guide lookups.
"""
from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import datetime, timedelta
from pathlib import Path
from time import perf_counter

from iptv_catalog.config import settings
from iptv_catalog.database import SqliteStore, store_file_name
from iptv_catalog.errors import CatalogError, PersistenceError
from iptv_catalog.models import GuideBase, GuideMetadata
from iptv_catalog.schemas import Channel, GuideStatus, ProgramInfo
from iptv_catalog.services import epg_query_service
from iptv_catalog.services.db_service import (
    clear_guide,
    count_guide_rows,
    delete_old_programs,
    load_metadata,
    store_icons,
    store_programs,
    upsert_metadata,
)
from iptv_catalog.services.epg_downloader_service import download_guide, resolve_guide_urls
from iptv_catalog.services.fetch_coordinator import FetchCoordinator
from iptv_catalog.services.scheduler_service import JobScheduler
from iptv_catalog.utils.file_operations import HttpFetcher
from iptv_catalog.utils.logging_helpers import DEFAULT_SESSION_KEY, get_session_logger, sanitize_url
from iptv_catalog.utils.timezone import Clock, from_epoch_ms, to_epoch_ms, utc_now


logger = logging.getLogger(__name__)

META_LAST_UPDATE = "lastUpdate"
META_LAST_EPG_URL = "lastEpgUrl"

UPDATE_MAX_AGE = timedelta(hours=24)


class EPGStore:
    """
    Guide data of one session.

    A refresh fully replaces the stored guide. Only one refresh runs at a
    time; a second request while one is in flight is skipped.
    """

    def __init__(
        self,
        session_key: str | None = None,
        *,
        scheduler: JobScheduler | None = None,
        fetcher: HttpFetcher | None = None,
        data_dir: str | Path | None = None,
        clock: Clock = utc_now,
    ):
        self.session_key = session_key or DEFAULT_SESSION_KEY
        self.log = get_session_logger(__name__, self.session_key)
        self.store = SqliteStore(
            Path(data_dir or settings.data_dir) / store_file_name("epg", self.session_key),
            GuideBase.metadata,
        )
        self._scheduler = scheduler
        self._fetcher = fetcher or HttpFetcher()
        self._clock = clock

        self._refresh = FetchCoordinator("EPG update", self.session_key)
        self.last_update: datetime | None = None
        self.last_epg_url: str | None = None

        self.past_window = timedelta(hours=settings.epg_past_retention_hours)
        self.future_window = timedelta(days=settings.epg_future_window_days)
        self.chunk_size = settings.epg_programs_chunk_size
        self.parse_timeout = settings.epg_parse_timeout_sec

    @property
    def refresh_job_id(self) -> str:
        return f"{self.session_key}:epg_refresh"

    @property
    def cleanup_job_id(self) -> str:
        return f"{self.session_key}:epg_cleanup"

    async def open(self) -> None:
        """Open the store, restore refresh metadata and schedule periodic cleanup"""
        await self.store.open()
        try:
            async with self.store.session_scope() as db:
                metadata = await load_metadata(db, GuideMetadata)
        except PersistenceError as e:
            self.log.error("EPG metadata read error: %s", e)
            metadata = {}

        raw_last_update = metadata.get(META_LAST_UPDATE)
        if raw_last_update:
            try:
                self.last_update = from_epoch_ms(int(raw_last_update))
            except ValueError:
                self.log.warning("Ignoring malformed lastUpdate metadata: %r", raw_last_update)
        self.last_epg_url = metadata.get(META_LAST_EPG_URL) or None

        if self._scheduler is not None:
            self._scheduler.add_cron_job(self.cleanup_job_id, self.cleanup_old_programs, settings.epg_cleanup_cron)
        self.log.info("EPG store ready at %s", self.store.path.name)

    async def _save_metadata(self) -> None:
        values: dict[str, str | None] = {META_LAST_EPG_URL: self.last_epg_url}
        if self.last_update is not None:
            values[META_LAST_UPDATE] = str(to_epoch_ms(self.last_update))
        try:
            async with self.store.session_scope() as db:
                await upsert_metadata(db, GuideMetadata, values)
        except PersistenceError as e:
            self.log.error("EPG metadata write error: %s", e)

    async def initialize_epg(self, url: str) -> bool:
        """
        Attach a guide URL to the session.

        No-op when the URL is unchanged and guide data is available. Otherwise
        refreshes now and schedules the daily refresh.

        Returns:
            True if a refresh was started
        """
        if self.last_epg_url == url and await self.is_epg_available():
            return False

        self.last_epg_url = url
        await self._save_metadata()
        await self.start_epg_update(url)

        if self._scheduler is not None and not self._scheduler.has_job(self.refresh_job_id):
            self._scheduler.add_cron_job(self.refresh_job_id, self._scheduled_refresh, settings.epg_refresh_cron)
            self.log.info("EPG daily update scheduled (%s)", settings.epg_refresh_cron)
        self.log.info("EPG init done, URL: %s", sanitize_url(url))
        return True

    async def _scheduled_refresh(self) -> None:
        if not self.last_epg_url:
            return
        await self.start_epg_update(self.last_epg_url)

    async def start_epg_update(self, url: str | Sequence[str]) -> bool:
        """
        Replace the stored guide with the documents behind `url`.

        Per-document failures are logged and skipped. The completion time is
        recorded even when the refresh failed.

        Returns:
            False if a refresh was already in flight
        """
        ran, _ = await self._refresh.execute(lambda: self._run_update(url))
        return ran

    async def _run_update(self, url: str | Sequence[str]) -> None:
        start_time = perf_counter()
        try:
            guide_urls = await resolve_guide_urls(url, self._fetcher, self.log)
            now = self._clock()

            async with self.store.session_scope() as db:
                await clear_guide(db)

            for guide_url in guide_urls:
                await self._process_document(guide_url, now)

            await self.cleanup_old_programs()
            async with self.store.session_scope() as db:
                channels_count, icons_count, programs_count = await count_guide_rows(db)
            self.log.info(
                "EPG update done in %.1fs, channels: %s, icons: %s, programs: %s",
                perf_counter() - start_time,
                channels_count,
                icons_count,
                programs_count,
            )
        except CatalogError as e:
            self.log.error("EPG update error: %s", e)
        finally:
            self.last_update = self._clock()
            await self._save_metadata()

    @property
    def is_updating(self) -> bool:
        return self._refresh.in_flight

    async def _process_document(self, guide_url: str, now: datetime) -> int:
        """Download one guide document and store it in batches; returns programs stored"""
        try:
            parsed = await download_guide(
                guide_url,
                self._fetcher,
                now,
                self.past_window,
                self.future_window,
                parse_timeout_seconds=self.parse_timeout,
            )
        except CatalogError as e:
            self.log.error("EPG error for %s: %s", sanitize_url(guide_url), e)
            return 0

        if not parsed.programs:
            self.log.warning("No programs found in %s", sanitize_url(guide_url))

        stored = 0
        try:
            async with self.store.session_scope() as db:
                icons = await store_icons(db, parsed.icons)
            for offset in range(0, len(parsed.programs), self.chunk_size):
                async with self.store.session_scope() as db:
                    stored += await store_programs(db, parsed.programs[offset:offset + self.chunk_size])
        except PersistenceError as e:
            self.log.error("EPG storage error for %s: %s", sanitize_url(guide_url), e)
            return stored

        self.log.info(
            "EPG document processed: %s programs, %s icons (skipped: %s old, %s future, %s invalid)",
            stored,
            icons,
            parsed.skipped_old,
            parsed.skipped_future,
            parsed.skipped_invalid,
        )
        return stored

    async def cleanup_old_programs(self) -> int:
        """Delete programs that ended more than the retention window ago"""
        cutoff = self._clock() - self.past_window
        try:
            async with self.store.session_scope() as db:
                removed = await delete_old_programs(db, to_epoch_ms(cutoff))
        except PersistenceError as e:
            self.log.error("EPG cleanup error: %s", e)
            return 0
        if removed > 0:
            self.log.info("EPG cleanup: removed %s old program(s)", removed)
        return removed

    async def get_current_program(self, channel_id: str) -> ProgramInfo | None:
        if not channel_id:
            return None
        try:
            async with self.store.session_scope() as db:
                return await epg_query_service.get_current_program(db, channel_id, self._clock())
        except PersistenceError as e:
            self.log.error("Current program lookup error for %s: %s", channel_id, e)
            return None

    async def get_upcoming_programs(self, channel_id: str) -> list[ProgramInfo]:
        if not channel_id:
            return []
        try:
            async with self.store.session_scope() as db:
                return await epg_query_service.get_upcoming_programs(db, channel_id, self._clock())
        except PersistenceError as e:
            self.log.error("Upcoming programs lookup error for %s: %s", channel_id, e)
            return []

    async def get_channel_icon(self, channel_id: str) -> str | None:
        if not channel_id:
            return None
        try:
            async with self.store.session_scope() as db:
                return await epg_query_service.get_channel_icon(db, channel_id)
        except PersistenceError as e:
            self.log.error("Channel icon lookup error for %s: %s", channel_id, e)
            return None

    def needs_update(self) -> bool:
        """True if never refreshed or the last refresh is 24h old or more"""
        if self.last_update is None:
            return True
        return self._clock() - self.last_update >= UPDATE_MAX_AGE

    async def is_epg_available(self) -> bool:
        """True if not refreshing and at least one program is stored"""
        if self.is_updating:
            return False
        try:
            async with self.store.session_scope() as db:
                _, _, programs_count = await count_guide_rows(db)
        except PersistenceError:
            return False
        return programs_count > 0

    async def get_status(self) -> GuideStatus:
        channels_count = icons_count = programs_count = 0
        try:
            async with self.store.session_scope() as db:
                channels_count, icons_count, programs_count = await count_guide_rows(db)
        except PersistenceError as e:
            self.log.error("getStatus error: %s", e)

        return GuideStatus(
            is_updating=self.is_updating,
            last_update=self.last_update,
            last_epg_url=self.last_epg_url,
            channels_count=channels_count,
            icons_count=icons_count,
            programs_count=programs_count,
        )

    async def check_missing_epg(self, channels: Sequence[Channel]) -> list[Channel]:
        """Catalog channels without guide data; logged as a count"""
        try:
            async with self.store.session_scope() as db:
                missing = await epg_query_service.find_channels_without_guide(db, channels)
        except PersistenceError as e:
            self.log.error("checkMissingEPG error: %s", e)
            return []
        if missing:
            self.log.info("M3U channels without EPG: %s", len(missing))
        return missing

    async def close(self) -> None:
        await self.store.close()

    async def destroy(self) -> None:
        """Cancel scheduled jobs and delete the session's guide file"""
        if self._scheduler is not None:
            self._scheduler.remove_job(self.refresh_job_id)
            self._scheduler.remove_job(self.cleanup_job_id)
        await self.store.delete()
        self.log.info("EPG store destroyed")
