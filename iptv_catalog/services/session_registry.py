"""
Session registry

Maps session keys to their cache and guide components, derives keys from
configurations, tracks activity and expires idle sessions.
"""
import asyncio
import hashlib
import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path

from iptv_catalog.config import settings
from iptv_catalog.errors import CatalogError
from iptv_catalog.schemas import SessionConfig
from iptv_catalog.services.cache_orchestrator import CacheOrchestrator
from iptv_catalog.services.epg_fetch_service import EPGStore
from iptv_catalog.services.playlist_pipeline import PlaylistIngestionPipeline, as_session_config
from iptv_catalog.services.scheduler_service import JobScheduler
from iptv_catalog.utils.file_operations import HttpFetcher
from iptv_catalog.utils.logging_helpers import DEFAULT_SESSION_KEY, get_session_logger
from iptv_catalog.utils.timezone import Clock, utc_now


logger = logging.getLogger(__name__)

FINGERPRINT_FIELDS = (
    "m3u",
    "epg",
    "proxy",
    "id_suffix",
    "remapper_path",
    "update_interval",
    "resolver_script",
    "python_script_url",
)
SWEEP_JOB_ID = "registry:session_sweep"


def session_fingerprint(config: object) -> str:
    """
    Derive the session key of a configuration.

    Only the identity fields that are present and non-empty take part,
    stringified, serialized as compact JSON in a fixed order and hashed.
    Anything that is not a mapping maps to the default session.

    Returns:
        First 16 hex characters of the SHA-256 digest, or '_default'
    """
    if isinstance(config, SessionConfig):
        config = config.model_dump(exclude_none=True)
    if not isinstance(config, Mapping):
        return DEFAULT_SESSION_KEY

    selected = {
        key: str(config[key])
        for key in FINGERPRINT_FIELDS
        if config.get(key) is not None and config.get(key) != ""
    }
    payload = json.dumps(selected, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()[:16]


@dataclass(slots=True)
class Session:
    key: str
    cache: CacheOrchestrator
    epg: EPGStore


class SessionRegistry:
    """
    Live sessions of the process.

    The default session is never expired. Teardown stops the session's jobs
    and deletes its store files.
    """

    def __init__(
        self,
        scheduler: JobScheduler | None = None,
        *,
        data_dir: str | Path | None = None,
        fetcher: HttpFetcher | None = None,
        pipeline: PlaylistIngestionPipeline | None = None,
        clock: Clock = utc_now,
        ttl: timedelta | None = None,
    ):
        self._scheduler = scheduler
        self._data_dir = data_dir
        self._fetcher = fetcher or HttpFetcher()
        self._pipeline = pipeline or PlaylistIngestionPipeline(self._fetcher)
        self._clock = clock
        self.ttl = ttl or timedelta(hours=settings.session_ttl_hours)
        self.sessions: dict[str, Session] = {}
        self.last_activity: dict[str, datetime] = {}
        self._creation_locks: dict[str, asyncio.Lock] = {}

    def __contains__(self, key: object) -> bool:
        return key in self.sessions

    def __len__(self) -> int:
        return len(self.sessions)

    def start(self) -> None:
        """Install the periodic expiry sweep"""
        if self._scheduler is None:
            return
        self._scheduler.add_interval_job(
            SWEEP_JOB_ID,
            self._scheduled_sweep,
            settings.session_sweep_interval_min * 60,
        )
        logger.info("Session sweep scheduled every %s min", settings.session_sweep_interval_min)

    async def _create_session(self, key: str, config: SessionConfig) -> Session:
        cache = CacheOrchestrator(
            key,
            config,
            pipeline=self._pipeline,
            scheduler=self._scheduler,
            data_dir=self._data_dir,
            clock=self._clock,
        )
        epg = EPGStore(
            key,
            scheduler=self._scheduler,
            fetcher=self._fetcher,
            data_dir=self._data_dir,
            clock=self._clock,
        )
        await cache.open()
        await epg.open()
        logger.info("Session %s created", key)
        return Session(key=key, cache=cache, epg=epg)

    async def _get_or_create(self, key: str, config: SessionConfig | Mapping | None) -> Session:
        # one store pair per key, even when first references race
        lock = self._creation_locks.setdefault(key, asyncio.Lock())
        async with lock:
            session = self.sessions.get(key)
            if session is None:
                session = await self._create_session(key, as_session_config(config))
                self.sessions[key] = session
        return session

    async def resolve(
        self,
        explicit_id: str | None = None,
        config: SessionConfig | Mapping | None = None,
    ) -> Session:
        """
        Get or create the session for an explicit id or a configuration.

        A supplied configuration is applied to the session; failures of the
        rebuild it may trigger are logged and the session is still returned.
        """
        key = (explicit_id or "").strip() or session_fingerprint(config)

        session = await self._get_or_create(key, config)

        if isinstance(config, SessionConfig):
            has_config = bool(config.model_fields_set)
        else:
            has_config = isinstance(config, Mapping) and bool(config)
        if has_config:
            try:
                await session.cache.update_config(config)
            except CatalogError as e:
                session.cache.log.error("Config update error: %s", e)

        self.touch(key)
        return session

    async def sync_guide(self, session: Session) -> bool:
        """
        Attach the session's guide to the configured or playlist-advertised URLs.

        Returns:
            True if a guide refresh was started
        """
        config = session.cache.config
        if not config.epg_enabled:
            return False
        guide_url = config.epg
        if not guide_url:
            data = await session.cache.get_cached_data()
            guide_url = ",".join(data.epg_urls)
        if not guide_url:
            return False
        return await session.epg.initialize_epg(guide_url)

    def touch(self, key: str) -> None:
        """Record activity; the default session is not tracked"""
        if key and key != DEFAULT_SESSION_KEY:
            self.last_activity[key] = self._clock()

    async def sweep_expired(self) -> list[str]:
        """Tear down every non-default session idle for at least the TTL"""
        now = self._clock()
        expired = {key for key, last in self.last_activity.items() if now - last >= self.ttl}
        for key in self.sessions:
            if key == DEFAULT_SESSION_KEY:
                continue
            last = self.last_activity.get(key)
            if last is None or now - last >= self.ttl:
                expired.add(key)

        removed = []
        for key in sorted(expired):
            try:
                if await self.teardown(key):
                    removed.append(key)
            except (CatalogError, OSError) as e:
                logger.error("Session expiry error for %s: %s", key, e)
        if removed:
            logger.info("Expired %s idle session(s)", len(removed))
        return removed

    async def _scheduled_sweep(self) -> None:
        await self.sweep_expired()

    async def teardown(self, key: str) -> bool:
        """
        Destroy a session and delete its files; idempotent.

        Returns:
            True if a live session was removed
        """
        if key == DEFAULT_SESSION_KEY:
            return False
        self.last_activity.pop(key, None)
        self._creation_locks.pop(key, None)
        session = self.sessions.pop(key, None)
        if session is None:
            return False

        await session.cache.destroy()
        await session.epg.destroy()
        get_session_logger(__name__, key).info("Session expired and removed")
        return True

    async def shutdown(self) -> None:
        """Remove the sweep job and close every session's stores"""
        if self._scheduler is not None:
            self._scheduler.remove_job(SWEEP_JOB_ID)
        for session in list(self.sessions.values()):
            await session.cache.close()
            await session.epg.close()
        logger.info("Session registry shut down (%s session(s))", len(self.sessions))
