"""
Playlist ingestion pipeline

Resolves playlist references (direct playlists or pointer documents listing
playlist URLs), fetches and parses every playlist, merges entries into
channels by canonical id and returns the catalog for one session.
"""
import logging
from collections.abc import Mapping
from time import perf_counter

from iptv_catalog.config import settings
from iptv_catalog.errors import CatalogError, IngestionError
from iptv_catalog.identifiers import RemapTable, apply_suffix
from iptv_catalog.schemas import CatalogData, Channel, SessionConfig
from iptv_catalog.services.playlist_parser import is_playlist_document, parse_playlist
from iptv_catalog.utils.data_merging import drop_placeholders, merge_entry, merge_genres
from iptv_catalog.utils.file_operations import HttpFetcher
from iptv_catalog.utils.logging_helpers import get_session_logger, log_source_processing, sanitize_url


logger = logging.getLogger(__name__)


def as_session_config(config: SessionConfig | Mapping | None) -> SessionConfig:
    """Accept a SessionConfig, a plain mapping or None"""
    if isinstance(config, SessionConfig):
        return config
    if isinstance(config, Mapping):
        return SessionConfig.model_validate(dict(config))
    return SessionConfig()


class PlaylistIngestionPipeline:
    """
    Turns comma-separated playlist references into a catalog.

    Each call to load_and_transform works on its own channel map, so one
    pipeline can serve concurrent sessions.
    """

    def __init__(
        self,
        fetcher: HttpFetcher | None = None,
        *,
        default_user_agent: str | None = None,
        remap_default_path: str | None = None,
    ):
        self.fetcher = fetcher or HttpFetcher()
        self.default_user_agent = default_user_agent or settings.default_user_agent
        self.remap_default_path = remap_default_path or settings.remap_default_path

    async def resolve_playlist_urls(
        self,
        references: list[str],
        log: logging.LoggerAdapter | logging.Logger = logger,
    ) -> list[tuple[str, str | None]]:
        """
        Expand references into (playlist url, already fetched content) pairs

        A document starting with #EXTM3U is a playlist and its content is
        reused. Anything else is a pointer document whose 'http' lines are
        playlist URLs. Failing references are logged and skipped.
        """
        resolved: list[tuple[str, str | None]] = []
        for reference in references:
            log.info("Checking URL: %s", sanitize_url(reference))
            try:
                content = await self.fetcher.get_text(reference)
            except CatalogError as e:
                log.error("Error processing URL %s: %s", sanitize_url(reference), e)
                continue

            if is_playlist_document(content):
                resolved.append((reference, content))
                log.info("Direct M3U file found")
            else:
                urls = [line.strip() for line in content.splitlines() if line.strip().startswith("http")]
                resolved.extend((url, None) for url in urls)
                log.info("URL list found, contains %s playlist(s)", len(urls))
        return resolved

    async def load_and_transform(
        self,
        source_urls: str,
        config: SessionConfig | Mapping | None = None,
        session_key: str | None = None,
    ) -> CatalogData:
        """
        Build the catalog from comma-separated playlist references.

        Args:
            source_urls: Comma-separated playlist or pointer URLs
            config: Session configuration (id suffix, remap rules source)
            session_key: Session key for log tagging

        Returns:
            Channels in first-seen order, genres in first-seen order and the
            union of guide URLs advertised by the playlists

        Raises:
            IngestionError: If no playlist resolved or every playlist failed
        """
        log = get_session_logger(__name__, session_key)
        session_config = as_session_config(config)
        suffix = session_config.id_suffix

        references = [url.strip() for url in (source_urls or "").split(",") if url.strip()]
        if not references:
            raise IngestionError("No playlist URL configured")

        start_time = perf_counter()
        log.info("Playlist processing started, M3U URLs: %s", len(references))

        remap = await RemapTable.load(
            session_config.remapper_path,
            session_key,
            suffix=suffix,
            fetcher=self.fetcher,
            default_path=self.remap_default_path,
        )

        playlists = await self.resolve_playlist_urls(references, log)
        log.info("Total playlists to process: %s", len(playlists))
        if not playlists:
            raise IngestionError(f"No playlist could be resolved from {len(references)} URL(s)")

        channels: dict[str, Channel] = {}
        genres: list[str] = []
        epg_urls: list[str] = []
        processed = 0

        for idx, (playlist_url, content) in enumerate(playlists, 1):
            log_source_processing(log, idx, len(playlists), playlist_url)
            try:
                if content is None:
                    content = await self.fetcher.get_text(playlist_url)
                parsed = parse_playlist(content, default_user_agent=self.default_user_agent, id_suffix=suffix)
            except CatalogError as e:
                log.error("Playlist error for %s: %s", sanitize_url(playlist_url), e)
                continue

            new_channels = 0
            for entry in parsed.entries:
                canonical_id = apply_suffix(remap.remapped_id(entry.tvg_id), suffix, "append")
                if merge_entry(channels, canonical_id, entry):
                    new_channels += 1
                    merge_genres(genres, entry.genres)

            for url in parsed.epg_urls:
                if url not in epg_urls:
                    epg_urls.append(url)

            processed += 1
            log.info(
                "Playlist processed: %s entries, %s new channels, %s skipped",
                len(parsed.entries),
                new_channels,
                parsed.skipped,
            )

        if processed == 0:
            raise IngestionError(f"All {len(playlists)} playlist(s) failed to load")

        result = list(channels.values())
        removed = drop_placeholders(result)
        if removed:
            log.debug("Dropped %s placeholder variant(s) from channels with real streams", removed)

        placeholder_only = [channel.name for channel in result if all(s.placeholder for s in channel.streams)]
        if placeholder_only:
            log.info("Channels with dummy stream only: %s", len(placeholder_only))

        log.info(
            "Processing summary: channels %s, genres %s, EPG URLs %s - completed in %.2fs",
            len(result),
            len(genres),
            len(epg_urls),
            perf_counter() - start_time,
        )
        return CatalogData(channels=result, genres=genres, epg_urls=epg_urls)
