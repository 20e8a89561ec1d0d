"""Tests for the per-session catalog cache."""
import asyncio
import logging
from datetime import timedelta

import pytest

from iptv_catalog.errors import ConfigurationError, IngestionError
from iptv_catalog.schemas import CatalogData, Channel
from iptv_catalog.services.cache_orchestrator import (
    SETTINGS_GENRE,
    CacheOrchestrator,
    parse_interval,
    parse_refresh_interval,
)
from iptv_catalog.services.playlist_pipeline import PlaylistIngestionPipeline
from iptv_catalog.services.scheduler_service import JobScheduler

from conftest import NOW


PLAYLIST_URL = "http://src/list.m3u"

PLAYLIST = """#EXTM3U url-tvg="http://g/guide.xml"
#EXTINF:-1 tvg-id="news1" group-title="News",News One
http://a/1
#EXTINF:-1 tvg-id="sport1" group-title="Sport",Sport One
http://a/2
#EXTINF:-1 tvg-id="cfg" group-title="~SETTINGS~",Setup
http://a/3
"""

OTHER_PLAYLIST = """#EXTM3U
#EXTINF:-1 tvg-id="movies" group-title="Movies",Movies
http://b/1
"""


class BlockingPipeline:
    """Pipeline stand-in that holds every build until released"""

    def __init__(self):
        self.release = asyncio.Event()
        self.calls = 0

    async def load_and_transform(self, source_urls, config=None, session_key=None) -> CatalogData:
        self.calls += 1
        await self.release.wait()
        channel = Channel(id="tv|a", name="A", tvg_id="a", genres=["G"])
        return CatalogData(channels=[channel], genres=["G"])


def _cache(tmp_path, fetcher, remap_file, clock, key="sess1", config=None, **kwargs) -> CacheOrchestrator:
    pipeline = PlaylistIngestionPipeline(fetcher, default_user_agent="UA", remap_default_path=str(remap_file))
    return CacheOrchestrator(key, config, pipeline=pipeline, data_dir=tmp_path, clock=clock, **kwargs)


@pytest.fixture
def playlists(routes):
    routes[PLAYLIST_URL] = PLAYLIST
    routes["http://src/other.m3u"] = OTHER_PLAYLIST
    return routes


class TestParseRefreshInterval:
    DEFAULT = timedelta(hours=12)

    @pytest.mark.parametrize(
        "value, expected",
        [
            ("01:30", timedelta(hours=1, minutes=30)),
            ("6:00", timedelta(hours=6)),
            ("00:00", timedelta(0)),
            ("23:59", timedelta(hours=23, minutes=59)),
        ],
    )
    def test_valid(self, value, expected):
        assert parse_refresh_interval(value, self.DEFAULT) == expected

    @pytest.mark.parametrize("value", ["25:99", "24:00", "12:60", "abc", "1:2:3", None, ""])
    def test_invalid_falls_back_to_default(self, value):
        assert parse_refresh_interval(value, self.DEFAULT) == self.DEFAULT

    def test_strict_parser_raises(self):
        with pytest.raises(ConfigurationError):
            parse_interval("25:99")

    def test_invalid_value_logs_warning(self, caplog):
        with caplog.at_level(logging.WARNING, logger="iptv_catalog.services.cache_orchestrator"):
            assert parse_refresh_interval("25:99", self.DEFAULT) == self.DEFAULT
        assert "25:99" in caplog.text
        assert any(r.levelno == logging.WARNING for r in caplog.records)


class TestRebuild:
    @pytest.mark.asyncio
    async def test_rebuild_persists_and_reloads(self, tmp_path, fetcher, playlists, remap_file, clock):
        cache = _cache(tmp_path, fetcher, remap_file, clock)
        await cache.open()
        assert await cache.rebuild_cache(PLAYLIST_URL)
        await cache.close()

        reopened = _cache(tmp_path, fetcher, remap_file, clock)
        data = await reopened.get_cached_data()

        assert [c.id for c in data.channels] == ["tv|news1", "tv|sport1", "tv|cfg"]
        assert data.genres == ["News", "Sport", "~SETTINGS~"]
        assert data.epg_urls == ["http://g/guide.xml"]
        assert reopened.record.last_updated == NOW
        assert reopened.record.source_url == PLAYLIST_URL
        await reopened.close()

    @pytest.mark.asyncio
    async def test_concurrent_rebuild_runs_once(self, tmp_path, clock):
        pipeline = BlockingPipeline()
        cache = CacheOrchestrator("sess1", pipeline=pipeline, data_dir=tmp_path, clock=clock)

        first = asyncio.create_task(cache.rebuild_cache(PLAYLIST_URL))
        await asyncio.sleep(0.05)
        assert cache.in_flight

        assert await cache.rebuild_cache(PLAYLIST_URL) is False

        pipeline.release.set()
        assert await first is True
        assert pipeline.calls == 1
        assert not cache.in_flight
        assert [c.id for c in (await cache.get_cached_data()).channels] == ["tv|a"]
        await cache.close()

    @pytest.mark.asyncio
    async def test_skipped_rebuild_leaves_config_untouched(self, tmp_path, clock):
        pipeline = BlockingPipeline()
        cache = CacheOrchestrator("sess1", {"id_suffix": "it"}, pipeline=pipeline, data_dir=tmp_path, clock=clock)

        first = asyncio.create_task(cache.rebuild_cache(PLAYLIST_URL))
        await asyncio.sleep(0.05)

        assert await cache.rebuild_cache(PLAYLIST_URL, {"id_suffix": "uk", "update_interval": "01:00"}) is False
        assert cache.config.id_suffix == "it"
        assert cache.config.update_interval is None

        pipeline.release.set()
        await first
        assert await cache.rebuild_cache(PLAYLIST_URL, {"update_interval": "01:00"})
        assert cache.config.update_interval == "01:00"
        assert cache.config.id_suffix == "it"
        await cache.close()

    @pytest.mark.asyncio
    async def test_failed_rebuild_keeps_previous_snapshot(self, tmp_path, fetcher, playlists, remap_file, clock):
        events = []
        cache = _cache(tmp_path, fetcher, remap_file, clock)
        cache.add_listener(events.append)
        await cache.rebuild_cache(PLAYLIST_URL)

        playlists[PLAYLIST_URL] = 500
        clock.advance(hours=1)
        with pytest.raises(IngestionError):
            await cache.rebuild_cache(PLAYLIST_URL)

        data = await cache.get_cached_data()
        assert len(data.channels) == 3
        assert cache.record.last_updated == NOW
        assert [e.kind for e in events] == ["updated", "error"]
        assert isinstance(events[1].error, IngestionError)
        assert not cache.in_flight
        await cache.close()

    @pytest.mark.asyncio
    async def test_listeners(self, tmp_path, fetcher, playlists, remap_file, clock):
        events = []

        def broken(event):
            raise RuntimeError("listener failure")

        cache = _cache(tmp_path, fetcher, remap_file, clock)
        cache.add_listener(broken)
        cache.add_listener(events.append)

        await cache.rebuild_cache(PLAYLIST_URL)
        assert len(events) == 1
        assert events[0].kind == "updated"
        assert events[0].channels == 3
        assert events[0].genres == 3
        assert events[0].session_key == "sess1"

        cache.remove_listener(events.append)
        await cache.rebuild_cache(PLAYLIST_URL)
        assert len(events) == 1
        await cache.close()


class TestStaleness:
    @pytest.mark.asyncio
    async def test_without_catalog_is_stale(self, tmp_path, fetcher, remap_file, clock):
        cache = _cache(tmp_path, fetcher, remap_file, clock)
        assert await cache.is_stale()
        await cache.close()

    @pytest.mark.asyncio
    async def test_default_threshold(self, tmp_path, fetcher, playlists, remap_file, clock):
        cache = _cache(tmp_path, fetcher, remap_file, clock)
        await cache.rebuild_cache(PLAYLIST_URL)

        clock.advance(hours=11, minutes=59)
        assert not await cache.is_stale()
        clock.advance(minutes=1)
        assert await cache.is_stale()
        await cache.close()

    @pytest.mark.asyncio
    async def test_configured_threshold(self, tmp_path, fetcher, playlists, remap_file, clock):
        cache = _cache(tmp_path, fetcher, remap_file, clock, config={"update_interval": "00:30"})
        await cache.rebuild_cache(PLAYLIST_URL)

        clock.advance(minutes=29)
        assert not await cache.is_stale()
        clock.advance(minutes=1)
        assert await cache.is_stale()
        # an invalid interval falls back to the 12h default
        assert not await cache.is_stale({"update_interval": "25:99"})
        await cache.close()

    @pytest.mark.asyncio
    async def test_zero_interval_is_always_stale(self, tmp_path, fetcher, playlists, remap_file, clock):
        cache = _cache(tmp_path, fetcher, remap_file, clock, config={"update_interval": "00:00"})
        await cache.rebuild_cache(PLAYLIST_URL)
        assert await cache.is_stale()
        await cache.close()

    @pytest.mark.asyncio
    async def test_poll_rebuilds_stale_cache(self, tmp_path, fetcher, playlists, requested_urls, remap_file, clock):
        cache = _cache(tmp_path, fetcher, remap_file, clock)
        await cache.rebuild_cache(PLAYLIST_URL)
        fetched = requested_urls.count(PLAYLIST_URL)

        await cache._poll()
        assert requested_urls.count(PLAYLIST_URL) == fetched

        clock.advance(hours=12)
        await cache._poll()
        assert requested_urls.count(PLAYLIST_URL) == fetched + 1
        assert cache.record.last_updated == clock.now
        await cache.close()

    @pytest.mark.asyncio
    async def test_polling_job_lifecycle(self, tmp_path, fetcher, remap_file, clock):
        scheduler = JobScheduler()
        cache = _cache(tmp_path, fetcher, remap_file, clock, scheduler=scheduler)

        await cache.open()
        assert scheduler.has_job(cache.poll_job_id)

        await cache.destroy()
        assert not scheduler.has_job(cache.poll_job_id)


class TestQueries:
    @pytest.fixture
    def cache(self, tmp_path, fetcher, playlists, remap_file, clock):
        return _cache(tmp_path, fetcher, remap_file, clock)

    @pytest.mark.asyncio
    async def test_get_channel(self, cache):
        await cache.rebuild_cache(PLAYLIST_URL)

        assert (await cache.get_channel("tv|news1")).id == "tv|news1"
        assert (await cache.get_channel("NEWS1")).id == "tv|news1"
        assert (await cache.get_channel("Sport One")).id == "tv|sport1"
        assert await cache.get_channel("missing") is None
        assert await cache.get_channel("") is None
        await cache.close()

    @pytest.mark.asyncio
    async def test_genre_and_settings_aliases(self, cache):
        await cache.rebuild_cache(PLAYLIST_URL)

        assert [c.id for c in await cache.get_channels_by_genre("News")] == ["tv|news1"]
        for alias in (SETTINGS_GENRE, "Settings", "~SETTINGS~"):
            assert [c.id for c in await cache.get_channels_by_genre(alias)] == ["tv|cfg"]
        assert await cache.get_channels_by_genre("") == []
        await cache.close()

    @pytest.mark.asyncio
    async def test_search(self, cache):
        await cache.rebuild_cache(PLAYLIST_URL)

        assert [c.id for c in await cache.search_channels("ONE")] == ["tv|news1", "tv|sport1"]
        assert len(await cache.search_channels(None)) == 3
        assert await cache.search_channels("weather") == []
        await cache.close()

    @pytest.mark.asyncio
    async def test_request_filters(self, cache):
        await cache.rebuild_cache(PLAYLIST_URL)

        assert cache.record_request_filter(genre="News") == 0
        assert [c.id for c in await cache.get_filtered_channels()] == ["tv|news1"]

        # a bare page request keeps the remembered filter
        assert cache.record_request_filter(skip="100") == 100
        assert cache.last_filter.value == "News"

        assert cache.record_request_filter(genre="News", search="sport") == 0
        assert [c.id for c in await cache.get_filtered_channels()] == ["tv|sport1"]

        assert cache.record_request_filter(genre="Sport&skip=200") == 200
        assert cache.last_filter.kind == "genre"
        assert cache.last_filter.value == "Sport"

        assert cache.record_request_filter(skip="abc") == 0
        assert cache.last_filter is None
        assert len(await cache.get_filtered_channels()) == 3
        await cache.close()


class TestConfigUpdates:
    @pytest.mark.asyncio
    async def test_playlist_change_rebuilds(self, tmp_path, fetcher, playlists, requested_urls, remap_file, clock):
        cache = _cache(tmp_path, fetcher, remap_file, clock, config={"m3u": PLAYLIST_URL})
        await cache.rebuild_cache(PLAYLIST_URL)

        await cache.update_config({"m3u": PLAYLIST_URL, "update_interval": "01:00"})
        assert requested_urls.count(PLAYLIST_URL) == 1
        assert cache.config.update_interval == "01:00"

        await cache.update_config({"m3u": "http://src/other.m3u"})
        data = await cache.get_cached_data()
        assert [c.id for c in data.channels] == ["tv|movies"]
        assert cache.record.source_url == "http://src/other.m3u"
        # fields absent from the update are kept
        assert cache.config.update_interval == "01:00"
        await cache.close()

    @pytest.mark.asyncio
    async def test_guide_change_does_not_rebuild(self, tmp_path, fetcher, playlists, requested_urls, remap_file, clock):
        cache = _cache(tmp_path, fetcher, remap_file, clock, config={"m3u": PLAYLIST_URL})
        await cache.rebuild_cache(PLAYLIST_URL)

        await cache.update_config({"epg": "http://g/new.xml", "epg_enabled": True})
        assert requested_urls.count(PLAYLIST_URL) == 1
        assert cache.config.epg == "http://g/new.xml"
        await cache.close()

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "update",
        [{"update_interval": "01:00"}, {"id_suffix": "it"}, {"remapper_path": "/tmp/rules.txt"}],
    )
    async def test_polling_restarts_on_refresh_settings_change(
        self, tmp_path, fetcher, playlists, requested_urls, remap_file, clock, update
    ):
        scheduler = JobScheduler()
        cache = _cache(tmp_path, fetcher, remap_file, clock, config={"m3u": PLAYLIST_URL}, scheduler=scheduler)
        await cache.open()
        scheduler.remove_job(cache.poll_job_id)

        await cache.update_config({"epg": "http://g/guide.xml"})
        assert not scheduler.has_job(cache.poll_job_id)

        await cache.update_config(update)
        assert scheduler.has_job(cache.poll_job_id)
        assert requested_urls.count(PLAYLIST_URL) == 0
        await cache.destroy()

    @pytest.mark.asyncio
    async def test_stale_check_warns_on_malformed_interval(self, tmp_path, fetcher, playlists, remap_file, clock, caplog):
        cache = _cache(tmp_path, fetcher, remap_file, clock, config={"update_interval": "25:99"})
        await cache.rebuild_cache(PLAYLIST_URL)

        clock.advance(hours=11)
        with caplog.at_level(logging.WARNING, logger="iptv_catalog.services.cache_orchestrator"):
            assert not await cache.is_stale()
        assert "Invalid time format '25:99'" in caplog.text
        await cache.close()


@pytest.mark.asyncio
async def test_destroy_removes_file_and_snapshot(tmp_path, fetcher, playlists, remap_file, clock):
    cache = _cache(tmp_path, fetcher, remap_file, clock)
    await cache.rebuild_cache(PLAYLIST_URL)
    assert cache.store.path.exists()

    await cache.destroy()

    assert not cache.store.path.exists()
    assert cache.record.channels is None
