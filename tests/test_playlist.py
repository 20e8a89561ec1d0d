"""Tests for M3U parsing and the ingestion pipeline."""
import pytest

from iptv_catalog.errors import IngestionError, ParseError
from iptv_catalog.services.playlist_parser import (
    DEFAULT_GENRE,
    extract_epg_urls,
    is_playlist_document,
    merge_headers,
    parse_extinf,
    parse_playlist,
)
from iptv_catalog.services.playlist_pipeline import PlaylistIngestionPipeline
from iptv_catalog.utils.data_merging import NO_SIGNAL_URL


UA = "TestAgent/1.0"

SCENARIO_PLAYLIST = """#EXTM3U
#EXTINF:-1 tvg-id="News1" group-title="News",News One
http://a/1
#EXTINF:-1 group-title="News",Channel Two
http://a/2
"""


def _pipeline(fetcher, remap_file) -> PlaylistIngestionPipeline:
    return PlaylistIngestionPipeline(fetcher, default_user_agent=UA, remap_default_path=str(remap_file))


class TestParseExtinf:
    def test_attributes_genres_and_name(self):
        entry = parse_extinf(
            '#EXTINF:-1 tvg-id="rai1.it" tvg-logo="http://logo/rai1.png" group-title="News;Italy;undefined; ",Rai 1 HD',
            {},
        )
        assert entry.tvg_id == "rai1.it"
        assert entry.tvg["logo"] == "http://logo/rai1.png"
        assert entry.genres == ["News", "Italy"]
        assert entry.name == "Rai 1 HD"

    def test_default_genre(self):
        entry = parse_extinf('#EXTINF:-1 tvg-id="x",X', {})
        assert entry.genres == [DEFAULT_GENRE]

    def test_name_keeps_commas_after_the_first(self):
        entry = parse_extinf('#EXTINF:-1 tvg-name="A, B" tvg-id="ab",Foo, Bar', {})
        assert entry.name == "Foo, Bar"

    def test_id_derived_from_name_with_suffix(self):
        entry = parse_extinf("#EXTINF:-1,Channel Two (HD)", {}, id_suffix="it")
        assert entry.tvg_id == "channeltwo.it"

    def test_entry_without_id_or_name_is_rejected(self):
        with pytest.raises(ParseError):
            parse_extinf("#EXTINF:-1", {})


class TestHeaders:
    def test_precedence_and_canonical_keys(self):
        merged = merge_headers(
            {"user-agent": "extinf", "referrer": "http://ref-extinf"},
            {"User-Agent": "vlc"},
            {"USER-AGENT": "exthttp", "Origin": "http://origin"},
            UA,
        )
        assert merged == {
            "User-Agent": "exthttp",
            "Referer": "http://ref-extinf",
            "Origin": "http://origin",
        }

    def test_default_user_agent(self):
        assert merge_headers({}, {}, {}, UA) == {"User-Agent": UA}

    def test_header_layers_from_playlist(self):
        content = """#EXTM3U
#EXTINF:-1 tvg-id="a" http-user-agent="inline" http-referrer="http://r1",A
#EXTVLCOPT:http-user-agent=vlc-agent
#EXTVLCOPT:http-origin=http://o1
#EXTHTTP:{"Referer": "http://r2"}
http://stream/a
#EXTINF:-1 tvg-id="b" http-user-agent="inline-b",B
#EXTHTTP:{not json}
http://stream/b
"""
        parsed = parse_playlist(content, default_user_agent=UA)
        a, b = parsed.entries
        assert a.headers == {"User-Agent": "vlc-agent", "Referer": "http://r2", "Origin": "http://o1"}
        assert b.headers == {"User-Agent": "inline-b"}
        assert "http-user-agent" not in a.tvg


class TestParsePlaylist:
    def test_null_stream_and_dangling_entry(self):
        content = """#EXTM3U
#EXTINF:-1 tvg-id="a",A
null
#EXTINF:-1 tvg-id="b",B
#EXTGRP:ignored
"""
        parsed = parse_playlist(content, default_user_agent=UA)
        assert len(parsed.entries) == 1
        assert parsed.entries[0].url is None
        assert parsed.skipped == 1

    def test_malformed_entry_does_not_abort_document(self):
        content = """#EXTM3U
#EXTINF:-1
http://stream/bad
#EXTINF:-1 tvg-id="ok",OK
http://stream/ok
"""
        parsed = parse_playlist(content, default_user_agent=UA)
        assert [e.tvg_id for e in parsed.entries] == ["ok"]
        assert parsed.skipped == 1

    def test_epg_hints(self):
        header = '#EXTM3U url-tvg="http://g/1.xml, http://g/2.xml" x-tvg-url="http://g/2.xml,http://g/3.xml"'
        assert extract_epg_urls(header + "\n") == ["http://g/1.xml", "http://g/2.xml", "http://g/3.xml"]
        assert extract_epg_urls("http://not-a-playlist\n") == []

    def test_playlist_marker(self):
        assert is_playlist_document("\ufeff\n#EXTM3U\n")
        assert not is_playlist_document("http://a/list.m3u\n")


class TestPipeline:
    @pytest.mark.asyncio
    async def test_scenario_two_channels(self, fetcher, routes, remap_file):
        routes["http://src/list.m3u"] = SCENARIO_PLAYLIST

        result = await _pipeline(fetcher, remap_file).load_and_transform("http://src/list.m3u")

        assert [c.id for c in result.channels] == ["tv|news1", "tv|channeltwo"]
        assert result.genres == ["News"]
        news = result.channels[0]
        assert news.tvg_id == "news1"
        assert news.description == "Channel: News One - ID: news1"
        assert [s.url for s in news.streams] == ["http://a/1"]
        assert news.streams[0].headers["User-Agent"] == UA

    @pytest.mark.asyncio
    async def test_duplicate_ids_merge_variants_in_order(self, fetcher, routes, remap_file):
        routes["http://src/one.m3u"] = """#EXTM3U
#EXTINF:-1 tvg-id="Sport" group-title="Sport",Sport HD
http://a/hd
#EXTINF:-1 tvg-id="sport" group-title="Extra",Sport SD
http://a/sd
"""
        result = await _pipeline(fetcher, remap_file).load_and_transform("http://src/one.m3u")

        assert len(result.channels) == 1
        channel = result.channels[0]
        assert [s.url for s in channel.streams] == ["http://a/hd", "http://a/sd"]
        assert channel.genres == ["Sport", "Extra"]
        # global genres only come from channel creation
        assert result.genres == ["Sport"]

    @pytest.mark.asyncio
    async def test_placeholders(self, fetcher, routes, remap_file):
        routes["http://src/p.m3u"] = """#EXTM3U
#EXTINF:-1 tvg-id="a",A
null
#EXTINF:-1 tvg-id="a",A backup
http://a/real
#EXTINF:-1 tvg-id="b",B
null
"""
        result = await _pipeline(fetcher, remap_file).load_and_transform("http://src/p.m3u")
        a, b = result.channels

        assert [s.url for s in a.streams] == ["http://a/real"]
        assert len(b.streams) == 1
        assert b.streams[0].placeholder
        assert b.streams[0].url == NO_SIGNAL_URL

    @pytest.mark.asyncio
    async def test_pointer_document_and_unreachable_source(self, fetcher, routes, remap_file):
        routes["http://src/pointer.txt"] = "http://src/real.m3u\n# comment\n"
        routes["http://src/real.m3u"] = """#EXTM3U url-tvg="http://g/guide.xml"
#EXTINF:-1 tvg-id="a" group-title="G1",A
http://a/a
#EXTINF:-1 tvg-id="b" group-title="G2",B
http://a/b
#EXTINF:-1 tvg-id="c" group-title="G1",C
http://a/c
"""
        result = await _pipeline(fetcher, remap_file).load_and_transform(
            "http://src/unreachable.m3u, http://src/pointer.txt"
        )

        assert len(result.channels) == 3
        assert result.genres == ["G1", "G2"]
        assert result.epg_urls == ["http://g/guide.xml"]

    @pytest.mark.asyncio
    async def test_direct_playlist_is_fetched_once(self, fetcher, routes, requested_urls, remap_file):
        routes["http://src/list.m3u"] = SCENARIO_PLAYLIST
        await _pipeline(fetcher, remap_file).load_and_transform("http://src/list.m3u")
        assert requested_urls.count("http://src/list.m3u") == 1

    @pytest.mark.asyncio
    async def test_suffix_and_remap(self, fetcher, routes, tmp_path):
        remap = tmp_path / "rules.txt"
        remap.write_text("news1.it=rainews.it\n", encoding="utf-8")
        routes["http://src/list.m3u"] = SCENARIO_PLAYLIST

        result = await _pipeline(fetcher, remap).load_and_transform(
            "http://src/list.m3u",
            {"id_suffix": ".it", "remapper_path": str(remap)},
        )
        assert [c.tvg_id for c in result.channels] == ["rainews.it", "channeltwo.it"]

    @pytest.mark.asyncio
    async def test_remap_rule_renames_channel(self, fetcher, routes, tmp_path):
        remap = tmp_path / "rules.txt"
        remap.write_text("ch1=news1\n", encoding="utf-8")
        routes["http://src/list.m3u"] = """#EXTM3U
#EXTINF:-1 tvg-id="ch1" group-title="News",News One
http://a/1
#EXTINF:-1 group-title="News",Channel Two
http://a/2
"""
        result = await _pipeline(fetcher, remap).load_and_transform("http://src/list.m3u")
        assert [c.id for c in result.channels] == ["tv|news1", "tv|channeltwo"]
        assert [c.name for c in result.channels] == ["News One", "Channel Two"]

    @pytest.mark.asyncio
    async def test_raw_ids_remapped_to_same_target_merge(self, fetcher, routes, tmp_path):
        remap = tmp_path / "rules.txt"
        remap.write_text("rai1hd=rai1\nrai1sd=rai1\n", encoding="utf-8")
        routes["http://src/list.m3u"] = """#EXTM3U
#EXTINF:-1 tvg-id="Rai1HD",Rai 1 HD
http://a/hd
#EXTINF:-1 tvg-id="Rai1SD",Rai 1 SD
http://a/sd
"""
        result = await _pipeline(fetcher, remap).load_and_transform("http://src/list.m3u")
        assert len(result.channels) == 1
        assert [s.url for s in result.channels[0].streams] == ["http://a/hd", "http://a/sd"]

    @pytest.mark.asyncio
    async def test_nothing_resolvable_raises(self, fetcher, remap_file):
        with pytest.raises(IngestionError):
            await _pipeline(fetcher, remap_file).load_and_transform("http://src/missing.m3u")

    @pytest.mark.asyncio
    async def test_every_playlist_failing_raises(self, fetcher, routes, remap_file):
        routes["http://src/pointer.txt"] = "http://src/gone1.m3u\nhttp://src/gone2.m3u\n"
        with pytest.raises(IngestionError):
            await _pipeline(fetcher, remap_file).load_and_transform("http://src/pointer.txt")

    @pytest.mark.asyncio
    async def test_empty_source_list_raises(self, fetcher, remap_file):
        with pytest.raises(IngestionError):
            await _pipeline(fetcher, remap_file).load_and_transform(" , ")
