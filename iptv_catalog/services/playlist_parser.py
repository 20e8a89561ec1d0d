"""
M3U playlist parsing

Turns playlist text into entries: one per #EXTINF directive terminated by a
stream URL (or the literal 'null' for "no stream"). Request headers are
layered EXTINF http-* attributes < #EXTVLCOPT lines < one #EXTHTTP JSON block.
"""
import json
import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass, field

from iptv_catalog.errors import ParseError
from iptv_catalog.identifiers import apply_suffix, clean_channel_name, normalize_id


logger = logging.getLogger(__name__)

PLAYLIST_MARKER = "#EXTM3U"
NO_STREAM_TOKEN = "null"
DEFAULT_GENRE = "Other Channels"

CANONICAL_HEADER_KEYS = {
    "user-agent": "User-Agent",
    "referer": "Referer",
    "referrer": "Referer",
    "origin": "Origin",
}

_ATTRIBUTE_RE = re.compile(r'([A-Za-z0-9_-]+)="([^"]*)"')
_INLINE_HEADER_RE = re.compile(r"""http-([\w-]+)=["']([^"']+)["']?""")
_EPG_HINT_RE = re.compile(r'(?:url-tvg|x-tvg-url)="([^"]+)"')
_STREAM_LINE_RE = re.compile(r"^[a-z][a-z0-9+.-]*://", re.IGNORECASE)


@dataclass(slots=True)
class PlaylistEntry:
    """One #EXTINF entry and the stream line that closed it."""
    name: str
    genres: list[str]
    tvg: dict[str, str]
    headers: dict[str, str]
    url: str | None = None

    @property
    def tvg_id(self) -> str:
        return self.tvg.get("id", "")


@dataclass(slots=True)
class ParsedPlaylist:
    entries: list[PlaylistEntry] = field(default_factory=list)
    epg_urls: list[str] = field(default_factory=list)
    skipped: int = 0


def is_playlist_document(content: str) -> bool:
    """True if the text starts with the #EXTM3U marker"""
    return content.lstrip("\ufeff \t\r\n").startswith(PLAYLIST_MARKER)


def extract_epg_urls(content: str) -> list[str]:
    """Guide URL hints from the playlist header (url-tvg / x-tvg-url, comma-separated)"""
    for line in content.splitlines():
        line = line.strip().lstrip("\ufeff")
        if not line:
            continue
        if not line.startswith(PLAYLIST_MARKER):
            return []
        urls: list[str] = []
        for match in _EPG_HINT_RE.finditer(line):
            urls.extend(url.strip() for url in match.group(1).split(",") if url.strip())
        return list(dict.fromkeys(urls))
    return []


def merge_headers(
    extinf_headers: Mapping[str, str],
    option_headers: Mapping[str, str],
    http_headers: Mapping[str, str],
    default_user_agent: str,
) -> dict[str, str]:
    """
    Merge the three header layers, later layers winning.

    Keys are compared case-insensitively; User-Agent, Referer (also spelled
    'referrer') and Origin get canonical casing, other keys are lower-cased.
    A User-Agent is always present.
    """
    merged: dict[str, str] = {}
    for layer in (extinf_headers, option_headers, http_headers):
        for key, value in layer.items():
            if value is None:
                continue
            lowered = str(key).strip().lower()
            canonical = CANONICAL_HEADER_KEYS.get(lowered, lowered)
            merged[canonical] = str(value)

    if not merged.get("User-Agent"):
        merged["User-Agent"] = default_user_agent
    return merged


def _parse_entry_options(
    lines: list[str],
    index: int,
    extinf: str,
    default_user_agent: str,
) -> tuple[dict[str, str], int]:
    """Collect headers for an entry; returns (headers, index of first unconsumed line)"""
    extinf_headers = {key: value for key, value in _INLINE_HEADER_RE.findall(extinf)}

    option_headers: dict[str, str] = {}
    http_headers: dict[str, str] = {}
    while index < len(lines):
        line = lines[index].strip()
        if line.startswith("#EXTVLCOPT:"):
            key, _, value = line[len("#EXTVLCOPT:"):].strip().partition("=")
            key = key.strip()
            if key.lower().startswith("http-") and value:
                option_headers[key[len("http-"):]] = value.strip()
        elif line.startswith("#EXTHTTP:"):
            try:
                parsed = json.loads(line[len("#EXTHTTP:"):])
            except json.JSONDecodeError as e:
                logger.warning("Error parsing EXTHTTP block: %s", e)
            else:
                if isinstance(parsed, dict):
                    http_headers.update({str(k): str(v) for k, v in parsed.items() if v is not None})
        else:
            break
        index += 1

    return merge_headers(extinf_headers, option_headers, http_headers, default_user_agent), index


def parse_extinf(line: str, headers: dict[str, str], id_suffix: str | None = None) -> PlaylistEntry:
    """
    Parse one #EXTINF directive into an entry without stream

    Raises:
        ParseError: If the entry has neither a usable id nor a name
    """
    metadata = line[len("#EXTINF:"):].strip()

    tvg: dict[str, str] = {}
    for key, value in _ATTRIBUTE_RE.findall(metadata):
        if key.lower().startswith("http-"):
            continue
        tvg[key.lower().removeprefix("tvg-")] = value.strip()

    genres: list[str] = []
    for genre in tvg.get("group-title", "").split(";"):
        genre = genre.strip()
        if genre and genre.lower() != "undefined" and genre not in genres:
            genres.append(genre)
    if not genres:
        genres = [DEFAULT_GENRE]

    # name is whatever follows the first comma once attributes are removed
    _, sep, name = _ATTRIBUTE_RE.sub("", metadata).partition(",")
    name = name.strip() if sep else ""

    if not normalize_id(tvg.get("id")):
        derived = clean_channel_name(name)
        if not derived:
            raise ParseError(f"Playlist entry without id or name: {line[:80]!r}")
        tvg["id"] = apply_suffix(derived, id_suffix, "append")

    return PlaylistEntry(
        name=name or tvg.get("name", "") or tvg["id"],
        genres=genres,
        tvg=tvg,
        headers=headers,
    )


def parse_playlist(
    content: str,
    *,
    default_user_agent: str,
    id_suffix: str | None = None,
) -> ParsedPlaylist:
    """
    Parse playlist text into entries

    Malformed entries are logged and skipped; the rest of the document is kept.
    """
    result = ParsedPlaylist(epg_urls=extract_epg_urls(content))
    lines = content.splitlines()
    current: PlaylistEntry | None = None

    i = 0
    while i < len(lines):
        line = lines[i].strip()

        if line.startswith("#EXTINF:"):
            headers, i = _parse_entry_options(lines, i + 1, line, default_user_agent)
            try:
                current = parse_extinf(line, headers, id_suffix)
            except ParseError as e:
                logger.warning("Skipping playlist entry: %s", e)
                result.skipped += 1
                current = None
            continue

        if current is not None and line and not line.startswith("#"):
            if line.lower() == NO_STREAM_TOKEN:
                current.url = None
                result.entries.append(current)
                current = None
            elif _STREAM_LINE_RE.match(line):
                current.url = line
                result.entries.append(current)
                current = None

        i += 1

    if current is not None:
        logger.debug("Trailing playlist entry without stream line dropped: %s", current.name)
        result.skipped += 1

    return result
