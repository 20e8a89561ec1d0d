"""
Data merging utilities

This module handles merging of playlist entries from multiple sources into
catalog channels.
"""
import logging
import re
from collections.abc import Iterable, MutableMapping, Sequence

from iptv_catalog.schemas import Channel, StreamVariant
from iptv_catalog.services.playlist_parser import PlaylistEntry

logger = logging.getLogger(__name__)

CATALOG_ID_PREFIX = "tv|"
NO_SIGNAL_URL = "https://static.vecteezy.com/system/resources/previews/001/803/236/mp4/no-signal-bad-tv-free-video.mp4"
NO_SIGNAL_LABEL = "No stream available in M3U playlists"

_PARENTHESIZED = re.compile(r"\s*\(.*?\)\s*")


def display_name(entry: PlaylistEntry) -> str:
    """Display name without parenthesized tags: 'Rai 1 (HD)' -> 'Rai 1'"""
    raw = entry.tvg.get("name") or entry.name
    cleaned = " ".join(_PARENTHESIZED.sub(" ", raw).split())
    return cleaned or raw.strip()


def build_variant(entry: PlaylistEntry, channel_name: str) -> StreamVariant:
    """Stream variant for one entry; entries without stream become placeholders"""
    if entry.url is None:
        return StreamVariant(
            url=NO_SIGNAL_URL,
            name=NO_SIGNAL_LABEL,
            headers=dict(entry.headers),
            placeholder=True,
        )
    return StreamVariant(url=entry.url, name=entry.name or channel_name, headers=dict(entry.headers))


def create_channel(entry: PlaylistEntry, canonical_id: str) -> Channel:
    """
    Create a catalog channel for the first entry seen with this canonical id

    Args:
        entry: Playlist entry
        canonical_id: Remapped, suffixed, normalized id

    Returns:
        Channel with the entry's stream as its only variant
    """
    name = display_name(entry)
    tvg = dict(entry.tvg)
    tvg["id"] = canonical_id
    tvg["name"] = name
    logo = entry.tvg.get("logo") or None

    return Channel(
        id=f"{CATALOG_ID_PREFIX}{canonical_id}",
        name=name,
        genres=list(entry.genres),
        tvg_id=canonical_id,
        tvg=tvg,
        logo=logo,
        poster=logo,
        background=logo,
        description=f"Channel: {name} - ID: {canonical_id}",
        streams=[build_variant(entry, name)],
    )


def merge_entry(
    existing_channels: MutableMapping[str, Channel],
    canonical_id: str,
    entry: PlaylistEntry,
) -> bool:
    """
    Merge a playlist entry into the channel map.

    A new canonical id creates a channel. A known one gets the entry's
    variant appended and its genres unioned in, order preserved.

    Returns:
        True if a new channel was created
    """
    current = existing_channels.get(canonical_id)
    if current is None:
        existing_channels[canonical_id] = create_channel(entry, canonical_id)
        return True

    current.streams.append(build_variant(entry, current.name))
    for genre in entry.genres:
        if genre not in current.genres:
            current.genres.append(genre)
    logger.debug("Merged variant into %s (%s streams)", canonical_id, len(current.streams))
    return False


def merge_genres(existing_genres: list[str], new_genres: Iterable[str]) -> int:
    """Append genres not seen yet, preserving first-seen order; returns count added"""
    new_count = 0
    for genre in new_genres:
        if genre not in existing_genres:
            existing_genres.append(genre)
            new_count += 1
    return new_count


def drop_placeholders(channels: Sequence[Channel]) -> int:
    """
    Remove placeholder variants from channels that also have a real stream.

    Channels with placeholders only keep them so they stay listed.

    Returns:
        Number of placeholder variants removed
    """
    removed = 0
    for channel in channels:
        real = [stream for stream in channel.streams if not stream.placeholder]
        if real and len(real) < len(channel.streams):
            removed += len(channel.streams) - len(real)
            channel.streams = real
    return removed
