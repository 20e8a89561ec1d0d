from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator


class StreamVariant(BaseModel):
    """One playable source of a channel, in fallback priority order"""
    url: str = Field(..., description="Stream URL or the no-signal asset for placeholders")
    name: str = Field(..., description="Display label")
    headers: dict[str, str] = Field(default_factory=dict, description="Request headers (canonical key casing)")
    placeholder: bool = Field(False, description="True when the playlist declared no stream")


class Channel(BaseModel):
    """Catalog entry built by playlist ingestion"""
    id: str = Field(..., description="Catalog id, 'tv|<canonical id>'")
    type: str = "tv"
    name: str = Field(..., description="Display name")
    genres: list[str] = Field(default_factory=list, description="Ordered genre labels")
    tvg_id: str = Field(..., description="Canonical (guide compatible) channel id")
    tvg: dict[str, str] = Field(default_factory=dict, description="Playlist tvg-* attributes")
    logo: str | None = None
    poster: str | None = None
    background: str | None = None
    description: str | None = None
    streams: list[StreamVariant] = Field(default_factory=list)


class CatalogData(BaseModel):
    """Current catalog snapshot of a session"""
    channels: list[Channel] = Field(default_factory=list)
    genres: list[str] = Field(default_factory=list)
    epg_urls: list[str] = Field(default_factory=list)


class SessionConfig(BaseModel):
    """Per-session configuration as supplied by the client"""
    model_config = ConfigDict(extra="allow")

    session_id: str | None = None
    m3u: str | None = Field(None, description="Comma-separated playlist or pointer URLs")
    epg: str | None = Field(None, description="Guide URL(s)")
    epg_enabled: bool | None = None
    proxy: str | None = None
    id_suffix: str | None = None
    remapper_path: str | None = None
    update_interval: str | None = Field(None, description="Refresh threshold as HH:MM")
    resolver_script: str | None = None
    python_script_url: str | None = None

    @field_validator("id_suffix")
    @classmethod
    def strip_suffix_dot(cls, v: str | None) -> str | None:
        """Accept '.it' and 'it' alike"""
        if v is None:
            return v
        return v.strip().lstrip(".") or None


class ProgramInfo(BaseModel):
    """Program row as returned by guide lookups"""
    channel_id: str
    title: str
    description: str | None = None
    category: str | None = None
    start: datetime
    stop: datetime


class GuideStatus(BaseModel):
    """Guide store status"""
    is_updating: bool
    last_update: datetime | None
    last_epg_url: str | None
    channels_count: int
    icons_count: int
    programs_count: int
    storage_type: str = "SQLite (Disk)"


class CacheEvent(BaseModel):
    """Notification delivered to cache listeners after a rebuild attempt"""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    kind: Literal["updated", "error"]
    session_key: str
    channels: int = 0
    genres: int = 0
    error: Exception | None = None


class SessionKeyResponse(BaseModel):
    session_key: str


class RebuildResponse(BaseModel):
    session_key: str
    rebuilt: bool = Field(..., description="False when a rebuild was already in flight")
    channels: int
    genres: int
    epg_urls: list[str]


class CatalogPage(BaseModel):
    session_key: str
    skip: int
    total: int
    genres: list[str]
    channels: list[Channel]


class ChannelDetail(BaseModel):
    channel: Channel
    icon: str | None = None
    current_program: ProgramInfo | None = None
    upcoming_programs: list[ProgramInfo] = Field(default_factory=list)
