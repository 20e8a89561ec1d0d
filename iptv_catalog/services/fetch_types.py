"""
Shared dataclasses used across the guide fetching pipeline.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime


@dataclass(slots=True)
class IconPayload:
    """In-memory representation of a channel icon row before persistence."""
    channel_id: str
    icon_url: str


@dataclass(slots=True)
class ProgramPayload:
    """In-memory representation of a program row before persistence."""
    channel_id: str
    start_time: datetime
    stop_time: datetime
    title: str
    description: str = ""
    category: str = ""


@dataclass(slots=True)
class ParsedGuide:
    """Result of parsing one guide document."""
    icons: list[IconPayload]
    programs: list[ProgramPayload]
    skipped_old: int = 0
    skipped_future: int = 0
    skipped_invalid: int = 0


__all__ = ["IconPayload", "ProgramPayload", "ParsedGuide"]
