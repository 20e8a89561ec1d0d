"""
Channel identity normalisation and remapping

All three identity sources (playlist tvg-id, guide channel id and display
name) are made comparable here. Every lookup in the service routes through
normalize_id and RemapTable.remapped_id.
"""
from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Literal

from iptv_catalog.config import settings
from iptv_catalog.errors import CatalogError
from iptv_catalog.utils.file_operations import HttpFetcher, read_text_file
from iptv_catalog.utils.logging_helpers import get_session_logger, sanitize_url


logger = logging.getLogger(__name__)

_INVALID_ID_CHARS = re.compile(r"[^\w.]", re.ASCII)
_BRACKETED = re.compile(r"[\(\[].*?[\)\]]")
_WHITESPACE = re.compile(r"\s+")


def normalize_id(raw_id: object) -> str:
    """
    Canonical form of any channel identifier.

    Keeps the part before the first '@', lower-cases it and drops every
    character that is not an ASCII word character or '.'. Total and
    idempotent: None and empty input give ''.
    """
    if raw_id is None:
        return ""
    value = raw_id if isinstance(raw_id, str) else str(raw_id)
    if "@" in value:
        value = value.split("@", 1)[0]
    return _INVALID_ID_CHARS.sub("", value.lower()).strip()


def apply_suffix(
    channel_id: str,
    suffix: str | None,
    mode: Literal["append", "strip"] = "append",
) -> str:
    """
    Append or strip the configured '.<suffix>' on an already normalized id.

    Appending is a no-op when the suffix is already present; stripping is a
    no-op when it is absent.
    """
    if not channel_id or not suffix:
        return channel_id

    dotted = f".{suffix}"
    if mode == "append":
        return channel_id if channel_id.endswith(dotted) else f"{channel_id}{dotted}"
    if channel_id.endswith(dotted):
        return channel_id[: -len(dotted)]
    return channel_id


def clean_channel_name(name: str) -> str:
    """Derive an id from a display name: 'Rai 1 (HD)' -> 'rai1'"""
    without_tags = _BRACKETED.sub("", name or "")
    return _WHITESPACE.sub("", without_tags.strip().lower())


class RemapTable:
    """Mapping rules 'source-id = target-id', both sides normalized."""

    def __init__(self, rules: dict[str, str] | None = None, suffix: str | None = None):
        self._rules: dict[str, str] = dict(rules or {})
        self.suffix = suffix or None

    def __len__(self) -> int:
        return len(self._rules)

    def __contains__(self, source_id: object) -> bool:
        return normalize_id(source_id) in self._rules

    @staticmethod
    def parse_rules(content: str) -> dict[str, str]:
        """
        Parse line-oriented rule text.

        Blank lines and '#' comments are ignored; malformed lines are skipped.
        """
        rules: dict[str, str] = {}
        for line in content.splitlines():
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            source, sep, target = line.partition("=")
            if not sep:
                continue
            source_id = normalize_id(source.strip())
            target_id = normalize_id(target.strip())
            if source_id and target_id:
                rules[source_id] = target_id
        return rules

    @classmethod
    async def load(
        cls,
        path: str | Path | None,
        session_key: str | None = None,
        *,
        suffix: str | None = None,
        fetcher: HttpFetcher | None = None,
        default_path: str | Path | None = None,
    ) -> RemapTable:
        """
        Load rules from a local file or an http(s) URL.

        A failing remote download falls back to the bundled default file. An
        unreadable file yields an empty table; loading never raises.
        """
        log = get_session_logger(__name__, session_key)
        fallback = Path(default_path or settings.remap_default_path)
        source = str(path).strip() if path else str(fallback)
        log.info("Remapper path: %s", sanitize_url(source))

        content = ""
        try:
            if source.lower().startswith("http"):
                try:
                    content = await (fetcher or HttpFetcher()).get_text(source)
                    log.info("Remote remapping download completed")
                except CatalogError as exc:
                    log.error("Remote remapping download failed: %s", exc)
                    log.info("Using local fallback: %s", fallback)
                    content = await read_text_file(fallback)
            else:
                content = await read_text_file(source)
        except (OSError, UnicodeDecodeError) as exc:
            log.error("Remapping error: %s", exc)

        rules = cls.parse_rules(content)
        log.info("Loaded %s rules from %s", len(rules), sanitize_url(source))
        return cls(rules, suffix=suffix)

    def remapped_id(self, raw_id: object) -> str:
        """
        Canonical id for a raw playlist id.

        Normalizes, appends the configured suffix and looks the result up;
        returns the normalized remap target on a hit, the suffixed id otherwise.
        """
        channel_id = apply_suffix(normalize_id(raw_id), self.suffix, "append")
        target = self._rules.get(channel_id)
        if target:
            return normalize_id(target)
        return channel_id
