"""
Structured logging helpers for consistent log formatting.

Provides the per-session logger adapter and URL sanitising used across services.
"""
import logging
from collections.abc import MutableMapping
from typing import Any


DEFAULT_SESSION_KEY = "_default"


def session_prefix(session_key: str | None) -> str:
    """Build the log prefix for a session key ('_' for the default session)."""
    key = (session_key or "").strip()
    if not key or key == DEFAULT_SESSION_KEY:
        key = "_"
    return f"[sess:{key}]"


class SessionLoggerAdapter(logging.LoggerAdapter):
    """Prefix every record with the owning session key for traceability."""

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> tuple[Any, MutableMapping[str, Any]]:
        return f"{self.extra['prefix']} {msg}", kwargs


def get_session_logger(name: str, session_key: str | None) -> SessionLoggerAdapter:
    """
    Get a logger that tags messages with the session key.

    Args:
        name: Logger name (usually __name__)
        session_key: Session key or None for the default session
    """
    return SessionLoggerAdapter(logging.getLogger(name), {"prefix": session_prefix(session_key)})


def sanitize_url(url: str) -> str:
    """Remove credentials from URL for safe logging."""
    if "://" not in url:
        return url
    try:
        protocol, rest = url.split("://", 1)
        host_part = rest.split("/", 1)[0]
        if "@" in host_part:
            rest = rest.split("@", 1)[1]
            return f"{protocol}://***:***@{rest}"
        return url
    except (ValueError, IndexError):
        return url


def log_source_processing(logger: logging.LoggerAdapter | logging.Logger, idx: int, total: int, url: str) -> None:
    """
    Log source processing header.

    Args:
        logger: Logger instance
        idx: Current source index (1-based)
        total: Total number of sources
        url: Source URL being processed
    """
    logger.info("Processing source %s/%s: %s", idx, total, sanitize_url(url))
