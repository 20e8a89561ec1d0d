"""
Fetch Coordination

Single-flight protection for per-session rebuilds and guide refreshes.
A second request while one is running is skipped, not queued.
"""
import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from iptv_catalog.utils.logging_helpers import get_session_logger


logger = logging.getLogger(__name__)

T = TypeVar("T")


class FetchCoordinator:
    """
    Coordinates one kind of operation for one session.

    Uses an internal asyncio.Lock that is only ever taken when free, so the
    lock state doubles as the in-flight flag.
    """

    def __init__(self, operation: str, session_key: str | None = None):
        self.operation = operation
        self._lock = asyncio.Lock()
        self._log = get_session_logger(__name__, session_key)

    @property
    def in_flight(self) -> bool:
        """True while an operation is running"""
        return self._lock.locked()

    async def execute(self, func: Callable[[], Awaitable[T]]) -> tuple[bool, T | None]:
        """
        Run `func` unless an operation is already in flight.

        Args:
            func: Async callable performing the operation

        Returns:
            (True, result) if it ran, (False, None) if it was skipped

        Raises:
            Any exception raised by func; the in-flight flag is cleared first
        """
        if self._lock.locked():
            self._log.info("%s already in progress, skip", self.operation)
            return False, None

        async with self._lock:
            return True, await func()
