from __future__ import annotations

import time
from typing import Awaitable, Callable, Optional

from loguru import logger

from .errors import is_connection_error
from .tasks import BackgroundTasks
from .types import BackendStore


class ConnectionManager:
    """Owns the single backend handle and its debounced reconnects."""

    def __init__(
        self,
        store: BackendStore,
        *,
        provision: Optional[Callable[[], Awaitable[None]]] = None,
        reconnect_delay: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self._provision = provision
        self._reconnect_delay = reconnect_delay
        self._clock = clock
        self._tasks = BackgroundTasks("backend-reconnect")

        self.connected = False
        self.reconnect_in_progress = False
        self.reconnect_attempts = 0
        self._last_reconnect_at: float | None = None

    async def open(self) -> None:
        """Connect and (re)provision collections. Raises on failure."""
        await self.store.connect()
        if self._provision is not None:
            await self._provision()
        self.connected = True

    async def close(self) -> None:
        await self._tasks.cancel()
        await self._reset()
        self.reconnect_in_progress = False

    async def handle_error(self, exc: Exception, operation: str) -> None:
        """Reset and schedule a reconnect when ``exc`` is connection-level."""
        if not is_connection_error(exc):
            return
        logger.warning(f"Backend connection lost during {operation}, scheduling reconnect: {exc}")
        await self._reset()
        self.schedule_reconnect(operation)

    def schedule_reconnect(self, operation: str) -> bool:
        """Start a reconnect unless one is running or the last began too recently."""
        if self.reconnect_in_progress:
            return False
        now = self._clock()
        if self._last_reconnect_at is not None and now - self._last_reconnect_at < self._reconnect_delay:
            return False
        self.reconnect_in_progress = True
        self._last_reconnect_at = now
        if self._tasks.spawn(self._reconnect(operation)) is None:
            self.reconnect_in_progress = False
            return False
        return True

    async def wait_reconnect(self) -> None:
        await self._tasks.wait()

    async def _reconnect(self, operation: str) -> None:
        self.reconnect_attempts += 1
        try:
            await self.open()
            logger.info(f"Backend reconnected after failure in {operation}")
        except Exception as exc:
            logger.warning(f"Backend reconnect attempt failed during {operation}: {exc}")
        finally:
            self.reconnect_in_progress = False

    async def _reset(self) -> None:
        self.connected = False
        try:
            await self.store.close()
        except Exception as exc:
            logger.debug(f"Ignoring error while closing backend: {exc}")
