"""
Sync Coordination

Manages sync pass coordination with per-key concurrency protection.
A key is a playlist URL or an EPG source URL.
"""
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable

from iptv_sync.utils.timezone import Clock, utc_now
from iptv_sync.utils.url_helpers import sanitize_url_for_logging


logger = logging.getLogger(__name__)


class SyncState(str, Enum):
    IDLE = "idle"
    REFRESHING = "refreshing"


@dataclass(slots=True)
class SyncStatus:
    state: SyncState = SyncState.IDLE
    started_at: datetime | None = None
    finished_at: datetime | None = None
    succeeded: bool | None = None
    error: str | None = None

    def to_dict(self) -> dict:
        return {
            "state": self.state.value,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "succeeded": self.succeeded,
            "error": self.error,
        }


class SyncCoordinator:
    """
    Coordinates sync passes so at most one runs per key.

    A request for a key that is already refreshing does not start new work:
    it awaits the in-flight pass and observes the same result or exception.
    The caller that started the pass awaits its task directly, so cancelling
    that caller cancels the pass; piggybacking callers are shielded.
    """

    def __init__(self, clock: Clock = utc_now):
        self._clock = clock
        self._lock = asyncio.Lock()
        self._tasks: dict[str, asyncio.Task] = {}
        self._status: dict[str, SyncStatus] = {}

    async def execute(self, key: str, sync_func: Callable[[], Awaitable[Any]]) -> Any:
        """
        Run `sync_func` for `key` unless a pass for that key is in flight.

        Args:
            key: Playlist or EPG source URL
            sync_func: Coroutine function performing the pass

        Returns:
            Result of the (possibly shared) pass

        Raises:
            Any exception raised by the pass
        """
        async with self._lock:
            task = self._tasks.get(key)
            if task is not None:
                logger.info(
                    "Sync already in progress for %s, awaiting in-flight pass",
                    sanitize_url_for_logging(key),
                )
                owner = False
            else:
                task = asyncio.create_task(self._run(key, sync_func))
                self._tasks[key] = task
                owner = True

        if owner:
            return await task
        return await asyncio.shield(task)

    async def _run(self, key: str, sync_func: Callable[[], Awaitable[Any]]) -> Any:
        status = SyncStatus(state=SyncState.REFRESHING, started_at=self._clock())
        self._status[key] = status
        try:
            result = await sync_func()
        except asyncio.CancelledError:
            self._finish(key, status, succeeded=False, error="cancelled")
            raise
        except Exception as exc:
            self._finish(key, status, succeeded=False, error=str(exc))
            raise
        self._finish(key, status, succeeded=True, error=None)
        return result

    def _finish(self, key: str, status: SyncStatus, *, succeeded: bool, error: str | None) -> None:
        status.state = SyncState.IDLE
        status.finished_at = self._clock()
        status.succeeded = succeeded
        status.error = error
        self._tasks.pop(key, None)

    def is_syncing(self, key: str) -> bool:
        """Check if a pass is currently in progress for `key`."""
        return key in self._tasks

    def status(self, key: str) -> SyncStatus:
        return self._status.get(key) or SyncStatus()

    def forget(self, key: str) -> None:
        """Drop the retained status of a key (e.g. after unsubscribe)."""
        self._status.pop(key, None)

    async def cancel(self, key: str) -> bool:
        """Abandon the in-flight pass for `key`, if any."""
        task = self._tasks.get(key)
        if task is None:
            return False
        task.cancel()
        await asyncio.wait({task})
        logger.info("Cancelled sync pass for %s", sanitize_url_for_logging(key))
        return True
