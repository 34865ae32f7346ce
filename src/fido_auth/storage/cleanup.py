"""Periodic removal of expired sessions and stale device-flow records.

The CleanupScheduler runs one sweep at startup and then one per interval.
A sweep is the same atomic SessionStore.sweep_expired() statement any
request handler could issue, executed in a worker thread so the event loop
keeps serving validations while it runs. No lock is shared with validation.

Usage:
    scheduler = CleanupScheduler(sessions, coordinator, interval_seconds=3600)
    await scheduler.start()
    ...
    await scheduler.stop()
"""

from __future__ import annotations

__all__ = [
    "CleanupResult",
    "CleanupScheduler",
]

import asyncio
from dataclasses import dataclass
from typing import TYPE_CHECKING

from fido_auth.constants import DEFAULT_CLEANUP_INTERVAL_SECONDS
from fido_auth.telemetry.system_logger import get_system_logger

if TYPE_CHECKING:
    from fido_auth.security.auth.device_flow import DeviceFlowCoordinator
    from fido_auth.storage.sessions import SessionStore


@dataclass(frozen=True)
class CleanupResult:
    """Counts removed by one cleanup run."""

    sessions_removed: int
    device_flows_removed: int


class CleanupScheduler:
    """Recurring expired-session sweep.

    Args:
        sessions: Session store to sweep.
        coordinator: Device flow coordinator whose stale records are purged.
            Optional so the sweep can run without a configured provider.
        interval_seconds: Seconds between runs.
    """

    def __init__(
        self,
        sessions: "SessionStore",
        coordinator: "DeviceFlowCoordinator | None" = None,
        interval_seconds: float = DEFAULT_CLEANUP_INTERVAL_SECONDS,
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self._sessions = sessions
        self._coordinator = coordinator
        self._interval = interval_seconds
        self._task: asyncio.Task[None] | None = None
        self._logger = get_system_logger()
        self.runs = 0

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def run_once(self) -> CleanupResult:
        """Sweep once, synchronously.

        Raises:
            TransientStorageError: If storage is unavailable.
        """
        sessions_removed = self._sessions.sweep_expired()
        device_flows_removed = self._coordinator.purge_stale() if self._coordinator else 0
        self.runs += 1

        self._logger.info(
            {
                "event": "session_cleanup",
                "message": f"Cleaned up {sessions_removed} expired sessions",
                "sessions_removed": sessions_removed,
                "device_flows_removed": device_flows_removed,
            }
        )
        return CleanupResult(sessions_removed=sessions_removed, device_flows_removed=device_flows_removed)

    async def start(self) -> None:
        """Start the background loop (first run happens immediately)."""
        if self.is_running:
            return
        self._task = asyncio.create_task(self._run_loop())

    async def stop(self) -> None:
        """Cancel the background loop and wait for it to finish."""
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _run_loop(self) -> None:
        while True:
            try:
                await asyncio.to_thread(self.run_once)
            except Exception as e:
                # One failed sweep must not stop future sweeps
                self._logger.error(
                    {
                        "event": "session_cleanup_failed",
                        "message": f"Session cleanup failed: {e}",
                        "error_type": type(e).__name__,
                        "error_message": str(e),
                    }
                )
            await asyncio.sleep(self._interval)
