"""Background maintenance: destroy sessions nobody has touched in a while."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

import structlog

from termhub.models import EndedReason

if TYPE_CHECKING:
    from termhub.registry import SessionRegistry

logger = structlog.get_logger(__name__)

MAINTENANCE_INTERVAL_SECONDS = 60


class IdleReaper:
    """Periodic idle sweep owned by one registry."""

    def __init__(
        self,
        registry: SessionRegistry,
        idle_timeout_seconds: float,
        interval_seconds: float = MAINTENANCE_INTERVAL_SECONDS,
    ) -> None:
        self.registry = registry
        self.idle_timeout_seconds = idle_timeout_seconds
        self.interval_seconds = interval_seconds
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def sweep(self, now: float | None = None) -> list[str]:
        """Destroy every session idle for longer than the timeout.

        Returns the ids of the destroyed sessions. A timeout of zero or less
        disables reaping.
        """
        if self.idle_timeout_seconds <= 0:
            return []
        now_ts = self.registry.clock() if now is None else now
        reaped: list[str] = []
        for session in self.registry.sessions():
            idle_for = now_ts - session.last_activity_at
            if idle_for <= self.idle_timeout_seconds:
                continue
            logger.warning(
                "Idle timeout reached; destroying session",
                session_id=session.id,
                owner=session.owner,
                idle_seconds=round(idle_for, 1),
            )
            if self.registry.destroy_session(session.id, EndedReason.IDLE_TIMEOUT):
                reaped.append(session.id)
        return reaped

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            try:
                reaped = self.sweep()
                if reaped:
                    logger.info("Reaped idle sessions", count=len(reaped))
            except Exception:
                logger.exception("Maintenance loop failed")

    def start(self) -> None:
        if self.running or self.idle_timeout_seconds <= 0:
            return
        self._task = asyncio.get_running_loop().create_task(self._loop())
        logger.debug(
            "Idle reaper started",
            idle_timeout_seconds=self.idle_timeout_seconds,
            interval_seconds=self.interval_seconds,
        )

    def stop(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None
