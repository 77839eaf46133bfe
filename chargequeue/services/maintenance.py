# chargequeue/services/maintenance.py
"""
Maintenance loop: periodic safety net behind the per-record timers.

Every MAINTENANCE_INTERVAL_SECONDS:
  - reservations whose stored expiry has passed are force-departed
    (covers timers lost to a restart or a slow event loop)
  - live sessions older than SESSION_STALE_HOURS are completed
"""

from typing import Optional

from chargequeue.config import settings
from chargequeue.services.queue_service import QueueService
from chargequeue.services.session_service import SessionService
from chargequeue.services.timers import Clock, TimerHandle
from chargequeue.utils.logger import get_logger

logger = get_logger(__name__)


class MaintenanceLoop:
    def __init__(self, clock: Clock, queue: QueueService, sessions: SessionService,
                 interval_seconds: Optional[float] = None):
        self.clock = clock
        self.queue = queue
        self.sessions = sessions
        self.interval_seconds = interval_seconds or settings.MAINTENANCE_INTERVAL_SECONDS
        self._handle: Optional[TimerHandle] = None

    @property
    def running(self) -> bool:
        return self._handle is not None and self._handle.active

    def start(self) -> None:
        if self.running:
            return
        self._handle = self.clock.call_every(self.interval_seconds, self.sweep, name="maintenance")
        logger.info(f"[SWEEP] Maintenance loop every {self.interval_seconds}s")

    def stop(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    async def sweep(self) -> dict:
        expired = await self.queue.expire_overdue_reservations()
        stale = await self.sessions.cleanup_expired_sessions()
        logger.debug(f"[SWEEP] expired_reservations={expired} stale_sessions={stale}")
        return {"expired_reservations": expired, "stale_sessions": stale}
