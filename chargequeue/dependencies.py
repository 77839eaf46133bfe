# chargequeue/dependencies.py
"""
Wiring for the queue/session core.

One CoreServices bundle is built at startup and stored on the FastAPI app
state; routers reach it through the small Depends() helpers below.
"""

from dataclasses import dataclass
from typing import Optional

from fastapi import Request

from chargequeue.services.live_store import LiveStore
from chargequeue.services.maintenance import MaintenanceLoop
from chargequeue.services.notification_service import NotificationGateway
from chargequeue.services.persistence import SqlPersistence
from chargequeue.services.queue_service import QueueService
from chargequeue.services.rules import BillingRules, ChargingRules, QueueRules
from chargequeue.services.session_service import SessionService
from chargequeue.services.station_directory import StationDirectory
from chargequeue.services.timers import Clock


@dataclass(frozen=True)
class CoreServices:
    store: LiveStore
    clock: Clock
    notifier: NotificationGateway
    directory: StationDirectory
    persistence: SqlPersistence
    queue: QueueService
    sessions: SessionService
    maintenance: MaintenanceLoop

    async def recover(self) -> None:
        await self.queue.recover()
        await self.sessions.recover()

    async def shutdown(self) -> None:
        self.maintenance.stop()
        self.clock.cancel_all()
        await self.notifier.drain()


def build_core(session_factory=None, clock: Optional[Clock] = None,
               notifier: Optional[NotificationGateway] = None) -> CoreServices:
    store = LiveStore()
    clock = clock or Clock()
    notifier = notifier or NotificationGateway()
    directory = StationDirectory(session_factory) if session_factory else StationDirectory()
    persistence = SqlPersistence(session_factory) if session_factory else SqlPersistence()

    queue = QueueService(store, persistence, directory, notifier, clock, QueueRules.from_settings())
    sessions = SessionService(store, persistence, directory, notifier, clock, queue,
                              ChargingRules.from_settings(), BillingRules.from_settings())
    return CoreServices(
        store=store,
        clock=clock,
        notifier=notifier,
        directory=directory,
        persistence=persistence,
        queue=queue,
        sessions=sessions,
        maintenance=MaintenanceLoop(clock, queue, sessions),
    )


# ── FastAPI dependencies ─────────────────────────────────────────────────────
def get_core(request: Request) -> CoreServices:
    return request.app.state.core


def get_queue_service(request: Request) -> QueueService:
    return request.app.state.core.queue


def get_session_service(request: Request) -> SessionService:
    return request.app.state.core.sessions
