# chargequeue/services/promotion.py
"""
Promotion coordinator: turns "a slot just freed up" into "the next person
gets their reservation window automatically".

Only the reserved-next slot is ever handed out. The candidate is position 2
behind a charging head, or the waiting head itself once the previous head
departed and the reorder moved position 2 up. Nothing at position 3 or later
is promoted, and nothing at all while a reservation is outstanding.
"""

from typing import TYPE_CHECKING, Optional

from chargequeue.services.live_store import LiveStore, QueueEntry, QueueStatus
from chargequeue.utils.logger import get_logger

if TYPE_CHECKING:
    from chargequeue.services.queue_service import QueueService

logger = get_logger(__name__)


class PromotionCoordinator:
    def __init__(self, store: LiveStore, queue: "QueueService"):
        self.store = store
        self.queue = queue

    async def promote_next(self, station_id: int) -> Optional[QueueEntry]:
        """Public entry point: takes the station lock."""
        async with self.store.station_lock(station_id):
            return self.promote_locked(station_id)

    def find_candidate(self, station_id: int) -> Optional[QueueEntry]:
        entries = self.store.station_entries(station_id)
        if not entries or any(e.status == QueueStatus.RESERVED for e in entries):
            return None

        head = entries[0]
        if head.status == QueueStatus.WAITING:
            return head
        if head.status == QueueStatus.CHARGING and len(entries) > 1:
            second = entries[1]
            if second.position == 2 and second.status == QueueStatus.WAITING:
                return second
        return None

    def promote_locked(self, station_id: int) -> Optional[QueueEntry]:
        """Reserve at most one candidate. Caller must hold the station lock."""
        candidate = self.find_candidate(station_id)
        if candidate is None:
            logger.debug(f"[PROMOTE] station={station_id}: no eligible candidate")
            return None

        window = self.queue.rules.reservation_window_minutes
        if not self.queue.grant_reservation(candidate, window):
            logger.warning(f"[PROMOTE] station={station_id}: failed to reserve for {candidate.requester_id}")
            return None

        logger.info(f"[PROMOTE] station={station_id}: {candidate.requester_id} "
                    f"(pos {candidate.position}) reserved for {window} min")
        return candidate
