# tests/test_queue_service.py
"""Unit tests for the admission queue and promotion."""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import asyncio
import pytest
from datetime import timedelta
from chargequeue.services.errors import FailureKind
from chargequeue.services.events import (
    QueueJoined,
    QueueLeft,
    QueuePositionUpdated,
    ReservationExpired,
    ReservationGranted,
)
from chargequeue.services.live_store import QueueStatus


def positions(queue_service, station_id=1):
    return [e.position for e in queue_service.get_station_queue(station_id)]


def entry(queue_service, requester_id, station_id=1):
    return queue_service.store.find_entry(requester_id, station_id)


async def join_all(queue_service, *requesters, station_id=1):
    for requester_id in requesters:
        result = await queue_service.join(requester_id, station_id)
        assert result.ok, result.failure


class TestJoin:
    @pytest.mark.asyncio
    async def test_positions_and_wait_estimates(self, queue_service, notifier):
        await join_all(queue_service, "A", "B", "C")

        assert positions(queue_service) == [1, 2, 3]
        assert [e.estimated_wait_minutes for e in queue_service.get_station_queue(1)] == [5, 50, 95]
        assert len(notifier.events(QueueJoined)) == 3
        assert all(e.status == QueueStatus.WAITING for e in queue_service.get_station_queue(1))

    @pytest.mark.asyncio
    async def test_first_join_is_not_auto_reserved(self, queue_service):
        await join_all(queue_service, "A")
        assert entry(queue_service, "A").status == QueueStatus.WAITING

    @pytest.mark.asyncio
    async def test_repeat_join_moves_entry_to_tail(self, queue_service, persistence):
        await join_all(queue_service, "A", "B", "C")
        original_id = entry(queue_service, "A").id

        result = await queue_service.join("A", 1)

        assert result.ok
        assert result.entry.id == original_id
        assert len(queue_service.get_station_queue(1)) == 3
        assert [e.requester_id for e in queue_service.get_station_queue(1)] == ["B", "C", "A"]
        assert positions(queue_service) == [1, 2, 3]
        assert persistence.open_positions(1) == [1, 2, 3]
        assert len(persistence.entries) == 3

    @pytest.mark.asyncio
    async def test_repeat_join_of_reserved_head_promotes_next(self, queue_service):
        await join_all(queue_service, "A", "B")
        assert await queue_service.reserve("A", 1)

        await queue_service.join("A", 1)

        assert entry(queue_service, "A").status == QueueStatus.WAITING
        assert entry(queue_service, "A").reservation_expiry is None
        assert entry(queue_service, "B").status == QueueStatus.RESERVED

    @pytest.mark.asyncio
    async def test_closed_station_rejected(self, queue_service):
        result = await queue_service.join("A", 3)

        assert not result.ok
        assert result.failure == FailureKind.RESOURCE_UNAVAILABLE
        assert queue_service.get_station_queue(3) == []

    @pytest.mark.asyncio
    async def test_unknown_station_rejected(self, queue_service):
        result = await queue_service.join("A", 99)
        assert result.failure == FailureKind.RESOURCE_UNAVAILABLE

    @pytest.mark.asyncio
    async def test_persistence_failure_leaves_nothing_live(self, queue_service, persistence):
        persistence.fail = True

        result = await queue_service.join("A", 1)

        assert result.failure == FailureKind.PERSISTENCE_ERROR
        assert entry(queue_service, "A") is None

    @pytest.mark.asyncio
    async def test_capacity_scenario(self, queue_service):
        # station 2 has max_queue_length=1
        assert (await queue_service.join("A", 2)).entry.position == 1

        blocked = await queue_service.join("B", 2)
        assert blocked.failure == FailureKind.QUEUE_FULL

        assert await queue_service.leave("A", 2)
        result = await queue_service.join("B", 2)
        assert result.ok
        assert result.entry.position == 1

    @pytest.mark.asyncio
    async def test_charging_entries_do_not_count_against_capacity(self, queue_service):
        await join_all(queue_service, "A", station_id=2)
        await queue_service.reserve("A", 2)
        await queue_service.start_charging("A", 2)

        result = await queue_service.join("B", 2)

        assert result.ok
        assert result.entry.position == 2
        # joining behind a charging head picks up the reserved-next slot
        assert result.entry.status == QueueStatus.RESERVED

    @pytest.mark.asyncio
    async def test_force_join_recreates_entry(self, queue_service, persistence):
        await join_all(queue_service, "A", "B")
        old_id = entry(queue_service, "A").id

        result = await queue_service.force_join("A", 1)

        assert result.ok
        assert result.entry.id != old_id
        assert persistence.entries[old_id]["status"] == "cancelled"
        assert [e.requester_id for e in queue_service.get_station_queue(1)] == ["B", "A"]


class TestLeave:
    @pytest.mark.asyncio
    async def test_leave_shifts_only_entries_behind(self, queue_service, persistence, notifier):
        await join_all(queue_service, "A", "B", "C", "D")

        assert await queue_service.leave("B", 1)

        assert [(e.requester_id, e.position) for e in queue_service.get_station_queue(1)] == \
            [("A", 1), ("C", 2), ("D", 3)]
        assert persistence.open_positions(1) == [1, 2, 3]
        assert entry(queue_service, "C").estimated_wait_minutes == 50
        assert notifier.events(QueueLeft, "B")[0].reason == "user_cancelled"
        assert {e.position for e in notifier.events(QueuePositionUpdated, "C")} == {2}

    @pytest.mark.asyncio
    async def test_leaving_waiting_entry_does_not_promote(self, queue_service):
        await join_all(queue_service, "A", "B")
        await queue_service.leave("B", 1)
        assert entry(queue_service, "A").status == QueueStatus.WAITING

    @pytest.mark.asyncio
    async def test_leave_without_entry_returns_false(self, queue_service):
        assert await queue_service.leave("nobody", 1) is False

    @pytest.mark.asyncio
    async def test_leave_cancels_reservation_timer(self, queue_service, clock):
        await join_all(queue_service, "A")
        await queue_service.reserve("A", 1)
        timer = entry(queue_service, "A").expiry_timer

        await queue_service.leave("A", 1)

        assert timer.cancelled
        assert clock.pending() == 0

    @pytest.mark.asyncio
    async def test_failed_write_keeps_entry(self, queue_service, persistence):
        await join_all(queue_service, "A", "B")
        persistence.fail = True

        assert await queue_service.leave("A", 1) is False
        assert positions(queue_service) == [1, 2]

    @pytest.mark.asyncio
    async def test_station_queue_length_tracked(self, queue_service, persistence):
        await join_all(queue_service, "A", "B", "C")
        await queue_service.leave("A", 1)
        assert persistence.station_lengths[1] == 2


class TestReservation:
    @pytest.mark.asyncio
    async def test_only_waiting_head_can_reserve(self, queue_service, notifier):
        await join_all(queue_service, "A", "B")

        assert await queue_service.reserve("B", 1) is False
        assert await queue_service.reserve("A", 1) is True
        assert await queue_service.reserve("A", 1) is False

        a = entry(queue_service, "A")
        assert a.status == QueueStatus.RESERVED
        assert a.reservation_expiry == queue_service.clock.now() + timedelta(minutes=15)
        assert len(notifier.events(ReservationGranted, "A")) == 1

    @pytest.mark.asyncio
    async def test_start_charging_requires_reservation(self, queue_service):
        await join_all(queue_service, "A")
        assert await queue_service.start_charging("A", 1) is False

    @pytest.mark.asyncio
    async def test_promotion_waits_for_charging_start(self, queue_service):
        await join_all(queue_service, "A")
        await queue_service.reserve("A", 1)
        await join_all(queue_service, "B")

        assert entry(queue_service, "B").position == 2
        assert entry(queue_service, "B").status == QueueStatus.WAITING

        assert await queue_service.start_charging("A", 1)

        assert entry(queue_service, "A").status == QueueStatus.CHARGING
        assert entry(queue_service, "A").expiry_timer is None
        assert entry(queue_service, "B").status == QueueStatus.RESERVED

    @pytest.mark.asyncio
    async def test_promotion_reserves_at_most_one(self, queue_service):
        await join_all(queue_service, "A", "B", "C")
        await queue_service.reserve("A", 1)
        await queue_service.start_charging("A", 1)

        statuses = [e.status for e in queue_service.get_station_queue(1)]
        assert statuses == [QueueStatus.CHARGING, QueueStatus.RESERVED, QueueStatus.WAITING]

        assert await queue_service.promotion.promote_next(1) is None

    @pytest.mark.asyncio
    async def test_no_promotion_past_two_charging_entries(self, queue_service, clock):
        await join_all(queue_service, "A", "B", "C")
        await queue_service.reserve("A", 1)
        await queue_service.start_charging("A", 1)
        assert await queue_service.start_charging("B", 1)

        assert [(e.requester_id, e.position, e.status) for e in queue_service.get_station_queue(1)] == \
            [("A", 1, QueueStatus.CHARGING), ("B", 2, QueueStatus.CHARGING), ("C", 3, QueueStatus.WAITING)]

        # no reservation window is running for C, so nothing can expire it
        await clock.advance(minutes=16)
        assert entry(queue_service, "C").status == QueueStatus.WAITING

        assert await queue_service.complete_charging("A", 1)

        c = entry(queue_service, "C")
        assert (c.position, c.status) == (2, QueueStatus.RESERVED)

    @pytest.mark.asyncio
    async def test_reserved_next_leaving_hands_slot_on(self, queue_service):
        await join_all(queue_service, "A", "B", "C")
        await queue_service.reserve("A", 1)
        await queue_service.start_charging("A", 1)
        await queue_service.leave("B", 1)

        # B's reservation gave the slot back; C moved up to position 2 and takes it
        assert entry(queue_service, "C").status == QueueStatus.RESERVED
        assert await queue_service.promotion.promote_next(1) is None

    @pytest.mark.asyncio
    async def test_expired_reservation_is_departed_and_next_promoted(self, queue_service, clock, notifier,
                                                                     persistence):
        await join_all(queue_service, "A", "B", "C")
        await queue_service.reserve("A", 1)
        a_id = entry(queue_service, "A").id

        await clock.advance(minutes=14)
        assert entry(queue_service, "A").status == QueueStatus.RESERVED

        await clock.advance(minutes=1)

        assert entry(queue_service, "A") is None
        assert persistence.entries[a_id]["status"] == "cancelled"
        assert persistence.entries[a_id]["expired_at"] == clock.now()
        assert len(notifier.events(ReservationExpired, "A")) == 1
        assert [(e.requester_id, e.position, e.status) for e in queue_service.get_station_queue(1)] == \
            [("B", 1, QueueStatus.RESERVED), ("C", 2, QueueStatus.WAITING)]

    @pytest.mark.asyncio
    async def test_complete_charging_frees_slot(self, queue_service, persistence):
        await join_all(queue_service, "A", "B")
        await queue_service.reserve("A", 1)
        a_id = entry(queue_service, "A").id
        await queue_service.start_charging("A", 1)

        assert await queue_service.complete_charging("A", 1)
        assert await queue_service.complete_charging("A", 1) is False

        assert persistence.entries[a_id]["status"] == "completed"
        assert [(e.requester_id, e.position) for e in queue_service.get_station_queue(1)] == [("B", 1)]

    @pytest.mark.asyncio
    async def test_sweep_uses_stored_expiry(self, queue_service, clock):
        await join_all(queue_service, "A")
        await queue_service.reserve("A", 1)
        a = entry(queue_service, "A")
        a.expiry_timer.cancel()
        a.reservation_expiry = clock.now() - timedelta(seconds=1)

        assert await queue_service.expire_overdue_reservations() == 1
        assert entry(queue_service, "A") is None


class TestReads:
    @pytest.mark.asyncio
    async def test_queue_stats(self, queue_service):
        await join_all(queue_service, "A", "B", "C")

        stats = queue_service.get_queue_stats(1, "B")

        assert stats.total_in_queue == 3
        assert stats.average_wait_minutes == pytest.approx((5 + 50 + 95) / 3)
        assert stats.requester_position == 2
        assert stats.requester_estimated_wait == 50

    @pytest.mark.asyncio
    async def test_user_queue_status_spans_stations(self, queue_service):
        await join_all(queue_service, "A", station_id=1)
        await join_all(queue_service, "A", station_id=2)

        assert {e.station_id for e in queue_service.get_user_queue_status("A")} == {1, 2}


class TestRecovery:
    @pytest.mark.asyncio
    async def test_recover_renumbers_gaps_and_rearms_expiry(self, queue_service, persistence, clock, store):
        now = clock.now()
        for requester_id, position, status in [("A", 1, "reserved"), ("B", 3, "waiting"), ("C", 4, "waiting")]:
            entry_id = persistence.insert_queue_entry(1, requester_id, position, status, 5, now)
            if status == "reserved":
                persistence.entries[entry_id]["reservation_expiry"] = now + timedelta(minutes=2)

        assert await queue_service.recover() == 3

        assert positions(queue_service) == [1, 2, 3]
        assert persistence.open_positions(1) == [1, 2, 3]
        assert entry(queue_service, "A").expiry_timer is not None

        await clock.advance(minutes=2)

        assert entry(queue_service, "A") is None
        assert entry(queue_service, "B").status == QueueStatus.RESERVED


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_parallel_joins_and_leaves_keep_positions_contiguous(self, guarded_queue, guarded_persistence,
                                                                       store):
        await join_all(guarded_queue, "A", "B")

        # park every operation on the station lock, then let them race for it
        lock = store.station_lock(1)
        await lock.acquire()
        tasks = [asyncio.create_task(guarded_queue.join(r, 1)) for r in ("C", "D", "E")]
        tasks.append(asyncio.create_task(guarded_queue.leave("A", 1)))
        tasks.append(asyncio.create_task(guarded_queue.join("F", 1)))
        tasks.append(asyncio.create_task(guarded_queue.leave("C", 1)))
        for _ in range(5):
            await asyncio.sleep(0)
        assert not any(task.done() for task in tasks)
        lock.release()

        results = await asyncio.gather(*tasks)

        assert all(result.ok for result in results[:3])
        assert results[3] is True and results[4].ok and results[5] is True
        assert [e.requester_id for e in guarded_queue.get_station_queue(1)] == ["B", "D", "E", "F"]
        assert positions(guarded_queue) == [1, 2, 3, 4]
        assert guarded_persistence.open_positions(1) == [1, 2, 3, 4]
        assert guarded_persistence.unlocked_writes == []

    @pytest.mark.asyncio
    async def test_gathered_arrivals_get_unique_positions(self, guarded_queue, guarded_persistence):
        results = await asyncio.gather(*(guarded_queue.join(r, 1) for r in ("A", "B", "C", "D", "E")),
                                       guarded_queue.join("X", 2), guarded_queue.join("Y", 2))

        assert sorted(r.entry.position for r in results[:5]) == [1, 2, 3, 4, 5]
        assert guarded_persistence.open_positions(1) == [1, 2, 3, 4, 5]
        # station 2 holds one; the second arrival is turned away, not misnumbered
        assert [r.ok for r in results[5:]] == [True, False]
        assert guarded_persistence.open_positions(2) == [1]
        assert guarded_persistence.unlocked_writes == []

    @pytest.mark.asyncio
    async def test_stations_progress_independently(self, guarded_queue, store):
        await join_all(guarded_queue, "A", station_id=1)

        lock = store.station_lock(1)
        await lock.acquire()
        blocked = asyncio.create_task(guarded_queue.join("B", 1))
        try:
            result = await asyncio.wait_for(guarded_queue.join("X", 2), timeout=1)
            assert result.ok and result.entry.position == 1
            assert not blocked.done()
        finally:
            lock.release()

        assert (await blocked).entry.position == 2
