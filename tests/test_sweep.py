"""Tests for the batch cron sweep."""

from datetime import timedelta

import pytest

from prebooker.models import BookingRequest, IntentStatus
from prebooker.sweep import BatchSweep, SweepReport

from conftest import NOW


def _booking(class_id: str) -> BookingRequest:
    return BookingRequest(day="20260214", familyId="", id=class_id)


@pytest.mark.asyncio
class TestBatchSweep:
    async def test_nothing_due(self, executor, intents):
        intents.add(available_at=NOW + timedelta(minutes=10))

        report = await BatchSweep(executor).run()

        assert report.total == 0
        assert report.items == []

    async def test_fifo_by_available_at(self, executor, intents, platform, device_session):
        # Created newest-slot first; must still fire oldest slot first
        t3 = intents.add(available_at=NOW - timedelta(seconds=1), booking_data=_booking("c3"))
        t2 = intents.add(available_at=NOW - timedelta(seconds=2), booking_data=_booking("c2"))
        t1 = intents.add(available_at=NOW - timedelta(seconds=3), booking_data=_booking("c1"))

        report = await BatchSweep(executor, stagger_ms=50).run()

        fired = [c["booking"].class_id for c in platform.booking_calls]
        assert fired == ["c1", "c2", "c3"]
        assert report.total == 3
        assert report.completed == 3
        assert [i["intentId"] for i in report.items] == [t1.id, t2.id, t3.id]
        for intent in (t1, t2, t3):
            assert intents.rows[intent.id].status == IntentStatus.CONFIRMED

    async def test_same_slot_falls_back_to_creation_order(
        self, executor, intents, platform, device_session
    ):
        slot = NOW - timedelta(seconds=1)
        first = intents.add(available_at=slot, booking_data=_booking("first"))
        intents.add(available_at=slot, booking_data=_booking("second"))

        await BatchSweep(executor).run()

        assert platform.booking_calls[0]["booking"].class_id == "first"
        assert intents.rows[first.id].status == IntentStatus.CONFIRMED

    async def test_stagger_spaces_launches(self, executor, intents, clock, device_session):
        for i in range(3):
            intents.add(available_at=NOW - timedelta(seconds=1), booking_data=_booking(f"c{i}"))

        await BatchSweep(executor, stagger_ms=50).run()

        assert sorted(clock.sleeps) == pytest.approx([0.05, 0.1])

    async def test_items_beyond_budget_are_deferred(
        self, executor, intents, platform, device_session
    ):
        for i in range(3):
            intents.add(
                available_at=NOW - timedelta(seconds=3 - i), booking_data=_booking(f"c{i}")
            )

        # Launch slots at 0s, 3s, 6s; 6s + 3s fire timeout exceeds the 8s budget
        report = await BatchSweep(executor, stagger_ms=3000).run()

        assert report.completed == 2
        assert report.deferred == 1
        assert len(platform.booking_calls) == 2
        pending = [r for r in intents.rows.values() if r.status == IntentStatus.PENDING]
        assert [p.booking_data.class_id for p in pending] == ["c2"]

    async def test_batch_size_limits_work(self, executor, intents, platform, device_session):
        for i in range(5):
            intents.add(available_at=NOW - timedelta(seconds=5 - i), booking_data=_booking(f"c{i}"))

        report = await BatchSweep(executor, batch_size=25).run(batch_size=2)

        assert report.total == 2
        assert len(platform.booking_calls) == 2

    async def test_failed_intents_are_not_retried(self, executor, intents, platform, device_session):
        intents.add(available_at=NOW - timedelta(seconds=1), status=IntentStatus.FAILED)

        report = await BatchSweep(executor).run()

        assert report.total == 0
        assert platform.booking_calls == []

    async def test_threshold_capped_at_lead_time(self, executor, intents, device_session):
        intents.add(available_at=NOW + timedelta(seconds=10))

        report = await BatchSweep(executor, lead_time_seconds=4.0).run(threshold_seconds=60)

        assert report.total == 0

    async def test_threshold_picks_up_imminent_slots(
        self, executor, intents, platform, device_session
    ):
        intent = intents.add(available_at=NOW + timedelta(seconds=3))

        report = await BatchSweep(executor, lead_time_seconds=4.0).run(threshold_seconds=3)

        assert report.completed == 1
        assert platform.booking_calls[0]["at"] == intent.available_at

    async def test_failures_are_reported(self, executor, intents, platform):
        # No session stored: every item fails with session-not-found
        intent = intents.add(available_at=NOW - timedelta(seconds=1))

        report = await BatchSweep(executor).run()

        assert report.failed == 1
        assert report.errors[0].startswith(f"{intent.id}: session-not-found")
        assert report.items[0]["status"] == "failed"


class TestSweepReport:
    def test_to_dict_shape(self):
        report = SweepReport(total=1, completed=1)

        data = report.to_dict()

        assert set(data) == {"total", "completed", "failed", "skipped", "deferred", "errors", "items"}
