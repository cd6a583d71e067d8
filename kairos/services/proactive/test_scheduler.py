"""Tests for the reminder scheduler."""

import asyncio
import logging
from datetime import timedelta

import pytest

from kairos.common.errors import DeliveryFailure
from kairos.services.proactive.scheduler import ReminderScheduler, format_reminder_message
from kairos.services.proactive.types import MessageType, Reminder, ReminderStatus

logging.disable(logging.CRITICAL)


@pytest.fixture
def scheduler(store, reminders, router, clock):
    return ReminderScheduler(store, reminders, router, user_id="ana", tick_interval=60, clock=clock)


def seed(reminders, clock, reminder_id="r1", offset=timedelta(0), **kwargs):
    reminder = Reminder(
        id=reminder_id,
        message="take the pills",
        trigger_at=clock.now + offset,
        created_at=clock.now - timedelta(hours=1),
        **kwargs,
    )
    reminders.add(reminder)
    return reminder


class TestDelivery:
    """pending -> attempting -> delivered"""

    @pytest.mark.asyncio
    async def test_due_reminder_delivered_once(self, scheduler, store, reminders, router, clock):
        seed(reminders, clock)

        assert await scheduler.force_tick() == 1
        user_id, message, metadata = router.sent[0]
        assert user_id == "ana"
        assert message == "🔔 Reminder: take the pills"
        assert metadata.type == "reminder"
        assert metadata.message_type == MessageType.REMINDER
        assert metadata.reminder_id == "r1"
        assert metadata.priority == "high"

        reminder = await reminders.get("r1")
        assert reminder.status == ReminderStatus.DELIVERED
        assert reminder.triggered_at == clock.now
        assert (await store.load()).last_reminder_message_at == clock.now

        clock.advance(minutes=1)
        assert await scheduler.force_tick() == 0
        assert len(router.sent) == 1

    @pytest.mark.asyncio
    async def test_future_reminder_waits(self, scheduler, reminders, router, clock):
        seed(reminders, clock, offset=timedelta(minutes=5))
        assert await scheduler.force_tick() == 0
        clock.advance(minutes=5)
        assert await scheduler.force_tick() == 1

    @pytest.mark.asyncio
    async def test_ignores_quiet_hours_and_limits(self, scheduler, store, reminders, router, clock):
        await store.enable_quiet_mode(3600)
        await store.with_lock(lambda s: (s.copy(
            spontaneous_count_today=100,
            circuit_breaker_tripped_until=clock.now + timedelta(hours=1),
        ), None))
        seed(reminders, clock)
        assert await scheduler.force_tick() == 1

    @pytest.mark.asyncio
    async def test_cancelled_while_attempting(self, scheduler, reminders, router, clock):
        seed(reminders, clock, status=ReminderStatus.ATTEMPTING)
        await reminders.cancel("r1")
        assert await scheduler.force_tick() == 0
        assert router.sent == []

    @pytest.mark.asyncio
    async def test_failure_stays_attempting_and_retries(self, scheduler, reminders, router, clock):
        seed(reminders, clock)
        router.result = False

        assert await scheduler.force_tick() == 0
        assert (await reminders.get("r1")).status == ReminderStatus.ATTEMPTING

        router.result = True
        clock.advance(minutes=1)
        assert await scheduler.force_tick() == 1
        assert (await reminders.get("r1")).status == ReminderStatus.DELIVERED

    @pytest.mark.asyncio
    async def test_delivery_failure_is_not_fatal(self, scheduler, reminders, router, clock):
        seed(reminders, clock, reminder_id="r1")
        seed(reminders, clock, reminder_id="r2")
        router.error = DeliveryFailure("all sinks down")

        assert await scheduler.force_tick() == 0
        for reminder_id in ("r1", "r2"):
            assert (await reminders.get(reminder_id)).status == ReminderStatus.ATTEMPTING

    @pytest.mark.asyncio
    async def test_unexpected_error_skips_one_reminder(self, scheduler, reminders, router, clock):
        seed(reminders, clock, reminder_id="r1", offset=timedelta(seconds=-2))
        seed(reminders, clock, reminder_id="r2", offset=timedelta(seconds=-1))
        calls = []

        async def flaky(user_id, message, metadata):
            calls.append(metadata.reminder_id)
            if metadata.reminder_id == "r1":
                raise RuntimeError("boom")
            return True

        router.send_notification = flaky
        assert await scheduler.force_tick() == 1
        assert calls == ["r1", "r2"]


class TestStateStamp:
    @pytest.mark.asyncio
    async def test_contended_stamp_applied_next_tick(self, scheduler, store, reminders, clock):
        seed(reminders, clock)
        release = asyncio.Event()

        async def hold(state):
            await release.wait()
            return None, None

        holder = asyncio.create_task(store.with_lock(hold, timeout=5))
        await asyncio.sleep(0)

        delivered_at = clock.now
        assert await scheduler.force_tick() == 1
        assert (await store.load()).last_reminder_message_at is None

        release.set()
        await holder
        clock.advance(minutes=1)
        await scheduler.force_tick()

        state = await store.load()
        assert state.last_reminder_message_at == delivered_at
        assert state.consecutive_mutex_skips == 1

        clock.advance(minutes=1)
        await scheduler.force_tick()
        assert (await store.load()).consecutive_mutex_skips == 0


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_runs_immediate_tick(self, scheduler, reminders, router, clock):
        seed(reminders, clock)
        await scheduler.start()
        try:
            for _ in range(50):
                if router.sent:
                    break
                await asyncio.sleep(0.01)
            assert scheduler.is_running
            assert len(router.sent) == 1
            assert scheduler.last_tick_at == clock.now
        finally:
            await scheduler.stop()
        assert not scheduler.is_running

    @pytest.mark.asyncio
    async def test_stop_without_start(self, scheduler):
        await scheduler.stop()
        assert not scheduler.is_running


class TestFormat:
    def test_on_time(self, clock):
        reminder = Reminder("r", "call mom", clock.now - timedelta(seconds=60), clock.now)
        assert format_reminder_message(reminder, clock.now) == "🔔 Reminder: call mom"

    def test_late(self, clock):
        reminder = Reminder("r", "call mom", clock.now - timedelta(minutes=12), clock.now)
        assert format_reminder_message(reminder, clock.now) == "🔔 Reminder: call mom (from 12 min ago)"
