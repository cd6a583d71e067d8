"""
Reminder Scheduler.

Deterministic, time-based delivery. Reminders ignore quiet hours, rate limits
and the circuit breaker. A reminder moves pending -> attempting -> delivered;
a failed delivery leaves it attempting so the next tick retries it.
"""
import asyncio
import logging
from datetime import datetime
from typing import Callable, Optional

from kairos.common.clock import ensure_aware, utcnow
from kairos.common.errors import DeliveryFailure, LockContention
from .reminders import ReminderStore
from .state import MutexSkipTracker, ProactiveStateStore, stamp_reminder_sent
from .types import MessageType, NotificationMetadata, Reminder, ReminderStatus

logger = logging.getLogger(__name__)

CONSECUTIVE_ERROR_WARN_THRESHOLD = 5


def format_reminder_message(reminder: Reminder, now: datetime) -> str:
    """Reminder text, noting how late it is when delivered more than a minute late."""
    text = f"🔔 Reminder: {reminder.message}"
    late = (ensure_aware(now) - reminder.trigger_at).total_seconds()
    if late > 60:
        text += f" (from {round(late / 60)} min ago)"
    return text


class ReminderScheduler:
    """Periodic reminder delivery on its own asyncio task."""

    def __init__(
        self,
        store: ProactiveStateStore,
        reminders: ReminderStore,
        router,
        user_id: str = "local-user",
        tick_interval: float = 60.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.reminders = reminders
        self.router = router
        self.user_id = user_id
        self.tick_interval = tick_interval
        self.clock = clock

        self._task: Optional[asyncio.Task] = None
        self._skips = MutexSkipTracker("reminder_scheduler")
        self._pending_stamp: Optional[datetime] = None

        self.last_tick_at: Optional[datetime] = None
        self.consecutive_errors = 0
        self.delivered_total = 0

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self):
        """Start ticking. The first tick runs immediately."""
        if self.is_running:
            logger.warning("Reminder scheduler already running")
            return
        await self._log_lost_reminders()
        self._task = asyncio.create_task(self._run(), name="reminder-scheduler")
        logger.info(f"Reminder scheduler started (interval={self.tick_interval}s)")

    async def stop(self):
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Reminder scheduler stopped")

    async def _log_lost_reminders(self):
        """Reminders left attempting by a previous process are retried on the next tick."""
        try:
            lost = await self.reminders.list_attempting()
        except Exception as e:
            logger.error(f"Could not check for interrupted reminders: {e}")
            return
        for reminder in lost:
            logger.warning(
                f"Reminder {reminder.id} was interrupted mid-delivery, will retry",
                extra={"reminder_id": reminder.id},
            )

    async def _run(self):
        while True:
            try:
                await self.force_tick()
                self.consecutive_errors = 0
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.consecutive_errors += 1
                logger.error(f"Reminder tick failed: {e}", exc_info=True)
                if self.consecutive_errors >= CONSECUTIVE_ERROR_WARN_THRESHOLD:
                    logger.warning(f"Reminder scheduler failed {self.consecutive_errors} ticks in a row")
            await asyncio.sleep(self.tick_interval)

    async def force_tick(self) -> int:
        """Run one tick. Returns the number of reminders delivered."""
        now = self.clock()
        self.last_tick_at = now

        due = await self.reminders.query_due(now)
        delivered = 0
        for reminder in due:
            try:
                if await self._deliver(reminder, now):
                    delivered += 1
            except Exception as e:
                logger.error(
                    f"Reminder {reminder.id} delivery error: {e}",
                    extra={"reminder_id": reminder.id},
                    exc_info=True,
                )

        await self._flush_state()
        self.delivered_total += delivered
        return delivered

    async def _deliver(self, reminder: Reminder, now: datetime) -> bool:
        if await self.reminders.is_cancelled(reminder.id):
            logger.info(f"Reminder {reminder.id} cancelled, skipping", extra={"reminder_id": reminder.id})
            return False

        if reminder.status == ReminderStatus.PENDING:
            await self.reminders.mark_attempting(reminder.id)

        metadata = NotificationMetadata(
            type="reminder",
            message_type=MessageType.REMINDER,
            reminder_id=reminder.id,
            priority="high",
        )
        try:
            sent = await self.router.send_notification(
                self.user_id, format_reminder_message(reminder, now), metadata
            )
        except DeliveryFailure as e:
            logger.error(
                f"Reminder {reminder.id} delivery failed, will retry: {e}",
                extra={"reminder_id": reminder.id},
            )
            return False

        if not sent:
            logger.warning(
                f"Reminder {reminder.id} not delivered (no sinks available), will retry",
                extra={"reminder_id": reminder.id},
            )
            return False

        await self.reminders.mark_delivered(reminder.id, now)
        if self._pending_stamp is None or now > self._pending_stamp:
            self._pending_stamp = now
        lateness = (ensure_aware(now) - reminder.trigger_at).total_seconds()
        logger.info(
            f"Reminder {reminder.id} delivered ({lateness:.0f}s after trigger)",
            extra={"reminder_id": reminder.id},
        )
        return True

    async def _flush_state(self):
        """Stamp last_reminder_message_at; a contended stamp waits for the next tick."""
        if self._pending_stamp is None and not (self._skips.pending or self._skips.needs_reset):
            return

        stamp = self._pending_stamp

        def apply(state):
            state = self._skips.apply(state)
            if stamp is not None:
                state = stamp_reminder_sent(state, stamp)
            return state, None

        try:
            await self.store.with_lock(apply)
        except LockContention as e:
            self._skips.record_skip()
            logger.info(f"Reminder state update deferred: {e}")
            return

        self._skips.committed()
        if self._pending_stamp == stamp:
            self._pending_stamp = None
