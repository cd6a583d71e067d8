"""
Reminder storage.

Each reminder is a Redis hash under "{prefix}:{id}"; a sorted set scored by
the trigger epoch indexes the ones that still have to fire. Delivered and
cancelled reminders leave the index, so query_due() never returns them.
"""
import logging
import uuid
from datetime import datetime
from typing import Dict, List, Optional, Protocol

import redis.asyncio as redis

from kairos.common.clock import ensure_aware, format_instant, utcnow
from kairos.common.errors import DataIntegrityError
from .types import Reminder, ReminderStatus

logger = logging.getLogger(__name__)


class ReminderStore(Protocol):
    """What the scheduler and the HTTP surface need from reminder storage."""

    async def create(self, message: str, trigger_at: datetime) -> Reminder: ...

    async def get(self, reminder_id: str) -> Optional[Reminder]: ...

    async def cancel(self, reminder_id: str) -> bool: ...

    async def query_due(self, now: datetime) -> List[Reminder]: ...

    async def mark_attempting(self, reminder_id: str) -> None: ...

    async def mark_delivered(self, reminder_id: str, at: datetime) -> None: ...

    async def is_cancelled(self, reminder_id: str) -> bool: ...

    async def list_pending(self) -> List[Reminder]: ...

    async def list_attempting(self) -> List[Reminder]: ...


def _new_reminder(message: str, trigger_at: datetime) -> Reminder:
    return Reminder(
        id=uuid.uuid4().hex,
        message=message,
        trigger_at=ensure_aware(trigger_at),
        created_at=utcnow(),
    )


def _is_due(reminder: Reminder, now: datetime) -> bool:
    return not reminder.is_terminal and reminder.trigger_at <= ensure_aware(now)


class RedisReminderStore:
    """Reminders in Redis (hash per reminder plus a due-time index)."""

    def __init__(self, client: redis.Redis, prefix: str = "kairos:reminder"):
        self.client = client
        self.prefix = prefix
        self.due_key = f"{prefix}s:due"

    def _key(self, reminder_id: str) -> str:
        return f"{self.prefix}:{reminder_id}"

    async def _load(self, reminder_id: str) -> Optional[Reminder]:
        """
        Raises:
            DataIntegrityError: if the stored hash cannot be decoded.
        """
        data = await self.client.hgetall(self._key(reminder_id))
        if not data:
            return None
        return Reminder.from_dict(data)

    async def create(self, message: str, trigger_at: datetime) -> Reminder:
        reminder = _new_reminder(message, trigger_at)
        async with self.client.pipeline(transaction=True) as pipe:
            pipe.hset(self._key(reminder.id), mapping=reminder.to_dict())
            pipe.zadd(self.due_key, {reminder.id: reminder.trigger_at.timestamp()})
            await pipe.execute()
        logger.info(f"Reminder {reminder.id} created for {format_instant(reminder.trigger_at)}")
        return reminder

    async def get(self, reminder_id: str) -> Optional[Reminder]:
        return await self._load(reminder_id)

    async def cancel(self, reminder_id: str) -> bool:
        if not await self.client.exists(self._key(reminder_id)):
            return False
        async with self.client.pipeline(transaction=True) as pipe:
            pipe.hset(self._key(reminder_id), "cancelled", "1")
            pipe.zrem(self.due_key, reminder_id)
            await pipe.execute()
        logger.info(f"Reminder {reminder_id} cancelled")
        return True

    async def query_due(self, now: datetime) -> List[Reminder]:
        ids = await self.client.zrangebyscore(self.due_key, "-inf", ensure_aware(now).timestamp())
        due = []
        for reminder_id in ids:
            try:
                reminder = await self._load(reminder_id)
            except DataIntegrityError as e:
                logger.error(f"Skipping reminder {reminder_id}: {e}", extra={"reminder_id": reminder_id})
                continue
            if reminder is None or reminder.is_terminal:
                # Stale index entry
                await self.client.zrem(self.due_key, reminder_id)
                continue
            if _is_due(reminder, now):
                due.append(reminder)
        return due

    async def mark_attempting(self, reminder_id: str) -> None:
        await self.client.hset(self._key(reminder_id), "status", ReminderStatus.ATTEMPTING.value)

    async def mark_delivered(self, reminder_id: str, at: datetime) -> None:
        async with self.client.pipeline(transaction=True) as pipe:
            pipe.hset(self._key(reminder_id), mapping={
                "status": ReminderStatus.DELIVERED.value,
                "triggered_at": format_instant(at),
            })
            pipe.zrem(self.due_key, reminder_id)
            await pipe.execute()

    async def is_cancelled(self, reminder_id: str) -> bool:
        """A reminder that no longer exists counts as cancelled."""
        flag = await self.client.hget(self._key(reminder_id), "cancelled")
        return flag is None or flag == "1"

    async def _list_indexed(self) -> List[Reminder]:
        ids = await self.client.zrange(self.due_key, 0, -1)
        reminders = []
        for reminder_id in ids:
            try:
                reminder = await self._load(reminder_id)
            except DataIntegrityError as e:
                logger.error(f"Skipping reminder {reminder_id}: {e}", extra={"reminder_id": reminder_id})
                continue
            if reminder is not None and not reminder.is_terminal:
                reminders.append(reminder)
        return reminders

    async def list_pending(self) -> List[Reminder]:
        return [r for r in await self._list_indexed() if r.status == ReminderStatus.PENDING]

    async def list_attempting(self) -> List[Reminder]:
        return [r for r in await self._list_indexed() if r.status == ReminderStatus.ATTEMPTING]


class MemoryReminderStore:
    """In-process reminder store."""

    def __init__(self):
        self._reminders: Dict[str, Reminder] = {}

    def add(self, reminder: Reminder) -> None:
        """Insert a fully-formed reminder (used to seed fixtures and imports)."""
        self._reminders[reminder.id] = reminder

    async def create(self, message: str, trigger_at: datetime) -> Reminder:
        reminder = _new_reminder(message, trigger_at)
        self._reminders[reminder.id] = reminder
        logger.info(f"Reminder {reminder.id} created for {format_instant(reminder.trigger_at)}")
        return reminder

    async def get(self, reminder_id: str) -> Optional[Reminder]:
        return self._reminders.get(reminder_id)

    async def cancel(self, reminder_id: str) -> bool:
        reminder = self._reminders.get(reminder_id)
        if reminder is None:
            return False
        reminder.cancelled = True
        logger.info(f"Reminder {reminder_id} cancelled")
        return True

    async def query_due(self, now: datetime) -> List[Reminder]:
        due = [r for r in self._reminders.values() if _is_due(r, now)]
        return sorted(due, key=lambda r: r.trigger_at)

    async def mark_attempting(self, reminder_id: str) -> None:
        self._reminders[reminder_id].status = ReminderStatus.ATTEMPTING

    async def mark_delivered(self, reminder_id: str, at: datetime) -> None:
        reminder = self._reminders[reminder_id]
        reminder.status = ReminderStatus.DELIVERED
        reminder.triggered_at = ensure_aware(at)

    async def is_cancelled(self, reminder_id: str) -> bool:
        reminder = self._reminders.get(reminder_id)
        return reminder is None or reminder.cancelled

    async def list_pending(self) -> List[Reminder]:
        return [
            r for r in self._reminders.values()
            if not r.is_terminal and r.status == ReminderStatus.PENDING
        ]

    async def list_attempting(self) -> List[Reminder]:
        return [
            r for r in self._reminders.values()
            if not r.is_terminal and r.status == ReminderStatus.ATTEMPTING
        ]
