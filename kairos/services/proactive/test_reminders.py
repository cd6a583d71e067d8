"""Tests for reminder storage."""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from kairos.services.proactive.reminders import MemoryReminderStore, RedisReminderStore
from kairos.services.proactive.types import Reminder, ReminderStatus

NOW = datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc)


def make_reminder(reminder_id, trigger_at, **kwargs):
    return Reminder(id=reminder_id, message=f"msg {reminder_id}", trigger_at=trigger_at, created_at=NOW, **kwargs)


class TestMemoryReminderStore:
    @pytest.mark.asyncio
    async def test_create_and_get(self):
        store = MemoryReminderStore()
        reminder = await store.create("water the plants", NOW + timedelta(hours=1))
        assert reminder.status == ReminderStatus.PENDING
        assert (await store.get(reminder.id)).message == "water the plants"

    @pytest.mark.asyncio
    async def test_naive_trigger_is_utc(self):
        store = MemoryReminderStore()
        reminder = await store.create("x", datetime(2026, 3, 2, 11, 0))
        assert reminder.trigger_at == NOW + timedelta(hours=1)

    @pytest.mark.asyncio
    async def test_query_due_filters_and_orders(self):
        store = MemoryReminderStore()
        store.add(make_reminder("late", NOW - timedelta(minutes=5)))
        store.add(make_reminder("early", NOW - timedelta(minutes=30)))
        store.add(make_reminder("exact", NOW))
        store.add(make_reminder("future", NOW + timedelta(seconds=1)))
        store.add(make_reminder("done", NOW - timedelta(hours=1), status=ReminderStatus.DELIVERED))
        store.add(make_reminder("cancelled", NOW - timedelta(hours=1), cancelled=True))
        store.add(make_reminder("retry", NOW - timedelta(minutes=10), status=ReminderStatus.ATTEMPTING))

        due = await store.query_due(NOW)
        assert [r.id for r in due] == ["early", "retry", "late", "exact"]

    @pytest.mark.asyncio
    async def test_lifecycle(self):
        store = MemoryReminderStore()
        store.add(make_reminder("a", NOW))

        await store.mark_attempting("a")
        assert [r.id for r in await store.list_attempting()] == ["a"]
        assert await store.list_pending() == []

        await store.mark_delivered("a", NOW)
        reminder = await store.get("a")
        assert reminder.status == ReminderStatus.DELIVERED
        assert reminder.triggered_at == NOW
        assert await store.query_due(NOW) == []

    @pytest.mark.asyncio
    async def test_cancel(self):
        store = MemoryReminderStore()
        store.add(make_reminder("a", NOW))
        assert await store.cancel("a")
        assert await store.is_cancelled("a")
        assert not await store.cancel("missing")
        assert await store.is_cancelled("missing")


class TestRedisReminderStore:
    """Hash-per-reminder plus a due index, against a mocked client"""

    def _client(self, hashes):
        client = MagicMock()
        client.zrangebyscore = AsyncMock(return_value=list(hashes))
        client.zrange = AsyncMock(return_value=list(hashes))
        client.hgetall = AsyncMock(side_effect=lambda key: hashes.get(key.rsplit(":", 1)[1], {}))
        client.zrem = AsyncMock()
        client.hget = AsyncMock()
        client.hset = AsyncMock()
        client.exists = AsyncMock(return_value=0)
        return client

    @pytest.mark.asyncio
    async def test_query_due_skips_malformed(self):
        hashes = {
            "bad": {"id": "bad", "message": "x", "trigger_at": "not-a-time"},
            "good": make_reminder("good", NOW - timedelta(minutes=1)).to_dict(),
        }
        store = RedisReminderStore(self._client(hashes))
        due = await store.query_due(NOW)
        assert [r.id for r in due] == ["good"]

    @pytest.mark.asyncio
    async def test_query_due_drops_stale_index_entries(self):
        hashes = {
            "gone": {},
            "done": make_reminder("done", NOW, status=ReminderStatus.DELIVERED).to_dict(),
        }
        client = self._client(hashes)
        store = RedisReminderStore(client)

        assert await store.query_due(NOW) == []
        removed = sorted(call.args[1] for call in client.zrem.await_args_list)
        assert removed == ["done", "gone"]
        assert client.zrem.await_args_list[0].args[0] == "kairos:reminders:due"

    @pytest.mark.asyncio
    async def test_cancel_missing(self):
        store = RedisReminderStore(self._client({}))
        assert not await store.cancel("nope")

    @pytest.mark.asyncio
    async def test_is_cancelled(self):
        client = self._client({})
        store = RedisReminderStore(client)
        client.hget.return_value = "0"
        assert not await store.is_cancelled("a")
        client.hget.return_value = "1"
        assert await store.is_cancelled("a")
        client.hget.return_value = None
        assert await store.is_cancelled("a")
        client.hget.assert_awaited_with("kairos:reminder:a", "cancelled")

    @pytest.mark.asyncio
    async def test_create_indexes_by_trigger_epoch(self):
        pipe = MagicMock()
        pipe.execute = AsyncMock(return_value=[1, 1])
        client = self._client({})
        client.pipeline.return_value.__aenter__.return_value = pipe
        client.pipeline.return_value.__aexit__.return_value = False

        reminder = await RedisReminderStore(client).create("stretch", NOW)

        pipe.hset.assert_called_once()
        assert pipe.hset.call_args.kwargs["mapping"]["message"] == "stretch"
        pipe.zadd.assert_called_once_with("kairos:reminders:due", {reminder.id: NOW.timestamp()})
        pipe.execute.assert_awaited_once()
