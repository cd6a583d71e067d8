"""Shared fixtures for the proactive system tests."""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import List, Optional

import pytest

from kairos.config.models import ProactiveConfig
from kairos.services.proactive.reminders import MemoryReminderStore
from kairos.services.proactive.state import MemoryStateBackend, ProactiveStateStore
from kairos.services.proactive.types import MessageType, SpontaneousDecision


class FakeClock:
    """Injected clock; tests move time by hand."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)

    def set(self, value: datetime):
        self.now = value


class FakeDecider:
    """SpeakDecider returning a canned decision."""

    def __init__(self):
        self.decision: Optional[SpontaneousDecision] = SpontaneousDecision(
            should_speak=True,
            reason="user has been quiet",
            message_type=MessageType.CHECKIN,
            message="How is your day going?",
        )
        self.delay = 0.0
        self.error: Optional[Exception] = None
        self.on_call = None
        self.calls = []

    def speak(self, message_type: MessageType, message: str):
        self.decision = SpontaneousDecision(True, "test", message_type, message)

    async def decide(self, context):
        self.calls.append(context)
        if self.on_call is not None:
            await self.on_call()
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.decision


class RecordingRouter:
    """Notification sink collaborator that records every send."""

    def __init__(self):
        self.sent: List[tuple] = []
        self.result = True
        self.error: Optional[Exception] = None
        self.delay = 0.0

    async def send_notification(self, user_id, message, metadata) -> bool:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        if self.result:
            self.sent.append((user_id, message, metadata))
        return self.result


@pytest.fixture
def clock():
    # Monday 2026-03-02 10:00 UTC
    return FakeClock(datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc))


@pytest.fixture
def config():
    return ProactiveConfig(proactivity_level="medium", timezone="UTC")


@pytest.fixture
def store(clock):
    return ProactiveStateStore(MemoryStateBackend(), clock=clock, lock_timeout=0.1)


@pytest.fixture
def reminders():
    return MemoryReminderStore()


@pytest.fixture
def decider():
    return FakeDecider()


@pytest.fixture
def router():
    return RecordingRouter()
