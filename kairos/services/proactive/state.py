"""
Proactive state store.

One ProactiveState record per process, read-modify-written as a unit.

Within the process every mutation runs inside with_lock(), which holds an
asyncio.Lock for the whole load -> fn -> commit sequence. Across processes the
Redis backend rejects stale commits with an optimistic compare-and-set on the
record's version (WATCH/MULTI/EXEC).
"""
import asyncio
import inspect
import json
import logging
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Optional, Protocol, Tuple, Union

import redis.asyncio as redis
from redis.exceptions import WatchError

from kairos.common.clock import ensure_aware, utcnow
from kairos.common.errors import DataIntegrityError, LockContention, StateConflict
from .types import INITIAL_PROACTIVE_STATE, ProactiveState

logger = logging.getLogger(__name__)

MUTEX_SKIP_WARN_THRESHOLD = 3

LockedResult = Tuple[Optional[ProactiveState], Any]
LockedFn = Callable[[ProactiveState], Union[LockedResult, Awaitable[LockedResult]]]


class StateBackend(Protocol):
    """Durable storage for the single state record."""

    async def get(self) -> Optional[ProactiveState]:
        ...

    async def compare_and_set(self, expected_version: int, new_state: ProactiveState) -> None:
        """Store new_state only if the stored version still equals expected_version.

        Raises:
            StateConflict: if another writer committed in between.
        """
        ...


class RedisStateBackend:
    """State record as one JSON value under a fixed Redis key."""

    def __init__(self, client: redis.Redis, key: str = "kairos:proactive:state"):
        self.client = client
        self.key = key

    @staticmethod
    def _decode(raw: Optional[str]) -> Optional[ProactiveState]:
        if not raw:
            return None
        try:
            return ProactiveState.from_dict(json.loads(raw))
        except json.JSONDecodeError as e:
            raise DataIntegrityError(f"Proactive state is not valid JSON: {e}") from e

    async def get(self) -> Optional[ProactiveState]:
        return self._decode(await self.client.get(self.key))

    async def compare_and_set(self, expected_version: int, new_state: ProactiveState) -> None:
        payload = json.dumps(new_state.to_dict())
        try:
            async with self.client.pipeline(transaction=True) as pipe:
                await pipe.watch(self.key)
                current = self._decode(await pipe.get(self.key))
                current_version = current.version if current else 0
                if current_version != expected_version:
                    raise StateConflict(
                        f"State version moved from {expected_version} to {current_version}"
                    )
                pipe.multi()
                pipe.set(self.key, payload)
                await pipe.execute()
        except WatchError as e:
            raise StateConflict(f"Concurrent write to {self.key}") from e


class MemoryStateBackend:
    """In-process backend for tests and single-process deployments without Redis."""

    def __init__(self, initial: Optional[ProactiveState] = None):
        self._state = initial

    async def get(self) -> Optional[ProactiveState]:
        return self._state

    async def compare_and_set(self, expected_version: int, new_state: ProactiveState) -> None:
        current_version = self._state.version if self._state else 0
        if current_version != expected_version:
            raise StateConflict(
                f"State version moved from {expected_version} to {current_version}"
            )
        self._state = new_state


class ProactiveStateStore:
    """
    Owner of the proactive state record.

    Both loops and the service handlers share one store. Every mutation goes
    through with_lock() so no field is written from a stale snapshot.
    """

    def __init__(
        self,
        backend: StateBackend,
        clock: Callable[[], datetime] = utcnow,
        lock_timeout: float = 2.0,
    ):
        self.backend = backend
        self.clock = clock
        self.lock_timeout = lock_timeout
        self._lock = asyncio.Lock()

    @property
    def locked(self) -> bool:
        return self._lock.locked()

    async def load(self) -> ProactiveState:
        """Latest committed record, or the initial record if none exists yet."""
        state = await self.backend.get()
        return state if state is not None else INITIAL_PROACTIVE_STATE

    async def commit(self, new_state: ProactiveState) -> ProactiveState:
        """
        Atomically replace the record. new_state.version must be the version
        of the snapshot it was derived from.

        Raises:
            StateConflict: if the stored record moved on since that snapshot.
        """
        stored = new_state.copy(version=new_state.version + 1)
        await self.backend.compare_and_set(new_state.version, stored)
        return stored

    async def _acquire(self, timeout: Optional[float]) -> None:
        if timeout is None or not self._lock.locked():
            await self._lock.acquire()
            return
        try:
            await asyncio.wait_for(self._lock.acquire(), timeout)
        except asyncio.TimeoutError:
            raise LockContention(f"State lock not acquired within {timeout}s") from None

    async def with_lock(self, fn: LockedFn, timeout: Optional[float] = None, wait: bool = False) -> Any:
        """
        Run fn(state) as one critical section.

        fn may be sync or async and returns (new_state_or_None, result). The
        new state is committed when it differs from the loaded one. The lock
        is released on every path. With wait=True the call queues for the
        lock with no bound; use it only for writes that must not be dropped.

        Raises:
            LockContention: if the lock is not acquired within timeout.
            StateConflict: if the durable compare-and-set lost a race.
        """
        if wait:
            await self._acquire(None)
        else:
            await self._acquire(self.lock_timeout if timeout is None else timeout)
        try:
            state = await self.load()
            outcome = fn(state)
            if inspect.isawaitable(outcome):
                outcome = await outcome
            new_state, result = outcome
            if new_state is not None and new_state != state:
                await self.commit(new_state)
            return result
        finally:
            self._lock.release()

    # --- Mutators ---

    async def record_user_message(self) -> None:
        """A user message implies activity too. Waits for the lock rather than dropping the write."""
        now = self.clock()
        await self.with_lock(
            lambda s: (s.copy(last_user_message_at=now, last_user_activity_at=now), None),
            wait=True,
        )

    async def record_user_activity(self) -> None:
        now = self.clock()
        await self.with_lock(lambda s: (s.copy(last_user_activity_at=now), None), wait=True)

    async def enable_quiet_mode(self, duration: float) -> datetime:
        """Silence spontaneous speech for duration seconds. Returns the deadline."""
        until = self.clock() + timedelta(seconds=duration)
        await self.with_lock(lambda s: (s.copy(quiet_mode_until=until), None))
        logger.info(f"Quiet mode enabled until {until.isoformat()}")
        return until

    async def disable_quiet_mode(self) -> None:
        await self.with_lock(lambda s: (s.copy(quiet_mode_until=None), None))
        logger.info("Quiet mode disabled")

    async def record_reminder_sent(self, at: Optional[datetime] = None) -> None:
        stamp = ensure_aware(at or self.clock())
        await self.with_lock(lambda s: (stamp_reminder_sent(s, stamp), None))

    async def reset(self) -> None:
        """Restore the initial record."""
        await self.with_lock(lambda s: (INITIAL_PROACTIVE_STATE.copy(version=s.version), None))
        logger.warning("Proactive state reset")


def stamp_reminder_sent(state: ProactiveState, at: datetime) -> ProactiveState:
    """Never move the reminder watermark backwards."""
    last = state.last_reminder_message_at
    if last is not None and ensure_aware(last) >= at:
        return state
    return state.copy(last_reminder_message_at=at)


class MutexSkipTracker:
    """
    Local miss counter for one loop.

    Misses are recorded while the lock is unavailable and folded into
    consecutive_mutex_skips on the next locked tick. A clean tick with no
    pending misses resets the counter.
    """

    def __init__(self, loop_name: str):
        self.loop_name = loop_name
        self.pending = 0
        self.needs_reset = False

    def record_skip(self) -> None:
        self.pending += 1

    def apply(self, state: ProactiveState) -> ProactiveState:
        if self.pending:
            count = state.consecutive_mutex_skips + self.pending
            if count > MUTEX_SKIP_WARN_THRESHOLD:
                logger.warning(
                    f"{self.loop_name}: {count} consecutive ticks skipped on the state lock"
                )
            return state.copy(consecutive_mutex_skips=count)
        if state.consecutive_mutex_skips:
            return state.copy(consecutive_mutex_skips=0)
        return state

    def committed(self) -> None:
        """Call once the locked tick that applied the misses has committed."""
        self.needs_reset = self.pending > 0
        self.pending = 0
