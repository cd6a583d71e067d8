"""
Spontaneous Loop.

Periodically asks the decision collaborator whether to say something, while
enforcing limits it cannot override.

Tick outline:
1. Locked phase: roll the lazy buckets, clear an expired breaker, fold in
   lock misses, run the gates. Any failing gate ends the tick before the
   collaborator is called.
2. Unlocked: fetch facts, build the context, ask the collaborator with a
   timeout. A timeout or error means silence.
3. Validate the answer (message type, empty text, hallucinated reminders,
   greeting dedup).
4. Locked phase: re-validate on fresh state.
5. Unlocked: send. Then a locked commit of the counters that waits for the
   lock instead of giving up, so a sent message is always counted.
"""
import asyncio
import dataclasses
import logging
import re
import uuid
from datetime import datetime
from typing import Callable, Optional, Tuple

from kairos.common.clock import ensure_aware, local_hour, utcnow
from kairos.common.errors import DecisionTimeout, DeliveryFailure, LockContention, StateConflict
from kairos.config.models import ProactiveConfig
from . import breaker
from .context import FactsProvider, MAX_RELEVANT_FACTS, build_spontaneous_context
from .decider import SpeakDecider
from .policy import (
    apply_spontaneous_sent,
    check_spontaneous_gates,
    greeting_already_sent,
    greeting_window,
    roll_buckets,
    user_zone,
)
from .state import MutexSkipTracker, ProactiveStateStore
from .types import (
    MessageType,
    NotificationMetadata,
    ProactiveState,
    SpontaneousContext,
    SpontaneousDecision,
)

logger = logging.getLogger(__name__)

CONSECUTIVE_ERROR_WARN_THRESHOLD = 5
COMMIT_ATTEMPTS = 3

_REMINDER_WORDS_RE = re.compile(r"recordar|remind", re.IGNORECASE)

# Tick outcomes
OK = "ok"
SENT = "sent"
LOCK_CONTENTION = "lock_contention"
STOPPED = "stopped"
TICK_ERROR = "tick_error"
STATE_CONFLICT = "state_conflict"


def validate_decision(
    decision: Optional[SpontaneousDecision],
    context: SpontaneousContext,
) -> Tuple[bool, str]:
    """Whether a decision may be delivered, and why not."""
    if decision is None:
        return False, "no_decision"
    if not decision.should_speak:
        return False, "decided_silent"
    if decision.message_type == MessageType.NONE:
        return False, "invalid_message_type"
    if decision.message_type == MessageType.REMINDER:
        return False, "blocked_hallucinated_reminder"
    if not decision.message or not decision.message.strip():
        return False, "empty_message"
    if _REMINDER_WORDS_RE.search(decision.message):
        return False, "blocked_hallucinated_reminder"
    if decision.message_type == MessageType.GREETING and context.greeting_already_sent:
        return False, "greeting_already_sent"
    return True, "ok"


def _user_spoke_since(snapshot: ProactiveState, fresh: ProactiveState) -> bool:
    if fresh.last_user_message_at is None:
        return False
    if snapshot.last_user_message_at is None:
        return True
    return ensure_aware(fresh.last_user_message_at) > ensure_aware(snapshot.last_user_message_at)


class SpontaneousLoop:
    """Decision-driven proactive messages on their own asyncio task."""

    def __init__(
        self,
        store: ProactiveStateStore,
        decider: SpeakDecider,
        router,
        config: ProactiveConfig,
        facts: Optional[FactsProvider] = None,
        user_id: str = "local-user",
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.decider = decider
        self.router = router
        self.config = config
        self.facts = facts
        self.user_id = user_id
        self.clock = clock

        self._task: Optional[asyncio.Task] = None
        self._delivery: Optional[asyncio.Task] = None
        self._brain_processing = False
        self._skips = MutexSkipTracker("spontaneous_loop")
        # Bumped by stop(); a tick started under an older generation never commits
        self._generation = 0

        self.last_tick_at: Optional[datetime] = None
        self.last_outcome: Optional[str] = None
        self.consecutive_errors = 0
        self.messages_sent = 0

    # --- Control ---

    def set_brain_processing(self, processing: bool):
        self._brain_processing = bool(processing)

    @property
    def brain_processing(self) -> bool:
        return self._brain_processing

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def update_config(self, **changes):
        self.config = dataclasses.replace(self.config, **changes)
        logger.info(f"Spontaneous loop config updated: {', '.join(sorted(changes))}")

    async def start(self):
        """Start ticking. The first tick runs one interval after start."""
        if self.is_running:
            logger.warning("Spontaneous loop already running")
            return
        self._task = asyncio.create_task(self._run(), name="spontaneous-loop")
        cfg = self.config
        logger.info(
            f"Spontaneous loop started (interval={cfg.tick_interval}s, "
            f"proactivity={cfg.proactivity_level}, "
            f"quiet_hours={cfg.quiet_hours_start}:00-{cfg.quiet_hours_end}:00)"
        )

    async def stop(self):
        """
        Cancel the task. An in-flight decision is abandoned, never committed.
        A send already under way finishes and is committed before stop returns.
        """
        self._generation += 1
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        if self._delivery is not None and not self._delivery.done():
            await self._delivery
        self._delivery = None
        logger.info("Spontaneous loop stopped")

    async def _run(self):
        while True:
            await asyncio.sleep(self.config.tick_interval)
            await self.force_tick()

    async def force_tick(self) -> str:
        """Run one tick and return its outcome. Tick failures are logged, never raised."""
        try:
            outcome = await self._tick()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.consecutive_errors += 1
            logger.error(f"Error in spontaneous tick: {e}", exc_info=True)
            if self.consecutive_errors >= CONSECUTIVE_ERROR_WARN_THRESHOLD:
                logger.warning(
                    f"Spontaneous loop failed {self.consecutive_errors} ticks in a row, check /health"
                )
            self.last_outcome = TICK_ERROR
            return TICK_ERROR

        self.consecutive_errors = 0
        self.last_outcome = outcome
        return outcome

    # --- Tick ---

    async def _tick(self) -> str:
        tick_id = uuid.uuid4().hex[:8]
        generation = self._generation
        cfg = self.config
        now = self.clock()
        self.last_tick_at = now

        def prepare(state: ProactiveState):
            state = roll_buckets(state, cfg, now)
            state = breaker.clear_if_expired(state, now)
            gates = check_spontaneous_gates(state, cfg, now, brain_busy=self._brain_processing)
            if gates.reason != "brain_processing":
                state = self._skips.apply(state)
            return state, (gates, state)

        try:
            gates, snapshot = await self.store.with_lock(prepare)
        except LockContention as e:
            self._skips.record_skip()
            logger.info(f"Spontaneous tick skipped: {e}", extra={"tick_id": tick_id, "reason": LOCK_CONTENTION})
            return LOCK_CONTENTION

        if gates.reason == "brain_processing":
            self._skips.record_skip()
        else:
            self._skips.committed()

        if not gates.allowed:
            logger.debug(f"Spontaneous blocked: {gates.reason}", extra={"tick_id": tick_id, "reason": gates.reason})
            return gates.reason

        context = build_spontaneous_context(snapshot, cfg, now, await self._fetch_facts())
        decision = await self._decide(context, tick_id)

        if generation != self._generation:
            logger.info("Discarding decision that arrived after stop", extra={"tick_id": tick_id})
            return STOPPED

        ok, reason = validate_decision(decision, context)
        if decision is not None:
            logger.info(
                f"Decision: should_speak={decision.should_speak} type={decision.message_type.value} "
                f"reason={decision.reason!r}",
                extra={"tick_id": tick_id},
            )
        if not ok:
            if reason not in ("decided_silent", "no_decision"):
                logger.warning(f"Spontaneous message blocked: {reason}", extra={"tick_id": tick_id, "reason": reason})
            await self._record_silent_tick(tick_id)
            return reason

        return await self._deliver(decision, snapshot, generation, tick_id)

    async def _fetch_facts(self):
        if self.facts is None:
            return []
        try:
            return (await self.facts.get_facts(MAX_RELEVANT_FACTS))[:MAX_RELEVANT_FACTS]
        except Exception as e:
            logger.warning(f"Could not fetch relevant facts: {e}")
            return []

    async def _decide(self, context: SpontaneousContext, tick_id: str) -> Optional[SpontaneousDecision]:
        """Bounded collaborator call; a timeout never defaults to speaking."""
        timeout = self.config.llm_timeout
        try:
            return await asyncio.wait_for(self.decider.decide(context), timeout=timeout)
        except asyncio.TimeoutError:
            err = DecisionTimeout(f"No decision within {timeout}s")
            logger.warning(str(err), extra={"tick_id": tick_id, "reason": "decision_timeout"})
        except Exception as e:
            logger.error(f"Decision collaborator failed: {e}", extra={"tick_id": tick_id})
        return None

    async def _record_silent_tick(self, tick_id: str):
        try:
            await self.store.with_lock(lambda s: (breaker.record_silent_tick(s), None))
        except LockContention as e:
            self._skips.record_skip()
            logger.info(f"Silent tick not recorded: {e}", extra={"tick_id": tick_id})

    async def _deliver(
        self,
        decision: SpontaneousDecision,
        snapshot: ProactiveState,
        generation: int,
        tick_id: str,
    ) -> str:
        cfg = self.config

        def revalidate(state: ProactiveState):
            if generation != self._generation:
                return None, STOPPED

            now = self.clock()
            state = roll_buckets(state, cfg, now)
            state = breaker.clear_if_expired(state, now)

            if _user_spoke_since(snapshot, state):
                return breaker.record_silent_tick(state), "user_active"

            gates = check_spontaneous_gates(state, cfg, now, brain_busy=self._brain_processing)
            if not gates.allowed:
                return breaker.record_silent_tick(state), gates.reason

            if decision.message_type == MessageType.GREETING:
                window = greeting_window(local_hour(now, user_zone(cfg.timezone)), cfg)
                if greeting_already_sent(state, window, gates.budget.today):
                    return breaker.record_silent_tick(state), "greeting_already_sent"

            return state, OK

        try:
            verdict = await self.store.with_lock(revalidate)
        except LockContention as e:
            self._skips.record_skip()
            logger.warning(f"Spontaneous delivery skipped: {e}", extra={"tick_id": tick_id, "reason": LOCK_CONTENTION})
            return LOCK_CONTENTION

        if verdict != OK:
            logger.info(f"Spontaneous message not sent: {verdict}", extra={"tick_id": tick_id, "reason": verdict})
            return verdict

        # Once sending starts, stop() waits for the send and its commit
        self._delivery = asyncio.create_task(self._send_and_commit(decision, tick_id))
        return await asyncio.shield(self._delivery)

    async def _send_and_commit(self, decision: SpontaneousDecision, tick_id: str) -> str:
        """Send with the lock released, then count the result under the lock."""
        cfg = self.config
        metadata = NotificationMetadata(
            type="spontaneous",
            message_type=decision.message_type,
            priority="normal",
        )
        try:
            sent = await self.router.send_notification(self.user_id, decision.message, metadata)
        except DeliveryFailure as e:
            logger.error(f"Spontaneous delivery failed: {e}", extra={"tick_id": tick_id})
            sent = False

        def record(state: ProactiveState):
            if not sent:
                return breaker.record_silent_tick(state), "delivery_failed"
            now = self.clock()
            state = breaker.clear_if_expired(state, now)
            return apply_spontaneous_sent(state, cfg, now, decision.message_type), SENT

        outcome = None
        for attempt in range(1, COMMIT_ATTEMPTS + 1):
            try:
                outcome = await self.store.with_lock(record, wait=True)
                break
            except StateConflict as e:
                logger.warning(
                    f"Spontaneous commit conflicted (attempt {attempt}/{COMMIT_ATTEMPTS}): {e}",
                    extra={"tick_id": tick_id},
                )
        if outcome is None:
            if not sent:
                return "delivery_failed"
            logger.error(
                "Spontaneous message went out but was not counted", extra={"tick_id": tick_id, "reason": STATE_CONFLICT}
            )
            return STATE_CONFLICT

        if outcome == SENT:
            self.messages_sent += 1
            logger.info(
                f"Spontaneous message sent ({decision.message_type.value}): {decision.message[:50]}",
                extra={"tick_id": tick_id},
            )
        else:
            logger.info(f"Spontaneous message not sent: {outcome}", extra={"tick_id": tick_id, "reason": outcome})
        return outcome
