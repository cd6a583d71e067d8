"""
Rate limiter, quiet-hours and greeting-window evaluation.

Everything here is a pure function of (state, config, now). Nothing is read
from or written to storage, so the same functions serve the tick's first
check, the re-validation right before delivery and the status endpoint.

Counters are lazily-reset fixed buckets: a counter recorded under an older
day/hour watermark is treated as zero on read (evaluate_budget) and is
actually zeroed on the next commit (roll_buckets).
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from functools import lru_cache
from typing import Any, Dict, Optional
from zoneinfo import ZoneInfo

from kairos.config.models import ProactiveConfig
from kairos.common.clock import (
    ensure_aware,
    format_instant,
    is_within_quiet_hours,
    is_within_window,
    local_date_str,
    local_hour,
    safe_timezone,
)
from . import breaker
from .types import GreetingWindow, MessageType, ProactiveState


@lru_cache(maxsize=32)
def user_zone(name: str) -> ZoneInfo:
    """Resolve the user's zone once per name; invalid names warn once and use UTC."""
    return safe_timezone(name)


@dataclass
class BudgetEvaluation:
    """Remaining spontaneous budget at one instant."""
    today: str
    hour: int
    effective_daily_count: int
    effective_hourly_count: int
    remaining_today: int
    remaining_this_hour: int
    cooldown_active: bool

    @property
    def allowed(self) -> bool:
        return self.remaining_today > 0 and self.remaining_this_hour > 0 and not self.cooldown_active


@dataclass
class GateResult:
    """Verdict of the hard gates for one tick."""
    allowed: bool
    reason: str
    budget: BudgetEvaluation


def evaluate_budget(state: ProactiveState, config: ProactiveConfig, now: datetime) -> BudgetEvaluation:
    tz = user_zone(config.timezone)
    today = local_date_str(now, tz)
    hour = local_hour(now, tz)

    daily = state.spontaneous_count_today if state.date_of_last_daily_count == today else 0
    hourly = (
        state.spontaneous_count_this_hour
        if state.date_of_last_daily_count == today and state.hour_of_last_hourly_count == hour
        else 0
    )

    cooldown_active = False
    if state.last_spontaneous_message_at is not None:
        elapsed = ensure_aware(now) - ensure_aware(state.last_spontaneous_message_at)
        cooldown_active = elapsed < timedelta(seconds=config.min_cooldown)

    return BudgetEvaluation(
        today=today,
        hour=hour,
        effective_daily_count=daily,
        effective_hourly_count=hourly,
        remaining_today=max(0, config.max_spontaneous_per_day - daily),
        remaining_this_hour=max(0, config.max_spontaneous_per_hour - hourly),
        cooldown_active=cooldown_active,
    )


def roll_buckets(state: ProactiveState, config: ProactiveConfig, now: datetime) -> ProactiveState:
    """Zero counters and advance watermarks when a new day/hour is observed."""
    budget = evaluate_budget(state, config, now)
    changes: Dict[str, Any] = {}

    if state.date_of_last_daily_count != budget.today:
        changes["spontaneous_count_today"] = 0
        changes["date_of_last_daily_count"] = budget.today

    if state.date_of_last_daily_count != budget.today or state.hour_of_last_hourly_count != budget.hour:
        changes["spontaneous_count_this_hour"] = 0
        changes["hour_of_last_hourly_count"] = budget.hour

    return state.copy(**changes) if changes else state


def quiet_reason(state: ProactiveState, config: ProactiveConfig, now: datetime) -> Optional[str]:
    """Why spontaneous speech is silenced right now, or None."""
    hour = local_hour(now, user_zone(config.timezone))
    if is_within_quiet_hours(hour, config.quiet_hours_start, config.quiet_hours_end):
        return "quiet_hours"
    if state.quiet_mode_until is not None and ensure_aware(now) < ensure_aware(state.quiet_mode_until):
        return "quiet_mode_manual"
    return None


def greeting_window(hour: int, config: ProactiveConfig) -> Optional[GreetingWindow]:
    windows = (
        (GreetingWindow.MORNING, config.morning_greeting),
        (GreetingWindow.AFTERNOON, config.afternoon_greeting),
        (GreetingWindow.EVENING, config.evening_greeting),
    )
    for window, (start, end) in windows:
        if is_within_window(hour, start, end):
            return window
    return None


def greeting_already_sent(state: ProactiveState, window: Optional[GreetingWindow], today: str) -> bool:
    if window is None:
        return False
    return state.last_greeting_date == today and state.last_greeting_type == window


def check_spontaneous_gates(
    state: ProactiveState,
    config: ProactiveConfig,
    now: datetime,
    brain_busy: bool = False,
) -> GateResult:
    """Run the hard gates in order; the first failing gate names the reason."""
    budget = evaluate_budget(state, config, now)

    if config.proactivity_level == "low":
        return GateResult(False, "proactivity_level_low", budget)
    if brain_busy:
        return GateResult(False, "brain_processing", budget)
    if breaker.is_tripped(state, now):
        return GateResult(False, "circuit_breaker_active", budget)

    reason = quiet_reason(state, config, now)
    if reason:
        return GateResult(False, reason, budget)

    if budget.remaining_today <= 0:
        return GateResult(False, "daily_limit_reached", budget)
    if budget.remaining_this_hour <= 0:
        return GateResult(False, "hourly_limit_reached", budget)
    if budget.cooldown_active:
        return GateResult(False, "cooldown_active", budget)

    return GateResult(True, "allowed", budget)


def apply_spontaneous_sent(
    state: ProactiveState,
    config: ProactiveConfig,
    now: datetime,
    message_type: MessageType,
) -> ProactiveState:
    """Bookkeeping after a spontaneous message was delivered."""
    state = roll_buckets(state, config, now)
    state = state.copy(
        last_spontaneous_message_at=ensure_aware(now),
        spontaneous_count_today=state.spontaneous_count_today + 1,
        spontaneous_count_this_hour=state.spontaneous_count_this_hour + 1,
    )
    state = breaker.record_spoken_tick(state, config, now)

    if message_type == MessageType.GREETING:
        window = greeting_window(local_hour(now, user_zone(config.timezone)), config)
        if window is not None:
            state = state.copy(
                last_greeting_type=window,
                last_greeting_date=local_date_str(now, user_zone(config.timezone)),
            )

    return state


def get_proactive_status(state: ProactiveState, config: ProactiveConfig, now: datetime) -> Dict[str, Any]:
    """Debug snapshot of state, limits and the current verdicts."""
    gates = check_spontaneous_gates(state, config, now)
    budget = gates.budget
    window = greeting_window(budget.hour, config)
    greeted = greeting_already_sent(state, window, budget.today)

    return {
        "state": state.to_dict(),
        "limits": {
            "hourly_count": budget.effective_hourly_count,
            "daily_count": budget.effective_daily_count,
            "max_per_hour": config.max_spontaneous_per_hour,
            "max_per_day": config.max_spontaneous_per_day,
            "remaining_this_hour": budget.remaining_this_hour,
            "remaining_today": budget.remaining_today,
            "cooldown_active": budget.cooldown_active,
        },
        "can_send_spontaneous": {"allowed": gates.allowed, "reason": gates.reason},
        "can_send_greeting": {
            "allowed": gates.allowed and window is not None and not greeted,
            "window": window.value if window else None,
            "already_sent": greeted,
        },
        "circuit_breaker": {
            "tripped": breaker.is_tripped(state, now),
            "until": format_instant(state.circuit_breaker_tripped_until),
        },
        "config": {
            "proactivity_level": config.proactivity_level,
            "quiet_hours": f"{config.quiet_hours_start}:00 - {config.quiet_hours_end}:00",
            "timezone": config.timezone,
        },
    }
