"""
Circuit breaker for spontaneous speech.

Two states, armed and tripped. The breaker trips when the number of
consecutive ticks that produced a spontaneous message reaches the configured
threshold, and re-arms on the first tick observed at or after the trip
deadline. It bounds how chatty a misbehaving decision collaborator can get.
"""
import logging
from datetime import datetime, timedelta

from kairos.config.models import ProactiveConfig
from kairos.common.clock import ensure_aware, format_instant
from .types import ProactiveState

logger = logging.getLogger(__name__)


def is_tripped(state: ProactiveState, now: datetime) -> bool:
    """A tick at exactly the deadline is already armed."""
    until = state.circuit_breaker_tripped_until
    return until is not None and ensure_aware(now) < ensure_aware(until)


def clear_if_expired(state: ProactiveState, now: datetime) -> ProactiveState:
    """Tripped -> armed once the cooldown has elapsed."""
    if state.circuit_breaker_tripped_until is None or is_tripped(state, now):
        return state
    logger.info("Circuit breaker cooldown expired, clearing")
    return state.copy(
        circuit_breaker_tripped_until=None,
        consecutive_ticks_with_message=0,
    )


def record_spoken_tick(state: ProactiveState, config: ProactiveConfig, now: datetime) -> ProactiveState:
    """Count a tick that delivered a spontaneous message and trip at the threshold."""
    consecutive = state.consecutive_ticks_with_message + 1
    state = state.copy(consecutive_ticks_with_message=consecutive)

    if config.circuit_breaker_threshold > 0 and consecutive >= config.circuit_breaker_threshold:
        until = ensure_aware(now) + timedelta(seconds=config.circuit_breaker_cooldown)
        logger.warning(
            f"Circuit breaker tripped after {consecutive} consecutive spoken ticks, "
            f"silent until {format_instant(until)}"
        )
        state = state.copy(circuit_breaker_tripped_until=until)

    return state


def record_silent_tick(state: ProactiveState) -> ProactiveState:
    if state.consecutive_ticks_with_message == 0:
        return state
    return state.copy(consecutive_ticks_with_message=0)
