"""
Types for the proactive system.

The proactive system has two engines sharing one state record:
1. Reminder Scheduler - deterministic, time-based reminders
2. Spontaneous Loop - decision-driven proactive messages

Only the spontaneous loop is subject to rate limits, quiet hours and the
circuit breaker.
"""
from dataclasses import dataclass, field, asdict, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from kairos.common.clock import format_instant, parse_instant
from kairos.common.errors import DataIntegrityError


class MessageType(str, Enum):
    """Kind of proactive message"""
    GREETING = "greeting"
    CHECKIN = "checkin"
    CONTEXTUAL = "contextual"
    REMINDER = "reminder"
    NONE = "none"


class GreetingWindow(str, Enum):
    """Greeting windows, at most one greeting of each per local day"""
    MORNING = "morning"
    AFTERNOON = "afternoon"
    EVENING = "evening"


class ReminderStatus(str, Enum):
    """Reminder lifecycle: pending -> attempting -> delivered"""
    PENDING = "pending"
    ATTEMPTING = "attempting"
    DELIVERED = "delivered"


_INSTANT_FIELDS = (
    "last_spontaneous_message_at",
    "last_reminder_message_at",
    "circuit_breaker_tripped_until",
    "last_user_message_at",
    "last_user_activity_at",
    "quiet_mode_until",
)


@dataclass
class ProactiveState:
    """Persistent state of the proactive system. One record per process."""
    # Tracking of messages sent
    last_spontaneous_message_at: Optional[datetime] = None
    last_reminder_message_at: Optional[datetime] = None

    # Rate limiting counters (reset lazily)
    spontaneous_count_today: int = 0
    spontaneous_count_this_hour: int = 0

    # Bucket watermarks for the lazy reset
    date_of_last_daily_count: Optional[str] = None  # YYYY-MM-DD, user's zone
    hour_of_last_hourly_count: Optional[int] = None  # 0-23, user's zone

    # Circuit breaker
    consecutive_ticks_with_message: int = 0
    circuit_breaker_tripped_until: Optional[datetime] = None

    # Mutex starvation tracking
    consecutive_mutex_skips: int = 0

    # Activity tracking
    last_user_message_at: Optional[datetime] = None
    last_user_activity_at: Optional[datetime] = None

    # Greeting deduplication
    last_greeting_type: Optional[GreetingWindow] = None
    last_greeting_date: Optional[str] = None

    # Manual quiet mode
    quiet_mode_until: Optional[datetime] = None

    # Compare-and-set version, bumped on every commit
    version: int = 0

    def copy(self, **changes) -> "ProactiveState":
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        for key in _INSTANT_FIELDS:
            data[key] = format_instant(data[key])
        if self.last_greeting_type is not None:
            data["last_greeting_type"] = self.last_greeting_type.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProactiveState":
        """
        Decode a stored record. Unknown keys are ignored so older/newer
        records still load.

        Raises:
            DataIntegrityError: if a field cannot be decoded.
        """
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        try:
            for key in _INSTANT_FIELDS:
                known[key] = parse_instant(known.get(key))
            if known.get("last_greeting_type"):
                known["last_greeting_type"] = GreetingWindow(known["last_greeting_type"])
            return cls(**known)
        except (ValueError, TypeError) as e:
            raise DataIntegrityError(f"Malformed proactive state: {e}") from e


INITIAL_PROACTIVE_STATE = ProactiveState()


@dataclass
class SpontaneousContext:
    """Snapshot given to the decision collaborator. Never persisted."""
    # Time context
    current_time: str  # "14:35"
    current_day: str  # "Friday"
    current_date: str  # "2026-02-01"

    # Activity context
    minutes_since_last_user_message: Optional[int]
    hours_since_last_user_activity: Optional[int]

    # Constraints (informational, code still enforces them)
    is_quiet_hours: bool
    greeting_window: Optional[GreetingWindow]
    greeting_already_sent: bool
    remaining_today: int
    remaining_this_hour: int
    cooldown_active: bool

    # Memory context
    relevant_facts: List[str] = field(default_factory=list)

    # User preferences
    proactivity_level: str = "low"
    language: str = "en"


@dataclass
class SpontaneousDecision:
    """The decision collaborator's verdict for one tick."""
    should_speak: bool
    reason: str
    message_type: MessageType = MessageType.NONE
    message: Optional[str] = None

    @classmethod
    def silent(cls, reason: str) -> "SpontaneousDecision":
        return cls(should_speak=False, reason=reason)


@dataclass
class Reminder:
    """A reminder owned by the scheduler once created."""
    id: str
    message: str
    trigger_at: datetime
    created_at: datetime
    status: ReminderStatus = ReminderStatus.PENDING
    triggered_at: Optional[datetime] = None
    cancelled: bool = False

    @property
    def is_terminal(self) -> bool:
        return self.cancelled or self.status == ReminderStatus.DELIVERED

    def to_dict(self) -> Dict[str, str]:
        """Flat string mapping suitable for a Redis hash."""
        return {
            "id": self.id,
            "message": self.message,
            "trigger_at": format_instant(self.trigger_at),
            "created_at": format_instant(self.created_at),
            "status": self.status.value,
            "triggered_at": format_instant(self.triggered_at) or "",
            "cancelled": "1" if self.cancelled else "0",
        }

    @classmethod
    def from_dict(cls, data: Dict[str, str]) -> "Reminder":
        """
        Raises:
            DataIntegrityError: if the trigger time or any other field is malformed.
        """
        try:
            trigger_at = parse_instant(data["trigger_at"])
            if trigger_at is None:
                raise ValueError("empty trigger_at")
            return cls(
                id=data["id"],
                message=data.get("message", ""),
                trigger_at=trigger_at,
                created_at=parse_instant(data.get("created_at")) or trigger_at,
                status=ReminderStatus(data.get("status", ReminderStatus.PENDING.value)),
                triggered_at=parse_instant(data.get("triggered_at") or None),
                cancelled=str(data.get("cancelled", "0")) in ("1", "true", "True"),
            )
        except (KeyError, ValueError, TypeError) as e:
            raise DataIntegrityError(
                f"Malformed reminder {data.get('id', '?')}: {e}"
            ) from e


@dataclass
class NotificationMetadata:
    """Routing hints attached to every proactive notification."""
    type: str  # "reminder" or "spontaneous"
    message_type: Optional[MessageType] = None
    reminder_id: Optional[str] = None
    priority: str = "normal"  # "low", "normal" or "high"
