"""
Configuration dataclass models for Kairos.
"""
from dataclasses import dataclass, field
from typing import Tuple


@dataclass
class MQTTConfig:
    """MQTT broker configuration."""
    broker: str = "localhost"
    port: int = 1883
    username: str = "kairos"
    password: str = ""  # loaded from env


@dataclass
class RedisConfig:
    """Redis server configuration."""
    host: str = "localhost"
    port: int = 6379
    db: int = 0


@dataclass
class OllamaConfig:
    """Ollama LLM configuration (backs the speak decider)."""
    host: str = "http://localhost:11434"
    model: str = "llama3.2:3b"
    default_max_tokens: int = 300
    default_temperature: float = 0.4


@dataclass
class NtfyConfig:
    """Ntfy notification service configuration."""
    server: str = "https://ntfy.sh"
    topic: str = ""


@dataclass
class MemoryConfig:
    """Memory service configuration (source of relevant facts)."""
    host: str = "localhost"
    port: int = 8001
    recall_query: str = "facts about the user, plans and preferences"


@dataclass
class StateConfig:
    """Where the proactive state record and reminders live."""
    backend: str = "redis"  # "redis" or "memory"
    key: str = "kairos:proactive:state"
    reminder_prefix: str = "kairos:reminder"


@dataclass
class ReminderConfig:
    """Reminder scheduler configuration."""
    tick_interval: float = 60.0  # seconds


@dataclass
class NotificationsConfig:
    """Notification routing preferences."""
    user_id: str = "local-user"
    primary_channel: str = "chat"
    chat_preference: str = "all"  # "all", "reminders-only" or "none"
    ntfy_preference: str = "reminders-only"


@dataclass
class ServiceConfig:
    """Proactive service process configuration."""
    http_port: int = 8004
    log_level: str = "INFO"
    json_logs: bool = False


@dataclass(frozen=True)
class ProactiveConfig:
    """
    Code-enforced limits for spontaneous speech.
    These are hard limits that the decision collaborator cannot override.
    All durations are in seconds.
    """
    tick_interval: float = 15 * 60
    min_cooldown: float = 30 * 60

    # Lazily-reset hour/day buckets
    max_spontaneous_per_hour: int = 2
    max_spontaneous_per_day: int = 8

    # No spontaneous speech in this local-hour window; reminders still fire
    quiet_hours_start: int = 22
    quiet_hours_end: int = 8

    circuit_breaker_threshold: int = 5
    circuit_breaker_cooldown_ticks: int = 10
    llm_timeout: float = 10.0
    lock_timeout: float = 2.0

    proactivity_level: str = "low"  # "low", "medium" or "high"
    timezone: str = "UTC"
    language: str = "en"

    # [start, end) local hours
    morning_greeting: Tuple[int, int] = (8, 10)
    afternoon_greeting: Tuple[int, int] = (14, 15)
    evening_greeting: Tuple[int, int] = (18, 19)

    @property
    def circuit_breaker_cooldown(self) -> float:
        """Breaker cooldown in seconds."""
        return self.circuit_breaker_cooldown_ticks * self.tick_interval


@dataclass
class KairosConfig:
    """Root configuration object containing all subsystem configs."""
    mqtt: MQTTConfig = field(default_factory=MQTTConfig)
    redis: RedisConfig = field(default_factory=RedisConfig)
    ollama: OllamaConfig = field(default_factory=OllamaConfig)
    ntfy: NtfyConfig = field(default_factory=NtfyConfig)
    memory: MemoryConfig = field(default_factory=MemoryConfig)
    state: StateConfig = field(default_factory=StateConfig)
    reminders: ReminderConfig = field(default_factory=ReminderConfig)
    notifications: NotificationsConfig = field(default_factory=NotificationsConfig)
    service: ServiceConfig = field(default_factory=ServiceConfig)
    proactive: ProactiveConfig = field(default_factory=ProactiveConfig)
