"""
Configuration loader with TOML file parsing and environment variable overrides.
"""
import os
import re
import logging
import tomllib
from pathlib import Path
from typing import Optional, Any, Dict, Tuple

from kairos.common.clock import resolve_timezone
from kairos.common.errors import InvalidTimezone
from .models import KairosConfig, ProactiveConfig

logger = logging.getLogger(__name__)

_config: Optional[KairosConfig] = None

CONFIG_PATHS = [
    Path("/etc/kairos/kairos.toml"),
    Path.home() / ".config" / "kairos" / "kairos.toml",
    Path("kairos.toml"),
]

PROACTIVITY_LEVELS = ("low", "medium", "high")

_QUIET_HOURS_RE = re.compile(r"^(\d{1,2})(?::00)?\s*-\s*(\d{1,2})(?::00)?$")

_PROACTIVE_INT_FIELDS = (
    "max_spontaneous_per_hour",
    "max_spontaneous_per_day",
    "circuit_breaker_threshold",
    "circuit_breaker_cooldown_ticks",
)
_PROACTIVE_FLOAT_FIELDS = ("tick_interval", "min_cooldown", "llm_timeout", "lock_timeout")
_PROACTIVE_HOUR_FIELDS = ("quiet_hours_start", "quiet_hours_end")
_GREETING_FIELDS = ("morning_greeting", "afternoon_greeting", "evening_greeting")


def parse_proactivity_level(value: str) -> str:
    """Normalize a proactivity level, defaulting to "low" on bad input."""
    normalized = str(value).lower().strip()
    if normalized in PROACTIVITY_LEVELS:
        return normalized
    logger.warning(f'Invalid proactivity level: "{value}", defaulting to "low"')
    return "low"


def parse_quiet_hours(value: str) -> Optional[Tuple[int, int]]:
    """
    Parse an hour range such as "22:00 - 08:00" or "8-10".

    Returns:
        (start, end) hours, or None if the string is malformed or out of range.
    """
    match = _QUIET_HOURS_RE.match(str(value).strip())
    if not match:
        return None
    start, end = int(match.group(1)), int(match.group(2))
    if not (0 <= start <= 23 and 0 <= end <= 23):
        return None
    return start, end


def _parse_hour_range(value: Any) -> Optional[Tuple[int, int]]:
    """Accept "8-10" strings or two-element [8, 10] lists."""
    if isinstance(value, str):
        return parse_quiet_hours(value)
    if isinstance(value, (list, tuple)) and len(value) == 2:
        try:
            start, end = int(value[0]), int(value[1])
        except (TypeError, ValueError):
            return None
        if 0 <= start <= 23 and 0 <= end <= 24:
            return start, end
    return None


def build_proactive_config(raw: Dict[str, Any]) -> ProactiveConfig:
    """
    Build a validated ProactiveConfig from a raw TOML/env dict.

    Invalid values are logged and replaced by defaults; an invalid timezone
    falls back to UTC.
    """
    values: Dict[str, Any] = {}

    for key in _PROACTIVE_INT_FIELDS:
        if key in raw:
            try:
                values[key] = max(0, int(raw[key]))
            except (TypeError, ValueError):
                logger.warning(f"Invalid proactive.{key}={raw[key]!r}, using default")

    for key in _PROACTIVE_FLOAT_FIELDS:
        if key in raw:
            try:
                values[key] = float(raw[key])
            except (TypeError, ValueError):
                logger.warning(f"Invalid proactive.{key}={raw[key]!r}, using default")

    if "quiet_hours" in raw:
        parsed = parse_quiet_hours(raw["quiet_hours"])
        if parsed:
            values["quiet_hours_start"], values["quiet_hours_end"] = parsed
        else:
            logger.warning(f"Invalid proactive.quiet_hours={raw['quiet_hours']!r}, using default")

    for key in _PROACTIVE_HOUR_FIELDS:
        if key in raw:
            try:
                hour = int(raw[key])
            except (TypeError, ValueError):
                hour = -1
            if 0 <= hour <= 23:
                values[key] = hour
            else:
                logger.warning(f"Invalid proactive.{key}={raw[key]!r}, using default")

    for key in _GREETING_FIELDS:
        if key in raw:
            parsed = _parse_hour_range(raw[key])
            if parsed:
                values[key] = parsed
            else:
                logger.warning(f"Invalid proactive.{key}={raw[key]!r}, using default")

    if "proactivity_level" in raw:
        values["proactivity_level"] = parse_proactivity_level(raw["proactivity_level"])

    if "timezone" in raw:
        try:
            resolve_timezone(str(raw["timezone"]))
            values["timezone"] = str(raw["timezone"]).strip()
        except InvalidTimezone:
            logger.warning(f"Invalid timezone {raw['timezone']!r} in config, falling back to UTC")
            values["timezone"] = "UTC"

    if "language" in raw:
        values["language"] = str(raw["language"])

    return ProactiveConfig(**values)


def _load_toml(path: Path) -> Dict[str, Any]:
    """Load TOML file and return parsed dict."""
    with open(path, "rb") as f:
        return tomllib.load(f)


def _proactive_env_overrides() -> Dict[str, str]:
    """
    Collect KAIROS_PROACTIVE_* environment variables.
    Example: KAIROS_PROACTIVE_TIMEZONE=Europe/Madrid
    """
    prefix = "KAIROS_PROACTIVE_"
    overrides = {}
    for env_var, value in os.environ.items():
        if env_var.startswith(prefix):
            key = env_var[len(prefix):].lower()
            overrides[key] = value
            logger.debug(f"Config override from env: {env_var}")
    return overrides


def _apply_env_overrides(config: KairosConfig) -> KairosConfig:
    """
    Override config with environment variables.
    Format: KAIROS_SECTION_KEY
    Example: KAIROS_MQTT_PASSWORD overrides config.mqtt.password
    """
    env_map = {
        # MQTT overrides
        "KAIROS_MQTT_BROKER": lambda v: setattr(config.mqtt, "broker", v),
        "KAIROS_MQTT_PORT": lambda v: setattr(config.mqtt, "port", int(v)),
        "KAIROS_MQTT_USERNAME": lambda v: setattr(config.mqtt, "username", v),
        "KAIROS_MQTT_PASSWORD": lambda v: setattr(config.mqtt, "password", v),

        # Redis overrides
        "KAIROS_REDIS_HOST": lambda v: setattr(config.redis, "host", v),
        "KAIROS_REDIS_PORT": lambda v: setattr(config.redis, "port", int(v)),
        "KAIROS_REDIS_DB": lambda v: setattr(config.redis, "db", int(v)),

        # Ollama overrides
        "KAIROS_OLLAMA_HOST": lambda v: setattr(config.ollama, "host", v),
        "KAIROS_OLLAMA_MODEL": lambda v: setattr(config.ollama, "model", v),

        # Ntfy overrides
        "KAIROS_NTFY_SERVER": lambda v: setattr(config.ntfy, "server", v),
        "KAIROS_NTFY_TOPIC": lambda v: setattr(config.ntfy, "topic", v),

        # Storage / scheduling overrides
        "KAIROS_STATE_BACKEND": lambda v: setattr(config.state, "backend", v),
        "KAIROS_REMINDERS_TICK_INTERVAL": lambda v: setattr(config.reminders, "tick_interval", float(v)),
        "KAIROS_NOTIFICATIONS_USER_ID": lambda v: setattr(config.notifications, "user_id", v),

        # Service overrides
        "KAIROS_MEMORY_PORT": lambda v: setattr(config.memory, "port", int(v)),
        "KAIROS_SERVICE_HTTP_PORT": lambda v: setattr(config.service, "http_port", int(v)),
        "KAIROS_SERVICE_LOG_LEVEL": lambda v: setattr(config.service, "log_level", v),
        "KAIROS_SERVICE_JSON_LOGS": lambda v: setattr(config.service, "json_logs", v.strip().lower() in ("1", "true", "yes")),
    }

    for env_var, setter in env_map.items():
        value = os.environ.get(env_var)
        if value is not None:
            try:
                setter(value)
                logger.debug(f"Config override from env: {env_var}")
            except (ValueError, TypeError) as e:
                logger.warning(f"Failed to apply env override {env_var}={value}: {e}")

    return config


def _toml_to_config(data: Dict[str, Any]) -> KairosConfig:
    """Convert TOML dict to KairosConfig dataclass."""
    config = KairosConfig()

    # Map TOML section names to mutable config sub-objects
    section_map = {
        "mqtt": config.mqtt,
        "redis": config.redis,
        "ollama": config.ollama,
        "ntfy": config.ntfy,
        "memory": config.memory,
        "state": config.state,
        "reminders": config.reminders,
        "notifications": config.notifications,
        "service": config.service,
    }

    for section_name, section_obj in section_map.items():
        if section_name in data:
            for k, v in data[section_name].items():
                if hasattr(section_obj, k):
                    setattr(section_obj, k, v)

    return config


def load_config(config_path: Optional[Path] = None) -> KairosConfig:
    """
    Load configuration from TOML file with environment variable overrides.

    Args:
        config_path: Optional explicit path to config file. If None, uses
                     $KAIROS_CONFIG or searches default paths.

    Returns:
        KairosConfig instance with loaded configuration.
    """
    global _config

    if config_path:
        paths = [config_path]
    elif os.environ.get("KAIROS_CONFIG"):
        paths = [Path(os.environ["KAIROS_CONFIG"])]
    else:
        paths = CONFIG_PATHS

    data = {}
    for path in paths:
        if path.exists():
            try:
                data = _load_toml(path)
                logger.info(f"Loaded config from {path}")
                break
            except (OSError, tomllib.TOMLDecodeError) as e:
                logger.error(f"Failed to load config from {path}: {e}")
                continue
    else:
        logger.warning("No config file found, using defaults")

    proactive_raw = dict(data.get("proactive", {}))
    proactive_raw.update(_proactive_env_overrides())

    config = _toml_to_config(data)
    config.proactive = build_proactive_config(proactive_raw)
    config = _apply_env_overrides(config)
    _config = config
    return config


def get_config() -> KairosConfig:
    """
    Get cached config or load if not yet loaded.

    Returns:
        KairosConfig instance.
    """
    global _config
    if _config is None:
        _config = load_config()
    return _config
