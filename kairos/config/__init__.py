"""
Kairos configuration management.

Provides centralized configuration loading from TOML files with environment variable overrides.

Usage:
    from kairos.config import get_config

    config = get_config()
    quiet_start = config.proactive.quiet_hours_start
    ollama_model = config.ollama.model
"""
from .loader import (
    load_config,
    get_config,
    build_proactive_config,
    parse_proactivity_level,
    parse_quiet_hours,
)
from .models import KairosConfig, ProactiveConfig

__all__ = [
    "load_config",
    "get_config",
    "build_proactive_config",
    "parse_proactivity_level",
    "parse_quiet_hours",
    "KairosConfig",
    "ProactiveConfig",
]
