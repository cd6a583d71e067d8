"""Tests for configuration parsing and loading."""

import logging

import pytest

from kairos.config import (
    build_proactive_config,
    load_config,
    parse_proactivity_level,
    parse_quiet_hours,
)

logging.disable(logging.CRITICAL)


class TestParsers:
    @pytest.mark.parametrize("value,expected", [
        ("high", "high"),
        (" Medium ", "medium"),
        ("LOW", "low"),
        ("chatty", "low"),
        ("", "low"),
    ])
    def test_proactivity_level(self, value, expected):
        assert parse_proactivity_level(value) == expected

    @pytest.mark.parametrize("value,expected", [
        ("22:00 - 08:00", (22, 8)),
        ("23-7", (23, 7)),
        ("0:00-6:00", (0, 6)),
        ("25:00 - 08:00", None),
        ("22:30 - 08:00", None),
        ("evening", None),
    ])
    def test_quiet_hours(self, value, expected):
        assert parse_quiet_hours(value) == expected


class TestBuildProactiveConfig:
    def test_defaults(self):
        config = build_proactive_config({})
        assert config.proactivity_level == "low"
        assert config.quiet_hours_start == 22
        assert config.quiet_hours_end == 8
        assert config.timezone == "UTC"

    def test_values(self):
        config = build_proactive_config({
            "proactivity_level": "high",
            "quiet_hours": "23:00 - 07:00",
            "max_spontaneous_per_hour": "3",
            "tick_interval": 300,
            "timezone": "Europe/Madrid",
            "morning_greeting": [7, 9],
            "language": "es",
        })
        assert config.proactivity_level == "high"
        assert (config.quiet_hours_start, config.quiet_hours_end) == (23, 7)
        assert config.max_spontaneous_per_hour == 3
        assert config.tick_interval == 300.0
        assert config.circuit_breaker_cooldown == 3000.0
        assert config.timezone == "Europe/Madrid"
        assert config.morning_greeting == (7, 9)
        assert config.language == "es"

    def test_invalid_values_fall_back(self):
        config = build_proactive_config({
            "quiet_hours": "whenever",
            "max_spontaneous_per_day": "lots",
            "quiet_hours_end": 30,
            "evening_greeting": "late",
        })
        assert (config.quiet_hours_start, config.quiet_hours_end) == (22, 8)
        assert config.max_spontaneous_per_day == 8
        assert config.evening_greeting == (18, 19)

    def test_invalid_timezone_falls_back_to_utc(self):
        assert build_proactive_config({"timezone": "Mars/Olympus"}).timezone == "UTC"


class TestLoadConfig:
    def test_toml_file(self, tmp_path, monkeypatch):
        monkeypatch.delenv("KAIROS_PROACTIVE_TIMEZONE", raising=False)
        path = tmp_path / "kairos.toml"
        path.write_text(
            "[redis]\n"
            'host = "redis.local"\n'
            "[ntfy]\n"
            'topic = "kairos-phone"\n'
            "[state]\n"
            'backend = "memory"\n'
            "[proactive]\n"
            'proactivity_level = "medium"\n'
            'timezone = "America/New_York"\n'
            "unknown_key = 1\n"
        )
        config = load_config(path)
        assert config.redis.host == "redis.local"
        assert config.ntfy.topic == "kairos-phone"
        assert config.state.backend == "memory"
        assert config.proactive.proactivity_level == "medium"
        assert config.proactive.timezone == "America/New_York"

    def test_missing_file_uses_defaults(self, tmp_path):
        config = load_config(tmp_path / "absent.toml")
        assert config.redis.port == 6379
        assert config.proactive.proactivity_level == "low"

    def test_env_overrides(self, tmp_path, monkeypatch):
        path = tmp_path / "kairos.toml"
        path.write_text('[proactive]\nproactivity_level = "low"\n')
        monkeypatch.setenv("KAIROS_PROACTIVE_PROACTIVITY_LEVEL", "high")
        monkeypatch.setenv("KAIROS_PROACTIVE_TIMEZONE", "Europe/Madrid")
        monkeypatch.setenv("KAIROS_REDIS_PORT", "6380")
        monkeypatch.setenv("KAIROS_MQTT_PORT", "not-a-port")

        config = load_config(path)

        assert config.proactive.proactivity_level == "high"
        assert config.proactive.timezone == "Europe/Madrid"
        assert config.redis.port == 6380
        assert config.mqtt.port == 1883

    def test_broken_toml(self, tmp_path):
        path = tmp_path / "kairos.toml"
        path.write_text("[redis\nhost=")
        assert load_config(path).redis.host == "localhost"
