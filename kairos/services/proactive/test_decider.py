"""Tests for the decision collaborator, its prompt and the context builder."""

import json
import logging
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import aiohttp
import pytest

from kairos.config.models import ProactiveConfig
from kairos.services.proactive.context import (
    MemoryFactsProvider,
    build_decision_prompt,
    build_spontaneous_context,
)
from kairos.services.proactive.decider import OllamaSpeakDecider, parse_decision
from kairos.services.proactive.types import GreetingWindow, MessageType, ProactiveState

logging.disable(logging.CRITICAL)

NOW = datetime(2026, 3, 2, 8, 45, tzinfo=timezone.utc)
CONFIG = ProactiveConfig(proactivity_level="medium", language="es")


def mock_session(status=200, body=None, error=None):
    response = MagicMock()
    response.status = status
    response.json = AsyncMock(return_value=body or {})
    response.text = AsyncMock(return_value="boom")

    session = MagicMock()
    session.closed = False
    if error is not None:
        session.post.side_effect = error
    else:
        session.post.return_value.__aenter__.return_value = response
        session.post.return_value.__aexit__.return_value = False
    return session


class TestParseDecision:
    def test_plain_json(self):
        decision = parse_decision(json.dumps({
            "shouldSpeak": True,
            "reason": "morning",
            "messageType": "greeting",
            "message": "Buenos días",
        }))
        assert decision.should_speak
        assert decision.message_type == MessageType.GREETING
        assert decision.message == "Buenos días"

    def test_json_wrapped_in_prose(self):
        decision = parse_decision('Sure! {"shouldSpeak": false, "reason": "late"} hope that helps')
        assert decision.should_speak is False
        assert decision.reason == "late"
        assert decision.message_type == MessageType.NONE

    @pytest.mark.parametrize("response", [
        "",
        "no json here",
        "{broken json",
        '{"shouldSpeak": "yes"}',
        '{"reason": "missing flag"}',
    ])
    def test_invalid(self, response):
        assert parse_decision(response) is None

    def test_reminder_type_not_accepted(self):
        decision = parse_decision('{"shouldSpeak": true, "messageType": "reminder", "message": "pills"}')
        assert decision.message_type == MessageType.NONE

    def test_non_string_fields(self):
        decision = parse_decision('{"shouldSpeak": true, "reason": 3, "messageType": "checkin", "message": 7}')
        assert decision.reason == "unknown"
        assert decision.message is None


class TestOllamaSpeakDecider:
    def _context(self):
        return build_spontaneous_context(ProactiveState(), CONFIG, NOW)

    @pytest.mark.asyncio
    async def test_decide(self):
        decider = OllamaSpeakDecider(host="http://ollama:11434/", model="tiny")
        body = {"response": '{"shouldSpeak": true, "reason": "r", "messageType": "checkin", "message": "¿Qué tal?"}'}
        decider._session = mock_session(body=body)

        decision = await decider.decide(self._context())

        assert decision.should_speak
        assert decision.message == "¿Qué tal?"
        url = decider._session.post.call_args.args[0]
        payload = decider._session.post.call_args.kwargs["json"]
        assert url == "http://ollama:11434/api/generate"
        assert payload["model"] == "tiny"
        assert payload["stream"] is False
        assert payload["format"] == "json"
        assert "shouldSpeak" in payload["prompt"]

    @pytest.mark.asyncio
    async def test_http_error_is_silent(self):
        decider = OllamaSpeakDecider()
        decider._session = mock_session(status=500)
        decision = await decider.decide(self._context())
        assert not decision.should_speak
        assert decision.reason == "llm_error"

    @pytest.mark.asyncio
    async def test_connection_error_is_silent(self):
        decider = OllamaSpeakDecider()
        decider._session = mock_session(error=aiohttp.ClientConnectionError("refused"))
        decision = await decider.decide(self._context())
        assert decision.reason == "llm_error"

    @pytest.mark.asyncio
    async def test_unparseable_is_silent(self):
        decider = OllamaSpeakDecider()
        decider._session = mock_session(body={"response": "I think I should say hi"})
        decision = await decider.decide(self._context())
        assert decision.reason == "unparseable_decision"


class TestContext:
    def test_snapshot(self):
        state = ProactiveState(
            last_user_message_at=NOW - timedelta(minutes=42),
            last_user_activity_at=NOW - timedelta(hours=3, minutes=10),
            spontaneous_count_today=2,
            date_of_last_daily_count="2026-03-02",
            last_greeting_type=GreetingWindow.MORNING,
            last_greeting_date="2026-03-02",
        )
        context = build_spontaneous_context(state, CONFIG, NOW, facts=[f"fact {i}" for i in range(8)])

        assert context.current_time == "08:45"
        assert context.current_day == "Monday"
        assert context.current_date == "2026-03-02"
        assert context.minutes_since_last_user_message == 42
        assert context.hours_since_last_user_activity == 3
        assert context.greeting_window == GreetingWindow.MORNING
        assert context.greeting_already_sent
        assert context.remaining_today == 6
        assert not context.is_quiet_hours
        assert len(context.relevant_facts) == 5
        assert context.language == "es"

    def test_prompt(self):
        context = build_spontaneous_context(ProactiveState(), CONFIG, NOW, facts=["likes climbing"])
        prompt = build_decision_prompt(context)
        assert "The user has not sent any message yet" in prompt
        assert "## Greeting Window: morning" in prompt
        assert "- likes climbing" in prompt
        assert "Write the message in this language: es" in prompt
        assert '"shouldSpeak": true/false' in prompt
        assert "QUIET HOURS" not in prompt

    def test_prompt_quiet_and_greeted(self):
        context = build_spontaneous_context(ProactiveState(), CONFIG, NOW)
        context.is_quiet_hours = True
        context.greeting_already_sent = True
        prompt = build_decision_prompt(context)
        assert "QUIET HOURS" in prompt
        assert "do NOT repeat it" in prompt


class TestMemoryFactsProvider:
    @pytest.mark.asyncio
    async def test_recall(self):
        provider = MemoryFactsProvider("memory", 8001, "about the user")
        provider._session = mock_session(body={"memories": [
            {"text": "has a dog named Rex"},
            {"interaction": {"user_msg": "I start a new job on Monday"}},
            {"interaction": None},
        ]})

        facts = await provider.get_facts(limit=5)

        assert facts == ["has a dog named Rex", "I start a new job on Monday"]
        assert provider._session.post.call_args.args[0] == "http://memory:8001/recall"
        assert provider._session.post.call_args.kwargs["json"] == {"query": "about the user", "limit": 5}

    @pytest.mark.asyncio
    async def test_failure_yields_no_facts(self):
        provider = MemoryFactsProvider()
        provider._session = mock_session(error=aiohttp.ClientConnectionError("down"))
        assert await provider.get_facts() == []

        provider._session = mock_session(status=503)
        assert await provider.get_facts() == []
