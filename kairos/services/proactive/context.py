"""
Context builder for spontaneous messages.

Builds the snapshot the decision collaborator sees and the prompt it gets.
The snapshot is informational: the gates in policy.py are enforced in code
whatever the collaborator answers.
"""
import logging
from datetime import datetime
from typing import List, Optional, Protocol, Sequence

import aiohttp

from kairos.common.clock import (
    hours_since,
    is_within_quiet_hours,
    local_date_str,
    local_hour,
    local_time_str,
    minutes_since,
    weekday_name,
)
from kairos.config.models import ProactiveConfig
from .policy import evaluate_budget, greeting_already_sent, greeting_window, user_zone
from .types import ProactiveState, SpontaneousContext

logger = logging.getLogger(__name__)

MAX_RELEVANT_FACTS = 5


class FactsProvider(Protocol):
    async def get_facts(self, limit: int = MAX_RELEVANT_FACTS) -> List[str]: ...


class MemoryFactsProvider:
    """Pulls facts about the user from the memory service's /recall endpoint."""

    def __init__(self, host: str = "localhost", port: int = 8001, query: str = "facts about the user"):
        self.recall_url = f"http://{host}:{port}/recall"
        self.query = query
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=5))
        return self._session

    async def close(self):
        if self._session and not self._session.closed:
            await self._session.close()

    async def get_facts(self, limit: int = MAX_RELEVANT_FACTS) -> List[str]:
        """Best effort: any failure yields no facts."""
        try:
            session = await self._get_session()
            async with session.post(
                self.recall_url,
                json={"query": self.query, "limit": limit},
            ) as response:
                if response.status != 200:
                    logger.warning(f"Memory recall returned status {response.status}")
                    return []
                data = await response.json()
        except Exception as e:
            logger.warning(f"Memory recall failed: {e}")
            return []

        facts = []
        for memory in data.get("memories", []):
            interaction = memory.get("interaction") or {}
            text = memory.get("text") or interaction.get("user_msg")
            if text:
                facts.append(str(text))
        return facts[:limit]


def build_spontaneous_context(
    state: ProactiveState,
    config: ProactiveConfig,
    now: datetime,
    facts: Sequence[str] = (),
) -> SpontaneousContext:
    tz = user_zone(config.timezone)
    budget = evaluate_budget(state, config, now)
    window = greeting_window(budget.hour, config)

    context = SpontaneousContext(
        current_time=local_time_str(now, tz),
        current_day=weekday_name(now, tz),
        current_date=local_date_str(now, tz),
        minutes_since_last_user_message=minutes_since(state.last_user_message_at, now),
        hours_since_last_user_activity=hours_since(state.last_user_activity_at, now),
        is_quiet_hours=is_within_quiet_hours(
            local_hour(now, tz), config.quiet_hours_start, config.quiet_hours_end
        ),
        greeting_window=window,
        greeting_already_sent=greeting_already_sent(state, window, budget.today),
        remaining_today=budget.remaining_today,
        remaining_this_hour=budget.remaining_this_hour,
        cooldown_active=budget.cooldown_active,
        relevant_facts=list(facts)[:MAX_RELEVANT_FACTS],
        proactivity_level=config.proactivity_level,
        language=config.language,
    )

    logger.debug(
        f"Built spontaneous context: time={context.current_time} day={context.current_day} "
        f"window={window.value if window else None} greeted={context.greeting_already_sent} "
        f"remaining={context.remaining_today}/{context.remaining_this_hour} "
        f"facts={len(context.relevant_facts)}"
    )
    return context


def build_decision_prompt(context: SpontaneousContext) -> str:
    """Prompt asking the collaborator whether to say something now."""
    lines = [
        "You are an AI companion deciding whether to send the user a spontaneous message.",
        "",
        "## Current Context",
        f"- Time: {context.current_time}",
        f"- Day: {context.current_day}",
        f"- Date: {context.current_date}",
        "",
        "## User Activity",
    ]

    if context.minutes_since_last_user_message is not None:
        lines.append(f"- Last user message: {context.minutes_since_last_user_message} minutes ago")
    else:
        lines.append("- The user has not sent any message yet")
    if context.hours_since_last_user_activity is not None:
        lines.append(f"- Last activity: {context.hours_since_last_user_activity} hours ago")

    lines += [
        "",
        "## Constraints",
        f"- Spontaneous messages left today: {context.remaining_today}",
        f"- Spontaneous messages left this hour: {context.remaining_this_hour}",
        f"- Configured proactivity level: {context.proactivity_level}",
    ]
    if context.is_quiet_hours:
        lines.append("- QUIET HOURS: do NOT send spontaneous messages")
    if context.cooldown_active:
        lines.append("- Cooldown active: do NOT send messages")

    if context.greeting_window:
        window = context.greeting_window.value
        lines += ["", f"## Greeting Window: {window}"]
        if context.greeting_already_sent:
            lines.append(f"- You already sent a {window} greeting today, do NOT repeat it")
        else:
            lines.append(f"- You may send a {window} greeting if it fits")

    if context.relevant_facts:
        lines += ["", "## Known Facts About the User"]
        lines += [f"- {fact}" for fact in context.relevant_facts]

    lines += [
        "",
        "## Your Decision",
        "Decide whether to send a message now. Consider:",
        "1. Is this a good moment (time of day, day of week)?",
        "2. Do you have something useful or relevant to say?",
        "3. Is it too soon since the last message?",
        "4. Does the user seem busy or away?",
        "",
        "IMPORTANT: staying silent is better than bothering the user for no reason.",
        "Never create or announce reminders here; reminders are handled elsewhere.",
        f"Write the message in this language: {context.language}",
        "",
        "Answer with exactly this JSON format:",
        "{",
        '  "shouldSpeak": true/false,',
        '  "reason": "short explanation of your decision",',
        '  "messageType": "greeting" | "checkin" | "contextual" | "none",',
        '  "message": "the message to send (only if shouldSpeak is true)"',
        "}",
    ]
    return "\n".join(lines)
