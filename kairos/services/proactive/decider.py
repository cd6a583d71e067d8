"""
Decision collaborator: "should I say something now?"

The loop only depends on the SpeakDecider protocol. OllamaSpeakDecider asks
a local Ollama model; tests use a fake.
"""
import json
import logging
import re
from typing import Optional, Protocol

import aiohttp

from .context import build_decision_prompt
from .types import MessageType, SpontaneousContext, SpontaneousDecision

logger = logging.getLogger(__name__)

_JSON_OBJECT_RE = re.compile(r"\{[\s\S]*\}")

# The collaborator may not produce reminders
_SPONTANEOUS_TYPES = {
    MessageType.GREETING.value: MessageType.GREETING,
    MessageType.CHECKIN.value: MessageType.CHECKIN,
    MessageType.CONTEXTUAL.value: MessageType.CONTEXTUAL,
}


class SpeakDecider(Protocol):
    async def decide(self, context: SpontaneousContext) -> SpontaneousDecision: ...


def parse_decision(response: str) -> Optional[SpontaneousDecision]:
    """
    Extract a decision from model output.

    Returns:
        The decision, or None if no valid JSON object with a boolean
        "shouldSpeak" can be found.
    """
    match = _JSON_OBJECT_RE.search(response or "")
    if not match:
        logger.warning("No JSON found in decision response")
        return None

    try:
        parsed = json.loads(match.group(0))
    except json.JSONDecodeError as e:
        logger.warning(f"Failed to parse decision JSON: {e}")
        return None

    if not isinstance(parsed, dict) or not isinstance(parsed.get("shouldSpeak"), bool):
        logger.warning("Invalid shouldSpeak in decision")
        return None

    reason = parsed.get("reason")
    message = parsed.get("message")
    return SpontaneousDecision(
        should_speak=parsed["shouldSpeak"],
        reason=reason if isinstance(reason, str) else "unknown",
        message_type=_SPONTANEOUS_TYPES.get(parsed.get("messageType"), MessageType.NONE),
        message=message if isinstance(message, str) else None,
    )


class OllamaSpeakDecider:
    """SpeakDecider backed by Ollama's /api/generate."""

    def __init__(
        self,
        host: str = "http://localhost:11434",
        model: str = "llama3.2:3b",
        temperature: float = 0.4,
        max_tokens: int = 300,
    ):
        self.host = host.rstrip('/')
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        return self._session

    async def close(self):
        if self._session and not self._session.closed:
            await self._session.close()

    async def decide(self, context: SpontaneousContext) -> SpontaneousDecision:
        """Ask the model. Transport errors and bad output mean "stay silent"."""
        session = await self._get_session()
        payload = {
            "model": self.model,
            "prompt": build_decision_prompt(context),
            "stream": False,
            "think": False,
            "format": "json",
            "options": {
                "temperature": self.temperature,
                "num_predict": self.max_tokens,
            },
        }

        try:
            async with session.post(f"{self.host}/api/generate", json=payload) as response:
                if response.status != 200:
                    text = await response.text()
                    logger.error(f"Ollama error {response.status}: {text}")
                    return SpontaneousDecision.silent("llm_error")
                data = await response.json()
        except aiohttp.ClientError as e:
            logger.error(f"Ollama request failed: {e}")
            return SpontaneousDecision.silent("llm_error")

        decision = parse_decision(data.get("response", ""))
        if decision is None:
            return SpontaneousDecision.silent("unparseable_decision")
        return decision
