"""
Ntfy notification sink.
Pushes proactive messages to a phone through an ntfy topic.
"""

import asyncio
import logging
from typing import TYPE_CHECKING, Optional

import aiohttp

if TYPE_CHECKING:
    from kairos.services.proactive.types import NotificationMetadata

logger = logging.getLogger(__name__)

# ntfy priorities: 1 (min) .. 5 (max)
NTFY_PRIORITY = {
    "low": 2,
    "normal": 3,
    "high": 4,
}


class NotificationError(Exception):
    """Base exception for notification sinks"""
    pass


class NtfyError(NotificationError):
    """Raised when the ntfy API returns an error"""
    pass


class NtfySink:
    """Notification sink backed by an ntfy topic."""

    channel = "ntfy"

    def __init__(self, server: str, topic: str, title: str = "Kairos"):
        """
        Args:
            server: ntfy server base URL (e.g., https://ntfy.sh)
            topic: Topic name. An empty topic disables the sink.
            title: Default notification title
        """
        self.topic_url = f"{server.rstrip('/')}/{topic}" if topic else None
        self.title = title
        self.http_session: Optional[aiohttp.ClientSession] = None

    async def start(self):
        """Open the HTTP session."""
        if self.http_session is None:
            self.http_session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=10, connect=5),
            )
        if not self.topic_url:
            logger.warning("No ntfy topic configured, ntfy sink disabled")

    async def close(self):
        if self.http_session:
            await self.http_session.close()
            self.http_session = None

    def is_available(self) -> bool:
        return bool(self.topic_url) and self.http_session is not None

    async def send(self, user_id: str, message: str, metadata: "NotificationMetadata") -> bool:
        """
        Send one notification.

        Returns:
            bool: True if ntfy accepted it

        Raises:
            NtfyError: If the request fails or ntfy answers with an error
        """
        if not self.is_available():
            raise NtfyError("HTTP session or ntfy topic URL not initialized")

        headers = {
            "Title": "Reminder" if metadata.type == "reminder" else self.title,
            "Priority": str(NTFY_PRIORITY.get(metadata.priority, 3)),
            "Content-Type": "text/plain; charset=utf-8",
            "Tags": "bell,reminder" if metadata.type == "reminder" else "speech_balloon",
        }

        try:
            async with self.http_session.post(
                self.topic_url,
                data=message.encode("utf-8"),
                headers=headers,
            ) as response:
                if response.status == 200:
                    logger.info(f"Notification sent via ntfy (type={metadata.type})")
                    return True
                error_text = await response.text()
                raise NtfyError(f"ntfy API error {response.status}: {error_text}")

        except aiohttp.ClientError as e:
            raise NtfyError(f"HTTP request failed: {e}") from e
        except asyncio.TimeoutError as e:
            raise NtfyError("ntfy request timeout") from e
