"""
Message router for proactive notifications.

Routing policy:
- reminders go to every available sink whose preference is "all" or
  "reminders-only";
- spontaneous messages go only to the primary channel, and only when its
  preference is "all".
"""

import logging
import time
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, List, Optional, Protocol

from kairos.common.errors import DeliveryFailure
from kairos.common.mqtt_topics import CHAT_OUTPUT
from .engine import NotificationError

if TYPE_CHECKING:
    from kairos.services.proactive.types import NotificationMetadata

logger = logging.getLogger(__name__)

CHANNEL_PREFERENCES = ("all", "reminders-only", "none")


class NotificationSink(Protocol):
    channel: str

    def is_available(self) -> bool: ...

    async def send(self, user_id: str, message: str, metadata: "NotificationMetadata") -> bool: ...


class ChatSink:
    """Publishes proactive messages to the chat output topic."""

    channel = "chat"

    def __init__(
        self,
        publish: Callable[[str, Dict[str, Any]], Awaitable[None]],
        is_connected: Callable[[], bool],
    ):
        self._publish = publish
        self._is_connected = is_connected

    def is_available(self) -> bool:
        return self._is_connected()

    async def send(self, user_id: str, message: str, metadata: "NotificationMetadata") -> bool:
        payload = {
            "text": message,
            "user": user_id,
            "conversation_id": "proactive",
            "proactive": True,
            "type": metadata.type,
            "message_type": metadata.message_type.value if metadata.message_type else None,
            "reminder_id": metadata.reminder_id,
            "priority": metadata.priority,
            "timestamp": time.time(),
        }
        try:
            await self._publish(CHAT_OUTPUT, payload)
        except Exception as e:
            raise NotificationError(f"Chat publish failed: {e}") from e
        logger.info(f"Chat message delivered: {message[:50]}...")
        return True


class MessageRouter:
    """Picks sinks for a notification and reports whether any delivered it."""

    def __init__(self, primary_channel: str = "chat", preferences: Optional[Dict[str, str]] = None):
        self.primary_channel = primary_channel
        self.preferences: Dict[str, str] = {}
        for channel, pref in (preferences or {}).items():
            self.set_preference(channel, pref)
        self._sinks: Dict[str, NotificationSink] = {}

    def set_preference(self, channel: str, preference: str):
        if preference not in CHANNEL_PREFERENCES:
            logger.warning(f"Invalid preference {preference!r} for {channel}, using 'none'")
            preference = "none"
        self.preferences[channel] = preference

    def register_sink(self, sink: NotificationSink):
        self._sinks[sink.channel] = sink
        logger.info(f"Registered notification sink: {sink.channel}")

    def active_sinks(self) -> List[str]:
        return [c for c, s in self._sinks.items() if s.is_available()]

    def sinks_for(self, metadata: "NotificationMetadata") -> List[NotificationSink]:
        if metadata.type == "reminder":
            return [
                sink for channel, sink in self._sinks.items()
                if sink.is_available()
                and self.preferences.get(channel, "none") in ("all", "reminders-only")
            ]

        if metadata.type == "spontaneous":
            primary = self._sinks.get(self.primary_channel)
            if (primary is not None and primary.is_available()
                    and self.preferences.get(self.primary_channel, "none") == "all"):
                return [primary]

        return []

    async def send_notification(self, user_id: str, message: str, metadata: "NotificationMetadata") -> bool:
        """
        Deliver through every selected sink.

        Returns:
            bool: True if at least one sink delivered; False if no sink was
                  available for this kind of message.

        Raises:
            DeliveryFailure: if sinks were selected but all of them failed.
        """
        sinks = self.sinks_for(metadata)
        if not sinks:
            logger.warning(f"No sinks available for {metadata.type} notification")
            return False

        delivered = False
        last_error: Optional[Exception] = None
        for sink in sinks:
            try:
                if await sink.send(user_id, message, metadata):
                    delivered = True
            except NotificationError as e:
                last_error = e
                logger.error(f"Error sending notification via {sink.channel}: {e}")

        if not delivered and last_error is not None:
            raise DeliveryFailure(f"All sinks failed for {metadata.type} notification") from last_error
        return delivered
