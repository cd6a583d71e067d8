"""Notification sinks and routing for proactive messages."""

from .engine import NotificationError, NtfyError, NtfySink
from .router import ChatSink, MessageRouter, NotificationSink

__all__ = [
    "NotificationError",
    "NtfyError",
    "NtfySink",
    "ChatSink",
    "MessageRouter",
    "NotificationSink",
]
