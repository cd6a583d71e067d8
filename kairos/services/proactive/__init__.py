"""Proactive control system: reminder scheduler and spontaneous loop."""

from .service import (
    ProactiveService,
    initialize,
    get_service,
    start_reminder_scheduler,
    stop_reminder_scheduler,
    start_spontaneous_loop,
    stop_spontaneous_loop,
    set_brain_processing,
)

__all__ = [
    "ProactiveService",
    "initialize",
    "get_service",
    "start_reminder_scheduler",
    "stop_reminder_scheduler",
    "start_spontaneous_loop",
    "stop_spontaneous_loop",
    "set_brain_processing",
]
