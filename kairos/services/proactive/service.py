#!/usr/bin/env python3
"""
Proactive Service - owns the proactive state store and runs both engines.

Endpoints:
- GET /health: Loop and scheduler heartbeat, error counts, MQTT/Redis status
- GET /status: Proactive state, limits and gate verdicts
- POST /quiet: Silence spontaneous messages for N minutes
- DELETE /quiet: End manual quiet mode
- POST /reminders: Create a reminder
- GET /reminders: List reminders that still have to fire
- DELETE /reminders/{id}: Cancel a reminder
- POST /activity: Record user activity

MQTT:
- chat input: records a user message
- conversation state: "processing"/"responding" hold the spontaneous loop
"""

import asyncio
import json
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

import redis.asyncio as redis
from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field, model_validator

from kairos.common.clock import ensure_aware, format_instant, utcnow
from kairos.common.errors import LockContention
from kairos.common.mqtt_topics import CHAT_INPUT, CONVERSATION_STATE
from kairos.common.service_base import KairosService
from kairos.config import KairosConfig, ProactiveConfig, get_config
from kairos.services.notifications import ChatSink, MessageRouter, NtfySink
from .context import MemoryFactsProvider
from .decider import OllamaSpeakDecider, SpeakDecider
from .policy import get_proactive_status
from .reminders import MemoryReminderStore, RedisReminderStore
from .scheduler import ReminderScheduler
from .spontaneous import SpontaneousLoop
from .state import MemoryStateBackend, ProactiveStateStore, RedisStateBackend
from .types import Reminder

BUSY_CONVERSATION_STATES = ("processing", "responding")


# Request/Response Models
class QuietRequest(BaseModel):
    """Request model for manual quiet mode."""
    minutes: int = Field(..., gt=0, le=7 * 24 * 60, description="Quiet duration in minutes")


class ReminderRequest(BaseModel):
    """Request model for creating a reminder. Give trigger_at or in_minutes."""
    message: str = Field(..., min_length=1, description="Reminder text")
    trigger_at: Optional[datetime] = Field(None, description="Absolute trigger time (naive means UTC)")
    in_minutes: Optional[float] = Field(None, gt=0, description="Trigger this many minutes from now")

    @model_validator(mode="after")
    def check_trigger(self):
        if (self.trigger_at is None) == (self.in_minutes is None):
            raise ValueError("Provide exactly one of trigger_at or in_minutes")
        return self


class ReminderResponse(BaseModel):
    """Response model for a stored reminder."""
    id: str
    message: str
    trigger_at: str
    created_at: str
    status: str
    cancelled: bool


def _reminder_response(reminder: Reminder) -> ReminderResponse:
    return ReminderResponse(
        id=reminder.id,
        message=reminder.message,
        trigger_at=format_instant(reminder.trigger_at),
        created_at=format_instant(reminder.created_at),
        status=reminder.status.value,
        cancelled=reminder.cancelled,
    )


class ProactiveService(KairosService):
    """Composition root: state store, reminder scheduler, spontaneous loop."""

    def __init__(
        self,
        config: Optional[KairosConfig] = None,
        decider: Optional[SpeakDecider] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        cfg = config or get_config()
        super().__init__(name="proactive", http_port=cfg.service.http_port, config=cfg)
        self.clock = clock

        self.redis_client: Optional[redis.Redis] = None
        if cfg.state.backend == "redis":
            self.redis_client = redis.from_url(
                f"redis://{cfg.redis.host}:{cfg.redis.port}/{cfg.redis.db}",
                decode_responses=True,
            )
            backend = RedisStateBackend(self.redis_client, cfg.state.key)
            self.reminders = RedisReminderStore(self.redis_client, cfg.state.reminder_prefix)
        else:
            self.logger.warning("Using in-memory proactive state, nothing survives a restart")
            backend = MemoryStateBackend()
            self.reminders = MemoryReminderStore()

        self.store = ProactiveStateStore(backend, clock=clock, lock_timeout=cfg.proactive.lock_timeout)

        # Notification routing
        self.router = MessageRouter(
            primary_channel=cfg.notifications.primary_channel,
            preferences={
                "chat": cfg.notifications.chat_preference,
                "ntfy": cfg.notifications.ntfy_preference,
            },
        )
        self.ntfy = NtfySink(cfg.ntfy.server, cfg.ntfy.topic)
        self.router.register_sink(ChatSink(self.mqtt_publish, lambda: self.mqtt_connected))
        self.router.register_sink(self.ntfy)

        # Decision collaborator and facts
        self.facts = MemoryFactsProvider(cfg.memory.host, cfg.memory.port, cfg.memory.recall_query)
        self.decider = decider or OllamaSpeakDecider(
            host=cfg.ollama.host,
            model=cfg.ollama.model,
            temperature=cfg.ollama.default_temperature,
            max_tokens=cfg.ollama.default_max_tokens,
        )

        self.scheduler = ReminderScheduler(
            self.store,
            self.reminders,
            self.router,
            user_id=cfg.notifications.user_id,
            tick_interval=cfg.reminders.tick_interval,
            clock=clock,
        )
        self.loop = SpontaneousLoop(
            self.store,
            self.decider,
            self.router,
            cfg.proactive,
            facts=self.facts,
            user_id=cfg.notifications.user_id,
            clock=clock,
        )

        self.on_mqtt(CHAT_INPUT)(self._on_chat_input)
        self.on_mqtt(CONVERSATION_STATE)(self._on_conversation_state)
        self._register_routes(self.get_app())

    # --- Engines ---

    async def start_reminder_scheduler(self):
        await self.scheduler.start()

    async def stop_reminder_scheduler(self):
        await self.scheduler.stop()

    async def start_spontaneous_loop(self, config: Optional[ProactiveConfig] = None):
        if config is not None:
            self.loop.config = config
        await self.loop.start()

    async def stop_spontaneous_loop(self):
        await self.loop.stop()

    def set_brain_processing(self, processing: bool):
        self.loop.set_brain_processing(processing)

    # --- Lifecycle ---

    async def setup(self):
        """Service-specific initialization"""
        if self.redis_client is not None:
            try:
                await self.redis_client.ping()
                self.logger.info(f"✓ Connected to Redis at {self.config.redis.host}:{self.config.redis.port}")
            except redis.ConnectionError as e:
                self.logger.error(f"Failed to connect to Redis: {e}")
                raise

        await self.ntfy.start()
        await self.start_reminder_scheduler()
        await self.start_spontaneous_loop()
        self.logger.info("Proactive engines started")

    async def teardown(self):
        """Service-specific cleanup"""
        await self.stop_spontaneous_loop()
        await self.stop_reminder_scheduler()
        await self.ntfy.close()
        await self.facts.close()
        if isinstance(self.decider, OllamaSpeakDecider):
            await self.decider.close()
        if self.redis_client is not None:
            await self.redis_client.aclose()
            self.logger.info("Redis connection closed")

    # --- MQTT handlers ---

    async def _on_chat_input(self, topic: str, payload: bytes):
        """Any user chat message counts as activity."""
        await self.store.record_user_message()

    async def _on_conversation_state(self, topic: str, payload: bytes):
        text = payload.decode(errors="replace").strip()
        try:
            data = json.loads(text)
        except json.JSONDecodeError:
            data = text
        conversation_state = data.get("state", "") if isinstance(data, dict) else str(data)
        busy = str(conversation_state).lower() in BUSY_CONVERSATION_STATES
        if busy != self.loop.brain_processing:
            self.logger.debug(f"Brain processing: {busy}", extra={"topic": topic})
        self.set_brain_processing(busy)

    # --- HTTP ---

    def health(self) -> Dict[str, Any]:
        base = super().health()
        loop_errors = self.loop.consecutive_errors
        scheduler_errors = self.scheduler.consecutive_errors
        if loop_errors >= 5 or scheduler_errors >= 5:
            base["status"] = "degraded"
        base.update({
            "redis_configured": self.redis_client is not None,
            "spontaneous_loop": {
                "running": self.loop.is_running,
                "last_tick_at": format_instant(self.loop.last_tick_at),
                "last_outcome": self.loop.last_outcome,
                "consecutive_errors": loop_errors,
                "messages_sent": self.loop.messages_sent,
                "brain_processing": self.loop.brain_processing,
            },
            "reminder_scheduler": {
                "running": self.scheduler.is_running,
                "last_tick_at": format_instant(self.scheduler.last_tick_at),
                "consecutive_errors": scheduler_errors,
                "delivered_total": self.scheduler.delivered_total,
            },
            "active_sinks": self.router.active_sinks(),
        })
        return base

    def _register_routes(self, app: FastAPI):
        """Register all FastAPI routes."""

        @app.get("/status")
        async def status():
            state = await self.store.load()
            return get_proactive_status(state, self.loop.config, self.clock())

        @app.post("/quiet")
        async def enable_quiet(request: QuietRequest):
            try:
                until = await self.store.enable_quiet_mode(request.minutes * 60)
            except LockContention as e:
                raise HTTPException(status_code=503, detail=str(e))
            return {"status": "quiet", "until": format_instant(until)}

        @app.delete("/quiet")
        async def disable_quiet():
            try:
                await self.store.disable_quiet_mode()
            except LockContention as e:
                raise HTTPException(status_code=503, detail=str(e))
            return {"status": "active"}

        @app.post("/reminders", response_model=ReminderResponse)
        async def create_reminder(request: ReminderRequest):
            if request.trigger_at is not None:
                trigger_at = ensure_aware(request.trigger_at)
            else:
                trigger_at = self.clock() + timedelta(minutes=request.in_minutes)
            reminder = await self.reminders.create(request.message, trigger_at)
            return _reminder_response(reminder)

        @app.get("/reminders", response_model=List[ReminderResponse])
        async def list_reminders():
            pending = await self.reminders.list_pending()
            attempting = await self.reminders.list_attempting()
            reminders = sorted(pending + attempting, key=lambda r: r.trigger_at)
            return [_reminder_response(r) for r in reminders]

        @app.delete("/reminders/{reminder_id}")
        async def cancel_reminder(reminder_id: str):
            if not await self.reminders.cancel(reminder_id):
                raise HTTPException(status_code=404, detail="Reminder not found")
            return {"status": "cancelled", "id": reminder_id}

        @app.post("/activity")
        async def record_activity():
            await self.store.record_user_activity()
            return {"status": "recorded"}


# Global service instance
_service: Optional[ProactiveService] = None


def initialize(config: Optional[KairosConfig] = None, **kwargs) -> ProactiveService:
    """Create the process-wide proactive service."""
    global _service
    _service = ProactiveService(config=config, **kwargs)
    return _service


def get_service() -> ProactiveService:
    if _service is None:
        raise RuntimeError("Proactive service not initialized. Call initialize() first.")
    return _service


async def start_reminder_scheduler():
    await get_service().start_reminder_scheduler()


async def stop_reminder_scheduler():
    await get_service().stop_reminder_scheduler()


async def start_spontaneous_loop(config: Optional[ProactiveConfig] = None):
    await get_service().start_spontaneous_loop(config)


async def stop_spontaneous_loop():
    await get_service().stop_spontaneous_loop()


def set_brain_processing(processing: bool):
    get_service().set_brain_processing(processing)


if __name__ == "__main__":
    asyncio.run(initialize().run())
