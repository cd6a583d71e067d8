"""Base class for Kairos services.

Provides:
- MQTT client lifecycle (connect, reconnect with backoff, graceful disconnect)
- FastAPI HTTP server with /health endpoint
- Structured logging
- Graceful shutdown on SIGTERM/SIGINT
- Central config loading
"""

import asyncio
import json
import signal
from contextlib import asynccontextmanager
from typing import Any, Awaitable, Callable, Dict, List, Optional

import uvicorn
from aiomqtt import Client as MQTTClient, MqttError
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from kairos.config import KairosConfig, get_config
from kairos.common.logging import setup_logging


class KairosService:
    """Base class for Kairos services."""

    def __init__(self, name: str, http_port: Optional[int] = None, config: Optional[KairosConfig] = None):
        self.name = name
        self.http_port = http_port
        self.config: KairosConfig = config or get_config()
        self.logger = setup_logging(
            name,
            level=self.config.service.log_level,
            json_output=self.config.service.json_logs,
        )
        self._mqtt_client: Optional[MQTTClient] = None
        self._running = False
        self._tasks: List[asyncio.Task] = []
        self._mqtt_handlers: Dict[str, Callable] = {}
        self._app: Optional[FastAPI] = None

    # --- MQTT ---

    def on_mqtt(self, topic: str):
        """Decorator to register an MQTT topic handler."""
        def decorator(func: Callable[[str, bytes], Awaitable[None]]):
            self._mqtt_handlers[topic] = func
            return func
        return decorator

    @property
    def mqtt_connected(self) -> bool:
        return self._mqtt_client is not None

    async def mqtt_publish(self, topic: str, payload: Any):
        """Publish a message to an MQTT topic.

        Raises:
            MqttError: if the client is not connected or the publish fails.
        """
        if self._mqtt_client is None:
            raise MqttError(f"MQTT not connected, cannot publish to {topic}")
        if isinstance(payload, dict):
            payload = json.dumps(payload)
        if isinstance(payload, str):
            payload = payload.encode()
        await self._mqtt_client.publish(topic, payload)

    async def dispatch_mqtt(self, topic: str, payload: bytes):
        """Route one message to every matching handler."""
        for pattern, handler in self._mqtt_handlers.items():
            if _topic_matches(topic, pattern):
                try:
                    await handler(topic, payload)
                except Exception as e:
                    self.logger.error(f"Handler error for {topic}: {e}", exc_info=True, extra={"topic": topic})

    async def _mqtt_loop(self):
        """Main MQTT connection loop with auto-reconnect and exponential backoff."""
        cfg = self.config.mqtt
        reconnect_delay = 1
        max_delay = 60
        while self._running:
            try:
                async with MQTTClient(
                    hostname=cfg.broker,
                    port=cfg.port,
                    username=cfg.username or None,
                    password=cfg.password or None,
                    identifier=f"kairos-{self.name}",
                ) as client:
                    self._mqtt_client = client
                    self.logger.info(f"MQTT connected to {cfg.broker}:{cfg.port}")
                    reconnect_delay = 1

                    for topic in self._mqtt_handlers:
                        await client.subscribe(topic)
                        self.logger.debug(f"Subscribed to {topic}")

                    async for message in client.messages:
                        await self.dispatch_mqtt(str(message.topic), message.payload)

            except MqttError as e:
                self._mqtt_client = None
                if self._running:
                    self.logger.warning(f"MQTT disconnected: {e}, reconnecting in {reconnect_delay}s...")
                    await asyncio.sleep(reconnect_delay)
                    reconnect_delay = min(reconnect_delay * 2, max_delay)
            except Exception as e:
                self._mqtt_client = None
                if self._running:
                    self.logger.error(f"MQTT error: {e}, reconnecting in {reconnect_delay}s...", exc_info=True)
                    await asyncio.sleep(reconnect_delay)
                    reconnect_delay = min(reconnect_delay * 2, max_delay)

    # --- HTTP ---

    def health(self) -> Dict[str, Any]:
        """Override to add service-specific health fields."""
        return {
            "service": self.name,
            "status": "healthy",
            "mqtt_connected": self.mqtt_connected,
        }

    def get_app(self) -> FastAPI:
        """Get or create the FastAPI app."""
        if self._app is None:
            @asynccontextmanager
            async def lifespan(app):
                yield

            self._app = FastAPI(
                title=f"Kairos - {self.name.title()} Service",
                lifespan=lifespan,
            )
            self._app.add_middleware(
                CORSMiddleware,
                allow_origins=["*"],
                allow_methods=["*"],
                allow_headers=["*"],
            )

            @self._app.get("/health")
            async def health():
                return self.health()
        return self._app

    async def _run_http(self):
        """Run the FastAPI HTTP server."""
        app = self.get_app()
        config = uvicorn.Config(
            app,
            host="0.0.0.0",
            port=self.http_port,
            log_level="warning",
        )
        server = uvicorn.Server(config)
        await server.serve()

    # --- Lifecycle ---

    async def setup(self):
        """Override in subclass for service-specific initialization."""
        pass

    async def teardown(self):
        """Override in subclass for service-specific cleanup."""
        pass

    async def run(self):
        """Main entry point. Starts MQTT, HTTP, and runs until shutdown."""
        self._running = True
        self.logger.info(f"Starting {self.name} service...")

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, lambda: asyncio.create_task(self.shutdown()))

        await self.setup()

        self._tasks.append(asyncio.create_task(self._mqtt_loop()))
        if self.http_port:
            self._tasks.append(asyncio.create_task(self._run_http()))

        self.logger.info(f"{self.name} service started")

        try:
            await asyncio.gather(*self._tasks)
        except asyncio.CancelledError:
            pass
        finally:
            await self.teardown()
            self.logger.info(f"{self.name} service stopped")

    async def shutdown(self):
        """Graceful shutdown."""
        self.logger.info(f"Shutting down {self.name}...")
        self._running = False
        for task in self._tasks:
            task.cancel()


def _topic_matches(actual: str, pattern: str) -> bool:
    """MQTT topic pattern matching with + and # wildcards."""
    if pattern == actual:
        return True
    pattern_parts = pattern.split("/")
    actual_parts = actual.split("/")
    for i, p in enumerate(pattern_parts):
        if p == "#":
            return True
        if i >= len(actual_parts):
            return False
        if p != "+" and p != actual_parts[i]:
            return False
    return len(pattern_parts) == len(actual_parts)
