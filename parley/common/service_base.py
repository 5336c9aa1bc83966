"""Base class for Parley services.

A service owns one MQTT connection and, optionally, one HTTP server. Topic
handlers are registered with ``on_mqtt`` and dispatched from a single message
loop; synchronous code on the loop publishes through ``publish_soon``. The
connection is re-established with capped exponential backoff until the
service shuts down.
"""

import asyncio
import json
import signal
from typing import Optional, Dict, Any, List, Callable, Awaitable, Set

import uvicorn
from aiomqtt import Client as MQTTClient, MqttError
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from parley.config import get_config, ParleyConfig
from parley.common.logging import setup_logging

MqttHandler = Callable[[str, bytes], Awaitable[None]]


def topic_matches(actual: str, pattern: str) -> bool:
    """MQTT topic filter matching with + and # wildcards."""
    if pattern == actual:
        return True
    pattern_parts = pattern.split("/")
    actual_parts = actual.split("/")
    for i, part in enumerate(pattern_parts):
        if part == "#":
            return True
        if i >= len(actual_parts):
            return False
        if part != "+" and part != actual_parts[i]:
            return False
    return len(pattern_parts) == len(actual_parts)


def encode_payload(payload: Any) -> bytes:
    if isinstance(payload, (dict, list)):
        payload = json.dumps(payload)
    if isinstance(payload, str):
        payload = payload.encode()
    return payload


class ParleyService:
    """MQTT + HTTP host for one Parley component."""

    def __init__(self, name: str, config: Optional[ParleyConfig] = None, http_port: Optional[int] = None):
        self.name = name
        self.config: ParleyConfig = config or get_config()
        self.http_port = http_port
        self.logger = setup_logging(name)
        self.dropped_publishes = 0
        self._mqtt_client: Optional[MQTTClient] = None
        self._running = False
        self._tasks: List[asyncio.Task] = []
        self._publish_tasks: Set[asyncio.Task] = set()
        self._mqtt_handlers: Dict[str, MqttHandler] = {}
        self._app: Optional[FastAPI] = None

    # --- MQTT ---

    def on_mqtt(self, topic: str):
        """Decorator registering a handler for a topic filter."""
        def decorator(func: MqttHandler):
            self._mqtt_handlers[topic] = func
            return func
        return decorator

    @property
    def mqtt_connected(self) -> bool:
        return self._mqtt_client is not None

    async def mqtt_publish(self, topic: str, payload: Any):
        if self._mqtt_client is None:
            self.dropped_publishes += 1
            self.logger.warning(f"MQTT not connected, dropped message for {topic}")
            return
        await self._mqtt_client.publish(topic, encode_payload(payload))

    def publish_soon(self, topic: str, payload: Any) -> None:
        """Publish from synchronous code running on the event loop."""
        task = asyncio.get_running_loop().create_task(self.mqtt_publish(topic, payload))
        self._publish_tasks.add(task)
        task.add_done_callback(self._publish_done)

    def _publish_done(self, task: asyncio.Task) -> None:
        self._publish_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            self.logger.error(f"Publish failed: {task.exception()}")

    async def dispatch(self, topic: str, payload: bytes) -> int:
        """Run every handler whose filter matches `topic`.

        Handler errors are logged and do not stop the remaining handlers.
        Returns the number of handlers that ran.
        """
        ran = 0
        for pattern, handler in list(self._mqtt_handlers.items()):
            if not topic_matches(topic, pattern):
                continue
            ran += 1
            try:
                await handler(topic, payload)
            except Exception as e:
                self.logger.error(f"Handler error for {topic}: {e}", exc_info=True)
        return ran

    def _next_reconnect_delay(self, delay: float) -> float:
        return min(delay * 2, self.config.mqtt.reconnect_max)

    async def _mqtt_loop(self):
        cfg = self.config.mqtt
        delay = cfg.reconnect_initial
        while self._running:
            try:
                async with MQTTClient(
                    hostname=cfg.broker,
                    port=cfg.port,
                    username=cfg.username or None,
                    password=cfg.password or None,
                    identifier=f"{cfg.client_prefix}-{self.name}",
                ) as client:
                    self._mqtt_client = client
                    self.logger.info(f"MQTT connected to {cfg.broker}:{cfg.port}")
                    delay = cfg.reconnect_initial

                    for topic in self._mqtt_handlers:
                        await client.subscribe(topic)
                        self.logger.debug(f"Subscribed to {topic}")

                    async for message in client.messages:
                        await self.dispatch(str(message.topic), message.payload)

            except MqttError as e:
                self._mqtt_client = None
                if self._running:
                    self.logger.warning(f"MQTT disconnected: {e}, reconnecting in {delay:.0f}s")
                    await asyncio.sleep(delay)
                    delay = self._next_reconnect_delay(delay)
            except Exception as e:
                self._mqtt_client = None
                if self._running:
                    self.logger.error(f"MQTT error: {e}, reconnecting in {delay:.0f}s", exc_info=True)
                    await asyncio.sleep(delay)
                    delay = self._next_reconnect_delay(delay)

    # --- HTTP ---

    def health(self) -> Dict[str, Any]:
        """Extra fields for /health. Subclasses add their own state."""
        return {}

    def get_app(self) -> FastAPI:
        if self._app is None:
            self._app = FastAPI(title=f"Parley {self.name.title()}")
            self._app.add_middleware(
                CORSMiddleware,
                allow_origins=self.config.host.cors_origins,
                allow_methods=["*"],
                allow_headers=["*"],
            )

            @self._app.get("/health")
            async def health():
                report = {
                    "service": self.name,
                    "status": "healthy",
                    "mqtt_connected": self.mqtt_connected,
                }
                report.update(self.health())
                return report
        return self._app

    async def _run_http(self):
        server = uvicorn.Server(uvicorn.Config(
            self.get_app(),
            host=self.config.host.bind,
            port=self.http_port,
            log_level="warning",
        ))
        await server.serve()

    # --- Lifecycle ---

    async def setup(self):
        pass

    async def teardown(self):
        pass

    async def run(self):
        """Run MQTT and HTTP until SIGTERM/SIGINT."""
        self._running = True
        self.logger.info(f"Starting {self.name} service")

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, lambda: asyncio.create_task(self.shutdown()))

        await self.setup()

        self._tasks.append(asyncio.create_task(self._mqtt_loop()))
        if self.http_port:
            self._tasks.append(asyncio.create_task(self._run_http()))

        try:
            await asyncio.gather(*self._tasks)
        except asyncio.CancelledError:
            pass
        finally:
            await self.teardown()
            self.logger.info(f"{self.name} service stopped")

    async def shutdown(self):
        self.logger.info(f"Shutting down {self.name}")
        self._running = False
        for task in self._tasks:
            task.cancel()
