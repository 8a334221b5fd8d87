"""MQTT session that keeps the broker's retained state in line with the property registry."""
from __future__ import annotations

import asyncio
import contextlib
import inspect
import logging
import random
import uuid
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union

from aiomqtt import Client, MqttError, Will

from fleet_agent.config import Settings
from fleet_agent.core.homie import DeviceState, HomieTopics, description_messages
from fleet_agent.core.registry import Property, PropertyRegistry, PropertyValue


MessageHandler = Callable[[str, str], Union[None, Awaitable[None]]]
ClientFactory = Callable[[Will], Any]
StateListener = Callable[["SessionState"], None]


class SessionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


@dataclass
class _Outbound:
    topic: str
    payload: str
    retain: bool
    qos: int = 0
    property_name: Optional[str] = None
    value: PropertyValue = None


class BrokerSession:
    """One logical broker connection spanning any number of physical reconnects.

    Every entry into CONNECTED announces the device, then replays the whole
    registry before queued deltas are sent. While not connected, publishes are
    dropped: the registry stays authoritative and is replayed on reconnect.
    """

    def __init__(
        self,
        settings: Settings,
        registry: PropertyRegistry,
        *,
        client_factory: Optional[ClientFactory] = None,
        logger: logging.Logger | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.settings = settings
        self.registry = registry
        self.topics = HomieTopics(settings.base_topic, settings.device_id or "device")
        self._log = logger or logging.getLogger(__name__)
        self._client_factory = client_factory or self._default_client_factory
        self._rng = rng or random.Random()
        self.state = SessionState.DISCONNECTED
        self.generation = 0
        self.device_state = DeviceState.READY
        self.last_error: Optional[str] = None
        self.dropped_messages = 0
        self.published_messages = 0
        self._outbound: deque[_Outbound] = deque()
        self._outbound_max = int(settings.outbound_queue_max)
        self._subscriptions: List[Tuple[str, MessageHandler]] = []
        self._state_listeners: List[StateListener] = []
        self._client: Any = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._task: asyncio.Task | None = None
        self._stop = asyncio.Event()
        self._wakeup = asyncio.Event()
        registry.add_listener(self._on_property_changed)

    # public API -----------------------------------------------------------

    def connect(self) -> None:
        """Start the connect/retry task; calling again while it runs is a no-op."""

        if self._task and not self._task.done():
            return
        self._loop = asyncio.get_running_loop()
        self._stop.clear()
        self._task = asyncio.create_task(self._run(), name="broker-session")

    async def close(self, timeout: float = 5.0) -> None:
        """Publish the clean ``disconnected`` state and tear the session down."""

        self._stop.set()
        self._wakeup.set()
        if self._task:
            try:
                await asyncio.wait_for(self._task, timeout=timeout)
            except asyncio.TimeoutError:
                self._log.warning("Broker session did not close within %.1fs; cancelled", timeout)
            except asyncio.CancelledError:
                pass
            self._task = None

    def publish(self, name: str, value: PropertyValue, retained: bool = True) -> bool:
        prop = self.registry.get(name) if name in self.registry else None
        if prop is not None:
            payload = prop.format(value)
        else:
            payload = "" if value is None else str(value)
        return self._enqueue(
            _Outbound(
                topic=self.topics.property_topic(name),
                payload=payload,
                retain=retained,
                property_name=name if prop is not None else None,
                value=value,
            )
        )

    def publish_raw(self, topic: str, payload: str, retained: bool = False) -> bool:
        return self._enqueue(_Outbound(topic=topic, payload=payload, retain=retained))

    def set_device_state(self, state: DeviceState | str) -> None:
        state = DeviceState(state)
        if state == self.device_state:
            return
        self.device_state = state
        self._enqueue(_Outbound(topic=self.topics.state, payload=state.value, retain=True, qos=1))

    async def subscribe(self, topic_filter: str, handler: MessageHandler) -> None:
        self._subscriptions.append((topic_filter, handler))
        if self.state is SessionState.CONNECTED and self._client is not None:
            try:
                await self._client.subscribe(topic_filter)
            except MqttError as exc:
                self._log.warning("Subscribe to %s failed: %s", topic_filter, exc)

    def add_state_listener(self, callback: StateListener) -> None:
        self._state_listeners.append(callback)

    def snapshot_status(self) -> Dict[str, object]:
        return {
            "state": self.state.value,
            "generation": self.generation,
            "device_state": self.device_state.value,
            "last_error": self.last_error,
            "queued": len(self._outbound),
            "published_messages": self.published_messages,
            "dropped_messages": self.dropped_messages,
        }

    # connection lifecycle -------------------------------------------------

    async def _run(self) -> None:
        attempt = 0
        while not self._stop.is_set():
            self._set_state(SessionState.CONNECTING)
            self._log.info("Connecting to MQTT broker %s:%s", self.settings.mqtt_host, self.settings.mqtt_port)
            try:
                client = self._client_factory(self._will())
                async with contextlib.AsyncExitStack() as stack:
                    await asyncio.wait_for(
                        stack.enter_async_context(client),
                        timeout=self.settings.mqtt_connect_timeout_seconds,
                    )
                    attempt = 0
                    self.last_error = None
                    self._client = client
                    try:
                        await self._serve(client)
                    finally:
                        self._client = None
                        self._set_state(SessionState.DISCONNECTED)
            except asyncio.CancelledError:
                self._set_state(SessionState.DISCONNECTED)
                raise
            except (MqttError, asyncio.TimeoutError, OSError) as exc:
                self.last_error = str(exc) or exc.__class__.__name__
                self._log.warning("MQTT error %s; retrying", self.last_error)
            except Exception as exc:
                self.last_error = str(exc) or exc.__class__.__name__
                self._log.exception("Unhandled broker session error")
            self._set_state(SessionState.DISCONNECTED)
            if self._stop.is_set():
                break
            delay = self._backoff_delay(attempt)
            attempt += 1
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=delay)
            except asyncio.TimeoutError:
                continue

    async def _serve(self, client: Any) -> None:
        self._outbound.clear()
        self._set_state(SessionState.CONNECTED)
        inbound = asyncio.create_task(self._dispatch_messages(client), name="broker-session-inbound")
        inbound.add_done_callback(lambda _task: self._wakeup.set())
        try:
            await self._announce(client)
            while not self._stop.is_set():
                self._wakeup.clear()
                await self._drain(client)
                if inbound.done():
                    inbound.result()
                    raise MqttError("Inbound message stream closed")
                await self._wakeup.wait()
            await self._drain(client)
            await client.publish(self.topics.state, DeviceState.DISCONNECTED.value, qos=1, retain=True)
            self._log.info("MQTT session closed cleanly")
        finally:
            inbound.cancel()
            with contextlib.suppress(asyncio.CancelledError, MqttError):
                await inbound

    async def _announce(self, client: Any) -> None:
        """Describe the device and replay every property before any delta goes out."""

        self.registry.request_replay()
        await client.publish(self.topics.state, DeviceState.INIT.value, qos=1, retain=True)
        for topic, payload in description_messages(self.topics, self.registry, self.settings.device_name or ""):
            await client.publish(topic, payload, qos=1, retain=True)
        for topic_filter, _handler in self._subscriptions:
            await client.subscribe(topic_filter)
        replayed = 0
        for name, value in self.registry.snapshot():
            prop = self.registry.get(name)
            await client.publish(self.topics.property_topic(name), prop.format(value), qos=0, retain=True)
            self.registry.mark_published(name, value)
            replayed += 1
        await client.publish(self.topics.state, self.device_state.value, qos=1, retain=True)
        self.published_messages += replayed
        self._log.info("Replayed %d properties to broker (session %d)", replayed, self.generation)

    async def _drain(self, client: Any) -> None:
        while self._outbound:
            message = self._outbound.popleft()
            await client.publish(message.topic, message.payload, qos=message.qos, retain=message.retain)
            self.published_messages += 1
            if message.property_name is not None:
                self.registry.mark_published(message.property_name, message.value)

    async def _dispatch_messages(self, client: Any) -> None:
        async for message in client.messages:
            topic = getattr(message.topic, "value", None) or str(message.topic)
            payload = message.payload
            if isinstance(payload, (bytes, bytearray)):
                text = payload.decode("utf-8", errors="replace")
            else:
                text = "" if payload is None else str(payload)
            for topic_filter, handler in list(self._subscriptions):
                if not message.topic.matches(topic_filter):
                    continue
                try:
                    result = handler(topic, text)
                    if inspect.isawaitable(result):
                        await result
                except Exception:
                    self._log.exception("Handler for %s failed", topic_filter)

    # helpers --------------------------------------------------------------

    def _on_property_changed(self, prop: Property, value: PropertyValue) -> None:
        self.publish(prop.name, value, retained=prop.retained)

    def _enqueue(self, message: _Outbound) -> bool:
        if self.state is not SessionState.CONNECTED:
            return False
        loop = self._loop
        if loop is not None and loop.is_running() and not _running_in(loop):
            loop.call_soon_threadsafe(self._append, message)
            return True
        self._append(message)
        return True

    def _append(self, message: _Outbound) -> None:
        if len(self._outbound) >= self._outbound_max:
            self._outbound.popleft()
            self.dropped_messages += 1
        self._outbound.append(message)
        self._wakeup.set()

    def _set_state(self, state: SessionState) -> None:
        if state == self.state:
            return
        if state is SessionState.CONNECTED:
            self.generation += 1
        self._log.debug("Broker session %s -> %s", self.state.value, state.value)
        self.state = state
        for listener in list(self._state_listeners):
            try:
                listener(state)
            except Exception:
                self._log.exception("Broker state listener failed")

    def _backoff_delay(self, attempt: int) -> float:
        base = self.settings.reconnect_initial_seconds * (2 ** min(attempt, 16))
        capped = min(base, self.settings.reconnect_max_seconds)
        return capped * self._rng.uniform(0.5, 1.0)

    def _will(self) -> Will:
        return Will(topic=self.topics.state, payload=DeviceState.LOST.value, qos=1, retain=True)

    def _default_client_factory(self, will: Will) -> Client:
        password = self.settings.mqtt_password.get_secret_value() if self.settings.mqtt_password else None
        return Client(
            self.settings.mqtt_host,
            port=self.settings.mqtt_port,
            username=self.settings.mqtt_username,
            password=password,
            identifier=self.settings.mqtt_client_id or f"{self.settings.device_id}-{uuid.uuid4().hex[:8]}",
            will=will,
            keepalive=self.settings.mqtt_keepalive_seconds,
        )


def _running_in(loop: asyncio.AbstractEventLoop) -> bool:
    try:
        return asyncio.get_running_loop() is loop
    except RuntimeError:
        return False


__all__ = ["BrokerSession", "SessionState"]
