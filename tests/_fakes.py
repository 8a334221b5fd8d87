"""In-memory stand-ins for the MQTT broker used across the async tests."""
from __future__ import annotations

import asyncio
import time
from types import SimpleNamespace
from typing import Callable, Dict, List, Optional, Tuple

from aiomqtt import MqttError, Topic


class FakeBroker:
    """Keeps retained topics and applies the last will on abnormal disconnects."""

    def __init__(self) -> None:
        self.retained: Dict[str, str] = {}
        self.published: List[Tuple[int, str, str, bool]] = []
        self.subscriptions: List[str] = []
        self.clients: List["FakeClient"] = []
        self.connections = 0
        self.refuse = 0

    def factory(self, will) -> "FakeClient":
        return FakeClient(self, will)

    @property
    def current(self) -> Optional["FakeClient"]:
        live = [client for client in self.clients if not client.dead]
        return live[-1] if live else None

    def drop_all(self) -> None:
        for client in self.clients:
            client.drop()

    def deliver(self, topic: str, payload: str) -> None:
        client = self.current
        assert client is not None
        client.inbox.put_nowait(SimpleNamespace(topic=Topic(topic), payload=payload.encode("utf-8")))

    def session_log(self, connection: int) -> List[Tuple[str, str]]:
        return [(topic, payload) for index, topic, payload, _ in self.published if index == connection]


class FakeClient:
    def __init__(self, broker: FakeBroker, will) -> None:
        self.broker = broker
        self.will = will
        self.dead = False
        self.index = 0
        self.inbox: asyncio.Queue = None  # type: ignore[assignment]

    async def __aenter__(self) -> "FakeClient":
        if self.broker.refuse > 0:
            self.broker.refuse -= 1
            raise MqttError("Connection refused")
        self.inbox = asyncio.Queue()
        self.broker.connections += 1
        self.index = self.broker.connections
        self.broker.clients.append(self)
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        if exc_type is not None and self.will is not None:
            self.broker.retained[self.will.topic] = self.will.payload
        self.dead = True
        return False

    def drop(self) -> None:
        if self.dead:
            return
        self.dead = True
        if self.inbox is not None:
            self.inbox.put_nowait(None)

    async def publish(self, topic: str, payload=None, qos: int = 0, retain: bool = False) -> None:
        if self.dead:
            raise MqttError("Connection lost")
        text = "" if payload is None else str(payload)
        self.broker.published.append((self.index, topic, text, retain))
        if retain:
            self.broker.retained[topic] = text

    async def subscribe(self, topic_filter: str, *args, **kwargs) -> None:
        if self.dead:
            raise MqttError("Connection lost")
        self.broker.subscriptions.append(topic_filter)

    @property
    def messages(self):
        return self._iterate()

    async def _iterate(self):
        while True:
            item = await self.inbox.get()
            if item is None:
                raise MqttError("Connection lost")
            yield item


async def wait_until(predicate: Callable[[], bool], timeout: float = 3.0, interval: float = 0.005) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(interval)
