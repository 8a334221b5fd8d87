"""Tracks the hardware link session and the device handles bound within it."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from fleet_agent.errors import StaleHandle, UnsupportedKind
from fleet_agent.hardware.base import DeviceLink, EnumerationType, Readings

DeviceListener = Callable[[str, str], None]
ReconnectListener = Callable[[int], None]

MAX_CONNECT_RETRY_SECONDS = 60.0


@dataclass(frozen=True)
class DeviceHandle:
    identifier: str
    kind: str
    bound_at: int
    device: Any = field(default=None, compare=False, repr=False)


class HardwareLinkMonitor:
    """Owns the device link and hands out generation-stamped handles.

    Every link (re)connect bumps ``generation``; handles bound under an older
    generation are refused by :meth:`read`. Driver callbacks may arrive on any
    thread and are queued onto the event loop before listeners see them.
    """

    def __init__(
        self,
        link: DeviceLink,
        *,
        connect_retry_seconds: float = 5.0,
        logger: logging.Logger | None = None,
    ) -> None:
        self.link = link
        self.connect_retry_seconds = max(float(connect_retry_seconds), 0.01)
        self._log = logger or logging.getLogger(__name__)
        self.generation = 0
        self.connected = False
        self.last_error: Optional[str] = None
        self._handles: Dict[str, DeviceHandle] = {}
        self._device_listeners: List[DeviceListener] = []
        self._reconnect_listeners: List[ReconnectListener] = []
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._events: Optional[asyncio.Queue[Tuple[Any, ...]]] = None
        self._task: asyncio.Task | None = None
        link.set_callbacks(
            on_connected=lambda: self._post(("connected",)),
            on_disconnected=lambda: self._post(("disconnected",)),
            on_enumerate=lambda identifier, kind, enumeration: self._post(
                ("enumerate", identifier, kind, enumeration)
            ),
        )

    def add_device_listener(self, callback: DeviceListener) -> None:
        self._device_listeners.append(callback)

    def add_reconnect_listener(self, callback: ReconnectListener) -> None:
        self._reconnect_listeners.append(callback)

    def require_kinds(self, kinds: Iterable[str]) -> None:
        for kind in sorted(kinds):
            if kind not in self.link.readers:
                raise UnsupportedKind(kind)

    def bind(self, identifier: str, kind: str) -> DeviceHandle:
        if kind not in self.link.readers:
            raise UnsupportedKind(kind, identifier)
        device = self.link.open_device(identifier, kind)
        handle = DeviceHandle(identifier=identifier, kind=kind, bound_at=self.generation, device=device)
        self._handles[identifier] = handle
        self._log.info("Bound %s device %s (link session %d)", kind, identifier, self.generation)
        return handle

    def is_current(self, handle: DeviceHandle) -> bool:
        return handle.bound_at == self.generation and self._handles.get(handle.identifier) is handle

    def read(self, handle: DeviceHandle) -> Readings:
        """Blocking read through the link; callers run it off the event loop."""

        if not self.is_current(handle):
            raise StaleHandle(handle.identifier, handle.bound_at, self.generation)
        return self.link.readers[handle.kind](handle.device)

    def handles(self) -> List[DeviceHandle]:
        return list(self._handles.values())

    def snapshot_status(self) -> Dict[str, object]:
        return {
            "connected": self.connected,
            "generation": self.generation,
            "last_error": self.last_error,
            "devices": {handle.identifier: handle.kind for handle in self._handles.values()},
        }

    def start(self) -> None:
        if self._task and not self._task.done():
            return
        self._loop = asyncio.get_running_loop()
        self._events = asyncio.Queue()
        self._task = asyncio.create_task(self._run(), name="hardware-link-monitor")

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self._handles.clear()
        self.connected = False
        await asyncio.to_thread(self.link.close)
        self._log.info("Hardware link monitor stopped")

    async def _run(self) -> None:
        assert self._events is not None
        attempt = 0
        while True:
            try:
                await asyncio.to_thread(self.link.connect)
                break
            except Exception as exc:
                self.last_error = str(exc) or exc.__class__.__name__
                delay = min(self.connect_retry_seconds * (2 ** min(attempt, 10)), MAX_CONNECT_RETRY_SECONDS)
                attempt += 1
                self._log.warning("Device link connect failed (%s); retrying in %.1fs", self.last_error, delay)
                await asyncio.sleep(delay)
        while True:
            event = await self._events.get()
            try:
                self._dispatch(event)
            except Exception:
                self._log.exception("Device link event %s failed", event[0])

    def _post(self, event: Tuple[Any, ...]) -> None:
        loop = self._loop
        queue = self._events
        if loop is None or queue is None:
            self._log.debug("Dropping device link event %s before start", event[0])
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            queue.put_nowait(event)
        else:
            loop.call_soon_threadsafe(queue.put_nowait, event)

    def _dispatch(self, event: Tuple[Any, ...]) -> None:
        name = event[0]
        if name == "connected":
            self._on_connected()
        elif name == "disconnected":
            self.connected = False
            self._log.warning("Device link disconnected (session %d)", self.generation)
        elif name == "enumerate":
            _, identifier, kind, enumeration = event
            self._on_enumerate(identifier, kind, EnumerationType(enumeration))

    def _on_connected(self) -> None:
        self.generation += 1
        self.connected = True
        self.last_error = None
        stale = len(self._handles)
        self._handles.clear()
        self._log.info(
            "Device link session %d established; dropped %d stale handles, enumerating",
            self.generation,
            stale,
        )
        for listener in list(self._reconnect_listeners):
            try:
                listener(self.generation)
            except Exception:
                self._log.exception("Reconnect listener failed")
        try:
            self.link.enumerate()
        except Exception as exc:
            self.last_error = str(exc) or exc.__class__.__name__
            self._log.warning("Device enumeration failed: %s", self.last_error)

    def _on_enumerate(self, identifier: str, kind: Optional[str], enumeration: EnumerationType) -> None:
        if enumeration is EnumerationType.DISCONNECTED:
            self._log.info("Device %s reported disconnected", identifier)
            return
        if kind is None or kind not in self.link.readers:
            self._log.debug("Ignoring unsupported device %s", identifier)
            return
        for listener in list(self._device_listeners):
            try:
                listener(identifier, kind)
            except Exception:
                self._log.exception("Device listener failed for %s", identifier)


__all__ = ["DeviceHandle", "HardwareLinkMonitor"]
