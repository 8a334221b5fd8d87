"""Periodic sensor sampling and aggregate health evaluation."""
from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Deque, Dict, List, Optional

from fleet_agent import system_metrics
from fleet_agent.config import PropertyConfig, Settings
from fleet_agent.core.monitor import DeviceHandle, HardwareLinkMonitor
from fleet_agent.core.registry import PropertyRegistry
from fleet_agent.errors import StaleHandle
from fleet_agent.hardware.base import Readings

STATUS_PROPERTY = "system/status"
UPTIME_PROPERTY = "system/uptime"
IP_ADDRESS_PROPERTY = "system/ip-address"
CPU_TEMPERATURE_PROPERTY = "system/cpu-temperature"


class SystemStatus(str, Enum):
    HEALTHY = "Healthy"
    ALERT = "Alert"


@dataclass
class IterationResult:
    status: SystemStatus
    failures: Dict[str, int] = field(default_factory=dict)
    recovery_delay: float = 0.0
    read: int = 0
    failed: int = 0


StatusListener = Callable[[SystemStatus, str], None]
IterationListener = Callable[[IterationResult], None]


@dataclass
class _Binding:
    property_name: str
    reading: str
    config: PropertyConfig
    window: Optional[Deque[float]] = None

    def value(self, raw: float) -> float:
        scaled = self.config.apply_scaling(raw)
        if self.window is None:
            return scaled
        self.window.append(scaled)
        return sum(self.window) / len(self.window)


class SamplingLoop:
    """Reads every bound device once per period and tracks consecutive failures.

    Only this loop writes property values. Failure counts are rebuilt every
    iteration from the handles that were actually read, so devices that never
    bound (or were dropped with an old link session) cannot hold the status in
    alert.
    """

    def __init__(
        self,
        settings: Settings,
        registry: PropertyRegistry,
        monitor: HardwareLinkMonitor,
        *,
        logger: logging.Logger | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.settings = settings
        self.registry = registry
        self.monitor = monitor
        self.period = float(settings.sample_interval_seconds)
        self.read_timeout = float(settings.read_timeout_seconds)
        self.failure_threshold = int(settings.failure_threshold)
        self.recovery_delay = float(settings.recovery_delay_seconds)
        self._log = logger or logging.getLogger(__name__)
        self._clock = clock
        self._started = clock()
        self.status = SystemStatus.HEALTHY
        self.status_message = SystemStatus.HEALTHY.value
        self.iterations = 0
        self.last_iteration_at: Optional[float] = None
        self._bindings: Dict[str, List[_Binding]] = {}
        self._handles: Dict[str, DeviceHandle] = {}
        self._failures: Dict[str, int] = {}
        self._status_listeners: List[StatusListener] = []
        self._iteration_listeners: List[IterationListener] = []
        self._task: asyncio.Task | None = None
        self._stop_event = asyncio.Event()
        for node, prop in settings.property_configs():
            if not prop.source_kind or not prop.source_reading:
                continue
            name = f"{node.node_id}/{prop.property_id}"
            window = deque(maxlen=prop.smoothing_samples) if prop.smoothing_samples > 1 else None
            self._bindings.setdefault(prop.source_kind, []).append(
                _Binding(property_name=name, reading=prop.source_reading, config=prop, window=window)
            )
        monitor.add_device_listener(self._on_device_available)
        monitor.add_reconnect_listener(self._on_link_reconnected)

    # wiring ------------------------------------------------------------------

    def add_status_listener(self, callback: StatusListener) -> None:
        self._status_listeners.append(callback)

    def add_iteration_listener(self, callback: IterationListener) -> None:
        self._iteration_listeners.append(callback)

    def failure_counts(self) -> Dict[str, int]:
        return dict(self._failures)

    def snapshot_status(self) -> Dict[str, object]:
        return {
            "status": self.status.value,
            "message": self.status_message,
            "failures": self.failure_counts(),
            "devices": sorted(self._handles),
            "iterations": self.iterations,
        }

    def _on_device_available(self, identifier: str, kind: str) -> None:
        if kind not in self._bindings:
            self._log.debug("No properties read from %s device %s", kind, identifier)
            return
        self._handles[identifier] = self.monitor.bind(identifier, kind)

    def _on_link_reconnected(self, generation: int) -> None:
        if self._handles:
            self._log.info("Dropping %d handles from before link session %d", len(self._handles), generation)
        self._handles.clear()
        self._failures = {}

    # lifecycle ---------------------------------------------------------------

    def start(self) -> None:
        if self._task and not self._task.done():
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run(), name="sampling-loop")

    async def stop(self) -> None:
        self._stop_event.set()
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _run(self) -> None:
        loop = asyncio.get_running_loop()
        while not self._stop_event.is_set():
            started = loop.time()
            extra = 0.0
            try:
                result = await self.run_once()
                extra = result.recovery_delay
            except asyncio.CancelledError:
                raise
            except Exception:
                self._log.exception("Sampling iteration failed")
                extra = self.recovery_delay
            sleep_for = max(self.period - (loop.time() - started), 0.0) + extra
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=sleep_for)
            except asyncio.TimeoutError:
                continue

    # one iteration -----------------------------------------------------------

    async def run_once(self) -> IterationResult:
        counts: Dict[str, int] = {}
        read_handles: Dict[str, DeviceHandle] = {}
        first_failure = False
        read = failed = 0
        for handle in list(self._handles.values()):
            if not self.monitor.is_current(handle):
                self._drop(handle)
                continue
            previous = self._failures.get(handle.identifier, 0)
            try:
                readings = await self._read(handle)
            except StaleHandle:
                self._drop(handle)
                continue
            except Exception as exc:
                if not self._still_bound(handle):
                    self._drop(handle)
                    continue
                failed += 1
                read_handles[handle.identifier] = handle
                count = previous + 1
                counts[handle.identifier] = count
                if count == 1:
                    first_failure = True
                    self._log.info("Reading %s device %s failed: %s", handle.kind, handle.identifier, _describe(exc))
                elif count == self.failure_threshold + 1:
                    self._log.warning(
                        "%s device %s failed %d consecutive reads", handle.kind, handle.identifier, count
                    )
                else:
                    self._log.debug("Reading %s failed (%d in a row)", handle.identifier, count)
                continue
            if not self._still_bound(handle):
                self._drop(handle)
                continue
            read += 1
            read_handles[handle.identifier] = handle
            counts[handle.identifier] = 0
            if previous:
                self._log.info("%s device %s recovered after %d failures", handle.kind, handle.identifier, previous)
            self._apply(handle, readings)

        # Handles may have been rebound or dropped while reads were in flight.
        counts = {
            identifier: count
            for identifier, count in counts.items()
            if self._still_bound(read_handles[identifier])
        }
        self._failures = counts
        self._evaluate(counts)
        await self._update_system()

        self.iterations += 1
        self.last_iteration_at = self._clock()
        result = IterationResult(
            status=self.status,
            failures=dict(counts),
            recovery_delay=self.recovery_delay if first_failure else 0.0,
            read=read,
            failed=failed,
        )
        for listener in list(self._iteration_listeners):
            try:
                listener(result)
            except Exception:
                self._log.exception("Iteration listener failed")
        return result

    async def _read(self, handle: DeviceHandle) -> Readings:
        return await asyncio.wait_for(asyncio.to_thread(self.monitor.read, handle), timeout=self.read_timeout)

    def _still_bound(self, handle: DeviceHandle) -> bool:
        return self.monitor.is_current(handle) and self._handles.get(handle.identifier) is handle

    def _drop(self, handle: DeviceHandle) -> None:
        if self._handles.get(handle.identifier) is handle:
            del self._handles[handle.identifier]
        self._log.debug("Dropped stale handle for %s (bound in session %d)", handle.identifier, handle.bound_at)

    def _apply(self, handle: DeviceHandle, readings: Readings) -> None:
        for binding in self._bindings.get(handle.kind, []):
            raw = readings.get(binding.reading)
            if raw is None:
                self._log.debug("%s device %s returned no %s", handle.kind, handle.identifier, binding.reading)
                continue
            self._set(binding.property_name, binding.value(raw))

    def _evaluate(self, counts: Dict[str, int]) -> None:
        failing = sorted(
            identifier for identifier, count in counts.items() if count > self.failure_threshold
        )
        if failing:
            status = SystemStatus.ALERT
            labels = [f"{self._handles[identifier].kind} {identifier}" for identifier in failing]
            message = f"Not responding: {', '.join(labels)}"
        else:
            status = SystemStatus.HEALTHY
            message = SystemStatus.HEALTHY.value
        changed = status is not self.status
        self.status = status
        self.status_message = message
        self._set(STATUS_PROPERTY, message)
        if not changed:
            return
        if status is SystemStatus.ALERT:
            self._log.warning("System status -> Alert (%s)", message)
        else:
            self._log.info("System status -> Healthy")
        for listener in list(self._status_listeners):
            try:
                listener(status, message)
            except Exception:
                self._log.exception("Status listener failed")

    async def _update_system(self) -> None:
        self._set(UPTIME_PROPERTY, (self._clock() - self._started) / 3600.0)
        if IP_ADDRESS_PROPERTY in self.registry:
            self._set(IP_ADDRESS_PROPERTY, await asyncio.to_thread(system_metrics.preferred_ipv4))
        if CPU_TEMPERATURE_PROPERTY in self.registry:
            temperature = await asyncio.to_thread(system_metrics.cpu_temperature)
            if temperature is not None:
                self._set(CPU_TEMPERATURE_PROPERTY, temperature)

    def _set(self, name: str, value) -> None:
        if name not in self.registry:
            return
        self.registry.set(name, value)


def _describe(exc: BaseException) -> str:
    if isinstance(exc, asyncio.TimeoutError):
        return "timed out"
    return str(exc) or exc.__class__.__name__


__all__ = ["IterationResult", "SamplingLoop", "SystemStatus"]
