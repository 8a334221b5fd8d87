"""In-process device link used for development runs and tests."""
from __future__ import annotations

import math
import random
import threading
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional, Set, Tuple

from fleet_agent.errors import LinkUnavailable, UnsupportedKind
from fleet_agent.hardware.base import (
    READINGS,
    ConnectedCallback,
    DisconnectedCallback,
    EnumerateCallback,
    EnumerationType,
    Reader,
    Readings,
)

# base, amplitude, period (minutes), min, max
READING_PROFILE: Dict[str, Tuple[float, float, float, Optional[float], Optional[float]]] = {
    "temperature": (21.0, 3.0, 30.0, -40.0, 85.0),
    "humidity": (45.0, 8.0, 45.0, 0.0, 100.0),
    "pressure": (1013.0, 4.0, 240.0, 300.0, 1100.0),
    "quality_index": (60.0, 25.0, 60.0, 0.0, 500.0),
    "current_ma": (12.0, 3.0, 20.0, 0.0, 24.0),
}


@dataclass(frozen=True)
class SimulatedDevice:
    identifier: str
    kind: str


class SimulatedLink:
    """Generate repeatable readings for a configurable set of devices.

    Callbacks fire synchronously on the calling thread. ``drop``/``restore``,
    ``add_device``/``remove_device`` and ``fail``/``recover`` let tests script
    link and device faults.
    """

    def __init__(
        self,
        devices: Optional[Dict[str, str]] = None,
        *,
        seed: int = 1,
        clock=time.monotonic,
    ) -> None:
        self.devices: Dict[str, str] = dict(devices if devices is not None else {"SIMAQ1": "air_quality"})
        for identifier, kind in self.devices.items():
            if kind not in READINGS:
                raise UnsupportedKind(kind, identifier)
        self.random = random.Random(seed)
        self._clock = clock
        self._started = clock()
        self._lock = threading.Lock()
        self._failing: Set[str] = set()
        self._overrides: Dict[Tuple[str, str], float] = {}
        self.connected = False
        self.connect_attempts = 0
        self.refuse_connects = 0
        self._on_connected: Optional[ConnectedCallback] = None
        self._on_disconnected: Optional[DisconnectedCallback] = None
        self._on_enumerate: Optional[EnumerateCallback] = None
        self.readers: Dict[str, Reader] = {kind: self._read for kind in READINGS}

    def set_callbacks(
        self,
        *,
        on_connected: ConnectedCallback,
        on_disconnected: DisconnectedCallback,
        on_enumerate: EnumerateCallback,
    ) -> None:
        self._on_connected = on_connected
        self._on_disconnected = on_disconnected
        self._on_enumerate = on_enumerate

    def connect(self) -> None:
        self.connect_attempts += 1
        if self.refuse_connects > 0:
            self.refuse_connects -= 1
            raise LinkUnavailable("simulated link refused connection")
        self.connected = True
        if self._on_connected:
            self._on_connected()

    def enumerate(self) -> None:
        if not self.connected:
            raise LinkUnavailable("simulated link is down")
        for identifier, kind in list(self.devices.items()):
            self._announce(identifier, kind, EnumerationType.AVAILABLE)

    def open_device(self, identifier: str, kind: str) -> Any:
        if kind not in READINGS:
            raise UnsupportedKind(kind, identifier)
        return SimulatedDevice(identifier, kind)

    def close(self) -> None:
        self.connected = False

    # fault injection --------------------------------------------------------

    def drop(self) -> None:
        self.connected = False
        if self._on_disconnected:
            self._on_disconnected()

    def restore(self) -> None:
        self.connected = True
        if self._on_connected:
            self._on_connected()

    def add_device(self, identifier: str, kind: str) -> None:
        self.devices[identifier] = kind
        self._announce(identifier, kind, EnumerationType.CONNECTED)

    def remove_device(self, identifier: str) -> None:
        kind = self.devices.pop(identifier, None)
        self._announce(identifier, kind, EnumerationType.DISCONNECTED)

    def fail(self, identifier: str) -> None:
        with self._lock:
            self._failing.add(identifier)

    def recover(self, identifier: str) -> None:
        with self._lock:
            self._failing.discard(identifier)

    def set_reading(self, identifier: str, reading: str, value: float) -> None:
        with self._lock:
            self._overrides[(identifier, reading)] = float(value)

    # readings ---------------------------------------------------------------

    def _announce(self, identifier: str, kind: Optional[str], enumeration: EnumerationType) -> None:
        if self._on_enumerate:
            self._on_enumerate(identifier, kind, enumeration)

    def _read(self, device: SimulatedDevice) -> Readings:
        if not self.connected:
            raise LinkUnavailable("simulated link is down")
        with self._lock:
            if device.identifier in self._failing or device.identifier not in self.devices:
                raise TimeoutError(f"Device {device.identifier} did not respond")
            overrides = dict(self._overrides)
        readings: Readings = {}
        for reading in READINGS[device.kind]:
            override = overrides.get((device.identifier, reading))
            readings[reading] = override if override is not None else self._value(reading)
        return readings

    def _value(self, reading: str) -> float:
        base, amplitude, period_minutes, minimum, maximum = READING_PROFILE[reading]
        elapsed = self._clock() - self._started
        wave = math.sin((2 * math.pi * elapsed) / max(period_minutes * 60.0, 1.0))
        value = base + amplitude * wave + self.random.uniform(-0.05, 0.05) * amplitude
        if minimum is not None:
            value = max(minimum, value)
        if maximum is not None:
            value = min(maximum, value)
        return round(value, 3)


__all__ = ["READING_PROFILE", "SimulatedDevice", "SimulatedLink"]
