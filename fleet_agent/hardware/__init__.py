"""Device link drivers for the sensor bus."""
from __future__ import annotations

from .base import READINGS, DeviceLink, EnumerationType
from .simulated import SimulatedLink
from .tinkerforge import TinkerforgeLink

__all__ = [
    "READINGS",
    "DeviceLink",
    "EnumerationType",
    "SimulatedLink",
    "TinkerforgeLink",
]
