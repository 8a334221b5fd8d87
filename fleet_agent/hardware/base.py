"""Device link abstractions shared by the hardware drivers."""
from __future__ import annotations

from enum import Enum
from typing import Any, Callable, Dict, Mapping, Optional, Protocol, Tuple

Readings = Dict[str, float]
Reader = Callable[[Any], Readings]

# Readings each device kind produces, in engineering units.
READINGS: Dict[str, Tuple[str, ...]] = {
    "air_quality": ("temperature", "humidity", "pressure", "quality_index"),
    "humidity": ("temperature", "humidity"),
    "barometer": ("pressure", "temperature"),
    "current_loop": ("current_ma",),
}


class EnumerationType(str, Enum):
    AVAILABLE = "available"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


ConnectedCallback = Callable[[], None]
DisconnectedCallback = Callable[[], None]
EnumerateCallback = Callable[[str, Optional[str], EnumerationType], None]


class DeviceLink(Protocol):
    """Transport to the sensor bus daemon.

    Callbacks may fire on a driver thread; consumers must not assume they run
    on the event loop.
    """

    readers: Mapping[str, Reader]

    def set_callbacks(
        self,
        *,
        on_connected: ConnectedCallback,
        on_disconnected: DisconnectedCallback,
        on_enumerate: EnumerateCallback,
    ) -> None:
        ...

    def connect(self) -> None:
        ...

    def enumerate(self) -> None:
        ...

    def open_device(self, identifier: str, kind: str) -> Any:
        ...

    def close(self) -> None:
        ...
