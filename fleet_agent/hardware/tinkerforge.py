"""Tinkerforge Brick Daemon link."""
from __future__ import annotations

import logging
import threading
from typing import Any, Dict, Optional

from fleet_agent.errors import LinkUnavailable, UnsupportedKind
from fleet_agent.hardware.base import (
    ConnectedCallback,
    DisconnectedCallback,
    EnumerateCallback,
    EnumerationType,
    Reader,
    Readings,
)

try:  # pragma: no cover - optional hardware dependency
    from tinkerforge.bricklet_air_quality import BrickletAirQuality  # type: ignore
    from tinkerforge.bricklet_barometer_v2 import BrickletBarometerV2  # type: ignore
    from tinkerforge.bricklet_humidity_v2 import BrickletHumidityV2  # type: ignore
    from tinkerforge.bricklet_industrial_dual_0_20ma_v2 import BrickletIndustrialDual020mAV2  # type: ignore
    from tinkerforge.ip_connection import IPConnection  # type: ignore
except Exception:  # pragma: no cover - handled at connect time
    IPConnection = None  # type: ignore[assignment]
    BrickletAirQuality = None  # type: ignore[assignment]
    BrickletBarometerV2 = None  # type: ignore[assignment]
    BrickletHumidityV2 = None  # type: ignore[assignment]
    BrickletIndustrialDual020mAV2 = None  # type: ignore[assignment]

DEFAULT_PORT = 4223


def _read_air_quality(device: Any) -> Readings:
    values = device.get_all_values()
    return {
        "temperature": values.temperature / 100.0,
        "humidity": values.humidity / 100.0,
        "pressure": values.air_pressure / 100.0,
        "quality_index": float(values.iaq_index),
    }


def _read_humidity(device: Any) -> Readings:
    return {
        "humidity": device.get_humidity() / 100.0,
        "temperature": device.get_temperature() / 100.0,
    }


def _read_barometer(device: Any) -> Readings:
    return {
        "pressure": device.get_air_pressure() / 1000.0,
        "temperature": device.get_temperature() / 100.0,
    }


def _read_current_loop(device: Any) -> Readings:
    # Channel 0 reports nA.
    return {"current_ma": device.get_current(0) / 1_000_000.0}


READERS: Dict[str, Reader] = {
    "air_quality": _read_air_quality,
    "humidity": _read_humidity,
    "barometer": _read_barometer,
    "current_loop": _read_current_loop,
}


def _device_classes() -> Dict[str, Any]:
    if IPConnection is None:
        return {}
    return {
        "air_quality": BrickletAirQuality,
        "humidity": BrickletHumidityV2,
        "barometer": BrickletBarometerV2,
        "current_loop": BrickletIndustrialDual020mAV2,
    }


class TinkerforgeLink:
    """Owns one ``IPConnection`` to a Brick Daemon.

    The connection auto-reconnects; every (re)connect fires ``on_connected``
    so the monitor can start a new session generation and re-enumerate.
    """

    readers = READERS

    def __init__(
        self,
        host: str,
        port: int = DEFAULT_PORT,
        *,
        timeout_seconds: float = 2.0,
        logger: logging.Logger | None = None,
    ) -> None:
        self.host = host
        self.port = int(port)
        self.timeout_seconds = float(timeout_seconds)
        self._log = logger or logging.getLogger(__name__)
        self._ipcon: Any = None
        self._lock = threading.Lock()
        self._on_connected: Optional[ConnectedCallback] = None
        self._on_disconnected: Optional[DisconnectedCallback] = None
        self._on_enumerate: Optional[EnumerateCallback] = None
        self._kinds_by_identifier: Dict[int, str] = {
            cls.DEVICE_IDENTIFIER: kind for kind, cls in _device_classes().items()
        }

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
        if IPConnection is None:
            raise LinkUnavailable("tinkerforge package not available")
        with self._lock:
            if self._ipcon is None:
                ipcon = IPConnection()
                ipcon.set_timeout(self.timeout_seconds)
                ipcon.set_auto_reconnect(True)
                ipcon.register_callback(IPConnection.CALLBACK_ENUMERATE, self._handle_enumerate)
                ipcon.register_callback(IPConnection.CALLBACK_CONNECTED, self._handle_connected)
                ipcon.register_callback(IPConnection.CALLBACK_DISCONNECTED, self._handle_disconnected)
                self._ipcon = ipcon
            ipcon = self._ipcon
        self._log.info("Connecting to Brick Daemon %s:%s", self.host, self.port)
        ipcon.connect(self.host, self.port)

    def enumerate(self) -> None:
        if self._ipcon is None:
            raise LinkUnavailable("Brick Daemon connection not established")
        self._ipcon.enumerate()

    def open_device(self, identifier: str, kind: str) -> Any:
        cls = _device_classes().get(kind)
        if cls is None:
            raise UnsupportedKind(kind, identifier)
        if self._ipcon is None:
            raise LinkUnavailable("Brick Daemon connection not established")
        return cls(identifier, self._ipcon)

    def close(self) -> None:
        with self._lock:
            ipcon = self._ipcon
            self._ipcon = None
        if ipcon is None:
            return
        try:
            if ipcon.get_connection_state() != IPConnection.CONNECTION_STATE_DISCONNECTED:
                ipcon.disconnect()
        except Exception as exc:  # pragma: no cover - depends on brickd state
            self._log.debug("Brick Daemon disconnect failed: %s", exc)

    def _handle_connected(self, connect_reason: int) -> None:
        reason = "auto-reconnect" if connect_reason == IPConnection.CONNECT_REASON_AUTO_RECONNECT else "request"
        self._log.info("Connection to Brick Daemon established (%s)", reason)
        if self._on_connected:
            self._on_connected()

    def _handle_disconnected(self, disconnect_reason: int) -> None:
        self._log.warning("Connection to Brick Daemon lost (reason %s)", disconnect_reason)
        if self._on_disconnected:
            self._on_disconnected()

    def _handle_enumerate(
        self,
        uid: str,
        connected_uid: str,  # noqa: ARG002
        position: str,  # noqa: ARG002
        hardware_version: Any,  # noqa: ARG002
        firmware_version: Any,  # noqa: ARG002
        device_identifier: int,
        enumeration_type: int,
    ) -> None:
        if enumeration_type == IPConnection.ENUMERATION_TYPE_DISCONNECTED:
            kind_type = EnumerationType.DISCONNECTED
        elif enumeration_type == IPConnection.ENUMERATION_TYPE_CONNECTED:
            kind_type = EnumerationType.CONNECTED
        else:
            kind_type = EnumerationType.AVAILABLE
        kind = self._kinds_by_identifier.get(int(device_identifier))
        if self._on_enumerate:
            self._on_enumerate(str(uid), kind, kind_type)


__all__ = ["DEFAULT_PORT", "READERS", "TinkerforgeLink"]
