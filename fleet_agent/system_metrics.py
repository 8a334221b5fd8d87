"""Host metrics reported on the ``system`` node."""
from __future__ import annotations

import logging
import socket
from typing import Optional

import psutil

logger = logging.getLogger(__name__)

_CPU_SENSOR_NAMES = ("cpu_thermal", "coretemp", "k10temp", "soc_thermal", "cpu-thermal")


def preferred_ipv4() -> str:
    try:
        hostname = socket.gethostname()
        ip = socket.gethostbyname(hostname)
        if ip.startswith("127."):
            with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
                # No packet is sent; connect() only selects the outbound interface.
                sock.connect(("8.8.8.8", 80))
                ip = sock.getsockname()[0]
        return ip
    except OSError:
        return "127.0.0.1"


def cpu_temperature() -> Optional[float]:
    """Return the SoC/CPU temperature in degrees Celsius, or None when unknown."""

    reader = getattr(psutil, "sensors_temperatures", None)
    if reader is None:
        return None
    try:
        sensors = reader() or {}
    except (OSError, RuntimeError) as exc:
        logger.debug("Reading CPU temperature failed: %s", exc)
        return None
    for name in _CPU_SENSOR_NAMES:
        entries = sensors.get(name)
        if entries:
            return float(entries[0].current)
    for entries in sensors.values():
        if entries:
            return float(entries[0].current)
    return None


__all__ = ["cpu_temperature", "preferred_ipv4"]
