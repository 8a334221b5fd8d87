from __future__ import annotations

import logging
import os
import socket
import time
from typing import Optional

logger = logging.getLogger(__name__)


class SystemdNotifier:
    """sd_notify client whose watchdog is fed by the sampling loop.

    ``feed_watchdog`` is called after every sampling iteration and pings at
    most once per half watchdog interval, so a stalled loop lets systemd
    restart the service. Outside systemd every call is a no-op returning False.
    """

    def __init__(self, clock=time.monotonic) -> None:
        self._clock = clock
        self._watchdog_interval: Optional[float] = None
        self._last_ping: Optional[float] = None

    def ready(self, status: Optional[str] = None) -> bool:
        return self._send(self._compose_message({"READY": "1"}, status=status))

    def status(self, status: str) -> bool:
        return self._send(self._compose_message({}, status=status))

    def stopping(self, status: Optional[str] = None) -> bool:
        return self._send(self._compose_message({"STOPPING": "1"}, status=status))

    def watchdog_ping(self) -> bool:
        return self._send("WATCHDOG=1")

    @property
    def watchdog_enabled(self) -> bool:
        return self._watchdog_interval is not None

    def enable_watchdog(self) -> bool:
        self._watchdog_interval = self._watchdog_interval_seconds()
        self._last_ping = None
        return self._watchdog_interval is not None

    def feed_watchdog(self) -> bool:
        interval = self._watchdog_interval
        if interval is None:
            return False
        now = self._clock()
        if self._last_ping is not None and now - self._last_ping < interval:
            return False
        if not self.watchdog_ping():
            return False
        self._last_ping = now
        return True

    def disable_watchdog(self) -> None:
        self._watchdog_interval = None
        self._last_ping = None

    def _watchdog_interval_seconds(self) -> Optional[float]:
        raw = os.environ.get("WATCHDOG_USEC")
        if not raw:
            return None
        try:
            usec = int(raw)
        except ValueError:
            logger.warning("Invalid WATCHDOG_USEC value: %s", raw)
            return None
        if usec <= 0:
            return None
        return usec / 1_000_000.0 / 2.0

    def _compose_message(self, properties: dict[str, str], status: Optional[str] = None) -> str:
        parts = [f"{key}={value}" for key, value in properties.items()]
        if status is not None:
            parts.append(f"STATUS={status}")
        return "\n".join(parts)

    def _notify_socket_address(self) -> Optional[bytes]:
        path = os.environ.get("NOTIFY_SOCKET")
        if not path:
            return None
        if path.startswith("@"):
            path = "\0" + path[1:]
        return path.encode("utf-8")

    def _send(self, payload: str) -> bool:
        address = self._notify_socket_address()
        if not address:
            return False
        try:
            with socket.socket(socket.AF_UNIX, socket.SOCK_DGRAM) as sock:
                sock.settimeout(0.2)
                sock.sendto(payload.encode("utf-8"), address)
            return True
        except OSError as exc:
            logger.debug("Failed to send sd_notify payload %s: %s", payload, exc)
            return False


__all__ = ["SystemdNotifier"]
