import os
import socket
from pathlib import Path

import pytest

from fleet_agent.utils.systemd import SystemdNotifier


def _prepare_socket() -> tuple[socket.socket, Path]:
    path = Path("/tmp") / f"fleet-agent-notify-{os.getpid()}-{os.urandom(4).hex()}"
    try:
        path.unlink()
    except FileNotFoundError:
        pass
    sock = socket.socket(socket.AF_UNIX, socket.SOCK_DGRAM)
    sock.bind(str(path))
    sock.settimeout(1)
    return sock, path


def test_ready_without_socket(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("NOTIFY_SOCKET", raising=False)
    notifier = SystemdNotifier()
    assert notifier.ready("no socket") is False


def test_ready_sends_payload(monkeypatch: pytest.MonkeyPatch) -> None:
    sock, socket_path = _prepare_socket()
    monkeypatch.setenv("NOTIFY_SOCKET", str(socket_path))
    notifier = SystemdNotifier()
    try:
        assert notifier.ready("Fleet agent ready")
        decoded = sock.recv(2048).decode("utf-8")
        assert "READY=1" in decoded
        assert "STATUS=Fleet agent ready" in decoded
    finally:
        sock.close()
        socket_path.unlink(missing_ok=True)


def test_watchdog_disabled_without_watchdog_usec(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("WATCHDOG_USEC", raising=False)
    notifier = SystemdNotifier()
    assert notifier.enable_watchdog() is False
    assert notifier.feed_watchdog() is False


def test_feed_watchdog_pings_at_most_once_per_interval(monkeypatch: pytest.MonkeyPatch) -> None:
    sock, socket_path = _prepare_socket()
    monkeypatch.setenv("NOTIFY_SOCKET", str(socket_path))
    monkeypatch.setenv("WATCHDOG_USEC", str(10 * 1_000_000))
    now = [100.0]
    notifier = SystemdNotifier(clock=lambda: now[0])
    try:
        assert notifier.enable_watchdog() is True
        assert notifier.feed_watchdog() is True
        assert sock.recv(2048).decode("utf-8") == "WATCHDOG=1"

        now[0] += 2.0
        assert notifier.feed_watchdog() is False
        now[0] += 4.0
        assert notifier.feed_watchdog() is True
        assert sock.recv(2048).decode("utf-8") == "WATCHDOG=1"

        notifier.disable_watchdog()
        now[0] += 10.0
        assert notifier.feed_watchdog() is False
    finally:
        sock.close()
        socket_path.unlink(missing_ok=True)
