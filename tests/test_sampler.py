from __future__ import annotations

import asyncio
import threading
import time

import pytest
from _fakes import wait_until

from fleet_agent.agent import build_registry
from fleet_agent.config import Settings
from fleet_agent.core.monitor import HardwareLinkMonitor
from fleet_agent.core.sampler import SamplingLoop, SystemStatus
from fleet_agent.hardware.simulated import SimulatedLink


def _settings(**overrides) -> Settings:
    values = {
        "profile": "air-quality",
        "link_driver": "simulated",
        "read_timeout_seconds": 0.5,
        "failure_threshold": 3,
        "recovery_delay_seconds": 2.0,
    }
    values.update(overrides)
    return Settings(**values)


async def _started(settings: Settings, devices):
    registry = build_registry(settings)
    link = SimulatedLink(devices)
    monitor = HardwareLinkMonitor(link, connect_retry_seconds=0.01)
    sampler = SamplingLoop(settings, registry, monitor)
    monitor.start()
    await wait_until(lambda: sorted(sampler.snapshot_status()["devices"]) == sorted(devices))
    return registry, link, monitor, sampler


def test_successful_read_updates_registry_and_system_node():
    async def runner():
        settings = _settings()
        registry, link, monitor, sampler = await _started(settings, {"AQ1": "air_quality"})
        link.set_reading("AQ1", "temperature", 21.5)
        link.set_reading("AQ1", "quality_index", 42)

        result = await sampler.run_once()

        assert result.status is SystemStatus.HEALTHY
        assert result.failures == {"AQ1": 0}
        assert result.recovery_delay == 0.0
        assert registry.value("ambient/temperature") == 21.5
        assert registry.value("ambient/quality-index") == 42.0
        assert registry.value("system/status") == "Healthy"
        assert registry.value("system/ip-address") == "10.0.0.5"
        assert registry.value("system/uptime") >= 0.0
        await monitor.stop()

    asyncio.run(runner())


def test_consecutive_failures_raise_alert_and_recover():
    async def runner():
        settings = _settings()
        registry, link, monitor, sampler = await _started(settings, {"AQ1": "air_quality"})
        transitions = []
        sampler.add_status_listener(lambda status, message: transitions.append((status, message)))

        link.fail("AQ1")
        results = [await sampler.run_once() for _ in range(4)]

        assert [result.failures["AQ1"] for result in results] == [1, 2, 3, 4]
        assert results[0].recovery_delay == 2.0
        assert [result.recovery_delay for result in results[1:]] == [0.0, 0.0, 0.0]
        assert [result.status for result in results] == [
            SystemStatus.HEALTHY,
            SystemStatus.HEALTHY,
            SystemStatus.HEALTHY,
            SystemStatus.ALERT,
        ]
        assert registry.value("system/status") == "Not responding: air_quality AQ1"

        link.recover("AQ1")
        result = await sampler.run_once()
        assert result.status is SystemStatus.HEALTHY
        assert sampler.failure_counts() == {"AQ1": 0}
        assert registry.value("system/status") == "Healthy"
        assert [status for status, _ in transitions] == [SystemStatus.ALERT, SystemStatus.HEALTHY]
        await monitor.stop()

    asyncio.run(runner())


def test_read_timeout_counts_as_failure():
    async def runner():
        settings = _settings(read_timeout_seconds=0.05, failure_threshold=0)
        registry, link, monitor, sampler = await _started(settings, {"AQ1": "air_quality"})

        def slow_read(device):  # noqa: ARG001
            time.sleep(0.2)
            return {"temperature": 30.0}

        link.readers["air_quality"] = slow_read
        result = await sampler.run_once()

        assert result.failures == {"AQ1": 1}
        assert result.status is SystemStatus.ALERT
        assert registry.value("ambient/temperature") == 0.0
        await monitor.stop()

    asyncio.run(runner())


def test_devices_that_never_bind_do_not_affect_status():
    async def runner():
        settings = _settings(failure_threshold=0)
        registry = build_registry(settings)
        link = SimulatedLink({})
        monitor = HardwareLinkMonitor(link, connect_retry_seconds=0.01)
        sampler = SamplingLoop(settings, registry, monitor)
        monitor.start()
        await wait_until(lambda: monitor.connected)

        result = await sampler.run_once()
        assert result.status is SystemStatus.HEALTHY
        assert result.failures == {}
        await monitor.stop()

    asyncio.run(runner())


def test_link_reconnect_drops_stale_handles_and_counters():
    async def runner():
        settings = _settings()
        registry, link, monitor, sampler = await _started(settings, {"AQ1": "air_quality"})
        link.fail("AQ1")
        await sampler.run_once()
        await sampler.run_once()
        assert sampler.failure_counts() == {"AQ1": 2}

        link.drop()
        link.restore()
        await wait_until(lambda: monitor.generation == 2 and sampler.snapshot_status()["devices"] == ["AQ1"])
        assert sampler.failure_counts() == {}

        link.recover("AQ1")
        result = await sampler.run_once()
        assert result.failures == {"AQ1": 0}
        assert all(handle.bound_at == 2 for handle in monitor.handles())
        await monitor.stop()

    asyncio.run(runner())


def test_scaling_and_smoothing_follow_property_config():
    async def runner():
        settings = _settings(profile="shed")
        registry, link, monitor, sampler = await _started(
            settings, {"AQ1": "air_quality", "CL1": "current_loop"}
        )
        link.set_reading("CL1", "current_ma", 12.0)
        await sampler.run_once()
        assert registry.value("water/pressure") == pytest.approx(5.0)

        link.set_reading("CL1", "current_ma", 20.0)
        await sampler.run_once()
        assert registry.value("water/pressure") == pytest.approx(7.5)
        assert registry.get("water/pressure").payload() == "7.50"
        await monitor.stop()

    asyncio.run(runner())


def test_loop_runs_iterations_until_stopped():
    async def runner():
        settings = _settings()
        registry, link, monitor, sampler = await _started(settings, {"AQ1": "air_quality"})
        results = []
        sampler.add_iteration_listener(results.append)
        sampler.start()
        await wait_until(lambda: results)
        await sampler.stop()
        assert sampler.iterations >= 1
        assert results[0].status is SystemStatus.HEALTHY
        await monitor.stop()

    asyncio.run(runner())


def _reconnect_during_read(link, outcome):
    original = link.readers["air_quality"]
    calls = []

    def read(device):
        if calls:
            return original(device)
        calls.append(device)
        link.drop()
        link.restore()
        time.sleep(0.3)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    link.readers["air_quality"] = read
    return calls


def test_failed_read_across_link_reconnect_does_not_count():
    async def runner():
        settings = _settings(read_timeout_seconds=2.0)
        registry, link, monitor, sampler = await _started(settings, {"AQ1": "air_quality"})
        link.fail("AQ1")
        for _ in range(3):
            await sampler.run_once()
        assert sampler.failure_counts() == {"AQ1": 3}

        _reconnect_during_read(link, TimeoutError("Device AQ1 did not respond"))
        result = await sampler.run_once()

        assert result.status is SystemStatus.HEALTHY
        assert result.failed == 0
        assert result.failures == {}
        assert sampler.failure_counts() == {}
        assert registry.value("system/status") == "Healthy"
        assert [handle.bound_at for handle in monitor.handles()] == [2]
        assert sampler.snapshot_status()["devices"] == ["AQ1"]
        await monitor.stop()

    asyncio.run(runner())


def test_successful_read_across_link_reconnect_is_discarded():
    async def runner():
        settings = _settings(read_timeout_seconds=2.0)
        registry, link, monitor, sampler = await _started(settings, {"AQ1": "air_quality"})
        link.set_reading("AQ1", "temperature", 20.0)
        await sampler.run_once()
        assert registry.value("ambient/temperature") == 20.0

        _reconnect_during_read(link, {"temperature": 99.0, "humidity": 99.0, "pressure": 1.0, "quality_index": 9.0})
        result = await sampler.run_once()

        assert result.read == 0
        assert result.failures == {}
        assert sampler.failure_counts() == {}
        assert registry.value("ambient/temperature") == 20.0

        result = await sampler.run_once()
        assert result.failures == {"AQ1": 0}
        assert registry.value("ambient/temperature") == 20.0
        await monitor.stop()

    asyncio.run(runner())


def test_host_metrics_are_collected_off_the_event_loop(monkeypatch):
    async def runner():
        settings = _settings()
        registry, link, monitor, sampler = await _started(settings, {"AQ1": "air_quality"})
        loop_thread = threading.get_ident()
        threads = []

        def lookup():
            threads.append(threading.get_ident())
            return "192.168.1.20"

        monkeypatch.setattr("fleet_agent.system_metrics.preferred_ipv4", lookup)
        await sampler.run_once()

        assert registry.value("system/ip-address") == "192.168.1.20"
        assert threads and loop_thread not in threads
        await monitor.stop()

    asyncio.run(runner())
