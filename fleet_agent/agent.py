"""Wires the registry, broker session, link monitor, sampler and mirror together."""
from __future__ import annotations

import logging
from typing import Dict, Optional

from fleet_agent.config import Settings
from fleet_agent.core.homie import DeviceState
from fleet_agent.core.monitor import HardwareLinkMonitor
from fleet_agent.core.registry import PropertyKind, PropertyRegistry
from fleet_agent.core.sampler import IterationResult, SamplingLoop, SystemStatus
from fleet_agent.core.session import BrokerSession, ClientFactory
from fleet_agent.hardware.base import DeviceLink
from fleet_agent.hardware.simulated import SimulatedLink
from fleet_agent.hardware.tinkerforge import TinkerforgeLink
from fleet_agent.observability import MqttLogHandler, attach_mqtt_logging, detach_mqtt_logging
from fleet_agent.services.mirror import TimeSeriesMirror
from fleet_agent.utils.systemd import SystemdNotifier

logger = logging.getLogger(__name__)


def build_registry(settings: Settings, *, logger: logging.Logger | None = None) -> PropertyRegistry:
    registry = PropertyRegistry(logger=logger)
    for node in settings.nodes:
        registry.declare_node(node.node_id, node.name, node.type)
        for prop in node.properties:
            registry.declare(
                f"{node.node_id}/{prop.property_id}",
                PropertyKind(prop.kind),
                prop.unit,
                prop.initial,
                display_name=prop.name,
                precision=prop.precision,
            )
    return registry


def build_link(settings: Settings) -> DeviceLink:
    if settings.link_driver == "simulated":
        kinds = sorted(settings.source_kinds())
        return SimulatedLink({f"SIM{index + 1}": kind for index, kind in enumerate(kinds)})
    return TinkerforgeLink(
        settings.brick_host,
        settings.brick_port,
        timeout_seconds=settings.read_timeout_seconds,
    )


class FleetAgent:
    """Owns every long-lived task of one monitored device.

    Start order is session, monitor, sampler, mirror; stop runs the reverse so
    the last thing the broker sees is the clean ``disconnected`` state.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        link: Optional[DeviceLink] = None,
        client_factory: Optional[ClientFactory] = None,
        notifier: Optional[SystemdNotifier] = None,
        mirror: Optional[TimeSeriesMirror] = None,
    ) -> None:
        self.settings = settings
        base_logger = logging.getLogger("fleet_agent")
        self.registry = build_registry(settings, logger=base_logger.getChild("registry"))
        self.session = BrokerSession(
            settings,
            self.registry,
            client_factory=client_factory,
            logger=base_logger.getChild("session"),
        )
        self.link = link or build_link(settings)
        self.monitor = HardwareLinkMonitor(
            self.link,
            connect_retry_seconds=settings.reconnect_initial_seconds,
            logger=base_logger.getChild("monitor"),
        )
        self.monitor.require_kinds(settings.source_kinds())
        self.sampler = SamplingLoop(settings, self.registry, self.monitor, logger=base_logger.getChild("sampler"))
        if mirror is None and settings.influx_enabled:
            mirror = TimeSeriesMirror(settings, self.registry, logger=base_logger.getChild("mirror"))
        self.mirror = mirror
        self.notifier = notifier or SystemdNotifier()
        self.sampler.add_status_listener(self._on_status_changed)
        self.sampler.add_iteration_listener(self._on_iteration)
        self._log_handler: MqttLogHandler | None = None
        self.running = False

    async def start(self) -> None:
        if self.running:
            return
        self.running = True
        if self.settings.log_topic:
            self._log_handler = attach_mqtt_logging(self.session, self.settings.log_topic, self.settings.log_level)
        self.session.connect()
        self.monitor.start()
        self.sampler.start()
        if self.mirror is not None:
            self.mirror.start()
        self.notifier.enable_watchdog()
        logger.info("Fleet agent started for %s (%s)", self.settings.device_id, self.settings.profile)

    async def stop(self) -> None:
        if not self.running:
            return
        self.running = False
        self.notifier.disable_watchdog()
        await self.sampler.stop()
        if self.mirror is not None:
            await self.mirror.stop()
        await self.monitor.stop()
        detach_mqtt_logging(self._log_handler)
        self._log_handler = None
        await self.session.close()
        logger.info("Fleet agent stopped")

    def snapshot_status(self) -> Dict[str, object]:
        return {
            "device_id": self.settings.device_id,
            "device_name": self.settings.device_name,
            "profile": self.settings.profile,
            "broker": self.session.snapshot_status(),
            "link": self.monitor.snapshot_status(),
            "health": self.sampler.snapshot_status(),
            "mirror": self.mirror.snapshot_status() if self.mirror is not None else None,
            "properties": [
                {
                    "name": prop.name,
                    "value": prop.value,
                    "unit": prop.unit,
                    "last_published": prop.last_published,
                }
                for prop in self.registry.properties()
            ],
        }

    def _on_status_changed(self, status: SystemStatus, message: str) -> None:
        self.session.set_device_state(DeviceState.ALERT if status is SystemStatus.ALERT else DeviceState.READY)
        self.notifier.status(message)

    def _on_iteration(self, result: IterationResult) -> None:  # noqa: ARG002
        self.notifier.feed_watchdog()


__all__ = ["FleetAgent", "build_link", "build_registry"]
