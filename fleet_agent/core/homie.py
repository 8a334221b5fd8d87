"""Homie 4.0 topic layout and device description messages."""
from __future__ import annotations

from enum import Enum
from typing import List, Tuple

from fleet_agent.core.registry import Property, PropertyKind, PropertyRegistry

HOMIE_VERSION = "4.0.0"


class DeviceState(str, Enum):
    INIT = "init"
    READY = "ready"
    DISCONNECTED = "disconnected"
    SLEEPING = "sleeping"
    LOST = "lost"
    ALERT = "alert"


class HomieTopics:
    """Builds topics of the form ``<base>/<device-id>/<node>/<property>``."""

    def __init__(self, base_topic: str, device_id: str) -> None:
        self.base_topic = base_topic.strip("/")
        self.device_id = device_id

    @property
    def device_root(self) -> str:
        return f"{self.base_topic}/{self.device_id}"

    @property
    def state(self) -> str:
        return f"{self.device_root}/$state"

    def property_topic(self, name: str) -> str:
        return f"{self.device_root}/{name}"

    def attribute(self, path: str, attribute: str) -> str:
        prefix = f"{self.device_root}/{path}" if path else self.device_root
        return f"{prefix}/${attribute}"


def _datatype(prop: Property) -> str:
    if prop.kind is PropertyKind.NUMERIC:
        return "integer" if prop.precision == 0 else "float"
    return "string"


def description_messages(
    topics: HomieTopics,
    registry: PropertyRegistry,
    device_name: str,
) -> List[Tuple[str, str]]:
    """Retained attribute messages announcing the device, its nodes and properties."""

    messages: List[Tuple[str, str]] = [
        (topics.attribute("", "homie"), HOMIE_VERSION),
        (topics.attribute("", "name"), device_name),
        (topics.attribute("", "extensions"), ""),
    ]
    nodes = registry.nodes()
    messages.append((topics.attribute("", "nodes"), ",".join(node.node_id for node in nodes)))
    properties = registry.properties()
    for node in nodes:
        members = [prop for prop in properties if prop.node == node.node_id]
        messages.append((topics.attribute(node.node_id, "name"), node.display_name))
        messages.append((topics.attribute(node.node_id, "type"), node.node_type))
        messages.append(
            (topics.attribute(node.node_id, "properties"), ",".join(prop.property_id for prop in members))
        )
        for prop in members:
            messages.append((topics.attribute(prop.name, "name"), prop.display_name or prop.property_id))
            messages.append((topics.attribute(prop.name, "datatype"), _datatype(prop)))
            messages.append((topics.attribute(prop.name, "settable"), "false"))
            messages.append((topics.attribute(prop.name, "retained"), "true"))
            if prop.unit:
                messages.append((topics.attribute(prop.name, "unit"), prop.unit))
    return messages


__all__ = ["DeviceState", "HOMIE_VERSION", "HomieTopics", "description_messages"]
