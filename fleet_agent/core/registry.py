"""In-memory registry of the named properties a device exposes on the broker."""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Iterator, List, Optional, Tuple, Union

from fleet_agent.errors import DuplicateName

PropertyValue = Union[float, int, str, None]
_UNSET = object()


class PropertyKind(str, Enum):
    NUMERIC = "numeric"
    TEXT = "text"


@dataclass
class NodeInfo:
    node_id: str
    display_name: str
    node_type: str = "no-type"


@dataclass
class Property:
    name: str
    kind: PropertyKind
    unit: Optional[str] = None
    value: PropertyValue = None
    display_name: Optional[str] = None
    precision: Optional[int] = None
    retained: bool = True
    last_published: PropertyValue = None
    published_once: bool = False

    @property
    def node(self) -> str:
        return self.name.split("/", 1)[0]

    @property
    def property_id(self) -> str:
        return self.name.split("/", 1)[1]

    def format(self, value: PropertyValue) -> str:
        if value is None:
            return ""
        if self.kind is PropertyKind.NUMERIC and self.precision is not None:
            return f"{float(value):.{self.precision}f}"
        return str(value)

    def payload(self) -> str:
        return self.format(self.value)


PropertyListener = Callable[[Property, PropertyValue], None]


class RegistrySnapshot:
    """Lazy view over the registry in declaration order.

    Every iteration starts over and reads each value at the moment it is
    reached, so a replay always sees the latest value per name.
    """

    def __init__(self, registry: "PropertyRegistry") -> None:
        self._registry = registry

    def __iter__(self) -> Iterator[Tuple[str, PropertyValue]]:
        for name in self._registry.names():
            yield name, self._registry.value(name)


class PropertyRegistry:
    """Ordered mapping of property name to :class:`Property`.

    Only the sampling loop writes values; the broker session and the
    time-series mirror read. A lock makes each write and each per-key read
    atomic so replays never observe half-updated state.
    """

    def __init__(self, *, logger: logging.Logger | None = None) -> None:
        self._log = logger or logging.getLogger(__name__)
        self._lock = threading.Lock()
        self._properties: Dict[str, Property] = {}
        self._nodes: Dict[str, NodeInfo] = {}
        self._force_notify: set[str] = set()
        self._listeners: List[PropertyListener] = []

    def declare_node(self, node_id: str, display_name: str, node_type: str = "no-type") -> NodeInfo:
        info = NodeInfo(node_id=node_id, display_name=display_name, node_type=node_type)
        with self._lock:
            self._nodes[node_id] = info
        return info

    def declare(
        self,
        name: str,
        kind: PropertyKind | str,
        unit: Optional[str] = None,
        initial_value: PropertyValue = None,
        *,
        display_name: Optional[str] = None,
        precision: Optional[int] = None,
    ) -> Property:
        node, sep, prop_id = name.partition("/")
        if not sep or not node or not prop_id or "/" in prop_id:
            raise ValueError(f"Property name must look like 'node/property', got {name!r}")
        kind = PropertyKind(kind)
        prop = Property(
            name=name,
            kind=kind,
            unit=unit,
            display_name=display_name or prop_id,
            precision=precision,
        )
        if initial_value is not None:
            prop.value = _coerce(prop, initial_value)
        with self._lock:
            if name in self._properties:
                raise DuplicateName(name)
            self._properties[name] = prop
            if node not in self._nodes:
                self._nodes[node] = NodeInfo(node_id=node, display_name=node)
        self._log.debug("Declared property %s (%s)", name, kind.value)
        return prop

    def add_listener(self, callback: PropertyListener) -> None:
        self._listeners.append(callback)

    def set(self, name: str, value: PropertyValue) -> bool:
        """Store ``value`` and report whether it differs from the previous one."""

        with self._lock:
            prop = self._properties[name]
            coerced = _coerce(prop, value)
            changed = prop.value != coerced
            prop.value = coerced
            forced = name in self._force_notify
            self._force_notify.discard(name)
        if changed or forced:
            for listener in list(self._listeners):
                try:
                    listener(prop, coerced)
                except Exception:
                    self._log.exception("Property listener failed for %s", name)
        return changed

    def request_replay(self) -> None:
        """Make the next write of every property notify listeners even if unchanged."""

        with self._lock:
            self._force_notify = set(self._properties)

    def snapshot(self) -> RegistrySnapshot:
        return RegistrySnapshot(self)

    def mark_published(self, name: str, value: object = _UNSET) -> None:
        with self._lock:
            prop = self._properties[name]
            prop.last_published = prop.value if value is _UNSET else value  # type: ignore[assignment]
            prop.published_once = True

    def get(self, name: str) -> Property:
        return self._properties[name]

    def value(self, name: str) -> PropertyValue:
        with self._lock:
            return self._properties[name].value

    def names(self) -> List[str]:
        with self._lock:
            return list(self._properties)

    def properties(self) -> List[Property]:
        with self._lock:
            return list(self._properties.values())

    def nodes(self) -> List[NodeInfo]:
        """Nodes in the order their first property was declared."""

        with self._lock:
            order: List[str] = []
            for prop in self._properties.values():
                if prop.node not in order:
                    order.append(prop.node)
            return [self._nodes[node] for node in order]

    def pending(self) -> List[str]:
        with self._lock:
            return [
                name
                for name, prop in self._properties.items()
                if not prop.published_once or prop.last_published != prop.value
            ]

    def __contains__(self, name: object) -> bool:
        return name in self._properties

    def __len__(self) -> int:
        return len(self._properties)


def _coerce(prop: Property, value: PropertyValue) -> PropertyValue:
    if value is None:
        return None
    if prop.kind is PropertyKind.NUMERIC:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise TypeError(f"Property {prop.name} expects a number, got {type(value).__name__}")
        return value
    if not isinstance(value, str):
        raise TypeError(f"Property {prop.name} expects text, got {type(value).__name__}")
    return value


__all__ = [
    "NodeInfo",
    "Property",
    "PropertyKind",
    "PropertyRegistry",
    "PropertyValue",
    "RegistrySnapshot",
]
