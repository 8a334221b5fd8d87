from __future__ import annotations

import pytest

from fleet_agent.core.registry import PropertyKind, PropertyRegistry
from fleet_agent.errors import DuplicateName


def _registry() -> PropertyRegistry:
    registry = PropertyRegistry()
    registry.declare_node("ambient", "Ambient properties")
    registry.declare("ambient/temperature", PropertyKind.NUMERIC, "°C", 0.0, precision=1)
    registry.declare("ambient/humidity", "numeric", "%", 0.0)
    registry.declare("system/status", PropertyKind.TEXT, initial_value="Healthy")
    return registry


def test_declare_rejects_duplicates_and_bad_names():
    registry = _registry()
    with pytest.raises(DuplicateName):
        registry.declare("ambient/temperature", PropertyKind.NUMERIC)
    with pytest.raises(ValueError):
        registry.declare("temperature", PropertyKind.NUMERIC)
    with pytest.raises(ValueError):
        registry.declare("ambient/inner/temperature", PropertyKind.NUMERIC)
    assert len(registry) == 3


def test_set_reports_change_and_notifies_listeners():
    registry = _registry()
    seen = []
    registry.add_listener(lambda prop, value: seen.append((prop.name, value)))

    assert registry.set("ambient/temperature", 21.5) is True
    assert registry.set("ambient/temperature", 21.5) is False
    assert seen == [("ambient/temperature", 21.5)]
    assert registry.value("ambient/temperature") == 21.5


def test_set_validates_name_and_kind():
    registry = _registry()
    with pytest.raises(KeyError):
        registry.set("ambient/pressure", 1000.0)
    with pytest.raises(TypeError):
        registry.set("ambient/temperature", "warm")
    with pytest.raises(TypeError):
        registry.set("ambient/temperature", True)
    with pytest.raises(TypeError):
        registry.set("system/status", 3)


def test_request_replay_forces_next_notification():
    registry = _registry()
    registry.set("ambient/temperature", 20.0)
    seen = []
    registry.add_listener(lambda prop, value: seen.append(value))

    registry.request_replay()
    assert registry.set("ambient/temperature", 20.0) is False
    assert registry.set("ambient/temperature", 20.0) is False
    assert seen == [20.0]


def test_snapshot_is_ordered_restartable_and_sees_latest_values():
    registry = _registry()
    snapshot = registry.snapshot()
    first = list(snapshot)
    assert [name for name, _ in first] == ["ambient/temperature", "ambient/humidity", "system/status"]

    iterator = iter(snapshot)
    assert next(iterator) == ("ambient/temperature", 0.0)
    registry.set("ambient/humidity", 55.0)
    assert next(iterator) == ("ambient/humidity", 55.0)
    assert list(snapshot)[1] == ("ambient/humidity", 55.0)


def test_snapshot_does_not_touch_published_state():
    registry = _registry()
    registry.set("ambient/temperature", 19.0)
    list(registry.snapshot())
    assert registry.get("ambient/temperature").last_published is None
    assert "ambient/temperature" in registry.pending()

    registry.mark_published("ambient/temperature")
    assert registry.get("ambient/temperature").last_published == 19.0
    assert "ambient/temperature" not in registry.pending()


def test_payload_formatting_uses_precision():
    registry = _registry()
    registry.set("ambient/temperature", 21.456)
    assert registry.get("ambient/temperature").payload() == "21.5"
    registry.set("ambient/humidity", 40.25)
    assert registry.get("ambient/humidity").payload() == "40.25"
    assert registry.get("system/status").payload() == "Healthy"


def test_nodes_follow_declaration_order_with_default_metadata():
    registry = _registry()
    nodes = registry.nodes()
    assert [node.node_id for node in nodes] == ["ambient", "system"]
    assert nodes[0].display_name == "Ambient properties"
    assert nodes[1].display_name == "system"
