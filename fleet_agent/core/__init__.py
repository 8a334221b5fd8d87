"""Registry, broker session, link monitor and sampling loop."""
from __future__ import annotations

from .homie import DeviceState, HomieTopics
from .monitor import DeviceHandle, HardwareLinkMonitor
from .registry import NodeInfo, Property, PropertyKind, PropertyRegistry
from .sampler import IterationResult, SamplingLoop, SystemStatus
from .session import BrokerSession, SessionState

__all__ = [
    "BrokerSession",
    "DeviceHandle",
    "DeviceState",
    "HardwareLinkMonitor",
    "HomieTopics",
    "IterationResult",
    "NodeInfo",
    "Property",
    "PropertyKind",
    "PropertyRegistry",
    "SamplingLoop",
    "SessionState",
    "SystemStatus",
]
