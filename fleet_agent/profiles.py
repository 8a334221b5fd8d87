"""Built-in device/property schemas for the monitors in the fleet.

Each profile is plain data validated into :class:`fleet_agent.config.NodeConfig`
objects when settings load. ``source`` names ``<device kind>.<reading>`` as
produced by the hardware link readers.
"""
from __future__ import annotations

from typing import Any, Dict

_SYSTEM_NODE: Dict[str, Any] = {
    "node_id": "system",
    "name": "System",
    "properties": [
        {"property_id": "uptime", "name": "Uptime", "unit": "h", "precision": 2, "initial": 0},
        {"property_id": "status", "name": "Status", "kind": "text", "initial": "Healthy"},
    ],
}


def _system_node(*extra: Dict[str, Any]) -> Dict[str, Any]:
    node = dict(_SYSTEM_NODE)
    node["properties"] = [*_SYSTEM_NODE["properties"], *extra]
    return node


_AIR_QUALITY_AMBIENT: Dict[str, Any] = {
    "node_id": "ambient",
    "name": "Ambient properties",
    "properties": [
        {
            "property_id": "pressure",
            "name": "Pressure",
            "unit": "hPa",
            "initial": 0,
            "source": "air_quality.pressure",
            "mirror_field": "Pressure",
        },
        {
            "property_id": "temperature",
            "name": "Temperature",
            "unit": "°C",
            "initial": 0,
            "source": "air_quality.temperature",
            "mirror_field": "Temperature",
        },
        {
            "property_id": "humidity",
            "name": "Humidity",
            "unit": "%",
            "initial": 0,
            "source": "air_quality.humidity",
            "mirror_field": "Humidity",
        },
        {
            "property_id": "quality-index",
            "name": "Quality index",
            "precision": 0,
            "initial": 0,
            "source": "air_quality.quality_index",
            "mirror_field": "QualityIndex",
        },
    ],
}

PROFILES: Dict[str, Dict[str, Any]] = {
    "air-quality": {
        "device_id": "air-monitor",
        "device_name": "Air quality monitor",
        "measurement": "AirQuality",
        "nodes": [
            _AIR_QUALITY_AMBIENT,
            _system_node({"property_id": "ip-address", "name": "IP address", "kind": "text"}),
        ],
    },
    "greenhouse": {
        "device_id": "greenhouse-monitor",
        "device_name": "Greenhouse monitor",
        "measurement": "GreenhouseMonitor",
        "nodes": [
            {
                "node_id": "ambient",
                "name": "Ambient properties",
                "properties": [
                    {
                        "property_id": "pressure",
                        "name": "Pressure",
                        "unit": "hPa",
                        "initial": 0,
                        "source": "barometer.pressure",
                        "mirror_field": "Pressure",
                    },
                    {
                        "property_id": "temperature",
                        "name": "Temperature",
                        "unit": "°C",
                        "initial": 0,
                        "source": "humidity.temperature",
                        "mirror_field": "Temperature",
                    },
                    {
                        "property_id": "humidity",
                        "name": "Humidity",
                        "unit": "%",
                        "initial": 0,
                        "source": "humidity.humidity",
                        "mirror_field": "Humidity",
                    },
                ],
            },
            _system_node(
                {
                    "property_id": "cpu-temperature",
                    "name": "CPU temperature",
                    "unit": "°C",
                    "precision": 1,
                    "initial": 0,
                    "mirror_field": "CpuTemperature",
                }
            ),
        ],
    },
    "shed": {
        "device_id": "shed-monitor",
        "device_name": "Shed monitor",
        "measurement": "ShedMonitor",
        "nodes": [
            _AIR_QUALITY_AMBIENT,
            {
                "node_id": "water",
                "name": "Water supply",
                "properties": [
                    {
                        "property_id": "pressure",
                        "name": "Water pressure",
                        "unit": "bar",
                        "precision": 2,
                        "initial": 0,
                        "source": "current_loop.current_ma",
                        # 4-20 mA transducer spanning 0-10 bar.
                        "input_min": 4.0,
                        "input_max": 20.0,
                        "output_min": 0.0,
                        "output_max": 10.0,
                        "smoothing_samples": 5,
                        "mirror_field": "WaterPressure",
                    }
                ],
            },
            _system_node(),
        ],
    },
}

DEFAULT_PROFILE = "air-quality"

__all__ = ["DEFAULT_PROFILE", "PROFILES"]
