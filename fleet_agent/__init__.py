"""Telemetry agent that keeps sensor hardware, an MQTT broker and a time-series sink in sync."""

__version__ = "0.1.0"
