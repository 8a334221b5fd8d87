from __future__ import annotations

import json
import logging

from fleet_agent.observability import JsonLogFormatter, MqttLogHandler, ServiceContextFilter


class _Recorder:
    def __init__(self) -> None:
        self.messages = []

    def publish_raw(self, topic: str, payload: str, retained: bool = False) -> bool:
        self.messages.append((topic, payload, retained))
        return True


def _record(name: str, level: int, message: str) -> logging.LogRecord:
    return logging.LogRecord(name, level, __file__, 1, message, None, None)


def test_json_formatter_includes_service_and_extras():
    record = _record("fleet_agent.core.sampler", logging.WARNING, "System status -> Alert")
    record.device = "AQ1"
    ServiceContextFilter("fleet-agent").filter(record)

    payload = json.loads(JsonLogFormatter().format(record))
    assert payload["level"] == "WARNING"
    assert payload["service"] == "fleet-agent"
    assert payload["logger"] == "fleet_agent.core.sampler"
    assert payload["extra"] == {"device": "AQ1"}


def test_mqtt_handler_publishes_under_logger_and_level():
    recorder = _Recorder()
    handler = MqttLogHandler(recorder, "logs/air-monitor/")
    handler.handle(_record("fleet_agent.core.sampler", logging.WARNING, "Reading failed"))

    assert recorder.messages == [("logs/air-monitor/fleet_agent.core.sampler/warning", "Reading failed", False)]


def test_mqtt_handler_skips_broker_loggers_and_low_levels():
    recorder = _Recorder()
    handler = MqttLogHandler(recorder, "logs")
    handler.handle(_record("aiomqtt.client", logging.ERROR, "socket closed"))
    handler.handle(_record("fleet_agent.core.session", logging.WARNING, "MQTT error"))
    handler.handle(_record("fleet_agent.session", logging.WARNING, "MQTT error"))
    handler.handle(_record("fleet_agent.core.monitor", logging.DEBUG, "noise"))

    assert recorder.messages == []


def test_mqtt_handler_does_not_recurse():
    class _Chatty(_Recorder):
        def publish_raw(self, topic: str, payload: str, retained: bool = False) -> bool:
            handler.handle(_record("fleet_agent.agent", logging.INFO, "nested"))
            return super().publish_raw(topic, payload, retained)

    publisher = _Chatty()
    handler = MqttLogHandler(publisher, "logs")
    handler.handle(_record("fleet_agent.agent", logging.INFO, "outer"))

    assert [payload for _, payload, _ in publisher.messages] == ["outer"]
