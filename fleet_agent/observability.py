from __future__ import annotations

import json
import logging
import sys
import threading
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Callable, Optional, Protocol

from fastapi import FastAPI, Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

REQUEST_ID_HEADER = "X-Request-ID"
_request_id_ctx: ContextVar[str | None] = ContextVar("request_id", default=None)

# Records from these loggers never go back out over MQTT.
MQTT_LOG_EXCLUDED_PREFIXES = (
    "aiomqtt",
    "paho",
    "fleet_agent.session",
    "fleet_agent.core.session",
    "fleet_agent.observability",
)

_STANDARD_ATTRS = {
    "name",
    "msg",
    "args",
    "levelname",
    "levelno",
    "pathname",
    "filename",
    "module",
    "exc_info",
    "exc_text",
    "stack_info",
    "lineno",
    "funcName",
    "created",
    "msecs",
    "relativeCreated",
    "thread",
    "threadName",
    "processName",
    "process",
    "taskName",
    "service",
    "request_id",
}


def generate_request_id() -> str:
    return uuid.uuid4().hex


def get_request_id() -> str | None:
    return _request_id_ctx.get()


class RequestIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable[[Request], Any]) -> Response:
        inbound = request.headers.get(REQUEST_ID_HEADER) or request.headers.get("X-Correlation-ID")
        request_id = inbound or generate_request_id()
        token = _request_id_ctx.set(request_id)
        try:
            response = await call_next(request)
        finally:
            _request_id_ctx.reset(token)
        response.headers[REQUEST_ID_HEADER] = request_id
        return response


class ServiceContextFilter(logging.Filter):
    def __init__(self, service: str) -> None:
        super().__init__()
        self._service = service

    def filter(self, record: logging.LogRecord) -> bool:
        record.service = self._service
        record.request_id = getattr(record, "request_id", None) or get_request_id()
        return True


class JsonLogFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
            "service": getattr(record, "service", None),
            "request_id": getattr(record, "request_id", None),
        }
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        extra = {key: value for key, value in record.__dict__.items() if key not in _STANDARD_ATTRS}
        if extra:
            payload["extra"] = extra
        return json.dumps(payload, default=str)


class _RawPublisher(Protocol):
    def publish_raw(self, topic: str, payload: str, retained: bool = False) -> bool:
        ...


class MqttLogHandler(logging.Handler):
    """Republish log records to ``<prefix>/<logger>/<level>`` through the broker session.

    Records are sent at most once and never retained; while the session is not
    connected they are dropped by the session itself.
    """

    def __init__(self, publisher: _RawPublisher, topic_prefix: str, level: int = logging.INFO) -> None:
        super().__init__(level)
        self.publisher = publisher
        self.topic_prefix = topic_prefix.rstrip("/")
        self._local = threading.local()
        self.setFormatter(logging.Formatter("%(message)s"))

    def emit(self, record: logging.LogRecord) -> None:
        if record.levelno < self.level or record.name.startswith(MQTT_LOG_EXCLUDED_PREFIXES):
            return
        if getattr(self._local, "active", False):
            return
        self._local.active = True
        try:
            topic = f"{self.topic_prefix}/{record.name}/{record.levelname.lower()}"
            self.publisher.publish_raw(topic, self.format(record), retained=False)
        except Exception:
            self.handleError(record)
        finally:
            self._local.active = False


def configure_logging(service: str, level: str = "INFO", log_file: Optional[str] = None) -> None:
    formatter = JsonLogFormatter()
    context = ServiceContextFilter(service)
    handlers: list[logging.Handler] = []

    stream = logging.StreamHandler(sys.stdout)
    handlers.append(stream)
    if log_file:
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))
    for handler in handlers:
        handler.setFormatter(formatter)
        handler.addFilter(context)

    root = logging.getLogger()
    root.handlers = list(handlers)
    root.setLevel(level.upper())

    for logger_name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        logger = logging.getLogger(logger_name)
        logger.handlers = list(handlers)
        logger.setLevel(level.upper())
        logger.propagate = False


def attach_mqtt_logging(publisher: _RawPublisher, topic_prefix: str, level: str = "INFO") -> MqttLogHandler:
    handler = MqttLogHandler(publisher, topic_prefix, level=logging.getLevelName(level.upper()))
    logging.getLogger().addHandler(handler)
    return handler


def detach_mqtt_logging(handler: MqttLogHandler | None) -> None:
    if handler is None:
        return
    logging.getLogger().removeHandler(handler)
    handler.close()


def configure_observability(
    app: FastAPI,
    *,
    service_name: str,
    log_level: str,
    log_file: Optional[str] = None,
) -> None:
    configure_logging(service_name, log_level, log_file)
    app.add_middleware(RequestIdMiddleware)
