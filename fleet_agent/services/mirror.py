"""Mirror registry values into InfluxDB as line-protocol points."""
from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from typing import Callable, Deque, Dict, Optional

import httpx

from fleet_agent.config import Settings
from fleet_agent.core.registry import PropertyRegistry

ERROR_LOG_INTERVAL_SECONDS = 30.0
DEFAULT_BACKLOG_MAX = 720


def _escape_key(value: str) -> str:
    return value.replace("\\", "\\\\").replace(",", "\\,").replace("=", "\\=").replace(" ", "\\ ")


def _escape_measurement(value: str) -> str:
    return value.replace("\\", "\\\\").replace(",", "\\,").replace(" ", "\\ ")


def _field_value(value) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return repr(float(value))
    text = str(value).replace("\\", "\\\\").replace('"', '\\"')
    return f'"{text}"'


def format_line(measurement: str, tags: Dict[str, str], fields: Dict[str, object], timestamp_ns: int) -> Optional[str]:
    rendered = []
    for key, value in fields.items():
        formatted = _field_value(value)
        if formatted is not None:
            rendered.append(f"{_escape_key(key)}={formatted}")
    if not rendered:
        return None
    head = _escape_measurement(measurement)
    for key in sorted(tags):
        head += f",{_escape_key(key)}={_escape_key(str(tags[key]))}"
    return f"{head} {','.join(rendered)} {int(timestamp_ns)}"


class TimeSeriesMirror:
    """Periodically writes a snapshot of mirrored properties to InfluxDB v2.

    Failed batches stay in a bounded backlog and are retried with the next
    point; the oldest lines are dropped once the backlog is full.
    """

    def __init__(
        self,
        settings: Settings,
        registry: PropertyRegistry,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        backlog_max: int = DEFAULT_BACKLOG_MAX,
        logger: logging.Logger | None = None,
        clock_ns: Callable[[], int] = time.time_ns,
    ) -> None:
        self.settings = settings
        self.registry = registry
        self.interval = float(settings.influx_mirror_interval_seconds)
        self.measurement = settings.influx_measurement or settings.device_id or "device"
        self.fields = settings.mirror_fields()
        self._log = logger or logging.getLogger(__name__)
        self._clock_ns = clock_ns
        self._backlog: Deque[str] = deque()
        self._backlog_max = max(int(backlog_max), 1)
        self.dropped_points = 0
        self.written_points = 0
        self.last_error: Optional[str] = None
        self._last_error_log = 0.0
        self._suppressed_errors = 0
        token = settings.influx_token.get_secret_value() if settings.influx_token else ""
        self._client = httpx.AsyncClient(
            base_url=settings.influx_url.rstrip("/"),
            timeout=httpx.Timeout(settings.influx_timeout_seconds),
            headers={"Authorization": f"Token {token}", "Content-Type": "text/plain; charset=utf-8"},
            transport=transport,
        )
        self._task: asyncio.Task | None = None
        self._stop_event = asyncio.Event()

    def start(self) -> None:
        if self._task and not self._task.done():
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run(), name="timeseries-mirror")

    async def stop(self) -> None:
        self._stop_event.set()
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        await self._client.aclose()

    def snapshot_status(self) -> Dict[str, object]:
        return {
            "backlog": len(self._backlog),
            "written_points": self.written_points,
            "dropped_points": self.dropped_points,
            "last_error": self.last_error,
        }

    def build_point(self) -> Optional[str]:
        values = dict(self.registry.snapshot())
        fields = {field: values.get(name) for name, field in self.fields.items() if name in values}
        return format_line(
            self.measurement,
            {"device": self.settings.device_id or "device"},
            fields,
            self._clock_ns(),
        )

    async def mirror_once(self) -> bool:
        line = self.build_point()
        if line is not None:
            if len(self._backlog) >= self._backlog_max:
                self._backlog.popleft()
                self.dropped_points += 1
            self._backlog.append(line)
        return await self.flush()

    async def flush(self) -> bool:
        if not self._backlog:
            return True
        batch = list(self._backlog)
        try:
            resp = await self._client.post(
                "/api/v2/write",
                params={
                    "org": self.settings.influx_org,
                    "bucket": self.settings.influx_bucket,
                    "precision": "ns",
                },
                content="\n".join(batch).encode("utf-8"),
            )
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            self.last_error = str(exc) or exc.__class__.__name__
            self._report_failure(len(batch))
            return False
        for _ in batch:
            if self._backlog:
                self._backlog.popleft()
        self.written_points += len(batch)
        if self.last_error is not None:
            self._log.info("InfluxDB writes recovered; flushed %d points", len(batch))
        self.last_error = None
        self._suppressed_errors = 0
        return True

    def _report_failure(self, pending: int) -> None:
        now = time.monotonic()
        if self._last_error_log and now - self._last_error_log < ERROR_LOG_INTERVAL_SECONDS:
            self._suppressed_errors += 1
            return
        suppressed = f" ({self._suppressed_errors} similar errors suppressed)" if self._suppressed_errors else ""
        self._log.warning("InfluxDB write failed: %s; %d points pending%s", self.last_error, pending, suppressed)
        self._last_error_log = now
        self._suppressed_errors = 0

    async def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.mirror_once()
            except asyncio.CancelledError:
                raise
            except Exception:
                self._log.exception("Time-series mirror iteration failed")
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                continue


__all__ = ["TimeSeriesMirror", "format_line"]
