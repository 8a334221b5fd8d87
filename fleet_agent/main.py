"""FastAPI application hosting the fleet agent and its status endpoints."""
from __future__ import annotations

import logging
import sys
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI
from pydantic import ValidationError

from fleet_agent.agent import FleetAgent
from fleet_agent.config import Settings, get_settings
from fleet_agent.observability import configure_observability
from fleet_agent.routers import status as status_router
from fleet_agent.utils.systemd import SystemdNotifier

logger = logging.getLogger(__name__)


def create_app(settings: Settings | None = None, *, agent: FleetAgent | None = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        active = settings or get_settings()
        notifier = SystemdNotifier()
        notifier.status("Starting fleet agent")
        fleet = agent or FleetAgent(active, notifier=notifier)
        await fleet.start()
        app.state.agent = fleet
        app.state.started_at = time.monotonic()
        fleet.notifier.ready(f"Fleet agent ready ({active.device_id})")
        try:
            yield
        finally:
            fleet.notifier.stopping("Fleet agent shutting down")
            await fleet.stop()
            app.state.agent = None

    app = FastAPI(title="Fleet Agent", lifespan=lifespan)
    app.include_router(status_router.router)
    return app


def run() -> None:
    try:
        settings = get_settings()
    except ValidationError as exc:
        logging.basicConfig(level=logging.ERROR)
        logger.error("Invalid configuration: %s", exc)
        sys.exit(2)

    import uvicorn

    app = create_app(settings)
    configure_observability(
        app,
        service_name=settings.service_name,
        log_level=settings.log_level,
        log_file=settings.log_file,
    )
    uvicorn.run(app, host=settings.http_host, port=settings.http_port, log_config=None)


if __name__ == "__main__":  # pragma: no cover
    run()
