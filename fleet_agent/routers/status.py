from __future__ import annotations

import time
from typing import Dict

from fastapi import APIRouter, HTTPException, Request

from fleet_agent import __version__

router = APIRouter()


@router.get("/healthz")
async def healthz():
    return {"status": "ok"}


@router.get("/v1/status")
async def status_endpoint(request: Request) -> Dict[str, object]:
    agent = getattr(request.app.state, "agent", None)
    if agent is None:
        raise HTTPException(status_code=503, detail="agent not running")
    uptime = int(time.monotonic() - getattr(request.app.state, "started_at", time.monotonic()))
    payload = agent.snapshot_status()
    payload["service_version"] = __version__
    payload["uptime_seconds"] = uptime
    return payload
