"""
aplia_backend.api.routers.health

Liveness (`/healthz`) and readiness (`/readyz`) probes. Readiness pings the
database and reports which upstream integrations are configured, so a deploy
missing the gateway or billing keys is visible before the first user hits it.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Request
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from aplia_backend.api.deps import db_session, settings_dep
from aplia_backend.settings import Settings

router = APIRouter()


@router.get("/healthz")
async def healthz() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/readyz")
async def readyz(
    request: Request,
    session: AsyncSession = Depends(db_session),
    settings: Settings = Depends(settings_dep),
) -> dict[str, Any]:
    await session.execute(text("SELECT 1"))
    poller = getattr(request.app.state, "poller", None)
    return {
        "status": "ready",
        "integrations": {
            "evolution": bool(settings.evolution_api_url and settings.evolution_api_key),
            "asaas": bool(settings.asaas_active_key),
            "n8n": bool(settings.n8n_base_url),
        },
        "instance_poller": poller is not None and poller.running,
    }
