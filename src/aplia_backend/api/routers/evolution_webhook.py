"""
aplia_backend.api.routers.evolution_webhook

Inbound events from the Evolution messaging gateway.

The gateway cannot send a bearer token, so callers authenticate with a shared
`?token=` query parameter.
"""

from __future__ import annotations

import hmac
from typing import Any

import httpx
from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.status import HTTP_400_BAD_REQUEST, HTTP_401_UNAUTHORIZED

from aplia_backend.api.deps import db_session, http_client, settings_dep
from aplia_backend.observability.logging import get_logger
from aplia_backend.services.whatsapp import WhatsAppService
from aplia_backend.settings import Settings

log = get_logger(__name__)

router = APIRouter(prefix="/v1/webhooks", tags=["webhooks"])


class GatewayEvent(BaseModel):
    event: str | None = None
    instance: str | None = None
    data: dict[str, Any] | None = None


@router.post("/evolution")
async def evolution_webhook(
    body: GatewayEvent,
    token: str | None = Query(default=None),
    session: AsyncSession = Depends(db_session),
    settings: Settings = Depends(settings_dep),
    http: httpx.AsyncClient = Depends(http_client),
) -> dict[str, Any]:
    if not token or not hmac.compare_digest(token.encode(), settings.evolution_webhook_token.encode()):
        raise HTTPException(status_code=HTTP_401_UNAUTHORIZED, detail="Invalid token")
    if not body.event or not body.instance:
        raise HTTPException(status_code=HTTP_400_BAD_REQUEST, detail="Missing event or instance")

    log.info("gateway_event_received", gateway_event=body.event, instance=body.instance)
    svc = WhatsAppService(session=session, settings=settings, http=http)
    processed = await svc.handle_gateway_event(event=body.event, instance_name=body.instance, data=body.data)
    return {"success": True, "processed": processed}
