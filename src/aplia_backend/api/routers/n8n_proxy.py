"""
aplia_backend.api.routers.n8n_proxy

Authenticated proxy to the allow-listed automation webhooks.

The caller names an endpoint key (never a URL); the payload is stamped with the
caller's user id before it is forwarded.
"""

from __future__ import annotations

from typing import Any

import httpx
from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from starlette.status import HTTP_400_BAD_REQUEST, HTTP_502_BAD_GATEWAY

from aplia_backend.api.deps import http_client, settings_dep
from aplia_backend.auth.deps import get_principal
from aplia_backend.auth.models import Principal
from aplia_backend.integrations.n8n import N8nClient
from aplia_backend.observability.logging import get_logger
from aplia_backend.settings import Settings

log = get_logger(__name__)

router = APIRouter(prefix="/v1", tags=["n8n"])


class ProxyRequest(BaseModel):
    endpoint: str | None = None
    payload: Any = None


@router.post("/n8n-proxy")
async def n8n_proxy(
    body: ProxyRequest,
    principal: Principal = Depends(get_principal),
    settings: Settings = Depends(settings_dep),
    http: httpx.AsyncClient = Depends(http_client),
) -> JSONResponse:
    if not body.endpoint or body.payload is None:
        raise HTTPException(status_code=HTTP_400_BAD_REQUEST, detail="Missing endpoint or payload")

    client = N8nClient(settings=settings, http=http)
    try:
        result = await client.forward(endpoint=body.endpoint, payload=body.payload, user_id=principal.user_id)
    except httpx.HTTPError as e:
        log.warning("n8n_unreachable", endpoint=body.endpoint, error=str(e))
        raise HTTPException(status_code=HTTP_502_BAD_GATEWAY, detail="Automation webhook unreachable") from e

    return JSONResponse(status_code=200 if result.success else result.status, content=result.as_dict())
