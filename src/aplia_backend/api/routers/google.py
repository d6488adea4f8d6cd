"""
aplia_backend.api.routers.google

Google Calendar: OAuth hand-off, linked accounts, profile links and event import.

`POST /credentials` and `POST /events/import` are callbacks for the automation and
require role=service_role.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

import httpx
from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.status import HTTP_201_CREATED, HTTP_204_NO_CONTENT

from aplia_backend.api.deps import db_session, http_client, settings_dep
from aplia_backend.auth.deps import get_principal, require_roles
from aplia_backend.auth.models import Principal
from aplia_backend.db.models import GoogleCredential
from aplia_backend.services.calendar import CalendarService, build_google_auth_url
from aplia_backend.settings import Settings

router = APIRouter(prefix="/v1/google", tags=["google"])


class OAuthCompleteRequest(BaseModel):
    code: str
    state: str | None = None
    pending_profile_id: uuid.UUID | None = None


class CredentialRegisterRequest(BaseModel):
    user_id: uuid.UUID
    email: str = Field(min_length=3, max_length=256)
    name: str | None = None
    access_token: str | None = None
    refresh_token: str | None = None
    expires_at: datetime | None = None


class LinkRequest(BaseModel):
    credential_id: uuid.UUID
    professional_profile_id: uuid.UUID


class SyncRequest(BaseModel):
    professional_profile_id: uuid.UUID


class EventsImportRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    response: str
    count: int | None = None
    professional_profile_id: uuid.UUID = Field(alias="professionalProfileId")


def _credential(c: GoogleCredential, linked_profiles: list[str]) -> dict[str, Any]:
    return {
        "id": str(c.id),
        "email": c.email,
        "name": c.name,
        "expires_at": c.expires_at.isoformat() if c.expires_at else None,
        "created_at": c.created_at.isoformat(),
        "linked_profile_ids": linked_profiles,
    }


def _service(
    session: AsyncSession = Depends(db_session),
    settings: Settings = Depends(settings_dep),
    http: httpx.AsyncClient = Depends(http_client),
) -> CalendarService:
    return CalendarService(session=session, settings=settings, http=http)


@router.get("/auth-url")
async def auth_url(
    principal: Principal = Depends(get_principal),
    settings: Settings = Depends(settings_dep),
) -> dict[str, str]:
    return {"url": build_google_auth_url(settings, principal.user_id)}


@router.post("/oauth/complete")
async def complete_oauth(
    body: OAuthCompleteRequest,
    principal: Principal = Depends(get_principal),
    svc: CalendarService = Depends(_service),
) -> dict[str, Any]:
    return await svc.complete_oauth(
        user_id=principal.user_id,
        code=body.code,
        state=body.state,
        pending_profile_id=body.pending_profile_id,
    )


@router.get("/credentials")
async def list_credentials(
    principal: Principal = Depends(get_principal),
    svc: CalendarService = Depends(_service),
) -> list[dict[str, Any]]:
    credentials, links = await svc.list_credentials(principal.user_id)
    by_credential: dict[uuid.UUID, list[str]] = {}
    for link in links:
        by_credential.setdefault(link.google_credential_id, []).append(str(link.professional_profile_id))
    return [_credential(c, by_credential.get(c.id, [])) for c in credentials]


@router.post(
    "/credentials",
    status_code=HTTP_201_CREATED,
    dependencies=[Depends(require_roles("service_role"))],
)
async def register_credential(
    body: CredentialRegisterRequest,
    svc: CalendarService = Depends(_service),
) -> dict[str, Any]:
    credential = await svc.register_credential(
        user_id=body.user_id,
        email=body.email,
        name=body.name,
        access_token=body.access_token,
        refresh_token=body.refresh_token,
        expires_at=body.expires_at,
    )
    return _credential(credential, [])


@router.delete("/credentials/{credential_id}", status_code=HTTP_204_NO_CONTENT)
async def disconnect_credential(
    credential_id: uuid.UUID,
    principal: Principal = Depends(get_principal),
    svc: CalendarService = Depends(_service),
) -> None:
    await svc.disconnect(principal.user_id, credential_id)


@router.post("/links", status_code=HTTP_201_CREATED)
async def link_profile(
    body: LinkRequest,
    principal: Principal = Depends(get_principal),
    svc: CalendarService = Depends(_service),
) -> dict[str, str]:
    link = await svc.link_profile(
        user_id=principal.user_id,
        credential_id=body.credential_id,
        profile_id=body.professional_profile_id,
    )
    return {
        "id": str(link.id),
        "credential_id": str(link.google_credential_id),
        "professional_profile_id": str(link.professional_profile_id),
    }


@router.delete("/links/{link_id}", status_code=HTTP_204_NO_CONTENT)
async def unlink_profile(
    link_id: uuid.UUID,
    principal: Principal = Depends(get_principal),
    svc: CalendarService = Depends(_service),
) -> None:
    await svc.unlink(user_id=principal.user_id, link_id=link_id)


@router.post("/sync")
async def sync_events(
    body: SyncRequest,
    principal: Principal = Depends(get_principal),
    svc: CalendarService = Depends(_service),
) -> dict[str, Any]:
    result = await svc.sync_google_events(user_id=principal.user_id, profile_id=body.professional_profile_id)
    return result.as_dict()


@router.post("/events/import", dependencies=[Depends(require_roles("service_role"))])
async def import_events(
    body: EventsImportRequest,
    svc: CalendarService = Depends(_service),
) -> dict[str, Any]:
    summary = await svc.import_google_events(profile_id=body.professional_profile_id, response_json=body.response)
    return {"success": True, **summary}
