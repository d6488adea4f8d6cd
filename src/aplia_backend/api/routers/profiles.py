from __future__ import annotations

import uuid
from typing import Any

import httpx
from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.status import HTTP_201_CREATED, HTTP_204_NO_CONTENT

from aplia_backend.api.deps import db_session, http_client, settings_dep
from aplia_backend.auth.deps import get_principal
from aplia_backend.auth.models import Principal
from aplia_backend.services.profiles import ProfileService, profile_to_dict
from aplia_backend.settings import Settings

router = APIRouter(prefix="/v1/profiles", tags=["profiles"])


class ProfileFields(BaseModel):
    # Practice fields are free text; unknown keys are dropped by the service.
    model_config = ConfigDict(extra="allow")

    fullname: str | None = Field(default=None, max_length=256)
    specialty: str | None = Field(default=None, max_length=256)


class NotifyRequest(BaseModel):
    action: str = "update"


def _service(
    session: AsyncSession = Depends(db_session),
    settings: Settings = Depends(settings_dep),
    http: httpx.AsyncClient = Depends(http_client),
) -> ProfileService:
    return ProfileService(session=session, settings=settings, http=http)


@router.get("")
async def list_profiles(
    principal: Principal = Depends(get_principal),
    svc: ProfileService = Depends(_service),
) -> dict[str, Any]:
    profiles, limits = await svc.list_profiles(principal.user_id)
    return {"profiles": [profile_to_dict(p) for p in profiles], "limits": limits}


@router.post("", status_code=HTTP_201_CREATED)
async def create_profile(
    body: ProfileFields,
    principal: Principal = Depends(get_principal),
    svc: ProfileService = Depends(_service),
) -> dict[str, Any]:
    profile = await svc.create_profile(user_id=principal.user_id, fields=body.model_dump(exclude_none=True))
    return profile_to_dict(profile)


@router.get("/{profile_id}")
async def get_profile(
    profile_id: uuid.UUID,
    principal: Principal = Depends(get_principal),
    svc: ProfileService = Depends(_service),
) -> dict[str, Any]:
    return profile_to_dict(await svc.get_owned(principal.user_id, profile_id))


@router.patch("/{profile_id}")
async def update_profile(
    profile_id: uuid.UUID,
    body: ProfileFields,
    principal: Principal = Depends(get_principal),
    svc: ProfileService = Depends(_service),
) -> dict[str, Any]:
    profile = await svc.get_owned(principal.user_id, profile_id)
    profile = await svc.update_profile(profile, body.model_dump(exclude_unset=True))
    return profile_to_dict(profile)


@router.delete("/{profile_id}", status_code=HTTP_204_NO_CONTENT)
async def delete_profile(
    profile_id: uuid.UUID,
    principal: Principal = Depends(get_principal),
    svc: ProfileService = Depends(_service),
) -> None:
    profile = await svc.get_owned(principal.user_id, profile_id)
    await svc.delete_profile(profile)


@router.post("/{profile_id}/notify")
async def notify_profile(
    profile_id: uuid.UUID,
    body: NotifyRequest | None = None,
    principal: Principal = Depends(get_principal),
    svc: ProfileService = Depends(_service),
) -> dict[str, Any]:
    profile = await svc.get_owned(principal.user_id, profile_id)
    return await svc.notify(profile, action=body.action if body else "update")
