"""
aplia_backend.api.routers.whatsapp

Owner-scoped WhatsApp instance endpoints (create, QR, disconnect, sync, webhook).
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

import httpx
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.status import HTTP_201_CREATED, HTTP_204_NO_CONTENT, HTTP_404_NOT_FOUND

from aplia_backend.api.deps import db_session, http_client, settings_dep
from aplia_backend.auth.deps import get_principal
from aplia_backend.auth.models import Principal
from aplia_backend.db.models import WhatsAppInstance
from aplia_backend.db.repositories.whatsapp_instances import InstanceRepo
from aplia_backend.domain.phone import format_phone_number
from aplia_backend.services.whatsapp import WhatsAppService
from aplia_backend.settings import Settings

router = APIRouter(prefix="/v1/whatsapp/instances", tags=["whatsapp"])


class InstanceCreateRequest(BaseModel):
    display_name: str | None = Field(default=None, max_length=256)
    professional_profile_id: uuid.UUID | None = None
    phone_number: str | None = Field(default=None, max_length=32)


class InstanceUpdateRequest(BaseModel):
    display_name: str | None = Field(default=None, max_length=256)
    professional_profile_id: uuid.UUID | None = None


class AssignProfileRequest(BaseModel):
    professional_profile_id: uuid.UUID


class InstanceResponse(BaseModel):
    id: uuid.UUID
    instance_name: str
    display_name: str | None
    phone_number: str | None
    phone_display: str
    status: str
    qr_code: str | None
    professional_profile_id: uuid.UUID | None
    profile_name: str | None
    profile_picture_url: str | None
    webhook_enabled: bool
    webhook_url: str | None
    last_connected_at: datetime | None
    created_at: datetime
    professional_profile: dict[str, Any] | None = None


def _to_response(
    instance: WhatsAppInstance, *, profile_fullname: str | None = None, profile_specialty: str | None = None
) -> InstanceResponse:
    profile = None
    if profile_fullname is not None:
        profile = {"fullname": profile_fullname, "specialty": profile_specialty}
    return InstanceResponse(
        id=instance.id,
        instance_name=instance.instance_name,
        display_name=instance.display_name,
        phone_number=instance.phone_number,
        phone_display=format_phone_number(instance.phone_number),
        status=instance.status.value,
        qr_code=instance.qr_code,
        professional_profile_id=instance.professional_profile_id,
        profile_name=instance.profile_name,
        profile_picture_url=instance.profile_picture_url,
        webhook_enabled=instance.webhook_enabled,
        webhook_url=instance.webhook_url,
        last_connected_at=instance.last_connected_at,
        created_at=instance.created_at,
        professional_profile=profile,
    )


def _service(
    session: AsyncSession = Depends(db_session),
    settings: Settings = Depends(settings_dep),
    http: httpx.AsyncClient = Depends(http_client),
) -> WhatsAppService:
    return WhatsAppService(session=session, settings=settings, http=http)


async def _owned_instance(
    instance_id: uuid.UUID,
    principal: Principal = Depends(get_principal),
    session: AsyncSession = Depends(db_session),
) -> WhatsAppInstance:
    instance = await InstanceRepo(session).get(instance_id)
    if instance is None or not principal.owns(instance.user_id):
        raise HTTPException(status_code=HTTP_404_NOT_FOUND, detail="Instance not found")
    return instance


@router.get("", response_model=list[InstanceResponse])
async def list_instances(
    principal: Principal = Depends(get_principal),
    svc: WhatsAppService = Depends(_service),
) -> list[InstanceResponse]:
    rows = await svc.list_instances(principal.user_id)
    return [
        _to_response(instance, profile_fullname=fullname, profile_specialty=specialty)
        for instance, fullname, specialty in rows
    ]


@router.post("", response_model=InstanceResponse, status_code=HTTP_201_CREATED)
async def create_instance(
    body: InstanceCreateRequest,
    principal: Principal = Depends(get_principal),
    svc: WhatsAppService = Depends(_service),
) -> InstanceResponse:
    instance = await svc.create_instance(
        user_id=principal.user_id,
        display_name=body.display_name,
        professional_profile_id=body.professional_profile_id,
        phone_number=body.phone_number,
    )
    return _to_response(instance)


@router.patch("/{instance_id}", response_model=InstanceResponse)
async def update_instance(
    body: InstanceUpdateRequest,
    instance: WhatsAppInstance = Depends(_owned_instance),
    svc: WhatsAppService = Depends(_service),
) -> InstanceResponse:
    instance = await svc.update_instance(instance, display_name=body.display_name)
    if body.professional_profile_id is not None:
        instance = await svc.assign_profile(instance, body.professional_profile_id)
    return _to_response(instance)


@router.delete("/{instance_id}", status_code=HTTP_204_NO_CONTENT)
async def delete_instance(
    instance: WhatsAppInstance = Depends(_owned_instance),
    svc: WhatsAppService = Depends(_service),
) -> None:
    await svc.delete_instance(instance)


@router.post("/{instance_id}/qr")
async def refresh_qr(
    instance: WhatsAppInstance = Depends(_owned_instance),
    svc: WhatsAppService = Depends(_service),
) -> dict[str, Any]:
    qr_code = await svc.refresh_qr(instance)
    return {"qr_code": qr_code, "status": instance.status.value}


@router.post("/{instance_id}/disconnect")
async def disconnect_instance(
    instance: WhatsAppInstance = Depends(_owned_instance),
    svc: WhatsAppService = Depends(_service),
) -> dict[str, Any]:
    await svc.disconnect(instance)
    return {"success": True, "status": instance.status.value}


@router.post("/{instance_id}/sync", response_model=InstanceResponse)
async def sync_instance(
    instance: WhatsAppInstance = Depends(_owned_instance),
    svc: WhatsAppService = Depends(_service),
) -> InstanceResponse:
    await svc.sync_instance(instance)
    return _to_response(instance)


@router.post("/{instance_id}/webhook")
async def enforce_webhook(
    instance: WhatsAppInstance = Depends(_owned_instance),
    svc: WhatsAppService = Depends(_service),
) -> dict[str, Any]:
    return await svc.enforce_webhook(instance)


@router.get("/{instance_id}/info")
async def instance_info(
    instance: WhatsAppInstance = Depends(_owned_instance),
    svc: WhatsAppService = Depends(_service),
) -> dict[str, Any]:
    info = await svc.fetch_instance_info(instance.instance_name)
    return info.as_dict()


@router.post("/{instance_id}/assign-profile", response_model=InstanceResponse)
async def assign_profile(
    body: AssignProfileRequest,
    instance: WhatsAppInstance = Depends(_owned_instance),
    svc: WhatsAppService = Depends(_service),
) -> InstanceResponse:
    instance = await svc.assign_profile(instance, body.professional_profile_id)
    return _to_response(instance)
