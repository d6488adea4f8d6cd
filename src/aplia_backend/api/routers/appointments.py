"""
aplia_backend.api.routers.appointments

Appointments: the local mirror plus calendar writes routed through the automation.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from typing import Any, Literal

import httpx
from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.status import HTTP_204_NO_CONTENT, HTTP_404_NOT_FOUND

from aplia_backend.api.deps import db_session, http_client, settings_dep
from aplia_backend.auth.deps import get_principal
from aplia_backend.auth.models import Principal
from aplia_backend.db.models import Appointment, utcnow
from aplia_backend.db.repositories.profiles import ProfileRepo
from aplia_backend.services.scheduling import ScheduleRequest, SchedulingService, get_owned_appointment
from aplia_backend.services.usage import UsageService
from aplia_backend.settings import Settings

router = APIRouter(prefix="/v1/appointments", tags=["appointments"])


class ScheduleBody(BaseModel):
    professional_profile_id: uuid.UUID
    patient_name: str = Field(min_length=1, max_length=256)
    appointment_date: datetime
    patient_phone: str = ""
    patient_email: str = ""
    appointment_type: str | None = None
    duration_minutes: int = Field(default=60, ge=1, le=24 * 60)
    status: str = "agendado"
    notes: str | None = None


class BlockBody(BaseModel):
    professional_profile_id: uuid.UUID
    start: datetime
    end: datetime
    interval_minutes: int = Field(default=30, ge=1)
    reason: str | None = None
    full_day: bool = False


class AppointmentPatch(BaseModel):
    status: str | None = None
    notes: str | None = None


class RescheduleBody(BaseModel):
    new_date: datetime
    duration_minutes: int | None = Field(default=None, ge=1, le=24 * 60)


def _utc(value: datetime | None) -> str | None:
    # Stored as naive UTC.
    return value.replace(tzinfo=UTC).isoformat() if value else None


def _appointment(a: Appointment) -> dict[str, Any]:
    return {
        "id": str(a.id),
        "patient_name": a.patient_name,
        "patient_phone": a.patient_phone,
        "patient_email": a.patient_email,
        "appointment_date": _utc(a.appointment_date),
        "duration_minutes": a.duration_minutes,
        "appointment_type": a.appointment_type,
        "status": a.status,
        "notes": a.notes,
        "agent_id": str(a.agent_id) if a.agent_id else None,
        "professional_profile_id": str(a.professional_profile_id) if a.professional_profile_id else None,
        "conversation_id": str(a.conversation_id) if a.conversation_id else None,
        "google_event_id": a.google_event_id,
        "google_calendar_id": a.google_calendar_id,
        "timezone": a.timezone,
        "created_at": _utc(a.created_at),
    }


def _service(
    session: AsyncSession = Depends(db_session),
    settings: Settings = Depends(settings_dep),
    http: httpx.AsyncClient = Depends(http_client),
) -> SchedulingService:
    return SchedulingService(session=session, settings=settings, http=http)


async def _require_profile(session: AsyncSession, principal: Principal, profile_id: uuid.UUID) -> None:
    profile = await ProfileRepo(session).get(profile_id)
    if profile is None or not principal.owns(profile.user_id):
        raise HTTPException(status_code=HTTP_404_NOT_FOUND, detail="Professional profile not found")


async def _owned(
    appointment_id: uuid.UUID,
    principal: Principal = Depends(get_principal),
    session: AsyncSession = Depends(db_session),
) -> Appointment:
    return await get_owned_appointment(session, appointment_id, principal.user_id)


@router.get("")
async def list_appointments(
    start: datetime | None = Query(default=None),
    end: datetime | None = Query(default=None),
    principal: Principal = Depends(get_principal),
    svc: SchedulingService = Depends(_service),
) -> list[dict[str, Any]]:
    return [_appointment(a) for a in await svc.list_appointments(principal.user_id, start=start, end=end)]


@router.get("/stats")
async def appointment_stats(
    period: Literal["today", "7days", "30days"] = Query(default="30days"),
    principal: Principal = Depends(get_principal),
    session: AsyncSession = Depends(db_session),
) -> dict[str, Any]:
    return await UsageService(session=session).appointment_stats(principal.user_id, period=period, now=utcnow())


@router.post("/schedule")
async def schedule_appointment(
    body: ScheduleBody,
    principal: Principal = Depends(get_principal),
    session: AsyncSession = Depends(db_session),
    svc: SchedulingService = Depends(_service),
) -> dict[str, Any]:
    await _require_profile(session, principal, body.professional_profile_id)
    result = await svc.schedule_appointment(user_id=principal.user_id, req=ScheduleRequest(**body.model_dump()))
    return result.as_dict()


@router.post("/block")
async def block_schedule(
    body: BlockBody,
    principal: Principal = Depends(get_principal),
    session: AsyncSession = Depends(db_session),
    svc: SchedulingService = Depends(_service),
) -> dict[str, int]:
    await _require_profile(session, principal, body.professional_profile_id)
    return await svc.block_schedule(
        user_id=principal.user_id,
        professional_profile_id=body.professional_profile_id,
        start=body.start,
        end=body.end,
        interval_minutes=body.interval_minutes,
        reason=body.reason,
        full_day=body.full_day,
    )


@router.get("/{appointment_id}")
async def get_appointment(appointment: Appointment = Depends(_owned)) -> dict[str, Any]:
    return _appointment(appointment)


@router.patch("/{appointment_id}")
async def update_appointment(
    body: AppointmentPatch,
    appointment: Appointment = Depends(_owned),
    svc: SchedulingService = Depends(_service),
) -> dict[str, Any]:
    appointment = await svc.update_appointment(appointment, status=body.status, notes=body.notes)
    return _appointment(appointment)


@router.delete("/{appointment_id}", status_code=HTTP_204_NO_CONTENT)
async def delete_appointment(
    remote: bool = Query(default=False, description="Also delete the calendar event"),
    appointment: Appointment = Depends(_owned),
    svc: SchedulingService = Depends(_service),
) -> None:
    if remote:
        await svc.delete_appointment_remote(appointment)
    else:
        await svc.delete_appointment(appointment)


@router.post("/{appointment_id}/cancel")
async def cancel_appointment(
    appointment: Appointment = Depends(_owned),
    svc: SchedulingService = Depends(_service),
) -> dict[str, Any]:
    result = await svc.cancel_appointment(appointment)
    return {**result.as_dict(), "appointment": _appointment(appointment)}


@router.post("/{appointment_id}/reschedule")
async def reschedule_appointment(
    body: RescheduleBody,
    appointment: Appointment = Depends(_owned),
    svc: SchedulingService = Depends(_service),
) -> dict[str, Any]:
    result = await svc.reschedule_appointment(
        appointment, new_date=body.new_date, duration_minutes=body.duration_minutes
    )
    return {**result.as_dict(), "appointment": _appointment(appointment)}
