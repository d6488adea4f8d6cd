"""
aplia_backend.services.scheduling

Appointments: local reads/writes plus calendar writes routed through the automation.

Responsibilities:
- List/get/patch/delete the local appointment mirror.
- Build `agendamento` queries for single bookings and schedule blocks.
- Forward cancel / delete / reschedule requests for calendar-backed appointments.

Notes:
- New bookings are created by the automation (it writes the calendar event and the
  appointment row); this service only forwards the request and books usage.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import UTC, date, datetime, timedelta
from typing import Any

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from aplia_backend.db.models import Appointment, AppointmentStatus
from aplia_backend.db.repositories.appointments import AppointmentRepo
from aplia_backend.db.repositories.google import GoogleRepo
from aplia_backend.domain.limits import ResourceType
from aplia_backend.domain.phone import to_e164_br
from aplia_backend.integrations.n8n import N8nClient, ProxyResult
from aplia_backend.observability.logging import get_logger
from aplia_backend.services.errors import NotFoundError, UpstreamError, ValidationFailed
from aplia_backend.services.usage import UsageService
from aplia_backend.settings import Settings

log = get_logger(__name__)

MAX_BLOCK_SLOTS = 500
FULL_DAY_MINUTES = 24 * 60

# Status labels used by the booking form, as the automation expects them.
STATUS_FOR_AUTOMATION = {
    "agendado": "schedule",
    "confirmado": "confirmed",
    "cancelled": "cancelled",
    "blocked": "blocked",
}


@dataclass(frozen=True, slots=True)
class Slot:
    start: datetime
    end: datetime

    @property
    def minutes(self) -> int:
        return int((self.end - self.start).total_seconds() // 60)


@dataclass(slots=True)
class ScheduleRequest:
    professional_profile_id: uuid.UUID
    patient_name: str
    appointment_date: datetime
    patient_phone: str = ""
    patient_email: str = ""
    appointment_type: str | None = None
    duration_minutes: int = 60
    status: str = "agendado"
    notes: str | None = None


def map_status(status: str) -> str:
    return STATUS_FOR_AUTOMATION.get(status, status)


def format_automation_date(value: datetime) -> str:
    """
    Wall-clock date as the automation expects it: "YYYY-MM-DD HH:MM:00+00".
    """

    return f"{value:%Y-%m-%d %H:%M}:00+00"


def to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(UTC).replace(tzinfo=None)


def build_block_slots(start: datetime, end: datetime, interval_minutes: int) -> list[Slot]:
    if interval_minutes <= 0:
        raise ValidationFailed("interval_minutes must be positive")
    step = timedelta(minutes=interval_minutes)
    slots: list[Slot] = []
    current = start
    while current < end:
        slots.append(Slot(start=current, end=current + step))
        current += step
    return slots


def build_full_day_slots(start_day: date, end_day: date) -> list[Slot]:
    slots: list[Slot] = []
    for offset in range((end_day - start_day).days + 1):
        day_start = datetime.combine(start_day + timedelta(days=offset), datetime.min.time())
        slots.append(Slot(start=day_start, end=day_start + timedelta(minutes=FULL_DAY_MINUTES)))
    return slots


def default_notes(req: ScheduleRequest, phone: str) -> str:
    return (
        f"Paciente: {req.patient_name}. Telefone: {phone}. "
        f"E-mail: {req.patient_email or 'Não informado'}. "
        f"Motivo: {req.appointment_type or 'consulta'}."
    )


class SchedulingService:
    def __init__(self, *, session: AsyncSession, settings: Settings, http: httpx.AsyncClient) -> None:
        self._session = session
        self._settings = settings
        self._repo = AppointmentRepo(session)
        self._n8n = N8nClient(settings=settings, http=http)

    async def list_appointments(
        self, user_id: uuid.UUID, *, start: datetime | None = None, end: datetime | None = None
    ) -> list[Appointment]:
        return await self._repo.list_for_user(
            user_id,
            start=to_naive_utc(start) if start else None,
            end=to_naive_utc(end) if end else None,
        )

    async def update_appointment(
        self, appointment: Appointment, *, status: str | None = None, notes: str | None = None
    ) -> Appointment:
        if status is not None:
            if status not in {s.value for s in AppointmentStatus}:
                raise ValidationFailed(f"Invalid status: {status}")
            appointment.status = status
        if notes is not None:
            appointment.notes = notes
        await self._session.commit()
        return appointment

    async def delete_appointment(self, appointment: Appointment) -> None:
        await self._repo.delete(appointment)
        await self._session.commit()

    async def linked_google_email(self, profile_id: uuid.UUID) -> str | None:
        return await GoogleRepo(self._session).email_for_profile(profile_id)

    async def _send(self, endpoint: str, query: dict[str, Any], user_id: uuid.UUID) -> ProxyResult:
        result = await self._n8n.send_query(endpoint=endpoint, query=query, user_id=user_id)
        if not result.success:
            raise UpstreamError(
                f"Automation '{endpoint}' failed with status {result.status}",
                status_code=result.status if 400 <= result.status < 500 else 502,
            )
        return result

    async def schedule_appointment(self, *, user_id: uuid.UUID, req: ScheduleRequest) -> ProxyResult:
        if not req.patient_name.strip():
            raise ValidationFailed("patient_name is required")

        usage = UsageService(session=self._session)
        await usage.check_limit(user_id, ResourceType.appointment)

        phone = to_e164_br(req.patient_phone)
        query: dict[str, Any] = {
            "action": "create",
            "user_id": str(user_id),
            "agent_id": str(req.professional_profile_id),
            "patient_name": req.patient_name,
            "patient_phone": phone,
            "patient_email": req.patient_email or "",
            "appointment_date": format_automation_date(req.appointment_date),
            "duration_minutes": req.duration_minutes,
            "status": map_status(req.status),
            "summary": f"{req.appointment_type or 'Consulta'} com {req.patient_name}",
            "notes": req.notes or default_notes(req, phone),
        }
        my_email = await self.linked_google_email(req.professional_profile_id)
        if my_email:
            query["my_email"] = my_email
        else:
            log.info("schedule_without_google", profile_id=str(req.professional_profile_id))

        result = await self._send("agendamento", query, user_id)
        await usage.record_usage(
            user_id,
            ResourceType.appointment,
            None,
            details={"patient_name": req.patient_name, "appointment_date": query["appointment_date"]},
        )
        await self._session.commit()
        return result

    async def block_schedule(
        self,
        *,
        user_id: uuid.UUID,
        professional_profile_id: uuid.UUID,
        start: datetime,
        end: datetime,
        interval_minutes: int = 30,
        reason: str | None = None,
        full_day: bool = False,
    ) -> dict[str, int]:
        if full_day:
            slots = build_full_day_slots(start.date(), end.date())
        else:
            if start.date() == end.date() and end <= start:
                raise ValidationFailed("End time must be after start time")
            slots = build_block_slots(start, end, interval_minutes)

        if not slots:
            raise ValidationFailed("No slots generated for the given period")
        if len(slots) > MAX_BLOCK_SLOTS:
            raise ValidationFailed(f"At most {MAX_BLOCK_SLOTS} slots per block; shorten the period or widen the interval")

        my_email = await self.linked_google_email(professional_profile_id)
        reason_prefix = f"Motivo: {reason}. " if reason else ""

        success = errors = 0
        for slot in slots:
            detail = "Dia inteiro bloqueado" if full_day else f"Horário bloqueado até {slot.end:%H:%M}"
            query: dict[str, Any] = {
                "action": "create",
                "user_id": str(user_id),
                "agent_id": str(professional_profile_id),
                "patient_name": "Bloqueado",
                "patient_phone": "",
                "patient_email": "",
                "appointment_date": format_automation_date(slot.start),
                "duration_minutes": FULL_DAY_MINUTES if full_day else slot.minutes,
                "status": AppointmentStatus.blocked.value,
                "appointment_type": "blocked",
                "summary": "Bloqueio de agenda",
                "notes": f"{reason_prefix}{detail}.",
            }
            if full_day:
                query["full_day"] = True
            if my_email:
                query["my_email"] = my_email
            try:
                await self._send("agendamento", query, user_id)
                success += 1
            except (UpstreamError, httpx.HTTPError) as e:
                log.warning("block_slot_failed", slot_start=query["appointment_date"], error=str(e))
                errors += 1

        log.info("schedule_blocked", slots=len(slots), success=success, errors=errors)
        return {"total": len(slots), "success": success, "errors": errors}

    def _calendar_query(self, action: str, appointment: Appointment) -> dict[str, Any]:
        if not appointment.google_event_id:
            raise ValidationFailed("Appointment is not linked to a calendar event")
        return {
            "action": action,
            "user_id": str(appointment.user_id),
            "appointment_id": str(appointment.id),
            "google_event_id": appointment.google_event_id,
            "google_calendar_id": appointment.google_calendar_id or "primary",
            "patient_name": appointment.patient_name,
        }

    async def cancel_appointment(self, appointment: Appointment) -> ProxyResult:
        query = self._calendar_query("cancel", appointment)
        result = await self._send("cancelamento", query, appointment.user_id)
        appointment.status = AppointmentStatus.cancelled
        await self._session.commit()
        return result

    async def delete_appointment_remote(self, appointment: Appointment) -> ProxyResult:
        query = self._calendar_query("delete", appointment)
        result = await self._send("deletar", query, appointment.user_id)
        await self._repo.delete(appointment)
        await self._session.commit()
        return result

    async def reschedule_appointment(
        self, appointment: Appointment, *, new_date: datetime, duration_minutes: int | None = None
    ) -> ProxyResult:
        query = self._calendar_query("reschedule", appointment)
        query["appointment_date"] = format_automation_date(new_date)
        query["duration_minutes"] = duration_minutes or appointment.duration_minutes or 60
        result = await self._send("remarcar", query, appointment.user_id)

        appointment.appointment_date = to_naive_utc(new_date)
        if duration_minutes:
            appointment.duration_minutes = duration_minutes
        appointment.status = AppointmentStatus.rescheduled
        await self._session.commit()
        return result


async def get_owned_appointment(session: AsyncSession, appointment_id: uuid.UUID, user_id: uuid.UUID) -> Appointment:
    appointment = await AppointmentRepo(session).get(appointment_id)
    if appointment is None or appointment.user_id != user_id:
        raise NotFoundError("Appointment not found")
    return appointment
