from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from aplia_backend.db.models import Appointment


class AppointmentRepo:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, *, user_id: uuid.UUID, **fields: Any) -> Appointment:
        appointment = Appointment(user_id=user_id, **fields)
        self._session.add(appointment)
        await self._session.flush()
        return appointment

    async def get(self, appointment_id: uuid.UUID) -> Appointment | None:
        return await self._session.get(Appointment, appointment_id)

    async def list_for_user(
        self,
        user_id: uuid.UUID,
        *,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[Appointment]:
        stmt = select(Appointment).where(Appointment.user_id == user_id)
        if start is not None:
            stmt = stmt.where(Appointment.appointment_date >= start)
        if end is not None:
            stmt = stmt.where(Appointment.appointment_date < end)
        stmt = stmt.order_by(Appointment.appointment_date)
        return list((await self._session.execute(stmt)).scalars().all())

    async def existing_google_event_ids(self, user_id: uuid.UUID, event_ids: list[str]) -> set[str]:
        if not event_ids:
            return set()
        stmt = select(Appointment.google_event_id).where(
            Appointment.user_id == user_id,
            Appointment.google_event_id.in_(event_ids),
        )
        return {eid for eid in (await self._session.execute(stmt)).scalars().all() if eid}

    async def count_since(self, user_id: uuid.UUID, since: datetime) -> int:
        stmt = select(func.count()).select_from(Appointment).where(
            Appointment.user_id == user_id,
            Appointment.appointment_date >= since,
        )
        return int((await self._session.execute(stmt)).scalar_one())

    async def status_counts(self, user_id: uuid.UUID, *, start: datetime) -> dict[str, int]:
        stmt = (
            select(Appointment.status, func.count())
            .where(Appointment.user_id == user_id, Appointment.appointment_date >= start)
            .group_by(Appointment.status)
        )
        return {str(status): int(n) for status, n in (await self._session.execute(stmt)).all()}

    async def delete(self, appointment: Appointment) -> None:
        await self._session.delete(appointment)
        await self._session.flush()
