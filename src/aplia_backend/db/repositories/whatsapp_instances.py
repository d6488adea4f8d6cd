"""
aplia_backend.db.repositories.whatsapp_instances

Repository for `WhatsAppInstance` rows.
"""

from __future__ import annotations

import uuid
from typing import Any

from sqlalchemy import desc, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from aplia_backend.db.models import InstanceStatus, ProfessionalProfile, WhatsAppInstance


class InstanceRepo:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, *, user_id: uuid.UUID, instance_name: str, **fields: Any) -> WhatsAppInstance:
        instance = WhatsAppInstance(user_id=user_id, instance_name=instance_name, **fields)
        self._session.add(instance)
        await self._session.flush()
        return instance

    async def get(self, instance_id: uuid.UUID) -> WhatsAppInstance | None:
        return await self._session.get(WhatsAppInstance, instance_id)

    async def get_by_name(self, instance_name: str) -> WhatsAppInstance | None:
        stmt = select(WhatsAppInstance).where(WhatsAppInstance.instance_name == instance_name)
        return (await self._session.execute(stmt)).scalar_one_or_none()

    async def get_by_display_name(
        self, *, user_id: uuid.UUID, display_name: str
    ) -> WhatsAppInstance | None:
        stmt = select(WhatsAppInstance).where(
            WhatsAppInstance.user_id == user_id,
            WhatsAppInstance.display_name == display_name,
        )
        return (await self._session.execute(stmt)).scalar_one_or_none()

    async def list_for_user(self, user_id: uuid.UUID) -> list[WhatsAppInstance]:
        stmt = (
            select(WhatsAppInstance)
            .where(WhatsAppInstance.user_id == user_id)
            .order_by(desc(WhatsAppInstance.created_at))
        )
        return list((await self._session.execute(stmt)).scalars().all())

    async def list_for_user_with_profiles(
        self, user_id: uuid.UUID
    ) -> list[tuple[WhatsAppInstance, str | None, str | None]]:
        stmt = (
            select(WhatsAppInstance, ProfessionalProfile.fullname, ProfessionalProfile.specialty)
            .outerjoin(
                ProfessionalProfile,
                ProfessionalProfile.id == WhatsAppInstance.professional_profile_id,
            )
            .where(WhatsAppInstance.user_id == user_id)
            .order_by(desc(WhatsAppInstance.created_at))
        )
        return [(row[0], row[1], row[2]) for row in (await self._session.execute(stmt)).all()]

    async def list_not_connected(self) -> list[WhatsAppInstance]:
        stmt = select(WhatsAppInstance).where(WhatsAppInstance.status != InstanceStatus.connected)
        return list((await self._session.execute(stmt)).scalars().all())

    async def count_for_user(self, user_id: uuid.UUID, *, status: InstanceStatus | None = None) -> int:
        stmt = select(func.count()).select_from(WhatsAppInstance).where(
            WhatsAppInstance.user_id == user_id
        )
        if status is not None:
            stmt = stmt.where(WhatsAppInstance.status == status)
        return int((await self._session.execute(stmt)).scalar_one())

    async def delete(self, instance: WhatsAppInstance) -> None:
        await self._session.delete(instance)
        await self._session.flush()
