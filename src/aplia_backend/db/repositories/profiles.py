from __future__ import annotations

import uuid
from typing import Any

from sqlalchemy import desc, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from aplia_backend.db.models import ProfessionalProfile


class ProfileRepo:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, *, user_id: uuid.UUID, fields: dict[str, Any]) -> ProfessionalProfile:
        profile = ProfessionalProfile(user_id=user_id, **fields)
        self._session.add(profile)
        await self._session.flush()
        return profile

    async def get(self, profile_id: uuid.UUID) -> ProfessionalProfile | None:
        return await self._session.get(ProfessionalProfile, profile_id)

    async def list_for_user(self, user_id: uuid.UUID) -> list[ProfessionalProfile]:
        stmt = (
            select(ProfessionalProfile)
            .where(ProfessionalProfile.user_id == user_id)
            .order_by(desc(ProfessionalProfile.created_at))
        )
        return list((await self._session.execute(stmt)).scalars().all())

    async def count_for_user(self, user_id: uuid.UUID) -> int:
        stmt = select(func.count()).select_from(ProfessionalProfile).where(
            ProfessionalProfile.user_id == user_id
        )
        return int((await self._session.execute(stmt)).scalar_one())

    async def update(self, profile: ProfessionalProfile, *, fields: dict[str, Any]) -> ProfessionalProfile:
        for key, value in fields.items():
            setattr(profile, key, value)
        await self._session.flush()
        return profile

    async def delete(self, profile: ProfessionalProfile) -> None:
        await self._session.delete(profile)
        await self._session.flush()

    async def names_for(self, profile_ids: list[uuid.UUID]) -> dict[uuid.UUID, str]:
        if not profile_ids:
            return {}
        stmt = select(ProfessionalProfile.id, ProfessionalProfile.fullname).where(
            ProfessionalProfile.id.in_(profile_ids)
        )
        return {pid: name for pid, name in (await self._session.execute(stmt)).all()}
