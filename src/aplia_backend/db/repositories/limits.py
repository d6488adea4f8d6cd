"""
aplia_backend.db.repositories.limits

Repositories for per-user plan limits and the usage event log.
"""

from __future__ import annotations

import uuid
from datetime import date
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from aplia_backend.db.models import UsageEvent, UserLimits
from aplia_backend.domain.limits import PlanLimits


class LimitsRepo:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, user_id: uuid.UUID) -> UserLimits | None:
        stmt = select(UserLimits).where(UserLimits.user_id == user_id)
        return (await self._session.execute(stmt)).scalar_one_or_none()

    async def upsert(
        self,
        *,
        user_id: uuid.UUID,
        limits: PlanLimits,
        subscription_id: uuid.UUID | None,
    ) -> UserLimits:
        row = await self.get(user_id)
        if row is None:
            row = UserLimits(
                user_id=user_id,
                used_conversations_month=0,
                used_appointments_month=0,
                last_usage_reset=date.today(),
            )
            self._session.add(row)
        row.subscription_id = subscription_id
        row.max_assistants = limits.max_assistants
        row.max_instances = limits.max_instances
        row.max_conversations_month = limits.max_conversations_month
        row.max_appointments_month = limits.max_appointments_month
        await self._session.flush()
        return row


class UsageRepo:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def add_event(
        self,
        *,
        user_id: uuid.UUID,
        resource_type: str,
        resource_id: uuid.UUID | None,
        subscription_id: uuid.UUID | None = None,
        details: dict[str, Any] | None = None,
    ) -> UsageEvent:
        event = UsageEvent(
            user_id=user_id,
            subscription_id=subscription_id,
            resource_type=resource_type,
            resource_id=resource_id,
            details=details or {},
        )
        self._session.add(event)
        await self._session.flush()
        return event
