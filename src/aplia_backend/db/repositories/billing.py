"""
aplia_backend.db.repositories.billing

Repositories for plans, billing customers, subscriptions and charges.
"""

from __future__ import annotations

import uuid
from typing import Any

from sqlalchemy import desc, select
from sqlalchemy.ext.asyncio import AsyncSession

from aplia_backend.db.models import (
    Charge,
    Customer,
    Plan,
    Subscription,
    SubscriptionStatus,
)


class PlanRepo:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, plan_id: uuid.UUID) -> Plan | None:
        return await self._session.get(Plan, plan_id)

    async def list_active(self) -> list[Plan]:
        stmt = select(Plan).where(Plan.is_active.is_(True)).order_by(Plan.price)
        return list((await self._session.execute(stmt)).scalars().all())

    async def create(self, **fields: Any) -> Plan:
        plan = Plan(**fields)
        self._session.add(plan)
        await self._session.flush()
        return plan


class CustomerRepo:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_for_user(self, user_id: uuid.UUID) -> Customer | None:
        stmt = select(Customer).where(Customer.user_id == user_id)
        return (await self._session.execute(stmt)).scalar_one_or_none()

    async def upsert(self, *, user_id: uuid.UUID, fields: dict[str, Any]) -> Customer:
        customer = await self.get_for_user(user_id)
        if customer is None:
            customer = Customer(user_id=user_id, **fields)
            self._session.add(customer)
        else:
            for key, value in fields.items():
                setattr(customer, key, value)
        await self._session.flush()
        return customer


class SubscriptionRepo:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, **fields: Any) -> Subscription:
        subscription = Subscription(**fields)
        self._session.add(subscription)
        await self._session.flush()
        return subscription

    async def active_for_customer(self, customer_id: uuid.UUID) -> Subscription | None:
        stmt = (
            select(Subscription)
            .where(
                Subscription.customer_id == customer_id,
                Subscription.status == SubscriptionStatus.active,
            )
            .order_by(desc(Subscription.created_at))
            .limit(1)
        )
        return (await self._session.execute(stmt)).scalar_one_or_none()

    async def list_active_for_customer(self, customer_id: uuid.UUID) -> list[Subscription]:
        stmt = select(Subscription).where(
            Subscription.customer_id == customer_id,
            Subscription.status == SubscriptionStatus.active,
        )
        return list((await self._session.execute(stmt)).scalars().all())

    async def current_for_customer(self, customer_id: uuid.UUID) -> Subscription | None:
        # Active wins over pending; newest first within a status.
        stmt = (
            select(Subscription)
            .where(
                Subscription.customer_id == customer_id,
                Subscription.status.in_([SubscriptionStatus.active, SubscriptionStatus.pending]),
            )
            .order_by(desc(Subscription.created_at))
        )
        rows = list((await self._session.execute(stmt)).scalars().all())
        for row in rows:
            if row.status == SubscriptionStatus.active:
                return row
        return rows[0] if rows else None


class ChargeRepo:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, **fields: Any) -> Charge:
        charge = Charge(**fields)
        self._session.add(charge)
        await self._session.flush()
        return charge

    async def recent_for_customer(self, customer_id: uuid.UUID, *, limit: int = 10) -> list[Charge]:
        stmt = (
            select(Charge)
            .where(Charge.customer_id == customer_id)
            .order_by(desc(Charge.created_at))
            .limit(limit)
        )
        return list((await self._session.execute(stmt)).scalars().all())
