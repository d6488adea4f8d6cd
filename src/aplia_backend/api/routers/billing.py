"""
aplia_backend.api.routers.billing

Plans, the caller's subscription and payment history, plus Asaas-backed writes.
"""

from __future__ import annotations

import uuid
from datetime import date
from decimal import Decimal
from typing import Any

import httpx
from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from aplia_backend.api.deps import db_session, http_client, settings_dep
from aplia_backend.auth.deps import get_principal
from aplia_backend.auth.models import Principal
from aplia_backend.db.models import Charge, Customer, Plan, Subscription
from aplia_backend.domain.limits import format_limit
from aplia_backend.services.billing import BillingService
from aplia_backend.settings import Settings

router = APIRouter(prefix="/v1/billing", tags=["billing"])


class CustomerRequest(BaseModel):
    name: str = Field(min_length=1, max_length=256)
    email: str = Field(min_length=3, max_length=256)
    phone: str | None = Field(default=None, max_length=32)
    tax_id: str | None = Field(default=None, max_length=32)
    postal_code: str | None = None
    address: str | None = None
    address_number: str | None = None
    complement: str | None = None
    district: str | None = None
    city: str | None = None
    state: str | None = Field(default=None, max_length=2)


class CreateSubscriptionRequest(BaseModel):
    plan_id: uuid.UUID
    # Asaas card shape: number, holderName, expiryMonth, expiryYear, ccv, holderInfo.
    credit_card: dict[str, Any] | None = None


class ChangeSubscriptionRequest(BaseModel):
    new_plan_id: uuid.UUID


def _money(value: Decimal) -> float:
    return float(value)


def _iso(value: date | None) -> str | None:
    return value.isoformat() if value else None


def _plan(p: Plan) -> dict[str, Any]:
    return {
        "id": str(p.id),
        "name": p.name,
        "description": p.description,
        "price": _money(p.price),
        "period": p.period,
        "max_assistants": p.max_assistants,
        "max_instances": p.max_instances,
        "max_conversations_month": p.max_conversations_month,
        "max_appointments_month": p.max_appointments_month,
        "limits_display": {
            "assistants": format_limit(p.max_assistants),
            "instances": format_limit(p.max_instances),
            "conversations_month": format_limit(p.max_conversations_month),
            "appointments_month": format_limit(p.max_appointments_month),
        },
        "features": p.features,
    }


def _subscription(s: Subscription) -> dict[str, Any]:
    return {
        "id": str(s.id),
        "plan_id": str(s.plan_id),
        "status": s.status.value,
        "start_date": _iso(s.start_date),
        "end_date": _iso(s.end_date),
        "next_charge_date": _iso(s.next_charge_date),
        "asaas_subscription_id": s.asaas_subscription_id,
    }


def _charge(c: Charge) -> dict[str, Any]:
    return {
        "id": str(c.id),
        "subscription_id": str(c.subscription_id) if c.subscription_id else None,
        "amount": _money(c.amount),
        "status": c.status.value,
        "description": c.description,
        "due_date": _iso(c.due_date),
        "paid_date": _iso(c.paid_date),
        "payment_method": c.payment_method,
        "payment_link": c.payment_link,
    }


def _customer(c: Customer) -> dict[str, Any]:
    return {
        "id": str(c.id),
        "name": c.name,
        "email": c.email,
        "phone": c.phone,
        "tax_id": c.tax_id,
        "has_card": bool(c.asaas_card_token),
    }


def _payment_summary(payment: dict[str, Any] | None) -> dict[str, Any] | None:
    if payment is None:
        return None
    return {"id": payment.get("id"), "status": payment.get("status"), "invoiceUrl": payment.get("invoiceUrl")}


def _service(
    session: AsyncSession = Depends(db_session),
    settings: Settings = Depends(settings_dep),
    http: httpx.AsyncClient = Depends(http_client),
) -> BillingService:
    return BillingService(session=session, settings=settings, http=http)


@router.get("/plans")
async def list_plans(
    _: Principal = Depends(get_principal),
    svc: BillingService = Depends(_service),
) -> list[dict[str, Any]]:
    return [_plan(p) for p in await svc.list_plans()]


@router.get("/subscription")
async def current_subscription(
    principal: Principal = Depends(get_principal),
    svc: BillingService = Depends(_service),
) -> dict[str, Any] | None:
    current = await svc.current_subscription(principal.user_id)
    if current is None:
        return None
    subscription, plan = current
    return {**_subscription(subscription), "plan": _plan(plan) if plan else None}


@router.get("/payments")
async def recent_payments(
    principal: Principal = Depends(get_principal),
    svc: BillingService = Depends(_service),
) -> list[dict[str, Any]]:
    return [_charge(c) for c in await svc.recent_payments(principal.user_id)]


@router.post("/customer")
async def upsert_customer(
    body: CustomerRequest,
    principal: Principal = Depends(get_principal),
    svc: BillingService = Depends(_service),
) -> dict[str, Any]:
    customer = await svc.upsert_customer(principal.user_id, body.model_dump(exclude_unset=True))
    return _customer(customer)


@router.post("/subscriptions")
async def create_subscription(
    body: CreateSubscriptionRequest,
    principal: Principal = Depends(get_principal),
    svc: BillingService = Depends(_service),
) -> dict[str, Any]:
    result = await svc.create_subscription(
        user_id=principal.user_id, plan_id=body.plan_id, credit_card=body.credit_card
    )
    return {
        "success": True,
        "subscription": _subscription(result.subscription),
        "payment": _payment_summary(result.payment),
        "charge": _charge(result.charge) if result.charge else None,
    }


@router.post("/subscriptions/change")
async def change_subscription(
    body: ChangeSubscriptionRequest,
    principal: Principal = Depends(get_principal),
    svc: BillingService = Depends(_service),
) -> dict[str, Any]:
    result = await svc.change_subscription(user_id=principal.user_id, new_plan_id=body.new_plan_id)
    return {
        "success": True,
        "subscription": _subscription(result.subscription),
        "payment": _payment_summary(result.payment),
        "proration_amount": _money(result.proration_amount),
        "is_upgrade": result.is_upgrade,
    }


@router.post("/subscriptions/cancel")
async def cancel_subscription(
    principal: Principal = Depends(get_principal),
    svc: BillingService = Depends(_service),
) -> dict[str, Any]:
    subscription = await svc.cancel_subscription(user_id=principal.user_id)
    return {"success": True, "subscription": _subscription(subscription)}


@router.post("/subscriptions/migrate")
async def migrate_subscriptions(
    principal: Principal = Depends(get_principal),
    svc: BillingService = Depends(_service),
) -> dict[str, Any]:
    return {"success": True, **await svc.migrate_subscriptions(user_id=principal.user_id)}
