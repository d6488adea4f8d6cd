"""
aplia_backend.services.billing

Plans, subscriptions and charges backed by Asaas.

Responsibilities:
- Activate a plan with an immediate card payment, then store subscription + charge.
- Change plans with a prorated upgrade charge.
- Cancel (locally) and reset limits to the free plan.
- Migrate one-off activations to Asaas recurring subscriptions.

Notes:
- Plan limits follow the subscription only once a payment is confirmed.
- Proration is `(new - old) * ceil(days until next charge) / 30`.
"""

from __future__ import annotations

import calendar
import math
import uuid
from dataclasses import dataclass
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from aplia_backend.db.models import (
    Charge,
    ChargeStatus,
    Customer,
    Plan,
    Subscription,
    SubscriptionStatus,
)
from aplia_backend.db.repositories.billing import ChargeRepo, CustomerRepo, PlanRepo, SubscriptionRepo
from aplia_backend.integrations.asaas import AsaasClient, is_paid_status
from aplia_backend.observability.logging import get_logger
from aplia_backend.services.errors import NotFoundError, ServiceError, ValidationFailed
from aplia_backend.services.usage import UsageService
from aplia_backend.settings import Settings

log = get_logger(__name__)

PRORATION_CYCLE_DAYS = 30
CARD_REQUIRED_FIELDS = ("number", "holderName", "expiryMonth", "expiryYear", "ccv")
CARD_PAYMENT = "CREDIT_CARD"


def add_months(start: date, months: int) -> date:
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def next_charge_date(start: date, period: str) -> date:
    if period == "yearly":
        return add_months(start, 12)
    return add_months(start, 1)


def prorate(old_price: Decimal, new_price: Decimal, *, today: date, next_charge: date | None) -> Decimal:
    """
    Prorated upgrade amount for the rest of the current cycle.

    Downgrades (and equal prices) cost nothing; the result is rounded to cents.
    """

    if new_price <= old_price or next_charge is None:
        return Decimal("0.00")
    days_remaining = max(math.ceil((next_charge - today).days), 0)
    amount = (new_price - old_price) * days_remaining / PRORATION_CYCLE_DAYS
    return max(amount, Decimal("0")).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def validate_card(credit_card: dict[str, Any] | None) -> dict[str, Any]:
    if not credit_card or any(not credit_card.get(field) for field in CARD_REQUIRED_FIELDS):
        raise ValidationFailed("Invalid credit card information")
    return credit_card


def _payment_date(payment: dict[str, Any], today: date) -> date:
    raw = payment.get("paymentDate") or payment.get("clientPaymentDate")
    if isinstance(raw, str) and raw:
        return date.fromisoformat(raw[:10])
    return today


def _due_date(payment: dict[str, Any], today: date) -> date:
    raw = payment.get("dueDate")
    if isinstance(raw, str) and raw:
        return date.fromisoformat(raw[:10])
    return today


@dataclass(slots=True)
class SubscriptionResult:
    subscription: Subscription
    payment: dict[str, Any]
    charge: Charge | None = None


@dataclass(slots=True)
class ChangeResult:
    subscription: Subscription
    payment: dict[str, Any] | None
    proration_amount: Decimal
    is_upgrade: bool


class BillingService:
    def __init__(self, *, session: AsyncSession, settings: Settings, http: httpx.AsyncClient) -> None:
        self._session = session
        self._settings = settings
        self._asaas = AsaasClient(settings=settings, http=http)
        self._plans = PlanRepo(session)
        self._customers = CustomerRepo(session)
        self._subscriptions = SubscriptionRepo(session)
        self._charges = ChargeRepo(session)

    async def list_plans(self) -> list[Plan]:
        return await self._plans.list_active()

    async def current_subscription(self, user_id: uuid.UUID) -> tuple[Subscription, Plan | None] | None:
        customer = await self._customers.get_for_user(user_id)
        if customer is None:
            return None
        subscription = await self._subscriptions.current_for_customer(customer.id)
        if subscription is None:
            return None
        return subscription, await self._plans.get(subscription.plan_id)

    async def recent_payments(self, user_id: uuid.UUID) -> list[Charge]:
        customer = await self._customers.get_for_user(user_id)
        if customer is None:
            return []
        return await self._charges.recent_for_customer(customer.id, limit=10)

    async def upsert_customer(self, user_id: uuid.UUID, fields: dict[str, Any]) -> Customer:
        customer = await self._customers.upsert(user_id=user_id, fields=fields)
        await self._session.commit()
        return customer

    async def _require_plan(self, plan_id: uuid.UUID) -> Plan:
        plan = await self._plans.get(plan_id)
        if plan is None:
            raise NotFoundError("Plano não encontrado")
        return plan

    async def _require_customer(self, user_id: uuid.UUID) -> Customer:
        customer = await self._customers.get_for_user(user_id)
        if customer is None:
            raise NotFoundError("Dados do cliente não encontrados")
        return customer

    async def _ensure_asaas_customer(self, customer: Customer) -> str:
        if customer.asaas_customer_id:
            return customer.asaas_customer_id
        created = await self._asaas.create_customer(
            name=customer.name,
            email=customer.email,
            phone=customer.phone,
            cpf_cnpj=customer.tax_id,
        )
        customer.asaas_customer_id = str(created["id"])
        # Kept even when the payment that follows is declined.
        await self._session.commit()
        log.info("asaas_customer_created", customer_id=str(customer.id))
        return customer.asaas_customer_id

    async def create_subscription(
        self,
        *,
        user_id: uuid.UUID,
        plan_id: uuid.UUID,
        credit_card: dict[str, Any] | None,
        today: date | None = None,
    ) -> SubscriptionResult:
        card = validate_card(credit_card)
        plan = await self._require_plan(plan_id)
        customer = await self._require_customer(user_id)
        today = today or date.today()

        asaas_customer = await self._ensure_asaas_customer(customer)
        holder_info = card.get("holderInfo") if isinstance(card.get("holderInfo"), dict) else None
        card_body = {k: v for k, v in card.items() if k != "holderInfo"}
        if holder_info and holder_info.get("name"):
            card_body["holderName"] = holder_info["name"]

        description = f"Ativação do plano {plan.name}"
        payment = await self._asaas.create_card_payment(
            customer=asaas_customer,
            value=plan.price,
            description=description,
            due_date=today,
            credit_card=card_body,
            holder_info=holder_info,
        )

        card_token = (payment.get("creditCard") or {}).get("creditCardToken")
        if card_token:
            customer.asaas_card_token = card_token

        paid = is_paid_status(payment.get("status"))
        subscription = await self._subscriptions.create(
            customer_id=customer.id,
            plan_id=plan.id,
            status=SubscriptionStatus.active if paid else SubscriptionStatus.pending,
            start_date=today,
            next_charge_date=next_charge_date(today, plan.period),
        )
        charge = await self._charges.create(
            customer_id=customer.id,
            subscription_id=subscription.id,
            amount=plan.price,
            status=ChargeStatus.paid if paid else ChargeStatus.pending,
            description=description,
            due_date=_due_date(payment, today),
            paid_date=_payment_date(payment, today) if paid else None,
            payment_method=CARD_PAYMENT,
            payment_link=payment.get("invoiceUrl"),
            asaas_payment_id=payment.get("id"),
        )

        if paid:
            await UsageService(session=self._session).apply_plan_limits(
                user_id=user_id, plan=plan, subscription_id=subscription.id
            )
        else:
            log.info("subscription_pending_payment", subscription_id=str(subscription.id))

        await self._session.commit()
        log.info("subscription_created", subscription_id=str(subscription.id), status=subscription.status.value)
        return SubscriptionResult(subscription=subscription, payment=payment, charge=charge)

    async def change_subscription(
        self, *, user_id: uuid.UUID, new_plan_id: uuid.UUID, today: date | None = None
    ) -> ChangeResult:
        customer = await self._require_customer(user_id)
        current = await self._subscriptions.active_for_customer(customer.id)
        if current is None:
            raise NotFoundError("Assinatura atual não encontrada")
        new_plan = await self._require_plan(new_plan_id)
        current_plan = await self._require_plan(current.plan_id)
        today = today or date.today()

        is_upgrade = new_plan.price > current_plan.price
        amount = prorate(current_plan.price, new_plan.price, today=today, next_charge=current.next_charge_date)

        payment: dict[str, Any] | None = None
        if amount > 0:
            asaas_customer = await self._ensure_asaas_customer(customer)
            payment = await self._asaas.create_card_payment(
                customer=asaas_customer,
                value=amount,
                description=f"Upgrade para plano {new_plan.name} - Cobrança proporcional",
                due_date=today,
                card_token=customer.asaas_card_token,
            )

        current.status = SubscriptionStatus.cancelled
        current.end_date = today
        replacement = await self._subscriptions.create(
            customer_id=customer.id,
            plan_id=new_plan.id,
            status=SubscriptionStatus.active,
            start_date=today,
            next_charge_date=current.next_charge_date,
        )
        if payment is not None:
            paid = is_paid_status(payment.get("status"))
            await self._charges.create(
                customer_id=customer.id,
                subscription_id=replacement.id,
                amount=amount,
                status=ChargeStatus.paid if paid else ChargeStatus.pending,
                description=f"Upgrade para plano {new_plan.name} - Cobrança proporcional",
                due_date=_due_date(payment, today),
                paid_date=_payment_date(payment, today) if paid else None,
                payment_method=CARD_PAYMENT,
                payment_link=payment.get("invoiceUrl"),
                asaas_payment_id=payment.get("id"),
            )

        await UsageService(session=self._session).apply_plan_limits(
            user_id=user_id, plan=new_plan, subscription_id=replacement.id
        )
        await self._session.commit()
        log.info(
            "subscription_changed",
            old_plan=current_plan.name,
            new_plan=new_plan.name,
            proration=str(amount),
            is_upgrade=is_upgrade,
        )
        return ChangeResult(subscription=replacement, payment=payment, proration_amount=amount, is_upgrade=is_upgrade)

    async def cancel_subscription(self, *, user_id: uuid.UUID, today: date | None = None) -> Subscription:
        customer = await self._require_customer(user_id)
        current = await self._subscriptions.active_for_customer(customer.id)
        if current is None:
            raise NotFoundError("Nenhuma assinatura ativa encontrada")

        current.status = SubscriptionStatus.cancelled
        current.end_date = today or date.today()
        await self._session.commit()

        try:
            await UsageService(session=self._session).reset_to_free(user_id)
            await self._session.commit()
        except Exception as e:  # noqa: BLE001
            await self._session.rollback()
            await self._session.refresh(current)
            log.warning("limits_reset_failed", user_id=str(user_id), error=str(e))

        if current.asaas_subscription_id:
            log.info("asaas_subscription_left_active", asaas_subscription_id=current.asaas_subscription_id)
        log.info("subscription_cancelled", subscription_id=str(current.id))
        return current

    async def migrate_subscriptions(self, *, user_id: uuid.UUID) -> dict[str, Any]:
        customer = await self._require_customer(user_id)
        pending = [
            s for s in await self._subscriptions.list_active_for_customer(customer.id) if not s.asaas_subscription_id
        ]

        results: list[dict[str, Any]] = []
        for subscription in pending:
            item: dict[str, Any] = {"subscription_id": str(subscription.id)}
            if not customer.asaas_card_token or not customer.asaas_customer_id:
                item.update(status="error", message="Card token not found - user needs to add payment method")
                results.append(item)
                continue
            plan = await self._plans.get(subscription.plan_id)
            if plan is None:
                item.update(status="error", message="Plano não encontrado")
                results.append(item)
                continue
            try:
                created = await self._asaas.create_subscription(
                    customer=customer.asaas_customer_id,
                    value=plan.price,
                    next_due_date=subscription.next_charge_date or date.today(),
                    description=f"Migração - Assinatura {plan.name}",
                    card_token=customer.asaas_card_token,
                )
            except ServiceError as e:
                item.update(status="error", message=e.detail)
                results.append(item)
                continue

            subscription.asaas_subscription_id = str(created.get("id"))
            await self._session.commit()
            item.update(status="success", asaas_subscription_id=subscription.asaas_subscription_id)
            results.append(item)
            log.info("subscription_migrated", subscription_id=str(subscription.id))

        migrated = sum(1 for r in results if r["status"] == "success")
        return {"results": results, "migrated": migrated, "failed": len(results) - migrated}
