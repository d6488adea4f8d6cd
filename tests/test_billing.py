from __future__ import annotations

import uuid
from datetime import date
from decimal import Decimal

import httpx
import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from aplia_backend.db.models import Customer, Plan, Subscription, SubscriptionStatus
from aplia_backend.db.repositories.limits import LimitsRepo
from aplia_backend.domain.limits import UNLIMITED_VALUE
from aplia_backend.services.billing import (
    BillingService,
    add_months,
    next_charge_date,
    prorate,
    validate_card,
)
from aplia_backend.services.errors import NotFoundError, ValidationFailed
from aplia_backend.settings import ASAAS_SANDBOX_URL, Settings
from tests.conftest import FakeUpstreams, Harness

TODAY = date(2026, 10, 19)

CARD = {
    "number": "4111111111111111",
    "holderName": "typed name",
    "expiryMonth": "12",
    "expiryYear": "2030",
    "ccv": "123",
    "holderInfo": {"name": "Ana Souza", "email": "ana@x.com", "cpfCnpj": "12345678909"},
}


@pytest.fixture
def billing(session: AsyncSession, settings: Settings, http: httpx.AsyncClient) -> BillingService:
    return BillingService(session=session, settings=settings, http=http)


async def _plan(session: AsyncSession, name: str, price: str, assistants: int = 3) -> Plan:
    plan = Plan(name=name, price=Decimal(price), period="monthly", max_assistants=assistants, max_instances=2)
    session.add(plan)
    await session.commit()
    return plan


async def _customer(session: AsyncSession, user_id: uuid.UUID, **fields: str) -> Customer:
    customer = Customer(user_id=user_id, name="Ana Souza", email="ana@x.com", **fields)
    session.add(customer)
    await session.commit()
    return customer


def test_add_months_clamps_to_month_end() -> None:
    assert add_months(date(2026, 1, 31), 1) == date(2026, 2, 28)
    assert add_months(date(2024, 2, 29), 12) == date(2025, 2, 28)
    assert add_months(date(2026, 12, 15), 1) == date(2027, 1, 15)
    assert next_charge_date(date(2026, 3, 10), "yearly") == date(2027, 3, 10)
    assert next_charge_date(date(2026, 3, 10), "monthly") == date(2026, 4, 10)


def test_prorate_upgrade_downgrade_and_missing_date() -> None:
    upgrade = prorate(Decimal("50"), Decimal("110"), today=TODAY, next_charge=date(2026, 11, 3))
    assert upgrade == Decimal("30.00")
    assert prorate(Decimal("110"), Decimal("50"), today=TODAY, next_charge=date(2026, 11, 3)) == Decimal("0.00")
    assert prorate(Decimal("50"), Decimal("110"), today=TODAY, next_charge=None) == Decimal("0.00")
    assert prorate(Decimal("50"), Decimal("110"), today=TODAY, next_charge=date(2026, 10, 1)) == Decimal("0.00")


def test_prorate_rounds_to_cents() -> None:
    assert prorate(Decimal("0"), Decimal("10"), today=TODAY, next_charge=date(2026, 10, 20)) == Decimal("0.33")


def test_validate_card_requires_all_fields() -> None:
    assert validate_card(CARD) is CARD
    with pytest.raises(ValidationFailed) as exc:
        validate_card({**CARD, "ccv": ""})
    assert exc.value.detail == "Invalid credit card information"
    with pytest.raises(ValidationFailed):
        validate_card(None)


@pytest.mark.asyncio
async def test_paid_activation_applies_plan_limits(
    billing: BillingService, session: AsyncSession, upstreams: FakeUpstreams, user_id: uuid.UUID
) -> None:
    upstreams.json("POST", f"{ASAAS_SANDBOX_URL}/customers", {"id": "cus_1"})
    upstreams.json(
        "POST",
        f"{ASAAS_SANDBOX_URL}/payments",
        {
            "id": "pay_1",
            "status": "CONFIRMED",
            "creditCard": {"creditCardToken": "tok_1"},
            "invoiceUrl": "https://asaas/i/1",
            "dueDate": "2026-10-19",
            "paymentDate": "2026-10-19",
        },
    )
    plan = await _plan(session, "Pro", "99.90")
    customer = await _customer(session, user_id)

    result = await billing.create_subscription(user_id=user_id, plan_id=plan.id, credit_card=CARD, today=TODAY)

    assert result.subscription.status == SubscriptionStatus.active
    assert result.subscription.next_charge_date == date(2026, 11, 19)
    assert result.charge is not None
    assert result.charge.amount == Decimal("99.90")
    assert result.charge.paid_date == TODAY
    assert customer.asaas_customer_id == "cus_1"
    assert customer.asaas_card_token == "tok_1"

    (payment_req,) = upstreams.requests_to(f"{ASAAS_SANDBOX_URL}/payments")
    assert payment_req.headers["access_token"] == "asaas-key"
    (body,) = upstreams.bodies_to(f"{ASAAS_SANDBOX_URL}/payments")
    assert body["creditCard"]["holderName"] == "Ana Souza"
    assert "holderInfo" not in body["creditCard"]
    assert body["creditCardHolderInfo"]["cpfCnpj"] == "12345678909"
    assert body["value"] == pytest.approx(99.9)

    limits = await LimitsRepo(session).get(user_id)
    assert limits is not None
    assert limits.max_assistants == 3
    assert limits.subscription_id == result.subscription.id


@pytest.mark.asyncio
async def test_pending_payment_keeps_free_limits(
    billing: BillingService, session: AsyncSession, upstreams: FakeUpstreams, user_id: uuid.UUID
) -> None:
    upstreams.json("POST", f"{ASAAS_SANDBOX_URL}/payments", {"id": "pay_2", "status": "PENDING"})
    plan = await _plan(session, "Pro", "99.90")
    await _customer(session, user_id, asaas_customer_id="cus_9")

    result = await billing.create_subscription(user_id=user_id, plan_id=plan.id, credit_card=CARD, today=TODAY)

    assert result.subscription.status == SubscriptionStatus.pending
    assert result.charge is not None and result.charge.paid_date is None
    assert upstreams.requests_to(f"{ASAAS_SANDBOX_URL}/customers") == []
    assert await LimitsRepo(session).get(user_id) is None


@pytest.mark.asyncio
async def test_activation_requires_customer_data(
    billing: BillingService, session: AsyncSession, user_id: uuid.UUID
) -> None:
    plan = await _plan(session, "Pro", "99.90")
    with pytest.raises(NotFoundError) as exc:
        await billing.create_subscription(user_id=user_id, plan_id=plan.id, credit_card=CARD)
    assert exc.value.detail == "Dados do cliente não encontrados"


@pytest.mark.asyncio
async def test_upgrade_charges_proration_with_stored_card(
    billing: BillingService, session: AsyncSession, upstreams: FakeUpstreams, user_id: uuid.UUID
) -> None:
    upstreams.json("POST", f"{ASAAS_SANDBOX_URL}/payments", {"id": "pay_3", "status": "CONFIRMED"})
    basic = await _plan(session, "Basic", "50", assistants=1)
    pro = await _plan(session, "Pro", "110", assistants=5)
    customer = await _customer(session, user_id, asaas_customer_id="cus_1", asaas_card_token="tok_1")
    current = Subscription(
        customer_id=customer.id,
        plan_id=basic.id,
        status=SubscriptionStatus.active,
        start_date=date(2026, 10, 3),
        next_charge_date=date(2026, 11, 3),
    )
    session.add(current)
    await session.commit()

    result = await billing.change_subscription(user_id=user_id, new_plan_id=pro.id, today=TODAY)

    assert result.is_upgrade is True
    assert result.proration_amount == Decimal("30.00")
    assert result.subscription.plan_id == pro.id
    assert result.subscription.next_charge_date == date(2026, 11, 3)
    assert current.status == SubscriptionStatus.cancelled
    assert current.end_date == TODAY

    (body,) = upstreams.bodies_to(f"{ASAAS_SANDBOX_URL}/payments")
    assert body["creditCardToken"] == "tok_1"
    assert body["value"] == pytest.approx(30.0)
    assert body["description"] == "Upgrade para plano Pro - Cobrança proporcional"

    charges = await billing.recent_payments(user_id)
    assert [c.amount for c in charges] == [Decimal("30.00")]
    limits = await LimitsRepo(session).get(user_id)
    assert limits is not None and limits.max_assistants == 5


@pytest.mark.asyncio
async def test_downgrade_charges_nothing(
    billing: BillingService, session: AsyncSession, upstreams: FakeUpstreams, user_id: uuid.UUID
) -> None:
    basic = await _plan(session, "Basic", "50", assistants=1)
    pro = await _plan(session, "Pro", "110", assistants=5)
    customer = await _customer(session, user_id, asaas_customer_id="cus_1", asaas_card_token="tok_1")
    session.add(
        Subscription(
            customer_id=customer.id,
            plan_id=pro.id,
            status=SubscriptionStatus.active,
            start_date=date(2026, 10, 3),
            next_charge_date=date(2026, 11, 3),
        )
    )
    await session.commit()

    result = await billing.change_subscription(user_id=user_id, new_plan_id=basic.id, today=TODAY)

    assert result.is_upgrade is False
    assert result.proration_amount == Decimal("0.00")
    assert result.payment is None
    assert upstreams.calls == []


@pytest.mark.asyncio
async def test_change_without_active_subscription(
    billing: BillingService, session: AsyncSession, user_id: uuid.UUID
) -> None:
    pro = await _plan(session, "Pro", "110")
    await _customer(session, user_id)
    with pytest.raises(NotFoundError) as exc:
        await billing.change_subscription(user_id=user_id, new_plan_id=pro.id)
    assert exc.value.detail == "Assinatura atual não encontrada"


@pytest.mark.asyncio
async def test_cancel_resets_limits_to_free(
    billing: BillingService, session: AsyncSession, user_id: uuid.UUID
) -> None:
    pro = await _plan(session, "Pro", "110", assistants=5)
    customer = await _customer(session, user_id)
    subscription = Subscription(
        customer_id=customer.id, plan_id=pro.id, status=SubscriptionStatus.active, start_date=date(2026, 10, 1)
    )
    session.add(subscription)
    await session.commit()

    cancelled = await billing.cancel_subscription(user_id=user_id, today=TODAY)

    assert cancelled.status == SubscriptionStatus.cancelled
    assert cancelled.end_date == TODAY
    limits = await LimitsRepo(session).get(user_id)
    assert limits is not None
    assert (limits.max_assistants, limits.max_instances) == (0, 1)
    assert limits.subscription_id is None

    with pytest.raises(NotFoundError):
        await billing.cancel_subscription(user_id=user_id)


@pytest.mark.asyncio
async def test_migrate_reports_per_subscription(
    billing: BillingService, session: AsyncSession, upstreams: FakeUpstreams, user_id: uuid.UUID
) -> None:
    upstreams.json("POST", f"{ASAAS_SANDBOX_URL}/subscriptions", {"id": "sub_1"})
    pro = await _plan(session, "Pro", "110")
    customer = await _customer(session, user_id, asaas_customer_id="cus_1", asaas_card_token="tok_1")
    subscription = Subscription(
        customer_id=customer.id,
        plan_id=pro.id,
        status=SubscriptionStatus.active,
        start_date=date(2026, 10, 1),
        next_charge_date=date(2026, 11, 1),
    )
    session.add(subscription)
    await session.commit()

    report = await billing.migrate_subscriptions(user_id=user_id)

    assert report["migrated"] == 1 and report["failed"] == 0
    assert report["results"][0]["asaas_subscription_id"] == "sub_1"
    assert subscription.asaas_subscription_id == "sub_1"
    (body,) = upstreams.bodies_to(f"{ASAAS_SANDBOX_URL}/subscriptions")
    assert body["nextDueDate"] == "2026-11-01"
    assert body["creditCard"] == {"creditCardToken": "tok_1"}

    # Already migrated subscriptions are skipped.
    assert (await billing.migrate_subscriptions(user_id=user_id))["results"] == []


@pytest.mark.asyncio
async def test_migrate_without_card_token_fails_item(
    billing: BillingService, session: AsyncSession, user_id: uuid.UUID
) -> None:
    pro = await _plan(session, "Pro", "110")
    customer = await _customer(session, user_id)
    session.add(
        Subscription(customer_id=customer.id, plan_id=pro.id, status=SubscriptionStatus.active, start_date=TODAY)
    )
    await session.commit()

    report = await billing.migrate_subscriptions(user_id=user_id)

    assert report["failed"] == 1
    assert report["results"][0]["message"] == "Card token not found - user needs to add payment method"


@pytest.mark.asyncio
async def test_billing_endpoints(harness: Harness, user_id: uuid.UUID) -> None:
    headers = harness.headers(user_id)
    plan = Plan(name="Pro", price=Decimal("99.90"), max_assistants=UNLIMITED_VALUE, max_instances=3)
    await harness.add(plan)

    plans = (await harness.client.get("/v1/billing/plans", headers=headers)).json()
    assert plans[0]["limits_display"]["assistants"] == "Ilimitado"
    assert plans[0]["price"] == pytest.approx(99.9)

    assert (await harness.client.get("/v1/billing/subscription", headers=headers)).json() is None

    customer = await harness.client.post(
        "/v1/billing/customer", json={"name": "Ana", "email": "ana@x.com"}, headers=headers
    )
    assert customer.json()["has_card"] is False

    no_card = await harness.client.post(
        "/v1/billing/subscriptions", json={"plan_id": str(plan.id)}, headers=headers
    )
    assert no_card.status_code == 400
    assert no_card.json() == {"detail": "Invalid credit card information"}


@pytest.mark.asyncio
async def test_declined_card_keeps_asaas_customer(harness: Harness, user_id: uuid.UUID) -> None:
    harness.upstreams.json("POST", f"{ASAAS_SANDBOX_URL}/customers", {"id": "cus_9"})
    harness.upstreams.json(
        "POST", f"{ASAAS_SANDBOX_URL}/payments", {"errors": [{"description": "Cartão recusado"}]}, status=400
    )
    headers = harness.headers(user_id)
    plan = Plan(name="Pro", price=Decimal("99.90"))
    await harness.add(plan)
    await harness.client.post("/v1/billing/customer", json={"name": "Ana", "email": "ana@x.com"}, headers=headers)

    for _ in range(2):
        r = await harness.client.post(
            "/v1/billing/subscriptions", json={"plan_id": str(plan.id), "credit_card": CARD}, headers=headers
        )
        assert r.status_code == 400
        assert r.json() == {"detail": "Cartão recusado"}

    assert len(harness.upstreams.requests_to(f"{ASAAS_SANDBOX_URL}/customers")) == 1
    async with harness.session() as s:
        stored = (await s.execute(select(Customer).where(Customer.user_id == user_id))).scalar_one()
        subscriptions = (await s.execute(select(Subscription))).scalars().all()
    assert stored.asaas_customer_id == "cus_9"
    assert subscriptions == []
