from __future__ import annotations

import uuid
from datetime import date, datetime, timedelta

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from aplia_backend.db.models import (
    Appointment,
    Conversation,
    InstanceStatus,
    Message,
    ProfessionalProfile,
    SenderType,
    WhatsAppInstance,
    utcnow,
)
from aplia_backend.domain.limits import ResourceType
from aplia_backend.services.errors import ValidationFailed
from aplia_backend.services.usage import UsageService, month_start, percentage, stats_window_start
from tests.conftest import Harness


def test_percentage_rounds_and_handles_zero() -> None:
    assert percentage(1, 3) == "33%"
    assert percentage(2, 3) == "67%"
    assert percentage(0, 0) == "0%"


def test_stats_window() -> None:
    now = datetime(2026, 10, 19, 15, 30)
    assert stats_window_start("today", now) == datetime(2026, 10, 19)
    assert stats_window_start("7days", now) == datetime(2026, 10, 12, 15, 30)
    with pytest.raises(ValidationFailed):
        stats_window_start("year", now)


def test_month_start() -> None:
    assert month_start(datetime(2026, 10, 19, 15, 30, 5)) == datetime(2026, 10, 1)


@pytest.mark.asyncio
async def test_record_usage_resets_counters_each_month(session: AsyncSession, user_id: uuid.UUID) -> None:
    usage = UsageService(session=session)
    row = await usage.ensure_user_limits(user_id)
    row.used_conversations_month = 40
    row.last_usage_reset = date(2026, 9, 1)

    await usage.record_usage(user_id, ResourceType.conversation, uuid.uuid4(), today=date(2026, 10, 2))

    assert row.used_conversations_month == 1
    assert row.last_usage_reset == date(2026, 10, 2)


@pytest.mark.asyncio
async def test_dashboard_stats_and_chart(harness: Harness, user_id: uuid.UUID) -> None:
    now = utcnow()
    conversation = Conversation(user_id=user_id, contact_phone="1", last_message_at=now)
    stale = Conversation(
        user_id=user_id,
        contact_phone="2",
        last_message_at=now - timedelta(days=20),
        created_at=now - timedelta(days=20),
    )
    await harness.add(
        ProfessionalProfile(user_id=user_id, fullname="Dra. Ana", specialty=""),
        WhatsAppInstance(user_id=user_id, instance_name="a12345", status=InstanceStatus.connected),
        WhatsAppInstance(user_id=user_id, instance_name="b12345", status=InstanceStatus.qr_pending),
        conversation,
        stale,
        Appointment(user_id=user_id, patient_name="P", appointment_date=now),
    )
    await harness.add(Message(conversation_id=conversation.id, sender_type=SenderType.user, content="oi"))

    body = (await harness.client.get("/v1/dashboard/stats", headers=harness.headers(user_id))).json()

    assert body["stats"] == {
        "total_assistants": 1,
        "total_instances": 2,
        "active_instances": 1,
        "active_conversations": 1,
        "appointments_month": 1,
        "messages_today": 1,
    }
    chart = body["chart"]
    assert len(chart) == 7
    assert chart[-1] == {"date": now.strftime("%d/%m"), "conversations": 1}
    assert sum(day["conversations"] for day in chart) == 1


@pytest.mark.asyncio
async def test_usage_summary_defaults_to_free_plan(harness: Harness, user_id: uuid.UUID) -> None:
    await harness.add(WhatsAppInstance(user_id=user_id, instance_name="only12345"))

    body = (await harness.client.get("/v1/dashboard/usage", headers=harness.headers(user_id))).json()

    assert body["assistants"] == {"used": 0, "limit": 0}
    assert body["instances"] == {"used": 1, "limit": 1}
    assert body["conversations_month"] == {"used": 0, "limit": 100}
    assert body["appointments_month"] == {"used": 0, "limit": 50}
