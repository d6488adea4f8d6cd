"""
aplia_backend.services.usage

Plan limits, usage accounting and dashboard aggregates.

Responsibilities:
- Keep one `user_limits` row per user (free plan until a paid subscription applies).
- Enforce per-resource limits before creating assistants, instances, conversations
  and appointments.
- Append usage events and maintain the monthly counters.
- Compute the dashboard numbers and the appointment status breakdown.

Counting rules:
- Assistants and instances are counted live from their tables.
- Conversations and appointments count against the current calendar month.
"""

from __future__ import annotations

import uuid
from datetime import date, datetime, timedelta
from typing import Any, Literal

from sqlalchemy.ext.asyncio import AsyncSession

from aplia_backend.db.models import AppointmentStatus, InstanceStatus, Plan, UserLimits, utcnow
from aplia_backend.db.repositories.appointments import AppointmentRepo
from aplia_backend.db.repositories.conversations import ConversationRepo, MessageRepo
from aplia_backend.db.repositories.limits import LimitsRepo, UsageRepo
from aplia_backend.db.repositories.profiles import ProfileRepo
from aplia_backend.db.repositories.whatsapp_instances import InstanceRepo
from aplia_backend.domain.limits import (
    FREE_PLAN_LIMITS,
    PlanLimits,
    ResourceType,
    can_create_more,
    format_usage,
)
from aplia_backend.observability.logging import get_logger
from aplia_backend.services.errors import LimitExceeded, ValidationFailed

log = get_logger(__name__)

StatsPeriod = Literal["today", "7days", "30days"]

_RESOURCE_LABELS = {
    ResourceType.assistant: "assistentes",
    ResourceType.instance: "instâncias de WhatsApp",
    ResourceType.conversation: "conversas no mês",
    ResourceType.appointment: "agendamentos no mês",
}

_STAT_STATUSES = (
    AppointmentStatus.scheduled,
    AppointmentStatus.confirmed,
    AppointmentStatus.completed,
    AppointmentStatus.cancelled,
    AppointmentStatus.rescheduled,
)


def month_start(now: datetime) -> datetime:
    return now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def day_start(now: datetime) -> datetime:
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


def plan_limits(plan: Plan) -> PlanLimits:
    return PlanLimits(
        max_assistants=plan.max_assistants,
        max_instances=plan.max_instances,
        max_conversations_month=plan.max_conversations_month,
        max_appointments_month=plan.max_appointments_month,
    )


def limits_of(row: UserLimits) -> PlanLimits:
    return PlanLimits(
        max_assistants=row.max_assistants,
        max_instances=row.max_instances,
        max_conversations_month=row.max_conversations_month,
        max_appointments_month=row.max_appointments_month,
    )


def percentage(value: int, total: int) -> str:
    if total == 0:
        return "0%"
    return f"{round(value / total * 100)}%"


def stats_window_start(period: str, now: datetime) -> datetime:
    if period == "today":
        return day_start(now)
    if period == "7days":
        return now - timedelta(days=7)
    if period == "30days":
        return now - timedelta(days=30)
    raise ValidationFailed(f"Invalid period: {period}. Allowed: today, 7days, 30days")


class UsageService:
    def __init__(self, *, session: AsyncSession) -> None:
        self._session = session
        self._limits = LimitsRepo(session)

    async def ensure_user_limits(self, user_id: uuid.UUID) -> UserLimits:
        row = await self._limits.get(user_id)
        if row is None:
            row = await self._limits.upsert(user_id=user_id, limits=FREE_PLAN_LIMITS, subscription_id=None)
            log.info("user_limits_created", user_id=str(user_id))
        return row

    async def apply_plan_limits(self, *, user_id: uuid.UUID, plan: Plan, subscription_id: uuid.UUID) -> UserLimits:
        row = await self._limits.upsert(user_id=user_id, limits=plan_limits(plan), subscription_id=subscription_id)
        log.info("user_limits_applied", user_id=str(user_id), plan=plan.name)
        return row

    async def reset_to_free(self, user_id: uuid.UUID) -> UserLimits:
        return await self._limits.upsert(user_id=user_id, limits=FREE_PLAN_LIMITS, subscription_id=None)

    async def current_usage(self, user_id: uuid.UUID, resource: ResourceType, *, now: datetime | None = None) -> int:
        now = now or utcnow()
        if resource == ResourceType.assistant:
            return await ProfileRepo(self._session).count_for_user(user_id)
        if resource == ResourceType.instance:
            return await InstanceRepo(self._session).count_for_user(user_id)
        if resource == ResourceType.conversation:
            return await ConversationRepo(self._session).count_created_since(user_id, month_start(now))
        return await AppointmentRepo(self._session).count_since(user_id, month_start(now))

    async def check_limit(self, user_id: uuid.UUID, resource: ResourceType, *, now: datetime | None = None) -> None:
        row = await self.ensure_user_limits(user_id)
        limit = limits_of(row).for_resource(resource)
        used = await self.current_usage(user_id, resource, now=now)
        if not can_create_more(used, limit):
            raise LimitExceeded(
                f"Limite do plano atingido para {_RESOURCE_LABELS[resource]} ({format_usage(used, limit)})"
            )

    async def record_usage(
        self,
        user_id: uuid.UUID,
        resource: ResourceType,
        resource_id: uuid.UUID | None,
        *,
        details: dict[str, Any] | None = None,
        today: date | None = None,
    ) -> None:
        row = await self.ensure_user_limits(user_id)
        today = today or date.today()

        if row.last_usage_reset is None or (row.last_usage_reset.year, row.last_usage_reset.month) != (
            today.year,
            today.month,
        ):
            row.used_conversations_month = 0
            row.used_appointments_month = 0
            row.last_usage_reset = today

        if resource == ResourceType.conversation:
            row.used_conversations_month += 1
        elif resource == ResourceType.appointment:
            row.used_appointments_month += 1

        await UsageRepo(self._session).add_event(
            user_id=user_id,
            resource_type=resource.value,
            resource_id=resource_id,
            subscription_id=row.subscription_id,
            details=details,
        )

    async def usage_summary(self, user_id: uuid.UUID, *, now: datetime | None = None) -> dict[str, dict[str, int]]:
        limits = limits_of(await self.ensure_user_limits(user_id))
        keys = {
            "assistants": ResourceType.assistant,
            "instances": ResourceType.instance,
            "conversations_month": ResourceType.conversation,
            "appointments_month": ResourceType.appointment,
        }
        summary: dict[str, dict[str, int]] = {}
        for key, resource in keys.items():
            summary[key] = {
                "used": await self.current_usage(user_id, resource, now=now),
                "limit": limits.for_resource(resource),
            }
        return summary

    async def dashboard_stats(self, user_id: uuid.UUID, *, now: datetime) -> dict[str, int]:
        instances = InstanceRepo(self._session)
        week_ago = now - timedelta(days=7)
        return {
            "total_assistants": await ProfileRepo(self._session).count_for_user(user_id),
            "total_instances": await instances.count_for_user(user_id),
            "active_instances": await instances.count_for_user(user_id, status=InstanceStatus.connected),
            "active_conversations": await ConversationRepo(self._session).count_active_since(user_id, week_ago),
            "appointments_month": await AppointmentRepo(self._session).count_since(user_id, month_start(now)),
            "messages_today": await MessageRepo(self._session).count_for_user_since(user_id, day_start(now)),
        }

    async def conversation_chart(self, user_id: uuid.UUID, *, now: datetime) -> list[dict[str, Any]]:
        first_day = day_start(now) - timedelta(days=6)
        created = await ConversationRepo(self._session).created_timestamps_since(user_id, first_day)
        per_day: dict[date, int] = {}
        for ts in created:
            per_day[ts.date()] = per_day.get(ts.date(), 0) + 1

        chart = []
        for offset in range(7):
            day = (first_day + timedelta(days=offset)).date()
            chart.append({"date": day.strftime("%d/%m"), "conversations": per_day.get(day, 0)})
        return chart

    async def appointment_stats(self, user_id: uuid.UUID, *, period: str, now: datetime) -> dict[str, Any]:
        start = stats_window_start(period, now)
        counts = await AppointmentRepo(self._session).status_counts(user_id, start=start)
        stats: dict[str, Any] = {"total": sum(counts.values())}
        for status in _STAT_STATUSES:
            stats[status.value] = counts.get(status.value, 0)
        stats["percentages"] = {
            status.value: percentage(stats[status.value], stats["total"]) for status in _STAT_STATUSES
        }
        return stats


# --- Module Notes -----------------------------------------------------------
# `check_limit` counts live rows rather than trusting the monthly counters, so a
# deleted conversation frees its slot immediately.
