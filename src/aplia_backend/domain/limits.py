"""
aplia_backend.domain.limits

Plan limit helpers.

Responsibilities:
- Represent "unlimited" plan values and render usage against a limit.
- Define the resource types counted against a plan and the free-plan defaults.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass

# Plans store "unlimited" as a large sentinel rather than NULL.
UNLIMITED_VALUE = 999_999
UNLIMITED_LABEL = "Ilimitado"


class ResourceType(enum.StrEnum):
    assistant = "assistant"
    instance = "instance"
    conversation = "conversation"
    appointment = "appointment"

    @property
    def monthly(self) -> bool:
        return self in (ResourceType.conversation, ResourceType.appointment)


@dataclass(frozen=True, slots=True)
class PlanLimits:
    max_assistants: int
    max_instances: int
    max_conversations_month: int
    max_appointments_month: int

    def for_resource(self, resource: ResourceType) -> int:
        return {
            ResourceType.assistant: self.max_assistants,
            ResourceType.instance: self.max_instances,
            ResourceType.conversation: self.max_conversations_month,
            ResourceType.appointment: self.max_appointments_month,
        }[resource]


FREE_PLAN_LIMITS = PlanLimits(
    max_assistants=0,
    max_instances=1,
    max_conversations_month=100,
    max_appointments_month=50,
)


def is_unlimited(value: int) -> bool:
    return value >= UNLIMITED_VALUE


def format_limit(value: int) -> str:
    return UNLIMITED_LABEL if is_unlimited(value) else str(value)


def format_usage(used: int, limit: int) -> str:
    return f"{used} / {format_limit(limit)}"


def usage_percentage(used: int, limit: int) -> float:
    if is_unlimited(limit):
        return 0.0
    if limit <= 0:
        return 100.0 if used > 0 else 0.0
    return min(used / limit * 100, 100.0)


def can_create_more(used: int, limit: int) -> bool:
    if is_unlimited(limit):
        return True
    return used < limit
