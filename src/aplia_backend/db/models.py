"""
aplia_backend.db.models

Persistence schema for the practice dashboard.

Responsibilities:
- Define ORM models for the tenant-owned records:
  - ProfessionalProfile: assistant persona / practice facts used by the AI agent
  - WhatsAppInstance: messaging gateway connection and its lifecycle status
  - Conversation / Message / ConversationSummary: patient chats
  - Appointment: local mirror of calendar bookings
  - GoogleCredential / GoogleProfileLink: calendar accounts bound to profiles
  - Plan / Customer / Subscription / Charge: billing
  - UserLimits / UsageEvent: plan enforcement and usage history
"""

from __future__ import annotations

import enum
import uuid
from datetime import UTC, date, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    Enum,
    ForeignKey,
    Index,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy import Uuid as SAUuid
from sqlalchemy.orm import Mapped, mapped_column

from aplia_backend.db.base import Base


def utcnow() -> datetime:
    # Naive UTC timestamps everywhere; SQLite drops tzinfo anyway.
    return datetime.now(UTC).replace(tzinfo=None)


def _uuid_pk() -> Mapped[uuid.UUID]:
    return mapped_column(SAUuid(as_uuid=True), primary_key=True, default=uuid.uuid4)


def _owner() -> Mapped[uuid.UUID]:
    return mapped_column(SAUuid(as_uuid=True), nullable=False, index=True)


class InstanceStatus(enum.StrEnum):
    connected = "connected"
    qr_pending = "qr_pending"
    disconnected = "disconnected"


class SenderType(enum.StrEnum):
    user = "user"
    agent = "agent"
    system = "system"


class AppointmentStatus(enum.StrEnum):
    scheduled = "scheduled"
    confirmed = "confirmed"
    completed = "completed"
    cancelled = "cancelled"
    rescheduled = "rescheduled"
    blocked = "blocked"


class SubscriptionStatus(enum.StrEnum):
    active = "active"
    pending = "pending"
    cancelled = "cancelled"


class ChargeStatus(enum.StrEnum):
    paid = "paid"
    pending = "pending"


class ProfessionalProfile(Base):
    __tablename__ = "professional_profiles"

    id: Mapped[uuid.UUID] = _uuid_pk()
    user_id: Mapped[uuid.UUID] = _owner()

    fullname: Mapped[str] = mapped_column(String(256), nullable=False)
    specialty: Mapped[str] = mapped_column(String(256), nullable=False, default="")
    professionalid: Mapped[str | None] = mapped_column(String(64))
    phonenumber: Mapped[str | None] = mapped_column(String(32))
    email: Mapped[str | None] = mapped_column(String(256))
    education: Mapped[str | None] = mapped_column(Text)
    avatar_url: Mapped[str | None] = mapped_column(Text)

    # Free-text practice facts fed to the assistant prompt.
    locations: Mapped[str | None] = mapped_column(Text)
    workinghours: Mapped[str | None] = mapped_column(Text)
    procedures: Mapped[str | None] = mapped_column(Text)
    healthinsurance: Mapped[str | None] = mapped_column(Text)
    paymentmethods: Mapped[str | None] = mapped_column(Text)
    consultationfees: Mapped[str | None] = mapped_column(Text)
    cancellationpolicy: Mapped[str | None] = mapped_column(Text)
    consultationduration: Mapped[str | None] = mapped_column(Text)
    timebetweenconsultations: Mapped[str | None] = mapped_column(Text)
    reschedulingpolicy: Mapped[str | None] = mapped_column(Text)
    onlineconsultations: Mapped[str | None] = mapped_column(Text)
    reminderpreferences: Mapped[str | None] = mapped_column(Text)
    requiredpatientinfo: Mapped[str | None] = mapped_column(Text)
    appointmentconditions: Mapped[str | None] = mapped_column(Text)
    medicalhistoryrequirements: Mapped[str | None] = mapped_column(Text)
    agerequirements: Mapped[str | None] = mapped_column(Text)
    communicationchannels: Mapped[str | None] = mapped_column(Text)
    preappointmentinfo: Mapped[str | None] = mapped_column(Text)
    requireddocuments: Mapped[str | None] = mapped_column(Text)
    additionalinfo: Mapped[str | None] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow, onupdate=utcnow)


PROFILE_TEXT_FIELDS: tuple[str, ...] = (
    "professionalid",
    "phonenumber",
    "email",
    "education",
    "avatar_url",
    "locations",
    "workinghours",
    "procedures",
    "healthinsurance",
    "paymentmethods",
    "consultationfees",
    "cancellationpolicy",
    "consultationduration",
    "timebetweenconsultations",
    "reschedulingpolicy",
    "onlineconsultations",
    "reminderpreferences",
    "requiredpatientinfo",
    "appointmentconditions",
    "medicalhistoryrequirements",
    "agerequirements",
    "communicationchannels",
    "preappointmentinfo",
    "requireddocuments",
    "additionalinfo",
)


class WhatsAppInstance(Base):
    __tablename__ = "whatsapp_instances"

    id: Mapped[uuid.UUID] = _uuid_pk()
    user_id: Mapped[uuid.UUID] = _owner()

    # `instance_name` is the gateway slug; `display_name` is what the user typed.
    instance_name: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    display_name: Mapped[str | None] = mapped_column(String(256))
    phone_number: Mapped[str | None] = mapped_column(String(32))
    status: Mapped[InstanceStatus] = mapped_column(
        Enum(InstanceStatus), nullable=False, default=InstanceStatus.qr_pending, index=True
    )
    qr_code: Mapped[str | None] = mapped_column(Text)

    professional_profile_id: Mapped[uuid.UUID | None] = mapped_column(
        SAUuid(as_uuid=True), ForeignKey("professional_profiles.id", ondelete="SET NULL")
    )
    profile_name: Mapped[str | None] = mapped_column(String(256))
    profile_picture_url: Mapped[str | None] = mapped_column(Text)

    evolution_instance_id: Mapped[str | None] = mapped_column(String(128))
    evolution_instance_key: Mapped[str | None] = mapped_column(String(256))
    webhook_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    webhook_url: Mapped[str | None] = mapped_column(Text)
    integration_provider: Mapped[str] = mapped_column(String(32), nullable=False, default="evolution")
    groups_ignore: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    last_connected_at: Mapped[datetime | None] = mapped_column()
    created_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (UniqueConstraint("user_id", "display_name", name="uq_instance_user_display"),)


class Conversation(Base):
    __tablename__ = "conversations"

    id: Mapped[uuid.UUID] = _uuid_pk()
    user_id: Mapped[uuid.UUID] = _owner()

    contact_phone: Mapped[str] = mapped_column(String(32), nullable=False, default="")
    contact_name: Mapped[str | None] = mapped_column(String(256))
    agent_id: Mapped[uuid.UUID | None] = mapped_column(
        SAUuid(as_uuid=True), ForeignKey("professional_profiles.id", ondelete="SET NULL")
    )
    instance_id: Mapped[uuid.UUID | None] = mapped_column(
        SAUuid(as_uuid=True), ForeignKey("whatsapp_instances.id", ondelete="SET NULL")
    )
    status: Mapped[str | None] = mapped_column(String(32), default="active")
    last_message_at: Mapped[datetime | None] = mapped_column(index=True)

    created_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow, index=True)
    updated_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow, onupdate=utcnow)


class Message(Base):
    __tablename__ = "messages"

    id: Mapped[uuid.UUID] = _uuid_pk()
    conversation_id: Mapped[uuid.UUID] = mapped_column(
        SAUuid(as_uuid=True), ForeignKey("conversations.id"), nullable=False
    )
    sender_type: Mapped[SenderType] = mapped_column(Enum(SenderType), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    message_type: Mapped[str] = mapped_column(String(32), nullable=False, default="text")
    # `metadata` is reserved on declarative classes.
    meta: Mapped[dict[str, Any]] = mapped_column("metadata", JSON, nullable=False, default=dict)

    created_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow)

    __table_args__ = (Index("ix_messages_conversation_created", "conversation_id", "created_at"),)


class ConversationSummary(Base):
    __tablename__ = "conversation_summaries"

    id: Mapped[uuid.UUID] = _uuid_pk()
    user_id: Mapped[uuid.UUID] = _owner()
    conversation_id: Mapped[uuid.UUID] = mapped_column(
        SAUuid(as_uuid=True), ForeignKey("conversations.id"), nullable=False, unique=True
    )
    summary_text: Mapped[str] = mapped_column(Text, nullable=False)

    created_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow, onupdate=utcnow)


class Appointment(Base):
    __tablename__ = "appointments"

    id: Mapped[uuid.UUID] = _uuid_pk()
    user_id: Mapped[uuid.UUID] = _owner()

    patient_name: Mapped[str] = mapped_column(String(256), nullable=False)
    patient_phone: Mapped[str] = mapped_column(String(32), nullable=False, default="")
    patient_email: Mapped[str | None] = mapped_column(String(256))
    # Stored as naive UTC.
    appointment_date: Mapped[datetime] = mapped_column(nullable=False, index=True)
    duration_minutes: Mapped[int | None] = mapped_column(default=60)
    appointment_type: Mapped[str | None] = mapped_column(String(64))
    status: Mapped[str] = mapped_column(String(32), nullable=False, default=AppointmentStatus.scheduled)
    notes: Mapped[str | None] = mapped_column(Text)

    agent_id: Mapped[uuid.UUID | None] = mapped_column(SAUuid(as_uuid=True))
    professional_profile_id: Mapped[uuid.UUID | None] = mapped_column(SAUuid(as_uuid=True))
    conversation_id: Mapped[uuid.UUID | None] = mapped_column(SAUuid(as_uuid=True))

    # Unique per user (see __table_args__).
    google_event_id: Mapped[str | None] = mapped_column(String(256))
    google_calendar_id: Mapped[str | None] = mapped_column(String(256))
    timezone: Mapped[str | None] = mapped_column(String(64))

    created_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_appointments_user_date", "user_id", "appointment_date"),
        UniqueConstraint("user_id", "google_event_id", name="uq_appointment_user_google_event"),
    )


class GoogleCredential(Base):
    __tablename__ = "google_credentials"

    id: Mapped[uuid.UUID] = _uuid_pk()
    user_id: Mapped[uuid.UUID] = _owner()

    email: Mapped[str] = mapped_column(String(256), nullable=False)
    name: Mapped[str | None] = mapped_column(String(256))
    access_token: Mapped[str | None] = mapped_column(Text)
    refresh_token: Mapped[str | None] = mapped_column(Text)
    expires_at: Mapped[datetime | None] = mapped_column()

    created_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow, onupdate=utcnow)


class GoogleProfileLink(Base):
    __tablename__ = "google_profile_links"

    id: Mapped[uuid.UUID] = _uuid_pk()
    google_credential_id: Mapped[uuid.UUID] = mapped_column(
        SAUuid(as_uuid=True), ForeignKey("google_credentials.id"), nullable=False, index=True
    )
    # One calendar account per profile.
    professional_profile_id: Mapped[uuid.UUID] = mapped_column(
        SAUuid(as_uuid=True), ForeignKey("professional_profiles.id"), nullable=False, unique=True
    )

    created_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow)


class Plan(Base):
    __tablename__ = "plans"

    id: Mapped[uuid.UUID] = _uuid_pk()
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    period: Mapped[str] = mapped_column(String(16), nullable=False, default="monthly")

    max_assistants: Mapped[int] = mapped_column(nullable=False, default=0)
    max_instances: Mapped[int] = mapped_column(nullable=False, default=1)
    max_conversations_month: Mapped[int] = mapped_column(nullable=False, default=100)
    max_appointments_month: Mapped[int] = mapped_column(nullable=False, default=50)

    features: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    created_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow, onupdate=utcnow)


class Customer(Base):
    __tablename__ = "customers"

    id: Mapped[uuid.UUID] = _uuid_pk()
    user_id: Mapped[uuid.UUID] = mapped_column(SAUuid(as_uuid=True), nullable=False, unique=True)

    name: Mapped[str] = mapped_column(String(256), nullable=False)
    email: Mapped[str] = mapped_column(String(256), nullable=False)
    phone: Mapped[str | None] = mapped_column(String(32))
    tax_id: Mapped[str | None] = mapped_column(String(32))

    postal_code: Mapped[str | None] = mapped_column(String(16))
    address: Mapped[str | None] = mapped_column(String(256))
    address_number: Mapped[str | None] = mapped_column(String(16))
    complement: Mapped[str | None] = mapped_column(String(128))
    district: Mapped[str | None] = mapped_column(String(128))
    city: Mapped[str | None] = mapped_column(String(128))
    state: Mapped[str | None] = mapped_column(String(2))

    asaas_customer_id: Mapped[str | None] = mapped_column(String(64))
    asaas_card_token: Mapped[str | None] = mapped_column(String(256))

    created_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow, onupdate=utcnow)


class Subscription(Base):
    __tablename__ = "subscriptions"

    id: Mapped[uuid.UUID] = _uuid_pk()
    customer_id: Mapped[uuid.UUID] = mapped_column(
        SAUuid(as_uuid=True), ForeignKey("customers.id"), nullable=False, index=True
    )
    plan_id: Mapped[uuid.UUID] = mapped_column(
        SAUuid(as_uuid=True), ForeignKey("plans.id"), nullable=False
    )
    status: Mapped[SubscriptionStatus] = mapped_column(
        Enum(SubscriptionStatus), nullable=False, index=True
    )
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date | None] = mapped_column(Date)
    next_charge_date: Mapped[date | None] = mapped_column(Date)
    asaas_subscription_id: Mapped[str | None] = mapped_column(String(64))

    created_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow, onupdate=utcnow)


class Charge(Base):
    __tablename__ = "charges"

    id: Mapped[uuid.UUID] = _uuid_pk()
    customer_id: Mapped[uuid.UUID] = mapped_column(
        SAUuid(as_uuid=True), ForeignKey("customers.id"), nullable=False, index=True
    )
    subscription_id: Mapped[uuid.UUID | None] = mapped_column(
        SAUuid(as_uuid=True), ForeignKey("subscriptions.id")
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    status: Mapped[ChargeStatus] = mapped_column(Enum(ChargeStatus), nullable=False)
    description: Mapped[str] = mapped_column(String(256), nullable=False)
    due_date: Mapped[date] = mapped_column(Date, nullable=False)
    paid_date: Mapped[date | None] = mapped_column(Date)
    payment_method: Mapped[str | None] = mapped_column(String(32))
    payment_link: Mapped[str | None] = mapped_column(Text)
    asaas_payment_id: Mapped[str | None] = mapped_column(String(64))

    created_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow, index=True)
    updated_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow, onupdate=utcnow)


class UserLimits(Base):
    __tablename__ = "user_limits"

    id: Mapped[uuid.UUID] = _uuid_pk()
    user_id: Mapped[uuid.UUID] = mapped_column(SAUuid(as_uuid=True), nullable=False, unique=True)
    subscription_id: Mapped[uuid.UUID | None] = mapped_column(SAUuid(as_uuid=True))

    max_assistants: Mapped[int] = mapped_column(nullable=False)
    max_instances: Mapped[int] = mapped_column(nullable=False)
    max_conversations_month: Mapped[int] = mapped_column(nullable=False)
    max_appointments_month: Mapped[int] = mapped_column(nullable=False)

    # Monthly counters; reset when `last_usage_reset` falls in an earlier month.
    used_conversations_month: Mapped[int] = mapped_column(nullable=False, default=0)
    used_appointments_month: Mapped[int] = mapped_column(nullable=False, default=0)
    last_usage_reset: Mapped[date | None] = mapped_column(Date)

    updated_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow, onupdate=utcnow)


class UsageEvent(Base):
    __tablename__ = "usage_events"

    id: Mapped[uuid.UUID] = _uuid_pk()
    user_id: Mapped[uuid.UUID] = _owner()
    subscription_id: Mapped[uuid.UUID | None] = mapped_column(SAUuid(as_uuid=True))
    resource_type: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    resource_id: Mapped[uuid.UUID | None] = mapped_column(SAUuid(as_uuid=True))
    details: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)

    created_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow, index=True)


# --- Module Notes -----------------------------------------------------------
# Usage events are append-only; monthly counters on UserLimits are a cache that can
# be rebuilt from them.
