from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

import httpx
from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.status import HTTP_201_CREATED, HTTP_204_NO_CONTENT

from aplia_backend.api.deps import db_session, http_client, settings_dep
from aplia_backend.auth.deps import get_principal
from aplia_backend.auth.models import Principal
from aplia_backend.db.models import Conversation, Message, SenderType
from aplia_backend.services.conversations import ConversationService
from aplia_backend.settings import Settings

router = APIRouter(prefix="/v1/conversations", tags=["conversations"])


class ConversationCreateRequest(BaseModel):
    contact_phone: str = Field(min_length=1, max_length=32)
    contact_name: str | None = Field(default=None, max_length=256)
    agent_id: uuid.UUID | None = None
    instance_id: uuid.UUID | None = None
    status: str | None = "active"


class ConversationUpdateRequest(BaseModel):
    contact_phone: str | None = Field(default=None, max_length=32)
    contact_name: str | None = Field(default=None, max_length=256)
    agent_id: uuid.UUID | None = None
    instance_id: uuid.UUID | None = None
    status: str | None = None


class MessageCreateRequest(BaseModel):
    content: str = Field(min_length=1)
    sender_type: SenderType = SenderType.agent
    message_type: str = "text"
    metadata: dict[str, Any] | None = None


class SummaryRequest(BaseModel):
    summary_text: str


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _conversation(c: Conversation) -> dict[str, Any]:
    return {
        "id": str(c.id),
        "contact_phone": c.contact_phone,
        "contact_name": c.contact_name,
        "agent_id": str(c.agent_id) if c.agent_id else None,
        "instance_id": str(c.instance_id) if c.instance_id else None,
        "status": c.status,
        "last_message_at": _iso(c.last_message_at),
        "created_at": _iso(c.created_at),
    }


def _message(m: Message) -> dict[str, Any]:
    return {
        "id": str(m.id),
        "conversation_id": str(m.conversation_id),
        "sender_type": m.sender_type.value,
        "content": m.content,
        "message_type": m.message_type,
        "metadata": m.meta,
        "created_at": _iso(m.created_at),
    }


def _service(
    session: AsyncSession = Depends(db_session),
    settings: Settings = Depends(settings_dep),
    http: httpx.AsyncClient = Depends(http_client),
) -> ConversationService:
    return ConversationService(session=session, settings=settings, http=http)


@router.get("")
async def list_conversations(
    principal: Principal = Depends(get_principal),
    svc: ConversationService = Depends(_service),
) -> list[dict[str, Any]]:
    views = await svc.list_conversations(principal.user_id)
    return [
        {
            **_conversation(v.conversation),
            "message_count": v.message_count,
            "last_message": v.last_message,
            "profile_name": v.profile_name,
        }
        for v in views
    ]


@router.post("", status_code=HTTP_201_CREATED)
async def create_conversation(
    body: ConversationCreateRequest,
    principal: Principal = Depends(get_principal),
    svc: ConversationService = Depends(_service),
) -> dict[str, Any]:
    conversation = await svc.create_conversation(user_id=principal.user_id, fields=body.model_dump())
    return _conversation(conversation)


@router.patch("/{conversation_id}")
async def update_conversation(
    conversation_id: uuid.UUID,
    body: ConversationUpdateRequest,
    principal: Principal = Depends(get_principal),
    svc: ConversationService = Depends(_service),
) -> dict[str, Any]:
    conversation = await svc.get_owned(principal.user_id, conversation_id)
    conversation = await svc.update_conversation(conversation, body.model_dump(exclude_unset=True))
    return _conversation(conversation)


@router.delete("/{conversation_id}", status_code=HTTP_204_NO_CONTENT)
async def delete_conversation(
    conversation_id: uuid.UUID,
    principal: Principal = Depends(get_principal),
    svc: ConversationService = Depends(_service),
) -> None:
    conversation = await svc.get_owned(principal.user_id, conversation_id)
    await svc.delete_conversation(conversation)


@router.get("/{conversation_id}/messages")
async def list_messages(
    conversation_id: uuid.UUID,
    principal: Principal = Depends(get_principal),
    svc: ConversationService = Depends(_service),
) -> list[dict[str, Any]]:
    conversation = await svc.get_owned(principal.user_id, conversation_id)
    return [_message(m) for m in await svc.list_messages(conversation)]


@router.post("/{conversation_id}/messages", status_code=HTTP_201_CREATED)
async def send_message(
    conversation_id: uuid.UUID,
    body: MessageCreateRequest,
    principal: Principal = Depends(get_principal),
    svc: ConversationService = Depends(_service),
) -> dict[str, Any]:
    conversation = await svc.get_owned(principal.user_id, conversation_id)
    message = await svc.send_message(
        conversation,
        content=body.content,
        sender_type=body.sender_type,
        message_type=body.message_type,
        meta=body.metadata,
    )
    return _message(message)


@router.get("/{conversation_id}/summary")
async def get_summary(
    conversation_id: uuid.UUID,
    principal: Principal = Depends(get_principal),
    svc: ConversationService = Depends(_service),
) -> dict[str, Any] | None:
    conversation = await svc.get_owned(principal.user_id, conversation_id)
    summary = await svc.get_summary(conversation)
    if summary is None:
        return None
    return {
        "id": str(summary.id),
        "conversation_id": str(summary.conversation_id),
        "summary_text": summary.summary_text,
        "updated_at": _iso(summary.updated_at),
    }


@router.put("/{conversation_id}/summary")
async def save_summary(
    conversation_id: uuid.UUID,
    body: SummaryRequest,
    principal: Principal = Depends(get_principal),
    svc: ConversationService = Depends(_service),
) -> dict[str, Any]:
    conversation = await svc.get_owned(principal.user_id, conversation_id)
    summary = await svc.save_summary(conversation, body.summary_text)
    return {
        "id": str(summary.id),
        "conversation_id": str(summary.conversation_id),
        "summary_text": summary.summary_text,
        "updated_at": _iso(summary.updated_at),
    }
