"""
aplia_backend.services.conversations

Patient conversations, their messages and AI summaries.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from aplia_backend.db.models import Conversation, ConversationSummary, Message, SenderType, utcnow
from aplia_backend.db.repositories.conversations import ConversationRepo, MessageRepo, SummaryRepo
from aplia_backend.db.repositories.profiles import ProfileRepo
from aplia_backend.domain.limits import ResourceType
from aplia_backend.integrations.n8n import N8nClient
from aplia_backend.observability.logging import get_logger
from aplia_backend.services.errors import NotFoundError, ValidationFailed
from aplia_backend.services.usage import UsageService
from aplia_backend.settings import Settings

log = get_logger(__name__)

NO_MESSAGES = "Nenhuma mensagem"
EDITABLE_FIELDS = ("contact_name", "contact_phone", "agent_id", "instance_id", "status")


@dataclass(slots=True)
class ConversationView:
    conversation: Conversation
    message_count: int
    last_message: str
    profile_name: str | None


class ConversationService:
    def __init__(self, *, session: AsyncSession, settings: Settings, http: httpx.AsyncClient) -> None:
        self._session = session
        self._repo = ConversationRepo(session)
        self._messages = MessageRepo(session)
        self._n8n = N8nClient(settings=settings, http=http)

    async def get_owned(self, user_id: uuid.UUID, conversation_id: uuid.UUID) -> Conversation:
        conversation = await self._repo.get(conversation_id)
        if conversation is None or conversation.user_id != user_id:
            raise NotFoundError("Conversation not found")
        return conversation

    async def list_conversations(self, user_id: uuid.UUID) -> list[ConversationView]:
        conversations = await self._repo.list_for_user(user_id)
        ids = [c.id for c in conversations]
        counts = await self._messages.counts_by_conversation(ids)
        latest = await self._messages.latest_by_conversation(ids)
        names = await ProfileRepo(self._session).names_for([c.agent_id for c in conversations if c.agent_id])
        return [
            ConversationView(
                conversation=c,
                message_count=counts.get(c.id, 0),
                last_message=latest.get(c.id, NO_MESSAGES),
                profile_name=names.get(c.agent_id) if c.agent_id else None,
            )
            for c in conversations
        ]

    async def create_conversation(self, *, user_id: uuid.UUID, fields: dict[str, Any]) -> Conversation:
        usage = UsageService(session=self._session)
        await usage.check_limit(user_id, ResourceType.conversation)

        conversation = await self._repo.create(user_id=user_id, last_message_at=utcnow(), **fields)
        await usage.record_usage(
            user_id,
            ResourceType.conversation,
            conversation.id,
            details={"contact_phone": conversation.contact_phone},
        )
        await self._session.commit()
        log.info("conversation_created", conversation_id=str(conversation.id))
        return conversation

    async def update_conversation(self, conversation: Conversation, fields: dict[str, Any]) -> Conversation:
        for key, value in fields.items():
            if key in EDITABLE_FIELDS:
                setattr(conversation, key, value)
        await self._session.commit()
        return conversation

    async def delete_conversation(self, conversation: Conversation) -> None:
        await self._repo.delete_with_dependents(conversation)
        await self._session.commit()
        log.info("conversation_deleted", conversation_id=str(conversation.id))

    async def list_messages(self, conversation: Conversation) -> list[Message]:
        return await self._messages.list_for_conversation(conversation.id)

    async def send_message(
        self,
        conversation: Conversation,
        *,
        content: str,
        sender_type: SenderType = SenderType.agent,
        message_type: str = "text",
        meta: dict[str, Any] | None = None,
    ) -> Message:
        if not content.strip():
            raise ValidationFailed("content is required")

        message = await self._messages.add(
            conversation_id=conversation.id,
            sender_type=sender_type,
            content=content,
            message_type=message_type,
            meta=meta,
        )
        await self._repo.touch(conversation, at=message.created_at)
        await self._session.commit()

        if sender_type == SenderType.agent:
            await self._notify_chat(conversation, content)
        return message

    async def _notify_chat(self, conversation: Conversation, content: str) -> None:
        payload = {
            "mensagem": content,
            "agente_id": str(conversation.agent_id) if conversation.agent_id else None,
            "nome_do_lead": conversation.contact_name or conversation.contact_phone,
            "user_id": str(conversation.user_id),
        }
        try:
            result = await self._n8n.forward(endpoint="chat-interno", payload=payload, user_id=conversation.user_id)
        except httpx.HTTPError as e:
            log.warning("chat_notify_failed", conversation_id=str(conversation.id), error=str(e))
            return
        if not result.success:
            log.warning("chat_notify_failed", conversation_id=str(conversation.id), status=result.status)

    async def get_summary(self, conversation: Conversation) -> ConversationSummary | None:
        return await SummaryRepo(self._session).get_for_conversation(conversation.id)

    async def save_summary(self, conversation: Conversation, summary_text: str) -> ConversationSummary:
        summary = await SummaryRepo(self._session).upsert(
            user_id=conversation.user_id, conversation_id=conversation.id, summary_text=summary_text
        )
        await self._session.commit()
        return summary
