"""
aplia_backend.db.repositories.conversations

Repositories for conversations, their messages and summaries.

Responsibilities:
- Owner-scoped conversation listing (most recent activity first).
- Aggregate queries used by the dashboard (counts per window).
- Ordered deletion of a conversation and its dependents.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import delete, desc, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from aplia_backend.db.models import (
    Conversation,
    ConversationSummary,
    Message,
    SenderType,
    utcnow,
)


class ConversationRepo:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, *, user_id: uuid.UUID, **fields: Any) -> Conversation:
        conversation = Conversation(user_id=user_id, **fields)
        self._session.add(conversation)
        await self._session.flush()
        return conversation

    async def get(self, conversation_id: uuid.UUID) -> Conversation | None:
        return await self._session.get(Conversation, conversation_id)

    async def list_for_user(self, user_id: uuid.UUID) -> list[Conversation]:
        stmt = (
            select(Conversation)
            .where(Conversation.user_id == user_id)
            .order_by(
                Conversation.last_message_at.desc().nulls_last(),
                desc(Conversation.created_at),
            )
        )
        return list((await self._session.execute(stmt)).scalars().all())

    async def count_created_since(self, user_id: uuid.UUID, since: datetime) -> int:
        stmt = select(func.count()).select_from(Conversation).where(
            Conversation.user_id == user_id,
            Conversation.created_at >= since,
        )
        return int((await self._session.execute(stmt)).scalar_one())

    async def count_active_since(self, user_id: uuid.UUID, since: datetime) -> int:
        # Active: a message inside the window, or brand new with no message yet.
        stmt = select(func.count()).select_from(Conversation).where(
            Conversation.user_id == user_id,
            or_(
                Conversation.last_message_at >= since,
                (Conversation.last_message_at.is_(None)) & (Conversation.created_at >= since),
            ),
        )
        return int((await self._session.execute(stmt)).scalar_one())

    async def created_timestamps_since(self, user_id: uuid.UUID, since: datetime) -> list[datetime]:
        stmt = select(Conversation.created_at).where(
            Conversation.user_id == user_id,
            Conversation.created_at >= since,
        )
        return list((await self._session.execute(stmt)).scalars().all())

    async def touch(self, conversation: Conversation, *, at: datetime | None = None) -> None:
        conversation.last_message_at = at or utcnow()
        await self._session.flush()

    async def delete_with_dependents(self, conversation: Conversation) -> None:
        # Children first: summaries, then messages, then the conversation itself.
        await self._session.execute(
            delete(ConversationSummary).where(ConversationSummary.conversation_id == conversation.id)
        )
        await self._session.execute(delete(Message).where(Message.conversation_id == conversation.id))
        await self._session.delete(conversation)
        await self._session.flush()


class MessageRepo:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def add(
        self,
        *,
        conversation_id: uuid.UUID,
        sender_type: SenderType,
        content: str,
        message_type: str = "text",
        meta: dict[str, Any] | None = None,
    ) -> Message:
        message = Message(
            conversation_id=conversation_id,
            sender_type=sender_type,
            content=content,
            message_type=message_type,
            meta=meta or {},
        )
        self._session.add(message)
        await self._session.flush()
        return message

    async def list_for_conversation(self, conversation_id: uuid.UUID) -> list[Message]:
        stmt = (
            select(Message)
            .where(Message.conversation_id == conversation_id)
            .order_by(Message.created_at)
        )
        return list((await self._session.execute(stmt)).scalars().all())

    async def counts_by_conversation(self, conversation_ids: list[uuid.UUID]) -> dict[uuid.UUID, int]:
        if not conversation_ids:
            return {}
        stmt = (
            select(Message.conversation_id, func.count())
            .where(Message.conversation_id.in_(conversation_ids))
            .group_by(Message.conversation_id)
        )
        return {cid: int(n) for cid, n in (await self._session.execute(stmt)).all()}

    async def latest_by_conversation(self, conversation_ids: list[uuid.UUID]) -> dict[uuid.UUID, str]:
        if not conversation_ids:
            return {}
        stmt = (
            select(Message.conversation_id, Message.content)
            .where(Message.conversation_id.in_(conversation_ids))
            .order_by(Message.conversation_id, desc(Message.created_at))
        )
        latest: dict[uuid.UUID, str] = {}
        for cid, content in (await self._session.execute(stmt)).all():
            latest.setdefault(cid, content)
        return latest

    async def count_for_user_since(self, user_id: uuid.UUID, since: datetime) -> int:
        stmt = (
            select(func.count())
            .select_from(Message)
            .join(Conversation, Conversation.id == Message.conversation_id)
            .where(Conversation.user_id == user_id, Message.created_at >= since)
        )
        return int((await self._session.execute(stmt)).scalar_one())


class SummaryRepo:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_for_conversation(self, conversation_id: uuid.UUID) -> ConversationSummary | None:
        stmt = select(ConversationSummary).where(
            ConversationSummary.conversation_id == conversation_id
        )
        return (await self._session.execute(stmt)).scalar_one_or_none()

    async def upsert(
        self, *, user_id: uuid.UUID, conversation_id: uuid.UUID, summary_text: str
    ) -> ConversationSummary:
        summary = await self.get_for_conversation(conversation_id)
        if summary is None:
            summary = ConversationSummary(
                user_id=user_id, conversation_id=conversation_id, summary_text=summary_text
            )
            self._session.add(summary)
        else:
            summary.summary_text = summary_text
        await self._session.flush()
        return summary
