"""
aplia_backend.db.repositories.google

Repository for Google calendar credentials and their profile links.
"""

from __future__ import annotations

import uuid

from sqlalchemy import delete, desc, select
from sqlalchemy.ext.asyncio import AsyncSession

from aplia_backend.db.models import GoogleCredential, GoogleProfileLink


class GoogleRepo:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create_credential(self, *, user_id: uuid.UUID, email: str, name: str | None = None) -> GoogleCredential:
        credential = GoogleCredential(user_id=user_id, email=email, name=name)
        self._session.add(credential)
        await self._session.flush()
        return credential

    async def list_credentials(self, user_id: uuid.UUID) -> list[GoogleCredential]:
        stmt = (
            select(GoogleCredential)
            .where(GoogleCredential.user_id == user_id)
            .order_by(desc(GoogleCredential.created_at))
        )
        return list((await self._session.execute(stmt)).scalars().all())

    async def get_credential(self, credential_id: uuid.UUID) -> GoogleCredential | None:
        return await self._session.get(GoogleCredential, credential_id)

    async def latest_credential(self, user_id: uuid.UUID) -> GoogleCredential | None:
        stmt = (
            select(GoogleCredential)
            .where(GoogleCredential.user_id == user_id)
            .order_by(desc(GoogleCredential.created_at))
            .limit(1)
        )
        return (await self._session.execute(stmt)).scalar_one_or_none()

    async def delete_credential(self, credential: GoogleCredential) -> None:
        # Links reference the credential; drop them first.
        await self._session.execute(
            delete(GoogleProfileLink).where(GoogleProfileLink.google_credential_id == credential.id)
        )
        await self._session.delete(credential)
        await self._session.flush()

    async def link_for_profile(self, profile_id: uuid.UUID) -> GoogleProfileLink | None:
        stmt = select(GoogleProfileLink).where(GoogleProfileLink.professional_profile_id == profile_id)
        return (await self._session.execute(stmt)).scalar_one_or_none()

    async def links_for_credentials(self, credential_ids: list[uuid.UUID]) -> list[GoogleProfileLink]:
        if not credential_ids:
            return []
        stmt = select(GoogleProfileLink).where(GoogleProfileLink.google_credential_id.in_(credential_ids))
        return list((await self._session.execute(stmt)).scalars().all())

    async def create_link(self, *, credential_id: uuid.UUID, profile_id: uuid.UUID) -> GoogleProfileLink:
        link = GoogleProfileLink(google_credential_id=credential_id, professional_profile_id=profile_id)
        self._session.add(link)
        await self._session.flush()
        return link

    async def delete_link(self, link: GoogleProfileLink) -> None:
        await self._session.delete(link)
        await self._session.flush()

    async def email_for_profile(self, profile_id: uuid.UUID) -> str | None:
        stmt = (
            select(GoogleCredential.email)
            .join(GoogleProfileLink, GoogleProfileLink.google_credential_id == GoogleCredential.id)
            .where(GoogleProfileLink.professional_profile_id == profile_id)
        )
        return (await self._session.execute(stmt)).scalar_one_or_none()

    async def get_link_for_user(self, link_id: uuid.UUID, user_id: uuid.UUID) -> GoogleProfileLink | None:
        stmt = (
            select(GoogleProfileLink)
            .join(GoogleCredential, GoogleProfileLink.google_credential_id == GoogleCredential.id)
            .where(GoogleProfileLink.id == link_id, GoogleCredential.user_id == user_id)
        )
        return (await self._session.execute(stmt)).scalar_one_or_none()
