"""
aplia_backend.services.profiles

Professional (assistant) profiles.

Responsibilities:
- CRUD with the assistant limit enforced on create.
- Push the profile to the questionnaire automation after every change.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Literal

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from aplia_backend.db.models import PROFILE_TEXT_FIELDS, ProfessionalProfile
from aplia_backend.db.repositories.google import GoogleRepo
from aplia_backend.db.repositories.profiles import ProfileRepo
from aplia_backend.domain.limits import ResourceType
from aplia_backend.integrations.n8n import N8nClient
from aplia_backend.observability.logging import get_logger
from aplia_backend.services.errors import NotFoundError, UpstreamError, ValidationFailed
from aplia_backend.services.usage import UsageService, limits_of
from aplia_backend.settings import Settings

log = get_logger(__name__)

ProfileAction = Literal["create", "update", "delete"]

PROFILE_FIELDS: tuple[str, ...] = ("fullname", "specialty", *PROFILE_TEXT_FIELDS)


def profile_to_dict(profile: ProfessionalProfile) -> dict[str, Any]:
    data: dict[str, Any] = {"id": str(profile.id), "user_id": str(profile.user_id)}
    for field in PROFILE_FIELDS:
        data[field] = getattr(profile, field)
    for stamp in ("created_at", "updated_at"):
        value: datetime | None = getattr(profile, stamp)
        data[stamp] = value.isoformat() if value else None
    return data


def _clean(fields: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in fields.items() if k in PROFILE_FIELDS}


class ProfileService:
    def __init__(self, *, session: AsyncSession, settings: Settings, http: httpx.AsyncClient) -> None:
        self._session = session
        self._repo = ProfileRepo(session)
        self._n8n = N8nClient(settings=settings, http=http)

    async def get_owned(self, user_id: uuid.UUID, profile_id: uuid.UUID) -> ProfessionalProfile:
        profile = await self._repo.get(profile_id)
        if profile is None or profile.user_id != user_id:
            raise NotFoundError("Professional profile not found")
        return profile

    async def list_profiles(self, user_id: uuid.UUID) -> tuple[list[ProfessionalProfile], dict[str, int]]:
        profiles = await self._repo.list_for_user(user_id)
        row = await UsageService(session=self._session).ensure_user_limits(user_id)
        await self._session.commit()
        limits = {"max_assistants": limits_of(row).max_assistants, "used_assistants": len(profiles)}
        return profiles, limits

    async def create_profile(self, *, user_id: uuid.UUID, fields: dict[str, Any]) -> ProfessionalProfile:
        fields = _clean(fields)
        if not (fields.get("fullname") or "").strip():
            raise ValidationFailed("fullname is required")
        fields.setdefault("specialty", "")

        usage = UsageService(session=self._session)
        await usage.check_limit(user_id, ResourceType.assistant)
        profile = await self._repo.create(user_id=user_id, fields=fields)
        await usage.record_usage(user_id, ResourceType.assistant, profile.id, details={"fullname": profile.fullname})
        await self._session.commit()

        log.info("profile_created", profile_id=str(profile.id))
        await self._notify_quietly(profile_to_dict(profile), "create", user_id)
        return profile

    async def update_profile(self, profile: ProfessionalProfile, fields: dict[str, Any]) -> ProfessionalProfile:
        await self._repo.update(profile, fields=_clean(fields))
        await self._session.commit()
        await self._notify_quietly(profile_to_dict(profile), "update", profile.user_id)
        return profile

    async def delete_profile(self, profile: ProfessionalProfile) -> None:
        snapshot = profile_to_dict(profile)
        user_id = profile.user_id
        google = GoogleRepo(self._session)
        link = await google.link_for_profile(profile.id)
        if link is not None:
            await google.delete_link(link)
        await self._repo.delete(profile)
        await self._session.commit()
        log.info("profile_deleted", profile_id=snapshot["id"])
        await self._notify_quietly(snapshot, "delete", user_id)

    async def notify(self, profile: ProfessionalProfile, action: str = "update") -> dict[str, Any]:
        """
        Send the profile to the questionnaire automation and relay its answer.

        Raises `UpstreamError` (502) when the automation is unreachable or rejects it.
        """

        payload = {"profileData": profile_to_dict(profile), "action": action}
        try:
            result = await self._n8n.forward(endpoint="questionario", payload=payload, user_id=profile.user_id)
        except httpx.HTTPError as e:
            raise UpstreamError(f"Failed to send profile data to webhook: {e}") from e
        if not result.success:
            raise UpstreamError(
                f"Failed to send profile data to webhook: status {result.status}", status_code=502
            )
        return {
            "success": True,
            "message": "Profile data sent to webhook successfully",
            "webhook_response": result.data,
        }

    async def _notify_quietly(self, profile_data: dict[str, Any], action: ProfileAction, user_id: uuid.UUID) -> None:
        payload = {"profileData": profile_data, "action": action}
        try:
            result = await self._n8n.forward(endpoint="questionario", payload=payload, user_id=user_id)
        except httpx.HTTPError as e:
            log.warning("profile_notify_failed", action=action, error=str(e))
            return
        if not result.success:
            log.warning("profile_notify_failed", action=action, status=result.status)
