"""
aplia_backend.services.calendar

Google Calendar integration.

Responsibilities:
- Build the OAuth consent URL and hand authorization codes to the automation.
- Manage linked Google accounts and their (one-per-profile) profile links.
- Request an events sync and import the events the automation sends back.
"""

from __future__ import annotations

import json
import uuid
from datetime import datetime
from typing import Any
from urllib.parse import quote, unquote, urlencode
from zoneinfo import ZoneInfo

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from aplia_backend.db.models import (
    AppointmentStatus,
    GoogleCredential,
    GoogleProfileLink,
    utcnow,
)
from aplia_backend.db.repositories.appointments import AppointmentRepo
from aplia_backend.db.repositories.google import GoogleRepo
from aplia_backend.db.repositories.profiles import ProfileRepo
from aplia_backend.integrations.n8n import N8nClient, ProxyResult
from aplia_backend.observability.logging import get_logger
from aplia_backend.services.errors import NotFoundError, UpstreamError, ValidationFailed
from aplia_backend.services.scheduling import to_naive_utc
from aplia_backend.settings import Settings

log = get_logger(__name__)

GOOGLE_SCOPES = " ".join(
    [
        "https://www.googleapis.com/auth/calendar",
        "https://www.googleapis.com/auth/calendar.events",
        "https://www.googleapis.com/auth/userinfo.email",
        "https://www.googleapis.com/auth/userinfo.profile",
        "openid",
    ]
)

DEFAULT_EVENT_TITLE = "Evento do Google Calendar"
GOOGLE_APPOINTMENT_TYPE = "google_calendar"
PRIMARY_CALENDAR = "primary"


def build_google_auth_url(settings: Settings, user_id: uuid.UUID) -> str:
    state = quote(json.dumps({"user_id": str(user_id)}, separators=(",", ":")), safe="")
    params = urlencode(
        {
            "client_id": settings.google_client_id,
            "redirect_uri": settings.google_redirect_uri,
            "response_type": "code",
            "scope": GOOGLE_SCOPES,
            "access_type": "offline",
            "prompt": "consent",
            "state": state,
        }
    )
    return f"{settings.google_auth_base_url}?{params}"


def parse_state_user_id(state: str | None) -> str | None:
    if not state:
        return None
    for candidate in (unquote(state), state):
        try:
            parsed = json.loads(candidate)
        except ValueError:
            continue
        if isinstance(parsed, dict) and parsed.get("user_id"):
            return str(parsed["user_id"])
    return None


def _parse_event_time(value: Any, tz: ZoneInfo) -> datetime:
    # Events carry either an RFC 3339 string or Google's {"dateTime": ...} / {"date": ...}.
    # All-day dates have no offset and are read in the practice timezone.
    if isinstance(value, dict):
        value = value.get("dateTime") or value.get("date")
    if not isinstance(value, str) or not value:
        raise ValueError("missing event time")
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=tz)


class CalendarService:
    def __init__(self, *, session: AsyncSession, settings: Settings, http: httpx.AsyncClient) -> None:
        self._session = session
        self._settings = settings
        self._repo = GoogleRepo(session)
        self._n8n = N8nClient(settings=settings, http=http)

    async def complete_oauth(
        self,
        *,
        user_id: uuid.UUID,
        code: str,
        state: str | None,
        pending_profile_id: uuid.UUID | None = None,
    ) -> dict[str, Any]:
        if not code:
            raise ValidationFailed("Missing authorization code")

        payload = {
            "type": "google_auth_code",
            "code": code,
            "user_id": parse_state_user_id(state) or str(user_id),
            "redirect_uri": self._settings.google_redirect_uri,
            "timestamp": utcnow().isoformat() + "Z",
            "state": state,
        }
        result = await self._n8n.forward(endpoint="google-oauth", payload=payload, user_id=user_id)
        if not result.success:
            raise UpstreamError("webhook_failed")

        linked = False
        if pending_profile_id is not None:
            linked = await self._link_latest_credential(user_id, pending_profile_id)
        return {"success": True, "linked": linked}

    async def _link_latest_credential(self, user_id: uuid.UUID, profile_id: uuid.UUID) -> bool:
        credential = await self._repo.latest_credential(user_id)
        if credential is None:
            log.warning("google_link_no_credential", profile_id=str(profile_id))
            return False
        if await self._repo.link_for_profile(profile_id) is not None:
            log.info("google_link_exists", profile_id=str(profile_id))
            return False
        await self._owned_profile(user_id, profile_id)
        await self._repo.create_link(credential_id=credential.id, profile_id=profile_id)
        await self._session.commit()
        return True

    async def _owned_profile(self, user_id: uuid.UUID, profile_id: uuid.UUID) -> None:
        profile = await ProfileRepo(self._session).get(profile_id)
        if profile is None or profile.user_id != user_id:
            raise NotFoundError("Professional profile not found")

    async def register_credential(
        self,
        *,
        user_id: uuid.UUID,
        email: str,
        name: str | None = None,
        access_token: str | None = None,
        refresh_token: str | None = None,
        expires_at: datetime | None = None,
    ) -> GoogleCredential:
        credential = await self._repo.create_credential(user_id=user_id, email=email, name=name)
        credential.access_token = access_token
        credential.refresh_token = refresh_token
        credential.expires_at = to_naive_utc(expires_at) if expires_at else None
        await self._session.commit()
        return credential

    async def list_credentials(self, user_id: uuid.UUID) -> tuple[list[GoogleCredential], list[GoogleProfileLink]]:
        credentials = await self._repo.list_credentials(user_id)
        links = await self._repo.links_for_credentials([c.id for c in credentials])
        return credentials, links

    async def owned_credential(self, user_id: uuid.UUID, credential_id: uuid.UUID) -> GoogleCredential:
        credential = await self._repo.get_credential(credential_id)
        if credential is None or credential.user_id != user_id:
            raise NotFoundError("Google account not found")
        return credential

    async def disconnect(self, user_id: uuid.UUID, credential_id: uuid.UUID) -> None:
        credential = await self.owned_credential(user_id, credential_id)
        await self._repo.delete_credential(credential)
        await self._session.commit()
        log.info("google_disconnected", credential_id=str(credential_id))

    async def link_profile(
        self, *, user_id: uuid.UUID, credential_id: uuid.UUID, profile_id: uuid.UUID
    ) -> GoogleProfileLink:
        await self.owned_credential(user_id, credential_id)
        await self._owned_profile(user_id, profile_id)
        if await self._repo.link_for_profile(profile_id) is not None:
            raise ValidationFailed("Este perfil já está vinculado a uma conta Google")
        link = await self._repo.create_link(credential_id=credential_id, profile_id=profile_id)
        await self._session.commit()
        return link

    async def unlink(self, *, user_id: uuid.UUID, link_id: uuid.UUID) -> None:
        link = await self._repo.get_link_for_user(link_id, user_id)
        if link is None:
            raise NotFoundError("Link not found")
        await self._repo.delete_link(link)
        await self._session.commit()

    async def sync_google_events(self, *, user_id: uuid.UUID, profile_id: uuid.UUID) -> ProxyResult:
        await self._owned_profile(user_id, profile_id)
        my_email = await self._repo.email_for_profile(profile_id)
        if my_email is None:
            raise ValidationFailed("Nenhuma conta Google vinculada a este perfil")
        query = {
            "action": "sync",
            "user_id": str(user_id),
            "professional_profile_id": str(profile_id),
            "my_email": my_email,
        }
        return await self._n8n.send_query(endpoint="google-eventos", query=query, user_id=user_id)

    async def import_google_events(self, *, profile_id: uuid.UUID, response_json: str) -> dict[str, int]:
        try:
            events = json.loads(response_json)
        except (TypeError, ValueError) as e:
            raise ValidationFailed("Invalid JSON in response field") from e
        if isinstance(events, dict):
            events = [events]
        if not isinstance(events, list):
            raise ValidationFailed("Invalid JSON in response field")

        profile = await ProfileRepo(self._session).get(profile_id)
        if profile is None:
            raise NotFoundError("Professional profile not found")
        user_id = profile.user_id

        appointments = AppointmentRepo(self._session)
        tz = ZoneInfo(self._settings.default_timezone)
        event_ids = [str(e["id"]) for e in events if isinstance(e, dict) and e.get("id")]
        existing = await appointments.existing_google_event_ids(user_id, event_ids)

        created = skipped = errors = 0
        for event in events:
            event_id = str(event.get("id")) if isinstance(event, dict) and event.get("id") else None
            if event_id is None:
                errors += 1
                continue
            if event_id in existing:
                skipped += 1
                continue
            try:
                start = _parse_event_time(event.get("start"), tz)
                end = _parse_event_time(event.get("end"), tz)
            except ValueError as e:
                log.warning("google_event_invalid", event_id=event_id, error=str(e))
                errors += 1
                continue

            await appointments.create(
                user_id=user_id,
                professional_profile_id=profile_id,
                google_event_id=event_id,
                google_calendar_id=PRIMARY_CALENDAR,
                patient_name=event.get("summary") or DEFAULT_EVENT_TITLE,
                patient_phone="",
                patient_email="",
                appointment_date=to_naive_utc(start),
                duration_minutes=round((end - start).total_seconds() / 60),
                status=AppointmentStatus.confirmed,
                notes=event.get("location") or "",
                appointment_type=GOOGLE_APPOINTMENT_TYPE,
                timezone=self._settings.default_timezone,
            )
            existing.add(event_id)
            created += 1

        await self._session.commit()
        summary = {
            "total_events": len(events),
            "appointments_created": created,
            "duplicates_skipped": skipped,
            "errors": errors,
            "processed": created + skipped + errors,
        }
        log.info("google_events_imported", profile_id=str(profile_id), **summary)
        return summary
