"""
aplia_backend.services.whatsapp

WhatsApp instance connection lifecycle.

Responsibilities:
- Create gateway instances (idempotent per display name) and persist them as `qr_pending`.
- Refresh QR codes, disconnect, and (re)apply the events webhook.
- Reconcile local rows with the gateway: phone, picture, profile name, connection state.
- Apply inbound gateway events (connection / QR updates).
- Poll instances that are still waiting for a QR scan (`InstanceStatusPoller`).

State machine (`whatsapp_instances.status`):
- qr_pending -> connected       (gateway reports open/connected/online)
- connected  -> disconnected    (logout, or gateway reports close/offline)
- *          -> qr_pending      (QR refreshed or QR update event)
"""

from __future__ import annotations

import asyncio
import random
import uuid
from dataclasses import dataclass
from typing import Any

import httpx
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from aplia_backend.db.models import InstanceStatus, WhatsAppInstance, utcnow
from aplia_backend.db.repositories.profiles import ProfileRepo
from aplia_backend.db.repositories.whatsapp_instances import InstanceRepo
from aplia_backend.db.session import session_scope
from aplia_backend.domain.limits import ResourceType
from aplia_backend.domain.phone import extract_phone_number, normalize_phone_number
from aplia_backend.integrations.evolution import (
    EvolutionClient,
    is_connected_state,
    is_disconnected_state,
    qr_code_from,
    slugify_instance_name,
)
from aplia_backend.observability.logging import get_logger
from aplia_backend.services.errors import NotFoundError, UpstreamError, ValidationFailed
from aplia_backend.services.usage import UsageService
from aplia_backend.settings import Settings

log = get_logger(__name__)

DEFAULT_DISPLAY_NAME = "Nova Instância"

CONNECTION_EVENTS = frozenset({"connection.update", "CONNECTION_UPDATE"})
QRCODE_EVENTS = frozenset({"qrcode.updated", "QRCODE_UPDATED"})
MESSAGE_EVENTS = frozenset({"messages.upsert", "MESSAGES_UPSERT"})


@dataclass(slots=True)
class InstanceInfo:
    phone_number: str | None = None
    profile_picture_url: str | None = None
    display_name: str | None = None
    is_connected: bool = False

    def as_dict(self) -> dict[str, Any]:
        return {
            "phone_number": self.phone_number,
            "profile_picture_url": self.profile_picture_url,
            "display_name": self.display_name,
            "is_connected": self.is_connected,
        }


def _owner_phone(owner: dict[str, Any]) -> str | None:
    phone = extract_phone_number(owner)
    if phone:
        return phone
    jid = owner.get("jid")
    if isinstance(jid, str) and jid:
        return normalize_phone_number(jid.split("@", 1)[0]) or None
    return None


class WhatsAppService:
    def __init__(self, *, session: AsyncSession, settings: Settings, http: httpx.AsyncClient) -> None:
        self._session = session
        self._settings = settings
        self._repo = InstanceRepo(session)
        self._client = EvolutionClient(settings=settings, http=http)

    async def list_instances(self, user_id: uuid.UUID) -> list[tuple[WhatsAppInstance, str | None, str | None]]:
        return await self._repo.list_for_user_with_profiles(user_id)

    async def create_instance(
        self,
        *,
        user_id: uuid.UUID,
        display_name: str | None,
        professional_profile_id: uuid.UUID | None = None,
        phone_number: str | None = None,
        rng: random.Random | None = None,
    ) -> WhatsAppInstance:
        display_name = (display_name or "").strip() or DEFAULT_DISPLAY_NAME

        existing = await self._repo.get_by_display_name(user_id=user_id, display_name=display_name)
        if existing is not None:
            log.info("instance_exists", instance=existing.instance_name)
            return existing

        if professional_profile_id is not None:
            profile = await ProfileRepo(self._session).get(professional_profile_id)
            if profile is None or profile.user_id != user_id:
                raise NotFoundError("Profile not found")

        usage = UsageService(session=self._session)
        await usage.check_limit(user_id, ResourceType.instance)

        names = slugify_instance_name(display_name, rng)
        created = await self._client.create_instance(instance_name=names.instance_name)
        log.info("instance_created_at_gateway", instance=names.instance_name)

        qr_code = qr_code_from(created)
        try:
            connect_qr = await self._client.connect(names.instance_name)
            qr_code = qr_code or connect_qr
        except UpstreamError as e:
            log.warning("instance_connect_failed", instance=names.instance_name, error=e.detail)

        webhook_enabled = await self._apply_webhook(names.instance_name)

        try:
            await self._client.update_profile_name(names.instance_name, profile_name=names.pretty_name)
        except UpstreamError as e:
            log.warning("instance_profile_name_failed", instance=names.instance_name, error=e.detail)

        gateway_instance = created.get("instance") if isinstance(created.get("instance"), dict) else {}
        gateway_hash = created.get("hash") if isinstance(created.get("hash"), dict) else {}

        try:
            instance = await self._repo.create(
                user_id=user_id,
                instance_name=names.instance_name,
                display_name=display_name,
                phone_number=normalize_phone_number(phone_number) if phone_number else None,
                professional_profile_id=professional_profile_id,
                status=InstanceStatus.qr_pending,
                qr_code=qr_code,
                evolution_instance_id=gateway_instance.get("instanceId"),
                evolution_instance_key=gateway_hash.get("apikey"),
                groups_ignore=True,
                webhook_enabled=webhook_enabled,
                webhook_url=self._client.webhook_url,
                integration_provider="evolution",
            )
            await usage.record_usage(user_id, ResourceType.instance, instance.id)
            await self._session.commit()
        except IntegrityError:
            # A concurrent create with the same display name won the insert.
            await self._session.rollback()
            existing = await self._repo.get_by_display_name(user_id=user_id, display_name=display_name)
            if existing is None:
                raise
            return existing

        log.info("instance_saved", instance=instance.instance_name, webhook_enabled=webhook_enabled)
        return instance

    async def update_instance(
        self,
        instance: WhatsAppInstance,
        *,
        display_name: str | None = None,
    ) -> WhatsAppInstance:
        new_name = (display_name or "").strip()
        if new_name and new_name != instance.display_name:
            clash = await self._repo.get_by_display_name(user_id=instance.user_id, display_name=new_name)
            if clash is not None:
                raise ValidationFailed(f"An instance named '{new_name}' already exists")
            instance.display_name = new_name
        await self._session.commit()
        return instance

    async def delete_instance(self, instance: WhatsAppInstance) -> None:
        await self._repo.delete(instance)
        await self._session.commit()

    async def refresh_qr(self, instance: WhatsAppInstance) -> str | None:
        qr_code = await self._client.connect(instance.instance_name)
        instance.qr_code = qr_code
        instance.status = InstanceStatus.qr_pending
        await self._session.commit()
        return qr_code

    async def disconnect(self, instance: WhatsAppInstance) -> None:
        await self._client.logout(instance.instance_name)
        instance.status = InstanceStatus.disconnected
        await self._session.commit()
        log.info("instance_disconnected", instance=instance.instance_name)

    async def _apply_webhook(self, name: str) -> bool:
        try:
            ok = await self._client.set_webhook(name)
            found = await self._client.find_webhook(name)
        except UpstreamError as e:
            log.warning("instance_webhook_failed", instance=name, error=e.detail)
            return False
        return ok or bool(found and found.enabled)

    async def enforce_webhook(self, instance: WhatsAppInstance) -> dict[str, Any]:
        ok = await self._client.set_webhook(instance.instance_name)
        if not ok:
            raise UpstreamError("Failed to configure instance webhook")

        found = await self._client.find_webhook(instance.instance_name)
        enabled = found.enabled if found else True
        url = (found.url if found else None) or self._client.webhook_url

        instance.webhook_enabled = enabled
        instance.webhook_url = url
        await self._session.commit()
        return {
            "success": True,
            "enabled": enabled,
            "url": url,
            "events": found.events if found else [],
        }

    async def fetch_instance_info(self, name: str) -> InstanceInfo:
        info = InstanceInfo()
        if not self._client.is_configured:
            log.warning("instance_info_skipped", instance=name, reason="gateway_not_configured")
            return info

        try:
            info.is_connected = is_connected_state(await self._client.connection_state(name))
        except UpstreamError as e:
            log.info("instance_state_unavailable", instance=name, error=e.detail)

        try:
            details = await self._client.fetch_instances(name)
        except UpstreamError as e:
            log.info("instance_details_unavailable", instance=name, error=e.detail)
            details = None
        if details:
            info.phone_number = extract_phone_number(details)
            info.display_name = details.get("profileName") or None
            info.profile_picture_url = details.get("profilePictureUrl") or None
            if not info.is_connected:
                info.is_connected = is_connected_state(details.get("status") or details.get("connectionStatus"))

        if not info.profile_picture_url and info.phone_number:
            try:
                info.profile_picture_url = await self._client.fetch_profile_picture(
                    name, number=info.phone_number
                )
            except UpstreamError as e:
                log.info("instance_picture_unavailable", instance=name, error=e.detail)

        return info

    async def sync_instance(self, instance: WhatsAppInstance) -> bool:
        if await self._apply_webhook(instance.instance_name):
            instance.webhook_enabled = True
            instance.webhook_url = self._client.webhook_url

        info = await self.fetch_instance_info(instance.instance_name)
        changed = False
        if info.phone_number and info.phone_number != instance.phone_number:
            instance.phone_number = info.phone_number
            changed = True
        if info.profile_picture_url and info.profile_picture_url != instance.profile_picture_url:
            instance.profile_picture_url = info.profile_picture_url
            changed = True
        if info.display_name and info.display_name != instance.profile_name:
            instance.profile_name = info.display_name
            changed = True
        if info.is_connected:
            if instance.status != InstanceStatus.connected:
                changed = True
            instance.status = InstanceStatus.connected
            instance.last_connected_at = utcnow()

        await self._session.commit()
        return changed

    async def assign_profile(self, instance: WhatsAppInstance, profile_id: uuid.UUID) -> WhatsAppInstance:
        profile = await ProfileRepo(self._session).get(profile_id)
        if profile is None or profile.user_id != instance.user_id:
            raise NotFoundError("Profile not found")

        instance.professional_profile_id = profile.id
        if not instance.phone_number:
            info = await self.fetch_instance_info(instance.instance_name)
            if info.phone_number:
                instance.phone_number = info.phone_number
                profile.phonenumber = info.phone_number
            if info.profile_picture_url:
                instance.profile_picture_url = info.profile_picture_url
            if info.display_name:
                instance.profile_name = info.display_name

        await self._session.commit()
        return instance

    async def handle_gateway_event(self, *, event: str, instance_name: str, data: dict[str, Any] | None) -> bool:
        data = data or {}
        instance = await self._repo.get_by_name(instance_name)
        if instance is None:
            log.warning("gateway_event_unknown_instance", gateway_event=event, instance=instance_name)
            return False

        processed = False
        if event in CONNECTION_EVENTS:
            state = data.get("state")
            if is_connected_state(state):
                instance.status = InstanceStatus.connected
                instance.last_connected_at = utcnow()
                await self._apply_owner_info(instance)
                processed = True
            elif is_disconnected_state(state):
                instance.status = InstanceStatus.disconnected
                processed = True
        elif event in QRCODE_EVENTS:
            qr_code = qr_code_from(data)
            if qr_code:
                instance.qr_code = qr_code
                instance.status = InstanceStatus.qr_pending
                processed = True
        elif event in MESSAGE_EVENTS:
            pass
        else:
            log.info("gateway_event_unhandled", gateway_event=event, instance=instance_name)

        if processed:
            await self._session.commit()
            log.info("gateway_event_applied", gateway_event=event, instance=instance_name, status=instance.status)
        return processed

    async def _apply_owner_info(self, instance: WhatsAppInstance) -> None:
        name = instance.instance_name
        if not self._client.is_configured:
            log.warning("instance_owner_skipped", instance=name, reason="gateway_not_configured")
            return
        owner: dict[str, Any] | None = None
        try:
            owner = await self._client.owner(name)
        except UpstreamError:
            try:
                details = await self._client.fetch_instances(name)
            except UpstreamError as e:
                log.info("instance_owner_unavailable", instance=name, error=e.detail)
                details = None
            if details:
                owner = {
                    "number": details.get("number"),
                    "wid": details.get("wid"),
                    "ownerJid": details.get("ownerJid"),
                    "owner": details.get("owner"),
                    "name": details.get("displayName") or details.get("name") or details.get("profileName"),
                    "profilePictureUrl": details.get("profilePictureUrl"),
                }
        if not owner:
            return

        phone = _owner_phone(owner)
        if phone:
            instance.phone_number = phone
        if owner.get("profilePictureUrl"):
            instance.profile_picture_url = owner["profilePictureUrl"]
        owner_name = owner.get("name") or owner.get("pushName")
        if owner_name:
            instance.profile_name = owner_name

    async def sync_all_pending(self) -> int:
        synced = 0
        # Gateway failures are absorbed per call inside sync_instance.
        for instance in await self._repo.list_not_connected():
            if await self.sync_instance(instance):
                synced += 1
        return synced


class InstanceStatusPoller:
    """
    Background task that reconciles non-connected instances with the gateway on a
    fixed interval. One failing iteration is logged and the loop keeps going.
    """

    def __init__(
        self,
        *,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings,
        http: httpx.AsyncClient,
    ) -> None:
        self._session_factory = session_factory
        self._settings = settings
        self._http = http
        self._interval = settings.instance_poll_interval_seconds
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self) -> int:
        async with session_scope(self._session_factory) as session:
            svc = WhatsAppService(session=session, settings=self._settings, http=self._http)
            return await svc.sync_all_pending()

    async def _loop(self) -> None:
        while True:
            try:
                synced = await self.run_once()
                if synced:
                    log.info("instance_poll_completed", synced=synced)
            except asyncio.CancelledError:
                raise
            except Exception:
                log.exception("instance_poll_failed")
            await asyncio.sleep(self._interval)

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name="instance-status-poller")
        log.info("instance_poller_started", interval_seconds=self._interval)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        log.info("instance_poller_stopped")


# --- Module Notes -----------------------------------------------------------
# The gateway's own profile name lands in `profile_name`; `display_name` stays the
# label the user chose (it is unique per user and drives create idempotency).
