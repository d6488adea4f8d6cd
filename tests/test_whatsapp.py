from __future__ import annotations

import json
import random
import uuid

import httpx
import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from aplia_backend.db.models import InstanceStatus, ProfessionalProfile, WhatsAppInstance
from aplia_backend.integrations.evolution import EvolutionClient, WebhookStatus, qr_code_from, slugify_instance_name
from aplia_backend.services.whatsapp import InstanceInfo, InstanceStatusPoller, WhatsAppService
from aplia_backend.settings import Settings
from tests.conftest import EVOLUTION, FakeUpstreams, Harness

OWNER_JID = "5511912345678@s.whatsapp.net"


def stub_gateway(upstreams: FakeUpstreams) -> None:
    upstreams.json(
        "POST",
        f"{EVOLUTION}/instance/create",
        {"instance": {"instanceId": "gw-1"}, "hash": {"apikey": "inst-key"}, "qrcode": {"code": "QR1"}},
        status=201,
    )
    upstreams.json("GET", f"{EVOLUTION}/instance/connect/*", {"qrcode": {"code": "QR2"}})
    upstreams.json("POST", f"{EVOLUTION}/webhook/set/*", {"ok": True})
    upstreams.json("GET", f"{EVOLUTION}/webhook/find/*", {"enabled": True, "events": ["MESSAGES_UPSERT"]})
    upstreams.json("POST", f"{EVOLUTION}/chat/updateProfileName/*", {})
    upstreams.json("DELETE", f"{EVOLUTION}/instance/logout/*", {})


def test_slugify_strips_accents_and_appends_suffix() -> None:
    names = slugify_instance_name("Clínica São José", random.Random(7))
    assert names.pretty_name == "clinica sao jose"
    assert names.instance_name.startswith("clinica-sao-jose")
    suffix = names.instance_name.removeprefix("clinica-sao-jose")
    assert suffix.isdigit() and len(suffix) == 5


def test_slugify_falls_back_to_default_name() -> None:
    assert slugify_instance_name("", random.Random(1)).pretty_name == "instancia"
    assert slugify_instance_name("!!!", random.Random(1)).instance_name.startswith("instancia")


def test_qr_code_from_payload() -> None:
    assert qr_code_from({"qrcode": {"code": "abc"}}) == "abc"
    assert qr_code_from({"qrcode": {}}) is None
    assert qr_code_from(None) is None


@pytest.mark.asyncio
async def test_create_instance_end_to_end(harness: Harness, user_id: uuid.UUID) -> None:
    stub_gateway(harness.upstreams)

    r = await harness.client.post(
        "/v1/whatsapp/instances", json={"display_name": "Clínica São José"}, headers=harness.headers(user_id)
    )

    assert r.status_code == 201
    body = r.json()
    assert body["instance_name"].startswith("clinica-sao-jose")
    assert body["status"] == "qr_pending"
    assert body["qr_code"] == "QR1"
    assert body["webhook_enabled"] is True
    assert body["phone_display"] == "-"

    (create_req,) = harness.upstreams.requests_to(f"{EVOLUTION}/instance/create")
    assert create_req.headers["apikey"] == "evo-key"
    (sent,) = harness.upstreams.bodies_to(f"{EVOLUTION}/instance/create")
    assert sent["instanceName"] == body["instance_name"]
    assert sent["webhook"]["events"] == ["MESSAGES_UPSERT"]

    (renamed,) = harness.upstreams.bodies_to(f"{EVOLUTION}/chat/updateProfileName/{body['instance_name']}")
    assert renamed == {"name": "clinica sao jose"}

    row = await harness.fetch(WhatsAppInstance, uuid.UUID(body["id"]))
    assert row is not None
    assert row.evolution_instance_id == "gw-1"
    assert row.evolution_instance_key == "inst-key"


@pytest.mark.asyncio
async def test_create_is_idempotent_per_display_name(harness: Harness, user_id: uuid.UUID) -> None:
    stub_gateway(harness.upstreams)
    headers = harness.headers(user_id)

    first = await harness.client.post("/v1/whatsapp/instances", json={"display_name": "Recepção"}, headers=headers)
    again = await harness.client.post("/v1/whatsapp/instances", json={"display_name": "Recepção"}, headers=headers)

    assert first.status_code == again.status_code == 201
    assert first.json()["id"] == again.json()["id"]
    assert len(harness.upstreams.requests_to(f"{EVOLUTION}/instance/create")) == 1


@pytest.mark.asyncio
async def test_free_plan_allows_one_instance(harness: Harness, user_id: uuid.UUID) -> None:
    stub_gateway(harness.upstreams)
    headers = harness.headers(user_id)

    ok = await harness.client.post("/v1/whatsapp/instances", json={"display_name": "A"}, headers=headers)
    blocked = await harness.client.post("/v1/whatsapp/instances", json={"display_name": "B"}, headers=headers)

    assert ok.status_code == 201
    assert blocked.status_code == 403
    assert blocked.json()["detail"].startswith("Limite do plano atingido")


@pytest.mark.asyncio
async def test_gateway_failure_creates_nothing(harness: Harness, user_id: uuid.UUID) -> None:
    harness.upstreams.json("POST", f"{EVOLUTION}/instance/create", {"message": "boom"}, status=500)
    headers = harness.headers(user_id)

    r = await harness.client.post("/v1/whatsapp/instances", json={"display_name": "X"}, headers=headers)
    assert r.status_code == 502

    listed = await harness.client.get("/v1/whatsapp/instances", headers=headers)
    assert listed.json() == []


@pytest.mark.asyncio
async def test_refresh_qr_and_disconnect(harness: Harness, user_id: uuid.UUID) -> None:
    stub_gateway(harness.upstreams)
    instance = WhatsAppInstance(user_id=user_id, instance_name="recepcao12345", status=InstanceStatus.connected)
    await harness.add(instance)
    headers = harness.headers(user_id)

    qr = await harness.client.post(f"/v1/whatsapp/instances/{instance.id}/qr", headers=headers)
    assert qr.json() == {"qr_code": "QR2", "status": "qr_pending"}

    gone = await harness.client.post(f"/v1/whatsapp/instances/{instance.id}/disconnect", headers=headers)
    assert gone.json() == {"success": True, "status": "disconnected"}
    assert harness.upstreams.requests_to(f"{EVOLUTION}/instance/logout/recepcao12345", "DELETE")


@pytest.mark.asyncio
async def test_other_users_instance_is_not_found(harness: Harness, user_id: uuid.UUID) -> None:
    instance = WhatsAppInstance(user_id=user_id, instance_name="alheia12345")
    await harness.add(instance)

    r = await harness.client.post(f"/v1/whatsapp/instances/{instance.id}/qr", headers=harness.headers(uuid.uuid4()))
    assert r.status_code == 404
    assert r.json() == {"detail": "Instance not found"}


@pytest.mark.asyncio
async def test_assign_profile_pulls_owner_number(harness: Harness, user_id: uuid.UUID) -> None:
    harness.upstreams.json(
        "GET",
        f"{EVOLUTION}/instance/fetchInstances",
        [{"instance": {"ownerJid": OWNER_JID, "profileName": "Ana", "profilePictureUrl": "http://pic"}}],
    )
    profile = ProfessionalProfile(user_id=user_id, fullname="Dra. Ana", specialty="Cardiologia")
    instance = WhatsAppInstance(user_id=user_id, instance_name="consultorio12345")
    await harness.add(profile, instance)
    headers = harness.headers(user_id)

    r = await harness.client.post(
        f"/v1/whatsapp/instances/{instance.id}/assign-profile",
        json={"professional_profile_id": str(profile.id)},
        headers=headers,
    )

    assert r.status_code == 200
    body = r.json()
    assert body["professional_profile_id"] == str(profile.id)
    assert body["phone_number"] == "5511912345678"
    assert body["phone_display"] == "+55(11)91234-5678"
    assert body["profile_name"] == "Ana"

    stored = await harness.fetch(ProfessionalProfile, profile.id)
    assert stored is not None and stored.phonenumber == "5511912345678"

    listed = (await harness.client.get("/v1/whatsapp/instances", headers=headers)).json()
    assert listed[0]["professional_profile"] == {"fullname": "Dra. Ana", "specialty": "Cardiologia"}


@pytest.mark.asyncio
async def test_assign_foreign_profile_is_rejected(harness: Harness, user_id: uuid.UUID) -> None:
    foreign = ProfessionalProfile(user_id=uuid.uuid4(), fullname="Outro", specialty="")
    instance = WhatsAppInstance(user_id=user_id, instance_name="minha12345")
    await harness.add(foreign, instance)

    r = await harness.client.post(
        f"/v1/whatsapp/instances/{instance.id}/assign-profile",
        json={"professional_profile_id": str(foreign.id)},
        headers=harness.headers(user_id),
    )
    assert r.status_code == 404
    assert r.json() == {"detail": "Profile not found"}


@pytest.mark.asyncio
async def test_webhook_requires_token_and_fields(harness: Harness) -> None:
    bad = await harness.client.post("/v1/webhooks/evolution?token=nope", json={"event": "x", "instance": "y"})
    assert bad.status_code == 401

    missing = await harness.client.post("/v1/webhooks/evolution?token=hook-token", json={"event": "x"})
    assert missing.status_code == 400
    assert missing.json() == {"detail": "Missing event or instance"}


@pytest.mark.asyncio
async def test_connection_event_marks_instance_connected(harness: Harness, user_id: uuid.UUID) -> None:
    harness.upstreams.json(
        "GET",
        f"{EVOLUTION}/instance/owner/clinica12345",
        {"wid": OWNER_JID, "name": "Dra. Ana", "profilePictureUrl": "http://pic"},
    )
    instance = WhatsAppInstance(user_id=user_id, instance_name="clinica12345", status=InstanceStatus.qr_pending)
    await harness.add(instance)

    r = await harness.client.post(
        "/v1/webhooks/evolution?token=hook-token",
        json={"event": "connection.update", "instance": "clinica12345", "data": {"state": "open"}},
    )

    assert r.json() == {"success": True, "processed": True}
    row = await harness.fetch(WhatsAppInstance, instance.id)
    assert row is not None
    assert row.status == InstanceStatus.connected
    assert row.phone_number == "5511912345678"
    assert row.profile_name == "Dra. Ana"
    assert row.last_connected_at is not None


@pytest.mark.asyncio
async def test_qrcode_event_stores_new_code(harness: Harness, user_id: uuid.UUID) -> None:
    instance = WhatsAppInstance(user_id=user_id, instance_name="qr12345", status=InstanceStatus.disconnected)
    await harness.add(instance)

    r = await harness.client.post(
        "/v1/webhooks/evolution?token=hook-token",
        json={"event": "QRCODE_UPDATED", "instance": "qr12345", "data": {"qrcode": {"code": "NEWQR"}}},
    )

    assert r.json()["processed"] is True
    row = await harness.fetch(WhatsAppInstance, instance.id)
    assert row is not None
    assert row.qr_code == "NEWQR"
    assert row.status == InstanceStatus.qr_pending


@pytest.mark.asyncio
async def test_event_for_unknown_instance_is_not_processed(harness: Harness) -> None:
    r = await harness.client.post(
        "/v1/webhooks/evolution?token=hook-token",
        json={"event": "connection.update", "instance": "ghost", "data": {"state": "open"}},
    )
    assert r.status_code == 200
    assert r.json() == {"success": True, "processed": False}


@pytest.mark.asyncio
async def test_poller_connects_pending_instances(harness: Harness, user_id: uuid.UUID) -> None:
    stub_gateway(harness.upstreams)
    harness.upstreams.json("GET", f"{EVOLUTION}/instance/connectionState/*", {"instance": {"state": "open"}})
    instance = WhatsAppInstance(user_id=user_id, instance_name="espera12345", status=InstanceStatus.qr_pending)
    await harness.add(instance)

    poller = InstanceStatusPoller(
        session_factory=harness.app.state.sessionmaker,
        settings=harness.settings,
        http=harness.app.state.http,
    )
    assert await poller.run_once() == 1

    row = await harness.fetch(WhatsAppInstance, instance.id)
    assert row is not None and row.status == InstanceStatus.connected


@pytest.mark.asyncio
async def test_connection_event_without_gateway_config(
    session: AsyncSession, settings: Settings, http: httpx.AsyncClient, upstreams: FakeUpstreams, user_id: uuid.UUID
) -> None:
    unconfigured = settings.model_copy(update={"evolution_api_url": None})
    instance = WhatsAppInstance(user_id=user_id, instance_name="semconfig12345", status=InstanceStatus.qr_pending)
    session.add(instance)
    await session.commit()

    svc = WhatsAppService(session=session, settings=unconfigured, http=http)
    processed = await svc.handle_gateway_event(
        event="connection.update", instance_name="semconfig12345", data={"state": "open"}
    )

    assert processed is True
    await session.refresh(instance)
    assert instance.status == InstanceStatus.connected
    assert instance.last_connected_at is not None
    assert upstreams.calls == []
    assert await svc.fetch_instance_info("semconfig12345") == InstanceInfo()


@pytest.mark.asyncio
async def test_close_event_marks_instance_disconnected(harness: Harness, user_id: uuid.UUID) -> None:
    instance = WhatsAppInstance(user_id=user_id, instance_name="fechou12345", status=InstanceStatus.connected)
    await harness.add(instance)

    r = await harness.client.post(
        "/v1/webhooks/evolution?token=hook-token",
        json={"event": "CONNECTION_UPDATE", "instance": "fechou12345", "data": {"state": "close"}},
    )

    assert r.json() == {"success": True, "processed": True}
    row = await harness.fetch(WhatsAppInstance, instance.id)
    assert row is not None and row.status == InstanceStatus.disconnected


@pytest.mark.asyncio
async def test_message_event_changes_nothing(harness: Harness, user_id: uuid.UUID) -> None:
    instance = WhatsAppInstance(user_id=user_id, instance_name="msgs12345", status=InstanceStatus.qr_pending)
    await harness.add(instance)

    r = await harness.client.post(
        "/v1/webhooks/evolution?token=hook-token",
        json={"event": "messages.upsert", "instance": "msgs12345", "data": {"key": {"id": "m1"}}},
    )

    assert r.json() == {"success": True, "processed": False}
    row = await harness.fetch(WhatsAppInstance, instance.id)
    assert row is not None and row.status == InstanceStatus.qr_pending
    assert harness.upstreams.calls == []


@pytest.mark.asyncio
async def test_connection_event_falls_back_to_fetch_instances(harness: Harness, user_id: uuid.UUID) -> None:
    # No owner route registered: the owner lookup answers 404.
    harness.upstreams.json(
        "GET",
        f"{EVOLUTION}/instance/fetchInstances",
        [{"instance": {"ownerJid": OWNER_JID, "profileName": "Clínica", "profilePictureUrl": "http://pic"}}],
    )
    instance = WhatsAppInstance(user_id=user_id, instance_name="semdono12345", status=InstanceStatus.qr_pending)
    await harness.add(instance)

    r = await harness.client.post(
        "/v1/webhooks/evolution?token=hook-token",
        json={"event": "connection.update", "instance": "semdono12345", "data": {"state": "open"}},
    )

    assert r.json()["processed"] is True
    assert harness.upstreams.requests_to(f"{EVOLUTION}/instance/owner/semdono12345")
    row = await harness.fetch(WhatsAppInstance, instance.id)
    assert row is not None
    assert row.status == InstanceStatus.connected
    assert row.phone_number == "5511912345678"
    assert row.profile_name == "Clínica"
    assert row.profile_picture_url == "http://pic"


@pytest.mark.asyncio
async def test_webhook_route_retries_with_camel_case(harness: Harness, user_id: uuid.UUID) -> None:
    def set_webhook(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        return httpx.Response(200 if "byEvents" in body else 400, json={})

    harness.upstreams.respond("POST", f"{EVOLUTION}/webhook/set/hook12345", set_webhook)
    harness.upstreams.json(
        "GET", f"{EVOLUTION}/webhook/find/hook12345", {"enabled": True, "url": "http://hooks/a", "events": ["X"]}
    )
    instance = WhatsAppInstance(user_id=user_id, instance_name="hook12345", webhook_enabled=False)
    await harness.add(instance)

    r = await harness.client.post(f"/v1/whatsapp/instances/{instance.id}/webhook", headers=harness.headers(user_id))

    assert r.json() == {"success": True, "enabled": True, "url": "http://hooks/a", "events": ["X"]}
    snake, camel = harness.upstreams.bodies_to(f"{EVOLUTION}/webhook/set/hook12345")
    assert snake["webhook_by_events"] is True and "byEvents" not in snake
    assert camel["byEvents"] is True and camel["base64"] is True
    row = await harness.fetch(WhatsAppInstance, instance.id)
    assert row is not None and row.webhook_enabled is True and row.webhook_url == "http://hooks/a"


@pytest.mark.asyncio
async def test_find_webhook_reads_nested_form(
    settings: Settings, http: httpx.AsyncClient, upstreams: FakeUpstreams
) -> None:
    upstreams.json(
        "GET",
        f"{EVOLUTION}/webhook/find/nested12345",
        {"webhook": {"enabled": True, "url": "http://hooks/n", "events": ["MESSAGES_UPSERT"]}},
    )

    found = await EvolutionClient(settings=settings, http=http).find_webhook("nested12345")

    assert found == WebhookStatus(enabled=True, url="http://hooks/n", events=["MESSAGES_UPSERT"])


@pytest.mark.asyncio
async def test_sync_route_applies_gateway_state(harness: Harness, user_id: uuid.UUID) -> None:
    stub_gateway(harness.upstreams)
    harness.upstreams.json("GET", f"{EVOLUTION}/instance/connectionState/*", {"instance": {"state": "open"}})
    harness.upstreams.json(
        "GET",
        f"{EVOLUTION}/instance/fetchInstances",
        [{"instance": {"number": "5511987654321", "profileName": "Recepção", "profilePictureUrl": "http://pic"}}],
    )
    instance = WhatsAppInstance(user_id=user_id, instance_name="sync12345", status=InstanceStatus.qr_pending)
    await harness.add(instance)

    r = await harness.client.post(f"/v1/whatsapp/instances/{instance.id}/sync", headers=harness.headers(user_id))

    body = r.json()
    assert body["status"] == "connected"
    assert body["phone_number"] == "5511987654321"
    assert body["profile_name"] == "Recepção"
    assert body["webhook_enabled"] is True


@pytest.mark.asyncio
async def test_info_route_fetches_picture_by_number(harness: Harness, user_id: uuid.UUID) -> None:
    harness.upstreams.json("GET", f"{EVOLUTION}/instance/connectionState/*", {"instance": {"state": "close"}})
    harness.upstreams.json("GET", f"{EVOLUTION}/instance/fetchInstances", [{"instance": {"ownerJid": OWNER_JID}}])
    harness.upstreams.json(
        "POST", f"{EVOLUTION}/chat/fetchProfilePictureUrl/info12345", {"profilePictureUrl": "http://pic2"}
    )
    instance = WhatsAppInstance(user_id=user_id, instance_name="info12345")
    await harness.add(instance)

    r = await harness.client.get(f"/v1/whatsapp/instances/{instance.id}/info", headers=harness.headers(user_id))

    assert r.json() == {
        "phone_number": "5511912345678",
        "profile_picture_url": "http://pic2",
        "display_name": None,
        "is_connected": False,
    }
    (picture_req,) = harness.upstreams.bodies_to(f"{EVOLUTION}/chat/fetchProfilePictureUrl/info12345")
    assert picture_req == {"number": "5511912345678"}


@pytest.mark.asyncio
async def test_rename_to_existing_display_name_is_rejected(harness: Harness, user_id: uuid.UUID) -> None:
    first = WhatsAppInstance(user_id=user_id, instance_name="a12345", display_name="Recepção")
    second = WhatsAppInstance(user_id=user_id, instance_name="b12345", display_name="Consultório")
    await harness.add(first, second)
    headers = harness.headers(user_id)

    clash = await harness.client.patch(
        f"/v1/whatsapp/instances/{second.id}", json={"display_name": "Recepção"}, headers=headers
    )
    renamed = await harness.client.patch(
        f"/v1/whatsapp/instances/{second.id}", json={"display_name": "Sala 2"}, headers=headers
    )

    assert clash.status_code == 400
    assert clash.json() == {"detail": "An instance named 'Recepção' already exists"}
    assert renamed.status_code == 200
    assert renamed.json()["display_name"] == "Sala 2"
