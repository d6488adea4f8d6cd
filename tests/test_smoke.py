"""
tests.test_smoke

Minimal smoke tests to validate the service can boot and serve core endpoints.
"""

from __future__ import annotations

import pytest

from aplia_backend.observability.logging import redact_secrets
from tests.conftest import Harness


@pytest.mark.asyncio
async def test_health_endpoints(harness: Harness) -> None:
    r = await harness.client.get("/healthz")
    assert r.status_code == 200
    assert r.json()["status"] == "ok"

    r = await harness.client.get("/readyz")
    assert r.status_code == 200
    assert r.json()["status"] == "ready"
    assert r.json()["integrations"] == {"evolution": True, "asaas": True, "n8n": True}
    assert r.json()["instance_poller"] is False


@pytest.mark.asyncio
async def test_request_id_is_echoed(harness: Harness) -> None:
    r = await harness.client.get("/healthz", headers={"x-request-id": "abc-123"})
    assert r.headers["x-request-id"] == "abc-123"


def test_log_events_mask_credentials() -> None:
    event = redact_secrets(None, "info", {"event": "asaas_payment", "creditCardToken": "tok_1", "status": 200})
    assert event == {"event": "asaas_payment", "creditCardToken": "***", "status": 200}
