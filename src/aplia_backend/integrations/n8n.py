"""
aplia_backend.integrations.n8n

Allow-listed proxy to the n8n automation webhooks.

Responsibilities:
- Map public endpoint keys to fixed webhook paths (callers never supply URLs).
- Stamp the authenticated user id into every forwarded payload.
- Forward the payload and hand back the automation's answer as-is.

Payload conventions:
- Most automations take a one-item list `[{"query": "<json string>"}]`; the user id is
  injected inside the query so the workflow sees it next to the rest of the fields.
"""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass
from typing import Any

import httpx

from aplia_backend.observability.logging import get_logger
from aplia_backend.services.errors import ValidationFailed
from aplia_backend.settings import Settings

log = get_logger(__name__)

USER_ID_FIELD = "_authenticated_user_id"

ALLOWED_ENDPOINTS: dict[str, str] = {
    "agendamento": "/agendamento-aplia",
    "cancelamento": "/cancelamento-site",
    "deletar": "/deletar-site",
    "remarcar": "/remarcar",
    "chat-interno": "/apliachatinterno",
    "google-eventos": "/eventos-google-agenda",
    "google-oauth": "/google-calendar-event-creator",
    "questionario": "/questionario",
}


@dataclass(frozen=True, slots=True)
class ProxyResult:
    success: bool
    status: int
    data: Any

    def as_dict(self) -> dict[str, Any]:
        return {"success": self.success, "status": self.status, "data": self.data}


def dumps_compact(obj: Any) -> str:
    return json.dumps(obj, separators=(",", ":"), ensure_ascii=False, default=str)


def query_body(query: dict[str, Any]) -> list[dict[str, str]]:
    return [{"query": dumps_compact(query)}]


def _enrich_item(item: Any, user_id: str) -> Any:
    if not isinstance(item, dict):
        return item
    query = item.get("query")
    if query:
        try:
            parsed = json.loads(query) if isinstance(query, str) else dict(query)
        except (ValueError, TypeError):
            parsed = None
        if isinstance(parsed, dict):
            parsed[USER_ID_FIELD] = user_id
            return {**item, "query": dumps_compact(parsed)}
    return {**item, USER_ID_FIELD: user_id}


def enrich_payload(payload: Any, user_id: uuid.UUID | str) -> Any:
    uid = str(user_id)
    if isinstance(payload, list):
        return [_enrich_item(item, uid) for item in payload]
    if isinstance(payload, dict):
        return {**payload, USER_ID_FIELD: uid}
    return payload


def resolve_endpoint(endpoint: str | None) -> str:
    path = ALLOWED_ENDPOINTS.get(endpoint or "")
    if path is None:
        allowed = ", ".join(ALLOWED_ENDPOINTS)
        raise ValidationFailed(f"Invalid endpoint: {endpoint}. Allowed: {allowed}")
    return path


class N8nClient:
    def __init__(self, *, settings: Settings, http: httpx.AsyncClient) -> None:
        self._base_url = settings.n8n_base_url.rstrip("/")
        self._http = http

    async def forward(self, *, endpoint: str, payload: Any, user_id: uuid.UUID | str) -> ProxyResult:
        url = f"{self._base_url}{resolve_endpoint(endpoint)}"
        enriched = enrich_payload(payload, user_id)

        r = await self._http.post(url, json=enriched)
        content_type = r.headers.get("content-type", "")
        if "application/json" in content_type:
            try:
                data: Any = r.json()
            except ValueError:
                data = r.text
        else:
            data = r.text

        log.info("n8n_forward", endpoint=endpoint, status=r.status_code)
        return ProxyResult(success=r.is_success, status=r.status_code, data=data)

    async def send_query(self, *, endpoint: str, query: dict[str, Any], user_id: uuid.UUID | str) -> ProxyResult:
        return await self.forward(endpoint=endpoint, payload=query_body(query), user_id=user_id)


# --- Module Notes -----------------------------------------------------------
# The forward call never raises on a non-2xx answer: the proxy route relays the
# automation's status to the caller. Services that need success check `.success`.
