"""
aplia_backend.integrations.evolution

Client for the Evolution WhatsApp gateway.

Responsibilities:
- Authenticate every call with the `apikey` header.
- Create/connect/logout instances and read their connection state and owner info.
- Configure the per-instance events webhook (only MESSAGES_UPSERT is forwarded).

Failure model:
- Non-2xx answers and transport failures raise `UpstreamError`; the service layer
  decides which calls are best-effort.
"""

from __future__ import annotations

import random
import re
import unicodedata
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import quote

import httpx

from aplia_backend.observability.logging import get_logger
from aplia_backend.services.errors import ConfigurationError, UpstreamError
from aplia_backend.settings import Settings

log = get_logger(__name__)

CONNECTED_STATES = frozenset({"open", "connected", "CONNECTED", "online"})
DISCONNECTED_STATES = frozenset({"close", "disconnected", "DISCONNECTED", "offline"})

WEBHOOK_EVENTS = ["MESSAGES_UPSERT"]
CALL_REJECT_MESSAGE = "Chamadas não são aceitas"
DEFAULT_INSTANCE_NAME = "instancia"

_NOT_SLUG_CHARS = re.compile(r"[^a-z0-9\s]")
_WHITESPACE = re.compile(r"\s+")


def is_connected_state(state: Any) -> bool:
    return isinstance(state, str) and state in CONNECTED_STATES


def is_disconnected_state(state: Any) -> bool:
    return isinstance(state, str) and state in DISCONNECTED_STATES


@dataclass(frozen=True, slots=True)
class InstanceNames:
    instance_name: str
    pretty_name: str


def slugify_instance_name(display_name: str | None, rng: random.Random | None = None) -> InstanceNames:
    """
    "Clínica São José" -> pretty "clinica sao jose", instance "clinica-sao-jose12345".
    """

    base = display_name if display_name and display_name.strip() else DEFAULT_INSTANCE_NAME
    decomposed = unicodedata.normalize("NFD", base)
    clean = "".join(ch for ch in decomposed if not unicodedata.combining(ch)).lower()
    pretty = _WHITESPACE.sub(" ", _NOT_SLUG_CHARS.sub("", clean)).strip()
    if not pretty:
        pretty = DEFAULT_INSTANCE_NAME
    suffix = (rng or random).randint(10000, 99999)
    return InstanceNames(instance_name=f"{_WHITESPACE.sub('-', pretty)}{suffix}", pretty_name=pretty)


@dataclass(slots=True)
class WebhookStatus:
    enabled: bool
    url: str | None
    events: list[str] = field(default_factory=list)


def _json(r: httpx.Response) -> Any:
    try:
        return r.json()
    except ValueError:
        return {}


class EvolutionClient:
    def __init__(self, *, settings: Settings, http: httpx.AsyncClient) -> None:
        self._base_url = (settings.evolution_api_url or "").rstrip("/")
        self._api_key = settings.evolution_api_key
        self._webhook_url = settings.evolution_events_webhook_url
        self._http = http

    @property
    def webhook_url(self) -> str:
        return self._webhook_url

    @property
    def is_configured(self) -> bool:
        return bool(self._base_url and self._api_key)

    async def _call(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        params: dict[str, str] | None = None,
    ) -> httpx.Response:
        if not self.is_configured:
            raise ConfigurationError("Missing Evolution API config")
        try:
            r = await self._http.request(
                method,
                f"{self._base_url}{path}",
                headers={"apikey": self._api_key},
                json=json,
                params=params,
            )
        except httpx.TransportError as e:
            raise UpstreamError(f"Evolution API unreachable: {e}") from e
        log.debug("evolution_call", method=method, path=path, status=r.status_code)
        return r

    async def _checked(self, method: str, path: str, **kwargs: Any) -> Any:
        r = await self._call(method, path, **kwargs)
        if not r.is_success:
            raise UpstreamError.from_response("Evolution", r)
        return _json(r)

    async def create_instance(self, *, instance_name: str) -> dict[str, Any]:
        body = {
            "instanceName": instance_name,
            "qrcode": True,
            "integration": "WHATSAPP-BAILEYS",
            "rejectCall": False,
            "msgCall": CALL_REJECT_MESSAGE,
            "groupsIgnore": True,
            "alwaysOnline": False,
            "readMessages": False,
            "readStatus": False,
            "syncFullHistory": False,
            "webhook": {
                "url": self._webhook_url,
                "webhook_by_events": True,
                "webhook_base64": True,
                "events": WEBHOOK_EVENTS,
            },
        }
        data = await self._checked("POST", "/instance/create", json=body)
        return data if isinstance(data, dict) else {}

    async def connect(self, name: str) -> str | None:
        data = await self._checked("GET", f"/instance/connect/{quote(name)}")
        return qr_code_from(data)

    async def logout(self, name: str) -> None:
        await self._checked("DELETE", f"/instance/logout/{quote(name)}")

    async def set_webhook(self, name: str) -> bool:
        path = f"/webhook/set/{quote(name)}"
        snake = {
            "enabled": True,
            "url": self._webhook_url,
            "webhook_by_events": True,
            "webhook_base64": True,
            "events": WEBHOOK_EVENTS,
        }
        r = await self._call("POST", path, json=snake)
        if r.is_success:
            return True

        # Some gateway versions only accept camelCase keys.
        camel = {
            "enabled": True,
            "url": self._webhook_url,
            "byEvents": True,
            "base64": True,
            "events": WEBHOOK_EVENTS,
        }
        log.info("evolution_webhook_retry", instance=name, status=r.status_code)
        r = await self._call("POST", path, json=camel)
        return r.is_success

    async def find_webhook(self, name: str) -> WebhookStatus | None:
        r = await self._call("GET", f"/webhook/find/{quote(name)}")
        if not r.is_success:
            return None
        data = _json(r)
        if not isinstance(data, dict):
            return None
        nested = data.get("webhook") if isinstance(data.get("webhook"), dict) else {}
        return WebhookStatus(
            enabled=data.get("enabled") is True or nested.get("enabled") is True,
            url=data.get("url") or nested.get("url") or self._webhook_url,
            events=list(data.get("events") or nested.get("events") or []),
        )

    async def connection_state(self, name: str) -> str | None:
        data = await self._checked("GET", f"/instance/connectionState/{quote(name)}")
        instance = data.get("instance") if isinstance(data, dict) else None
        state = instance.get("state") if isinstance(instance, dict) else None
        return state if isinstance(state, str) else None

    async def fetch_instances(self, name: str) -> dict[str, Any] | None:
        data = await self._checked("GET", "/instance/fetchInstances", params={"instanceName": name})
        first = (data[0] if data else None) if isinstance(data, list) else data
        if not isinstance(first, dict):
            return None
        inner = first.get("instance")
        return inner if isinstance(inner, dict) else first

    async def owner(self, name: str) -> dict[str, Any]:
        data = await self._checked("GET", f"/instance/owner/{quote(name)}")
        return data if isinstance(data, dict) else {}

    async def fetch_profile_picture(self, name: str, *, number: str) -> str | None:
        data = await self._checked(
            "POST", f"/chat/fetchProfilePictureUrl/{quote(name)}", json={"number": number}
        )
        if not isinstance(data, dict):
            return None
        return data.get("profilePictureUrl") or data.get("picture") or None

    async def update_profile_name(self, name: str, *, profile_name: str) -> None:
        await self._checked("POST", f"/chat/updateProfileName/{quote(name)}", json={"name": profile_name})


def qr_code_from(data: Any) -> str | None:
    if not isinstance(data, dict):
        return None
    qrcode = data.get("qrcode")
    if isinstance(qrcode, dict) and qrcode.get("code"):
        return str(qrcode["code"])
    return None
