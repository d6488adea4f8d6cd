"""
aplia_backend.integrations.asaas

Client for the Asaas billing API (v3).

Responsibilities:
- Pick the sandbox or production base URL and key from settings.
- Create customers, one-off card payments and recurring subscriptions.
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Any

import httpx

from aplia_backend.observability.logging import get_logger
from aplia_backend.services.errors import ConfigurationError, UpstreamError
from aplia_backend.settings import Settings

log = get_logger(__name__)

PAID_STATUSES = frozenset({"CONFIRMED", "RECEIVED", "RECEIVED_IN_CASH", "RECEIVED_IN_CHECK"})


def is_paid_status(status: Any) -> bool:
    return status in PAID_STATUSES


class AsaasClient:
    def __init__(self, *, settings: Settings, http: httpx.AsyncClient) -> None:
        self._env = settings.asaas_env
        self._base_url = settings.asaas_base_url
        self._api_key = settings.asaas_active_key
        self._http = http

    async def _post(self, path: str, body: dict[str, Any]) -> dict[str, Any]:
        if not self._api_key:
            raise ConfigurationError("Configuração de pagamento não encontrada")
        try:
            r = await self._http.post(
                f"{self._base_url}{path}",
                headers={"access_token": self._api_key},
                json=body,
            )
        except httpx.TransportError as e:
            raise UpstreamError(f"Asaas unreachable: {e}") from e
        log.info("asaas_call", path=path, env=self._env, status=r.status_code)
        if not r.is_success:
            raise UpstreamError.from_response("Asaas", r)
        data = r.json()
        return data if isinstance(data, dict) else {}

    async def create_customer(
        self, *, name: str, email: str, phone: str | None, cpf_cnpj: str | None
    ) -> dict[str, Any]:
        return await self._post(
            "/customers",
            {"name": name, "email": email, "phone": phone, "cpfCnpj": cpf_cnpj},
        )

    async def create_card_payment(
        self,
        *,
        customer: str,
        value: Decimal,
        description: str,
        due_date: date,
        credit_card: dict[str, Any] | None = None,
        holder_info: dict[str, Any] | None = None,
        card_token: str | None = None,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {
            "customer": customer,
            "billingType": "CREDIT_CARD",
            "dueDate": due_date.isoformat(),
            "value": float(value),
            "description": description,
        }
        if credit_card is not None:
            body["creditCard"] = credit_card
            body["creditCardHolderInfo"] = holder_info
        if card_token:
            body["creditCardToken"] = card_token
        return await self._post("/payments", body)

    async def create_subscription(
        self,
        *,
        customer: str,
        value: Decimal,
        next_due_date: date,
        description: str,
        card_token: str,
        cycle: str = "MONTHLY",
    ) -> dict[str, Any]:
        return await self._post(
            "/subscriptions",
            {
                "customer": customer,
                "billingType": "CREDIT_CARD",
                "nextDueDate": next_due_date.isoformat(),
                "value": float(value),
                "cycle": cycle,
                "description": description,
                "creditCard": {"creditCardToken": card_token},
            },
        )
