"""
aplia_backend.services.errors

Typed service-layer errors.

Responsibilities:
- Carry an HTTP status and a client-facing `detail` from services to the API layer.
- Surface upstream (gateway / billing / automation) error bodies unchanged.
"""

from __future__ import annotations

from typing import Any

import httpx


class ServiceError(Exception):
    status_code: int = 500

    def __init__(self, detail: Any, *, status_code: int | None = None) -> None:
        super().__init__(detail if isinstance(detail, str) else repr(detail))
        self.detail = detail
        if status_code is not None:
            self.status_code = status_code


class NotFoundError(ServiceError):
    status_code = 404


class ValidationFailed(ServiceError):
    status_code = 400


class LimitExceeded(ServiceError):
    status_code = 403


class ConfigurationError(ServiceError):
    status_code = 500


class UpstreamError(ServiceError):
    status_code = 502

    @classmethod
    def from_response(cls, service: str, response: httpx.Response) -> UpstreamError:
        # 4xx from the provider is the caller's problem; pass it through. Anything else is ours.
        status = response.status_code if 400 <= response.status_code < 500 else 502
        return cls(_error_message(service, response), status_code=status)


def _error_message(service: str, response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        body = response.text
    if isinstance(body, dict):
        errors = body.get("errors")
        if isinstance(errors, list) and errors and isinstance(errors[0], dict):
            description = errors[0].get("description")
            if description:
                return str(description)
        for key in ("message", "error", "detail"):
            if body.get(key):
                value = body[key]
                return value if isinstance(value, str) else str(value)
    text = body if isinstance(body, str) else str(body)
    return f"{service} error {response.status_code}: {text}".strip()
