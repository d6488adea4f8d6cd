"""
aplia_backend.auth.jwt

JWT issuing and validation helpers.

Responsibilities:
- Validate access tokens minted by the hosted auth provider (HS256, shared secret).
- Issue equivalent tokens for local development, automation callers, and tests.

Token shape:
- `sub` is the user UUID, `aud` is "authenticated", `role` is the auth role
  ("authenticated" for end users, "service_role" for trusted automations).
- Extra application roles may be listed under `app_metadata.roles`.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

import jwt
from jwt import InvalidTokenError


@dataclass(frozen=True, slots=True)
class JwtConfig:
    alg: str
    audience: str
    secret: str
    # Provider tokens carry an issuer only in some deployments; verify it when configured.
    issuer: str | None = None


class JwtValidationError(Exception):
    pass


def issue_token(
    *,
    cfg: JwtConfig,
    subject: str,
    roles: list[str],
    ttl: timedelta = timedelta(hours=1),
    email: str | None = None,
) -> str:
    now = datetime.now(tz=UTC)
    role = "service_role" if "service_role" in roles else "authenticated"
    payload: dict[str, Any] = {
        "aud": cfg.audience,
        "sub": subject,
        "role": role,
        "app_metadata": {"roles": [r for r in roles if r != role]},
        "iat": int(now.timestamp()),
        "exp": int((now + ttl).timestamp()),
    }
    if email:
        payload["email"] = email
    if cfg.issuer:
        payload["iss"] = cfg.issuer
    return jwt.encode(payload, cfg.secret, algorithm=cfg.alg)


def decode_and_validate(*, cfg: JwtConfig, token: str) -> dict[str, Any]:
    required = ["exp", "iat", "aud", "sub"]
    if cfg.issuer:
        required.append("iss")
    try:
        return jwt.decode(
            token,
            cfg.secret,
            algorithms=[cfg.alg],
            audience=cfg.audience,
            issuer=cfg.issuer,
            options={"require": required},
        )
    except InvalidTokenError as e:
        raise JwtValidationError(str(e)) from e


def roles_from_claims(payload: dict[str, Any]) -> frozenset[str]:
    roles: set[str] = set()
    role = payload.get("role")
    if isinstance(role, str) and role:
        roles.add(role)
    app_meta = payload.get("app_metadata") or {}
    extra = app_meta.get("roles", []) if isinstance(app_meta, dict) else []
    if isinstance(extra, list):
        roles.update(str(r) for r in extra)
    return frozenset(roles)


# --- Module Notes -----------------------------------------------------------
# Token issuing is used by:
# - `api/routers/dev_auth.py` (dev convenience)
# - the test-suite fixtures
