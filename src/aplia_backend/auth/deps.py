"""
aplia_backend.auth.deps

FastAPI dependency functions for authentication and authorization.

Responsibilities:
- Convert a bearer token into a typed `Principal`.
- Enforce RBAC via reusable dependency factories.
"""

from __future__ import annotations

import uuid

import structlog
from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from starlette.status import HTTP_401_UNAUTHORIZED, HTTP_403_FORBIDDEN

from aplia_backend.auth.jwt import (
    JwtConfig,
    JwtValidationError,
    decode_and_validate,
    roles_from_claims,
)
from aplia_backend.auth.models import Principal
from aplia_backend.settings import Settings, get_settings

_bearer = HTTPBearer(auto_error=False)


def jwt_config(settings: Settings) -> JwtConfig:
    return JwtConfig(
        alg=settings.jwt_alg,
        audience=settings.jwt_audience,
        secret=settings.jwt_secret,
        issuer=settings.jwt_issuer,
    )


def get_principal(
    creds: HTTPAuthorizationCredentials | None = Depends(_bearer),
    settings: Settings = Depends(get_settings),
) -> Principal:
    if creds is None or not creds.credentials:
        raise HTTPException(status_code=HTTP_401_UNAUTHORIZED, detail="No authorization header")

    try:
        payload = decode_and_validate(cfg=jwt_config(settings), token=creds.credentials)
    except JwtValidationError as e:
        raise HTTPException(status_code=HTTP_401_UNAUTHORIZED, detail="Invalid user token") from e

    try:
        user_id = uuid.UUID(str(payload.get("sub", "")))
    except ValueError as e:
        raise HTTPException(status_code=HTTP_401_UNAUTHORIZED, detail="Invalid token subject") from e

    email = payload.get("email")
    principal = Principal(
        user_id=user_id,
        roles=roles_from_claims(payload),
        email=str(email) if email else None,
    )
    structlog.contextvars.bind_contextvars(user_id=str(user_id))
    return principal


def require_roles(*required: str):
    required_set = frozenset(required)

    def _dep(principal: Principal = Depends(get_principal)) -> Principal:
        if principal.is_admin:
            return principal
        if not required_set.issubset(principal.roles):
            raise HTTPException(status_code=HTTP_403_FORBIDDEN, detail="Insufficient role")
        return principal

    return _dep


# --- Module Notes -----------------------------------------------------------
# End-user routes only need `get_principal`; automation callbacks (calendar import)
# additionally require role=service_role.
