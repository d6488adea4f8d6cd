from __future__ import annotations

import uuid
from datetime import timedelta

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from starlette.status import HTTP_404_NOT_FOUND

from aplia_backend.api.deps import settings_dep
from aplia_backend.auth.deps import jwt_config
from aplia_backend.auth.jwt import issue_token
from aplia_backend.settings import Settings

router = APIRouter(prefix="/v1/dev", tags=["dev"])


class DevTokenRequest(BaseModel):
    subject: uuid.UUID = Field(default_factory=uuid.uuid4)
    roles: list[str] = Field(default_factory=list)
    email: str | None = None
    ttl_minutes: int = Field(default=60, ge=1, le=24 * 60)


class DevTokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user_id: uuid.UUID


@router.post("/token", response_model=DevTokenResponse)
async def mint_dev_token(
    body: DevTokenRequest,
    settings: Settings = Depends(settings_dep),
) -> DevTokenResponse:
    if settings.env == "prod":
        raise HTTPException(status_code=HTTP_404_NOT_FOUND, detail="Not found")

    token = issue_token(
        cfg=jwt_config(settings),
        subject=str(body.subject),
        roles=body.roles,
        ttl=timedelta(minutes=body.ttl_minutes),
        email=body.email,
    )
    return DevTokenResponse(access_token=token, user_id=body.subject)
