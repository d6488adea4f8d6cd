from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from aplia_backend.api.deps import db_session
from aplia_backend.auth.deps import get_principal
from aplia_backend.auth.models import Principal
from aplia_backend.db.models import utcnow
from aplia_backend.services.usage import UsageService

router = APIRouter(prefix="/v1/dashboard", tags=["dashboard"])


@router.get("/stats")
async def dashboard_stats(
    principal: Principal = Depends(get_principal),
    session: AsyncSession = Depends(db_session),
) -> dict[str, Any]:
    svc = UsageService(session=session)
    now = utcnow()
    return {
        "stats": await svc.dashboard_stats(principal.user_id, now=now),
        "chart": await svc.conversation_chart(principal.user_id, now=now),
    }


@router.get("/usage")
async def usage_summary(
    principal: Principal = Depends(get_principal),
    session: AsyncSession = Depends(db_session),
) -> dict[str, dict[str, int]]:
    summary = await UsageService(session=session).usage_summary(principal.user_id)
    # First read creates the free-plan limits row.
    await session.commit()
    return summary
