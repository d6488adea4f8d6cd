"""
tests.conftest

Shared fixtures: an in-process app on a temp SQLite database, with every upstream
(automation, gateway, billing) served by an `httpx.MockTransport`.
"""

from __future__ import annotations

import json
import uuid
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any, TypeVar

import httpx
import pytest
import pytest_asyncio
from fastapi import FastAPI
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from aplia_backend.api.app import create_app
from aplia_backend.auth.deps import jwt_config
from aplia_backend.auth.jwt import issue_token
from aplia_backend.db.init_db import init_db
from aplia_backend.db.repositories.limits import LimitsRepo
from aplia_backend.db.session import create_engine, create_sessionmaker
from aplia_backend.domain.limits import PlanLimits
from aplia_backend.settings import Settings

EVOLUTION = "http://evolution.test"
N8N = "http://n8n.test/webhook"

T = TypeVar("T")

Responder = Callable[[httpx.Request], httpx.Response]


@dataclass
class FakeUpstreams:
    """
    Route table for the mock transport, keyed by (method, url without query).
    Later registrations win; unknown routes answer 404.
    """

    routes: dict[tuple[str, str], Responder] = field(default_factory=dict)
    calls: list[httpx.Request] = field(default_factory=list)

    def json(self, method: str, url: str, body: Any, status: int = 200) -> None:
        self.routes[(method, url)] = lambda _req: httpx.Response(status, json=body)

    def respond(self, method: str, url: str, responder: Responder) -> None:
        self.routes[(method, url)] = responder

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        key = (request.method, f"{request.url.scheme}://{request.url.host}{request.url.path}")
        responder = self.routes.get(key) or self._prefix_match(key)
        if responder is None:
            return httpx.Response(404, json={"error": f"no route for {key}"})
        return responder(request)

    def _prefix_match(self, key: tuple[str, str]) -> Responder | None:
        # "http://host/path/*" matches any URL below that path.
        method, url = key
        for (m, pattern), responder in self.routes.items():
            if m == method and pattern.endswith("*") and url.startswith(pattern[:-1]):
                return responder
        return None

    def requests_to(self, url: str, method: str | None = None) -> list[httpx.Request]:
        return [
            r
            for r in self.calls
            if f"{r.url.scheme}://{r.url.host}{r.url.path}" == url and (method is None or r.method == method)
        ]

    def bodies_to(self, url: str, method: str | None = None) -> list[Any]:
        return [json.loads(r.content) for r in self.requests_to(url, method)]


@dataclass
class Harness:
    app: FastAPI
    client: httpx.AsyncClient
    settings: Settings
    upstreams: FakeUpstreams

    def headers(self, user_id: uuid.UUID, roles: list[str] | None = None) -> dict[str, str]:
        return auth_headers(self.settings, user_id, roles)

    def session(self) -> AsyncSession:
        factory: async_sessionmaker[AsyncSession] = self.app.state.sessionmaker
        return factory()

    async def add(self, *rows: Any) -> None:
        async with self.session() as s:
            s.add_all(rows)
            await s.commit()

    async def fetch(self, model: type[T], row_id: uuid.UUID) -> T | None:
        async with self.session() as s:
            return await s.get(model, row_id)

    async def grant(self, user_id: uuid.UUID, **overrides: int) -> None:
        limits = PlanLimits(
            **{
                "max_assistants": 5,
                "max_instances": 5,
                "max_conversations_month": 100,
                "max_appointments_month": 50,
                **overrides,
            }
        )
        async with self.session() as s:
            await LimitsRepo(s).upsert(user_id=user_id, limits=limits, subscription_id=None)
            await s.commit()


def auth_headers(settings: Settings, user_id: uuid.UUID, roles: list[str] | None = None) -> dict[str, str]:
    token = issue_token(
        cfg=jwt_config(settings),
        subject=str(user_id),
        roles=roles or [],
        ttl=timedelta(minutes=5),
    )
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        env="test",
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        jwt_secret="test-secret",
        n8n_base_url=N8N,
        evolution_api_url=EVOLUTION,
        evolution_api_key="evo-key",
        evolution_webhook_token="hook-token",
        asaas_env="sandbox",
        asaas_sandbox_api_key="asaas-key",
        instance_poll_enabled=False,
    )


@pytest.fixture
def upstreams() -> FakeUpstreams:
    return FakeUpstreams()


@pytest.fixture
def http(upstreams: FakeUpstreams) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(upstreams.handler))


@pytest_asyncio.fixture
async def harness(settings: Settings, upstreams: FakeUpstreams, http: httpx.AsyncClient) -> AsyncIterator[Harness]:
    app = create_app(settings=settings, http=http)

    # httpx ASGITransport does not manage lifespan; drive startup/shutdown explicitly.
    await app.router.startup()
    try:
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
            yield Harness(app=app, client=client, settings=settings, upstreams=upstreams)
    finally:
        await app.router.shutdown()
        await http.aclose()


@pytest_asyncio.fixture
async def session(settings: Settings) -> AsyncIterator[AsyncSession]:
    engine = create_engine(settings)
    await init_db(engine)
    factory = create_sessionmaker(engine)
    async with factory() as s:
        yield s
    await engine.dispose()


@pytest.fixture
def user_id() -> uuid.UUID:
    return uuid.uuid4()
