"""
aplia_backend.settings

Central configuration model (Pydantic Settings).

Responsibilities:
- Provide strongly-typed, env-driven settings for all layers.
- Hide secrets from repr/logging (JWT secret, gateway and billing keys).
- Offer a cached settings instance for dependency injection.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

ASAAS_PRODUCTION_URL = "https://www.asaas.com/api/v3"
ASAAS_SANDBOX_URL = "https://sandbox.asaas.com/api/v3"


class Settings(BaseSettings):
    """
    Every value can be overridden with an `APLIA_`-prefixed environment variable.
    """

    model_config = SettingsConfigDict(env_prefix="APLIA_", case_sensitive=False)

    # Environment controls toggle behavior like auto-init DB tables and the dev token route.
    env: Literal["dev", "test", "prod"] = "dev"
    service_name: str = "aplia-backend"
    log_level: str = "INFO"

    api_host: str = "0.0.0.0"
    api_port: int = 8080
    cors_allow_origins: list[str] = ["*"]

    # Auth: access tokens issued by the hosted auth provider (HS256, aud=authenticated).
    jwt_alg: str = "HS256"
    jwt_issuer: str | None = None
    jwt_audience: str = "authenticated"
    jwt_secret: str = Field(default="dev-secret-change-me", repr=False)

    # Persistence
    database_url: str = "sqlite+aiosqlite:///./aplia.db"

    # Outbound HTTP
    http_timeout_seconds: float = 30.0

    # Automation (n8n)
    n8n_base_url: str = "https://aplia-n8n-webhook.kopfcf.easypanel.host/webhook"

    # Messaging gateway (Evolution)
    evolution_api_url: str | None = None
    evolution_api_key: str | None = Field(default=None, repr=False)
    evolution_events_webhook_url: str = "https://aplia-n8n-webhook.kopfcf.easypanel.host/webhook/aplia"
    evolution_webhook_token: str = Field(default="aplia-webhook-2024", repr=False)

    # Billing (Asaas)
    asaas_env: Literal["sandbox", "production"] = "sandbox"
    asaas_api_key: str | None = Field(default=None, repr=False)
    asaas_sandbox_api_key: str | None = Field(default=None, repr=False)

    # Google OAuth
    google_client_id: str = "627990196037-rpqnsvueptd785bqmlgs47glu5hkt3if.apps.googleusercontent.com"
    google_auth_base_url: str = "https://accounts.google.com/o/oauth2/auth"
    google_redirect_uri: str = "http://localhost:5173/auth/google/callback"

    default_timezone: str = "America/Sao_Paulo"

    # Background status polling for instances waiting on a QR scan.
    instance_poll_enabled: bool = False
    instance_poll_interval_seconds: float = 15.0

    @property
    def asaas_base_url(self) -> str:
        return ASAAS_PRODUCTION_URL if self.asaas_env == "production" else ASAAS_SANDBOX_URL

    @property
    def asaas_active_key(self) -> str | None:
        return self.asaas_api_key if self.asaas_env == "production" else self.asaas_sandbox_api_key


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    # Cache avoids re-parsing env vars for each request dependency.
    return Settings()


# --- Module Notes -----------------------------------------------------------
# Upstream URLs live here (never in request payloads) so callers cannot redirect
# webhook traffic to arbitrary hosts.
