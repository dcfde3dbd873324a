"""
Application configuration via pydantic-settings.

All settings are loaded from environment variables (or a .env file in dev).
This is the single source of truth for configuration - components receive
values from here instead of hardcoding their own defaults.
"""

from __future__ import annotations

from enum import StrEnum
from functools import lru_cache

from pydantic import Field, SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(StrEnum):
    DEV = "dev"
    PROD = "prod"
    TEST = "test"


class ProviderBackend(StrEnum):
    """How provider adapters talk to the upstream APIs."""

    LITELLM = "litellm"
    HTTP = "http"


class MarginStoreKind(StrEnum):
    MEMORY = "memory"
    DATABASE = "database"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ------------------------------------------------------------------ #
    # Application
    # ------------------------------------------------------------------ #
    environment: Environment = Environment.DEV
    debug: bool = False

    # ------------------------------------------------------------------ #
    # Providers
    # ------------------------------------------------------------------ #
    provider_backend: ProviderBackend = Field(
        default=ProviderBackend.LITELLM,
        description="litellm: route through litellm.acompletion; http: raw SSE over httpx",
    )
    openai_api_key: SecretStr = Field(default=SecretStr("sk-dev-key"))
    openai_base_url: str = Field(default="https://api.openai.com/v1")
    anthropic_api_key: SecretStr = Field(default=SecretStr("sk-ant-dev-key"))
    anthropic_base_url: str = Field(default="https://api.anthropic.com/v1")
    anthropic_version: str = Field(default="2023-06-01")
    gemini_api_key: SecretStr = Field(default=SecretStr("gemini-dev-key"))
    gemini_base_url: str = Field(
        default="https://generativelanguage.googleapis.com/v1beta",
    )
    groq_api_key: SecretStr = Field(default=SecretStr("gsk-dev-key"))
    groq_base_url: str = Field(default="https://api.groq.com/openai/v1")
    provider_connect_timeout_seconds: float = Field(default=10.0, gt=0)

    # ------------------------------------------------------------------ #
    # Execution
    # ------------------------------------------------------------------ #
    max_retries: int = Field(default=3, ge=1, le=10, description="Attempts per model")
    retry_delay_ms: int = Field(
        default=1000,
        ge=0,
        description="Base backoff; attempt n waits retry_delay_ms * 2**(n-1)",
    )
    attempt_timeout_ms: int = Field(default=30_000, ge=100)
    request_deadline_ms: int = Field(
        default=120_000,
        ge=100,
        description="Caller-level deadline bounding the whole chain",
    )
    default_max_tokens: int = Field(default=1000, ge=1)
    default_temperature: float = Field(default=0.7, ge=0.0, le=2.0)

    # ------------------------------------------------------------------ #
    # Health monitoring
    # ------------------------------------------------------------------ #
    health_probe_enabled: bool = True
    health_probe_interval_seconds: float = Field(default=60.0, gt=0)
    health_probe_timeout_seconds: float = Field(default=10.0, gt=0)
    health_probe_prompt: str = Field(default="Hello")

    # ------------------------------------------------------------------ #
    # Cost & margin
    # ------------------------------------------------------------------ #
    min_margin_pct: float = Field(
        default=50.0,
        ge=0.0,
        le=100.0,
        description="Requests are rejected once an account's margin drops below this",
    )
    margin_retry_after_seconds: int = Field(default=3600, ge=1)
    default_subscription_value: float = Field(
        default=0.0,
        ge=0.0,
        description=(
            "Used when the upstream layer does not supply a subscription value; "
            "requests that resolve to 0 are rejected"
        ),
    )
    margin_store: MarginStoreKind = MarginStoreKind.MEMORY
    database_url: str = Field(
        default="sqlite+aiosqlite:///./llm_broker.db",
        description="Async SQLAlchemy URL for the margin store",
    )
    db_echo_sql: bool = False

    # ------------------------------------------------------------------ #
    # Parallel modes
    # ------------------------------------------------------------------ #
    max_parallel_models: int = Field(default=8, ge=1)
    parallel_concurrency: int = Field(default=6, ge=1)

    # ------------------------------------------------------------------ #
    # Rate limiting
    # ------------------------------------------------------------------ #
    rate_limit_per_minute: int = Field(
        default=100,
        ge=0,
        description="Max requests per account per minute (0 = unlimited)",
    )

    # ------------------------------------------------------------------ #
    # Derived / Computed
    # ------------------------------------------------------------------ #
    @model_validator(mode="after")
    def _set_debug_from_env(self) -> Settings:
        if self.environment == Environment.DEV:
            self.debug = True
        return self

    @model_validator(mode="after")
    def _validate_production_keys(self) -> Settings:
        """Refuse to start in production with placeholder provider keys."""
        if self.environment != Environment.PROD:
            return self

        placeholders = {
            "openai_api_key": "sk-dev-key",
            "anthropic_api_key": "sk-ant-dev-key",
            "gemini_api_key": "gemini-dev-key",
            "groq_api_key": "gsk-dev-key",
        }
        errors = [
            f"{name.upper()} still has its development placeholder value."
            for name, placeholder in placeholders.items()
            if getattr(self, name).get_secret_value() == placeholder
        ]
        if errors:
            raise RuntimeError(
                "PRODUCTION STARTUP BLOCKED -- placeholder provider keys:\n"
                + "\n".join(f"  - {e}" for e in errors)
            )
        return self

    @property
    def is_dev(self) -> bool:
        return self.environment in (Environment.DEV, Environment.TEST)

    @property
    def is_prod(self) -> bool:
        return self.environment == Environment.PROD


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached settings singleton.

    Use FastAPI dependency injection via Depends(get_settings) in endpoints,
    or call directly in non-request contexts (startup, scripts).
    """
    return Settings()
