"""Central environment-driven settings shared by the API and the mint worker.

Each process loads this once at startup. Behavior is controlled by environment
variables (see `.env.example`).
"""

from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class CommonSettings(BaseSettings):
    """Typed view of runtime configuration from environment variables."""

    service_name: str = "storymint"
    log_level: str = "INFO"
    database_dsn: str
    redis_url: str = "redis://redis:6379/0"
    otel_exporter_otlp_endpoint: str = "http://otel-collector:4318/v1/traces"
    tracing_enabled: bool = True

    chain_backend: Literal["http", "simulated"] = "http"
    chain_gateway_url: str = "http://chain-gateway:8010"
    chain_timeout_seconds: float = 10.0
    simulated_confirmations_after: int = 2

    mint_worker_enabled: bool = True
    poll_strategy: Literal["fixed", "exponential"] = "fixed"
    poll_interval_seconds: float = 2.0
    poll_max_interval_seconds: float = 30.0

    outbox_max_attempts: int = 20
    outbox_max_pending_attempts: int = 60
    outbox_max_pending_age_seconds: int = 30 * 60
    outbox_processing_timeout_seconds: int = 10 * 60

    rate_limit_per_minute: int = 60
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


settings = CommonSettings()
