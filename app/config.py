from __future__ import annotations

from pydantic import ConfigDict
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application
    app_name: str = "Lead Discovery"
    app_version: str = "0.1.0"
    environment: str = "development"
    debug: bool = True
    log_level: str = "INFO"

    # Database (document store falls back to memory when unset)
    database_url: str | None = None
    db_pool_min_size: int = 1
    db_pool_max_size: int = 5
    db_auto_create_schema: bool = True

    # Providers
    google_places_api_key: str | None = None
    google_places_base_url: str = "https://places.googleapis.com"
    google_places_timeout_seconds: float = 10.0
    google_ai_api_key: str | None = None
    gemini_api_key: str | None = None
    gemini_base_url: str = "https://generativelanguage.googleapis.com"
    openai_api_key: str | None = None
    ai_request_timeout_seconds: float = 60.0

    # Discovery runtime
    discovery_max_sweeps_per_day: int = 3
    discovery_max_leads_per_sweep: int = 10
    discovery_query_delay_seconds: float = 0.1
    discovery_search_cache_ttl_seconds: int = 86_400
    discovery_circuit_failure_threshold: int = 5
    discovery_circuit_cooldown_seconds: float = 300.0
    discovery_places_cost_per_request_usd: float = 0.032

    # Token safety
    token_max_tokens_per_sweep: int = 50_000
    token_max_api_calls_per_sweep: int = 20
    token_max_leads_to_analyze: int = 50
    token_max_tokens_per_company_per_day: int = 100_000
    token_max_tokens_per_hour: int = 500_000
    token_max_concurrent_sweeps: int = 5
    token_max_daily_cost_usd: float = 50.0
    token_alert_threshold_usd: float = 25.0

    # HTTP
    cors_origins: list[str] = []

    # Sentry
    sentry_dsn: str | None = None

    # Server
    host: str = "0.0.0.0"
    port: int = 8000

    # Metrics
    metrics_backend: str = "stdout"
    metrics_namespace: str = "discovery"
    metrics_disable: bool = False
    metrics_sample_rate: float = 1.0
    metrics_statsd_host: str = "127.0.0.1"
    metrics_statsd_port: int = 8125
    metrics_schema_version: str = "discovery.v1"

    @property
    def gemini_key(self) -> str | None:
        """Return the first configured Gemini credential."""
        return self.google_ai_api_key or self.gemini_api_key or None

    model_config = ConfigDict(env_file=".env", case_sensitive=False)


settings = Settings()
