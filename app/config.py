from __future__ import annotations

from pydantic import ConfigDict
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application
    app_name: str = "GrantFlow Verification"
    app_version: str = "0.1.0"
    environment: str = "development"
    debug: bool = True
    log_level: str = "INFO"

    # Database
    database_url: str | None = None
    db_pool_min_size: int = 1
    db_pool_max_size: int = 5
    db_auto_create_schema: bool = False

    # Supabase REST
    supabase_url: str | None = None
    supabase_service_key: str | None = None
    supabase_grants_table: str = "grants"
    supabase_verifications_table: str = "grant_verifications"
    supabase_timeout_seconds: float = 10.0

    # Research provider
    openai_api_key: str | None = None
    research_model: str = "gpt-4.1-mini"
    research_search_tool: str = "web_search"
    research_max_output_tokens: int = 3000
    research_timeout_seconds: float = 90.0
    research_system_prompt_path: str = "configs/verification/system_prompt.md"

    # Probe
    probe_timeout_seconds: float = 12.0
    probe_user_agent: str = "Mozilla/5.0 (compatible; GrantFlow-Verification/1.0)"
    probe_max_text_chars: int = 4000
    domain_trust_rules_path: str = "configs/domain_trust.v1.yaml"

    # Batch re-verification
    verify_all_stale_after_days: int = 7
    verify_all_time_budget_seconds: float = 270.0
    verify_all_pause_seconds: float = 1.0
    cron_secret: str | None = None

    # Security
    cors_origins: list[str] = []  # Empty by default for security

    # Sentry
    sentry_dsn: str | None = None

    # Server
    host: str = "0.0.0.0"
    port: int = 8000

    # Metrics
    metrics_backend: str = "stdout"
    metrics_namespace: str = "grant_verification"
    metrics_disable: bool = False
    metrics_sample_rate: float = 1.0
    metrics_statsd_host: str = "127.0.0.1"
    metrics_statsd_port: int = 8125

    @property
    def research_configured(self) -> bool:
        """Return True when the cross-reference provider has credentials."""
        return bool(self.openai_api_key)

    model_config = ConfigDict(env_file=".env", case_sensitive=False)


settings = Settings()
