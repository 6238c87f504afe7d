"""
Application configuration module using Pydantic BaseSettings v2.

Process-wide settings are loaded from environment variables and .env files.
Per-tenant configuration (buffer window, manual-reply policy, personalization)
lives in the database and is loaded as a TenantConfig, see services/tenants.py.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    All settings can be configured via environment variables or a .env file.
    Environment variable names are case-insensitive.
    """

    # Supabase (service role key, backend only)
    supabase_url: str = ""
    supabase_secret_key: str = ""
    media_bucket: str = "chat-media"

    # Meta WhatsApp Cloud API
    meta_graph_base_url: str = "https://graph.facebook.com/v21.0"

    # Grouping buffer and scheduled flush
    default_buffer_seconds: float = 10.0
    flush_sweep_interval_seconds: float = 5.0
    flush_lock_timeout_seconds: float = 30.0
    flush_max_attempts: int = 5
    flush_retry_backoff_seconds: float = 15.0
    media_timeout_seconds: float = 60.0
    scheduler_enabled: bool = True

    # Manual-reply detection: window in which an unmatched outbound event may
    # still belong to an agent send whose provider id is not yet recorded
    manual_reply_grace_seconds: float = 10.0

    # External agent
    agent_timeout_seconds: float = 30.0
    usage_tokens_per_invocation: int = 0
    usage_cost_per_invocation: float = 0.0

    # Best-effort order side effects
    commerce_sync_url: str | None = None
    commerce_sync_token: str | None = None
    new_order_tag: str = "Pedido Nuevo"

    # Automation flows started on a chat's first customer message; off when empty
    flow_executor_url: str | None = None
    flow_executor_token: str | None = None

    # Agent auto-reactivation sweep
    reactivation_interval_seconds: float = 300.0

    # Internal endpoints (cron / scheduler hooks); disabled when empty
    internal_api_key: str = ""

    # Application Configuration
    app_name: str = "chatorder"
    debug: bool = False
    environment: str = "development"
    rate_limit_verify: str = "30/minute"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )


# Singleton settings instance
settings = Settings()
