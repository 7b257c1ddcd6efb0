"""
Application configuration using pydantic-settings.
All config is validated at startup - fail fast if anything is missing.
"""
from pydantic_settings import BaseSettings
from functools import lru_cache

from payhook.errors import ConfigurationError


class Settings(BaseSettings):
    # Application
    app_env: str = "development"
    app_host: str = "0.0.0.0"
    app_port: int = 8000
    app_base_url: str = "http://localhost:8000"
    log_level: str = "INFO"

    # Database
    database_url: str
    database_pool_size: int = 20
    database_max_overflow: int = 10

    # Redis (queue wake-ups, heartbeats, alert cooldowns)
    redis_url: str = "redis://localhost:6379/0"

    # Stripe
    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""
    stripe_connect_webhook_secret: str = ""
    stripe_webhook_tolerance_seconds: int = 300
    stripe_api_timeout_seconds: int = 10

    # Webhook pipeline
    webhook_worker_concurrency: int = 5
    webhook_max_retries: int = 3
    webhook_backoff_base: int = 5  # delay = base ** attempt units
    webhook_backoff_unit_seconds: int = 60
    job_lease_seconds: int = 300
    worker_poll_interval_seconds: int = 30
    worker_shutdown_timeout: float = 30.0
    reconcile_interval_seconds: int = 300
    reconcile_grace_seconds: int = 600

    # Domain event listeners
    listener_max_attempts: int = 3
    analytics_endpoint_url: str = ""
    analytics_api_key: str = ""

    # Identity provider (auth service)
    auth_base_url: str = "http://localhost:3000"
    auth_service_token: str = ""
    auth_timeout_seconds: float = 5.0

    # SendGrid (transactional email)
    sendgrid_api_key: str = ""
    from_email_transactional: str = "billing@payhook.dev"
    from_name_transactional: str = "Billing"

    # Alerting
    alert_webhook_url: str = ""  # Discord/Slack webhook URL for critical alerts

    # Sentry
    sentry_dsn: str = ""

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


@lru_cache()
def get_settings() -> Settings:
    return Settings()


def check_required_config(settings: Settings) -> None:
    """
    Refuse to start when the webhook pipeline cannot verify deliveries.
    Called by the API lifespan and the worker entry point before any traffic.
    """
    missing = []
    if not settings.stripe_webhook_secret:
        missing.append("STRIPE_WEBHOOK_SECRET")
    if not settings.stripe_connect_webhook_secret:
        missing.append("STRIPE_CONNECT_WEBHOOK_SECRET")
    if settings.webhook_worker_concurrency < 1:
        missing.append("WEBHOOK_WORKER_CONCURRENCY (must be >= 1)")
    if settings.webhook_max_retries < 0:
        missing.append("WEBHOOK_MAX_RETRIES (must be >= 0)")
    if settings.webhook_backoff_base < 1:
        missing.append("WEBHOOK_BACKOFF_BASE (must be >= 1)")

    if missing:
        raise ConfigurationError(
            "Invalid or missing configuration: " + ", ".join(missing)
        )
