"""Application configuration with environment variables."""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # Environment
    ENV: str = "dev"
    VERSION: str = "0.1.0"

    # Proxy/Load Balancer Settings
    # Set to True when running behind nginx/Cloudflare to trust X-Forwarded-For
    TRUST_PROXY_HEADERS: bool = False

    # Database
    DATABASE_URL: str = "sqlite:///./concierge.db"

    # Shared store for edit locks and webhook rate limits ("" or memory:// disables)
    REDIS_URL: str = ""

    # Error Tracking (optional, set in production)
    SENTRY_DSN: str = ""

    # Delivery
    DELIVERY_PROVIDER: str = "noop"  # noop | http
    DELIVERY_MAX_ATTEMPTS: int = 3
    DELIVERY_TIMEOUT_SECONDS: float = 30.0
    RESEND_API_KEY: str = ""
    EMAIL_FROM: str = "care-team@example.com"
    SMS_API_URL: str = ""
    SMS_API_KEY: str = ""
    SMS_FROM: str = ""

    # Workflow policy
    DIRECT_SEND_MIN_ROLE: str = "reviewer"

    # Compliance exports
    EXPORT_LOCAL_DIR: str = "./exports"
    EXPORT_MAX_RECORDS: int = 5000
    EXPORT_DEFAULT_LIMIT: int = 1000
    CONTENT_PREVIEW_LENGTH: int = 80

    # Retention (days)
    AUDIT_LOG_RETENTION_DAYS: int = 365
    MESSAGE_QUEUE_RETENTION_DAYS: int = 30
    TEMP_FILE_RETENTION_DAYS: int = 7
    CLEANUP_SWEEP_PAUSE_SECONDS: float = 2.0

    # Advisory edit locks
    EDIT_LOCK_TTL_MINUTES: int = 30

    # Delivery confirmation webhook
    WEBHOOK_SECRET: str = ""
    WEBHOOK_TOLERANCE_SECONDS: int = 300
    WEBHOOK_RATE_LIMIT_PER_MINUTE: int = 60
    WEBHOOK_RATE_LIMIT_PER_HOUR: int = 1000
    WEBHOOK_MAX_PAYLOAD_BYTES: int = 100000  # 100KB limit

    # Worker
    WORKER_POLL_INTERVAL: int = 10
    WORKER_BATCH_SIZE: int = 10
    # Running jobs not settled within this window are reclaimed (worker died)
    JOB_CLAIM_TIMEOUT_SECONDS: int = 900

    @property
    def is_production(self) -> bool:
        return self.ENV == "production"

    @property
    def sentry_enabled(self) -> bool:
        return bool(self.SENTRY_DSN) and self.ENV != "dev"


settings = Settings()
