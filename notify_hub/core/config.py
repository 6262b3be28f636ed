import os
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Application
    PROJECT_NAME: str = "Review Invite Notification Hub"
    DEBUG: bool = False
    ENV: str = "dev"

    # Database
    POSTGRES_USER: str = "notify"
    POSTGRES_PASSWORD: str = "notify"
    POSTGRES_SERVER: str = "localhost"
    POSTGRES_PORT: int = 5432
    POSTGRES_DB: str = "notify_hub"

    @property
    def database_url(self) -> str:
        """Async URL used by the application engine."""
        env_db_url = os.getenv("DATABASE_URL")
        if env_db_url:
            return env_db_url
        return f"postgresql+asyncpg://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}@{self.POSTGRES_SERVER}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"

    # Secrets for the HTTP surface
    CRON_SECRET: str = ""
    ADMIN_API_TOKEN: str | None = Field(default=None)  # admin endpoints are disabled when unset
    SALLA_WEBHOOK_SECRET: str = ""

    # Shared retry policy for outbox jobs and webhook retries
    MAX_DELIVERY_ATTEMPTS: int = 5

    # Outbox
    OUTBOX_LEASE_MS: int = 5 * 60 * 1000
    OUTBOX_BATCH_SIZE: int = 20
    OUTBOX_RATE_LIMITED_DELAY_MS: int = 30 * 1000
    OUTBOX_POLL_SECONDS: int = 30
    OUTBOX_SCHEDULER_ENABLED: bool = True

    # Webhook retry queue
    WEBHOOK_RETRY_ENABLED: bool = True
    WEBHOOK_DLQ_ENABLED: bool = True
    WEBHOOK_RETRY_BATCH: int = 50
    WEBHOOK_RETRY_BACKOFF_MS: list[int] = [
        1 * 60 * 1000,
        5 * 60 * 1000,
        15 * 60 * 1000,
        60 * 60 * 1000,
        6 * 60 * 60 * 1000,
    ]
    WEBHOOK_RETRY_POLL_SECONDS: int = 60
    WEBHOOK_RETRY_SCHEDULER_ENABLED: bool = True

    # Token bucket policy: capacity / refill per second
    SMS_GLOBAL_CAPACITY: int = 200
    SMS_GLOBAL_RPS: float = 80
    SMS_STORE_CAPACITY: int = 20
    SMS_STORE_RPS: float = 6
    SMS_PROVIDER_CAPACITY: int = 100
    SMS_PROVIDER_RPS: float = 40
    EMAIL_GLOBAL_CAPACITY: int = 400
    EMAIL_GLOBAL_RPS: float = 120
    EMAIL_STORE_CAPACITY: int = 50
    EMAIL_STORE_RPS: float = 12
    EMAIL_PROVIDER_CAPACITY: int = 200
    EMAIL_PROVIDER_RPS: float = 60

    # Public endpoints
    PUBLIC_RATE_LIMIT_SKIP_IPS: list[str] = []

    # SMS provider (OurSMS)
    OURSMS_API_KEY: str = ""
    OURSMS_BASE_URL: str = "https://api.oursms.com"
    OURSMS_SENDER: str = "oursms"
    SMS_PROVIDER_NAME: str = "oursms"
    SMS_DEFAULT_COUNTRY: str | None = "SA"

    # Email provider (SendGrid v3 REST)
    SENDGRID_API_KEY: str = ""
    SENDGRID_BASE_URL: str = "https://api.sendgrid.com/v3/"
    EMAIL_FROM: str = "no-reply@theqah.com.sa"
    EMAIL_PROVIDER_NAME: str = "sendgrid"
    EMAIL_DEFAULT_SUBJECT: str = "قيّم تجربتك معنا"

    PROVIDER_TIMEOUT_SECONDS: float = 15.0

    # Review links
    REVIEW_BASE_URL: str = "https://theqah.com.sa/review"
    INVITE_SMS_TEMPLATE: str | None = None

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore"
    )


settings = Settings()
