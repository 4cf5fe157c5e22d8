from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=None, extra="ignore")

    ENV: str = "prod"

    DATABASE_URL: str

    API_JWT_SECRET: str
    API_TOKEN_DAYS: int = 365

    DB_POOL_SIZE: int = 5
    DB_MAX_OVERFLOW: int = 5
    DB_POOL_TIMEOUT_SECONDS: int = 30
    DB_POOL_RECYCLE_SECONDS: int = 1800

    ALLOWED_HOSTS: str = "localhost,127.0.0.1"
    SECURITY_HEADERS_ENABLED: bool = True

    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True

    # Scheduler trigger
    CRON_SECRET: str | None = None
    CRON_PLATFORM_HEADER: str = "x-vercel-cron"

    # Recurring billing policy
    BILLING_MAX_ATTEMPTS: int = 3
    BILLING_RETRY_HOURS: int = 24
    BILLING_RETRY_GRACE_MINUTES: int = 15
    BILLING_PASS_LIMIT: int = 500
    BILLING_MAX_WORKERS: int = 1
    BILLING_PROCESSING_STALE_MINUTES: int = 30
    GATEWAY_TIMEOUT_SECONDS: int = 30
    RENEWAL_REMINDER_DAYS: int = 3

    # Gateway webhooks
    BILLING_REQUIRE_WEBHOOK_SIGNATURE: bool = True

    # Platform account used to bill merchants (Wompi)
    PLATFORM_WOMPI_PUBLIC_KEY: str | None = None
    PLATFORM_WOMPI_PRIVATE_KEY: str | None = None
    PLATFORM_WOMPI_EVENTS_SECRET: str | None = None
    PLATFORM_WOMPI_IS_PRODUCTION: bool = False
    PLATFORM_CURRENCY: str = "COP"
    MERCHANT_MAX_FAILED_CHARGES: int = 3

    # Notifications
    NOTIFICATIONS_PROVIDER: str = "log"  # log|http
    NOTIFICATIONS_WEBHOOK_URL: str | None = None
    NOTIFICATIONS_TIMEOUT_SECONDS: int = 10

settings = Settings()
