from pathlib import Path
from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings
from dotenv import load_dotenv

# -------------------------------------------------
# Explicitly load .env
# -------------------------------------------------

BASE_DIR = Path(__file__).resolve().parent.parent.parent
ENV_PATH = BASE_DIR / ".env"

load_dotenv(dotenv_path=ENV_PATH)


class Settings(BaseSettings):
    DATABASE_URL: str = "sqlite+aiosqlite:///./storefront.db"
    ENVIRONMENT: str = "development"
    SQL_ECHO: bool = False
    LOG_LEVEL: str = "INFO"

    # Payment provider: "paystack" or "stripe"
    PAYMENT_PROVIDER: str = "paystack"
    STORE_CURRENCY: str = "NGN"
    PAYSTACK_SECRET_KEY: str = ""
    PAYSTACK_BASE_URL: str = "https://api.paystack.co"
    STRIPE_SECRET_KEY: str = ""
    STRIPE_WEBHOOK_SECRET: str = ""
    STRIPE_CURRENCY: str = "usd"
    PAYMENT_REFERENCE_PREFIX: str = "ord"

    # Verification (per attempt timeout, attempts, backoff)
    VERIFY_TIMEOUT_SECONDS: float = 12.0
    VERIFY_MAX_ATTEMPTS: int = 3
    VERIFY_BACKOFF_SECONDS: float = 0.5
    VERIFY_BACKOFF_MAX_SECONDS: float = 4.0
    # Rejected in production; test/demo references must never settle real orders
    PLACEHOLDER_REFERENCE_PREFIXES: list[str] = Field(default_factory=lambda: ["test_", "demo_", "placeholder_"])

    RECONCILE_LOCK_TIMEOUT_SECONDS: float = 5.0
    ADMIN_NOTIFICATION_EMAILS: list[str] = Field(default_factory=list)
    CONFIRMATION_TEMPLATE_KEY: str = "order_confirmed"
    ADMIN_ALERT_TEMPLATE_KEY: str = "admin_new_order"
    PAYMENT_FAILED_TEMPLATE_KEY: str = "payment_failed"

    # Notification dispatch
    DISPATCH_WORKERS: int = 1
    DISPATCH_BATCH_SIZE: int = 20
    DISPATCH_CONCURRENCY: int = 5
    DISPATCH_POLL_INTERVAL_SECONDS: float = 5.0
    DISPATCH_MAX_RETRIES: int = 3
    RETRY_BASE_SECONDS: float = 30.0
    RETRY_MAX_SECONDS: float = 3600.0
    RETRY_JITTER_SECONDS: float = 10.0
    TRANSPORT_TIMEOUT_SECONDS: float = 15.0
    PROCESSING_TIMEOUT_SECONDS: float = 600.0
    STUCK_SWEEP_INTERVAL_SECONDS: float = 120.0
    NOTIFICATION_RETENTION_DAYS: int = 90

    # Rate limits per recipient (fixed windows over sent deliveries)
    RATE_LIMIT_PER_HOUR: int = 10
    RATE_LIMIT_PER_DAY: int = 50
    RATE_LIMIT_DEFER_SECONDS: float = 1800.0
    RATE_LIMIT_EXEMPT_EVENT_TYPES: list[str] = Field(default_factory=lambda: ["admin_new_order", "admin_alert"])
    SOFT_BOUNCE_SUPPRESSION_HOURS: int = 72

    # Mail: accept MAIL_* or SMTP_*; leave MAIL_SERVER empty to log instead of sending
    MAIL_FROM: str = Field(default="orders@example.com", validation_alias=AliasChoices("MAIL_FROM", "SMTP_FROM_EMAIL"))
    MAIL_FROM_NAME: str = Field(default="Storefront", validation_alias=AliasChoices("MAIL_FROM_NAME", "SMTP_FROM_NAME"))
    MAIL_USERNAME: str = Field(default="", validation_alias=AliasChoices("MAIL_USERNAME", "SMTP_USER"))
    MAIL_PASSWORD: str = Field(default="", validation_alias=AliasChoices("MAIL_PASSWORD", "SMTP_PASSWORD"))
    MAIL_SERVER: str = Field(default="", validation_alias=AliasChoices("MAIL_SERVER", "SMTP_HOST"))
    MAIL_PORT: int = Field(default=587, validation_alias=AliasChoices("MAIL_PORT", "SMTP_PORT"))

    ADMIN_API_KEY: str = ""
    TRANSPORT_WEBHOOK_SECRET: str = ""

    # Background workers (dispatcher, stuck sweep, pending payment poll)
    BACKGROUND_WORKERS_ENABLED: bool = True
    PAYMENT_POLL_INTERVAL_SECONDS: float = Field(default=300.0, description="Pending payment poll interval")
    PAYMENT_POLL_MIN_AGE_MINUTES: int = Field(default=5, description="Skip transactions younger than this")
    PAYMENT_POLL_MAX_AGE_HOURS: int = Field(default=24, description="Stop polling transactions older than this")
    PAYMENT_POLL_BATCH_SIZE: int = 50

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT.lower() == "production"

    class Config:
        extra = "ignore"
        env_file = str(ENV_PATH)
        env_file_encoding = "utf-8"


settings = Settings()
