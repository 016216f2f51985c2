from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Database (set via .env; avoid hardcoding secrets here)
    DATABASE_URL: str = "sqlite:///./eventpass.db"
    DB_ECHO: bool = False

    # App/Base URL used to build gateway return and callback URLs
    BASE_URL: str = "http://localhost:3000"
    # Public URL of this API (gateway callbacks hit this host)
    API_BASE_URL: str = "http://localhost:8000"

    # Payments
    PAYMENT_GATEWAY: Literal["chapa", "stripe"] = "chapa"
    DEFAULT_CURRENCY: str = "ETB"
    ALLOWED_CURRENCIES: tuple[str, ...] = ("ETB", "USD")
    GATEWAY_TIMEOUT_SECONDS: float = 15.0

    # Chapa
    CHAPA_API_BASE: str = "https://api.chapa.co/v1"
    CHAPA_SECRET_KEY: str = ""
    CHAPA_WEBHOOK_SECRET: str = ""

    # Stripe
    STRIPE_SECRET_KEY: str = ""
    STRIPE_WEBHOOK_SECRET: str = ""

    # Checkout polling fallback when no webhook arrives
    PAYMENT_POLL_ATTEMPTS: int = 5
    PAYMENT_POLL_BACKOFF_SECONDS: float = 2.0
    PAYMENT_POLL_MAX_BACKOFF_SECONDS: float = 30.0
    # Pending paid orders older than this are failed by the reconciliation job
    PENDING_ORDER_TTL_HOURS: int = 24

    # Orders
    MAX_RSVP_QUANTITY: int = 10

    # Virtual meetings (Jitsi as a Service)
    JAAS_APP_ID: str = ""
    JAAS_API_KEY_ID: str = ""
    JAAS_PRIVATE_KEY: str = ""
    JAAS_TOKEN_TTL_SECONDS: int = 3 * 60 * 60
    JITSI_BASE_URL: str = "https://meet.jit.si"
    JAAS_BASE_URL: str = "https://8x8.vc"

    # Caching
    REDIS_URL: str = ""
    SUBSCRIPTION_CACHE_TTL_SECONDS: int = 5 * 60
    PLAN_CACHE_TTL_SECONDS: int = 60

    # Subscriptions
    TRIAL_PLAN_SLUG: str = "trial"
    TRIAL_DEFAULT_DAYS: int = 14
    PAID_DEFAULT_DAYS: int = 30
    EXPIRING_SOON_DAYS: int = 7

    # Logging
    LOG_LEVEL: str = "INFO"  # DEBUG, INFO, WARNING, ERROR, CRITICAL
    LOG_JSON: bool = True
    LOG_FILE: str = "logs/app.log"
    LOG_MAX_BYTES: int = 5_000_000  # 5 MB
    LOG_BACKUP_COUNT: int = 5

    # Sentry
    SENTRY_DSN: str = ""
    SENTRY_TRACES_SAMPLE_RATE: float = 0.0

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )


settings = Settings()

# Basic validation for gateway secrets to prevent confusing runtime errors
_missing = []
if settings.PAYMENT_GATEWAY == "chapa" and not settings.CHAPA_SECRET_KEY:
    _missing.append("CHAPA_SECRET_KEY")
if settings.PAYMENT_GATEWAY == "stripe" and not settings.STRIPE_SECRET_KEY:
    _missing.append("STRIPE_SECRET_KEY")

if _missing:
    # Do not crash imports in some tools; instead, provide a helpful message.
    import warnings

    warnings.warn(
        "Missing payment settings in .env: "
        + ", ".join(_missing)
        + ". Checkout initiation will fail until they are configured."
    )
