"""
Application configuration.

Values come from environment variables or a local .env file. Booking policy
windows (hold duration, cleanup grace) live here so ops can tune them without
a deploy.
"""
import logging
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    APP_ENV: str = "development"
    LOG_LEVEL: str = "INFO"
    DATABASE_URL: str = "postgresql+asyncpg://localhost/clinic_booking"
    JWT_SECRET_KEY: str = ""

    # Booking policy
    HOLD_MS: int = 10 * 60 * 1000
    SAFETY_MS: int = 15 * 60 * 1000
    STALE_PENDING_HOURS: int = 24
    NO_SHOW_GRACE_HOURS: int = 2
    MAX_RESCHEDULES: int = 1

    # Expiry sweeper
    SWEEPER_ENABLED: bool = True
    SWEEP_INTERVAL_SECONDS: int = 300

    # Payment gateways
    CURRENCY: str = "INR"
    FRONTEND_URL: str = "http://localhost:3000"
    GATEWAY_TIMEOUT_SECONDS: float = 15.0
    RAZORPAY_API_BASE: str = "https://api.razorpay.com/v1"
    RAZORPAY_WEBHOOK_SECRET: str = ""
    STRIPE_WEBHOOK_SECRET: str = ""

    # SendGrid Email
    SENDGRID_API_KEY: str = ""
    SENDGRID_FROM_EMAIL: str = "noreply@clinicbooking.app"
    SENDGRID_FROM_NAME: str = "Clinic Booking"


settings = Settings()

# Validate critical security settings
if not settings.JWT_SECRET_KEY:
    raise ValueError(
        "JWT_SECRET_KEY is not set. Provide it as an environment variable or in .env. "
        "Generate one with: python -c 'import secrets; print(secrets.token_urlsafe(32))'"
    )

if settings.SAFETY_MS < settings.HOLD_MS:
    logger.warning(
        "SAFETY_MS (%d) is shorter than HOLD_MS (%d); late webhooks will be rejected as soon as holds expire",
        settings.SAFETY_MS,
        settings.HOLD_MS,
    )
