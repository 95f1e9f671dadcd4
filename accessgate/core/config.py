import logging

from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from typing import Optional

class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False

    # Database
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None

    # Identity
    SUPER_ADMIN_EMAIL: Optional[str] = None
    SESSION_JWT_SECRET: Optional[str] = None
    SESSION_JWT_ALGORITHM: str = "HS256"

    # Finance PIN
    FINANCE_PIN_SALT: str = "finance_pin_salt_dev_only"
    FINANCE_PIN_MAX_FAILED_ATTEMPTS: int = 5
    FINANCE_PIN_LOCKOUT_MINUTES: int = 15
    PIN_RESET_TOKEN_TTL_MINUTES: int = 60
    PIN_RESET_COOLDOWN_SECONDS: int = 60

    # Trial
    TRIAL_LENGTH_DAYS: int = 7

    # Stripe
    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_WEBHOOK_SECRET: Optional[str] = None
    STRIPE_TIMEOUT_SECONDS: int = 10
    DELINQUENCY_GRACE_DAYS: int = 5

    # Email (Resend)
    RESEND_API_KEY: Optional[str] = None
    EMAIL_FROM: str = "Accessgate <no-reply@accessgate.local>"

    # App URLs
    SITE_URL: str = "http://localhost:3000"

    # Rate limiting
    RATE_LIMIT_ENABLED: bool = False
    RATE_LIMIT_PER_MINUTE_DEFAULT: int = 120
    RATE_LIMIT_BURST_DEFAULT: int = 30

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )
settings = Settings()


def validate_config(strict: Optional[bool] = None, settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> bool:
    """Validate required configuration.

    In strict mode raise RuntimeError; otherwise emit warnings only.
    Secrets are not logged, only missing keys.
    """
    cfg = settings_obj or settings
    log = logger or logging.getLogger("accessgate")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    required_keys = [
        "DATABASE_URL",
        "SUPER_ADMIN_EMAIL",
        "SESSION_JWT_SECRET",
        "STRIPE_SECRET_KEY",
        "RESEND_API_KEY",
    ]

    missing = [key for key in required_keys if not getattr(cfg, key, None)]
    if missing:
        message = f"Missing required configuration: {', '.join(missing)}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    return True
