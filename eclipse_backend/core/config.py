import logging

from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from typing import Optional

class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False

    # Server
    HOST: str = "0.0.0.0"
    PORT: int = 4242
    CORS_ORIGINS: str = "*"  # comma-separated
    STATIC_DIR: Optional[str] = None  # success.html / cancel.html

    # Entitlement store
    STORE_BACKEND: str = "sql"  # sql | file
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None
    ENTITLEMENT_FILE: str = "premium.json"
    PROCESSED_EVENT_RETENTION_DAYS: int = 30

    # Single-tenant deployments answer entitlement queries for this user
    SINGLE_TENANT_USER_ID: Optional[str] = None

    # Stripe
    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_WEBHOOK_SECRET: Optional[str] = None
    STRIPE_PRICE_ID: Optional[str] = None

    # Redirect targets
    CHECKOUT_SUCCESS_URL: str = "http://localhost:4242/success.html"
    CHECKOUT_CANCEL_URL: str = "http://localhost:4242/cancel.html"
    PORTAL_RETURN_URL: str = "http://localhost:4242/"

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )
settings = Settings()


def cors_origins(cfg: Optional[Settings] = None) -> list[str]:
    raw = (cfg or settings).CORS_ORIGINS or ""
    return [origin.strip() for origin in raw.split(",") if origin.strip()]


def validate_config(strict: Optional[bool] = None, settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> bool:
    """Validate required configuration.

    In strict mode raise RuntimeError; otherwise emit warnings only.
    Secrets are not logged, only missing keys.
    """
    cfg = settings_obj or settings
    log = logger or logging.getLogger("eclipse")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    required_keys = [
        "STRIPE_SECRET_KEY",
        "STRIPE_WEBHOOK_SECRET",
        "STRIPE_PRICE_ID",
    ]

    missing = [key for key in required_keys if not getattr(cfg, key, None)]
    if missing:
        message = f"Missing required configuration: {', '.join(missing)}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    return True
