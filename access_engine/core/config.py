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

    # Admin access (X-Admin-Key)
    ADMIN_KEY: Optional[str] = None

    # Payments
    PAYMENT_PROVIDER: str = "mock"  # "mock" | "stripe"
    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_WEBHOOK_SECRET: Optional[str] = None
    PAYMENT_CURRENCY: str = "inr"
    PAYMENT_LINK_EXPIRY_DAYS: int = 7
    PAYMENT_SUCCESS_URL: Optional[str] = None

    # App URLs
    BASE_URL: str = "http://localhost:8000"
    CORS_ORIGINS: str = "http://localhost:3000"  # comma-separated

    # Notifications (WhatsApp payment-link delivery)
    NOTIFICATIONS_ENABLED: bool = False
    WHATSAPP_API_URL: Optional[str] = None
    WHATSAPP_API_TOKEN: Optional[str] = None
    NOTIFICATION_TIMEOUT_SECONDS: float = 10.0

    # Entitlements
    EXPIRING_SOON_DAYS: int = 7
    DEFAULT_ACCESS_DURATION_DAYS: int = 30
    SEED_FEATURE_GATES: bool = True

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


settings = Settings()


def cors_origins(settings_obj: Optional[Settings] = None) -> list[str]:
    cfg = settings_obj or settings
    return [o.strip() for o in (cfg.CORS_ORIGINS or "").split(",") if o.strip()]


def validate_config(strict: Optional[bool] = None, settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> bool:
    """Validate required configuration.

    In strict mode raise RuntimeError; otherwise emit warnings only.
    Secrets are not logged, only missing keys.
    """
    cfg = settings_obj or settings
    log = logger or logging.getLogger("access_engine")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    required_keys = ["DATABASE_URL", "ADMIN_KEY"]
    if (getattr(cfg, "PAYMENT_PROVIDER", "mock") or "mock").lower() == "stripe":
        required_keys += ["STRIPE_SECRET_KEY", "STRIPE_WEBHOOK_SECRET"]
    if getattr(cfg, "NOTIFICATIONS_ENABLED", False):
        required_keys += ["WHATSAPP_API_URL", "WHATSAPP_API_TOKEN"]

    missing = [key for key in required_keys if not getattr(cfg, key, None)]
    if missing:
        message = f"Missing required configuration: {', '.join(missing)}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    return True
