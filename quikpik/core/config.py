import logging

from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional


class Settings(BaseSettings):
    # Environment
    ENV: str = "development"  # development | test | production
    CONFIG_STRICT: bool = False

    # Database
    DATABASE_URL: Optional[str] = None

    # Stripe
    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_WEBHOOK_SECRET: Optional[str] = None
    STRIPE_PRICE_STANDARD: Optional[str] = None
    STRIPE_PRICE_PREMIUM: Optional[str] = None
    STRIPE_TIMEOUT_SECONDS: float = 10.0
    STRIPE_WEBHOOK_TOLERANCE_SECONDS: int = 300

    # App URLs
    FRONTEND_URL: str = "http://localhost:5173"

    # Auth
    AUTH_JWT_SECRET: Optional[str] = None
    ADMIN_KEY: Optional[str] = None

    # Subscription store / webhook processing
    STORE_MAX_WRITE_ATTEMPTS: int = 5
    WEBHOOK_MAX_ATTEMPTS: int = 8
    # A "processing" claim older than this is treated as abandoned
    WEBHOOK_CLAIM_TIMEOUT_SECONDS: int = 300

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @property
    def IS_PRODUCTION(self) -> bool:
        return self.ENV.lower() == "production"

    @property
    def CHECKOUT_SUCCESS_URL(self) -> str:
        """Stripe substitutes {CHECKOUT_SESSION_ID} on redirect."""
        return f"{self.FRONTEND_URL}/subscription?success=true&session_id={{CHECKOUT_SESSION_ID}}"

    @property
    def CHECKOUT_CANCEL_URL(self) -> str:
        return f"{self.FRONTEND_URL}/subscription?canceled=true"

    @property
    def PLAN_CHANGED_URL(self) -> str:
        return f"{self.FRONTEND_URL}/subscription?success=true"

    @property
    def UPGRADE_URL(self) -> str:
        return f"{self.FRONTEND_URL}/subscription"


settings = Settings()


def validate_config(strict: Optional[bool] = None, settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> bool:
    """Validate required configuration.

    In strict mode raise RuntimeError; otherwise emit warnings only.
    Secrets are not logged, only missing keys.
    """
    cfg = settings_obj or settings
    log = logger or logging.getLogger("quikpik")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    required_keys = [
        "DATABASE_URL",
        "STRIPE_SECRET_KEY",
        "STRIPE_WEBHOOK_SECRET",
        "STRIPE_PRICE_STANDARD",
        "STRIPE_PRICE_PREMIUM",
    ]
    if cfg.IS_PRODUCTION:
        required_keys += ["AUTH_JWT_SECRET", "ADMIN_KEY"]

    missing = [key for key in required_keys if not getattr(cfg, key, None)]
    if missing:
        message = f"Missing required configuration: {', '.join(missing)}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    return True
