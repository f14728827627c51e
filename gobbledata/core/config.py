import logging
from typing import Dict, Optional

from pydantic import ConfigDict, Field, field_validator
from pydantic_settings import BaseSettings

PAID_TIER_PRICE_KEYS = {
    "starter": "STRIPE_PRICE_STARTER",
    "growth": "STRIPE_PRICE_GROWTH",
    "pro": "STRIPE_PRICE_PRO",
    "business": "STRIPE_PRICE_BUSINESS",
}


class Settings(BaseSettings):
    ENV: str = "development"
    CONFIG_STRICT: bool = False

    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None

    # Dashboard origin: OAuth/checkout redirects land here and CORS allows it
    FRONTEND_URL: str = "http://localhost:3000"
    BACKEND_URL: str = "http://localhost:8000"

    # Google OAuth client (analytics.readonly)
    GOOGLE_CLIENT_ID: Optional[str] = None
    GOOGLE_CLIENT_SECRET: Optional[str] = None
    GOOGLE_REDIRECT_URI: Optional[str] = None

    # Supabase-issued HS256 session tokens
    AUTH_JWT_SECRET: Optional[str] = None
    AUTH_JWT_AUDIENCE: str = "authenticated"

    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_WEBHOOK_SECRET: Optional[str] = None
    STRIPE_PRICE_STARTER: Optional[str] = None
    STRIPE_PRICE_GROWTH: Optional[str] = None
    STRIPE_PRICE_PRO: Optional[str] = None
    STRIPE_PRICE_BUSINESS: Optional[str] = None

    TRIAL_DAYS: int = Field(default=30, ge=1)
    CHECKOUT_TRIAL_DAYS: int = Field(default=30, ge=0)

    HTTP_TIMEOUT_SECONDS: float = Field(default=10.0, gt=0)

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @field_validator("ENV")
    @classmethod
    def _normalize_env(cls, value: str) -> str:
        return value.strip().lower()

    @field_validator("FRONTEND_URL", "BACKEND_URL")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @property
    def is_production(self) -> bool:
        return self.ENV == "production"

    def price_ids(self) -> Dict[str, str]:
        """Configured tier -> Stripe price id (unset tiers omitted)."""
        configured = {tier: getattr(self, key) for tier, key in PAID_TIER_PRICE_KEYS.items()}
        return {tier: price for tier, price in configured.items() if price}


settings = Settings()

# Keys without which the service starts but cannot serve its core flows
REQUIRED_KEYS = (
    "DATABASE_URL",
    "GOOGLE_CLIENT_ID",
    "GOOGLE_CLIENT_SECRET",
    "GOOGLE_REDIRECT_URI",
    "AUTH_JWT_SECRET",
    "STRIPE_SECRET_KEY",
)


def validate_config(strict: Optional[bool] = None, settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> bool:
    """Report missing configuration by key name, never by value.

    Raises RuntimeError in strict mode, otherwise logs one warning.
    """
    cfg = settings_obj or settings
    log = logger or logging.getLogger("gobbledata")
    strict_mode = cfg.CONFIG_STRICT if strict is None else strict

    missing = [key for key in REQUIRED_KEYS if not getattr(cfg, key, None)]
    if not missing:
        return True

    message = f"Missing required configuration: {', '.join(missing)}"
    if strict_mode:
        raise RuntimeError(message)
    log.warning(message, extra={"missing_keys": missing})
    return True
