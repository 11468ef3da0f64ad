# ==================================================================================
# core/config.py — Billing backend configuration (pydantic-settings + Stripe)
# ==================================================================================
from decimal import Decimal
import logging
import sys

from dotenv import load_dotenv
from pydantic import ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

load_dotenv()
logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    # ------------------------
    # DATABASE CONFIG
    # ------------------------
    DATABASE_URL: str = "sqlite:///./billflow.db"

    # ------------------------
    # SECURITY CONFIG
    # ------------------------
    SECRET_KEY: str
    ALGORITHM: str = "HS256"

    # ------------------------
    # STRIPE / PAYMENT CONFIG
    # ------------------------
    STRIPE_SECRET_KEY: str | None = None
    STRIPE_WEBHOOK_SECRET: str | None = None
    STRIPE_WEBHOOK_TOLERANCE: int = 300  # seconds between signing and receipt
    STRIPE_PRO_MONTHLY_PRICE_ID: str | None = None
    STRIPE_PRO_YEARLY_PRICE_ID: str | None = None
    STRIPE_TEAM_MONTHLY_PRICE_ID: str | None = None
    STRIPE_TEAM_YEARLY_PRICE_ID: str | None = None

    # ------------------------
    # BILLING DEFAULTS
    # ------------------------
    DEFAULT_CURRENCY: str = "USD"
    DEFAULT_TAX_RATE: Decimal = Decimal("18.00")  # percent
    DEFAULT_TRIAL_DAYS: int = 14
    INVOICE_DUE_DAYS: int = 15
    INVOICE_NUMBER_MAX_ATTEMPTS: int = 5

    # ------------------------
    # ENVIRONMENT SETTINGS
    # ------------------------
    ENVIRONMENT: str = "development"  # 'development' | 'production'
    DEBUG: bool = True

    @property
    def IS_PRODUCTION(self) -> bool:
        """Convenience helper to check if running in production"""
        return self.ENVIRONMENT.lower() == "production"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


# ------------------------
# Global Settings Loader
# ------------------------
try:
    settings = Settings()
    logger.info("✅ Environment: %s, Debug: %s", settings.ENVIRONMENT, settings.DEBUG)
except ValidationError as e:
    logger.error("❌ Environment configuration error — missing or invalid settings: %s", e)
    sys.exit(1)
