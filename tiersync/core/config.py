"""
TierSync - Configuration
Environment-driven settings for the payment provider, tier catalog,
webhook verification and the reconciliation job.
"""
from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # ── Application ──────────────────────────────────────────────────────
    APP_NAME: str = "TierSync"
    APP_VERSION: str = "1.0.0"
    ENVIRONMENT: str = "development"  # development, test, production
    DEBUG: bool = False
    CORS_ORIGINS: str = "http://localhost:3000,http://localhost:5173"

    # ── Database ─────────────────────────────────────────────────────────
    DATABASE_URL: str = "postgresql+asyncpg://tiersync:changeme@db:5432/tiersync"

    # ── Dodo Payments ────────────────────────────────────────────────────
    DODO_PAYMENTS_API_KEY: str = ""
    DODO_PAYMENTS_ENVIRONMENT: str = "test_mode"  # "test_mode" or "live_mode"
    DODO_PAYMENTS_WEBHOOK_KEY: str = ""
    DODO_CHECKOUT_BASE_URL: str = "https://test.checkout.dodopayments.com"
    CHECKOUT_RETURN_URL: str = "http://localhost:3000/checkout/success"
    PAYMENT_UPDATE_RETURN_URL: str = "http://localhost:3000/subscription/updated"
    PROVIDER_TIMEOUT_SECONDS: int = 15

    # None rejects bad signatures only in production
    WEBHOOK_SIGNATURE_ENFORCED: Optional[bool] = None

    # ── Tier Mapping ─────────────────────────────────────────────────────
    # JSON object: {"Professional/Monthly": "pdt_...", "Business/Yearly": "pdt_..."}
    TEST_TIER_MAPPING: str = ""
    PROD_TIER_MAPPING: str = ""

    # ── Checkout Sessions ────────────────────────────────────────────────
    SESSION_FRESHNESS_MINUTES: int = 15
    SESSION_TIMEOUT_MINUTES: int = 30

    # ── Reconciliation Job ───────────────────────────────────────────────
    RECONCILIATION_ENABLED: bool = True
    RECONCILIATION_VERBOSE: bool = False
    CLEANUP_INTERVAL_MINUTES: int = 5
    GRACE_PERIOD_DAYS: int = 7

    # ── Helper Properties ────────────────────────────────────────────────
    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    @property
    def active_tier_mapping(self) -> str:
        if self.is_production:
            return self.PROD_TIER_MAPPING
        return self.TEST_TIER_MAPPING

    @property
    def dodo_api_base_url(self) -> str:
        if self.DODO_PAYMENTS_ENVIRONMENT == "live_mode":
            return "https://live.dodopayments.com"
        return "https://test.dodopayments.com"

    @property
    def webhook_signature_enforced(self) -> bool:
        if self.WEBHOOK_SIGNATURE_ENFORCED is not None:
            return self.WEBHOOK_SIGNATURE_ENFORCED
        return self.is_production

    class Config:
        env_file = ".env"
        case_sensitive = True


settings = Settings()
