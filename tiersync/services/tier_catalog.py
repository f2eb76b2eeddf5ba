"""
TierSync - Tier Catalog
Maps Dodo product IDs to tier codes, billing frequency and default
entitlement duration. Loaded once from the environment-supplied mapping.
"""
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Dict, List, Optional

from tiersync.core.config import settings
from tiersync.models.statuses import BillingLength

logger = logging.getLogger(__name__)

TIER_CODES = ("FREE", "BASIC", "PRO", "PROFESSIONAL", "BUSINESS", "ENTERPRISE")

MONTHLY_DURATION_DAYS = 32
YEARLY_DURATION_DAYS = 367


@dataclass(frozen=True)
class TierConfig:
    code: str
    name: str
    billing_frequency: Optional[str]
    default_duration_days: int


def _tier_code_for(tier_name: str) -> str:
    code = tier_name.strip().upper()
    return code if code in TIER_CODES else "FREE"


def _frequency_for(interval: Optional[str]) -> Optional[str]:
    if not interval:
        return None
    interval = interval.strip().lower()
    if interval == "yearly":
        return BillingLength.YEARLY
    if interval == "monthly":
        return BillingLength.MONTHLY
    return None


class TierCatalog:
    """Product-id lookup over a {"Tier/Interval": product_id} table."""

    def __init__(self, products: Optional[Dict[str, TierConfig]] = None):
        self._products: Dict[str, TierConfig] = dict(products or {})

    @classmethod
    def from_mapping(cls, mapping: Dict[str, str]) -> "TierCatalog":
        products = {}
        for tier_key, product_id in mapping.items():
            if tier_key == "default" or not product_id:
                continue
            tier_name, _, interval = tier_key.partition("/")
            frequency = _frequency_for(interval)
            products[product_id] = TierConfig(
                code=_tier_code_for(tier_name),
                name=f"{tier_name} {interval}".strip(),
                billing_frequency=frequency,
                default_duration_days=(
                    YEARLY_DURATION_DAYS if frequency == BillingLength.YEARLY else MONTHLY_DURATION_DAYS
                ),
            )
        return cls(products)

    @classmethod
    def from_json(cls, raw: str) -> "TierCatalog":
        if not raw:
            logger.warning("No tier mapping configured, every product will resolve to nothing")
            return cls()
        try:
            mapping = json.loads(raw)
        except json.JSONDecodeError as e:
            logger.error(f"Failed to parse tier mapping: {e}")
            return cls()
        if not isinstance(mapping, dict):
            logger.error("Tier mapping must be a JSON object")
            return cls()
        catalog = cls.from_mapping(mapping)
        logger.info(f"Loaded tier mapping for products: {catalog.configured_product_ids()}")
        return catalog

    def resolve(self, product_id: Optional[str]) -> Optional[TierConfig]:
        if not product_id:
            return None
        return self._products.get(product_id)

    def tier_code_of(self, product_id: Optional[str]) -> Optional[str]:
        config = self.resolve(product_id)
        return config.code if config else None

    def billing_frequency_of(self, product_id: Optional[str]) -> Optional[str]:
        config = self.resolve(product_id)
        return config.billing_frequency if config else None

    def expiration_for(self, config: TierConfig, period_end: Optional[datetime] = None) -> datetime:
        if period_end:
            return period_end
        return datetime.now(timezone.utc) + timedelta(days=config.default_duration_days)

    def product_id_for(self, tier_code: str, billing_frequency: Optional[str] = None) -> Optional[str]:
        """Reverse lookup, preferring the matching frequency when given."""
        fallback = None
        for product_id, config in self._products.items():
            if config.code != tier_code:
                continue
            if billing_frequency is None or config.billing_frequency == billing_frequency:
                return product_id
            if fallback is None:
                fallback = product_id
        return fallback

    def configured_product_ids(self) -> List[str]:
        return list(self._products.keys())


@lru_cache()
def get_tier_catalog() -> TierCatalog:
    """Process-wide catalog built from settings on first use."""
    return TierCatalog.from_json(settings.active_tier_mapping)
