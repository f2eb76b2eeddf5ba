"""
TierSync - Tier Comparison
Classifies a plan change as an upgrade, downgrade or billing frequency change.
"""
from typing import Optional

from tiersync.models.statuses import BillingLength, FREE_TIER

# Higher level means higher tier; synonyms share a level
TIER_HIERARCHY = {
    "FREE": 0,
    "BASIC": 1,
    "PROFESSIONAL": 2,
    "PRO": 2,
    "BUSINESS": 3,
    "ENTERPRISE": 3,
}


class ChangeType:
    IMMEDIATE_UPGRADE = "IMMEDIATE_UPGRADE"
    DEFERRED_DOWNGRADE = "DEFERRED_DOWNGRADE"
    DEFERRED_FREQUENCY_CHANGE = "DEFERRED_FREQUENCY_CHANGE"
    NO_CHANGE = "NO_CHANGE"


DEFERRED_CHANGE_TYPES = (ChangeType.DEFERRED_DOWNGRADE, ChangeType.DEFERRED_FREQUENCY_CHANGE)

CHANGE_DESCRIPTIONS = {
    ChangeType.IMMEDIATE_UPGRADE: "Upgrade (applies immediately with prorated billing)",
    ChangeType.DEFERRED_DOWNGRADE: "Downgrade (applies at end of current billing cycle)",
    ChangeType.DEFERRED_FREQUENCY_CHANGE: "Billing frequency change (applies at end of current billing cycle)",
    ChangeType.NO_CHANGE: "No change",
}


def tier_level(tier: Optional[str]) -> int:
    if not tier:
        return 0
    return TIER_HIERARCHY.get(tier.upper(), 0)


def is_upgrade(current_tier: Optional[str], new_tier: Optional[str]) -> bool:
    return tier_level(new_tier) > tier_level(current_tier)


def is_downgrade(current_tier: Optional[str], new_tier: Optional[str]) -> bool:
    return tier_level(new_tier) < tier_level(current_tier)


def normalize_billing_frequency(frequency: Optional[str]) -> Optional[str]:
    """Accept the provider's "Month"/"Year" as well as MONTHLY/YEARLY."""
    if not frequency:
        return None
    upper = frequency.upper()
    if upper in ("MONTH", "MONTHLY"):
        return BillingLength.MONTHLY
    if upper in ("YEAR", "YEARLY"):
        return BillingLength.YEARLY
    return upper


def is_billing_frequency_change(current_length: Optional[str], new_length: Optional[str]) -> bool:
    if not current_length or not new_length:
        return False
    return normalize_billing_frequency(current_length) != normalize_billing_frequency(new_length)


def determine_change_type(
    current_tier: Optional[str],
    new_tier: str,
    current_length: Optional[str],
    new_length: Optional[str],
) -> str:
    """
    Upgrades apply immediately; downgrades and frequency changes are
    deferred to the end of the billing cycle.
    """
    current = current_tier or FREE_TIER
    if is_upgrade(current, new_tier):
        return ChangeType.IMMEDIATE_UPGRADE
    if is_downgrade(current, new_tier):
        return ChangeType.DEFERRED_DOWNGRADE
    if is_billing_frequency_change(current_length, new_length):
        return ChangeType.DEFERRED_FREQUENCY_CHANGE
    return ChangeType.NO_CHANGE


def change_type_description(change_type: str) -> str:
    return CHANGE_DESCRIPTIONS.get(change_type, "Unknown change")
