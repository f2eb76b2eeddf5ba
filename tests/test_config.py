import pytest

from tiersync.core.config import Settings


@pytest.mark.parametrize(
    "environment, flag, expected",
    [
        ("development", None, False),
        ("test", None, False),
        ("production", None, True),
        ("development", True, True),
        ("production", False, False),
    ],
)
def test_webhook_signature_policy(environment, flag, expected):
    settings = Settings(ENVIRONMENT=environment, WEBHOOK_SIGNATURE_ENFORCED=flag)
    assert settings.webhook_signature_enforced is expected


def test_production_selects_live_tier_mapping():
    settings = Settings(ENVIRONMENT="production", TEST_TIER_MAPPING="{}", PROD_TIER_MAPPING='{"a": "b"}')
    assert settings.active_tier_mapping == '{"a": "b"}'
