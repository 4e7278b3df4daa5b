import logging

import pytest

from paysync import main
from paysync.app.config import load_sync_config, parse_price_tiers
from paysync.app.sync import PlanTier


def test_defaults_when_environment_is_empty():
    config = load_sync_config({})

    assert config.webhook_secret == ""
    assert config.signature_header == "Billing-Signature"
    assert config.signature_tolerance_seconds == 300
    assert config.webhook_deadline_seconds == 10.0
    assert config.lease_seconds == 30.0
    assert config.reconcile_enabled is True
    assert config.reconcile_interval_seconds == 3600.0
    assert config.reconcile_deadline_seconds == 900.0
    assert config.reconcile_page_size == 100
    assert config.rate_limit_retries == 5
    assert config.price_tiers == {}
    assert config.database.port == 5432
    assert config.database.pool_max >= config.database.pool_min


def test_values_are_read_and_clamped():
    config = load_sync_config(
        {
            "BILLING_WEBHOOK_SECRET": "whsec_1",
            "BILLING_SIGNATURE_TOLERANCE_SECONDS": "-5",
            "RECONCILE_ENABLED": "off",
            "RECONCILE_PAGE_SIZE": "500",
            "PROVIDER_API_BASE": "https://billing.example/v1/",
            "DB_POOL_MIN": "4",
            "DB_POOL_MAX": "2",
            "DB_CONNECT_TIMEOUT": "2.5",
            "LOG_LEVEL": "debug",
        }
    )

    assert config.webhook_secret == "whsec_1"
    assert config.signature_tolerance_seconds == 0
    assert config.reconcile_enabled is False
    assert config.reconcile_page_size == 100
    assert config.provider_api_base == "https://billing.example/v1"
    assert config.database.pool_min == 4
    assert config.database.pool_max == 4
    assert config.database.connect_timeout == 3
    assert config.log_level == "DEBUG"


def test_invalid_numbers_raise():
    with pytest.raises(ValueError):
        load_sync_config({"WEBHOOK_DEADLINE_SECONDS": "soon"})


def test_price_tier_map_parsing():
    assert parse_price_tiers("price_a:pro, price_b:Team,") == {
        "price_a": PlanTier.PRO,
        "price_b": PlanTier.TEAM,
    }
    with pytest.raises(ValueError):
        parse_price_tiers("price_a")
    with pytest.raises(ValueError):
        parse_price_tiers("price_a:platinum")


def test_configure_logging_uses_configured_level():
    root = logging.getLogger()
    previous = root.level
    try:
        main.configure_logging(load_sync_config({"LOG_LEVEL": "warning"}))
        assert root.level == logging.WARNING
    finally:
        root.setLevel(previous)
