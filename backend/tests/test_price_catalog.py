"""Tests for the plan catalog, market handling, and price resolution."""
from __future__ import annotations

import logging

import pytest

from backend import check_price_config
from backend.app.entitlements import (
    BillingInterval,
    Market,
    PlanKey,
    PriceSource,
    SubscriptionStatus,
    audit_price_configuration,
    get_token_package,
    interval_from_provider,
    monthly_allotment,
    normalize_market,
    plan_rank,
    resolve_plan_price,
    resolve_token_package_price,
    status_from_provider,
)


def test_plan_rank_orders_tiers():
    ranks = [plan_rank(plan) for plan in (PlanKey.FREE, PlanKey.TIER1, PlanKey.TIER2, PlanKey.TIER3)]
    assert ranks == [0, 1, 2, 3]


def test_monthly_allotments():
    assert monthly_allotment(PlanKey.TIER1) == 100
    assert monthly_allotment(PlanKey.TIER2) == 300
    assert monthly_allotment(PlanKey.TIER3) == 1000


def test_token_packages():
    assert get_token_package(600).display_price == 69
    with pytest.raises(KeyError):
        get_token_package(250)


def test_normalize_market_falls_back_to_default():
    assert normalize_market("ES") == Market.ES
    assert normalize_market(" mx ") == Market.MX
    assert normalize_market("fr") == Market.US
    assert normalize_market(None, default=Market.ES) == Market.ES


def test_provider_status_mapping():
    assert status_from_provider("trialing") == SubscriptionStatus.ACTIVE
    assert status_from_provider("unpaid") == SubscriptionStatus.PAST_DUE
    assert status_from_provider("incomplete_expired") == SubscriptionStatus.CANCELED
    with pytest.raises(ValueError):
        status_from_provider("mystery")


def test_provider_interval_mapping():
    assert interval_from_provider("month") == BillingInterval.MONTHLY
    assert interval_from_provider("year") == BillingInterval.ANNUAL
    assert interval_from_provider("week") is None


def test_market_price_is_preferred():
    env = {
        "STRIPE_PRICE_GROWTH_ES_ANNUAL": "price_es_annual",
        "STRIPE_PRICE_GROWTH": "price_legacy",
    }

    resolution = resolve_plan_price(Market.ES, PlanKey.TIER2, BillingInterval.ANNUAL, env)

    assert resolution.price_id == "price_es_annual"
    assert resolution.source == PriceSource.MARKET
    assert resolution.variable == "STRIPE_PRICE_GROWTH_ES_ANNUAL"


def test_legacy_price_fallback_logs_warning(caplog):
    env = {"STRIPE_PRICE_STARTER": "price_legacy"}

    with caplog.at_level(logging.WARNING, logger="billing.prices"):
        resolution = resolve_plan_price(Market.MX, PlanKey.TIER1, BillingInterval.MONTHLY, env)

    assert resolution.price_id == "price_legacy"
    assert resolution.source == PriceSource.LEGACY
    assert "STRIPE_PRICE_STARTER_MX_MONTHLY" in caplog.text


def test_missing_price_is_not_configured():
    resolution = resolve_plan_price(Market.US, PlanKey.TIER3, BillingInterval.MONTHLY, {"STRIPE_PRICE_AGENCY": "  "})

    assert not resolution.is_configured
    assert resolution.source == PriceSource.NOT_CONFIGURED


def test_free_plan_has_no_price():
    env = {"STRIPE_PRICE_FREE_US_MONTHLY": "price_free"}
    assert resolve_plan_price(Market.US, PlanKey.FREE, BillingInterval.MONTHLY, env).price_id is None


def test_token_package_price_resolution():
    env = {"STRIPE_PRICE_300TK_ES": "price_300_es", "STRIPE_PRICE_600TK": "price_600"}

    assert resolve_token_package_price(Market.ES, 300, env).source == PriceSource.MARKET
    assert resolve_token_package_price(Market.ES, 600, env).source == PriceSource.LEGACY
    assert resolve_token_package_price(Market.ES, 100, env).source == PriceSource.NOT_CONFIGURED
    assert resolve_token_package_price(Market.ES, 250, env).source == PriceSource.NOT_CONFIGURED


def _complete_env():
    env = {}
    for market in Market:
        for plan in ("STARTER", "GROWTH", "AGENCY"):
            for interval in BillingInterval:
                env[f"STRIPE_PRICE_{plan}_{market.value.upper()}_{interval.value.upper()}"] = "price_x"
        for tokens in (100, 300, 600, 1200, 3000, 6000):
            env[f"STRIPE_PRICE_{tokens}TK_{market.value.upper()}"] = "price_y"
    return env


def test_audit_reports_missing_and_legacy_variables():
    report = audit_price_configuration({"STRIPE_PRICE_STARTER_US_MONTHLY": "price_a", "STRIPE_PRICE_GROWTH": "price_b"})

    assert not report.is_complete
    assert report.configured == [("STRIPE_PRICE_STARTER_US_MONTHLY", "price_a")]
    assert len(report.missing) == 35
    assert "STRIPE_PRICE_6000TK_MX" in report.missing
    assert report.legacy_configured == ["STRIPE_PRICE_GROWTH"]
    assert "STRIPE_PRICE_STARTER" in report.legacy_missing


def test_audit_complete_configuration():
    report = audit_price_configuration(_complete_env())

    assert report.is_complete
    assert len(report.configured) == 36


def test_check_price_config_exit_status(capsys):
    assert check_price_config.main(_complete_env()) == 0
    assert check_price_config.main({}) == 1
    output = capsys.readouterr().out
    assert "STRIPE_PRICE_AGENCY_ES_ANNUAL" in output
    assert "36 market price(s) missing" in output
