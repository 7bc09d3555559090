"""Resolution of payment provider price identifiers from configuration.

Prices are configured per market through environment variables named
``STRIPE_PRICE_{PLAN}_{MARKET}_{INTERVAL}``, where ``PLAN`` is the plan's price
name (for example ``STRIPE_PRICE_GROWTH_ES_ANNUAL`` for tier2), and
``STRIPE_PRICE_{N}TK_{MARKET}`` for token packages. Deployments that predate
per-market pricing only define the legacy global ``STRIPE_PRICE_{PLAN}`` /
``STRIPE_PRICE_{N}TK`` variables; those are used as a fallback and a
configuration warning is logged, since the legacy price may be denominated in
another market's currency.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Mapping, Optional, Tuple

from .catalog import PLAN_CATALOG, TOKEN_PACKAGES
from .models import BillingInterval, Market, PlanKey

logger = logging.getLogger("billing.prices")


class PriceSource(str, Enum):
    """Where a resolved price identifier came from."""

    MARKET = "market"
    LEGACY = "legacy"
    NOT_CONFIGURED = "not_configured"


@dataclass(frozen=True)
class PriceResolution:
    """Outcome of a price lookup; ``price_id`` is ``None`` when not configured."""

    price_id: Optional[str]
    source: PriceSource
    variable: Optional[str] = None

    @property
    def is_configured(self) -> bool:
        return self.price_id is not None


def _price_name(plan_key: PlanKey) -> str:
    return PLAN_CATALOG[plan_key].price_name.upper()


def plan_price_variable(plan_key: PlanKey, market: Market, interval: BillingInterval) -> str:
    return f"STRIPE_PRICE_{_price_name(plan_key)}_{market.value.upper()}_{interval.value.upper()}"


def legacy_plan_price_variable(plan_key: PlanKey) -> str:
    return f"STRIPE_PRICE_{_price_name(plan_key)}"


def token_package_price_variable(tokens: int, market: Market) -> str:
    return f"STRIPE_PRICE_{int(tokens)}TK_{market.value.upper()}"


def legacy_token_package_price_variable(tokens: int) -> str:
    return f"STRIPE_PRICE_{int(tokens)}TK"


def _lookup(env: Mapping[str, str], name: str) -> Optional[str]:
    value = env.get(name)
    if value is None:
        return None
    value = value.strip()
    return value or None


def _resolve(env: Mapping[str, str], primary: str, legacy: str, *, context: str) -> PriceResolution:
    price_id = _lookup(env, primary)
    if price_id:
        return PriceResolution(price_id=price_id, source=PriceSource.MARKET, variable=primary)

    legacy_price = _lookup(env, legacy)
    if legacy_price:
        logger.warning(
            "Market price %s missing for %s; falling back to legacy price %s",
            primary,
            context,
            legacy,
            extra={"price_variable": primary, "legacy_variable": legacy},
        )
        return PriceResolution(price_id=legacy_price, source=PriceSource.LEGACY, variable=legacy)

    logger.error(
        "No price configured for %s (checked %s, %s)",
        context,
        primary,
        legacy,
        extra={"price_variable": primary, "legacy_variable": legacy},
    )
    return PriceResolution(price_id=None, source=PriceSource.NOT_CONFIGURED)


def resolve_plan_price(
    market: Market,
    plan_key: PlanKey,
    interval: BillingInterval,
    env: Optional[Mapping[str, str]] = None,
) -> PriceResolution:
    """Map ``(market, plan, interval)`` to the provider price identifier."""

    if plan_key == PlanKey.FREE:
        return PriceResolution(price_id=None, source=PriceSource.NOT_CONFIGURED)
    env_mapping = os.environ if env is None else env
    return _resolve(
        env_mapping,
        plan_price_variable(plan_key, market, interval),
        legacy_plan_price_variable(plan_key),
        context=f"plan={plan_key.value} market={market.value} interval={interval.value}",
    )


def resolve_token_package_price(
    market: Market,
    tokens: int,
    env: Optional[Mapping[str, str]] = None,
) -> PriceResolution:
    """Map ``(market, package size)`` to the provider price identifier."""

    if int(tokens) not in TOKEN_PACKAGES:
        return PriceResolution(price_id=None, source=PriceSource.NOT_CONFIGURED)
    env_mapping = os.environ if env is None else env
    return _resolve(
        env_mapping,
        token_package_price_variable(tokens, market),
        legacy_token_package_price_variable(tokens),
        context=f"package={int(tokens)} market={market.value}",
    )


@dataclass
class PriceConfigReport:
    """Summary of which price variables are present in a configuration mapping."""

    configured: List[Tuple[str, str]] = field(default_factory=list)
    missing: List[str] = field(default_factory=list)
    legacy_configured: List[str] = field(default_factory=list)
    legacy_missing: List[str] = field(default_factory=list)

    @property
    def is_complete(self) -> bool:
        return not self.missing


def audit_price_configuration(env: Optional[Mapping[str, str]] = None) -> PriceConfigReport:
    """Check every market/plan/interval and token package price variable."""

    env_mapping = os.environ if env is None else env
    report = PriceConfigReport()

    expected: List[str] = []
    for market in Market:
        for plan in PLAN_CATALOG.values():
            if not plan.is_paid:
                continue
            for interval in plan.billing_intervals:
                expected.append(plan_price_variable(plan.key, market, interval))
        for tokens in TOKEN_PACKAGES:
            expected.append(token_package_price_variable(tokens, market))

    for name in expected:
        value = _lookup(env_mapping, name)
        if value:
            report.configured.append((name, value))
        else:
            report.missing.append(name)

    legacy = [legacy_plan_price_variable(plan.key) for plan in PLAN_CATALOG.values() if plan.is_paid]
    legacy.extend(legacy_token_package_price_variable(tokens) for tokens in TOKEN_PACKAGES)
    for name in legacy:
        if _lookup(env_mapping, name):
            report.legacy_configured.append(name)
        else:
            report.legacy_missing.append(name)
    return report


__all__ = [
    "PriceConfigReport",
    "PriceResolution",
    "PriceSource",
    "audit_price_configuration",
    "resolve_plan_price",
    "resolve_token_package_price",
]
