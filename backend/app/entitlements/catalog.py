"""Static catalog definitions for plans and token packages."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Tuple

from .models import BillingInterval, PlanKey


@dataclass(frozen=True)
class PlanDefinition:
    """Describes a subscription plan and its token entitlement."""

    key: PlanKey
    display_name: str
    price_name: str
    rank: int
    monthly_tokens: int
    billing_intervals: Tuple[BillingInterval, ...]

    @property
    def is_paid(self) -> bool:
        return self.rank > 0


@dataclass(frozen=True)
class TokenPackage:
    """A one-time purchasable bundle of tokens."""

    tokens: int
    display_price: int


PLAN_CATALOG: Dict[PlanKey, PlanDefinition] = {
    PlanKey.FREE: PlanDefinition(
        key=PlanKey.FREE,
        display_name="Free",
        price_name="free",
        rank=0,
        monthly_tokens=10,
        billing_intervals=(BillingInterval.MONTHLY,),
    ),
    PlanKey.TIER1: PlanDefinition(
        key=PlanKey.TIER1,
        display_name="Starter",
        price_name="starter",
        rank=1,
        monthly_tokens=100,
        billing_intervals=(BillingInterval.MONTHLY, BillingInterval.ANNUAL),
    ),
    PlanKey.TIER2: PlanDefinition(
        key=PlanKey.TIER2,
        display_name="Growth",
        price_name="growth",
        rank=2,
        monthly_tokens=300,
        billing_intervals=(BillingInterval.MONTHLY, BillingInterval.ANNUAL),
    ),
    PlanKey.TIER3: PlanDefinition(
        key=PlanKey.TIER3,
        display_name="Agency",
        price_name="agency",
        rank=3,
        monthly_tokens=1000,
        billing_intervals=(BillingInterval.MONTHLY, BillingInterval.ANNUAL),
    ),
}

TOKEN_PACKAGES: Dict[int, TokenPackage] = {
    100: TokenPackage(tokens=100, display_price=15),
    300: TokenPackage(tokens=300, display_price=39),
    600: TokenPackage(tokens=600, display_price=69),
    1200: TokenPackage(tokens=1200, display_price=129),
    3000: TokenPackage(tokens=3000, display_price=299),
    6000: TokenPackage(tokens=6000, display_price=549),
}


def get_plan_definition(plan_key: PlanKey) -> PlanDefinition:
    """Return a plan definition, raising if unsupported."""

    try:
        return PLAN_CATALOG[plan_key]
    except KeyError as exc:  # pragma: no cover - guarded by static catalog
        raise KeyError(f"Unknown plan key: {plan_key}") from exc


def plan_rank(plan_key: PlanKey) -> int:
    return get_plan_definition(plan_key).rank


def monthly_allotment(plan_key: PlanKey) -> int:
    return get_plan_definition(plan_key).monthly_tokens


def get_token_package(tokens: int) -> TokenPackage:
    """Return a token package definition, raising if unsupported."""

    try:
        return TOKEN_PACKAGES[int(tokens)]
    except (KeyError, TypeError, ValueError) as exc:
        raise KeyError(f"Unknown token package: {tokens}") from exc
