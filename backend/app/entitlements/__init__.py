"""Plan catalog, markets, and price resolution."""

from .catalog import (
    PLAN_CATALOG,
    TOKEN_PACKAGES,
    PlanDefinition,
    TokenPackage,
    get_plan_definition,
    get_token_package,
    monthly_allotment,
    plan_rank,
)
from .models import (
    DEFAULT_MARKET,
    BillingInterval,
    Market,
    PlanKey,
    SubscriptionStatus,
    interval_from_provider,
    normalize_market,
    status_from_provider,
)
from .prices import (
    PriceConfigReport,
    PriceResolution,
    PriceSource,
    audit_price_configuration,
    resolve_plan_price,
    resolve_token_package_price,
)

__all__ = [
    "PLAN_CATALOG",
    "TOKEN_PACKAGES",
    "DEFAULT_MARKET",
    "BillingInterval",
    "Market",
    "PlanDefinition",
    "PlanKey",
    "PriceConfigReport",
    "PriceResolution",
    "PriceSource",
    "SubscriptionStatus",
    "TokenPackage",
    "audit_price_configuration",
    "get_plan_definition",
    "get_token_package",
    "interval_from_provider",
    "monthly_allotment",
    "normalize_market",
    "plan_rank",
    "resolve_plan_price",
    "resolve_token_package_price",
    "status_from_provider",
]
