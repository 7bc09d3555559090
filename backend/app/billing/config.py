"""Billing configuration helpers."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Optional
import os


@dataclass(frozen=True)
class BillingConfig:
    """Secrets and tunables for webhook processing and the token reset sweep."""

    stripe_secret_key: Optional[str]
    webhook_secret: Optional[str]
    cron_secret: Optional[str]
    provider_timeout_seconds: float
    signature_tolerance_seconds: int
    scheduler_enabled: bool
    scheduler_hour_utc: int


def _to_bool(value: Optional[str], *, default: bool) -> bool:
    if value is None:
        return default
    lowered = value.strip().lower()
    if lowered in {"1", "true", "yes", "on"}:
        return True
    if lowered in {"0", "false", "no", "off"}:
        return False
    return default


def _to_int(key: str, value: Optional[str], *, default: int) -> int:
    if value is None or value.strip() == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{key}: expected integer value, got {value!r}") from exc


def _to_float(key: str, value: Optional[str], *, default: float) -> float:
    if value is None or value.strip() == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{key}: expected float value, got {value!r}") from exc


def _secret(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    return value.strip() or None


def load_billing_config(env: Optional[Mapping[str, str]] = None) -> BillingConfig:
    """Load :class:`BillingConfig` from environment variables."""

    env_mapping = os.environ if env is None else env

    timeout = _to_float(
        "STRIPE_CANCEL_TIMEOUT_SECONDS",
        env_mapping.get("STRIPE_CANCEL_TIMEOUT_SECONDS"),
        default=10.0,
    )
    tolerance = _to_int(
        "STRIPE_WEBHOOK_TOLERANCE_SECONDS",
        env_mapping.get("STRIPE_WEBHOOK_TOLERANCE_SECONDS"),
        default=300,
    )
    hour = _to_int("TOKEN_RESET_HOUR_UTC", env_mapping.get("TOKEN_RESET_HOUR_UTC"), default=3)
    if not 0 <= hour <= 23:
        raise ValueError(f"TOKEN_RESET_HOUR_UTC: expected an hour between 0 and 23, got {hour}")

    return BillingConfig(
        stripe_secret_key=_secret(env_mapping.get("STRIPE_SECRET_KEY")),
        webhook_secret=_secret(env_mapping.get("STRIPE_WEBHOOK_SECRET")),
        cron_secret=_secret(env_mapping.get("CRON_SECRET")),
        provider_timeout_seconds=max(0.1, timeout),
        signature_tolerance_seconds=max(0, tolerance),
        scheduler_enabled=_to_bool(env_mapping.get("TOKEN_RESET_SCHEDULER_ENABLED"), default=False),
        scheduler_hour_utc=hour,
    )


__all__ = ["BillingConfig", "load_billing_config"]
