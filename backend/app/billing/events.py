"""Typed representation of inbound payment provider events.

Each provider event type the system reacts to is parsed into exactly one of the
variants below; :data:`ProviderEvent` is the closed union that the webhook
processor dispatches on. Anything else becomes :class:`UnknownEvent`.
"""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict

from ..entitlements.models import BillingInterval, Market, PlanKey, normalize_market
from .exceptions import InvalidEventMetadataError


class ProviderEventKind(str, Enum):
    TOKEN_PURCHASE_COMPLETED = "token_purchase_completed"
    SUBSCRIPTION_CHECKOUT_COMPLETED = "subscription_checkout_completed"
    INVOICE_PAID = "invoice_paid"
    INVOICE_PAYMENT_FAILED = "invoice_payment_failed"
    SUBSCRIPTION_UPDATED = "subscription_updated"
    SUBSCRIPTION_DELETED = "subscription_deleted"
    UNKNOWN = "unknown"


CHECKOUT_COMPLETED = "checkout.session.completed"
INVOICE_PAID = "invoice.paid"
INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
SUBSCRIPTION_UPDATED = "customer.subscription.updated"
SUBSCRIPTION_DELETED = "customer.subscription.deleted"

RENEWAL_BILLING_REASON = "subscription_cycle"


class _EventBase(BaseModel):
    event_id: str
    event_type: str

    model_config = ConfigDict(frozen=True)


class TokenPurchaseCompleted(_EventBase):
    kind: ProviderEventKind = ProviderEventKind.TOKEN_PURCHASE_COMPLETED
    session_id: str
    user_id: str
    token_amount: int
    provider_customer_id: Optional[str] = None


class SubscriptionCheckoutCompleted(_EventBase):
    kind: ProviderEventKind = ProviderEventKind.SUBSCRIPTION_CHECKOUT_COMPLETED
    session_id: str
    user_id: str
    plan_id: PlanKey
    provider_subscription_id: str
    provider_customer_id: str
    billing_interval: Optional[BillingInterval] = None
    market: Optional[Market] = None


class InvoicePaid(_EventBase):
    kind: ProviderEventKind = ProviderEventKind.INVOICE_PAID
    invoice_id: str
    provider_subscription_id: Optional[str] = None
    provider_customer_id: Optional[str] = None
    billing_reason: Optional[str] = None

    @property
    def is_renewal(self) -> bool:
        return self.billing_reason == RENEWAL_BILLING_REASON


class InvoicePaymentFailed(_EventBase):
    kind: ProviderEventKind = ProviderEventKind.INVOICE_PAYMENT_FAILED
    invoice_id: str
    provider_subscription_id: Optional[str] = None
    provider_customer_id: Optional[str] = None


class SubscriptionUpdated(_EventBase):
    kind: ProviderEventKind = ProviderEventKind.SUBSCRIPTION_UPDATED
    provider_subscription_id: str
    provider_customer_id: Optional[str] = None
    status: str
    current_period_end: Optional[datetime] = None


class SubscriptionDeleted(_EventBase):
    kind: ProviderEventKind = ProviderEventKind.SUBSCRIPTION_DELETED
    provider_subscription_id: str
    provider_customer_id: Optional[str] = None


class UnknownEvent(_EventBase):
    kind: ProviderEventKind = ProviderEventKind.UNKNOWN


ProviderEvent = Union[
    TokenPurchaseCompleted,
    SubscriptionCheckoutCompleted,
    InvoicePaid,
    InvoicePaymentFailed,
    SubscriptionUpdated,
    SubscriptionDeleted,
    UnknownEvent,
]


def from_timestamp(value: object) -> Optional[datetime]:
    """Convert provider epoch seconds (or ISO strings) into aware datetimes."""

    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    if isinstance(value, str):
        if value.isdigit():
            return datetime.fromtimestamp(int(value), tz=timezone.utc)
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    raise TypeError("Unsupported timestamp value")


def _reference(value: object) -> Optional[str]:
    """Provider references arrive either as ids or as expanded objects."""

    if value is None:
        return None
    if isinstance(value, Mapping):
        value = value.get("id")
    text = str(value).strip() if value is not None else ""
    return text or None


def _metadata(obj: Mapping[str, Any]) -> Dict[str, str]:
    raw = obj.get("metadata") or {}
    if not isinstance(raw, Mapping):
        return {}
    return {str(k): str(v) for k, v in raw.items() if v is not None}


def _invoice_subscription_id(invoice: Mapping[str, Any]) -> Optional[str]:
    direct = _reference(invoice.get("subscription"))
    if direct:
        return direct
    parent = invoice.get("parent") or {}
    details = parent.get("subscription_details") if isinstance(parent, Mapping) else None
    if isinstance(details, Mapping):
        return _reference(details.get("subscription"))
    return None


def _subscription_period_end(subscription: Mapping[str, Any]) -> Optional[datetime]:
    if subscription.get("current_period_end") is not None:
        return from_timestamp(subscription.get("current_period_end"))
    items = (subscription.get("items") or {}).get("data") or []
    if items and isinstance(items[0], Mapping):
        return from_timestamp(items[0].get("current_period_end"))
    return None


def _parse_token_purchase(event_id: str, event_type: str, session: Mapping[str, Any]) -> TokenPurchaseCompleted:
    metadata = _metadata(session)
    user_id = metadata.get("userId")
    raw_amount = metadata.get("tokenAmount")
    if not user_id:
        raise InvalidEventMetadataError(f"Token purchase {session.get('id')} is missing userId metadata")
    try:
        token_amount = int(raw_amount) if raw_amount is not None else 0
    except ValueError as exc:
        raise InvalidEventMetadataError(
            f"Token purchase {session.get('id')} has non-numeric tokenAmount {raw_amount!r}"
        ) from exc
    if token_amount <= 0:
        raise InvalidEventMetadataError(
            f"Token purchase {session.get('id')} requires a positive tokenAmount"
        )
    return TokenPurchaseCompleted(
        event_id=event_id,
        event_type=event_type,
        session_id=str(session.get("id") or ""),
        user_id=user_id,
        token_amount=token_amount,
        provider_customer_id=_reference(session.get("customer")),
    )


def _parse_subscription_checkout(
    event_id: str, event_type: str, session: Mapping[str, Any]
) -> SubscriptionCheckoutCompleted:
    metadata = _metadata(session)
    user_id = metadata.get("userId")
    raw_plan = metadata.get("planId") or metadata.get("targetPlanId")
    subscription_id = _reference(session.get("subscription"))
    customer_id = _reference(session.get("customer"))
    missing = [
        name
        for name, value in (
            ("userId", user_id),
            ("planId", raw_plan),
            ("subscription", subscription_id),
            ("customer", customer_id),
        )
        if not value
    ]
    if missing:
        raise InvalidEventMetadataError(
            f"Subscription checkout {session.get('id')} is missing {', '.join(missing)}"
        )
    try:
        plan_id = PlanKey(str(raw_plan).strip().lower())
    except ValueError as exc:
        raise InvalidEventMetadataError(f"Unknown planId {raw_plan!r} in checkout metadata") from exc

    interval: Optional[BillingInterval] = None
    if metadata.get("billingInterval"):
        try:
            interval = BillingInterval(metadata["billingInterval"].strip().lower())
        except ValueError as exc:
            raise InvalidEventMetadataError(
                f"Unknown billingInterval {metadata['billingInterval']!r} in checkout metadata"
            ) from exc

    return SubscriptionCheckoutCompleted(
        event_id=event_id,
        event_type=event_type,
        session_id=str(session.get("id") or ""),
        user_id=user_id,
        plan_id=plan_id,
        provider_subscription_id=subscription_id,
        provider_customer_id=customer_id,
        billing_interval=interval,
        market=normalize_market(metadata["market"]) if metadata.get("market") else None,
    )


def parse_provider_event(raw: Mapping[str, Any]) -> ProviderEvent:
    """Parse a decoded provider event body into its typed variant.

    Raises :class:`InvalidEventMetadataError` when a recognised event lacks the
    correlation data needed to apply it.
    """

    event_id = str(raw.get("id") or "")
    event_type = str(raw.get("type") or "")
    if not event_id:
        raise InvalidEventMetadataError("Event id missing from provider payload")
    obj = (raw.get("data") or {}).get("object") or {}
    if not isinstance(obj, Mapping):
        raise InvalidEventMetadataError(f"Event {event_id} has no data object")

    if event_type == CHECKOUT_COMPLETED:
        metadata = _metadata(obj)
        if obj.get("mode") == "payment" or metadata.get("purchaseType") == "token_package":
            return _parse_token_purchase(event_id, event_type, obj)
        return _parse_subscription_checkout(event_id, event_type, obj)

    if event_type in {INVOICE_PAID, INVOICE_PAYMENT_SUCCEEDED}:
        return InvoicePaid(
            event_id=event_id,
            event_type=event_type,
            invoice_id=str(obj.get("id") or ""),
            provider_subscription_id=_invoice_subscription_id(obj),
            provider_customer_id=_reference(obj.get("customer")),
            billing_reason=obj.get("billing_reason"),
        )

    if event_type == INVOICE_PAYMENT_FAILED:
        return InvoicePaymentFailed(
            event_id=event_id,
            event_type=event_type,
            invoice_id=str(obj.get("id") or ""),
            provider_subscription_id=_invoice_subscription_id(obj),
            provider_customer_id=_reference(obj.get("customer")),
        )

    if event_type in {SUBSCRIPTION_UPDATED, SUBSCRIPTION_DELETED}:
        subscription_id = _reference(obj.get("id"))
        if not subscription_id:
            raise InvalidEventMetadataError(f"Event {event_id} has no subscription id")
        if event_type == SUBSCRIPTION_DELETED:
            return SubscriptionDeleted(
                event_id=event_id,
                event_type=event_type,
                provider_subscription_id=subscription_id,
                provider_customer_id=_reference(obj.get("customer")),
            )
        return SubscriptionUpdated(
            event_id=event_id,
            event_type=event_type,
            provider_subscription_id=subscription_id,
            provider_customer_id=_reference(obj.get("customer")),
            status=str(obj.get("status") or ""),
            current_period_end=_subscription_period_end(obj),
        )

    return UnknownEvent(event_id=event_id, event_type=event_type)


__all__ = [
    "InvoicePaid",
    "InvoicePaymentFailed",
    "ProviderEvent",
    "ProviderEventKind",
    "SubscriptionCheckoutCompleted",
    "SubscriptionDeleted",
    "SubscriptionUpdated",
    "TokenPurchaseCompleted",
    "UnknownEvent",
    "from_timestamp",
    "parse_provider_event",
]
