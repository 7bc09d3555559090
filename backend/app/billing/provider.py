"""Payment provider integration backed by Stripe."""
from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any, Dict, Mapping, Optional, Protocol

import stripe
from pydantic import BaseModel, ConfigDict

from .events import from_timestamp
from .exceptions import ProviderError, WebhookSignatureError

logger = logging.getLogger("billing.provider")


class ProviderSubscription(BaseModel):
    """The subset of a provider subscription the reconciler consumes."""

    subscription_id: str
    customer_id: Optional[str] = None
    status: Optional[str] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    interval: Optional[str] = None

    model_config = ConfigDict(frozen=True)


class PaymentProvider(Protocol):
    """Outbound calls made while applying provider events."""

    def retrieve_subscription(self, provider_subscription_id: str) -> Optional[ProviderSubscription]:
        ...

    def cancel_subscription(self, provider_subscription_id: str) -> None:
        """Cancel a superseded subscription upstream; raises :class:`ProviderError` on failure."""


def construct_event(
    payload: bytes,
    signature: Optional[str],
    secret: Optional[str],
    *,
    tolerance: int = stripe.Webhook.DEFAULT_TOLERANCE,
) -> Dict[str, Any]:
    """Authenticate a webhook body and decode it into a plain mapping."""

    if not secret:
        raise WebhookSignatureError("Webhook signing secret is not configured")
    if not signature:
        raise WebhookSignatureError("Missing webhook signature header")
    try:
        text = payload.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise WebhookSignatureError("Webhook body is not valid UTF-8") from exc
    try:
        stripe.WebhookSignature.verify_header(text, signature, secret, tolerance)
    except stripe.SignatureVerificationError as exc:
        raise WebhookSignatureError("Webhook signature verification failed") from exc
    try:
        decoded = json.loads(text)
    except json.JSONDecodeError as exc:
        raise WebhookSignatureError("Webhook body is not valid JSON") from exc
    if not isinstance(decoded, dict):
        raise WebhookSignatureError("Webhook body is not a JSON object")
    return decoded


def _field(obj: Any, key: str) -> Any:
    if obj is None:
        return None
    if isinstance(obj, Mapping):
        return obj.get(key)
    return getattr(obj, key, None)


def _reference(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, str):
        return value or None
    return _field(value, "id")


def subscription_from_provider(obj: Any) -> ProviderSubscription:
    """Normalise a provider subscription object, reading period bounds from items when needed."""

    first_item = None
    items = _field(_field(obj, "items"), "data") if isinstance(obj, Mapping) else None
    if items:
        first_item = items[0]

    period_start = _field(obj, "current_period_start")
    period_end = _field(obj, "current_period_end")
    if period_start is None and first_item is not None:
        period_start = _field(first_item, "current_period_start")
    if period_end is None and first_item is not None:
        period_end = _field(first_item, "current_period_end")

    interval = None
    if first_item is not None:
        recurring = _field(_field(first_item, "price"), "recurring")
        interval = _field(recurring, "interval")

    return ProviderSubscription(
        subscription_id=str(_field(obj, "id")),
        customer_id=_reference(_field(obj, "customer")),
        status=_field(obj, "status"),
        current_period_start=from_timestamp(period_start),
        current_period_end=from_timestamp(period_end),
        interval=interval,
    )


class StripePaymentProvider:
    """:class:`PaymentProvider` speaking to the Stripe API with a bounded timeout."""

    def __init__(
        self,
        api_key: str,
        *,
        timeout_seconds: float = 10.0,
        client: Optional[stripe.StripeClient] = None,
    ) -> None:
        if client is None:
            client = stripe.StripeClient(
                api_key,
                http_client=stripe.RequestsClient(timeout=timeout_seconds),
            )
        self._client = client

    def retrieve_subscription(self, provider_subscription_id: str) -> Optional[ProviderSubscription]:
        try:
            subscription = self._client.subscriptions.retrieve(provider_subscription_id)
        except stripe.InvalidRequestError as exc:
            if getattr(exc, "http_status", None) == 404:
                logger.warning("Provider subscription %s not found", provider_subscription_id)
                return None
            raise ProviderError(f"Failed to retrieve subscription {provider_subscription_id}") from exc
        except stripe.StripeError as exc:
            raise ProviderError(f"Failed to retrieve subscription {provider_subscription_id}") from exc
        return subscription_from_provider(subscription)

    def cancel_subscription(self, provider_subscription_id: str) -> None:
        try:
            self._client.subscriptions.cancel(provider_subscription_id)
        except stripe.StripeError as exc:
            raise ProviderError(f"Failed to cancel subscription {provider_subscription_id}") from exc
        logger.info(
            "Canceled superseded provider subscription %s",
            provider_subscription_id,
            extra={"provider_subscription_id": provider_subscription_id},
        )


class LocalSandboxPaymentProvider:
    """Provider used when no Stripe key is configured; performs no outbound calls."""

    def retrieve_subscription(self, provider_subscription_id: str) -> Optional[ProviderSubscription]:
        logger.debug("Sandbox provider cannot retrieve subscription %s", provider_subscription_id)
        return None

    def cancel_subscription(self, provider_subscription_id: str) -> None:
        logger.info("Sandbox provider skipping cancel of %s", provider_subscription_id)


__all__ = [
    "LocalSandboxPaymentProvider",
    "PaymentProvider",
    "ProviderSubscription",
    "StripePaymentProvider",
    "construct_event",
    "subscription_from_provider",
]
