"""Webhook processing: authenticate, deduplicate, and apply payment provider events."""
from __future__ import annotations

import logging
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Mapping, Optional, Protocol

from ..entitlements.catalog import monthly_allotment
from ..entitlements.models import (
    BillingInterval,
    PlanKey,
    SubscriptionStatus,
    interval_from_provider,
    status_from_provider,
)
from .events import (
    InvoicePaid,
    InvoicePaymentFailed,
    ProviderEvent,
    ProviderEventKind,
    SubscriptionCheckoutCompleted,
    SubscriptionDeleted,
    SubscriptionUpdated,
    TokenPurchaseCompleted,
    parse_provider_event,
)
from .exceptions import BillingError, ProviderError, WebhookSignatureError
from .ledger import TokenLedger, checkout_dedupe_key
from .models import (
    LedgerReason,
    PlanChange,
    PlanChangeKind,
    Subscription,
    WebhookEventRecord,
    WebhookEventStatus,
    utcnow,
)
from .provider import PaymentProvider, ProviderSubscription, construct_event
from .subscriptions import (
    SubscriptionRepository,
    apply_checkout,
    apply_due_pending_change,
    is_current_subscription,
    locate_subscription,
    reset_to_free,
    with_status,
)

logger = logging.getLogger("billing.webhooks")


class WebhookEventRepository(Protocol):
    """Idempotency ledger for inbound provider events."""

    def is_processed(self, event_id: str) -> bool:
        """Return ``True`` only when a previous attempt finished successfully."""

    def get(self, event_id: str) -> Optional[WebhookEventRecord]:
        ...

    def mark_outcome(
        self,
        event_id: str,
        event_type: str,
        payload: Mapping[str, object],
        status: WebhookEventStatus,
        error_message: Optional[str] = None,
    ) -> WebhookEventRecord:
        ...


class WebhookOutcome(str, Enum):
    PROCESSED = "processed"
    ALREADY_PROCESSED = "already_processed"
    INVALID_SIGNATURE = "invalid_signature"
    FAILED = "failed"

    @property
    def http_status(self) -> int:
        if self is WebhookOutcome.INVALID_SIGNATURE:
            return 400
        if self is WebhookOutcome.FAILED:
            return 500
        return 200


class WebhookProcessor:
    """Applies provider events to subscriptions and the token ledger exactly once per event id."""

    def __init__(
        self,
        *,
        events: WebhookEventRepository,
        subscriptions: SubscriptionRepository,
        ledger: TokenLedger,
        provider: PaymentProvider,
        webhook_secret: Optional[str] = None,
        signature_tolerance_seconds: int = 300,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.events = events
        self.subscriptions = subscriptions
        self.ledger = ledger
        self.provider = provider
        self.webhook_secret = webhook_secret
        self.signature_tolerance_seconds = signature_tolerance_seconds
        self._clock = clock or utcnow
        self._handlers: Dict[ProviderEventKind, Callable[[Any], None]] = {
            ProviderEventKind.TOKEN_PURCHASE_COMPLETED: self._handle_token_purchase,
            ProviderEventKind.SUBSCRIPTION_CHECKOUT_COMPLETED: self._handle_subscription_checkout,
            ProviderEventKind.INVOICE_PAID: self._handle_invoice_paid,
            ProviderEventKind.INVOICE_PAYMENT_FAILED: self._handle_invoice_payment_failed,
            ProviderEventKind.SUBSCRIPTION_UPDATED: self._handle_subscription_updated,
            ProviderEventKind.SUBSCRIPTION_DELETED: self._handle_subscription_deleted,
            ProviderEventKind.UNKNOWN: self._handle_unknown,
        }

    @property
    def handled_kinds(self) -> frozenset:
        return frozenset(self._handlers)

    def process(self, payload: bytes, signature: Optional[str]) -> WebhookOutcome:
        """Verify the raw request body and run the event it carries."""

        try:
            raw = construct_event(
                payload,
                signature,
                self.webhook_secret,
                tolerance=self.signature_tolerance_seconds,
            )
        except WebhookSignatureError as exc:
            logger.warning("Rejected webhook: %s", exc)
            return WebhookOutcome.INVALID_SIGNATURE
        return self.handle_event(raw)

    def handle_event(self, raw: Mapping[str, Any]) -> WebhookOutcome:
        """Run an authenticated event body through the idempotency gate and its handler."""

        event_id = str(raw.get("id") or "")
        event_type = str(raw.get("type") or "")
        context = {"event_id": event_id, "event_type": event_type}
        if not event_id:
            logger.error("Webhook payload without an event id (type=%s)", event_type, extra=context)
            return WebhookOutcome.FAILED

        if self.events.is_processed(event_id):
            logger.info("Event %s already processed", event_id, extra=context)
            return WebhookOutcome.ALREADY_PROCESSED

        try:
            event = parse_provider_event(raw)
            self._dispatch(event)
        except Exception as exc:
            logger.exception("Failed to process event %s (%s)", event_id, event_type, extra=context)
            self.events.mark_outcome(
                event_id,
                event_type,
                raw,
                WebhookEventStatus.FAILED,
                error_message=str(exc) or exc.__class__.__name__,
            )
            return WebhookOutcome.FAILED

        self.events.mark_outcome(event_id, event_type, raw, WebhookEventStatus.PROCESSED)
        logger.info("Processed event %s (%s)", event_id, event_type, extra=context)
        return WebhookOutcome.PROCESSED

    def _dispatch(self, event: ProviderEvent) -> None:
        handler = self._handlers.get(event.kind)
        if handler is None:
            raise BillingError(f"No handler registered for {event.kind.value}")
        handler(event)

    def _retrieve_period(self, provider_subscription_id: Optional[str]) -> Optional[ProviderSubscription]:
        if not provider_subscription_id:
            return None
        return self.provider.retrieve_subscription(provider_subscription_id)

    def _locate_current(self, event, *, action: str) -> Optional[Subscription]:
        if not event.provider_subscription_id:
            logger.info(
                "Ignoring %s without a subscription reference",
                action,
                extra={"event_id": event.event_id, "event_type": event.event_type},
            )
            return None
        subscription = locate_subscription(
            self.subscriptions,
            provider_customer_id=event.provider_customer_id,
            provider_subscription_id=event.provider_subscription_id,
        )
        context = {
            "event_id": event.event_id,
            "event_type": event.event_type,
            "provider_subscription_id": event.provider_subscription_id,
        }
        if subscription is None:
            logger.warning(
                "No subscription found for %s (customer=%s subscription=%s)",
                action,
                event.provider_customer_id,
                event.provider_subscription_id,
                extra=context,
            )
            return None
        if not is_current_subscription(subscription, event.provider_subscription_id):
            logger.warning(
                "Ignoring %s for superseded subscription %s; user %s is on %s",
                action,
                event.provider_subscription_id,
                subscription.user_id,
                subscription.provider_subscription_id,
                extra={**context, "user_id": subscription.user_id},
            )
            return None
        return subscription

    def _handle_token_purchase(self, event: TokenPurchaseCompleted) -> None:
        result = self.ledger.adjust(
            event.user_id,
            event.token_amount,
            LedgerReason.PURCHASE,
            {"sessionId": event.session_id, "eventId": event.event_id},
            dedupe_key=checkout_dedupe_key(event.session_id),
        )
        if not result.success:
            raise BillingError(f"Token purchase for user {event.user_id} was rejected: {result.error}")

    def _handle_subscription_checkout(self, event: SubscriptionCheckoutCompleted) -> None:
        now = self._clock()
        current = self.subscriptions.get(event.user_id)
        remote = self._retrieve_period(event.provider_subscription_id)

        interval = event.billing_interval
        if interval is None and remote is not None:
            interval = interval_from_provider(remote.interval)
        if interval is None:
            interval = current.billing_interval if current is not None else BillingInterval.MONTHLY

        updated, kind = apply_checkout(
            current,
            user_id=event.user_id,
            plan_id=event.plan_id,
            provider_subscription_id=event.provider_subscription_id,
            provider_customer_id=event.provider_customer_id,
            billing_interval=interval,
            period_start=remote.current_period_start if remote else None,
            period_end=remote.current_period_end if remote else None,
            now=now,
        )
        change = PlanChange(
            kind=kind,
            previous_plan=current.plan_id if current else PlanKey.FREE,
            requested_plan=event.plan_id,
        )

        if kind == PlanChangeKind.UPGRADE:
            # Grant before the save: a replay after a lost save re-classifies as
            # an upgrade and the checkout dedupe key absorbs the second grant.
            allotment = monthly_allotment(event.plan_id)
            result = self.ledger.adjust(
                event.user_id,
                allotment,
                LedgerReason.PLAN_UPGRADE,
                {
                    "sessionId": event.session_id,
                    "eventId": event.event_id,
                    "previousPlan": change.previous_plan.value,
                    "planId": event.plan_id.value,
                },
                dedupe_key=checkout_dedupe_key(event.session_id),
            )
            if not result.success:
                raise BillingError(f"Upgrade grant for user {event.user_id} was rejected: {result.error}")
            change = change.model_copy(update={"tokens_granted": 0 if result.duplicate else allotment})

        self.subscriptions.save(updated, expected_version=current.version if current else None)

        previous_id = current.provider_subscription_id if current else None
        if previous_id and previous_id != event.provider_subscription_id:
            self._cancel_superseded(previous_id, user_id=event.user_id)

        logger.info(
            "Applied %s for user %s (%s -> %s, granted=%s)",
            change.kind.value,
            event.user_id,
            change.previous_plan.value,
            change.requested_plan.value,
            change.tokens_granted,
            extra={"event_id": event.event_id, "user_id": event.user_id},
        )

    def _cancel_superseded(self, provider_subscription_id: str, *, user_id: str) -> None:
        try:
            self.provider.cancel_subscription(provider_subscription_id)
        except ProviderError:
            logger.warning(
                "Could not cancel superseded subscription %s for user %s",
                provider_subscription_id,
                user_id,
                exc_info=True,
                extra={"user_id": user_id, "provider_subscription_id": provider_subscription_id},
            )

    def _handle_invoice_paid(self, event: InvoicePaid) -> None:
        subscription = self._locate_current(event, action="invoice paid")
        if subscription is None:
            return
        now = self._clock()
        remote = self._retrieve_period(event.provider_subscription_id)

        reset_due = event.is_renewal and subscription.billing_interval == BillingInterval.MONTHLY
        updated = subscription
        replaced_plan = None
        if reset_due:
            updated, replaced_plan = apply_due_pending_change(updated, now)
        updated = with_status(
            updated,
            SubscriptionStatus.ACTIVE,
            now,
            current_period_start=remote.current_period_start if remote else None,
            current_period_end=remote.current_period_end if remote else None,
        )
        if reset_due:
            updated = updated.model_copy(
                update={"last_reset_invoice_id": event.invoice_id, "last_token_reset_at": now}
            )
        saved = self.subscriptions.save(updated, expected_version=subscription.version)

        if not reset_due:
            logger.info(
                "Invoice %s for user %s refreshed period only (interval=%s reason=%s)",
                event.invoice_id,
                saved.user_id,
                saved.billing_interval.value,
                event.billing_reason,
                extra={"event_id": event.event_id, "user_id": saved.user_id, "invoice_id": event.invoice_id},
            )
            return

        metadata = {"eventId": event.event_id}
        if replaced_plan is not None:
            metadata["previousPlan"] = replaced_plan.value
        self.ledger.reset_for_invoice(
            saved.user_id,
            event.invoice_id,
            saved.plan_id,
            LedgerReason.MONTHLY_RESET,
            metadata,
        )

    def _handle_invoice_payment_failed(self, event: InvoicePaymentFailed) -> None:
        subscription = self._locate_current(event, action="invoice payment failure")
        if subscription is None:
            return
        updated = with_status(subscription, SubscriptionStatus.PAST_DUE, self._clock())
        self.subscriptions.save(updated, expected_version=subscription.version)
        logger.warning(
            "Payment failed for user %s invoice %s",
            subscription.user_id,
            event.invoice_id,
            extra={"event_id": event.event_id, "user_id": subscription.user_id, "invoice_id": event.invoice_id},
        )

    def _handle_subscription_updated(self, event: SubscriptionUpdated) -> None:
        subscription = self._locate_current(event, action="subscription update")
        if subscription is None:
            return
        status = status_from_provider(event.status)
        updated = with_status(
            subscription,
            status,
            self._clock(),
            current_period_end=event.current_period_end,
        )
        self.subscriptions.save(updated, expected_version=subscription.version)
        logger.info(
            "Subscription %s for user %s is now %s",
            event.provider_subscription_id,
            subscription.user_id,
            status.value,
            extra={"event_id": event.event_id, "user_id": subscription.user_id},
        )

    def _handle_subscription_deleted(self, event: SubscriptionDeleted) -> None:
        subscription = self._locate_current(event, action="subscription deletion")
        if subscription is None:
            return
        updated = reset_to_free(subscription, self._clock())
        self.subscriptions.save(updated, expected_version=subscription.version)
        logger.info(
            "Subscription %s deleted; user %s moved to the free plan",
            event.provider_subscription_id,
            subscription.user_id,
            extra={"event_id": event.event_id, "user_id": subscription.user_id},
        )

    def _handle_unknown(self, event) -> None:
        logger.debug("Ignoring unhandled event type %s", event.event_type, extra={"event_id": event.event_id})


__all__ = [
    "WebhookEventRepository",
    "WebhookOutcome",
    "WebhookProcessor",
]
