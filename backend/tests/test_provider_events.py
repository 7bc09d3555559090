"""Tests for provider event parsing and webhook signature verification."""
from __future__ import annotations

import hashlib
import hmac
import json
import time
from datetime import datetime, timezone

import pytest

from backend.app.billing import InvalidEventMetadataError, ProviderEventKind, WebhookSignatureError, parse_provider_event
from backend.app.billing.events import from_timestamp
from backend.app.billing.provider import construct_event, subscription_from_provider
from backend.app.entitlements.models import BillingInterval, Market, PlanKey


def _event(event_type: str, obj: dict, event_id: str = "evt_1") -> dict:
    return {"id": event_id, "type": event_type, "data": {"object": obj}}


def test_payment_mode_checkout_is_token_purchase():
    event = parse_provider_event(
        _event(
            "checkout.session.completed",
            {"id": "cs_1", "mode": "payment", "customer": "cus_1", "metadata": {"userId": "u1", "tokenAmount": "600"}},
        )
    )

    assert event.kind == ProviderEventKind.TOKEN_PURCHASE_COMPLETED
    assert event.user_id == "u1"
    assert event.token_amount == 600
    assert event.session_id == "cs_1"


@pytest.mark.parametrize("amount", [None, "0", "-5", "lots"])
def test_token_purchase_requires_positive_amount(amount):
    metadata = {"userId": "u1", "purchaseType": "token_package"}
    if amount is not None:
        metadata["tokenAmount"] = amount

    with pytest.raises(InvalidEventMetadataError):
        parse_provider_event(_event("checkout.session.completed", {"id": "cs_1", "metadata": metadata}))


def test_subscription_checkout_accepts_target_plan_and_market():
    event = parse_provider_event(
        _event(
            "checkout.session.completed",
            {
                "id": "cs_2",
                "mode": "subscription",
                "customer": {"id": "cus_9"},
                "subscription": "sub_9",
                "metadata": {"userId": "u9", "targetPlanId": "TIER2", "market": "es", "billingInterval": "annual"},
            },
        )
    )

    assert event.kind == ProviderEventKind.SUBSCRIPTION_CHECKOUT_COMPLETED
    assert event.plan_id == PlanKey.TIER2
    assert event.provider_customer_id == "cus_9"
    assert event.provider_subscription_id == "sub_9"
    assert event.billing_interval == BillingInterval.ANNUAL
    assert event.market == Market.ES


def test_subscription_checkout_missing_fields_is_rejected():
    with pytest.raises(InvalidEventMetadataError, match="subscription"):
        parse_provider_event(
            _event(
                "checkout.session.completed",
                {"id": "cs_3", "mode": "subscription", "customer": "cus_1", "metadata": {"userId": "u1", "planId": "tier1"}},
            )
        )


def test_subscription_checkout_unknown_plan_is_rejected():
    with pytest.raises(InvalidEventMetadataError):
        parse_provider_event(
            _event(
                "checkout.session.completed",
                {
                    "id": "cs_4",
                    "customer": "cus_1",
                    "subscription": "sub_1",
                    "metadata": {"userId": "u1", "planId": "platinum"},
                },
            )
        )


def test_invoice_subscription_read_from_parent_details():
    event = parse_provider_event(
        _event(
            "invoice.paid",
            {
                "id": "in_1",
                "customer": "cus_1",
                "billing_reason": "subscription_cycle",
                "parent": {"subscription_details": {"subscription": "sub_parent"}},
            },
        )
    )

    assert event.kind == ProviderEventKind.INVOICE_PAID
    assert event.provider_subscription_id == "sub_parent"
    assert event.is_renewal


def test_payment_failed_event():
    event = parse_provider_event(
        _event("invoice.payment_failed", {"id": "in_2", "customer": "cus_1", "subscription": "sub_1"})
    )
    assert event.kind == ProviderEventKind.INVOICE_PAYMENT_FAILED
    assert event.invoice_id == "in_2"


def test_subscription_updated_reads_period_end_from_items():
    event = parse_provider_event(
        _event(
            "customer.subscription.updated",
            {
                "id": "sub_1",
                "customer": "cus_1",
                "status": "active",
                "items": {"data": [{"current_period_end": 1743465600}]},
            },
        )
    )

    assert event.kind == ProviderEventKind.SUBSCRIPTION_UPDATED
    assert event.current_period_end == datetime(2025, 4, 1, tzinfo=timezone.utc)


def test_subscription_deleted_event():
    event = parse_provider_event(_event("customer.subscription.deleted", {"id": "sub_1", "customer": "cus_1"}))
    assert event.kind == ProviderEventKind.SUBSCRIPTION_DELETED
    assert event.provider_subscription_id == "sub_1"


def test_unrecognised_type_is_unknown():
    event = parse_provider_event(_event("charge.refunded", {"id": "ch_1"}))
    assert event.kind == ProviderEventKind.UNKNOWN


def test_missing_event_id_is_rejected():
    with pytest.raises(InvalidEventMetadataError):
        parse_provider_event({"type": "invoice.paid", "data": {"object": {}}})


def test_from_timestamp_variants():
    expected = datetime(2025, 4, 1, tzinfo=timezone.utc)
    assert from_timestamp(1743465600) == expected
    assert from_timestamp("1743465600") == expected
    assert from_timestamp("2025-04-01T00:00:00Z") == expected
    assert from_timestamp(None) is None


def test_subscription_from_provider_uses_item_periods_and_interval():
    remote = subscription_from_provider(
        {
            "id": "sub_1",
            "customer": "cus_1",
            "status": "active",
            "items": {
                "data": [
                    {
                        "current_period_start": 1740787200,
                        "current_period_end": 1743465600,
                        "price": {"recurring": {"interval": "year"}},
                    }
                ]
            },
        }
    )

    assert remote.subscription_id == "sub_1"
    assert remote.customer_id == "cus_1"
    assert remote.current_period_start == datetime(2025, 3, 1, tzinfo=timezone.utc)
    assert remote.current_period_end == datetime(2025, 4, 1, tzinfo=timezone.utc)
    assert remote.interval == "year"


def _signature(payload: bytes, secret: str, timestamp: int) -> str:
    signed = f"{timestamp}.{payload.decode('utf-8')}".encode("utf-8")
    return f"t={timestamp},v1={hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()}"


def test_construct_event_verifies_signature():
    payload = json.dumps({"id": "evt_1", "type": "invoice.paid"}).encode("utf-8")
    header = _signature(payload, "whsec_1", int(time.time()))

    assert construct_event(payload, header, "whsec_1")["id"] == "evt_1"


@pytest.mark.parametrize(
    "secret,header_secret,age",
    [
        (None, "whsec_1", 0),
        ("whsec_1", "whsec_2", 0),
        ("whsec_1", "whsec_1", 3600),
    ],
)
def test_construct_event_rejects_bad_signatures(secret, header_secret, age):
    payload = b'{"id": "evt_1"}'
    header = _signature(payload, header_secret, int(time.time()) - age)

    with pytest.raises(WebhookSignatureError):
        construct_event(payload, header, secret, tolerance=300)


def test_construct_event_requires_header():
    with pytest.raises(WebhookSignatureError):
        construct_event(b"{}", None, "whsec_1")
