"""HTTP-level tests for the webhook and token reset endpoints."""
from __future__ import annotations

import hashlib
import hmac
import json
import time
from datetime import datetime, timedelta, timezone

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from backend.app.billing import (
    LocalSandboxPaymentProvider,
    ReconciliationSweeper,
    Subscription,
    TokenLedger,
    WebhookProcessor,
    load_billing_config,
)
from backend.app.billing.memory import (
    InMemorySubscriptionRepository,
    InMemoryTokenLedgerRepository,
    InMemoryWebhookEventRepository,
)
from backend.app.entitlements.models import BillingInterval, PlanKey
from backend.app.routes import billing as billing_routes

WEBHOOK_SECRET = "whsec_routes"
CRON_SECRET = "cron-routes-secret"


@pytest.fixture
def client_components(monkeypatch):
    subscriptions = InMemorySubscriptionRepository()
    ledger_repository = InMemoryTokenLedgerRepository(subscriptions)
    ledger = TokenLedger(ledger_repository)
    events = InMemoryWebhookEventRepository()
    processor = WebhookProcessor(
        events=events,
        subscriptions=subscriptions,
        ledger=ledger,
        provider=LocalSandboxPaymentProvider(),
        webhook_secret=WEBHOOK_SECRET,
    )
    sweeper = ReconciliationSweeper(subscriptions=subscriptions, ledger=ledger)
    config = load_billing_config({"STRIPE_WEBHOOK_SECRET": WEBHOOK_SECRET, "CRON_SECRET": CRON_SECRET})

    monkeypatch.setattr(billing_routes, "get_webhook_processor", lambda: processor)
    monkeypatch.setattr(billing_routes, "get_reconciliation_sweeper", lambda: sweeper)
    monkeypatch.setattr(billing_routes, "get_billing_config", lambda: config)

    app = FastAPI()
    app.include_router(billing_routes.router)
    client = TestClient(app)
    return client, subscriptions, ledger, events


def _signed(body: dict, secret: str = WEBHOOK_SECRET):
    payload = json.dumps(body).encode("utf-8")
    timestamp = int(time.time())
    digest = hmac.new(
        secret.encode("utf-8"),
        f"{timestamp}.{payload.decode('utf-8')}".encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()
    return payload, {"Stripe-Signature": f"t={timestamp},v1={digest}", "Content-Type": "application/json"}


def _purchase(event_id: str, amount: str = "100") -> dict:
    return {
        "id": event_id,
        "type": "checkout.session.completed",
        "data": {
            "object": {
                "id": f"cs_{event_id}",
                "mode": "payment",
                "metadata": {"userId": "user-1", "tokenAmount": amount},
            }
        },
    }


def test_webhook_with_valid_signature_returns_empty_200(client_components):
    client, _, ledger, _ = client_components
    payload, headers = _signed(_purchase("evt_1"))

    response = client.post("/api/stripe/webhook", content=payload, headers=headers)
    replay = client.post("/api/stripe/webhook", content=payload, headers=headers)

    assert response.status_code == 200
    assert response.content == b""
    assert replay.status_code == 200
    assert ledger.get_balance("user-1") == 100


def test_webhook_with_invalid_signature_returns_400(client_components):
    client, _, ledger, events = client_components
    payload, headers = _signed(_purchase("evt_1"), secret="whsec_other")

    response = client.post("/api/stripe/webhook", content=payload, headers=headers)
    unsigned = client.post("/api/stripe/webhook", content=payload)

    assert response.status_code == 400
    assert unsigned.status_code == 400
    assert ledger.get_balance("user-1") == 0
    assert events.records == {}


def test_webhook_handler_failure_returns_500(client_components):
    client, _, _, events = client_components
    payload, headers = _signed(_purchase("evt_bad", amount="0"))

    response = client.post("/api/stripe/webhook", content=payload, headers=headers)

    assert response.status_code == 500
    assert events.get("evt_bad").status.value == "failed"


def test_token_reset_requires_bearer_secret(client_components):
    client, _, _, _ = client_components

    assert client.get("/api/cron/monthly-token-reset").status_code == 401
    assert client.get(
        "/api/cron/monthly-token-reset", headers={"Authorization": "Bearer wrong"}
    ).status_code == 401
    assert client.post(
        "/api/cron/monthly-token-reset", headers={"Authorization": CRON_SECRET}
    ).status_code == 401


def test_token_reset_returns_summary(client_components):
    client, subscriptions, ledger, _ = client_components
    now = datetime.now(timezone.utc)
    subscriptions.save(
        Subscription(
            user_id="annual-user",
            plan_id=PlanKey.TIER1,
            billing_interval=BillingInterval.ANNUAL,
            provider_subscription_id="sub_annual",
            last_token_reset_at=now - timedelta(days=32),
            next_token_reset_at=now - timedelta(days=1),
        ),
        expected_version=None,
    )

    response = client.post(
        "/api/cron/monthly-token-reset",
        headers={"Authorization": f"Bearer {CRON_SECRET}"},
    )
    second = client.get(
        "/api/cron/monthly-token-reset",
        headers={"Authorization": f"Bearer {CRON_SECRET}"},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["processed"] == 1
    assert body["succeeded"] == 1
    assert body["failed"] == 0
    assert body["errors"] == []
    assert second.json()["processed"] == 0
    assert ledger.get_balance("annual-user") == 100


def test_token_reset_denied_when_secret_unset(client_components, monkeypatch):
    client, _, _, _ = client_components
    monkeypatch.setattr(billing_routes, "get_billing_config", lambda: load_billing_config({}))

    response = client.get("/api/cron/monthly-token-reset", headers={"Authorization": "Bearer "})

    assert response.status_code == 401
