"""API routes for payment provider webhooks and the token reset sweep."""
from __future__ import annotations

import hmac
from typing import Optional

from fastapi import APIRouter, Header, HTTPException, Request, Response, status
from fastapi.concurrency import run_in_threadpool

from ..schemas.billing import ReconciliationSummaryResponse
from ..services.billing import (
    get_billing_config,
    get_reconciliation_sweeper,
    get_webhook_processor,
)

router = APIRouter(prefix="/api", tags=["billing"])


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def _require_cron_secret(authorization: Optional[str]) -> None:
    expected = get_billing_config().cron_secret
    provided = _bearer_token(authorization)
    if not expected or not provided or not hmac.compare_digest(provided.encode(), expected.encode()):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")


@router.post("/stripe/webhook")
async def receive_stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
) -> Response:
    payload = await request.body()
    processor = get_webhook_processor()
    outcome = await run_in_threadpool(processor.process, payload, stripe_signature)
    return Response(status_code=outcome.http_status)


@router.api_route(
    "/cron/monthly-token-reset",
    methods=["GET", "POST"],
    response_model=ReconciliationSummaryResponse,
)
def run_monthly_token_reset(
    authorization: Optional[str] = Header(None),
) -> ReconciliationSummaryResponse:
    _require_cron_secret(authorization)
    summary = get_reconciliation_sweeper().run()
    return ReconciliationSummaryResponse.from_summary(summary)


__all__ = ["router"]
