import logging
import math
import os
from typing import Any, Dict

import psycopg2
from dotenv import load_dotenv
from fastapi import FastAPI

from backend import app_context
from backend.app.routes.billing import router as billing_router
from backend.reconciliation import (
    get_reconciliation_metrics,
    shutdown_reconciliation_scheduler,
    start_reconciliation_scheduler,
)

load_dotenv()

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)


def _parse_connect_timeout(raw_value: str) -> int:
    try:
        timeout = float(raw_value)
    except ValueError as exc:
        raise ValueError("DB_CONNECT_TIMEOUT must be a number") from exc
    if timeout < 0:
        raise ValueError("DB_CONNECT_TIMEOUT must be non-negative")
    return int(math.ceil(timeout))

DB_CFG = dict(
    host=os.getenv("DB_HOST", "127.0.0.1"),
    port=int(os.getenv("DB_PORT", "5432")),
    dbname=os.getenv("DB_NAME", "billing_db"),
    user=os.getenv("DB_USER", "billing_user"),
    password=os.getenv("DB_PASSWORD", "billing_pass"),
    connect_timeout=_parse_connect_timeout(os.getenv("DB_CONNECT_TIMEOUT", "5")),
)


def get_conn():
    return psycopg2.connect(**DB_CFG)


app_context.configure(get_conn=get_conn)

app = FastAPI(title="Token Billing Reconciler")

app.include_router(billing_router)


@app.on_event("startup")
def _start_reconciliation_scheduler() -> None:
    start_reconciliation_scheduler()


@app.on_event("shutdown")
def _shutdown_reconciliation_scheduler() -> None:
    shutdown_reconciliation_scheduler()


@app.get("/api/healthz")
def healthz():
    return {"ok": True}

@app.get("/api/metrics/token-resets")
def read_token_reset_metrics() -> Dict[str, Any]:
    return get_reconciliation_metrics()
