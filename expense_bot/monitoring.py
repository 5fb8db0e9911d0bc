# expense_bot/monitoring.py
"""
Centralized monitoring: Prometheus metrics, structured JSON logging, optional Sentry.

Env vars:
- PROMETHEUS_ENABLED (default: true)
- SENTRY_DSN (optional)
- LOG_AS_JSON (default: true)
- LOG_LEVEL (default: INFO)
- ENVIRONMENT (default: development)
"""

import os
import logging
import time
from typing import Tuple

import sentry_sdk
from pythonjsonlogger import jsonlogger
from prometheus_client import (
    Counter, Histogram, Gauge,
    generate_latest, CONTENT_TYPE_LATEST, REGISTRY,
)

# --- ENV flags
PROMETHEUS_ENABLED = os.getenv("PROMETHEUS_ENABLED", "true").lower() in ("1", "true", "yes")
SENTRY_DSN = os.getenv("SENTRY_DSN", None)
LOG_AS_JSON = os.getenv("LOG_AS_JSON", "true").lower() in ("1", "true", "yes")
ENVIRONMENT = os.getenv("ENVIRONMENT", "development")


# --- Logger setup
def setup_logger(name: str = "expense-bot", level: int = None) -> logging.Logger:
    level = logging.getLevelName(os.getenv("LOG_LEVEL", "INFO")) if level is None else level
    logger = logging.getLogger(name)
    logger.setLevel(level)
    if not logger.handlers:
        handler = logging.StreamHandler()
        if LOG_AS_JSON:
            fmt = jsonlogger.JsonFormatter(
                "%(asctime)s %(levelname)s %(name)s %(message)s"
            )
        else:
            fmt = logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")
        handler.setFormatter(fmt)
        logger.addHandler(handler)
    return logger


logger = setup_logger()

# --- Sentry (optional)
if SENTRY_DSN:
    sentry_sdk.init(dsn=SENTRY_DSN, environment=ENVIRONMENT)
    logger.info("Sentry initialized")


# --- Prometheus metrics
REQUEST_COUNT = Counter(
    "expense_http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status"],
)

REQUEST_LATENCY = Histogram(
    "expense_http_request_latency_seconds",
    "HTTP request latency in seconds",
    ["endpoint"],
)

EVENTS_HANDLED = Counter(
    "expense_events_total",
    "Slack events handled by the reconciliation engine",
    ["event", "outcome"],
)

LEDGER_CALLS = Counter(
    "expense_ledger_calls_total",
    "Spreadsheet ledger operations",
    ["operation", "outcome"],
)

LEDGER_LATENCY = Histogram(
    "expense_ledger_latency_seconds",
    "Spreadsheet ledger operation latency",
    ["operation"],
)

FOLDERS_CREATED = Counter(
    "expense_drive_folders_created_total",
    "Archive folders created in Drive",
)

RECEIPTS_ARCHIVED = Counter(
    "expense_receipts_archived_total",
    "Receipts uploaded to Drive",
)

CACHE_LOOKUPS = Counter(
    "expense_cache_lookups_total",
    "Request cache lookups",
    ["result"],
)

CACHE_SIZE = Gauge(
    "expense_cache_entries",
    "Entries currently held by the request cache",
)


# --- Helper wrappers (never crash the app)
def observe_request(start_ts: float, endpoint: str, method: str, status: str):
    try:
        REQUEST_LATENCY.labels(endpoint=endpoint).observe(time.time() - start_ts)
        REQUEST_COUNT.labels(method=method, endpoint=endpoint, status=status).inc()
    except Exception:
        pass


def observe_ledger_call(start_ts: float, operation: str, outcome: str):
    try:
        LEDGER_LATENCY.labels(operation=operation).observe(time.time() - start_ts)
        LEDGER_CALLS.labels(operation=operation, outcome=outcome).inc()
    except Exception:
        pass


def inc_event(event: str, outcome: str):
    try:
        EVENTS_HANDLED.labels(event=event, outcome=outcome).inc()
    except Exception:
        pass


def inc_folder_created():
    try:
        FOLDERS_CREATED.inc()
    except Exception:
        pass


def inc_receipt_archived():
    try:
        RECEIPTS_ARCHIVED.inc()
    except Exception:
        pass


def inc_cache_lookup(result: str):
    try:
        CACHE_LOOKUPS.labels(result=result).inc()
    except Exception:
        pass


def set_cache_size(n: int):
    try:
        CACHE_SIZE.set(n)
    except Exception:
        pass


def prometheus_metrics_response() -> Tuple[bytes, str]:
    """Return (body_bytes, content_type) for Prometheus scrape."""
    try:
        return generate_latest(REGISTRY), CONTENT_TYPE_LATEST
    except Exception:
        return b"", CONTENT_TYPE_LATEST
