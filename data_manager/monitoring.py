# data_manager/monitoring.py
"""
Logging, Prometheus metrics and error reporting for the data manager.

All three are configured from the environment when this module is imported:

- LOG_LEVEL, LOG_AS_JSON control the ``data-manager`` logger. JSON lines carry
  ``timestamp``, ``level``, ``logger`` and any ``extra=`` fields the store and
  the request handlers attach (``entry_id``, ``db_path``, ``path``).
- PROMETHEUS_ENABLED toggles the ``/metrics`` scrape endpoint; counters are
  still updated when it is off.
- SENTRY_DSN, ENVIRONMENT enable Sentry, tagged with the package release.
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

from data_manager import __version__

LOGGER_NAME = "data-manager"
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


PROMETHEUS_ENABLED = _flag("PROMETHEUS_ENABLED", "true")
LOG_AS_JSON = _flag("LOG_AS_JSON", "true")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
SENTRY_DSN = os.getenv("SENTRY_DSN", "")
ENVIRONMENT = os.getenv("ENVIRONMENT", "development")


def setup_logger() -> logging.Logger:
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(LOG_LEVEL)
    if not logger.handlers:
        handler = logging.StreamHandler()
        if LOG_AS_JSON:
            handler.setFormatter(jsonlogger.JsonFormatter(
                LOG_FORMAT,
                rename_fields={"asctime": "timestamp", "levelname": "level", "name": "logger"},
            ))
        else:
            handler.setFormatter(logging.Formatter(LOG_FORMAT.replace(" %(message)s", ": %(message)s")))
        logger.addHandler(handler)
    return logger


logger = setup_logger()

if SENTRY_DSN:
    sentry_sdk.init(dsn=SENTRY_DSN, environment=ENVIRONMENT, release=f"data-manager@{__version__}")
    logger.info("Sentry initialized", extra={"environment": ENVIRONMENT})


# --- Prometheus metrics
REQUEST_COUNT = Counter(
    "datamgr_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status"],
)

REQUEST_LATENCY = Histogram(
    "datamgr_request_latency_seconds",
    "Request latency in seconds",
    ["endpoint"],
)

STORE_OPERATIONS = Counter(
    "datamgr_store_operations_total",
    "Record store operations",
    ["op", "outcome"],
)

PERSIST_LATENCY = Histogram(
    "datamgr_persist_latency_seconds",
    "Time spent rewriting the backing file",
)

RECORD_COUNT = Gauge(
    "datamgr_records",
    "Records currently held by the store",
)

AUTH_REJECTIONS = Counter(
    "datamgr_auth_rejections_total",
    "Requests rejected for a missing or invalid API key",
)

RATE_LIMITED = Counter(
    "datamgr_rate_limited_total",
    "Requests rejected by the rate limiter",
)


# --- Helper wrappers (never crash the app)
def observe_request(start_ts: float, endpoint: str, method: str, status: str):
    try:
        REQUEST_LATENCY.labels(endpoint=endpoint).observe(time.time() - start_ts)
        REQUEST_COUNT.labels(method=method, endpoint=endpoint, status=status).inc()
    except Exception:
        pass


def observe_persist(start_ts: float):
    try:
        PERSIST_LATENCY.observe(time.time() - start_ts)
    except Exception:
        pass


def inc_store_op(op: str, outcome: str):
    try:
        STORE_OPERATIONS.labels(op=op, outcome=outcome).inc()
    except Exception:
        pass


def set_record_count(n: int):
    try:
        RECORD_COUNT.set(n)
    except Exception:
        pass


def inc_auth_rejection():
    try:
        AUTH_REJECTIONS.inc()
    except Exception:
        pass


def inc_rate_limited():
    try:
        RATE_LIMITED.inc()
    except Exception:
        pass


def prometheus_metrics_response() -> Tuple[bytes, str]:
    """Return (body_bytes, content_type) for Prometheus scrape."""
    try:
        return generate_latest(REGISTRY), CONTENT_TYPE_LATEST
    except Exception:
        return b"", CONTENT_TYPE_LATEST
