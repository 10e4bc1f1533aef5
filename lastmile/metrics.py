"""Prometheus metrics for the last-mile sync engine."""

import time

from prometheus_client import Counter, Gauge, Histogram, Info

# Application info
app_info = Info("lastmile", "Last-mile sync application info")
app_info.info({"version": "0.1.0", "name": "lastmile"})

# Marketplace API metrics
api_requests_total = Counter(
    "marketplace_api_requests_total",
    "Total number of marketplace API requests",
    ["method", "status"],
)

api_retries_total = Counter(
    "marketplace_api_retries_total",
    "Total number of marketplace API retries",
    ["reason"],
)

api_request_duration_seconds = Histogram(
    "marketplace_api_request_duration_seconds",
    "Time spent on marketplace API requests",
    ["method"],
    buckets=[0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0],
)

token_refreshes_total = Counter(
    "token_refreshes_total",
    "Total number of OAuth token refresh attempts",
    ["outcome"],
)

# Cache metrics
shipments_reconciled_total = Counter(
    "shipments_reconciled_total",
    "Total number of shipment cache reconciles",
    ["source"],
)

# Scan metrics
scans_total = Counter(
    "scans_total",
    "Total number of driver scans",
    ["outcome"],
)

resolver_lookups_total = Counter(
    "resolver_lookups_total",
    "Total number of account lookups made while resolving scanned codes",
    ["result"],
)

# Alert metrics
alerts_created_total = Counter(
    "alerts_created_total",
    "Total number of shipment alerts created",
    ["alert_type"],
)

alerts_repaired_total = Counter(
    "alerts_repaired_total",
    "Total number of alerts repaired by cleanup",
    ["category"],
)

# Job metrics
job_runs_total = Counter(
    "job_runs_total",
    "Total number of batch job runs",
    ["job_type", "status"],
)

job_items_total = Counter(
    "job_items_total",
    "Total number of items processed by batch jobs",
    ["job_type", "result"],
)

job_last_run_timestamp = Gauge(
    "job_last_run_timestamp",
    "Timestamp of last batch job run",
    ["job_type"],
)

accounts_needing_reconnect = Gauge(
    "accounts_needing_reconnect",
    "Number of marketplace accounts flagged for manual reconnection",
)


def record_api_request(method: str, status: str | int, duration: float) -> None:
    """Record a marketplace API request."""
    api_requests_total.labels(method=method, status=str(status)).inc()
    api_request_duration_seconds.labels(method=method).observe(duration)


def record_retry(reason: str) -> None:
    """Record a retried marketplace API request."""
    api_retries_total.labels(reason=reason).inc()


def record_token_refresh(outcome: str) -> None:
    """Record a token refresh attempt (success, superseded, needs_reconnect, transient)."""
    token_refreshes_total.labels(outcome=outcome).inc()


def record_scan(outcome: str) -> None:
    """Record a scan outcome."""
    scans_total.labels(outcome=outcome).inc()


def record_job_run(job_type: str, status: str, success: int = 0, errors: int = 0) -> None:
    """Record a batch job run with per-item counts."""
    job_runs_total.labels(job_type=job_type, status=status).inc()
    if success:
        job_items_total.labels(job_type=job_type, result="success").inc(success)
    if errors:
        job_items_total.labels(job_type=job_type, result="error").inc(errors)
    job_last_run_timestamp.labels(job_type=job_type).set(time.time())
