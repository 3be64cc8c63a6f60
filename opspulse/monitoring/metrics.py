"""Prometheus metrics definitions for OpsPulse."""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

SYNC_RUNS = Counter(
    "opspulse_sync_runs_total",
    "Total connector sync runs by vendor, sync type and terminal status.",
    labelnames=("vendor", "sync_type", "status"),
)

SYNC_DURATION = Histogram(
    "opspulse_sync_duration_seconds",
    "Distribution of connector sync run durations in seconds.",
    labelnames=("vendor",),
    buckets=(0.5, 1, 2, 5, 10, 30, 60, 120, 300, 600, 1800),
)

SYNC_CONFLICTS = Counter(
    "opspulse_sync_conflicts_total",
    "Sync requests rejected because the connection already had a run in progress.",
    labelnames=("vendor",),
)

ACTIVE_SYNCS = Gauge(
    "opspulse_active_syncs",
    "Number of connector syncs currently running in this process.",
    labelnames=("vendor",),
)

RECORDS_UPSERTED = Counter(
    "opspulse_records_upserted_total",
    "Canonical records written by entity type and outcome (created/updated).",
    labelnames=("entity_type", "outcome"),
)

RECORDS_SKIPPED = Counter(
    "opspulse_records_skipped_total",
    "Vendor records skipped because they failed normalization.",
    labelnames=("entity_type",),
)

TOKEN_REFRESHES = Counter(
    "opspulse_token_refreshes_total",
    "OAuth access token refresh attempts by vendor and outcome.",
    labelnames=("vendor", "outcome"),
)

PULSE_CACHE_REQUESTS = Counter(
    "opspulse_pulse_cache_requests_total",
    "Pulse cache lookups by result (hit/miss/error).",
    labelnames=("result",),
)

PULSE_WARMUP_ENTRIES = Counter(
    "opspulse_pulse_warmup_entries_total",
    "Pulse cache warm-up outcomes per (tenant, range) combination.",
    labelnames=("outcome",),
)

METRIC_CALCULATION_DURATION = Histogram(
    "opspulse_metric_calculation_seconds",
    "Distribution of metric calculation durations in seconds.",
    labelnames=("metric_key",),
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10),
)


def record_sync_run(vendor: str, sync_type: str, status: str, duration_seconds: float) -> None:
    """Record the terminal outcome and duration of a sync run."""

    SYNC_RUNS.labels(vendor=vendor, sync_type=sync_type, status=status).inc()
    SYNC_DURATION.labels(vendor=vendor).observe(max(duration_seconds, 0.0))


def record_sync_conflict(vendor: str) -> None:
    SYNC_CONFLICTS.labels(vendor=vendor).inc()


def record_upserts(entity_type: str, created: int, updated: int) -> None:
    """Increment canonical upsert counters for a page of records."""

    if created:
        RECORDS_UPSERTED.labels(entity_type=entity_type, outcome="created").inc(created)
    if updated:
        RECORDS_UPSERTED.labels(entity_type=entity_type, outcome="updated").inc(updated)


def record_skipped(entity_type: str) -> None:
    RECORDS_SKIPPED.labels(entity_type=entity_type).inc()


def record_token_refresh(vendor: str, outcome: str) -> None:
    TOKEN_REFRESHES.labels(vendor=vendor, outcome=outcome).inc()


def record_cache_lookup(result: str) -> None:
    PULSE_CACHE_REQUESTS.labels(result=result).inc()


def record_warmup_entry(outcome: str) -> None:
    PULSE_WARMUP_ENTRIES.labels(outcome=outcome).inc()


def observe_metric_calculation(metric_key: str, duration_seconds: float) -> None:
    METRIC_CALCULATION_DURATION.labels(metric_key=metric_key).observe(max(duration_seconds, 0.0))
