"""Prometheus metrics and Sentry integration for sync passes.

Provides:
- track_sync_pass(): Context manager recording pass count and duration
- record_pass_counts(): Item and conflict counters for a finished pass
- record_ai_resolution(): AI adjudication outcome counter
- init_sentry(): Initialize Sentry with installation-aware before_send callback
- get_metrics_response(): Prometheus exposition response for /metrics
"""

from __future__ import annotations

import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

from prometheus_client import REGISTRY, Counter, Gauge, Histogram, generate_latest
from starlette.responses import Response

# ── Sync Metrics ─────────────────────────────────────────────────────────────

sync_passes_total = Counter(
    "pm_sync_passes_total",
    "Total sync passes by final status",
    ["provider", "status"],
)

sync_pass_duration_seconds = Histogram(
    "pm_sync_pass_duration_seconds",
    "Sync pass duration in seconds",
    ["provider"],
    buckets=(0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0),
)

sync_items_total = Counter(
    "pm_sync_items_total",
    "Items imported or exported",
    ["provider", "direction"],
)

sync_conflicts_total = Counter(
    "pm_sync_conflicts_total",
    "Field conflicts by outcome",
    ["provider", "outcome"],
)

ai_resolutions_total = Counter(
    "pm_sync_ai_resolutions_total",
    "AI conflict adjudications by outcome",
    ["outcome"],
)

active_schedules = Gauge(
    "pm_sync_active_schedules",
    "Number of installations with a running sync ticker",
)


# ── Helpers ──────────────────────────────────────────────────────────────────


@asynccontextmanager
async def track_sync_pass(provider: str) -> AsyncGenerator[dict[str, Any], None]:
    """Context manager that tracks a sync pass.

    Usage:
        async with track_sync_pass("jira") as tracker:
            log = await do_pass()
            tracker["status"] = log.status.value

    The status defaults to "failed" if the body raises before setting it.
    """
    tracker: dict[str, Any] = {"status": "failed"}
    start_time = time.perf_counter()
    try:
        yield tracker
    finally:
        sync_passes_total.labels(provider=provider, status=tracker["status"]).inc()
        sync_pass_duration_seconds.labels(provider=provider).observe(
            time.perf_counter() - start_time
        )


def record_pass_counts(
    provider: str,
    imported: int,
    exported: int,
    conflicts_resolved: int,
    conflicts_unresolved: int,
) -> None:
    """Record item and conflict counters for a finished pass."""
    if imported:
        sync_items_total.labels(provider=provider, direction="import").inc(imported)
    if exported:
        sync_items_total.labels(provider=provider, direction="export").inc(exported)
    if conflicts_resolved:
        sync_conflicts_total.labels(provider=provider, outcome="resolved").inc(
            conflicts_resolved
        )
    if conflicts_unresolved:
        sync_conflicts_total.labels(provider=provider, outcome="unresolved").inc(
            conflicts_unresolved
        )


def record_ai_resolution(outcome: str) -> None:
    """Count one AI adjudication ("applied", "review" or "fallback")."""
    ai_resolutions_total.labels(outcome=outcome).inc()


# ── Sentry Integration ───────────────────────────────────────────────────────


def init_sentry(dsn: str, environment: str) -> None:
    """Initialize Sentry SDK with installation-aware event tagging.

    Args:
        dsn: Sentry DSN string.
        environment: Deployment environment (development, staging, production).
    """
    import sentry_sdk
    from sentry_sdk.integrations.fastapi import FastApiIntegration
    from sentry_sdk.integrations.starlette import StarletteIntegration

    traces_sample_rate = 0.1 if environment == "production" else 1.0

    def before_send(event: dict, hint: dict) -> dict:
        """Promote installation_id from structured log extras to a tag."""
        extra = event.get("extra") or {}
        installation_id = extra.get("installation_id")
        if installation_id:
            event.setdefault("tags", {})["installation_id"] = installation_id
        return event

    sentry_sdk.init(
        dsn=dsn,
        environment=environment,
        traces_sample_rate=traces_sample_rate,
        integrations=[
            StarletteIntegration(),
            FastApiIntegration(),
        ],
        before_send=before_send,
    )


# ── Metrics Endpoint ─────────────────────────────────────────────────────────


def get_metrics_response() -> Response:
    """Generate Prometheus exposition format response."""
    return Response(
        content=generate_latest(REGISTRY),
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )
