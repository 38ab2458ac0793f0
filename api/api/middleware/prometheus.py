"""Prometheus metrics for the client portal API.

HTTP traffic is recorded as RED metrics (Rate, Errors, Duration).  The
domain counters below are incremented by the services that own them:
notification fan-out, entitlement denials, the reminder sweep, the orphan
sweep and the job scheduler.

Path normalisation collapses path parameters (e.g. ``/portals/ab12...`` ->
``/portals/{id}``) to prevent unbounded label cardinality.
"""

from __future__ import annotations

import logging
import re
import time

from prometheus_client import Counter, Histogram
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger(__name__)

HTTP_REQUESTS_TOTAL = Counter(
    "clientportal_http_requests_total",
    "Total HTTP requests by method, path, and status code",
    ["method", "path", "status_code"],
)

HTTP_REQUEST_DURATION = Histogram(
    "clientportal_http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

NOTIFICATIONS_CREATED_TOTAL = Counter(
    "clientportal_notifications_created_total",
    "Notification rows created by notification type",
    ["type"],
)

ENTITLEMENT_DENIALS_TOTAL = Counter(
    "clientportal_entitlement_denials_total",
    "Plan-limit denials by gated action",
    ["action"],
)

REMINDER_SWEEP_TOTAL = Counter(
    "clientportal_deadline_reminders_total",
    "Deadline reminder sweep outcomes per portal",
    ["outcome"],
)

ORPHAN_NOTIFICATIONS_DELETED_TOTAL = Counter(
    "clientportal_orphan_notifications_deleted_total",
    "Notifications deleted because their linked update no longer exists",
)

JOB_RUNS_TOTAL = Counter(
    "clientportal_job_runs_total",
    "Scheduled job runs by job and status",
    ["job", "status"],
)


# ---------------------------------------------------------------------------
# Path normalisation: collapse UUIDs, hex IDs, and numeric segments
# ---------------------------------------------------------------------------

_PATH_PARAM_PATTERNS = [
    # UUIDs (8-4-4-4-12 hex format)
    (re.compile(r"/[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}"), "/{id}"),
    # Row ids are 32-char hex
    (re.compile(r"/[0-9a-f]{12,64}"), "/{id}"),
    (re.compile(r"/\d+"), "/{id}"),
]


def _normalise_path(path: str) -> str:
    """Collapse path parameters to prevent cardinality explosion."""
    for pattern, replacement in _PATH_PARAM_PATTERNS:
        path = pattern.sub(replacement, path)
    return path


_SKIP_PATHS: frozenset[str] = frozenset({"/metrics", "/docs", "/redoc", "/openapi.json", "/favicon.ico"})


class PrometheusMiddleware(BaseHTTPMiddleware):
    """Record HTTP request rate, error rate, and latency as Prometheus metrics."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        path = request.url.path
        if path in _SKIP_PATHS:
            return await call_next(request)

        method = request.method
        normalised = _normalise_path(path)

        start = time.monotonic()
        response = await call_next(request)
        duration = time.monotonic() - start

        HTTP_REQUESTS_TOTAL.labels(
            method=method,
            path=normalised,
            status_code=str(response.status_code),
        ).inc()
        HTTP_REQUEST_DURATION.labels(method=method, path=normalised).observe(duration)

        return response
