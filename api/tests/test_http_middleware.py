"""Tests for the Prometheus and request-logging middleware.

Covers:
- Path normalisation (UUIDs, row ids, numeric segments)
- Request counters and skipped paths
- Access log payload: masking, correlation ids, caller identity
"""

from __future__ import annotations

import logging

import pytest

from api.middleware.prometheus import _normalise_path

# ---------------------------------------------------------------------------
# Path normalisation
# ---------------------------------------------------------------------------


class TestPathNormalisation:
    """Verify _normalise_path collapses path parameters."""

    def test_uuid_collapsed(self) -> None:
        path = "/api/v1/portals/550e8400-e29b-41d4-a716-446655440000"
        assert _normalise_path(path) == "/api/v1/portals/{id}"

    def test_row_id_collapsed(self) -> None:
        """Row ids are 32-char hex."""
        path = "/api/v1/updates/9f86d081884c7d659a2feaa0c55ad015/replies"
        assert _normalise_path(path) == "/api/v1/updates/{id}/replies"

    def test_numeric_segment_collapsed(self) -> None:
        assert _normalise_path("/api/v1/portals/42") == "/api/v1/portals/{id}"

    def test_static_paths_unchanged(self) -> None:
        assert _normalise_path("/api/v1/notifications/unread-count") == "/api/v1/notifications/unread-count"
        assert _normalise_path("/api/v1/plan-limits") == "/api/v1/plan-limits"
        assert _normalise_path("/") == "/"

    def test_short_hex_not_collapsed(self) -> None:
        assert _normalise_path("/api/v1/portals/abc123") == "/api/v1/portals/abc123"


# ---------------------------------------------------------------------------
# Middleware behaviour through the app
# ---------------------------------------------------------------------------


class TestPrometheusMiddleware:
    @pytest.mark.asyncio
    async def test_request_counted_with_normalised_path(self, client, metric) -> None:
        labels = {"method": "GET", "path": "/api/v1/health", "status_code": "200"}
        before = metric("clientportal_http_requests_total", labels)

        resp = await client.get("/api/v1/health")

        assert resp.status_code == 200
        assert metric("clientportal_http_requests_total", labels) == before + 1

    @pytest.mark.asyncio
    async def test_metrics_endpoint_not_counted(self, client, metric) -> None:
        labels = {"method": "GET", "path": "/metrics", "status_code": "200"}
        resp = await client.get("/metrics")
        assert resp.status_code == 200
        assert "clientportal_http_requests_total" in resp.text
        assert metric("clientportal_http_requests_total", labels) == 0.0


class TestRequestLoggingMiddleware:
    @pytest.mark.asyncio
    async def test_access_log_masks_credentials(self, client, caplog) -> None:
        with caplog.at_level(logging.INFO, logger="api.access"):
            resp = await client.get("/api/v1/health", headers={"X-Correlation-ID": "corr-123"})

        assert resp.headers["X-Correlation-ID"] == "corr-123"
        [record] = [r for r in caplog.records if r.name == "api.access"]
        payload = record.request  # type: ignore[attr-defined]
        assert payload["path"] == "/api/v1/health"
        assert payload["status_code"] == 200
        assert payload["correlation_id"] == "corr-123"
        assert payload["headers"]["authorization"] == "***"

    @pytest.mark.asyncio
    async def test_authenticated_caller_recorded(self, client, caplog) -> None:
        with caplog.at_level(logging.INFO, logger="api.access"):
            await client.get("/api/v1/notifications/unread-count")

        [record] = [r for r in caplog.records if r.name == "api.access"]
        assert record.request["user_id"] == "freelancer-1"  # type: ignore[attr-defined]
        assert record.request["role"] == "freelancer"  # type: ignore[attr-defined]

    @pytest.mark.asyncio
    async def test_client_errors_logged_as_warning(self, app, caplog) -> None:
        from httpx import ASGITransport, AsyncClient

        with caplog.at_level(logging.INFO, logger="api.access"):
            async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as anon:
                resp = await anon.get("/api/v1/portals")

        assert resp.status_code == 401
        [record] = [r for r in caplog.records if r.name == "api.access"]
        assert record.levelno == logging.WARNING
        assert record.request["user_id"] == "anonymous"  # type: ignore[attr-defined]
        assert record.request["correlation_id"]  # type: ignore[attr-defined]
