"""Middleware components for the client portal API."""

from __future__ import annotations

from api.middleware.auth import AuthenticationMiddleware
from api.middleware.logging import RequestLoggingMiddleware
from api.middleware.prometheus import PrometheusMiddleware

__all__ = [
    "AuthenticationMiddleware",
    "PrometheusMiddleware",
    "RequestLoggingMiddleware",
]
