"""Middleware module initialization."""

from bulkdata.middleware.prometheus import PrometheusMiddleware, StructuredLoggingMiddleware
from bulkdata.middleware.request_id import RequestIdMiddleware

__all__ = [
    "PrometheusMiddleware",
    "RequestIdMiddleware",
    "StructuredLoggingMiddleware",
]
