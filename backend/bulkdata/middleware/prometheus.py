"""
Prometheus Metrics Middleware
Collects metrics on HTTP requests, responses, and export job activity
"""

import time
import json
from typing import Callable
from datetime import datetime, timezone
import logging
import uuid

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from prometheus_client import Counter, Histogram
from prometheus_client import CollectorRegistry

# Create a global registry for metrics
metrics_registry = CollectorRegistry()

# HTTP Metrics
http_requests_total = Counter(
    'http_requests_total',
    'Total HTTP requests',
    ['method', 'endpoint', 'status'],
    registry=metrics_registry
)

http_request_duration_seconds = Histogram(
    'http_request_duration_seconds',
    'HTTP request duration in seconds',
    ['method', 'endpoint'],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.075, 0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0),
    registry=metrics_registry
)

# Error Metrics
errors_total = Counter(
    'errors_total',
    'Total errors by type',
    ['error_type', 'endpoint'],
    registry=metrics_registry
)

# Export Metrics
export_jobs_total = Counter(
    'export_jobs_total',
    'Export jobs by lifecycle event',
    ['event'],
    registry=metrics_registry
)

export_build_duration_seconds = Histogram(
    'export_build_duration_seconds',
    'Time spent building export manifests',
    ['outcome'],
    registry=metrics_registry
)

export_files_total = Counter(
    'export_files_total',
    'Manifest file entries generated',
    ['kind'],
    registry=metrics_registry
)

export_records_streamed_total = Counter(
    'export_records_streamed_total',
    'Records produced by the resource stream',
    registry=metrics_registry
)


def _endpoint_label(request: Request) -> str:
    # Route templates keep job ids and sim capsules out of the label values
    route = request.scope.get("route")
    return getattr(route, "path", None) or request.url.path


class PrometheusMiddleware(BaseHTTPMiddleware):
    """
    Middleware to collect Prometheus metrics for HTTP requests
    """

    # Endpoints to skip (health checks, metrics endpoint, etc)
    SKIP_ENDPOINTS = ['/health', '/metrics', '/docs', '/openapi.json', '/redoc']

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        """
        Process request and collect metrics
        """
        # Skip metrics collection for certain endpoints
        if any(request.url.path.startswith(skip) for skip in self.SKIP_ENDPOINTS):
            return await call_next(request)

        start_time = time.time()
        method = request.method

        try:
            response = await call_next(request)
        except Exception as exc:
            endpoint = _endpoint_label(request)
            errors_total.labels(
                error_type=type(exc).__name__,
                endpoint=endpoint
            ).inc()
            http_request_duration_seconds.labels(
                method=method,
                endpoint=endpoint
            ).observe(time.time() - start_time)
            raise

        duration = time.time() - start_time
        endpoint = _endpoint_label(request)

        http_requests_total.labels(
            method=method,
            endpoint=endpoint,
            status=response.status_code
        ).inc()

        http_request_duration_seconds.labels(
            method=method,
            endpoint=endpoint
        ).observe(duration)

        response.headers["X-Response-Time"] = str(duration)
        return response


class StructuredLoggingMiddleware(BaseHTTPMiddleware):
    """
    Middleware for structured JSON logging with correlation IDs
    """

    def __init__(self, app, logger: logging.Logger):
        super().__init__(app)
        self.logger = logger

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        """
        Log request/response in structured JSON format
        """
        correlation_id = (
            getattr(request.state, "request_id", None)
            or request.headers.get('X-Correlation-ID')
            or str(uuid.uuid4())
        )
        request.state.correlation_id = correlation_id

        start_time = time.time()

        self.logger.info(json.dumps({
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "correlation_id": correlation_id,
            "event": "http_request_start",
            "method": request.method,
            "path": request.url.path,
            "query_params": dict(request.query_params) if request.query_params else {},
            "client_ip": request.client.host if request.client else None,
        }))

        try:
            response = await call_next(request)
        except Exception as exc:
            self.logger.error(json.dumps({
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "correlation_id": correlation_id,
                "event": "http_request_error",
                "method": request.method,
                "path": request.url.path,
                "error_type": type(exc).__name__,
                "error_message": str(exc),
            }))
            raise

        self.logger.info(json.dumps({
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "correlation_id": correlation_id,
            "event": "http_request_complete",
            "method": request.method,
            "path": request.url.path,
            "status_code": response.status_code,
            "duration_seconds": time.time() - start_time,
        }))

        response.headers["X-Correlation-ID"] = correlation_id
        return response


# Metric update functions for application events

def record_export_event(event: str) -> None:
    """Record an export job lifecycle event (started, completed, cancelled, ...)"""
    export_jobs_total.labels(event=event).inc()


def record_export_build(outcome: str, duration: float) -> None:
    """Record a finished background build"""
    export_build_duration_seconds.labels(outcome=outcome).observe(duration)


def record_export_file(kind: str) -> None:
    """Record a manifest entry (output, error or deleted)"""
    export_files_total.labels(kind=kind).inc()


def record_records_streamed(count: int = 1) -> None:
    export_records_streamed_total.inc(count)
