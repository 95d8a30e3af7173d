"""
Prometheus Metrics for Observability

Tracks transform latency, tile job outcomes and storage traffic.
Exposes /api/v1/metrics endpoint for Prometheus scraping.
"""

import time
from contextlib import contextmanager

from prometheus_client import (
    Counter,
    Histogram,
    Gauge,
    Info,
    generate_latest,
    CONTENT_TYPE_LATEST,
    REGISTRY
)

# =============================================================================
# Metrics Definitions
# =============================================================================

# Transform Latency - Per Operation
transform_latency_seconds = Histogram(
    "transform_latency_seconds",
    "Time spent running an image operation",
    labelnames=["operation", "status"],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0]
)

transforms_total = Counter(
    "imagery_transforms_total",
    "Total number of image transforms",
    labelnames=["operation", "status", "route"]
)

# Tile Jobs
tile_jobs_total = Counter(
    "tile_jobs_total",
    "Total number of tile pyramid jobs",
    labelnames=["status", "failure_stage"]
)

active_tile_jobs_gauge = Gauge(
    "tile_active_jobs",
    "Number of tile pyramid jobs currently running"
)

tile_job_duration_seconds = Histogram(
    "tile_job_duration_seconds",
    "Total time for a tile pyramid job",
    labelnames=["status"],
    buckets=[1.0, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0, 600.0, 1800.0]
)

tile_uploads_total = Counter(
    "tile_uploads_total",
    "Tile files uploaded by a tile pyramid job",
    labelnames=["status"]
)

# Storage Provider Calls
storage_operations_total = Counter(
    "storage_operations_total",
    "Storage provider calls",
    labelnames=["provider", "operation", "status"]
)

# API Request Metrics
http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "endpoint", "status"]
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration",
    labelnames=["method", "endpoint"],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0]
)

# Application Info
app_info = Info(
    "imagery_app",
    "Application information"
)


# =============================================================================
# Helper Functions
# =============================================================================

def set_app_info(version: str, environment: str):
    """Set application info metric."""
    app_info.info({
        "version": version,
        "environment": environment
    })


@contextmanager
def track_transform_latency(operation: str):
    """
    Context manager to track transform latency.

    Usage:
        with track_transform_latency("resize"):
            # do work
    """
    start = time.time()
    status = "success"
    try:
        yield
    except Exception:
        status = "error"
        raise
    finally:
        transform_latency_seconds.labels(operation=operation, status=status).observe(time.time() - start)


def record_transform(operation: str, status: str, route: str = "inline"):
    """Record a finished transform request."""
    transforms_total.labels(operation=operation, status=status, route=route).inc()


def record_job_started():
    active_tile_jobs_gauge.inc()


def record_job_completion(status: str, duration_seconds: float, failure_stage: str = "none"):
    """Record tile job completion."""
    tile_jobs_total.labels(status=status, failure_stage=failure_stage).inc()
    tile_job_duration_seconds.labels(status=status).observe(duration_seconds)
    active_tile_jobs_gauge.dec()


def record_tile_upload(status: str):
    tile_uploads_total.labels(status=status).inc()


def record_storage_call(provider: str, operation: str, status: str):
    storage_operations_total.labels(provider=provider, operation=operation, status=status).inc()


def get_metrics() -> bytes:
    """Generate Prometheus metrics output."""
    return generate_latest(REGISTRY)


def get_metrics_content_type() -> str:
    """Get the content type for Prometheus metrics."""
    return CONTENT_TYPE_LATEST
