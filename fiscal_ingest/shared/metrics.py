"""Prometheus metrics for the ingestion pipeline.

Exposes key metrics for monitoring:
- Request counts and duration by endpoint
- Extraction calls by pass and outcome
- Extraction call duration
- Reconciliation corrections by field
- Batch items by terminal status and confidence-gate withholds

Based on Prometheus best practices:
https://prometheus.io/docs/practices/naming/
"""

import logging

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    Counter,
    Histogram,
    generate_latest,
    start_http_server,
)

logger = logging.getLogger(__name__)

# Request metrics
http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=(0.01, 0.05, 0.1, 0.5, 1.0, 2.5, 5.0, 10.0),
)

batches_submitted_total = Counter(
    "batches_submitted_total",
    "Total batch submissions accepted by the API",
)

# Extraction metrics
extraction_requests_total = Counter(
    "extraction_requests_total",
    "Total extraction service calls",
    ["extraction_pass", "status"],  # status: success, failed, rate_limited, quota_exhausted
)

extraction_duration_seconds = Histogram(
    "extraction_duration_seconds",
    "Extraction service call duration in seconds",
    ["extraction_pass"],
    buckets=(0.5, 1.0, 2.5, 5.0, 10.0, 20.0, 40.0, 60.0),
)

# Reconciliation metrics
reconciliation_corrections_total = Counter(
    "reconciliation_corrections_total",
    "Total automatic VAT corrections applied",
    ["field"],
)

# Batch metrics
batch_items_total = Counter(
    "batch_items_total",
    "Total batch items by terminal status",
    ["status"],  # completed, error
)

batch_items_gated_total = Counter(
    "batch_items_gated_total",
    "Items completed but not saved because confidence was below the gate",
)


def start_metrics_server(port: int) -> None:
    """Expose the default registry over HTTP for Prometheus to scrape.

    Args:
        port: Listening port; 0 leaves the endpoint disabled
    """
    if port == 0:
        return
    start_http_server(port)
    logger.info(f"Metrics endpoint listening on :{port}")


def get_metrics() -> tuple[bytes, str]:
    """Get current metrics in Prometheus text format.

    Returns:
        Tuple of (metrics_data, content_type)
    """
    return generate_latest(), CONTENT_TYPE_LATEST
