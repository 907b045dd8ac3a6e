"""FastAPI application for invoice batch submission.

Extraction runs in the arq worker; the API only queues uploads and reads the
progress snapshots the worker writes to Redis:

- Health and readiness checks for Kubernetes
- Batch submission and polling
- Synchronous ingestion of SAF-T QR codes (no extraction call)
- Prometheus metrics for monitoring

Based on FastAPI best practices:
https://fastapi.tiangolo.com/
"""

import json
import logging
import time
import uuid
from typing import Any

from arq import ArqRedis, create_pool
from arq.connections import RedisSettings
from fastapi import FastAPI, File, HTTPException, Request, Response, UploadFile, status
from pydantic import BaseModel, Field

from fiscal_ingest.ingestion.files import (
    RejectedFile,
    UploadedFile,
    check_size,
    over_limit,
    validate_document,
)
from fiscal_ingest.ingestion.pipeline import IngestResult, ingest_qr
from fiscal_ingest.queue.tasks import BatchJobResult
from fiscal_ingest.shared import metrics
from fiscal_ingest.shared.config import get_settings
from fiscal_ingest.shared.errors import MalformedInputError
from fiscal_ingest.shared.logging_setup import configure_logging

logger = logging.getLogger(__name__)

settings = get_settings()
configure_logging(settings)
app = FastAPI(
    title="Fiscal Ingest",
    description="Invoice ingestion and VAT reconciliation API",
    version=settings.service_version,
)

_arq_pool: ArqRedis | None = None


async def get_arq_pool() -> ArqRedis:
    """Return the shared arq Redis pool, connecting on first use."""
    global _arq_pool
    if _arq_pool is None:
        _arq_pool = await create_pool(RedisSettings.from_dsn(settings.redis_url))
    return _arq_pool


@app.middleware("http")
async def metrics_middleware(request: Request, call_next):  # type: ignore[no-untyped-def]
    """Middleware to collect request metrics.

    Tracks:
    - Request count by method, endpoint, and status
    - Request duration by method and endpoint
    """
    # Skip metrics for /metrics endpoint itself
    if request.url.path == "/metrics":
        return await call_next(request)

    start_time = time.time()
    response = await call_next(request)
    duration = time.time() - start_time

    # Route template keeps batch ids out of the label set
    route = request.scope.get("route")
    endpoint = getattr(route, "path", request.url.path)

    metrics.http_requests_total.labels(
        method=request.method,
        endpoint=endpoint,
        status=response.status_code,
    ).inc()

    metrics.http_request_duration_seconds.labels(
        method=request.method,
        endpoint=endpoint,
    ).observe(duration)

    return response


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    service: str


class ReadinessResponse(BaseModel):
    """Readiness check response."""

    ready: bool


class BatchSubmitResponse(BaseModel):
    """Batch submission response."""

    batch_id: str
    status: str
    total: int
    rejected: list[RejectedFile] = []


class BatchStatusResponse(BaseModel):
    """Batch summary plus the latest snapshot of every accepted item.

    Items the worker has not reported yet are omitted.
    """

    batch: BatchJobResult
    items: list[dict[str, Any]] = []


class QrRequest(BaseModel):
    """Raw content of a fiscal QR code."""

    content: str = Field(..., min_length=1, description="QR code text, e.g. A:...*B:...*")


async def _screen_uploads(
    files: list[UploadFile],
) -> tuple[list[dict[str, Any]], list[RejectedFile]]:
    """Check count and size caps before any file is read into memory.

    Files past ``batch_max_items`` are never read; a file whose declared size
    is over the ceiling is never read, and other files are read at most one
    byte past it.
    """
    accepted: list[dict[str, Any]] = []
    rejected: list[RejectedFile] = []

    for upload in files[: settings.batch_max_items]:
        filename = upload.filename or "documento"
        try:
            if upload.size is not None:
                check_size(filename, upload.size, settings)
            content = await upload.read(settings.max_file_size_bytes + 1)
            validate_document(
                UploadedFile(
                    filename=filename, content=content, declared_media_type=upload.content_type
                ),
                settings,
            )
        except MalformedInputError as e:
            rejected.append(RejectedFile(filename=filename, reason=e.message))
            continue
        accepted.append(
            {"filename": filename, "content": content, "content_type": upload.content_type}
        )

    for upload in files[settings.batch_max_items :]:
        rejected.append(over_limit(upload.filename or "documento", settings))

    return accepted, rejected


def _require_queue() -> None:
    if not settings.queue_enabled:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Batch queue is not enabled",
        )


@app.get("/health", response_model=HealthResponse, tags=["Health"])
def health_check() -> HealthResponse:
    """Health check endpoint for liveness probe.

    Returns:
        Health status information
    """
    return HealthResponse(
        status="healthy", version=settings.service_version, service=settings.service_name
    )


@app.get("/ready", response_model=ReadinessResponse, tags=["Health"])
def readiness_check() -> ReadinessResponse:
    """Readiness check endpoint for Kubernetes readiness probe."""
    return ReadinessResponse(ready=True)


@app.get("/metrics", tags=["Monitoring"])
def get_metrics() -> Response:
    """Prometheus metrics endpoint.

    Returns:
        Prometheus metrics in text format
    """
    metrics_data, content_type = metrics.get_metrics()
    return Response(content=metrics_data, media_type=content_type)


@app.post("/api/v1/batches", response_model=BatchSubmitResponse, tags=["Batches"])
async def submit_batch(
    files: list[UploadFile] = File(..., description="Invoice files (PDF or image)"),  # noqa: B008
) -> BatchSubmitResponse:
    """Queue a batch of invoices for background ingestion.

    Refused files are listed under ``rejected`` in the response and in the
    batch summary; only accepted files are queued. Poll
    ``GET /api/v1/batches/{batch_id}`` for progress.

    Raises:
        HTTPException: 503 if the queue is disabled; 422 if no file is accepted
    """
    _require_queue()

    uploads, rejected = await _screen_uploads(files)
    if not uploads:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=[r.model_dump() for r in rejected],
        )
    batch_id = str(uuid.uuid4())

    pool = await get_arq_pool()
    await pool.enqueue_job(
        "process_invoice_batch",
        batch_id,
        uploads,
        [r.model_dump() for r in rejected],
        _job_id=batch_id,
    )
    metrics.batches_submitted_total.inc()
    logger.info(
        f"Queued batch {batch_id} with {len(uploads)} file(s), {len(rejected)} rejected on upload"
    )

    return BatchSubmitResponse(
        batch_id=batch_id, status="queued", total=len(files), rejected=rejected
    )


@app.get("/api/v1/batches/{batch_id}", response_model=BatchStatusResponse, tags=["Batches"])
async def get_batch_status(batch_id: str) -> BatchStatusResponse:
    """Get the progress of a batch.

    Raises:
        HTTPException: 404 if the worker has not picked the batch up yet or
            its snapshots expired; 503 if the queue is disabled
    """
    _require_queue()

    pool = await get_arq_pool()
    raw = await pool.get(f"batch:{batch_id}")
    if raw is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Batch not found")

    batch = BatchJobResult.model_validate_json(raw)
    items: list[dict[str, Any]] = []
    if batch.item_ids:
        snapshots = await pool.mget([f"batch:{batch_id}:{i}" for i in batch.item_ids])
        items = [json.loads(snapshot) for snapshot in snapshots if snapshot is not None]
    return BatchStatusResponse(batch=batch, items=items)


@app.post("/api/v1/documents/qr", response_model=IngestResult, tags=["Documents"])
def ingest_qr_code(request: QrRequest) -> IngestResult:
    """Build a reconciled record from QR code content.

    The record is returned for review and is not stored. An unreadable or
    incomplete code, or one with an invalid supplier NIF, yields
    ``success: false`` with ``error_code`` set.
    """
    return ingest_qr(request.content)
