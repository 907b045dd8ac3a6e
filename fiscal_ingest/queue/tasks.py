"""Async task definitions for batch invoice ingestion.

Uses arq (async Redis queue) for background task processing. A submission is
validated, run through the batch orchestrator, and every progress snapshot is
written to Redis so a UI can poll it.

Redis keys (24h TTL):
- ``batch:<batch_id>``: batch summary (BatchJobResult)
- ``batch:<batch_id>:<item_id>``: latest snapshot of one item

Based on arq documentation:
https://arq-docs.helpmanual.io/
"""

import logging
from datetime import datetime, timezone
from typing import Any

from arq.connections import RedisSettings
from pydantic import BaseModel

from fiscal_ingest.extraction.factory import create_extraction_provider
from fiscal_ingest.extraction.orchestrator import ExtractionOrchestrator
from fiscal_ingest.ingestion.files import RejectedFile, UploadedFile, validate_batch
from fiscal_ingest.ingestion.pipeline import IngestionPipeline
from fiscal_ingest.queue.batch import BatchOrchestrator, ItemStatus, QueueItem
from fiscal_ingest.shared.config import Settings, get_settings
from fiscal_ingest.storage.repository import InMemoryInvoiceRepository

logger = logging.getLogger(__name__)

SNAPSHOT_TTL_SECONDS = 86400


class BatchJobResult(BaseModel):
    """Summary of a background batch job.

    Attributes:
        batch_id: Submission identifier
        status: processing, completed or failed
        total: Files submitted
        completed: Items that reached the completed state
        failed: Items that ended in error
        saved: Items inserted into persistence
        rejected: Files refused before processing
        item_ids: Ids of the accepted items, in input order
        error: Job-level error, if the job itself failed
        created_at: Job start timestamp
        completed_at: Job end timestamp
    """

    batch_id: str
    status: str
    total: int
    completed: int = 0
    failed: int = 0
    saved: int = 0
    rejected: list[RejectedFile] = []
    item_ids: list[str] = []
    error: str | None = None
    created_at: str
    completed_at: str | None = None


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def build_batch_orchestrator(settings: Settings, repository: Any = None) -> BatchOrchestrator:
    """Wire provider, extraction orchestrator, pipeline and batch orchestrator."""
    provider = create_extraction_provider(settings)
    pipeline = IngestionPipeline(ExtractionOrchestrator(provider, settings))
    return BatchOrchestrator(pipeline, repository=repository, settings=settings)


async def process_invoice_batch(
    ctx: dict[str, Any],
    batch_id: str,
    files: list[dict[str, Any]],
    rejected: list[dict[str, Any]] | None = None,
) -> dict[str, Any]:
    """Ingest a batch of uploaded invoices.

    Args:
        ctx: arq context (contains redis connection)
        batch_id: Submission identifier
        files: Uploads as ``{"filename", "content", "content_type"}`` dicts
        rejected: Files the API already refused, as RejectedFile dicts; they
            count towards ``total`` and are listed first under ``rejected``

    Returns:
        BatchJobResult as dict
    """
    settings: Settings = ctx.get("settings") or get_settings()
    orchestrator: BatchOrchestrator = ctx.get("batch_orchestrator") or build_batch_orchestrator(
        settings, ctx.get("repository")
    )
    redis = ctx["redis"]

    uploads = [
        UploadedFile(
            filename=f.get("filename") or "documento",
            content=f.get("content") or b"",
            declared_media_type=f.get("content_type"),
        )
        for f in files
    ]
    refused = [RejectedFile.model_validate(r) for r in rejected or []]
    result = BatchJobResult(
        batch_id=batch_id,
        status="processing",
        total=len(uploads) + len(refused),
        rejected=refused,
        created_at=_now(),
    )
    await redis.set(f"batch:{batch_id}", result.model_dump_json(), ex=SNAPSHOT_TTL_SECONDS)
    logger.info(f"Processing batch {batch_id} with {result.total} file(s)")

    async def store_snapshot(item_id: str, item: QueueItem) -> None:
        await redis.set(
            f"batch:{batch_id}:{item_id}", item.model_dump_json(), ex=SNAPSHOT_TTL_SECONDS
        )

    try:
        documents, invalid = validate_batch(uploads, settings)
        result.rejected = refused + invalid
        items = [QueueItem.from_document(document) for document in documents]
        result.item_ids = [item.item_id for item in items]
        await redis.set(f"batch:{batch_id}", result.model_dump_json(), ex=SNAPSHOT_TTL_SECONDS)
        processed = await orchestrator.process_batch(items, on_progress=store_snapshot)

        result.completed = sum(1 for item in processed if item.status == ItemStatus.COMPLETED)
        result.failed = sum(1 for item in processed if item.status == ItemStatus.ERROR)
        result.saved = sum(1 for item in processed if item.saved)
        result.status = "completed"
    except Exception as e:
        logger.exception(f"Batch {batch_id} failed with error: {e}")
        result.status = "failed"
        result.error = str(e)

    result.completed_at = _now()
    await redis.set(f"batch:{batch_id}", result.model_dump_json(), ex=SNAPSHOT_TTL_SECONDS)
    logger.info(
        f"Batch {batch_id} {result.status}: {result.completed} completed, "
        f"{result.failed} failed, {len(result.rejected)} rejected"
    )
    return result.model_dump()


async def startup(ctx: dict[str, Any]) -> None:
    """Worker startup hook - initialize services once per worker."""
    logger.info("Initializing worker services...")
    settings = get_settings()
    ctx["settings"] = settings
    repository = ctx.get("repository") or InMemoryInvoiceRepository()
    ctx["repository"] = repository
    ctx["batch_orchestrator"] = build_batch_orchestrator(settings, repository)
    logger.info("Worker services initialized")


async def shutdown(ctx: dict[str, Any]) -> None:
    """Worker shutdown hook - cleanup resources."""
    logger.info("Worker shutting down...")


class WorkerSettings:
    """arq worker settings.

    Registers the batch task and lifecycle hooks; Redis connection, job
    concurrency and timeout are filled in from Settings by the worker runner.
    """

    functions = [process_invoice_batch]
    on_startup = startup
    on_shutdown = shutdown

    redis_settings: RedisSettings | None = None
    max_jobs = 10
    job_timeout = 1800

    @classmethod
    def get_redis_settings(cls) -> RedisSettings:
        """Get Redis settings from configuration."""
        return RedisSettings.from_dsn(get_settings().redis_url)
