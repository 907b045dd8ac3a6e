"""Batch processing of many documents against the extraction service.

At most ``batch_max_concurrency`` documents are in flight at once. Two
schedulers keep that ceiling:

- ``pool`` (default): a semaphore admits the next document as soon as a slot
  frees up.
- ``chunked``: consecutive chunks of ``batch_max_concurrency`` documents, each
  fully resolved before the next starts, with a pacing delay in between.

Each document is retried with exponential backoff (tenacity) and ends in
exactly one terminal state. Progress snapshots go through a single-writer
queue, so a slow or failing callback never stalls processing. Results keep
input order.
"""

import asyncio
import contextlib
import inspect
import logging
import uuid
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, computed_field
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from fiscal_ingest.extraction.base import DocumentPayload
from fiscal_ingest.extraction.schema import ExtractedInvoice
from fiscal_ingest.fiscal.quality import confidence_status
from fiscal_ingest.fiscal.reconciliation import Correction
from fiscal_ingest.ingestion.pipeline import IngestionPipeline, IngestResult
from fiscal_ingest.shared import metrics
from fiscal_ingest.shared.config import Settings, get_settings
from fiscal_ingest.shared.errors import (
    BatchCancelledError,
    IngestionError,
    MalformedInputError,
    MissingRequiredFieldError,
    QuotaExhaustedError,
)
from fiscal_ingest.storage.repository import InvoiceRepository, save_unless_duplicate

logger = logging.getLogger(__name__)


class ItemStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"


class QueueItem(BaseModel):
    """State of one document in a batch.

    Snapshots are immutable from the caller's point of view: every transition
    produces a new instance.

    Attributes:
        item_id: Caller-visible identifier
        document: Validated document (never serialized)
        status: pending, processing, completed or error
        progress: 0..100
        extracted_invoice: Reconciled record, once available
        warnings: Reviewer-facing notes
        error: Reason for the error state
        record_id: Persisted record id (new or existing duplicate)
        saved: A new record was inserted
        duplicate: An equivalent record already existed
        attempts: Pipeline attempts made
    """

    item_id: str
    document: DocumentPayload = Field(exclude=True, repr=False)
    status: ItemStatus = ItemStatus.PENDING
    progress: int = Field(0, ge=0, le=100)
    extracted_invoice: ExtractedInvoice | None = None
    corrections: list[Correction] = []
    warnings: list[str] = []
    error: str | None = None
    error_code: str | None = None
    record_id: str | None = None
    saved: bool = False
    duplicate: bool = False
    attempts: int = 0

    @classmethod
    def from_document(cls, document: DocumentPayload, item_id: str | None = None) -> "QueueItem":
        return cls(item_id=item_id or str(uuid.uuid4()), document=document)

    @property
    def is_terminal(self) -> bool:
        return self.status in (ItemStatus.COMPLETED, ItemStatus.ERROR)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def confidence_label(self) -> str | None:
        """Review status of the extracted record, serialized with every snapshot."""
        if self.extracted_invoice is None:
            return None
        return confidence_status(self.extracted_invoice.confidence / 100).label


ProgressCallback = Callable[[str, QueueItem], Awaitable[None] | None]


class ProgressSink:
    """Single consumer task delivering snapshots to the caller's callback.

    ``emit`` never blocks and never raises; callback errors are logged. On close,
    pending snapshots get at most ``drain_timeout`` seconds to be delivered.
    """

    def __init__(self, callback: ProgressCallback | None, drain_timeout: float = 5.0) -> None:
        self._callback = callback
        self._drain_timeout = drain_timeout
        self._queue: asyncio.Queue[QueueItem | None] = asyncio.Queue()
        self._task: asyncio.Task[None] | None = None

    def start(self) -> None:
        if self._callback is not None:
            self._task = asyncio.create_task(self._run(self._callback))

    def emit(self, item: QueueItem) -> None:
        if self._task is not None:
            self._queue.put_nowait(item)

    async def _run(self, callback: ProgressCallback) -> None:
        while True:
            item = await self._queue.get()
            if item is None:
                return
            try:
                result = callback(item.item_id, item)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception(f"Progress callback failed for item {item.item_id}")

    async def close(self) -> None:
        """Deliver what was emitted so far, then stop."""
        if self._task is None:
            return
        self._queue.put_nowait(None)
        try:
            await asyncio.wait_for(self._task, timeout=self._drain_timeout)
        except TimeoutError:
            logger.warning(
                f"Progress callback still busy after {self._drain_timeout}s; "
                f"dropped {self._queue.qsize()} pending snapshot(s)"
            )


@dataclass
class _BatchRun:
    sink: ProgressSink
    cancel: asyncio.Event


def _is_retryable(error: BaseException) -> bool:
    return not isinstance(
        error,
        (MalformedInputError, MissingRequiredFieldError, QuotaExhaustedError, BatchCancelledError),
    )


async def _wait_or_cancel(cancel: asyncio.Event, seconds: float) -> None:
    """Sleep, returning early with BatchCancelledError if the batch is cancelled."""
    if cancel.is_set():
        raise BatchCancelledError()
    try:
        await asyncio.wait_for(cancel.wait(), timeout=seconds)
    except TimeoutError:
        return
    raise BatchCancelledError()


class BatchOrchestrator:
    """Runs the ingestion pipeline over many documents."""

    def __init__(
        self,
        pipeline: IngestionPipeline,
        repository: InvoiceRepository | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.pipeline = pipeline
        self.repository = repository
        self.settings = settings or get_settings()
        # find_duplicate + save must not interleave between concurrent items
        self._save_lock = asyncio.Lock()

    async def process_batch(
        self,
        items: Sequence[QueueItem],
        on_progress: ProgressCallback | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> list[QueueItem]:
        """Process every item to a terminal state.

        Args:
            items: Pending items, e.g. from ``QueueItem.from_document``
            on_progress: Called with ``(item_id, snapshot)`` at every transition;
                may be sync or async and is never awaited by processing
            cancel_event: When set, items not yet started and retry sleeps end
                with a cancelled error

        Returns:
            Terminal items in input order
        """
        sink = ProgressSink(on_progress, self.settings.batch_progress_drain_timeout_seconds)
        run = _BatchRun(sink=sink, cancel=cancel_event or asyncio.Event())
        run.sink.start()
        try:
            for item in items:
                run.sink.emit(item)
            if self.settings.batch_scheduling == "chunked":
                results = await self._run_chunked(run, items)
            else:
                results = await self._run_pool(run, items)
        finally:
            await run.sink.close()

        completed = sum(1 for item in results if item.status == ItemStatus.COMPLETED)
        logger.info(
            f"Batch finished: {completed}/{len(results)} completed, "
            f"{sum(1 for item in results if item.saved)} saved"
        )
        return results

    async def _run_pool(self, run: _BatchRun, items: Sequence[QueueItem]) -> list[QueueItem]:
        semaphore = asyncio.Semaphore(self.settings.batch_max_concurrency)

        async def gated(item: QueueItem) -> QueueItem:
            async with semaphore:
                return await self._process_item(run, item)

        return list(await asyncio.gather(*(gated(item) for item in items)))

    async def _run_chunked(self, run: _BatchRun, items: Sequence[QueueItem]) -> list[QueueItem]:
        size = self.settings.batch_max_concurrency
        chunks = [items[i : i + size] for i in range(0, len(items), size)]
        results: list[QueueItem] = []

        for index, chunk in enumerate(chunks):
            logger.info(f"Processing chunk {index + 1}/{len(chunks)} ({len(chunk)} items)")
            results.extend(await asyncio.gather(*(self._process_item(run, i) for i in chunk)))
            if index < len(chunks) - 1:
                # Items after a cancellation end as cancelled without starting
                with contextlib.suppress(BatchCancelledError):
                    await _wait_or_cancel(run.cancel, self.settings.batch_pacing_delay_seconds)
        return results

    def _update(self, run: _BatchRun, item: QueueItem, **changes: Any) -> QueueItem:
        updated = item.model_copy(update=changes)
        run.sink.emit(updated)
        return updated

    def _fail(self, run: _BatchRun, item: QueueItem, error: IngestionError) -> QueueItem:
        metrics.batch_items_total.labels(status=ItemStatus.ERROR.value).inc()
        logger.warning(f"Item {item.item_id} failed after {item.attempts} attempt(s): {error.code}")
        return self._update(
            run,
            item,
            status=ItemStatus.ERROR,
            progress=0,
            error=error.message,
            error_code=error.code,
        )

    async def _process_item(self, run: _BatchRun, item: QueueItem) -> QueueItem:
        if run.cancel.is_set():
            return self._fail(run, item, BatchCancelledError())

        max_retries = self.settings.batch_max_retries
        current = item

        def report_retry(retry_state: RetryCallState) -> None:
            nonlocal current
            attempt = retry_state.attempt_number
            error = retry_state.outcome.exception() if retry_state.outcome else None
            logger.warning(
                f"Item {current.item_id} attempt {attempt} failed "
                f"({type(error).__name__}); retrying"
            )
            current = self._update(
                run,
                current,
                status=ItemStatus.PROCESSING,
                progress=15,
                warnings=[f"Tentativa {attempt + 1}/{max_retries + 1}"],
            )

        retrying = AsyncRetrying(
            stop=stop_after_attempt(max_retries + 1),
            wait=wait_exponential(
                multiplier=self.settings.batch_retry_base_delay_seconds, exp_base=2
            ),
            retry=retry_if_exception(_is_retryable),
            sleep=lambda seconds: _wait_or_cancel(run.cancel, seconds),
            before_sleep=report_retry,
            reraise=True,
        )

        try:
            async for attempt in retrying:
                with attempt:
                    current = current.model_copy(
                        update={"attempts": attempt.retry_state.attempt_number}
                    )
                    current, result = await self._attempt(run, current)
        except IngestionError as e:
            return self._fail(run, current, e)
        except Exception as e:
            logger.exception(f"Item {current.item_id} failed with unexpected error")
            return self._fail(run, current, IngestionError(str(e) or type(e).__name__))

        if not result.success or result.invoice is None:
            # Missing date or total is final for the document
            current = current.model_copy(update={"warnings": list(result.warnings)})
            return self._fail(
                run,
                current,
                MissingRequiredFieldError(result.error or "Campos obrigatórios em falta"),
            )
        return await self._complete(run, current, result, result.invoice)

    async def _attempt(
        self, run: _BatchRun, item: QueueItem
    ) -> tuple[QueueItem, IngestResult]:
        item = self._update(run, item, status=ItemStatus.PROCESSING, progress=20)
        item = self._update(run, item, progress=40)
        extracted = item.model_copy(update={"progress": 60})
        result = await self.pipeline.ingest(
            item.document, on_extracted=lambda: run.sink.emit(extracted)
        )
        return extracted, result

    async def _complete(
        self, run: _BatchRun, item: QueueItem, result: IngestResult, invoice: ExtractedInvoice
    ) -> QueueItem:
        warnings = list(result.warnings)
        item = self._update(
            run,
            item,
            progress=70,
            extracted_invoice=invoice,
            corrections=result.corrections,
            warnings=warnings,
        )

        record_id: str | None = None
        saved = duplicate = False
        if invoice.confidence / 100 < self.settings.confidence_gate:
            metrics.batch_items_gated_total.inc()
            warnings.append(
                f"Confiança baixa ({invoice.confidence}%): não guardado automaticamente, "
                f"requer revisão"
            )
        elif self.repository is not None:
            item = self._update(run, item, progress=80)
            try:
                async with self._save_lock:
                    outcome = await save_unless_duplicate(self.repository, invoice)
            except Exception as e:
                logger.exception(f"Saving item {item.item_id} failed")
                warnings.append(f"Aviso: falha ao guardar o registo ({e})")
            else:
                record_id = outcome.record_id
                duplicate = outcome.duplicate
                saved = not outcome.duplicate
                if duplicate:
                    warnings.append(
                        f"Documento já registado ({record_id}); não foi inserido novamente"
                    )
                item = self._update(run, item, progress=90)

        metrics.batch_items_total.labels(status=ItemStatus.COMPLETED.value).inc()
        return self._update(
            run,
            item,
            status=ItemStatus.COMPLETED,
            progress=100,
            warnings=warnings,
            record_id=record_id,
            saved=saved,
            duplicate=duplicate,
            error=None,
            error_code=None,
        )
