"""Persistence boundary for reconciled invoices.

The record schema and its storage engine belong to the host application; the
pipeline only needs ``save`` and ``find_duplicate``. Duplicate precedence:

1. same ATCUD (unique document code)
2. same (supplier id, document number, document date)

Equal totals alone never make a duplicate: recurring fixed-amount documents
such as monthly rent are distinct records.
"""

import asyncio
import logging
import uuid
from datetime import date, datetime, timezone
from typing import Protocol

from pydantic import BaseModel

from fiscal_ingest.extraction.schema import ExtractedInvoice

logger = logging.getLogger(__name__)


class SaveResult(BaseModel):
    """Result of a duplicate-aware save.

    Attributes:
        record_id: Id of the new record, or of the existing duplicate
        duplicate: True when nothing was inserted
    """

    record_id: str
    duplicate: bool = False


class StoredInvoice(BaseModel):
    record_id: str
    invoice: ExtractedInvoice
    created_at: datetime


class InvoiceRepository(Protocol):
    """Operations the batch orchestrator needs from persistence."""

    async def find_duplicate(
        self,
        supplier_id: str | None,
        document_number: str | None,
        document_date: date | None,
        atcud: str | None,
    ) -> str | None:
        """Return the id of an existing matching record, if any."""
        ...

    async def save(self, invoice: ExtractedInvoice) -> str:
        """Insert a record and return its id."""
        ...


def _normalize_code(value: str | None) -> str | None:
    if not value:
        return None
    return "".join(value.split()).upper() or None


class InMemoryInvoiceRepository:
    """Process-local repository for development and tests."""

    def __init__(self) -> None:
        self._records: dict[str, StoredInvoice] = {}
        self._lock = asyncio.Lock()

    @property
    def records(self) -> list[StoredInvoice]:
        return list(self._records.values())

    async def find_duplicate(
        self,
        supplier_id: str | None,
        document_number: str | None,
        document_date: date | None,
        atcud: str | None,
    ) -> str | None:
        atcud_key = _normalize_code(atcud)
        if atcud_key:
            for stored in self._records.values():
                if _normalize_code(stored.invoice.atcud) == atcud_key:
                    return stored.record_id

        number_key = _normalize_code(document_number)
        if not (supplier_id and number_key and document_date):
            return None
        for stored in self._records.values():
            invoice = stored.invoice
            if (
                invoice.supplier_id == supplier_id
                and _normalize_code(invoice.document_number) == number_key
                and invoice.document_date == document_date
            ):
                return stored.record_id
        return None

    async def save(self, invoice: ExtractedInvoice) -> str:
        async with self._lock:
            record_id = str(uuid.uuid4())
            self._records[record_id] = StoredInvoice(
                record_id=record_id,
                invoice=invoice,
                created_at=datetime.now(timezone.utc),
            )
        return record_id


async def save_unless_duplicate(
    repository: InvoiceRepository, invoice: ExtractedInvoice
) -> SaveResult:
    """Insert the invoice unless an equivalent record already exists."""
    existing = await repository.find_duplicate(
        invoice.supplier_id, invoice.document_number, invoice.document_date, invoice.atcud
    )
    if existing is not None:
        logger.info(
            f"Document {invoice.document_number or 'unknown'} already stored as {existing}"
        )
        return SaveResult(record_id=existing, duplicate=True)

    record_id = await repository.save(invoice)
    logger.info(f"Stored document {invoice.document_number or 'unknown'} as {record_id}")
    return SaveResult(record_id=record_id)
