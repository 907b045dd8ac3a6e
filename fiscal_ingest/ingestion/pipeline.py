"""Single-document ingestion: raw extraction payload to reviewed fiscal record.

Stages run in a fixed order, each taking and returning an explicit
``IngestState`` accumulator:

1. typed field coercion (date, amounts, region, identifiers)
2. arithmetic reconciliation
3. informative quality checks
4. confidence caps for soft failures

The pipeline holds no state between documents.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import date
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ValidationError

from fiscal_ingest.extraction.base import DocumentPayload
from fiscal_ingest.extraction.orchestrator import ExtractionOrchestrator
from fiscal_ingest.extraction.passes import ExtractionPass, supplier_identity
from fiscal_ingest.extraction.schema import ZERO, ExtractedInvoice
from fiscal_ingest.fiscal.normalization import (
    SupplierIdentity,
    clean_text,
    extract_nif,
    normalize_date,
    parse_currency,
    reconcile_fiscal_period,
    temporary_tax_id,
)
from fiscal_ingest.fiscal.qr import parse_qr_payload
from fiscal_ingest.fiscal.quality import assess_quality
from fiscal_ingest.fiscal.rates import (
    FiscalRegion,
    VatTier,
    infer_region_from_amounts,
    parse_fiscal_region,
)
from fiscal_ingest.fiscal.reconciliation import (
    ArithmeticChecks,
    Correction,
    reconcile,
)
from fiscal_ingest.shared.errors import MissingRequiredFieldError

logger = logging.getLogger(__name__)

DEFAULT_CONFIDENCE = 50
NO_USABLE_ID_CONFIDENCE_CAP = 40

AMOUNT_FIELDS = (
    "base_exempt",
    "base_reduced",
    "base_intermediate",
    "base_standard",
    "vat_reduced",
    "vat_intermediate",
    "vat_standard",
)

FIELD_LABELS = {
    "vat_reduced": "IVA taxa reduzida",
    "vat_intermediate": "IVA taxa intermédia",
    "vat_standard": "IVA taxa normal",
    "total_vat": "IVA total",
}


class IngestResult(BaseModel):
    """Outcome of ingesting one document.

    Attributes:
        success: False when the document date or total could not be derived
        invoice: Reconciled record (only on success)
        warnings: Reviewer-facing notes, in Portuguese
        arithmetic_checks: Checks of the final record
        corrections: Values changed by reconciliation
        passes: Extraction passes that ran (empty for QR input)
        error: Reason for failure
        error_code: Stable code of the failure
    """

    success: bool
    invoice: ExtractedInvoice | None = None
    warnings: list[str] = []
    arithmetic_checks: ArithmeticChecks | None = None
    corrections: list[Correction] = []
    passes: list[ExtractionPass] = []
    error: str | None = None
    error_code: str | None = None


@dataclass(frozen=True)
class IngestState:
    """Accumulator threaded through the stages of one document."""

    warnings: tuple[str, ...] = field(default=())
    confidence_cap: int = 100

    def warn(self, warning: str | None) -> "IngestState":
        if not warning:
            return self
        return replace(self, warnings=self.warnings + (warning,))

    def cap(self, ceiling: int) -> "IngestState":
        return replace(self, confidence_cap=min(self.confidence_cap, ceiling))


def _parse_confidence(value: object) -> int:
    if isinstance(value, bool):
        return DEFAULT_CONFIDENCE
    if isinstance(value, int | float):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip().rstrip("%"))
        except ValueError:
            return DEFAULT_CONFIDENCE
    else:
        return DEFAULT_CONFIDENCE
    # Some models answer on a 0..1 scale
    if isinstance(value, float) and 0 < number <= 1:
        number *= 100
    return max(0, min(100, round(number)))


def _non_negative(
    name: str, value: Decimal | None, state: IngestState
) -> tuple[Decimal | None, IngestState]:
    if value is None or value >= 0:
        return value, state
    return -value, state.warn(f"Valor negativo em {name} convertido para {-value}")


def _coerce_amounts(
    payload: dict[str, Any], state: IngestState
) -> tuple[dict[str, Any], IngestState]:
    amounts: dict[str, Any] = {}
    for name in AMOUNT_FIELDS:
        value, state = _non_negative(name, parse_currency(payload.get(name)), state)
        amounts[name] = value if value is not None else ZERO
    amounts["total_vat"], state = _non_negative(
        "total_vat", parse_currency(payload.get("total_vat")), state
    )
    regularization = parse_currency(payload.get("regularization_vat"))
    amounts["regularization_vat"] = abs(regularization) if regularization else None
    return amounts, state


def _resolve_region(
    payload: dict[str, Any], amounts: dict[str, Any], state: IngestState
) -> tuple[FiscalRegion, IngestState]:
    raw = clean_text(payload.get("fiscal_region"))
    region = parse_fiscal_region(raw)
    if region is not None:
        return region, state
    inferred = infer_region_from_amounts(
        {tier: (amounts[f"base_{tier.value}"], amounts[f"vat_{tier.value}"]) for tier in VatTier}
    )
    if raw:
        state = state.warn(f"Região fiscal '{raw}' desconhecida; inferida pelas taxas aplicadas")
    return inferred, state


def _resolve_supplier(
    payload: dict[str, Any], identity: SupplierIdentity, state: IngestState
) -> tuple[dict[str, str | None], IngestState]:
    """Pick the authoritative supplier identifier and apply soft-fail caps."""
    if identity.nif and identity.nif_valid:
        return {"supplier_tax_id": identity.nif, "supplier_foreign_vat_id": None}, state

    if identity.foreign_vat_id:
        if identity.nif:
            state = state.warn(
                "NIF do fornecedor inválido ignorado; usado identificador estrangeiro"
            )
        state = state.warn(
            f"Fornecedor estrangeiro ({identity.foreign_vat_id}): verificar dedutibilidade do IVA"
        )
        return {"supplier_tax_id": None, "supplier_foreign_vat_id": identity.foreign_vat_id}, state

    state = state.cap(NO_USABLE_ID_CONFIDENCE_CAP)
    if identity.nif:
        state = state.warn("NIF do fornecedor não passou a validação; confirmar manualmente")
        return {"supplier_tax_id": identity.nif, "supplier_foreign_vat_id": None}, state

    placeholder = temporary_tax_id(payload.get("supplier_name"), payload.get("document_number"))
    state = state.warn(
        f"NIF do fornecedor não encontrado; usado identificador temporário {placeholder}"
    )
    return {"supplier_tax_id": placeholder, "supplier_foreign_vat_id": None}, state


def _failure(
    error: MissingRequiredFieldError, state: IngestState, passes: list[ExtractionPass]
) -> IngestResult:
    logger.info(f"Ingestion failed: {error.code}")
    return IngestResult(
        success=False,
        warnings=list(state.warnings),
        passes=passes,
        error=error.message,
        error_code=error.code,
    )


def build_record(
    payload: dict[str, Any],
    identity: SupplierIdentity,
    state: IngestState | None = None,
    passes: list[ExtractionPass] | None = None,
    qr_raw: str | None = None,
    today: date | None = None,
) -> IngestResult:
    """Coerce, reconcile and score one untyped extraction payload.

    Args:
        payload: Raw field values (extraction output or QR mapping)
        identity: Supplier identifiers recovered from the payload
        state: Accumulator carrying warnings from earlier stages
        passes: Extraction passes that produced the payload
        qr_raw: Original QR content, when ingested from a QR code
        today: Reference date for plausibility checks

    Returns:
        IngestResult; ``success`` is False only when the document date or
        total amount is missing
    """
    state = state or IngestState()
    passes = passes or []

    document_date = normalize_date(payload.get("document_date"))
    if document_date is None:
        return _failure(
            MissingRequiredFieldError("Data do documento não encontrada ou inválida"),
            state,
            passes,
        )

    total_amount = parse_currency(payload.get("total_amount"))
    if total_amount is None or total_amount <= 0:
        return _failure(
            MissingRequiredFieldError("Não foi possível extrair o valor total"), state, passes
        )

    fiscal_period, period_warning = reconcile_fiscal_period(
        document_date, payload.get("fiscal_period")
    )
    state = state.warn(period_warning)

    amounts, state = _coerce_amounts(payload, state)
    region, state = _resolve_region(payload, amounts, state)
    supplier, state = _resolve_supplier(payload, identity, state)

    try:
        invoice = ExtractedInvoice(
            **supplier,
            supplier_name=clean_text(payload.get("supplier_name")),
            customer_tax_id=extract_nif(payload.get("customer_nif")),
            document_date=document_date,
            document_number=clean_text(payload.get("document_number")),
            document_type=clean_text(payload.get("document_type")),
            atcud=clean_text(payload.get("atcud")),
            **amounts,
            total_amount=total_amount,
            fiscal_region=region,
            fiscal_period=fiscal_period,
            confidence=_parse_confidence(payload.get("confidence")),
            qr_raw=qr_raw,
        )
    except ValidationError as e:
        return _failure(
            MissingRequiredFieldError(
                f"Registo inválido após normalização: {e.error_count()} erro(s)"
            ),
            state,
            passes,
        )

    reconciliation = reconcile(invoice)
    for correction in reconciliation.corrections:
        label = FIELD_LABELS.get(correction.field, correction.field)
        if correction.old_value is None:
            state = state.warn(f"{label} calculado a partir das taxas: {correction.new_value}")
        else:
            state = state.warn(
                f"{label} corrigido automaticamente: "
                f"{correction.old_value} -> {correction.new_value}"
            )
    for warning in reconciliation.warnings:
        state = state.warn(warning)

    quality = assess_quality(reconciliation.corrected, today=today)
    for warning in quality.warnings:
        state = state.warn(warning)

    confidence = min(quality.confidence, state.confidence_cap)
    final = reconciliation.corrected.model_copy(update={"confidence": confidence})

    logger.info(
        f"Ingested document {final.document_number or 'unknown'} "
        f"(confidence={confidence}, corrections={len(reconciliation.corrections)}, "
        f"warnings={len(state.warnings)})"
    )
    return IngestResult(
        success=True,
        invoice=final,
        warnings=list(state.warnings),
        arithmetic_checks=reconciliation.checks,
        corrections=reconciliation.corrections,
        passes=passes,
    )


class IngestionPipeline:
    """Runs extraction and record building for one document at a time."""

    def __init__(self, orchestrator: ExtractionOrchestrator) -> None:
        self.orchestrator = orchestrator

    async def ingest(
        self, document: DocumentPayload, on_extracted: Callable[[], None] | None = None
    ) -> IngestResult:
        """Extract and reconcile one document.

        Args:
            document: Validated document
            on_extracted: Called once extraction returns, before reconciliation

        Raises:
            MalformedExtractionError, ExtractionServiceError: Primary extraction
                failed; the batch layer decides whether to retry
        """
        outcome = await self.orchestrator.extract(document)
        if on_extracted is not None:
            on_extracted()
        state = IngestState(warnings=tuple(outcome.warnings))
        return build_record(outcome.payload, outcome.identity, state=state, passes=outcome.passes)

    def ingest_qr(self, content: str) -> IngestResult:
        return ingest_qr(content)


def ingest_qr(content: str, today: date | None = None) -> IngestResult:
    """Build a record from QR code content, without any extraction call."""
    qr = parse_qr_payload(content)
    if qr is None:
        return IngestResult(
            success=False,
            error="Código QR inválido ou incompleto",
            error_code="malformed_input",
        )

    payload = qr.to_extraction_payload()
    identity = supplier_identity(payload)
    if not identity.nif_valid:
        return IngestResult(
            success=False,
            error="NIF do fornecedor no código QR é inválido",
            error_code="malformed_input",
        )
    return build_record(payload, identity, qr_raw=qr.raw, today=today)
