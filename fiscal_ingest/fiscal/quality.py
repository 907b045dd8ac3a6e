"""Informative quality checks on a reconciled invoice.

These never block a document; each failed check lowers confidence by a fixed
factor and adds a reviewer-facing warning.
"""

from datetime import date

from pydantic import BaseModel

from fiscal_ingest.extraction.schema import ExtractedInvoice
from fiscal_ingest.fiscal.tax_id import is_valid_nif

MIN_DOCUMENT_YEAR = 2020
ATCUD_MANDATORY_FROM_YEAR = 2022
VAT_SUM_TOLERANCE = 0.01

AUTO_APPROVE_THRESHOLD = 0.90
REVIEW_THRESHOLD = 0.70


class QualityAssessment(BaseModel):
    confidence: int
    warnings: list[str]


class ConfidenceStatus(BaseModel):
    label: str
    color: str


def assess_quality(invoice: ExtractedInvoice, today: date | None = None) -> QualityAssessment:
    """Apply the informative checks to an invoice's confidence.

    Args:
        invoice: Reconciled invoice
        today: Reference date for the plausibility check (defaults to today)

    Returns:
        QualityAssessment with the adjusted confidence and the warnings raised
    """
    today = today or date.today()
    factor = 1.0
    warnings: list[str] = []

    supplier_id = invoice.supplier_tax_id or ""
    if len(supplier_id) == 9 and supplier_id.isdigit() and not is_valid_nif(supplier_id):
        factor *= 0.65
        warnings.append("NIF do fornecedor parece inválido (possível erro de leitura)")

    if not invoice.supplier_name or len(invoice.supplier_name.strip()) < 3:
        factor *= 0.95
        warnings.append("Nome do fornecedor não encontrado ou muito curto")

    if not invoice.document_number:
        factor *= 0.92
        warnings.append("Número do documento não encontrado")

    year = invoice.document_date.year
    if year < MIN_DOCUMENT_YEAR or year > today.year + 1:
        factor *= 0.85
        warnings.append("Data do documento parece incorreta")

    tier_sum = invoice.tier_vat_sum
    if (
        invoice.total_vat
        and tier_sum > 0
        and abs(float(tier_sum - invoice.total_vat)) > VAT_SUM_TOLERANCE
    ):
        factor *= 0.90
        warnings.append("Soma do IVA por taxa não corresponde ao IVA total")

    if not invoice.atcud and year >= ATCUD_MANDATORY_FROM_YEAR:
        factor *= 0.95
        warnings.append("ATCUD não encontrado (obrigatório desde 2022)")

    return QualityAssessment(confidence=round(invoice.confidence * factor), warnings=warnings)


def confidence_status(confidence: float) -> ConfidenceStatus:
    """Reviewer-facing label for a 0..1 confidence."""
    if confidence >= AUTO_APPROVE_THRESHOLD:
        return ConfidenceStatus(label="Auto-aprovado", color="green")
    if confidence >= REVIEW_THRESHOLD:
        return ConfidenceStatus(label="Precisa revisão", color="yellow")
    return ConfidenceStatus(label="Falhou", color="red")
