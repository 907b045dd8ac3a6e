"""Arithmetic reconciliation of extracted VAT amounts.

Recomputes each tier's VAT from its base and the regional rate, checks the
document identity ``bases + total VAT == total amount`` and, where it is safe,
replaces a wrong tier VAT with the computed value.

A correction is applied only when the corrected invoice passes the
document-level check; otherwise the inconsistency is reported as a warning and
nothing changes. ``total_amount`` is the legal document total and is never
modified.
"""

import logging
from decimal import Decimal

from pydantic import BaseModel

from fiscal_ingest.extraction.schema import ZERO, ExtractedInvoice
from fiscal_ingest.fiscal.normalization import round_cents
from fiscal_ingest.fiscal.rates import RateTable, VatTier, rate_table
from fiscal_ingest.shared import metrics

logger = logging.getLogger(__name__)

LINE_TOLERANCE = Decimal("0.02")
DOCUMENT_TOLERANCE = Decimal("0.10")
CORRECTION_CONFIDENCE_PENALTY = 20
CORRECTION_CONFIDENCE_FLOOR = 10

TIER_LABELS = {
    VatTier.REDUCED: "reduzida",
    VatTier.INTERMEDIATE: "intermédia",
    VatTier.STANDARD: "normal",
}


class TierCheck(BaseModel):
    """Expected-vs-actual VAT for one rate tier."""

    tier: VatTier
    base: Decimal
    rate: Decimal
    expected_vat: Decimal
    actual_vat: Decimal
    delta: Decimal
    passed: bool


class ArithmeticChecks(BaseModel):
    """All arithmetic checks for one document, with the tolerances used."""

    tiers: list[TierCheck]
    document_expected_total: Decimal
    document_delta: Decimal
    document_passed: bool
    line_tolerance: Decimal = LINE_TOLERANCE
    document_tolerance: Decimal = DOCUMENT_TOLERANCE

    @property
    def passed(self) -> bool:
        return self.document_passed and all(check.passed for check in self.tiers)

    @property
    def failed_tiers(self) -> list[VatTier]:
        return [check.tier for check in self.tiers if not check.passed]


class Correction(BaseModel):
    """One value overridden by reconciliation."""

    field: str
    old_value: Decimal | None
    new_value: Decimal


class ReconciliationResult(BaseModel):
    """Outcome of reconciling one invoice.

    Attributes:
        checks: Checks computed on the corrected invoice
        corrected: Invoice after any safe corrections
        corrections: Ordered correction log
        warnings: Inconsistencies that could not be safely corrected
    """

    checks: ArithmeticChecks
    corrected: ExtractedInvoice
    corrections: list[Correction]
    warnings: list[str]


def _effective_total_vat(invoice: ExtractedInvoice) -> Decimal:
    return invoice.total_vat if invoice.total_vat is not None else invoice.tier_vat_sum


def check_arithmetic(invoice: ExtractedInvoice, rates: RateTable) -> ArithmeticChecks:
    """Compute per-tier and document-level checks without changing anything."""
    tiers = []
    for tier in VatTier:
        base = invoice.base_for(tier)
        actual = invoice.vat_for(tier)
        rate = rates.rate(tier)
        expected = round_cents(base * rate)
        delta = actual - expected
        tiers.append(
            TierCheck(
                tier=tier,
                base=base,
                rate=rate,
                expected_vat=expected,
                actual_vat=actual,
                delta=delta,
                passed=base == ZERO or abs(delta) <= LINE_TOLERANCE,
            )
        )

    expected_total = invoice.bases_sum + _effective_total_vat(invoice)
    document_delta = expected_total - invoice.total_amount
    return ArithmeticChecks(
        tiers=tiers,
        document_expected_total=expected_total,
        document_delta=document_delta,
        document_passed=abs(document_delta) <= DOCUMENT_TOLERANCE,
    )


def _with_tiers_corrected(
    invoice: ExtractedInvoice, checks: ArithmeticChecks, tiers: list[VatTier]
) -> ExtractedInvoice:
    """Substitute the expected VAT for the given tiers.

    ``total_vat`` follows the tier sum only when it was missing or was itself
    the sum of the (wrong) tier values; an independently reported total is kept.
    """
    expected = {check.tier: check.expected_vat for check in checks.tiers}
    update: dict[str, Decimal] = {f"vat_{tier.value}": expected[tier] for tier in tiers}
    candidate = invoice.model_copy(update=update)

    tracks_tier_sum = (
        invoice.total_vat is None
        or abs(invoice.total_vat - invoice.tier_vat_sum) <= LINE_TOLERANCE
    )
    if tracks_tier_sum:
        candidate = candidate.model_copy(update={"total_vat": candidate.tier_vat_sum})
    return candidate


def _diff(before: ExtractedInvoice, after: ExtractedInvoice) -> list[Correction]:
    fields = [f"vat_{tier.value}" for tier in VatTier] + ["total_vat"]
    corrections = []
    for field in fields:
        old, new = getattr(before, field), getattr(after, field)
        if new is not None and old != new:
            corrections.append(Correction(field=field, old_value=old, new_value=new))
    return corrections


def _penalize(confidence: int) -> int:
    penalized = max(CORRECTION_CONFIDENCE_FLOOR, confidence - CORRECTION_CONFIDENCE_PENALTY)
    return min(confidence, penalized)


def reconcile(invoice: ExtractedInvoice, rates: RateTable | None = None) -> ReconciliationResult:
    """Verify VAT arithmetic and apply safe corrections.

    Args:
        invoice: Invoice to reconcile
        rates: Rate table; defaults to the table of the invoice's fiscal region

    Returns:
        ReconciliationResult; running it again on ``corrected`` applies no
        further corrections
    """
    rates = rates or rate_table(invoice.fiscal_region)
    checks = check_arithmetic(invoice, rates)
    current = invoice
    warnings: list[str] = []

    failed = checks.failed_tiers
    if failed:
        candidate = _with_tiers_corrected(invoice, checks, failed)
        if check_arithmetic(candidate, rates).document_passed:
            current = candidate
        elif len(failed) > 1:
            for tier in failed:
                candidate = _with_tiers_corrected(current, check_arithmetic(current, rates), [tier])
                if check_arithmetic(candidate, rates).document_passed:
                    current = candidate

    corrections = _diff(invoice, current)
    tier_corrected = any(c.field != "total_vat" for c in corrections)

    if invoice.total_vat is None and current.total_vat is None:
        # Missing VAT total is derived from the tier amounts
        current = current.model_copy(update={"total_vat": current.tier_vat_sum})
        corrections.append(
            Correction(field="total_vat", old_value=None, new_value=current.total_vat)
        )

    if tier_corrected:
        current = current.model_copy(update={"confidence": _penalize(current.confidence)})

    final_checks = check_arithmetic(current, rates)
    for check in final_checks.tiers:
        if not check.passed:
            warnings.append(
                f"IVA taxa {TIER_LABELS[check.tier]}: esperado {check.expected_vat}, "
                f"extraído {check.actual_vat} (não corrigido automaticamente)"
            )
    if not final_checks.document_passed:
        warnings.append(
            f"Soma das bases e IVA ({final_checks.document_expected_total}) não corresponde "
            f"ao total do documento ({current.total_amount})"
        )
    for correction in corrections:
        metrics.reconciliation_corrections_total.labels(field=correction.field).inc()

    if corrections:
        logger.info(
            f"Reconciliation applied {len(corrections)} correction(s) "
            f"to document {invoice.document_number or 'unknown'}"
        )

    return ReconciliationResult(
        checks=final_checks,
        corrected=current,
        corrections=corrections,
        warnings=warnings,
    )
