"""Decision table for the refinement passes that follow the primary extraction.

Each rule states when a pass runs and how its answer is merged into the
running extraction state. Rules are evaluated in order against the state
produced by the previous merge, so the table can be tested without any network
call.

tax_id_retry
    Runs when there is no valid NIF and no foreign VAT id. A valid NIF replaces
    a missing or invalid one; a foreign id only fills a gap.
section_totals
    Runs when the supplier matches a multi-section signature. The VAT total is
    replaced only inside the sanity envelope; a small regularization is
    tracked apart.
"""

import logging
import re
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field, replace
from decimal import Decimal
from enum import Enum
from typing import Any

from pydantic import BaseModel

from fiscal_ingest.extraction.prompts import SECTION_TOTALS_PROMPT, TAX_ID_PROMPT
from fiscal_ingest.fiscal.normalization import (
    SupplierIdentity,
    clean_text,
    identify_supplier,
    parse_currency,
    round_cents,
)
from fiscal_ingest.fiscal.tax_id import is_valid_nif
from fiscal_ingest.shared.config import Settings

logger = logging.getLogger(__name__)

_LABELLED_NIF = (
    re.compile(r"\bNIF[:\s.º°]*(\d{9})\b", re.IGNORECASE),
    re.compile(r"\bNIPC[:\s.º°]*(\d{9})\b", re.IGNORECASE),
    re.compile(r"\bContribuinte(?:\s*n\.?)?[:\s.º°]*(\d{9})\b", re.IGNORECASE),
    re.compile(r"\bPT\s*(\d{9})\b"),
)


class ExtractionPass(str, Enum):
    PRIMARY = "primary"
    TAX_ID_RETRY = "tax_id_retry"
    SECTION_TOTALS = "section_totals"


PASS_LABELS = {
    ExtractionPass.PRIMARY: "Extração principal",
    ExtractionPass.TAX_ID_RETRY: "Segunda leitura do NIF",
    ExtractionPass.SECTION_TOTALS: "Leitura do IVA total (documento multi-secção)",
}


@dataclass(frozen=True)
class MultiSectionSignature:
    """A supplier whose documents split VAT across several sections."""

    name: str
    tax_ids: frozenset[str]
    name_pattern: re.Pattern[str]

    def matches(self, identity: SupplierIdentity, supplier_name: object) -> bool:
        if identity.nif and identity.nif in self.tax_ids:
            return True
        name = clean_text(supplier_name)
        return bool(name and self.name_pattern.search(name))


MULTI_SECTION_SIGNATURES = (
    MultiSectionSignature(
        name="edp",
        tax_ids=frozenset({"503504564"}),
        name_pattern=re.compile(r"\bEDP\b", re.IGNORECASE),
    ),
)


@dataclass(frozen=True)
class FallbackSanityPolicy:
    """Envelope a document-wide VAT total must satisfy to replace the first-pass one.

    The defaults were calibrated on EDP electricity/gas invoices and are not
    known to hold for other multi-section suppliers.
    """

    min_total: Decimal = Decimal("0.5")
    max_delta: Decimal = Decimal("8")
    min_ratio: Decimal = Decimal("0.45")
    max_ratio: Decimal = Decimal("2.6")
    max_total_without_prior: Decimal = Decimal("25")
    regularization_max: Decimal = Decimal("50")

    @classmethod
    def from_settings(cls, settings: Settings) -> "FallbackSanityPolicy":
        return cls(
            min_total=Decimal(str(settings.fallback_min_total)),
            max_delta=Decimal(str(settings.fallback_max_delta)),
            min_ratio=Decimal(str(settings.fallback_min_ratio)),
            max_ratio=Decimal(str(settings.fallback_max_ratio)),
            max_total_without_prior=Decimal(str(settings.fallback_max_total_without_prior)),
            regularization_max=Decimal(str(settings.regularization_max_amount)),
        )


class FallbackSanity(BaseModel):
    is_sane: bool
    delta_abs: Decimal
    ratio: Decimal | None
    ratio_ok: bool
    delta_ok: bool


def evaluate_fallback_sanity(
    previous_total_vat: Decimal | None,
    full_total: Decimal | None,
    policy: FallbackSanityPolicy | None = None,
) -> FallbackSanity:
    """Check a fallback VAT total against the first-pass total.

    Rejects overcounts from duplicated sections (6.13 -> 21.37) while accepting
    ordinary corrections (6.13 -> 8.98). Without a positive prior total only an
    absolute ceiling applies.
    """
    policy = policy or FallbackSanityPolicy()
    previous = previous_total_vat if previous_total_vat is not None else Decimal("0")
    full = full_total if full_total is not None else Decimal("0")

    delta_abs = abs(full - previous)
    ratio = full / previous if previous > 0 else None

    if ratio is None:
        ratio_ok = full <= policy.max_total_without_prior
        delta_ok = True
    else:
        ratio_ok = policy.min_ratio <= ratio <= policy.max_ratio
        delta_ok = delta_abs <= policy.max_delta

    return FallbackSanity(
        is_sane=full > policy.min_total and ratio_ok and delta_ok,
        delta_abs=delta_abs,
        ratio=ratio,
        ratio_ok=ratio_ok,
        delta_ok=delta_ok,
    )


@dataclass(frozen=True)
class PassContext:
    """Extraction state carried from one pass to the next.

    Attributes:
        payload: Merged raw payload (untyped, as returned by the service)
        identity: Supplier identifiers recovered so far
        warnings: Reviewer-facing notes about every value a pass changed
    """

    payload: Mapping[str, Any]
    identity: SupplierIdentity
    warnings: tuple[str, ...] = field(default=())

    def with_warning(self, warning: str) -> "PassContext":
        return replace(self, warnings=self.warnings + (warning,))

    def with_payload(self, **updates: Any) -> "PassContext":
        return replace(self, payload={**self.payload, **updates})


def scan_labelled_nif(text: str) -> str | None:
    """Find a checksum-valid NIF next to a NIF/NIPC/Contribuinte label in free text."""
    for pattern in _LABELLED_NIF:
        for match in pattern.finditer(text or ""):
            if is_valid_nif(match.group(1)):
                return match.group(1)
    return None


def supplier_identity(payload: Mapping[str, Any]) -> SupplierIdentity:
    return identify_supplier(payload.get("supplier_nif"), payload.get("supplier_vat_id"))


def initial_context(payload: Mapping[str, Any], response_text: str = "") -> PassContext:
    """Build the state after the primary pass.

    When the structured answer has no usable identifier, a labelled NIF in the
    raw response text is used before any retry is spent.
    """
    context = PassContext(payload=dict(payload), identity=supplier_identity(payload))
    if context.identity.has_usable_id:
        return context

    recovered = scan_labelled_nif(response_text)
    if recovered is None:
        return context
    context = context.with_payload(supplier_nif=recovered)
    context = replace(context, identity=supplier_identity(context.payload))
    return context.with_warning("NIF do fornecedor recuperado do texto da resposta")


def matching_signature(context: PassContext) -> MultiSectionSignature | None:
    for signature in MULTI_SECTION_SIGNATURES:
        if signature.matches(context.identity, context.payload.get("supplier_name")):
            return signature
    return None


def needs_tax_id_retry(context: PassContext) -> bool:
    """No identifier at all, or only a checksum-invalid NIF without a foreign id."""
    return not context.identity.has_usable_id


def is_multi_section(context: PassContext) -> bool:
    return matching_signature(context) is not None


def merge_tax_id_pass(
    context: PassContext, result: Mapping[str, Any], policy: FallbackSanityPolicy
) -> PassContext:
    retry = identify_supplier(result.get("supplier_nif"), result.get("supplier_vat_id"))
    current = context.identity
    updates: dict[str, Any] = {}

    if retry.nif and retry.nif_valid and not current.nif_valid:
        updates["supplier_nif"] = retry.nif
        context = context.with_warning(
            "NIF do fornecedor obtido numa segunda leitura"
            if current.nif is None
            else "NIF do fornecedor inválido substituído por uma segunda leitura"
        )
    elif retry.nif and current.nif is None:
        updates["supplier_nif"] = retry.nif

    if retry.foreign_vat_id and not current.foreign_vat_id:
        updates["supplier_vat_id"] = retry.foreign_vat_id
        context = context.with_warning("Identificador IVA estrangeiro obtido numa segunda leitura")

    customer_nif = clean_text(result.get("customer_nif"))
    if customer_nif and not clean_text(context.payload.get("customer_nif")):
        updates["customer_nif"] = customer_nif

    if not updates:
        return context.with_warning("Segunda leitura do NIF não encontrou identificador válido")
    context = context.with_payload(**updates)
    return replace(context, identity=supplier_identity(context.payload))


def _first_pass_total_vat(payload: Mapping[str, Any]) -> Decimal | None:
    reported = parse_currency(payload.get("total_vat"))
    if reported is not None:
        return reported
    tiers = [
        parse_currency(payload.get(key))
        for key in ("vat_reduced", "vat_intermediate", "vat_standard")
    ]
    present = [amount for amount in tiers if amount is not None]
    return round_cents(sum(present, Decimal("0"))) if present else None


def merge_section_totals(
    context: PassContext, result: Mapping[str, Any], policy: FallbackSanityPolicy
) -> PassContext:
    regularization = parse_currency(result.get("regularization_vat"))
    if regularization is not None:
        regularization = abs(regularization)
        if Decimal("0") < regularization < policy.regularization_max:
            context = context.with_payload(regularization_vat=regularization)
            context = context.with_warning(
                f"Regularização de IVA ({regularization}) registada à parte "
                "e excluída do IVA total"
            )
        elif regularization >= policy.regularization_max:
            context = context.with_warning(
                "Regularização de IVA acima do limite ignorada (verificar manualmente)"
            )

    full_total = parse_currency(result.get("total_vat"))
    if full_total is None:
        return context.with_warning("Leitura do IVA total do documento sem valor utilizável")

    previous = _first_pass_total_vat(context.payload)
    sanity = evaluate_fallback_sanity(previous, full_total, policy)
    if not sanity.is_sane:
        logger.info(
            f"Section-totals fallback rejected "
            f"(ratio_ok={sanity.ratio_ok}, delta_ok={sanity.delta_ok})"
        )
        return context.with_warning(
            f"IVA total lido no resumo ({full_total}) rejeitado: "
            f"diferença excessiva face a {previous}"
        )

    if previous == full_total:
        return context
    context = context.with_payload(total_vat=full_total)
    return context.with_warning(
        f"IVA total substituído pelo valor do resumo do documento: {previous} -> {full_total}"
    )


@dataclass(frozen=True)
class PassRule:
    """One row of the decision table."""

    extraction_pass: ExtractionPass
    prompt: str
    applies: Callable[[PassContext], bool]
    merge: Callable[[PassContext, Mapping[str, Any], FallbackSanityPolicy], PassContext]


REFINEMENT_RULES: tuple[PassRule, ...] = (
    PassRule(
        extraction_pass=ExtractionPass.TAX_ID_RETRY,
        prompt=TAX_ID_PROMPT,
        applies=needs_tax_id_retry,
        merge=merge_tax_id_pass,
    ),
    PassRule(
        extraction_pass=ExtractionPass.SECTION_TOTALS,
        prompt=SECTION_TOTALS_PROMPT,
        applies=is_multi_section,
        merge=merge_section_totals,
    ),
)


def applicable_passes(context: PassContext) -> list[ExtractionPass]:
    """Passes that would run next for this state (merges not applied)."""
    return [rule.extraction_pass for rule in REFINEMENT_RULES if rule.applies(context)]
