"""Normalization of noisy extraction output into canonical values.

Every function here is total: unexpected shapes and types produce ``None``
(or a failed result) rather than an exception, because the input is the
untyped JSON returned by a vision model.
"""

import math
import re
import unicodedata
from datetime import date
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from pydantic import BaseModel

from fiscal_ingest.fiscal.tax_id import is_valid_nif

CENT = Decimal("0.01")
TEMPORARY_TAX_ID_PREFIX = "SEM-NIF-"

_DATE_SHAPES: tuple[tuple[re.Pattern[str], tuple[int, int, int]], ...] = (
    # (pattern, group index of year, month, day)
    (re.compile(r"^(\d{4})-(\d{2})-(\d{2})$"), (1, 2, 3)),
    (re.compile(r"^(\d{2})/(\d{2})/(\d{4})$"), (3, 2, 1)),
    (re.compile(r"^(\d{4})/(\d{2})/(\d{2})$"), (1, 2, 3)),
    (re.compile(r"^(\d{4})(\d{2})(\d{2})$"), (1, 2, 3)),
)

_CURRENCY_NOISE = re.compile(r"(EUR|€|\$|£|\s)", re.IGNORECASE)
_NON_DIGITS = re.compile(r"\D")
_TAX_ID_LABEL = re.compile(
    r"^(?:N\.?\s*[ºo°]?\s*)?(?:NIF|NIPC|CONTRIBUINTE|VAT)\s*[:.º°]?\s*", re.IGNORECASE
)
_NON_ALNUM = re.compile(r"[^A-Z0-9]")
_FOREIGN_VAT = re.compile(r"^[A-Z]{2}[A-Z0-9]{2,}$")


def round_cents(value: Decimal) -> Decimal:
    """Round half-up to the cent."""
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def normalize_date(value: object) -> date | None:
    """Parse a document date from one of the accepted literal shapes.

    Accepted: YYYY-MM-DD, DD/MM/YYYY, YYYY/MM/DD, YYYYMMDD. Anything else,
    and any impossible calendar date (e.g. 31/04), yields None.
    """
    if isinstance(value, date):
        return value
    if not isinstance(value, str):
        return None

    raw = value.strip()
    for pattern, (y_idx, m_idx, d_idx) in _DATE_SHAPES:
        match = pattern.match(raw)
        if not match:
            continue
        year, month, day = (int(match.group(i)) for i in (y_idx, m_idx, d_idx))
        if not 1 <= month <= 12 or not 1 <= day <= 31:
            return None
        try:
            return date(year, month, day)
        except ValueError:
            return None
    return None


def derive_fiscal_period(document_date: date) -> str:
    """Return the YYYYMM fiscal period of a document date."""
    return f"{document_date.year:04d}{document_date.month:02d}"


def reconcile_fiscal_period(document_date: date, reported: object) -> tuple[str, str | None]:
    """Derive the fiscal period, surfacing a disagreeing reported value.

    Returns:
        Tuple of (derived period, warning or None)
    """
    derived = derive_fiscal_period(document_date)
    reported_text = clean_text(reported)
    if reported_text and reported_text.replace("-", "") != derived:
        return derived, (
            f"Período fiscal extraído ({reported_text}) difere da data do documento; "
            f"usado {derived}"
        )
    return derived, None


def parse_currency(value: object) -> Decimal | None:
    """Parse a monetary amount, rounded half-up to the cent.

    Numbers are taken as-is. In strings, currency symbols and whitespace are
    dropped; when a comma is present it is the decimal separator and dots are
    thousands separators.
    """
    if isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        return round_cents(value) if value.is_finite() else None
    if isinstance(value, int):
        return round_cents(Decimal(value))
    if isinstance(value, float):
        if not math.isfinite(value):
            return None
        # str() avoids binary float artefacts such as 2.675 -> 2.67499...
        return round_cents(Decimal(str(value)))
    if not isinstance(value, str):
        return None

    text = _CURRENCY_NOISE.sub("", value)
    if not text:
        return None
    if "," in text:
        text = text.replace(".", "").replace(",", ".")
    try:
        amount = Decimal(text)
    except InvalidOperation:
        return None
    if not amount.is_finite():
        return None
    return round_cents(amount)


def clean_text(value: object) -> str | None:
    """Coerce an optional opaque string field; blank becomes None."""
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, int | float):
        value = str(value)
    if not isinstance(value, str):
        return None
    text = value.strip()
    return text or None


def extract_nif(value: object) -> str | None:
    """Extract a 9-digit national identifier from free text.

    A leading label ("NIF:", "Contribuinte"), a "PT" country prefix and any
    separators are removed. Anything starting with another letter prefix is
    foreign and never national.
    """
    text = clean_text(value)
    if text is None:
        return None
    compact = _TAX_ID_LABEL.sub("", text).upper().replace(" ", "")
    if compact[:1].isalpha():
        if not compact.startswith("PT") or compact[2:3].isalpha():
            return None
        compact = compact[2:]
    digits = _NON_DIGITS.sub("", compact)
    return digits if len(digits) == 9 else None


def extract_foreign_vat_id(value: object) -> str | None:
    """Extract a foreign VAT identifier (country code + 2 or more alphanumerics).

    Anything that would also parse as a national identifier is rejected, so
    a value is never both.
    """
    text = clean_text(value)
    if text is None:
        return None
    normalized = _NON_ALNUM.sub("", _TAX_ID_LABEL.sub("", text).upper())
    if not normalized:
        return None
    if len(normalized) == 9 and normalized.isdigit():
        return None
    # PT-prefixed values are national, even when malformed
    if normalized.startswith("PT"):
        return None
    if not _FOREIGN_VAT.match(normalized):
        return None
    return normalized


class SupplierIdentity(BaseModel):
    """Supplier identifiers recovered from extraction output.

    Attributes:
        nif: 9-digit national identifier, possibly checksum-invalid
        nif_valid: Whether ``nif`` passed the checksum
        foreign_vat_id: Foreign VAT identifier, if any
    """

    nif: str | None = None
    nif_valid: bool = False
    foreign_vat_id: str | None = None

    @property
    def has_usable_id(self) -> bool:
        return bool(self.nif_valid or self.foreign_vat_id)

    @property
    def authoritative(self) -> str | None:
        """The identifier to record: valid NIF, then foreign VAT, then raw NIF."""
        if self.nif and self.nif_valid:
            return self.nif
        if self.foreign_vat_id:
            return self.foreign_vat_id
        return self.nif


def identify_supplier(*candidates: object) -> SupplierIdentity:
    """Build a SupplierIdentity from candidate fields in priority order."""
    nif = next((n for n in map(extract_nif, candidates) if n), None)
    foreign = next((v for v in map(extract_foreign_vat_id, candidates) if v), None)
    return SupplierIdentity(
        nif=nif,
        nif_valid=nif is not None and is_valid_nif(nif),
        foreign_vat_id=foreign,
    )


def _slugify(value: str) -> str:
    decomposed = unicodedata.normalize("NFD", value.strip())
    ascii_only = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    slug = re.sub(r"[^A-Z0-9]+", "-", ascii_only.upper()).strip("-")
    return slug[:48]


def temporary_tax_id(supplier_name: object = None, document_number: object = None) -> str:
    """Deterministic placeholder identifier for documents without one."""
    seed = clean_text(supplier_name) or clean_text(document_number) or "UNKNOWN"
    return f"{TEMPORARY_TAX_ID_PREFIX}{_slugify(seed) or 'UNKNOWN'}"


def is_temporary_tax_id(value: str | None) -> bool:
    return (value or "").startswith(TEMPORARY_TAX_ID_PREFIX)
