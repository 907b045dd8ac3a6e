"""Parser for the national invoice QR code payload.

The payload is a ``*``-separated list of ``KEY:value`` pairs, e.g.
``A:123456789*B:999999990*C:PT*D:FT*E:N*F:20250115*G:FT 1/1*H:ABCD-1*``
``I1:PT*I7:100.00*I8:23.00*N:23.00*O:123.00``.

Tax blocks I, J and K carry the mainland, Azores and Madeira amounts:
``<block>1`` fiscal space, ``2`` exempt base, ``3``/``4`` reduced base/VAT,
``5``/``6`` intermediate base/VAT, ``7``/``8`` standard base/VAT.
"""

import logging
from decimal import Decimal
from typing import Any

from pydantic import BaseModel

from fiscal_ingest.fiscal.normalization import clean_text, parse_currency
from fiscal_ingest.fiscal.rates import (
    FiscalRegion,
    VatTier,
    infer_region_from_amounts,
    parse_fiscal_region,
)

logger = logging.getLogger(__name__)

MANDATORY_KEYS = ("A", "F", "O")
TAX_BLOCKS = {"I": FiscalRegion.MAINLAND, "J": FiscalRegion.AZORES, "K": FiscalRegion.MADEIRA}


class QRPayload(BaseModel):
    """Raw key/value fields of a QR payload."""

    fields: dict[str, str]
    raw: str

    def get(self, key: str) -> str | None:
        return clean_text(self.fields.get(key))

    def _tax_block(self) -> str | None:
        for block in TAX_BLOCKS:
            if any(f"{block}{n}" in self.fields for n in range(1, 9)):
                return block
        return None

    def fiscal_region(self) -> FiscalRegion:
        """Region from the fiscal-space code, else inferred from effective rates."""
        block = self._tax_block()
        if block is None:
            return FiscalRegion.MAINLAND
        region = parse_fiscal_region(self.get(f"{block}1"))
        if region is not None:
            return region
        amounts = {
            VatTier.REDUCED: (self._amount(f"{block}3"), self._amount(f"{block}4")),
            VatTier.INTERMEDIATE: (self._amount(f"{block}5"), self._amount(f"{block}6")),
            VatTier.STANDARD: (self._amount(f"{block}7"), self._amount(f"{block}8")),
        }
        return infer_region_from_amounts(amounts)

    def _amount(self, key: str) -> Decimal | None:
        return parse_currency(self.fields.get(key))

    def to_extraction_payload(self) -> dict[str, Any]:
        """Map to the same untyped shape the extraction service returns."""
        block = self._tax_block() or "I"
        total_taxes = self._amount("N")
        stamp_duty = self._amount("M")
        total_vat = total_taxes
        if total_taxes is not None and stamp_duty:
            total_vat = total_taxes - stamp_duty
        return {
            "supplier_nif": self.get("A"),
            "customer_nif": self.get("B"),
            "document_type": self.get("D"),
            "document_date": self.get("F"),
            "document_number": self.get("G"),
            "atcud": self.get("H"),
            "base_exempt": self._amount(f"{block}2"),
            "base_reduced": self._amount(f"{block}3"),
            "vat_reduced": self._amount(f"{block}4"),
            "base_intermediate": self._amount(f"{block}5"),
            "vat_intermediate": self._amount(f"{block}6"),
            "base_standard": self._amount(f"{block}7"),
            "vat_standard": self._amount(f"{block}8"),
            "total_vat": total_vat,
            "total_amount": self._amount("O"),
            "fiscal_region": self.fiscal_region().value,
            # A QR code is machine-generated by certified software
            "confidence": 95,
        }


def parse_qr_payload(content: str) -> QRPayload | None:
    """Parse QR content; returns None when mandatory fields are missing."""
    if not isinstance(content, str) or not content.strip():
        return None

    fields: dict[str, str] = {}
    for part in content.strip().split("*"):
        key, sep, value = part.partition(":")
        if sep and key:
            fields[key.strip()] = value

    missing = [key for key in MANDATORY_KEYS if not clean_text(fields.get(key))]
    if missing:
        logger.info(f"QR payload missing mandatory fields: {', '.join(missing)}")
        return None

    return QRPayload(fields=fields, raw=content)
