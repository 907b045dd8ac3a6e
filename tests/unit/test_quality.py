"""Unit tests for informative quality checks."""

from datetime import date
from decimal import Decimal
from typing import Any

import pytest

from fiscal_ingest.extraction.schema import ExtractedInvoice
from fiscal_ingest.fiscal.quality import assess_quality, confidence_status

TODAY = date(2025, 6, 1)


def make_invoice(**overrides: Any) -> ExtractedInvoice:
    fields: dict[str, Any] = {
        "supplier_tax_id": "503504564",
        "supplier_name": "EDP Comercial",
        "document_date": date(2025, 1, 15),
        "document_number": "FT 2025/1",
        "atcud": "ABCD1234-1",
        "base_standard": Decimal("100.00"),
        "vat_standard": Decimal("23.00"),
        "total_vat": Decimal("23.00"),
        "total_amount": Decimal("123.00"),
        "fiscal_period": "202501",
        "confidence": 80,
    }
    fields.update(overrides)
    return ExtractedInvoice(**fields)


class TestAssessQuality:
    """Test the confidence factors."""

    def test_clean_invoice_keeps_confidence(self) -> None:
        assessment = assess_quality(make_invoice(), today=TODAY)
        assert assessment.confidence == 80
        assert assessment.warnings == []

    def test_invalid_nif(self) -> None:
        """A 9-digit NIF failing its check digit costs the most."""
        assessment = assess_quality(make_invoice(supplier_tax_id="123456780"), today=TODAY)
        assert assessment.confidence == 52
        assert len(assessment.warnings) == 1

    def test_placeholder_id_is_not_checksummed(self) -> None:
        assessment = assess_quality(make_invoice(supplier_tax_id="SEM-NIF-ABC"), today=TODAY)
        assert assessment.confidence == 80

    def test_missing_document_number(self) -> None:
        assessment = assess_quality(make_invoice(document_number=None), today=TODAY)
        assert assessment.confidence == round(80 * 0.92)

    @pytest.mark.parametrize("year", [2019, 2027])
    def test_implausible_year(self, year: int) -> None:
        invoice = make_invoice(document_date=date(year, 1, 15), atcud="X-1")
        assert assess_quality(invoice, today=TODAY).confidence == 68

    def test_tier_sum_mismatch(self) -> None:
        assessment = assess_quality(make_invoice(total_vat=Decimal("24.00")), today=TODAY)
        assert assessment.confidence == 72
        assert "IVA total" in assessment.warnings[0]

    def test_atcud_only_required_from_2022(self) -> None:
        """A missing ATCUD is flagged only for documents from 2022 on."""
        recent = assess_quality(make_invoice(atcud=None), today=TODAY)
        older = assess_quality(
            make_invoice(atcud=None, document_date=date(2021, 5, 1), fiscal_period="202105"),
            today=TODAY,
        )
        assert recent.confidence == 76
        assert older.confidence == 80

    def test_factors_multiply(self) -> None:
        invoice = make_invoice(supplier_name="", document_number=None, atcud=None)
        assessment = assess_quality(invoice, today=TODAY)
        assert assessment.confidence == round(80 * 0.95 * 0.92 * 0.95)
        assert len(assessment.warnings) == 3


class TestConfidenceStatus:
    """Test reviewer-facing labels."""

    @pytest.mark.parametrize(
        ("confidence", "color"),
        [(0.95, "green"), (0.90, "green"), (0.75, "yellow"), (0.70, "yellow"), (0.69, "red")],
    )
    def test_thresholds(self, confidence: float, color: str) -> None:
        assert confidence_status(confidence).color == color
