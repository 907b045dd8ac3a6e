"""Unit tests for single-document record building."""

from datetime import date
from decimal import Decimal
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from fiscal_ingest.extraction.base import DocumentPayload
from fiscal_ingest.extraction.orchestrator import ExtractionOrchestrator, ExtractionOutcome
from fiscal_ingest.extraction.passes import ExtractionPass, supplier_identity
from fiscal_ingest.fiscal.rates import FiscalRegion
from fiscal_ingest.ingestion.pipeline import (
    IngestionPipeline,
    IngestState,
    build_record,
    ingest_qr,
)

TODAY = date(2025, 6, 1)


def make_payload(**overrides: Any) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "supplier_nif": "503504564",
        "supplier_name": "Fornecedor Exemplo, Lda",
        "document_date": "2025-01-15",
        "document_number": "FT 2025/1",
        "atcud": "ABCD1234-1",
        "base_standard": "100,00",
        "vat_standard": "23,00",
        "total_vat": "23,00",
        "total_amount": "123,00 €",
        "fiscal_region": "PT",
        "fiscal_period": "202501",
        "confidence": 90,
    }
    payload.update(overrides)
    return payload


def build(payload: dict[str, Any], state: IngestState | None = None):
    return build_record(payload, supplier_identity(payload), state=state, today=TODAY)


class TestBuildRecordHardFailures:
    """Only a missing date or total fails the document."""

    @pytest.mark.parametrize("value", [None, "", "31/04/2025", "ontem"])
    def test_missing_date(self, value: object) -> None:
        result = build(make_payload(document_date=value))
        assert result.success is False
        assert result.invoice is None
        assert result.error == "Data do documento não encontrada ou inválida"
        assert result.error_code == "missing_required_field"

    @pytest.mark.parametrize("value", [None, "0", 0, "-5,00", "abc"])
    def test_missing_total(self, value: object) -> None:
        result = build(make_payload(total_amount=value))
        assert result.success is False
        assert result.error == "Não foi possível extrair o valor total"

    def test_earlier_warnings_survive_failure(self) -> None:
        state = IngestState().warn("Segunda leitura do NIF falhou: x")
        result = build(make_payload(document_date=None), state)
        assert result.warnings == ["Segunda leitura do NIF falhou: x"]


class TestBuildRecord:
    """Test coercion, reconciliation and soft-fail caps."""

    def test_clean_document(self) -> None:
        result = build(make_payload())

        assert result.success is True
        invoice = result.invoice
        assert invoice is not None
        assert invoice.supplier_tax_id == "503504564"
        assert invoice.document_date == date(2025, 1, 15)
        assert invoice.total_amount == Decimal("123.00")
        assert invoice.base_exempt == Decimal("0.00")
        assert invoice.fiscal_region == FiscalRegion.MAINLAND
        assert invoice.fiscal_period == "202501"
        assert invoice.confidence == 90
        assert result.warnings == []
        assert result.arithmetic_checks is not None and result.arithmetic_checks.passed

    def test_correction_is_reported(self) -> None:
        result = build(make_payload(vat_standard="20,00", total_vat="20,00"))

        assert result.invoice is not None
        assert result.invoice.vat_standard == Decimal("23.00")
        assert result.invoice.confidence == 70
        assert "IVA taxa normal corrigido automaticamente: 20.00 -> 23.00" in result.warnings
        assert [c.field for c in result.corrections] == ["vat_standard", "total_vat"]

    def test_missing_nif_uses_placeholder_and_caps(self) -> None:
        result = build(make_payload(supplier_nif=None, supplier_name="Café Central"))

        assert result.success is True
        assert result.invoice is not None
        assert result.invoice.supplier_tax_id == "SEM-NIF-CAFE-CENTRAL"
        assert result.invoice.confidence == 40
        assert any("identificador temporário" in w for w in result.warnings)

    def test_invalid_nif_kept_and_capped(self) -> None:
        result = build(make_payload(supplier_nif="123456780"))

        assert result.invoice is not None
        assert result.invoice.supplier_tax_id == "123456780"
        assert result.invoice.confidence == 40
        assert any("não passou a validação" in w for w in result.warnings)

    def test_foreign_supplier(self) -> None:
        result = build(make_payload(supplier_nif=None, supplier_vat_id="ESB12345678"))

        assert result.invoice is not None
        assert result.invoice.supplier_tax_id is None
        assert result.invoice.supplier_foreign_vat_id == "ESB12345678"
        assert result.invoice.supplier_id == "ESB12345678"
        assert result.invoice.confidence == 90
        assert any("dedutibilidade" in w for w in result.warnings)

    def test_period_disagreement_warns(self) -> None:
        result = build(make_payload(fiscal_period="202412"))
        assert result.invoice is not None
        assert result.invoice.fiscal_period == "202501"
        assert any("202412" in w for w in result.warnings)

    @pytest.mark.parametrize(
        ("raw", "expected"), [(0.85, 85), ("77%", 77), (1, 1), (150, 100), (None, 50)]
    )
    def test_confidence_parsing(self, raw: object, expected: int) -> None:
        result = build(make_payload(confidence=raw))
        assert result.invoice is not None
        assert result.invoice.confidence == expected

    def test_negative_amount_made_positive(self) -> None:
        result = build(make_payload(base_exempt="-10,00", total_amount="133,00"))
        assert result.invoice is not None
        assert result.invoice.base_exempt == Decimal("10.00")
        assert any("Valor negativo em base_exempt" in w for w in result.warnings)

    def test_region_inferred_when_unknown(self) -> None:
        payload = make_payload(
            fiscal_region="Ilha",
            vat_standard="16,00",
            total_vat="16,00",
            total_amount="116,00",
        )
        result = build(payload)
        assert result.invoice is not None
        assert result.invoice.fiscal_region == FiscalRegion.AZORES
        assert result.corrections == []
        assert any("Ilha" in w for w in result.warnings)

    def test_regularization_carried_over(self) -> None:
        result = build(make_payload(regularization_vat=Decimal("3.21")))
        assert result.invoice is not None
        assert result.invoice.regularization_vat == Decimal("3.21")
        assert result.invoice.total_vat == Decimal("23.00")


class TestIngestionPipeline:
    """Test the extraction-to-record flow."""

    @pytest.mark.asyncio
    async def test_ingest_runs_hook_and_keeps_pass_warnings(self) -> None:
        payload = make_payload()
        outcome = ExtractionOutcome(
            payload=payload,
            identity=supplier_identity(payload),
            passes=[ExtractionPass.PRIMARY, ExtractionPass.SECTION_TOTALS],
            warnings=["IVA total substituído pelo valor do resumo do documento: 6.13 -> 8.98"],
            document_class="edp",
        )
        orchestrator = MagicMock(spec=ExtractionOrchestrator)
        orchestrator.extract = AsyncMock(return_value=outcome)
        hook = MagicMock()
        document = DocumentPayload(content=b"x", media_type="image/png")

        result = await IngestionPipeline(orchestrator).ingest(document, on_extracted=hook)

        hook.assert_called_once_with()
        assert result.success is True
        assert result.passes == [ExtractionPass.PRIMARY, ExtractionPass.SECTION_TOTALS]
        assert result.warnings[0].startswith("IVA total substituído")


class TestIngestQr:
    """Test QR ingestion, which makes no extraction call."""

    def test_valid_qr(self) -> None:
        content = (
            "A:503504564*B:123456789*C:PT*D:FT*E:N*F:20250115*G:FT 1/1*H:ABCD1234-1*"
            "I1:PT*I7:100.00*I8:23.00*N:23.00*O:123.00"
        )
        result = ingest_qr(content, today=TODAY)

        assert result.success is True
        assert result.passes == []
        assert result.invoice is not None
        assert result.invoice.qr_raw == content
        assert result.invoice.customer_tax_id == "123456789"
        # QR codes carry no supplier name
        assert result.invoice.confidence == 90

    def test_incomplete_qr(self) -> None:
        result = ingest_qr("A:503504564*G:FT 1/1")
        assert result.success is False
        assert result.error_code == "malformed_input"

    def test_invalid_supplier_nif(self) -> None:
        result = ingest_qr("A:123456780*F:20250115*O:12.30")
        assert result.success is False
        assert result.error == "NIF do fornecedor no código QR é inválido"
