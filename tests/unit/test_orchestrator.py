"""Unit tests for multi-pass extraction with a mocked provider."""

import json
from decimal import Decimal
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from fiscal_ingest.extraction.base import DocumentPayload, ExtractionProvider
from fiscal_ingest.extraction.orchestrator import ExtractionOrchestrator
from fiscal_ingest.extraction.passes import ExtractionPass
from fiscal_ingest.extraction.prompts import (
    PRIMARY_PROMPT,
    SECTION_TOTALS_PROMPT,
    TAX_ID_PROMPT,
)
from fiscal_ingest.shared.config import Settings
from fiscal_ingest.shared.errors import (
    ExtractionServiceError,
    MalformedExtractionError,
    QuotaExhaustedError,
    RateLimitedError,
)


def answer(**fields: Any) -> str:
    return json.dumps(fields)


def make_provider(*responses: str | Exception) -> MagicMock:
    """Provider whose successive ``complete`` calls return or raise ``responses``."""
    provider = MagicMock(spec=ExtractionProvider)
    provider.complete = AsyncMock(side_effect=list(responses))
    return provider


@pytest.fixture
def settings() -> Settings:
    return Settings(_env_file=None)


@pytest.fixture
def document() -> DocumentPayload:
    return DocumentPayload(content=b"\x89PNG fake", media_type="image/png", filename="fatura.png")


def prompts_sent(provider: MagicMock) -> list[str]:
    return [call.args[1] for call in provider.complete.call_args_list]


class TestPrimaryPass:
    """Test the mandatory first pass."""

    @pytest.mark.asyncio
    async def test_single_pass_for_valid_nif(
        self, settings: Settings, document: DocumentPayload
    ) -> None:
        provider = make_provider(answer(supplier_nif="123456789", total_amount=12.3))

        outcome = await ExtractionOrchestrator(provider, settings).extract(document)

        assert outcome.passes == [ExtractionPass.PRIMARY]
        assert outcome.identity.nif_valid is True
        assert outcome.warnings == []
        assert outcome.document_class is None
        assert prompts_sent(provider) == [PRIMARY_PROMPT]

    @pytest.mark.asyncio
    async def test_malformed_primary_answer_is_fatal(
        self, settings: Settings, document: DocumentPayload
    ) -> None:
        provider = make_provider("Não consegui ler o documento.")

        with pytest.raises(MalformedExtractionError):
            await ExtractionOrchestrator(provider, settings).extract(document)

    @pytest.mark.asyncio
    async def test_primary_service_error_propagates(
        self, settings: Settings, document: DocumentPayload
    ) -> None:
        provider = make_provider(ExtractionServiceError("Erro do serviço AI: 500", 500))

        with pytest.raises(ExtractionServiceError):
            await ExtractionOrchestrator(provider, settings).extract(document)

    @pytest.mark.asyncio
    async def test_labelled_nif_in_text_avoids_retry(
        self, settings: Settings, document: DocumentPayload
    ) -> None:
        """A NIF written next to its label in the answer saves the second call."""
        text = '{"supplier_name": "Loja"}\nNota: NIF 123456789 no cabeçalho'
        provider = make_provider(text)

        outcome = await ExtractionOrchestrator(provider, settings).extract(document)

        assert outcome.identity.nif == "123456789"
        assert outcome.passes == [ExtractionPass.PRIMARY]
        assert provider.complete.await_count == 1


class TestTaxIdRetry:
    """Test the second NIF reading."""

    @pytest.mark.asyncio
    async def test_retry_recovers_nif(self, settings: Settings, document: DocumentPayload) -> None:
        provider = make_provider(
            answer(supplier_name="Loja", supplier_nif="123456780"),
            answer(supplier_nif="123456789"),
        )

        outcome = await ExtractionOrchestrator(provider, settings).extract(document)

        assert outcome.passes == [ExtractionPass.PRIMARY, ExtractionPass.TAX_ID_RETRY]
        assert outcome.payload["supplier_nif"] == "123456789"
        assert outcome.identity.nif_valid is True
        assert len(outcome.warnings) == 1
        assert prompts_sent(provider) == [PRIMARY_PROMPT, TAX_ID_PROMPT]

    @pytest.mark.asyncio
    async def test_failed_retry_becomes_warning(
        self, settings: Settings, document: DocumentPayload
    ) -> None:
        provider = make_provider(
            answer(supplier_name="Loja"),
            ExtractionServiceError("Tempo limite do serviço AI excedido"),
        )

        outcome = await ExtractionOrchestrator(provider, settings).extract(document)

        assert outcome.passes == [ExtractionPass.PRIMARY]
        assert outcome.warnings == [
            "Segunda leitura do NIF falhou: Tempo limite do serviço AI excedido"
        ]

    @pytest.mark.asyncio
    async def test_malformed_retry_becomes_warning(
        self, settings: Settings, document: DocumentPayload
    ) -> None:
        provider = make_provider(answer(supplier_name="Loja"), "sem json")

        outcome = await ExtractionOrchestrator(provider, settings).extract(document)

        assert outcome.passes == [ExtractionPass.PRIMARY]
        assert "falhou" in outcome.warnings[0]

    @pytest.mark.asyncio
    async def test_unexpected_backend_error_becomes_warning(
        self, settings: Settings, document: DocumentPayload
    ) -> None:
        """A backend bug on a refinement pass keeps the primary payload."""
        provider = make_provider(answer(supplier_name="Loja"), ValueError("corpo inválido"))

        outcome = await ExtractionOrchestrator(provider, settings).extract(document)

        assert outcome.passes == [ExtractionPass.PRIMARY]
        assert outcome.payload["supplier_name"] == "Loja"
        assert outcome.warnings == ["Segunda leitura do NIF falhou: erro inesperado"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error", [RateLimitedError(), QuotaExhaustedError()])
    async def test_rate_limit_on_retry_propagates(
        self, settings: Settings, document: DocumentPayload, error: Exception
    ) -> None:
        """Throttling is left to the batch layer even on a refinement pass."""
        provider = make_provider(answer(supplier_name="Loja"), error)

        with pytest.raises(type(error)):
            await ExtractionOrchestrator(provider, settings).extract(document)


class TestSectionTotals:
    """Test the document-wide VAT reading for multi-section suppliers."""

    @pytest.mark.asyncio
    async def test_sane_total_replaces_first_pass(
        self, settings: Settings, document: DocumentPayload
    ) -> None:
        provider = make_provider(
            answer(supplier_nif="503504564", supplier_name="EDP Comercial", total_vat=6.13),
            answer(total_vat=8.98, regularization_vat=None),
        )

        outcome = await ExtractionOrchestrator(provider, settings).extract(document)

        assert outcome.passes == [ExtractionPass.PRIMARY, ExtractionPass.SECTION_TOTALS]
        assert outcome.payload["total_vat"] == Decimal("8.98")
        assert outcome.document_class == "edp"
        assert prompts_sent(provider) == [PRIMARY_PROMPT, SECTION_TOTALS_PROMPT]

    @pytest.mark.asyncio
    async def test_overcount_is_rejected(
        self, settings: Settings, document: DocumentPayload
    ) -> None:
        provider = make_provider(
            answer(supplier_nif="503504564", total_vat=6.13),
            answer(total_vat=21.37),
        )

        outcome = await ExtractionOrchestrator(provider, settings).extract(document)

        assert outcome.payload["total_vat"] == 6.13
        assert "rejeitado" in outcome.warnings[-1]

    @pytest.mark.asyncio
    async def test_all_three_passes(self, settings: Settings, document: DocumentPayload) -> None:
        """A name-only match runs the NIF retry first, then the totals pass."""
        provider = make_provider(
            answer(supplier_name="EDP Comercial", total_vat=6.13),
            answer(supplier_nif="503504564"),
            answer(total_vat=8.98),
        )

        outcome = await ExtractionOrchestrator(provider, settings).extract(document)

        assert outcome.passes == [
            ExtractionPass.PRIMARY,
            ExtractionPass.TAX_ID_RETRY,
            ExtractionPass.SECTION_TOTALS,
        ]
        assert outcome.identity.nif == "503504564"

    @pytest.mark.asyncio
    async def test_policy_comes_from_settings(self, document: DocumentPayload) -> None:
        settings = Settings(_env_file=None, fallback_max_ratio=4.0, fallback_max_delta=20.0)
        provider = make_provider(
            answer(supplier_nif="503504564", total_vat=6.13),
            answer(total_vat=21.37),
        )

        outcome = await ExtractionOrchestrator(provider, settings).extract(document)

        assert outcome.payload["total_vat"] == Decimal("21.37")
