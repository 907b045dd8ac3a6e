"""Unit tests for JSON recovery from completion text."""

import pytest

from fiscal_ingest.extraction.parsing import parse_json_object
from fiscal_ingest.shared.errors import MalformedExtractionError


class TestParseJsonObject:
    """Test the recovery strategies in order."""

    def test_plain_json(self) -> None:
        assert parse_json_object('{"total_amount": 123.0}') == {"total_amount": 123.0}

    def test_fenced_block(self) -> None:
        """A markdown code fence is unwrapped."""
        text = 'Aqui está:\n```json\n{"supplier_nif": "503504564"}\n```\nObrigado.'
        assert parse_json_object(text) == {"supplier_nif": "503504564"}

    def test_fence_without_language(self) -> None:
        assert parse_json_object('```\n{"a": 1}\n```') == {"a": 1}

    def test_braced_span_inside_prose(self) -> None:
        """The first-to-last brace span is tried when nothing else parses."""
        text = 'O resultado é {"total_vat": 23.0, "nested": {"x": 1}} conforme pedido'
        assert parse_json_object(text) == {"total_vat": 23.0, "nested": {"x": 1}}

    @pytest.mark.parametrize(
        "text",
        ["", "sem dados", "[1, 2, 3]", '"texto"', "{não é json}", None],
    )
    def test_no_object_raises(self, text: str | None) -> None:
        """Arrays, scalars and broken JSON are all malformed answers."""
        with pytest.raises(MalformedExtractionError) as exc_info:
            parse_json_object(text)  # type: ignore[arg-type]
        assert exc_info.value.code == "malformed_extraction"
