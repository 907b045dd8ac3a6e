"""Integration tests for the vision extraction provider.

These tests require:
- OPENAI_API_KEY environment variable set
- Network access to the configured OpenAI-compatible endpoint

Tests are skipped if OPENAI_API_KEY is not available.
"""

import base64
import os

import pytest

from fiscal_ingest.extraction.base import DocumentPayload
from fiscal_ingest.extraction.openai_provider import OpenAIExtractionProvider
from fiscal_ingest.extraction.orchestrator import ExtractionOrchestrator
from fiscal_ingest.extraction.parsing import parse_json_object
from fiscal_ingest.extraction.prompts import PRIMARY_PROMPT
from fiscal_ingest.ingestion.pipeline import IngestionPipeline
from fiscal_ingest.shared.config import Settings

# Skip all tests in this module if no API key available
pytestmark = pytest.mark.skipif(
    not os.getenv("OPENAI_API_KEY"),
    reason="OPENAI_API_KEY not set - skipping integration tests",
)

# 1x1 white PNG
BLANK_PNG = base64.b64decode(
    "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAYAAAAfFcSJAAAADUlEQVR42mP8/5+hHgAHggJ/"
    "PchI7wAAAABJRU5ErkJggg=="
)


@pytest.fixture
def settings() -> Settings:
    """Create settings for integration tests."""
    return Settings()


@pytest.fixture
def blank_page() -> DocumentPayload:
    return DocumentPayload(content=BLANK_PNG, media_type="image/png", filename="blank.png")


@pytest.mark.asyncio
async def test_primary_prompt_returns_json_object(
    settings: Settings, blank_page: DocumentPayload
) -> None:
    """The primary instruction yields a JSON object even for an empty page."""
    provider = OpenAIExtractionProvider(settings)

    text = await provider.complete(blank_page, PRIMARY_PROMPT)

    assert isinstance(parse_json_object(text), dict)


@pytest.mark.asyncio
async def test_blank_page_is_not_a_document(
    settings: Settings, blank_page: DocumentPayload
) -> None:
    """Without a date or total the pipeline reports a hard failure, not a record."""
    pipeline = IngestionPipeline(
        ExtractionOrchestrator(OpenAIExtractionProvider(settings), settings)
    )

    result = await pipeline.ingest(blank_page)

    assert result.success is False
    assert result.error_code == "missing_required_field"
