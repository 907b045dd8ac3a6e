"""Abstract base class for extraction services.

Enables switching between vision-model providers (an OpenAI-compatible
gateway, a self-hosted Ollama server) while keeping one call shape: a rendered
document plus a natural-language instruction in, raw completion text out.

Based on Strategy Pattern:
https://refactoring.guru/design-patterns/strategy/python

Providers translate transport failures into the ingestion error taxonomy:
- HTTP 429 -> RateLimitedError
- HTTP 402 -> QuotaExhaustedError
- anything else (including timeouts) -> ExtractionServiceError
"""

import base64
from abc import ABC, abstractmethod

from pydantic import BaseModel

from fiscal_ingest.shared.config import Settings


class DocumentPayload(BaseModel):
    """Rendered document sent to the extraction service.

    Attributes:
        content: Raw file bytes
        media_type: Detected media type (application/pdf or image/*)
        filename: Original filename, for logging only
    """

    content: bytes
    media_type: str
    filename: str | None = None

    @property
    def base64_content(self) -> str:
        return base64.b64encode(self.content).decode("ascii")

    @property
    def data_url(self) -> str:
        return f"data:{self.media_type};base64,{self.base64_content}"


class ExtractionProvider(ABC):
    """Abstract base class for vision extraction providers.

    Example implementations:
    - OpenAIExtractionProvider: OpenAI-compatible chat completions gateway
    - OllamaExtractionProvider: self-hosted Ollama server
    """

    def __init__(self, settings: Settings) -> None:
        """Initialize provider with settings.

        Args:
            settings: Application settings
        """
        self.settings = settings

    @abstractmethod
    async def complete(
        self, document: DocumentPayload, instruction: str, temperature: float = 0.1
    ) -> str:
        """Send one document and instruction, return the raw completion text.

        Args:
            document: Rendered document
            instruction: Natural-language extraction instruction
            temperature: Sampling temperature (low for determinism)

        Returns:
            Completion text, expected to contain a JSON object

        Raises:
            RateLimitedError: Service answered 429
            QuotaExhaustedError: Service answered 402
            ExtractionServiceError: Any other failure, including timeouts
        """

    @abstractmethod
    def is_available(self) -> bool:
        """Check if this provider is configured (API keys, server URL).

        Returns:
            True if provider can be used, False otherwise
        """

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Get provider name for logging/metrics.

        Returns:
            Provider identifier (e.g., 'openai', 'ollama')
        """
