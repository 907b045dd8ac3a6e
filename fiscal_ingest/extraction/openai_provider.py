"""OpenAI-compatible extraction provider for vision-model document extraction.

Talks to any OpenAI-compatible chat completions endpoint (OpenAI itself, or a
gateway fronting another vision model via ``APP_OPENAI_BASE_URL``). The
document is sent as a base64 data URL in an ``image_url`` content part.

The SDK's own retries are disabled: retry with backoff belongs to the batch
layer, and a 429 must reach it unchanged.
"""

import logging
import os

from openai import (
    APIConnectionError,
    APIStatusError,
    APITimeoutError,
    AsyncOpenAI,
    RateLimitError,
)

from fiscal_ingest.extraction.base import DocumentPayload, ExtractionProvider
from fiscal_ingest.shared.config import Settings
from fiscal_ingest.shared.errors import (
    ExtractionServiceError,
    QuotaExhaustedError,
    RateLimitedError,
)

logger = logging.getLogger(__name__)

MAX_COMPLETION_TOKENS = 4096


class OpenAIExtractionProvider(ExtractionProvider):
    """Vision extraction through an OpenAI-compatible API.

    Requires OPENAI_API_KEY environment variable.
    """

    def __init__(self, settings: Settings) -> None:
        """Initialize OpenAI extraction provider.

        Args:
            settings: Application settings
        """
        super().__init__(settings)
        self._client: AsyncOpenAI | None = None

    @property
    def provider_name(self) -> str:
        return "openai"

    def is_available(self) -> bool:
        """Check if OpenAI API key is configured.

        Returns:
            True if OPENAI_API_KEY environment variable is set
        """
        return os.getenv("OPENAI_API_KEY") is not None

    def _get_client(self) -> AsyncOpenAI:
        api_key = os.getenv("OPENAI_API_KEY")
        if not api_key:
            raise ExtractionServiceError("Serviço AI não configurado (OPENAI_API_KEY em falta)")
        if self._client is None or self._client.api_key != api_key:
            self._client = AsyncOpenAI(
                api_key=api_key,
                base_url=self.settings.openai_base_url,
                timeout=self.settings.extraction_timeout_seconds,
                max_retries=0,
            )
        return self._client

    async def complete(
        self, document: DocumentPayload, instruction: str, temperature: float = 0.1
    ) -> str:
        """Run one chat completion with the document attached.

        Args:
            document: Rendered document
            instruction: Extraction instruction
            temperature: Sampling temperature

        Returns:
            Message content of the first choice
        """
        client = self._get_client()
        try:
            response = await client.chat.completions.create(
                model=self.settings.openai_model,
                messages=[
                    {
                        "role": "user",
                        "content": [
                            {"type": "text", "text": instruction},
                            {"type": "image_url", "image_url": {"url": document.data_url}},
                        ],
                    }
                ],
                temperature=temperature,
                max_tokens=MAX_COMPLETION_TOKENS,
            )
        except RateLimitError as e:
            raise RateLimitedError() from e
        except APIStatusError as e:
            if e.status_code == 402:
                raise QuotaExhaustedError() from e
            raise ExtractionServiceError(
                f"Erro do serviço AI: {e.status_code}", status_code=e.status_code
            ) from e
        except APITimeoutError as e:
            raise ExtractionServiceError("Tempo limite do serviço AI excedido") from e
        except APIConnectionError as e:
            raise ExtractionServiceError(f"Falha de ligação ao serviço AI: {e}") from e

        if not response.choices or not response.choices[0].message.content:
            raise ExtractionServiceError("Resposta do serviço AI sem conteúdo")
        return response.choices[0].message.content
