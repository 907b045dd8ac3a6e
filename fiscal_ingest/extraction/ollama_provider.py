"""Ollama-based extraction provider for self-hosted vision inference.

Sends the rendered page to a local Ollama server running a vision model
(Qwen2.5-VL, Llama 3.2 Vision, ...). Keeps document images on-premises.

Ollama's chat endpoint only accepts raster images, so PDFs are rejected before
the call.

See: https://github.com/ollama/ollama/blob/main/docs/api.md#generate-a-chat-completion
"""

import logging

import httpx

from fiscal_ingest.extraction.base import DocumentPayload, ExtractionProvider
from fiscal_ingest.shared.config import Settings
from fiscal_ingest.shared.errors import (
    ExtractionServiceError,
    MalformedInputError,
    QuotaExhaustedError,
    RateLimitedError,
)

logger = logging.getLogger(__name__)


class OllamaExtractionProvider(ExtractionProvider):
    """Vision extraction through the Ollama chat API."""

    def __init__(self, settings: Settings) -> None:
        """Initialize Ollama extraction provider.

        Args:
            settings: Application settings
        """
        super().__init__(settings)
        self._base_url = settings.ollama_base_url.rstrip("/")
        self._model = settings.ollama_model
        self._timeout = settings.extraction_timeout_seconds

    @property
    def provider_name(self) -> str:
        return "ollama"

    def is_available(self) -> bool:
        """Check if Ollama server is running and model is available.

        Returns:
            True if Ollama server responds and model is loaded
        """
        try:
            response = httpx.get(f"{self._base_url}/api/tags", timeout=5.0)
            if response.status_code != 200:
                return False
            models = response.json().get("models", [])
            model_names = [m.get("name", "").split(":")[0] for m in models]
            return self._model.split(":")[0] in model_names
        except httpx.HTTPError:
            return False

    async def complete(
        self, document: DocumentPayload, instruction: str, temperature: float = 0.1
    ) -> str:
        """Run one chat completion with the page image attached.

        Args:
            document: Rendered page image
            instruction: Extraction instruction
            temperature: Sampling temperature

        Returns:
            Assistant message content
        """
        if not document.media_type.startswith("image/"):
            raise MalformedInputError(
                f"Tipo de ficheiro não suportado pelo fornecedor ollama: {document.media_type}"
            )

        payload = {
            "model": self._model,
            "stream": False,
            "format": "json",
            "options": {"temperature": temperature},
            "messages": [
                {
                    "role": "user",
                    "content": instruction,
                    "images": [document.base64_content],
                }
            ],
        }
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.post(f"{self._base_url}/api/chat", json=payload)
        except httpx.TimeoutException as e:
            raise ExtractionServiceError("Tempo limite do serviço AI excedido") from e
        except httpx.HTTPError as e:
            raise ExtractionServiceError(f"Falha de ligação ao serviço AI: {e}") from e

        if response.status_code == 429:
            raise RateLimitedError()
        if response.status_code == 402:
            raise QuotaExhaustedError()
        if response.status_code >= 400:
            raise ExtractionServiceError(
                f"Erro do serviço AI: {response.status_code}", status_code=response.status_code
            )

        try:
            body = response.json()
        except ValueError as e:
            raise ExtractionServiceError("Resposta do serviço AI inválida") from e
        message = body.get("message") if isinstance(body, dict) else None
        content = message.get("content") if isinstance(message, dict) else None
        if not isinstance(content, str) or not content:
            raise ExtractionServiceError("Resposta do serviço AI sem conteúdo")
        return content
