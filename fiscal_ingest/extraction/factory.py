"""Selection of the extraction provider named in settings.

Backends are looked up by ``Settings.extraction_provider``. Further backends
can be added at runtime with ``register_provider``.
"""

import logging

from fiscal_ingest.extraction.base import ExtractionProvider
from fiscal_ingest.extraction.ollama_provider import OllamaExtractionProvider
from fiscal_ingest.extraction.openai_provider import OpenAIExtractionProvider
from fiscal_ingest.shared.config import Settings

logger = logging.getLogger(__name__)

PROVIDERS: dict[str, type[ExtractionProvider]] = {
    "openai": OpenAIExtractionProvider,
    "ollama": OllamaExtractionProvider,
}


def register_provider(name: str, provider_class: type[ExtractionProvider]) -> None:
    PROVIDERS[name] = provider_class
    logger.info(f"Registered extraction provider: {name}")


def provider_class_for(name: str) -> type[ExtractionProvider]:
    """Look up a provider class.

    Raises:
        ValueError: If no provider is registered under ``name``
    """
    try:
        return PROVIDERS[name]
    except KeyError:
        raise ValueError(
            f"Unknown extraction provider: '{name}'. Available providers: {', '.join(PROVIDERS)}"
        ) from None


def create_extraction_provider(settings: Settings) -> ExtractionProvider:
    """Instantiate the configured provider.

    An unconfigured provider is still returned; its first call fails with
    ExtractionServiceError, which the batch layer records per item.

    Args:
        settings: Application settings

    Returns:
        Extraction provider instance

    Raises:
        ValueError: If the configured provider is unknown
    """
    name = settings.extraction_provider
    provider = provider_class_for(name)(settings)

    if not provider.is_available():
        logger.warning(
            f"Extraction provider '{name}' is not fully available. "
            f"Check configuration (API key, server URL, model)."
        )
    if isinstance(provider, OllamaExtractionProvider):
        logger.info("Ollama provider selected: PDF documents will be rejected")

    logger.info(f"Created extraction provider: {name}")
    return provider
