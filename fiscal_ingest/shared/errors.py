"""Error taxonomy for document ingestion.

Every error carries a stable ``code`` for programmatic handling and a
Portuguese message suitable for showing to the reviewer.
"""


class IngestionError(Exception):
    """Base class for all ingestion failures."""

    code = "ingestion_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class MalformedInputError(IngestionError):
    """File rejected before processing (size, media type, empty content)."""

    code = "malformed_input"


class MalformedExtractionError(IngestionError):
    """Extraction service answered with something that is not a JSON object."""

    code = "malformed_extraction"


class ExtractionServiceError(IngestionError):
    """Extraction service call failed.

    Attributes:
        status_code: HTTP status returned by the service, if any
    """

    code = "extraction_service_error"

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class RateLimitedError(ExtractionServiceError):
    """HTTP 429 from the extraction service."""

    code = "rate_limited"

    def __init__(
        self, message: str = "Limite de pedidos excedido. Aguarde alguns minutos."
    ) -> None:
        super().__init__(message, status_code=429)


class QuotaExhaustedError(ExtractionServiceError):
    """HTTP 402 from the extraction service. Needs operator action."""

    code = "quota_exhausted"

    def __init__(self, message: str = "Créditos AI esgotados. Contacte o administrador.") -> None:
        super().__init__(message, status_code=402)


class MissingRequiredFieldError(IngestionError):
    """Document date or total amount could not be derived."""

    code = "missing_required_field"


class BatchCancelledError(IngestionError):
    """Batch was cancelled before this item reached a terminal state."""

    code = "cancelled"

    def __init__(self, message: str = "Processamento cancelado") -> None:
        super().__init__(message)
