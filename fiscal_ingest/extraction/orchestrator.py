"""Multi-pass extraction of a single document.

The primary pass must succeed; refinement passes from the decision table in
``passes.py`` are best-effort. Rate-limit and quota errors surface from any
pass because retrying them is the batch layer's decision.
"""

import logging
import time
from typing import Any

from pydantic import BaseModel

from fiscal_ingest.extraction.base import DocumentPayload, ExtractionProvider
from fiscal_ingest.extraction.parsing import parse_json_object
from fiscal_ingest.extraction.passes import (
    PASS_LABELS,
    REFINEMENT_RULES,
    ExtractionPass,
    FallbackSanityPolicy,
    PassRule,
    initial_context,
    matching_signature,
)
from fiscal_ingest.extraction.prompts import PRIMARY_PROMPT
from fiscal_ingest.fiscal.normalization import SupplierIdentity
from fiscal_ingest.shared import metrics
from fiscal_ingest.shared.config import Settings, get_settings
from fiscal_ingest.shared.errors import (
    IngestionError,
    QuotaExhaustedError,
    RateLimitedError,
)

logger = logging.getLogger(__name__)

EXTRACTION_TEMPERATURE = 0.1


class ExtractionOutcome(BaseModel):
    """Merged result of all passes run for one document.

    Attributes:
        payload: Raw field values after merging, still untyped
        identity: Supplier identifiers after merging
        passes: Passes that completed, in order
        warnings: Notes on every merged change and on failed refinement passes
        document_class: Name of the matched multi-section signature, if any
    """

    payload: dict[str, Any]
    identity: SupplierIdentity
    passes: list[ExtractionPass]
    warnings: list[str]
    document_class: str | None = None


def _status_label(error: Exception) -> str:
    if isinstance(error, RateLimitedError):
        return "rate_limited"
    if isinstance(error, QuotaExhaustedError):
        return "quota_exhausted"
    return "failed"


class ExtractionOrchestrator:
    """Drives one to three extraction calls for a document."""

    def __init__(
        self,
        provider: ExtractionProvider,
        settings: Settings | None = None,
        rules: tuple[PassRule, ...] = REFINEMENT_RULES,
    ) -> None:
        self.provider = provider
        self.settings = settings or get_settings()
        self.policy = FallbackSanityPolicy.from_settings(self.settings)
        self.rules = rules

    async def _complete(
        self, extraction_pass: ExtractionPass, document: DocumentPayload, prompt: str
    ) -> tuple[dict[str, Any], str]:
        start = time.perf_counter()
        try:
            text = await self.provider.complete(document, prompt, EXTRACTION_TEMPERATURE)
            result = parse_json_object(text)
        except Exception as e:
            metrics.extraction_requests_total.labels(
                extraction_pass=extraction_pass.value, status=_status_label(e)
            ).inc()
            raise
        finally:
            metrics.extraction_duration_seconds.labels(
                extraction_pass=extraction_pass.value
            ).observe(time.perf_counter() - start)

        metrics.extraction_requests_total.labels(
            extraction_pass=extraction_pass.value, status="success"
        ).inc()
        return result, text

    async def extract(self, document: DocumentPayload) -> ExtractionOutcome:
        """Run the primary pass and any refinement passes that apply.

        Args:
            document: Rendered document

        Returns:
            ExtractionOutcome with the merged payload

        Raises:
            MalformedExtractionError: Primary answer contained no JSON object
            RateLimitedError: Any pass answered 429
            QuotaExhaustedError: Any pass answered 402
            ExtractionServiceError: Primary pass failed
        """
        primary, response_text = await self._complete(
            ExtractionPass.PRIMARY, document, PRIMARY_PROMPT
        )
        context = initial_context(primary, response_text)
        passes = [ExtractionPass.PRIMARY]

        for rule in self.rules:
            if not rule.applies(context):
                continue
            try:
                result, _ = await self._complete(rule.extraction_pass, document, rule.prompt)
            except (RateLimitedError, QuotaExhaustedError):
                raise
            except IngestionError as e:
                logger.warning(
                    f"Refinement pass {rule.extraction_pass.value} failed for "
                    f"{document.filename or 'document'}: {e.code}"
                )
                context = context.with_warning(
                    f"{PASS_LABELS[rule.extraction_pass]} falhou: {e.message}"
                )
                continue
            except Exception as e:
                # Keeps the primary payload whatever a backend throws on refinement
                logger.warning(
                    f"Refinement pass {rule.extraction_pass.value} failed for "
                    f"{document.filename or 'document'}: {type(e).__name__}",
                    exc_info=True,
                )
                context = context.with_warning(
                    f"{PASS_LABELS[rule.extraction_pass]} falhou: erro inesperado"
                )
                continue
            context = rule.merge(context, result, self.policy)
            passes.append(rule.extraction_pass)

        signature = matching_signature(context)
        logger.info(
            f"Extraction of {document.filename or 'document'} ran passes: "
            f"{', '.join(p.value for p in passes)}"
        )
        return ExtractionOutcome(
            payload=dict(context.payload),
            identity=context.identity,
            passes=passes,
            warnings=list(context.warnings),
            document_class=signature.name if signature else None,
        )
