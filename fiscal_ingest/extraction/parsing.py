"""Recovery of a JSON object from free-form completion text.

Vision models wrap their answer in prose or markdown fences often enough that a
plain ``json.loads`` is not sufficient.
"""

import json
import logging
import re
from typing import Any

from fiscal_ingest.shared.errors import MalformedExtractionError

logger = logging.getLogger(__name__)

_FENCED_BLOCK = re.compile(r"```(?:json)?\s*([\s\S]*?)```", re.IGNORECASE)
_BRACED_SPAN = re.compile(r"\{[\s\S]*\}")


def _loads_object(text: str) -> dict[str, Any] | None:
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) else None


def parse_json_object(response_text: str) -> dict[str, Any]:
    """Extract the JSON object from a completion.

    Tried in order: the whole text, the first fenced code block, the span from
    the first ``{`` to the last ``}``.

    Args:
        response_text: Raw completion text

    Returns:
        Parsed JSON object

    Raises:
        MalformedExtractionError: If none of the strategies yields an object
    """
    text = (response_text or "").strip()

    candidates = [text]
    fenced = _FENCED_BLOCK.search(text)
    if fenced:
        candidates.append(fenced.group(1).strip())
    braced = _BRACED_SPAN.search(text)
    if braced:
        candidates.append(braced.group(0))

    for candidate in candidates:
        result = _loads_object(candidate)
        if result is not None:
            return result

    logger.warning(f"Could not recover JSON object from completion ({len(text)} chars)")
    raise MalformedExtractionError("Resposta do serviço AI não contém JSON válido")
