"""Input validation for uploaded documents.

Files are checked before any extraction call: media type against an
allow-list (PDF and images) and size against a fixed ceiling. Batch
submissions are also capped in item count.
"""

import logging
from pathlib import PurePath

from pydantic import BaseModel

from fiscal_ingest.extraction.base import DocumentPayload
from fiscal_ingest.shared.config import Settings, get_settings
from fiscal_ingest.shared.errors import MalformedInputError

logger = logging.getLogger(__name__)

GENERIC_MEDIA_TYPE = "application/octet-stream"

EXTENSION_MEDIA_TYPES = {
    ".pdf": "application/pdf",
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".webp": "image/webp",
    ".heic": "image/heic",
    ".heif": "image/heif",
}


class UploadedFile(BaseModel):
    """A file as received from the caller, before validation."""

    filename: str
    content: bytes
    declared_media_type: str | None = None


class RejectedFile(BaseModel):
    filename: str
    reason: str


def detect_media_type(filename: str, declared_media_type: str | None = None) -> str:
    """Declared type wins unless it is empty or generic; otherwise use the extension."""
    declared = (declared_media_type or "").strip().lower()
    if declared and declared != GENERIC_MEDIA_TYPE:
        return declared
    extension = PurePath(filename).suffix.lower()
    return EXTENSION_MEDIA_TYPES.get(extension, declared or GENERIC_MEDIA_TYPE)


def is_supported_media_type(media_type: str) -> bool:
    return media_type == "application/pdf" or media_type.startswith("image/")


def check_size(filename: str, size: int, settings: Settings) -> None:
    """Raises MalformedInputError when ``size`` exceeds the configured ceiling."""
    if size > settings.max_file_size_bytes:
        limit_mb = settings.max_file_size_bytes // (1024 * 1024)
        raise MalformedInputError(f"{filename}: ficheiro excede {limit_mb}MB")


def over_limit(filename: str, settings: Settings) -> RejectedFile:
    return RejectedFile(
        filename=filename,
        reason=f"Limite de {settings.batch_max_items} ficheiros por lote excedido",
    )


def validate_document(upload: UploadedFile, settings: Settings | None = None) -> DocumentPayload:
    """Turn an upload into an extraction payload.

    Raises:
        MalformedInputError: Empty, too large, or not a PDF/image
    """
    settings = settings or get_settings()
    if not upload.content:
        raise MalformedInputError(f"{upload.filename}: ficheiro vazio")

    check_size(upload.filename, len(upload.content), settings)

    media_type = detect_media_type(upload.filename, upload.declared_media_type)
    if not is_supported_media_type(media_type):
        raise MalformedInputError(
            f"{upload.filename}: tipo de ficheiro não suportado ({media_type})"
        )

    return DocumentPayload(content=upload.content, media_type=media_type, filename=upload.filename)


def validate_batch(
    uploads: list[UploadedFile], settings: Settings | None = None
) -> tuple[list[DocumentPayload], list[RejectedFile]]:
    """Validate a batch submission.

    Input beyond ``batch_max_items`` is dropped and reported as rejected.

    Returns:
        Tuple of (accepted payloads in input order, rejected files)
    """
    settings = settings or get_settings()
    accepted: list[DocumentPayload] = []
    rejected: list[RejectedFile] = []

    for upload in uploads[: settings.batch_max_items]:
        try:
            accepted.append(validate_document(upload, settings))
        except MalformedInputError as e:
            rejected.append(RejectedFile(filename=upload.filename, reason=e.message))

    for upload in uploads[settings.batch_max_items :]:
        rejected.append(over_limit(upload.filename, settings))

    if rejected:
        logger.info(f"Batch validation rejected {len(rejected)} of {len(uploads)} file(s)")
    return accepted, rejected
