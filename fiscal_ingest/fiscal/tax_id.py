"""Checksum validation for national tax and social-security identifiers.

NIF (tax identifier): 9 digits, mod-11 check digit over weights 9..2.
NISS (social-security identifier): 11 digits, prime weights, check digit
``9 - (sum mod 10)``.

Both validators are total: malformed input yields a failed result, never an
exception.
"""

import re
from enum import Enum

from pydantic import BaseModel

NIF_VALID_FIRST_DIGITS = frozenset("12356789")
NIF_WEIGHTS = (9, 8, 7, 6, 5, 4, 3, 2)

NISS_VALID_FIRST_DIGITS = frozenset("12")
NISS_WEIGHTS = (29, 23, 19, 17, 13, 11, 7, 5, 3, 2)

_WHITESPACE = re.compile(r"\s+")


class TaxIdError(str, Enum):
    """Reason an identifier failed validation."""

    WRONG_LENGTH = "wrong_length"
    INVALID_CATEGORY = "invalid_category"
    CHECKSUM_MISMATCH = "checksum_mismatch"


class TaxIdCategory(str, Enum):
    """Taxpayer category implied by the first NIF digit."""

    INDIVIDUAL = "individual"
    COMPANY = "company"
    PUBLIC_BODY = "public_body"
    ESTATE_OR_NON_RESIDENT = "estate_or_non_resident"
    SOLE_TRADER = "sole_trader"
    IRREGULAR_COLLECTIVE = "irregular_collective"
    UNKNOWN = "unknown"


_CATEGORY_BY_FIRST_DIGIT = {
    "1": TaxIdCategory.INDIVIDUAL,
    "2": TaxIdCategory.INDIVIDUAL,
    "3": TaxIdCategory.INDIVIDUAL,
    "5": TaxIdCategory.COMPANY,
    "6": TaxIdCategory.PUBLIC_BODY,
    "7": TaxIdCategory.ESTATE_OR_NON_RESIDENT,
    "8": TaxIdCategory.SOLE_TRADER,
    "9": TaxIdCategory.IRREGULAR_COLLECTIVE,
}


class TaxIdValidation(BaseModel):
    """Result of identifier validation.

    Attributes:
        valid: Whether the identifier passed every rule
        error: First rule that failed, if any
    """

    valid: bool
    error: TaxIdError | None = None


def nif_check_digit(first_eight: str) -> int:
    """Compute the NIF check digit for the first 8 digits."""
    total = sum(int(digit) * weight for digit, weight in zip(first_eight, NIF_WEIGHTS))
    remainder = total % 11
    return 0 if remainder in (0, 1) else 11 - remainder


def validate_nif(value: object) -> TaxIdValidation:
    """Validate a 9-digit national tax identifier.

    Args:
        value: Candidate identifier; whitespace is ignored

    Returns:
        TaxIdValidation describing the first failing rule
    """
    if not isinstance(value, str):
        return TaxIdValidation(valid=False, error=TaxIdError.WRONG_LENGTH)

    clean = _WHITESPACE.sub("", value)
    if len(clean) != 9 or not clean.isascii() or not clean.isdigit():
        return TaxIdValidation(valid=False, error=TaxIdError.WRONG_LENGTH)

    if clean[0] not in NIF_VALID_FIRST_DIGITS:
        return TaxIdValidation(valid=False, error=TaxIdError.INVALID_CATEGORY)

    if nif_check_digit(clean[:8]) != int(clean[8]):
        return TaxIdValidation(valid=False, error=TaxIdError.CHECKSUM_MISMATCH)

    return TaxIdValidation(valid=True)


def is_valid_nif(value: object) -> bool:
    return validate_nif(value).valid


def validate_niss(value: object) -> TaxIdValidation:
    """Validate an 11-digit social-security identifier.

    The field is optional wherever it appears, so empty input is valid.
    """
    if value is None:
        return TaxIdValidation(valid=True)
    if not isinstance(value, str):
        return TaxIdValidation(valid=False, error=TaxIdError.WRONG_LENGTH)

    clean = _WHITESPACE.sub("", value)
    if not clean:
        return TaxIdValidation(valid=True)

    if len(clean) != 11 or not clean.isascii() or not clean.isdigit():
        return TaxIdValidation(valid=False, error=TaxIdError.WRONG_LENGTH)

    if clean[0] not in NISS_VALID_FIRST_DIGITS:
        return TaxIdValidation(valid=False, error=TaxIdError.INVALID_CATEGORY)

    total = sum(int(digit) * weight for digit, weight in zip(clean[:10], NISS_WEIGHTS))
    if 9 - (total % 10) != int(clean[10]):
        return TaxIdValidation(valid=False, error=TaxIdError.CHECKSUM_MISMATCH)

    return TaxIdValidation(valid=True)


def classify_nif(value: str) -> TaxIdCategory:
    """Return the taxpayer category implied by the first digit."""
    clean = _WHITESPACE.sub("", value or "")
    if not clean:
        return TaxIdCategory.UNKNOWN
    return _CATEGORY_BY_FIRST_DIGIT.get(clean[0], TaxIdCategory.UNKNOWN)
