"""Unit tests for national and social-security identifier validation."""

import pytest

from fiscal_ingest.fiscal.tax_id import (
    TaxIdCategory,
    TaxIdError,
    classify_nif,
    is_valid_nif,
    nif_check_digit,
    validate_nif,
    validate_niss,
)


class TestNifCheckDigit:
    """Test check digit computation."""

    def test_check_digit_of_known_nif(self) -> None:
        """123456789: weighted sum 156, remainder 2, check digit 11 - 2 = 9."""
        assert nif_check_digit("12345678") == 9

    def test_remainder_zero_or_one_gives_zero(self) -> None:
        """Remainder 1 (sum 122) maps to check digit 0."""
        assert nif_check_digit("50144260") == 0

    def test_remainder_zero_gives_zero(self) -> None:
        """Remainder 0 (sum 132) also maps to check digit 0."""
        assert nif_check_digit("50144265") == 0


class TestValidateNif:
    """Test NIF validation rules."""

    @pytest.mark.parametrize("nif", ["123456789", "501442600", "503504564", "500000000"])
    def test_valid_nifs(self, nif: str) -> None:
        """Known valid identifiers should pass."""
        result = validate_nif(nif)
        assert result.valid is True
        assert result.error is None

    def test_single_digit_mutation_fails_checksum(self) -> None:
        """Changing the check digit of a valid NIF should fail."""
        result = validate_nif("123456780")
        assert result.valid is False
        assert result.error == TaxIdError.CHECKSUM_MISMATCH

    def test_mutation_in_body_fails_checksum(self) -> None:
        """Changing a weighted digit should fail."""
        assert validate_nif("223456789").error == TaxIdError.CHECKSUM_MISMATCH

    def test_weight_zero_coincidence(self) -> None:
        """501442600 and 501442650 differ in one digit and are both valid.

        Remainders 1 and 0 both map to check digit 0, so this mutation is not
        detected by the checksum.
        """
        assert is_valid_nif("501442600") is True
        assert is_valid_nif("501442650") is True

    def test_whitespace_is_ignored(self) -> None:
        """Spaces inside the identifier should be stripped."""
        assert validate_nif(" 123 456 789 ").valid is True

    @pytest.mark.parametrize("value", ["12345678", "1234567890", "", "12345678a", "PT123456789"])
    def test_wrong_length(self, value: str) -> None:
        """Anything other than exactly 9 ASCII digits is WRONG_LENGTH."""
        assert validate_nif(value).error == TaxIdError.WRONG_LENGTH

    def test_non_ascii_digits_rejected(self) -> None:
        """Unicode digits (e.g. Arabic-Indic) are not accepted."""
        assert validate_nif("١٢٣٤٥٦٧٨٩").error == TaxIdError.WRONG_LENGTH

    @pytest.mark.parametrize("value", [None, 123456789, 12.5, ["123456789"]])
    def test_non_string_input_never_raises(self, value: object) -> None:
        """Validation is total over arbitrary input."""
        assert validate_nif(value).valid is False

    @pytest.mark.parametrize("first_digit", ["0", "4"])
    def test_invalid_category(self, first_digit: str) -> None:
        """First digits 0 and 4 are not assigned."""
        body = first_digit + "2345678"
        nif = body + str(nif_check_digit(body))
        assert validate_nif(nif).error == TaxIdError.INVALID_CATEGORY


class TestValidateNiss:
    """Test social-security identifier validation."""

    def test_valid_niss(self) -> None:
        """12345678902: weighted sum 447, check digit 9 - 7 = 2."""
        assert validate_niss("12345678902").valid is True

    def test_checksum_mismatch(self) -> None:
        """Wrong last digit should fail."""
        assert validate_niss("12345678903").error == TaxIdError.CHECKSUM_MISMATCH

    @pytest.mark.parametrize("value", ["", "   ", None])
    def test_empty_is_valid(self, value: str | None) -> None:
        """The field is optional, so empty input passes."""
        assert validate_niss(value).valid is True

    def test_wrong_length(self) -> None:
        """Ten digits is not a NISS."""
        assert validate_niss("1234567890").error == TaxIdError.WRONG_LENGTH

    def test_invalid_first_digit(self) -> None:
        """Only 1 and 2 are valid first digits."""
        assert validate_niss("32345678902").error == TaxIdError.INVALID_CATEGORY


class TestClassifyNif:
    """Test taxpayer category classification."""

    @pytest.mark.parametrize(
        ("nif", "category"),
        [
            ("123456789", TaxIdCategory.INDIVIDUAL),
            ("503504564", TaxIdCategory.COMPANY),
            ("600000000", TaxIdCategory.PUBLIC_BODY),
            ("700000000", TaxIdCategory.ESTATE_OR_NON_RESIDENT),
            ("800000000", TaxIdCategory.SOLE_TRADER),
            ("900000000", TaxIdCategory.IRREGULAR_COLLECTIVE),
            ("400000000", TaxIdCategory.UNKNOWN),
            ("", TaxIdCategory.UNKNOWN),
        ],
    )
    def test_category_by_first_digit(self, nif: str, category: TaxIdCategory) -> None:
        """Category is determined by the first digit only."""
        assert classify_nif(nif) == category
