"""
Format gating for phones, PINs, names and amounts, plus the identifier and
PIN-hash helpers the flows rely on.
"""

import pytest
from decimal import Decimal

from utils.exception_handler import ValidationError
from utils.helpers import (
    generate_deposit_id, generate_referral_code, generate_withdrawal_id,
    hash_pin, referral_code_from_payload, referral_start_payload, verify_pin,
)
from utils.input_validation import InputValidator, format_money, to_international


class TestPhoneValidation:
    """Local Kenyan mobile format: 07XXXXXXXX or 01XXXXXXXX"""

    @pytest.mark.parametrize("phone", ["0712345678", "0112345678", " 0722000111 "])
    def test_accepts_local_mobile_numbers(self, phone):
        assert InputValidator.validate_phone(phone) == phone.strip()

    @pytest.mark.parametrize("phone", [
        "12345",
        "0812345678",       # wrong prefix
        "07123456789",      # 11 digits
        "071234567",        # 9 digits
        "+254712345678",    # international form is not accepted as input
        "07123a5678",
        "",
    ])
    def test_rejects_malformed_numbers(self, phone):
        with pytest.raises(ValidationError):
            InputValidator.validate_phone(phone)

    def test_is_valid_phone_never_raises(self):
        assert InputValidator.is_valid_phone("0712345678")
        assert not InputValidator.is_valid_phone("0812345678")
        assert not InputValidator.is_valid_phone(None)

    def test_international_rendering(self):
        assert to_international("0712345678").startswith("+254")


class TestPinValidation:

    def test_minimal_accepted_pin(self):
        assert InputValidator.validate_pin("4821") == "4821"

    @pytest.mark.parametrize("pin", ["123", "12345", "12ab", "", "  ", "12 4"])
    def test_rejects_anything_but_four_digits(self, pin):
        with pytest.raises(ValidationError):
            InputValidator.validate_pin(pin)


class TestNameValidation:

    def test_strips_whitespace(self):
        assert InputValidator.validate_name("  Jane ") == "Jane"

    def test_rejects_empty_and_overlong_names(self):
        with pytest.raises(ValidationError):
            InputValidator.validate_name("   ")
        with pytest.raises(ValidationError):
            InputValidator.validate_name("x" * 65)


class TestAmountValidation:
    """Bounds are inclusive; amounts carry at most 2 decimal places"""

    def test_bounds_are_inclusive(self):
        assert InputValidator.validate_amount("1000", 1000, 150000) == Decimal("1000")
        assert InputValidator.validate_amount("150000", 1000, 150000) == Decimal("150000")

    def test_thousands_separator_is_accepted(self):
        assert InputValidator.validate_amount("2,500", 1000, 150000) == Decimal("2500")

    @pytest.mark.parametrize("raw", ["999.99", "150000.01", "abc", "-5000", "0", "NaN", "Infinity", ""])
    def test_rejects_out_of_bounds_and_garbage(self, raw):
        with pytest.raises(ValidationError):
            InputValidator.validate_amount(raw, Decimal("1000"), Decimal("150000"))

    def test_rejects_sub_cent_precision(self):
        with pytest.raises(ValidationError):
            InputValidator.validate_amount("1000.001", 1000, 150000)

    def test_positive_amount_without_a_cap(self):
        assert InputValidator.validate_positive_amount("2500000") == Decimal("2500000")
        with pytest.raises(ValidationError):
            InputValidator.validate_positive_amount("0")

    def test_deposit_amount_cap(self):
        assert InputValidator.validate_positive_amount("5000", Decimal("10000000")) == Decimal("5000")
        with pytest.raises(ValidationError, match="cannot exceed 10000000"):
            InputValidator.validate_positive_amount("1" + "0" * 30, Decimal("10000000"))

    def test_format_money_drops_trailing_zeros(self):
        assert format_money(Decimal("5000.00")) == "5000"
        assert format_money(Decimal("5000.50")) == "5000.5"
        assert format_money(Decimal("12.34")) == "12.34"


class TestIdentifiers:

    def test_identifier_formats(self):
        assert generate_referral_code().startswith("FY'S-")
        assert len(generate_referral_code()) == len("FY'S-") + 5
        assert generate_deposit_id().startswith("DEP-")
        assert generate_withdrawal_id().startswith("WD-")

    def test_referral_deep_link_payload_is_telegram_safe(self):
        payload = referral_start_payload("FY'S-AB12C")
        assert payload == "REFFYS-AB12C"
        assert referral_code_from_payload(payload) == "FY'S-AB12C"

    def test_admin_code_payload_round_trip(self):
        assert referral_code_from_payload(referral_start_payload("ADMIN-XY9Z1")) == "ADMIN-XY9Z1"

    @pytest.mark.parametrize("payload", ["", "REF", "hello", None])
    def test_payload_without_code(self, payload):
        assert referral_code_from_payload(payload) is None

class TestPinHashing:

    def test_hash_never_contains_the_pin(self):
        hashed = hash_pin("4821")
        assert hashed.split("$")[-1] != "4821"
        assert hashed.startswith("pbkdf2_sha256$")

    def test_verify_matches_only_the_original_pin(self):
        hashed = hash_pin("4821")
        assert verify_pin("4821", hashed)
        assert not verify_pin("4822", hashed)
        assert not verify_pin("", hashed)
        assert not verify_pin("4821", "garbage")

    def test_same_pin_hashes_differently(self):
        assert hash_pin("1111") != hash_pin("1111")
