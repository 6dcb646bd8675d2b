"""
Input Validation Utilities
Format gating for everything a user types into the bot
"""

import re
import logging
from decimal import Decimal, InvalidOperation
from typing import Union

import phonenumbers
from phonenumbers import NumberParseException, PhoneNumberFormat

from utils.exception_handler import ValidationError

logger = logging.getLogger(__name__)

Number = Union[Decimal, int, str]


class InputValidator:
    """Input validation for the conversation flows"""

    # Kenyan mobile numbers in local format: 07XXXXXXXX or 01XXXXXXXX
    PHONE_PATTERN = re.compile(r"^(07|01)[0-9]{8}$")
    PIN_PATTERN = re.compile(r"^[0-9]{4}$")
    NAME_MAX_LENGTH = 64

    @classmethod
    def validate_phone(cls, phone: str) -> str:
        """Validate a local mobile number and return it stripped"""
        if not phone:
            raise ValidationError("Phone number cannot be empty")

        phone = phone.strip()
        if not cls.PHONE_PATTERN.match(phone):
            raise ValidationError(
                "Invalid phone number. It must be 10 digits and start with 07 or 01 (e.g. 0712345678)"
            )

        try:
            parsed_number = phonenumbers.parse(phone, "KE")
        except NumberParseException:
            raise ValidationError("Invalid phone number format")
        if not phonenumbers.is_possible_number(parsed_number):
            raise ValidationError("Invalid phone number format, please double-check the digits")

        return phone

    @classmethod
    def is_valid_phone(cls, phone: str) -> bool:
        try:
            cls.validate_phone(phone)
            return True
        except ValidationError:
            return False

    @classmethod
    def validate_pin(cls, pin: str) -> str:
        """Validate a 4-digit PIN"""
        pin = (pin or "").strip()
        if not cls.PIN_PATTERN.match(pin):
            raise ValidationError("Invalid PIN. It must be exactly 4 digits")
        return pin

    @classmethod
    def validate_name(cls, name: str) -> str:
        """Validate a first/second name"""
        name = (name or "").strip()
        if not name:
            raise ValidationError("Name cannot be empty")
        if len(name) > cls.NAME_MAX_LENGTH:
            raise ValidationError(f"Name too long. Maximum {cls.NAME_MAX_LENGTH} characters")
        return name

    @classmethod
    def validate_amount(cls, amount_str: str, min_amount: Number, max_amount: Number) -> Decimal:
        """Validate and convert amount to Decimal within [min_amount, max_amount]"""
        if not amount_str:
            raise ValidationError("Amount cannot be empty")

        # Clean input
        amount_str = amount_str.strip().replace(",", "")

        try:
            amount = Decimal(amount_str)
        except InvalidOperation:
            raise ValidationError("Invalid amount format. Please enter a valid number")

        if not amount.is_finite() or amount <= 0:
            raise ValidationError("Invalid amount format. Please enter a valid number")

        if amount < Decimal(str(min_amount)) or amount > Decimal(str(max_amount)):
            raise ValidationError(
                f"Amount must be between {format_money(min_amount)} and {format_money(max_amount)}"
            )

        # Check decimal places (max 2)
        exponent = amount.as_tuple().exponent
        if isinstance(exponent, int) and exponent < -2:
            raise ValidationError("Amount cannot have more than 2 decimal places")

        return amount

    @classmethod
    def validate_positive_amount(cls, amount_str: str, max_amount: Number = None) -> Decimal:
        """Positive amount with at most 2 decimal places, capped at max_amount (deposits)"""
        try:
            amount = Decimal((amount_str or "").strip().replace(",", ""))
        except InvalidOperation:
            raise ValidationError("Please enter a valid deposit amount")
        if not amount.is_finite() or amount <= 0:
            raise ValidationError("Please enter a valid deposit amount")
        exponent = amount.as_tuple().exponent
        if isinstance(exponent, int) and exponent < -2:
            raise ValidationError("Amount cannot have more than 2 decimal places")
        if max_amount is not None and amount > Decimal(str(max_amount)):
            raise ValidationError(f"Deposit amount cannot exceed {format_money(max_amount)}")
        return amount


def format_money(value: Number) -> str:
    """Render an amount without trailing .00 (5000, 5000.5)"""
    amount = Decimal(str(value))
    if amount == amount.to_integral_value():
        return str(amount.quantize(Decimal("1")))
    return str(amount.quantize(Decimal("0.01")).normalize())


def to_international(phone: str) -> str:
    """0712345678 -> +254 712 345678"""
    try:
        parsed_number = phonenumbers.parse(phone, "KE")
        return phonenumbers.format_number(parsed_number, PhoneNumberFormat.INTERNATIONAL)
    except NumberParseException:
        return phone
