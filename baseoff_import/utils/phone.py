"""
Phone number cleanup for Brazilian client spreadsheets.

Phones arrive as "(11) 98765-4321", "+55 11 98765-4321", "11987654321" and
so on. They are stored as bare national digits (DDD + number).
"""

import re
from typing import Any, Optional

BRAZIL_COUNTRY_CODE = "55"
MAX_PHONE_DIGITS = 15  # E.164 upper bound

_NON_DIGITS = re.compile(r"\D")


def clean_phone(value: Any) -> Optional[str]:
    """
    Reduce a phone value to national digits.

    A leading country code 55 is dropped when the result would otherwise be
    a 12 or 13 digit number (DDD + 8/9 digit subscriber number).

    Returns:
        Digits string, or None when no digits remain or the value is too
        long to be a phone number
    """
    if value is None:
        return None

    digits = _NON_DIGITS.sub("", str(value))
    if not digits:
        return None

    if len(digits) in (12, 13) and digits.startswith(BRAZIL_COUNTRY_CODE):
        digits = digits[len(BRAZIL_COUNTRY_CODE):]

    if len(digits) > MAX_PHONE_DIGITS:
        return None

    return digits
