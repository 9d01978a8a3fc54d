"""
SilentDial - Destination Number Privacy

The destination number is the one piece of telephony data we hold, and it
is a real emergency line. It is only ever logged through these helpers.
"""

import re
from typing import Optional

_NON_DIGITS = re.compile(r"\D")
# Digits plus the punctuation people paste into .env files
_ALLOWED_CHARS = re.compile(r"^[\d\s()+\-.]+$")

SHORT_CODE = "short_code"   # 911, 112, 999 ...
E164 = "e164"               # +14155550100
NATIONAL = "national"       # 4155550100, no country prefix


def _digits(number: str) -> str:
    return _NON_DIGITS.sub("", number)


def mask_phone_number(number: Optional[str], show_last_digits: int = 2) -> str:
    """
    ``***`` plus the last digits of the number.

        +14155551234 -> ***34
        911          -> ***11
        None         -> unknown
    """
    if not number:
        return "unknown"

    digits = _digits(str(number))
    if len(digits) < show_last_digits:
        return "***"
    return f"***{digits[-show_last_digits:]}"


def classify_phone_number(number: Optional[str]) -> Optional[str]:
    """
    Kind of dialable number, or None if it is not one.

    Emergency short codes have 3-6 digits; anything longer needs a leading
    ``+`` to count as E.164 (up to 15 digits).
    """
    if not number or not _ALLOWED_CHARS.match(number):
        return None

    digits = _digits(number)
    if 3 <= len(digits) <= 6:
        return SHORT_CODE
    if 7 <= len(digits) <= 15:
        return E164 if number.strip().startswith("+") else NATIONAL
    return None
