"""Conversion between human decimal amounts and smallest-unit integer strings.

Amounts never pass through ``float``; both directions work on the digit strings.
"""

import re

from intent_payments.domain.exceptions import InvalidAmountError


MAX_DECIMALS = 30

_DIGITS = re.compile(r"^[0-9]+$")


def _check_decimals(decimals: int) -> None:
    if isinstance(decimals, bool) or not isinstance(decimals, int) or not 0 <= decimals <= MAX_DECIMALS:
        raise ValueError(f"Invalid decimals: {decimals!r}")


def to_smallest_units(amount: str, decimals: int) -> str:
    """Convert ``"49.99"`` with 6 decimals to ``"49990000"``.

    Fraction digits beyond ``decimals`` are truncated.
    """
    _check_decimals(decimals)
    if not isinstance(amount, str) or not amount:
        raise InvalidAmountError(str(amount), "amount must be a non-empty decimal string")

    int_part, _, frac = amount.partition(".")
    if not _DIGITS.match(int_part) or (frac and not _DIGITS.match(frac)):
        raise InvalidAmountError(amount, "not a plain decimal number")
    if amount.endswith("."):
        raise InvalidAmountError(amount, "not a plain decimal number")

    frac_padded = (frac + "0" * decimals)[:decimals]
    raw = (int_part + frac_padded).lstrip("0")
    return raw or "0"


def from_smallest_units(amount: str, decimals: int) -> str:
    """Convert ``"49990000"`` with 6 decimals back to ``"49.99"``."""
    _check_decimals(decimals)
    if not isinstance(amount, str) or not _DIGITS.match(amount):
        raise InvalidAmountError(str(amount), "smallest-unit amount must be an integer string")

    digits = amount.lstrip("0") or "0"
    if decimals == 0:
        return digits

    digits = digits.rjust(decimals + 1, "0")
    int_part, frac = digits[:-decimals], digits[-decimals:].rstrip("0")
    return f"{int_part}.{frac}" if frac else int_part
