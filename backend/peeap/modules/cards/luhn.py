from __future__ import annotations

import re
import secrets

DEFAULT_BIN = "400000"
CARD_NUMBER_LENGTH = 16

_DIGITS = re.compile(r"\d+", re.ASCII)


def _clean(number: object) -> str:
    return re.sub(r"[\s-]", "", str(number or ""))


def _luhn_sum(digits: str, *, double_even_positions: bool) -> int:
    total = 0
    for i, ch in enumerate(reversed(digits)):
        d = int(ch)
        if (i % 2 == 0) == double_even_positions:
            d *= 2
            if d > 9:
                d -= 9
        total += d
    return total


def luhn_check_digit(partial: str) -> int:
    """Check digit to append to `partial` (the rightmost partial digit gets doubled)."""
    digits = _clean(partial)
    if not _DIGITS.fullmatch(digits):
        raise ValueError("partial card number must be numeric")
    return (10 - _luhn_sum(digits, double_even_positions=True) % 10) % 10


def is_valid_card_number(number: object) -> bool:
    digits = _clean(number)
    if not _DIGITS.fullmatch(digits) or not 13 <= len(digits) <= 19:
        return False
    return _luhn_sum(digits, double_even_positions=False) % 10 == 0


def generate_card_number(bin_prefix: str = DEFAULT_BIN, length: int = CARD_NUMBER_LENGTH) -> str:
    prefix = _clean(bin_prefix)
    if not _DIGITS.fullmatch(prefix) or len(prefix) >= length:
        raise ValueError("bin_prefix must be numeric and shorter than the card number")
    body = prefix + "".join(secrets.choice("0123456789") for _ in range(length - len(prefix) - 1))
    return body + str(luhn_check_digit(body))


def mask_card_number(number: object) -> str:
    digits = _clean(number)
    if len(digits) < 8:
        return "*" * len(digits)
    return f"{digits[:4]}-****-****-{digits[-4:]}"


def generate_cvv() -> str:
    return f"{secrets.randbelow(1000):03d}"
