"""Fixed-point USDC amounts.

All amounts are integers in the smallest USDC unit (6 decimals, so
``1_000_000`` is one dollar). Nothing in this module touches floats.
"""

from __future__ import annotations

import re

from payrouter.constants import USDC_DECIMALS

_SCALE = 10**USDC_DECIMALS
_PRICE_RE = re.compile(r"\$?([\d.]+)")


def parse_units(amount: str) -> int:
    """Parse a decimal dollar string (``"1.50"`` or ``"$1.50"``) into units.

    Fractions beyond six digits are truncated. Raises ValueError on
    anything that is not a non-negative decimal number.
    """
    text = amount.strip()
    if text.startswith("$"):
        text = text[1:]
    whole, _, fraction = text.partition(".")
    if not whole and not fraction:
        raise ValueError(f"Invalid amount: {amount!r}")
    whole = whole or "0"
    if not whole.isdigit() or (fraction and not fraction.isdigit()):
        raise ValueError(f"Invalid amount: {amount!r}")
    padded = fraction.ljust(USDC_DECIMALS, "0")[:USDC_DECIMALS]
    return int(whole) * _SCALE + int(padded)


def format_units(units: int) -> str:
    """Format units as a ``$``-prefixed dollar string with no trailing zeros."""
    if units < 0:
        raise ValueError(f"units must be non-negative, got {units}")
    whole, fraction = divmod(units, _SCALE)
    if fraction == 0:
        return f"${whole}"
    fraction_str = str(fraction).rjust(USDC_DECIMALS, "0").rstrip("0")
    return f"${whole}.{fraction_str}"


def price_string_to_units(price: str) -> int:
    """Tolerant parser for human-entered prices such as ``"$0.01 / call"``."""
    match = _PRICE_RE.search(price)
    if not match:
        raise ValueError(f"Invalid price format: {price!r}")
    return parse_units(match.group(1))


def to_units(amount: int | str) -> int:
    """Normalize an amount that may already be in units.

    Integers and all-digit strings are taken as smallest-unit values;
    anything else is read as a dollar price string.
    """
    if isinstance(amount, bool):
        raise ValueError("amount must be an int or str")
    if isinstance(amount, int):
        if amount < 0:
            raise ValueError(f"amount must be non-negative, got {amount}")
        return amount
    text = amount.strip()
    if text.isdigit():
        return int(text)
    return price_string_to_units(text)


def redact(secret: str | None, keep: int = 10) -> str:
    """Shorten a signature or nonce for log output."""
    if not secret:
        return ""
    if len(secret) <= keep:
        return secret
    return secret[:keep] + "…"
