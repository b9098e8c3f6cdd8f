# kendofund/money.py
"""
Currency helpers.

Paystack amounts are integers in the currency's minor unit (pesewas for GHS,
kobo for NGN). Everything the service exposes is in major units, as Decimal.
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Optional

MINOR_PER_MAJOR = 100
_CENT = Decimal("0.01")


def parse_amount(raw: Any) -> Optional[Decimal]:
    """Parse a JSON/form amount into a Decimal; None if not a finite number."""
    if raw is None or isinstance(raw, bool):
        return None
    try:
        value = Decimal(str(raw).strip())
    except (InvalidOperation, ValueError):
        return None
    if not value.is_finite():
        return None
    return value


def to_minor(amount: Any) -> int:
    """Major units → minor units, rounded half-up (50 → 5000)."""
    value = amount if isinstance(amount, Decimal) else Decimal(str(amount))
    return int((value * MINOR_PER_MAJOR).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor(minor: Any) -> Decimal:
    """Minor units → major units with two decimal places (5000 → 50.00)."""
    return (Decimal(int(minor or 0)) / MINOR_PER_MAJOR).quantize(_CENT, rounding=ROUND_HALF_UP)


def convert_ghs_to_usd(ghs: Decimal, rate: Decimal) -> Decimal:
    if not rate:
        return Decimal("0.00")
    return (Decimal(ghs) / Decimal(rate)).quantize(_CENT, rounding=ROUND_HALF_UP)


def convert_usd_to_ghs(usd: Decimal, rate: Decimal) -> Decimal:
    return (Decimal(usd) * Decimal(rate)).quantize(_CENT, rounding=ROUND_HALF_UP)
