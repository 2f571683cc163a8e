from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Iterable, Optional

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def r2(x) -> Decimal:
    """Round to cents, half-up."""
    return dec(x).quantize(CENT, rounding=ROUND_HALF_UP)


def dec(x) -> Decimal:
    if isinstance(x, Decimal):
        return x
    if x is None:
        return ZERO
    # str() first so floats don't drag their binary noise in
    return Decimal(str(x))


def parse_dec(x) -> Optional[Decimal]:
    """Lenient parse for request payloads; None for blanks, garbage, NaN and infinities."""
    if x is None or x == "":
        return None
    try:
        d = Decimal(str(x).strip())
    except (InvalidOperation, ValueError):
        return None
    return d if d.is_finite() else None


def is_blank(x) -> bool:
    return x is None or (isinstance(x, str) and not x.strip())


def total(amounts: Iterable) -> Decimal:
    return sum((dec(a) for a in amounts), ZERO)


def money_str(x) -> Optional[str]:
    return None if x is None else str(r2(x))
