import math
from decimal import Decimal, InvalidOperation
from typing import Optional

# Ten integer digits, the limit of the Numeric(12, 2) money columns.
MAX_AMOUNT = Decimal(10) ** 10


def to_finite_number(value: object) -> Optional[float]:
    """Convert a database or user value to a finite float.

    Numeric columns come back as ``Decimal`` and JSON payloads may carry
    strings, so anything ``float()`` accepts is taken. Returns ``None`` for
    missing, unparsable, NaN or infinite values.
    """
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number):
        return None
    return number


def safe_number(value: object) -> float:
    number = to_finite_number(value)
    return 0.0 if number is None else number


def parse_amount(value: object) -> Decimal:
    """Parse a user-entered amount; accepts ``,`` as decimal separator.

    Amounts must fit a ``Numeric(12, 2)`` column: at most ten integer digits.
    """
    if isinstance(value, bool):
        raise ValueError("Invalid amount")
    if isinstance(value, (int, float, Decimal)):
        clean = str(value)
    elif isinstance(value, str):
        clean = value.strip().replace(" ", "").replace(",", ".")
    else:
        raise ValueError("Invalid amount")
    try:
        amount = Decimal(clean)
    except InvalidOperation as exc:
        raise ValueError("Invalid amount") from exc
    if not amount.is_finite():
        raise ValueError("Invalid amount")
    try:
        amount = amount.quantize(Decimal("0.01"))
    except InvalidOperation as exc:
        raise ValueError("Invalid amount") from exc
    if abs(amount) >= MAX_AMOUNT:
        raise ValueError("Invalid amount")
    return amount
