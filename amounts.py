from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Union

from errors import InvalidAmount
from models import TransactionType

CENT = Decimal("0.01")


def parse_amount(
    value: Union[str, int, Decimal],
    *,
    allow_negative: bool = False,
    allow_zero: bool = False,
) -> int:
    """Parse a user supplied amount into cents.

    Accepts "12.50", "12,50", "1 234,5" and a leading currency symbol.
    Rounds half up to the nearest cent.
    """
    if isinstance(value, Decimal):
        amount = value
    else:
        clean = str(value).strip()
        for symbol in ("₹", "€", "$"):
            clean = clean.replace(symbol, "")
        clean = clean.replace(" ", "").replace(",", ".")
        if clean.count(".") > 1:
            parts = clean.split(".")
            clean = "".join(parts[:-1]) + "." + parts[-1]
        try:
            amount = Decimal(clean)
        except InvalidOperation as exc:
            raise InvalidAmount(f"Invalid amount: {value!r}") from exc

    if not amount.is_finite():
        raise InvalidAmount(f"Invalid amount: {value!r}")
    cents = int((amount / CENT).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    if cents < 0 and not allow_negative:
        raise InvalidAmount("Amount must be positive")
    if cents == 0 and not allow_zero:
        raise InvalidAmount("Amount must be positive")
    return cents


def ensure_positive_amount(cents: int) -> int:
    if isinstance(cents, bool) or not isinstance(cents, int) or cents <= 0:
        raise InvalidAmount("Amount must be positive")
    return cents


def signed_amount(kind: TransactionType, cents: int) -> int:
    return cents if kind == TransactionType.income else -cents


def cents_to_decimal(cents: int) -> Decimal:
    return (Decimal(cents) * CENT).quantize(CENT)


def format_amount(cents: int) -> str:
    return f"{cents_to_decimal(cents):,.2f}"
