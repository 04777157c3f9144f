from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Union

CENT = Decimal("0.01")


def to_cents(amount: Union[Decimal, int, str]) -> int:
    value = Decimal(str(amount))
    if not value.is_finite():
        raise ValueError("Invalid amount")
    return int((value * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_cents(cents: int) -> Decimal:
    return (Decimal(cents) / 100).quantize(CENT)


def parse_amount(value: str, *, allow_negative: bool = False) -> int:
    clean = (
        value.strip()
        .replace("€", "")
        .replace("$", "")
        .replace("£", "")
        .replace(" ", "")
        .replace("\u00a0", "")
        .replace("\u202f", "")
    )
    clean = clean.replace(",", ".")
    if clean.count(".") > 1:
        parts = clean.split(".")
        clean = "".join(parts[:-1]) + "." + parts[-1]
    try:
        amount = Decimal(clean)
    except InvalidOperation as exc:
        raise ValueError("Invalid amount") from exc
    cents = to_cents(amount)
    if cents < 0 and not allow_negative:
        raise ValueError("Amount must be positive")
    return cents
