from decimal import ROUND_DOWN, Decimal, InvalidOperation

from app.modules.allowance.errors import InvalidAmount

MONEY_QUANTUM = Decimal("0.01")
# Largest value a Numeric(12, 2) column holds.
MAX_MONEY = Decimal("9999999999.99")


def ParseMoney(value, field: str = "Amount", allow_zero: bool = False) -> Decimal:
    if value is None or isinstance(value, bool):
        raise InvalidAmount(f"{field} is required")
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except (InvalidOperation, ValueError) as exc:
        raise InvalidAmount(f"{field} must be a number") from exc

    if not amount.is_finite():
        raise InvalidAmount(f"{field} must be a number")
    if amount < 0 or (amount == 0 and not allow_zero):
        qualifier = "zero or more" if allow_zero else "greater than zero"
        raise InvalidAmount(f"{field} must be {qualifier}")
    if amount > MAX_MONEY:
        raise InvalidAmount(f"{field} is too large")
    if amount != amount.quantize(MONEY_QUANTUM, rounding=ROUND_DOWN):
        raise InvalidAmount(f"{field} cannot have more than 2 decimal places")
    return amount.quantize(MONEY_QUANTUM)


def ToMoney(value) -> Decimal:
    if value is None:
        return Decimal("0.00")
    return Decimal(value).quantize(MONEY_QUANTUM)
