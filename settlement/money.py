# settlement/money.py
from decimal import Decimal, ROUND_DOWN, ROUND_HALF_UP, InvalidOperation

from models import Currency

# Both supported currencies settle in hundredths (kobo / cents)
MINOR_UNITS = {
    Currency.NAIRA.value: 100,
    Currency.USDT.value: 100,
}

CURRENCY_SYMBOLS = {
    Currency.NAIRA.value: "₦",
    Currency.USDT.value: "$",
}


def supported_currency(currency: str) -> bool:
    return currency in MINOR_UNITS


def to_minor(value, currency: str = Currency.NAIRA.value) -> int:
    """Convert a major-unit amount ("1500.50", 1500, Decimal) to integer minor units."""
    if currency not in MINOR_UNITS:
        raise ValueError(f"Unsupported currency: {currency}")
    if isinstance(value, float):
        value = str(value)
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError) as e:
        raise ValueError(f"Invalid amount: {value!r}") from e
    if not amount.is_finite():
        raise ValueError(f"Invalid amount: {value!r}")
    minor = (amount * MINOR_UNITS[currency]).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return int(minor)


def from_minor(amount: int, currency: str = Currency.NAIRA.value) -> Decimal:
    scale = MINOR_UNITS.get(currency, 100)
    return (Decimal(int(amount or 0)) / Decimal(scale)).quantize(Decimal("0.01"))


def percent_of(amount: int, percent, rounding=ROUND_DOWN) -> int:
    """`amount × percent / 100` in minor units, rounded to a whole minor unit."""
    value = Decimal(int(amount)) * Decimal(str(percent)) / Decimal("100")
    return int(value.quantize(Decimal("1"), rounding=rounding))


def format_amount(amount: int, currency: str = Currency.NAIRA.value) -> str:
    symbol = CURRENCY_SYMBOLS.get(currency, "")
    return f"{symbol}{from_minor(amount, currency):,.2f}"
