# Overview: Fixed-point money value type; integer minor units with explicit rounding.

"""
Money

All amounts in the ledger are integer minor units (cents, piastres, ...).
Floating point never enters an amount: constructors reject floats, and every
operation that divides (bonus percentages, proration) floors explicitly.

ROUNDING:
- Bonus and proration results round DOWN (floor); the ledger never grants a
  fraction it cannot account for.
- Deposit bonuses are additionally floored to a whole major unit
  (see floor_to_major_unit).
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation

from .errors import ValidationError


# Minor-unit exponent per currency; anything unlisted uses 2.
CURRENCY_EXPONENTS = {
    "EGP": 2,
    "USD": 2,
    "EUR": 2,
    "SAR": 2,
    "AED": 2,
    "KWD": 3,
    "JPY": 0,
}


def currency_exponent(currency: str) -> int:
    return CURRENCY_EXPONENTS.get(currency.upper(), 2)


def minor_per_major(currency: str) -> int:
    return 10 ** currency_exponent(currency)


def require_cents(value, field: str = "amount_cents", *, positive: bool = True) -> int:
    """
    Validate an integer minor-unit amount from a caller.

    Rejects bools, floats and numeric strings; amounts must already be ints.
    """
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{field} must be an integer number of minor units")
    if positive and value <= 0:
        raise ValidationError(f"{field} must be positive")
    return value


def parse_major(text: str, currency: str) -> int:
    """
    Parse a human amount ("450", "999.50") into minor units.

    Used by the CLI; rejects more decimal places than the currency has.
    """
    try:
        value = Decimal(str(text).strip())
    except InvalidOperation:
        raise ValidationError(f"Invalid amount: {text!r}")
    if not value.is_finite():
        raise ValidationError(f"Invalid amount: {text!r}")

    scaled = value * minor_per_major(currency)
    if scaled != scaled.to_integral_value():
        raise ValidationError(
            f"{text!r} has more precision than {currency} allows"
        )
    return int(scaled)


def format_major(cents: int, currency: str) -> str:
    exponent = currency_exponent(currency)
    sign = "-" if cents < 0 else ""
    whole, frac = divmod(abs(cents), 10 ** exponent)
    if exponent == 0:
        return f"{sign}{whole} {currency}"
    return f"{sign}{whole}.{frac:0{exponent}d} {currency}"


@dataclass(frozen=True)
class Money:
    """Integer minor-unit amount tagged with its currency."""
    cents: int
    currency: str = "EGP"

    def __post_init__(self):
        if isinstance(self.cents, bool) or not isinstance(self.cents, int):
            raise ValidationError("Money amounts must be integer minor units")

    @classmethod
    def zero(cls, currency: str = "EGP") -> "Money":
        return cls(0, currency)

    def _same_currency(self, other: "Money") -> None:
        if self.currency != other.currency:
            raise ValidationError(
                f"Currency mismatch: {self.currency} vs {other.currency}"
            )

    def __add__(self, other: "Money") -> "Money":
        self._same_currency(other)
        return Money(self.cents + other.cents, self.currency)

    def __sub__(self, other: "Money") -> "Money":
        self._same_currency(other)
        return Money(self.cents - other.cents, self.currency)

    def __neg__(self) -> "Money":
        return Money(-self.cents, self.currency)

    def __lt__(self, other: "Money") -> bool:
        self._same_currency(other)
        return self.cents < other.cents

    def __le__(self, other: "Money") -> bool:
        self._same_currency(other)
        return self.cents <= other.cents

    def __gt__(self, other: "Money") -> bool:
        self._same_currency(other)
        return self.cents > other.cents

    def __ge__(self, other: "Money") -> bool:
        self._same_currency(other)
        return self.cents >= other.cents

    def __bool__(self) -> bool:
        return self.cents != 0

    @property
    def major_units(self) -> int:
        """Whole major units, truncated toward zero."""
        per_major = minor_per_major(self.currency)
        whole = abs(self.cents) // per_major
        return -whole if self.cents < 0 else whole

    def times(self, quantity: int) -> "Money":
        if isinstance(quantity, bool) or not isinstance(quantity, int):
            raise ValidationError("quantity must be an integer")
        return Money(self.cents * quantity, self.currency)

    def percent_floor(self, percent: int) -> "Money":
        """percent% of this amount, rounded down."""
        return Money((self.cents * percent) // 100, self.currency)

    def prorate_floor(self, numerator: int, denominator: int) -> "Money":
        """self × numerator / denominator, rounded down."""
        if denominator <= 0:
            raise ValidationError("Proration period must be positive")
        return Money((self.cents * numerator) // denominator, self.currency)

    def floor_to_major_unit(self) -> "Money":
        per_major = minor_per_major(self.currency)
        return Money((self.cents // per_major) * per_major, self.currency)

    def format(self) -> str:
        return format_major(self.cents, self.currency)

    def to_dict(self) -> dict:
        return {"cents": self.cents, "currency": self.currency, "display": self.format()}
