"""Fixed-point money.

Amounts are held as an integer count of minor units (cents) plus an ISO 4217
code.  Binary floats are refused at every entry point; scaling goes through
``Decimal`` with ROUND_HALF_UP to the nearest minor unit.
"""

from __future__ import annotations

import decimal
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from fractions import Fraction
from functools import total_ordering
from typing import Iterable, Union

from errors import MoneyArithmeticError, ValidationError

# Storage is a signed 64-bit BIGINT column.
MAX_MINOR_UNITS = 2**63 - 1

# Currencies without a minor unit; everything else uses cents.
_ZERO_DECIMAL_CURRENCIES = {"JPY", "KRW", "CLP", "VND", "PYG"}

Number = Union[int, Decimal]


def _exponent(currency: str) -> int:
    return 0 if currency in _ZERO_DECIMAL_CURRENCIES else 2


def _check_range(cents: int) -> int:
    if abs(cents) > MAX_MINOR_UNITS:
        raise MoneyArithmeticError(
            "Money overflow", details={"minor_units": str(cents)}
        )
    return cents


def _as_decimal(value, what: str) -> Decimal:
    if isinstance(value, float):
        raise ValidationError(f"{what} must not be a float", details={"value": repr(value)})
    if isinstance(value, bool):
        raise ValidationError(f"{what} must be numeric", details={"value": repr(value)})
    if isinstance(value, Decimal):
        if not value.is_finite():
            raise ValidationError(f"{what} must be finite", details={"value": str(value)})
        return value
    if isinstance(value, (int, str)):
        try:
            result = Decimal(value)
        except decimal.InvalidOperation:
            raise ValidationError(f"{what} is not a number", details={"value": value})
        if not result.is_finite():
            raise ValidationError(f"{what} must be finite", details={"value": value})
        return result
    raise ValidationError(f"{what} must be numeric", details={"value": repr(value)})


def _round_half_up(value: Decimal) -> int:
    with decimal.localcontext() as ctx:
        ctx.prec = 60
        return int(value.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def normalize_currency(code) -> str:
    code = (code or "").strip().upper()
    if len(code) != 3 or not code.isalpha():
        raise ValidationError("Currency must be a 3-letter ISO code", details={"currency": code})
    return code


@total_ordering
@dataclass(frozen=True)
class Money:
    cents: int
    currency: str

    def __post_init__(self):
        if isinstance(self.cents, bool) or not isinstance(self.cents, int):
            raise ValidationError(
                "Money minor units must be an integer", details={"value": repr(self.cents)}
            )
        object.__setattr__(self, "currency", normalize_currency(self.currency))
        _check_range(self.cents)

    # -- construction -------------------------------------------------------

    @classmethod
    def zero(cls, currency: str) -> "Money":
        return cls(0, currency)

    @classmethod
    def from_decimal(cls, amount, currency: str) -> "Money":
        """Build from a major-unit amount (``Decimal("50.00")``, ``"50"``, ``50``).

        Amounts finer than the currency's minor unit are rejected rather than
        rounded, so user input is never silently altered.
        """
        value = _as_decimal(amount, "Amount")
        currency = normalize_currency(currency)
        with decimal.localcontext() as ctx:
            ctx.prec = 60
            scaled = value.scaleb(_exponent(currency))
            if scaled != scaled.to_integral_value():
                raise ValidationError(
                    "Amount has more decimal places than the currency allows",
                    details={"amount": str(value), "currency": currency},
                )
            return cls(_check_range(int(scaled)), currency)

    parse = from_decimal

    def to_decimal(self) -> Decimal:
        return Decimal(self.cents).scaleb(-_exponent(self.currency))

    # -- arithmetic ---------------------------------------------------------

    def _same_currency(self, other) -> None:
        if not isinstance(other, Money):
            raise MoneyArithmeticError(
                "Money can only be combined with Money", details={"other": repr(other)}
            )
        if other.currency != self.currency:
            raise MoneyArithmeticError(
                "Currency mismatch",
                details={"left": self.currency, "right": other.currency},
            )

    def __add__(self, other: "Money") -> "Money":
        self._same_currency(other)
        return Money(_check_range(self.cents + other.cents), self.currency)

    def __sub__(self, other: "Money") -> "Money":
        self._same_currency(other)
        return Money(_check_range(self.cents - other.cents), self.currency)

    def __neg__(self) -> "Money":
        return Money(-self.cents, self.currency)

    def __abs__(self) -> "Money":
        return Money(abs(self.cents), self.currency)

    def times(self, factor: Number) -> "Money":
        """Multiply by a unitless quantity, rounding half-up to the minor unit."""
        factor = _as_decimal(factor, "Quantity")
        with decimal.localcontext() as ctx:
            ctx.prec = 60
            return Money(_check_range(_round_half_up(Decimal(self.cents) * factor)), self.currency)

    def percent(self, pct: Number) -> "Money":
        """Return *pct* percent of this amount (``percent(10)`` is a tenth)."""
        pct = _as_decimal(pct, "Percentage")
        with decimal.localcontext() as ctx:
            ctx.prec = 60
            return self.times(pct / Decimal(100))

    def __truediv__(self, other: "Money") -> Fraction:
        self._same_currency(other)
        if other.cents == 0:
            raise MoneyArithmeticError("Division by a zero amount")
        return Fraction(self.cents, other.cents)

    # -- comparison ---------------------------------------------------------

    def __lt__(self, other: "Money") -> bool:
        self._same_currency(other)
        return self.cents < other.cents

    def is_zero(self) -> bool:
        return self.cents == 0

    def is_positive(self) -> bool:
        return self.cents > 0

    def is_negative(self) -> bool:
        return self.cents < 0

    # -- presentation -------------------------------------------------------

    def __str__(self) -> str:
        exp = _exponent(self.currency)
        return f"{self.currency} {self.to_decimal():.{exp}f}"

    def to_dict(self) -> dict:
        exp = _exponent(self.currency)
        return {
            "amount": f"{self.to_decimal():.{exp}f}",
            "minor_units": self.cents,
            "currency": self.currency,
        }


def sum_money(amounts: Iterable[Money], currency: str) -> Money:
    """Sum *amounts*; an empty iterable yields zero in *currency*."""
    total = Money.zero(currency)
    for amount in amounts:
        total = total + amount
    return total


def progress_percent(part: Money, whole: Money) -> Decimal:
    """Share of *whole* covered by *part*, as a percentage with two decimals.

    A zero *whole* counts as fully covered.
    """
    if whole.is_zero():
        part._same_currency(whole)
        return Decimal("100.00")
    ratio = part / whole
    with decimal.localcontext() as ctx:
        ctx.prec = 60
        value = Decimal(ratio.numerator) * 100 / Decimal(ratio.denominator)
        return value.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
