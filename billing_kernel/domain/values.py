"""
Values -- Currency and Money for invoice arithmetic.

Responsibility:
    Every line price, invoice total, and payment amount in the domain layer
    is a Money.  Bare Decimal only appears at the ORM boundary.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.  Used by the ledger,
    the pricing lookups, and the config validator (currency codes).

Invariants enforced:
    - Amounts are Decimal; floats are rejected outright.
    - Currency codes are three ASCII letters, stored uppercase.
    - Adding, subtracting, or ordering two amounts requires one currency.
    - Nothing rounds implicitly; ``round()`` is an explicit step.

Failure modes:
    - ValueError: bad amount, bad currency code, or mixed currencies.
    - TypeError: currency given as something other than str / Currency.
"""

from __future__ import annotations

import functools
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

Scalar = Decimal | int | str


def _to_decimal(value: Scalar) -> Decimal:
    if isinstance(value, float):
        raise ValueError(f"Money amount must not be float: {value!r}")
    if isinstance(value, bool):
        raise ValueError(f"Invalid amount: {value!r}")
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError) as e:
        raise ValueError(f"Invalid amount: {value!r}") from e


@dataclass(frozen=True, slots=True)
class Currency:
    """Three-letter currency code (``"usd"`` is stored as ``"USD"``).

    Not checked against the ISO 4217 registry; there is no conversion.
    """

    code: str

    def __post_init__(self) -> None:
        code = (self.code or "").strip().upper()
        if len(code) != 3 or not (code.isascii() and code.isalpha()):
            raise ValueError(f"Invalid ISO 4217 currency code: {self.code}")
        object.__setattr__(self, "code", code)

    def __str__(self) -> str:
        return self.code


@functools.total_ordering
@dataclass(frozen=True, slots=True)
class Money:
    """An amount bound to its currency.

    Scalar multiplication and division (quantity, tax rate) keep full
    precision; call ``round()`` to quantize to cents.
    """

    amount: Decimal
    currency: Currency

    def __post_init__(self) -> None:
        object.__setattr__(self, "amount", _to_decimal(self.amount))
        if isinstance(self.currency, str):
            object.__setattr__(self, "currency", Currency(self.currency))
        elif not isinstance(self.currency, Currency):
            raise TypeError(f"currency must be Currency or str, got {type(self.currency)}")

    @classmethod
    def of(cls, amount: Scalar, currency: str | Currency) -> Money:
        return cls(_to_decimal(amount), currency)

    @classmethod
    def zero(cls, currency: str | Currency) -> Money:
        return cls(Decimal("0"), currency)

    @property
    def is_zero(self) -> bool:
        return self.amount == 0

    @property
    def is_positive(self) -> bool:
        return self.amount > 0

    @property
    def is_negative(self) -> bool:
        return self.amount < 0

    def round(self, places: int = 2, rounding: str = ROUND_HALF_UP) -> Money:
        """Quantize to ``places`` decimals (half-up by default)."""
        exponent = Decimal(1).scaleb(-places)
        return Money(self.amount.quantize(exponent, rounding=rounding), self.currency)

    # ------------------------------------------------------------------
    # Arithmetic
    # ------------------------------------------------------------------

    def _same_currency(self, other: Money, operation: str) -> None:
        if self.currency != other.currency:
            raise ValueError(
                f"Cannot {operation} amounts in different currencies: "
                f"{self.currency} and {other.currency}"
            )

    def __add__(self, other: Money) -> Money:
        if not isinstance(other, Money):
            return NotImplemented
        self._same_currency(other, "add")
        return Money(self.amount + other.amount, self.currency)

    def __sub__(self, other: Money) -> Money:
        if not isinstance(other, Money):
            return NotImplemented
        self._same_currency(other, "subtract")
        return Money(self.amount - other.amount, self.currency)

    def __neg__(self) -> Money:
        return Money(-self.amount, self.currency)

    def __mul__(self, factor: Scalar) -> Money:
        if not isinstance(factor, (Decimal, int, str)) or isinstance(factor, bool):
            return NotImplemented
        return Money(self.amount * _to_decimal(factor), self.currency)

    __rmul__ = __mul__

    def __truediv__(self, divisor: Scalar) -> Money:
        if not isinstance(divisor, (Decimal, int, str)) or isinstance(divisor, bool):
            return NotImplemented
        return Money(self.amount / _to_decimal(divisor), self.currency)

    def __lt__(self, other: Money) -> bool:
        if not isinstance(other, Money):
            return NotImplemented
        self._same_currency(other, "compare")
        return self.amount < other.amount

    def __str__(self) -> str:
        return f"{self.amount} {self.currency}"

    def __repr__(self) -> str:
        return f"Money({self.amount!r}, {self.currency.code!r})"
