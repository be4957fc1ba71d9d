"""
Fixed-point currency value.

Amounts are held as integer minor units (centavos). Conversions from pesos
and every fractional multiplication round half away from zero.
"""
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP

CURRENCY = "PHP"
MINOR_PER_MAJOR = 100


@dataclass(frozen=True, order=True)
class Money:
    cents: int
    currency: str = CURRENCY

    def __post_init__(self):
        if not isinstance(self.cents, int) or isinstance(self.cents, bool):
            raise TypeError(f"Money needs integer minor units, got {self.cents!r}")

    @classmethod
    def zero(cls) -> "Money":
        return cls(0)

    @classmethod
    def from_major(cls, amount: Decimal | int | str) -> "Money":
        """Pesos -> Money. Floats are rejected; pass a Decimal or string."""
        if isinstance(amount, float):
            raise TypeError("Use Decimal or str for money, not float")
        cents = (Decimal(amount) * MINOR_PER_MAJOR).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
        return cls(int(cents))

    def to_major(self) -> Decimal:
        return (Decimal(self.cents) / MINOR_PER_MAJOR).quantize(Decimal("0.01"))

    def _check(self, other: "Money") -> None:
        if not isinstance(other, Money):
            raise TypeError(f"Expected Money, got {type(other).__name__}")
        if other.currency != self.currency:
            raise ValueError(f"Currency mismatch: {self.currency} vs {other.currency}")

    def __add__(self, other: "Money") -> "Money":
        self._check(other)
        return Money(self.cents + other.cents, self.currency)

    def __sub__(self, other: "Money") -> "Money":
        self._check(other)
        return Money(self.cents - other.cents, self.currency)

    def __mul__(self, factor: int) -> "Money":
        if not isinstance(factor, int) or isinstance(factor, bool):
            raise TypeError("Money can only be multiplied by an integer; use scale() for rates")
        return Money(self.cents * factor, self.currency)

    __rmul__ = __mul__

    def scale(self, rate: Decimal | str) -> "Money":
        """Multiply by a fractional rate, rounding the result to whole centavos."""
        exact = Decimal(self.cents) * Decimal(rate)
        return Money(int(exact.quantize(Decimal("1"), rounding=ROUND_HALF_UP)), self.currency)

    def __str__(self) -> str:
        return f"{self.currency} {self.to_major():,.2f}"
