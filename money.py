"""Exact monetary amounts in integer minor units.

Amounts are stored and summed as ``int``; ``Decimal`` only appears at the
display edge (``to_major_units``/``format``) and when parsing user input in
major units. Floats are accepted on construction only when they hold an exact
integer, so no fractional minor unit is ever truncated silently.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Iterable, Optional, Union

from config import get_settings


MINOR_UNIT_DIGITS = 2
_MINOR_PER_MAJOR = 10**MINOR_UNIT_DIGITS

CURRENCY_SYMBOLS = {
    "INR": "₹",
    "USD": "$",
    "EUR": "€",
    "GBP": "£",
}


class InvalidAmount(ValueError):
    pass


def _coerce_minor(value: object) -> int:
    if isinstance(value, bool):
        raise InvalidAmount(f"Invalid amount: {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if not math.isfinite(value) or not value.is_integer():
            raise InvalidAmount(f"Amount must be a whole number of minor units: {value!r}")
        return int(value)
    if isinstance(value, Decimal):
        if not value.is_finite() or value != value.to_integral_value():
            raise InvalidAmount(f"Amount must be a whole number of minor units: {value!r}")
        return int(value)
    raise InvalidAmount(f"Invalid amount type: {type(value).__name__}")


@dataclass(frozen=True, order=True)
class Money:
    amount: int

    def __post_init__(self) -> None:
        object.__setattr__(self, "amount", _coerce_minor(self.amount))

    @classmethod
    def zero(cls) -> "Money":
        return cls(0)

    @classmethod
    def total(cls, amounts: Iterable["Money"]) -> "Money":
        return cls(sum(m.amount for m in amounts))

    @classmethod
    def from_major(cls, value: Union[Decimal, str, int]) -> "Money":
        if isinstance(value, float):
            raise InvalidAmount("Major-unit amounts must be given as Decimal or str")
        try:
            major = Decimal(str(value).strip())
        except InvalidOperation as exc:
            raise InvalidAmount(f"Invalid amount: {value!r}") from exc
        if not major.is_finite():
            raise InvalidAmount(f"Invalid amount: {value!r}")
        minor = major * _MINOR_PER_MAJOR
        if minor != minor.to_integral_value():
            raise InvalidAmount(
                f"Amount {value!r} has more than {MINOR_UNIT_DIGITS} decimal places"
            )
        return cls(int(minor))

    def add(self, other: "Money") -> "Money":
        return Money(self.amount + other.amount)

    def subtract(self, other: "Money") -> "Money":
        return Money(self.amount - other.amount)

    def __add__(self, other: "Money") -> "Money":
        if not isinstance(other, Money):
            return NotImplemented
        return self.add(other)

    def __sub__(self, other: "Money") -> "Money":
        if not isinstance(other, Money):
            return NotImplemented
        return self.subtract(other)

    def __neg__(self) -> "Money":
        return Money(-self.amount)

    def __bool__(self) -> bool:
        return self.amount != 0

    def to_major_units(self) -> Decimal:
        return Decimal(self.amount).scaleb(-MINOR_UNIT_DIGITS)

    def format(self, locale: Optional[str] = None, currency: Optional[str] = None) -> str:
        settings = get_settings()
        locale = (locale or settings.locale).replace("_", "-")
        currency = (currency or settings.currency_code).upper()
        symbol = CURRENCY_SYMBOLS.get(currency, currency + " ")

        whole, fraction = divmod(abs(self.amount), _MINOR_PER_MAJOR)
        if locale.lower() == "en-in":
            digits = _group_indian(whole)
        else:
            digits = f"{whole:,}"
        sign = "-" if self.amount < 0 else ""
        return f"{sign}{symbol}{digits}.{fraction:0{MINOR_UNIT_DIGITS}d}"

    def __str__(self) -> str:
        return self.format()


def _group_indian(whole: int) -> str:
    text = str(whole)
    if len(text) <= 3:
        return text
    head, tail = text[:-3], text[-3:]
    groups = []
    while len(head) > 2:
        groups.insert(0, head[-2:])
        head = head[:-2]
    if head:
        groups.insert(0, head)
    return ",".join(groups + [tail])
