"""
Value Objects - Immutable Domain Concepts

Value objects have no identity - two value objects are equal if their values are equal.

Example:
- Money(9.99, "USD") == Money(9.99, "USD") ✓
- Money(9.99, "USD") + Money(9.99, "EUR") → CurrencyMismatchError ✗
"""

from __future__ import annotations

import calendar
import re
from datetime import date
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum

from pydantic import BaseModel, ConfigDict, field_validator

from subscription_billing.domain.exceptions import CurrencyMismatchError, ValidationError

CENTS = Decimal("0.01")


class Currency(str, Enum):
    """ISO 4217 currency codes."""
    USD = "USD"
    EUR = "EUR"
    GBP = "GBP"
    JPY = "JPY"
    CAD = "CAD"
    AUD = "AUD"
    CHF = "CHF"
    CNY = "CNY"
    MXN = "MXN"


DEFAULT_CURRENCY = Currency.EUR


class Money(BaseModel):
    """
    Money value object with currency.

    Amounts are arbitrary-precision decimals kept at two decimal places.
    Negative amounts are legal domain data (refunds) and never rejected.
    """

    model_config = ConfigDict(frozen=True)

    amount: Decimal
    currency: Currency

    @field_validator("amount")
    @classmethod
    def quantize_amount(cls, v: Decimal) -> Decimal:
        return v.quantize(CENTS, rounding=ROUND_HALF_UP)

    @classmethod
    def of(
        cls, amount: Decimal | int | float | str, currency: Currency | str = DEFAULT_CURRENCY
    ) -> Money:
        if amount is None:
            raise ValidationError("Money amount cannot be None")
        if isinstance(amount, float):
            amount = str(amount)
        return cls(amount=Decimal(amount), currency=currency)

    @classmethod
    def zero(cls, currency: Currency | str = DEFAULT_CURRENCY) -> Money:
        return cls(amount=Decimal("0"), currency=currency)

    def _require_same_currency(self, other: Money, operation: str) -> None:
        if self.currency != other.currency:
            raise CurrencyMismatchError(
                self.currency.value, other.currency.value, operation
            )

    def add(self, other: Money) -> Money:
        self._require_same_currency(other, "add")
        return Money(amount=self.amount + other.amount, currency=self.currency)

    def subtract(self, other: Money) -> Money:
        self._require_same_currency(other, "subtract")
        return Money(amount=self.amount - other.amount, currency=self.currency)

    def multiply(self, factor: Decimal | int) -> Money:
        """Multiply by a scalar (e.g. number of billing periods)."""
        return Money(amount=self.amount * Decimal(factor), currency=self.currency)

    def divide(self, divisor: Decimal | int) -> Money:
        divisor = Decimal(divisor)
        if divisor == 0:
            raise ZeroDivisionError("Cannot divide money by zero")
        return Money(amount=self.amount / divisor, currency=self.currency)

    def negate(self) -> Money:
        return Money(amount=-self.amount, currency=self.currency)

    def abs(self) -> Money:
        return Money(amount=abs(self.amount), currency=self.currency)

    def is_positive(self) -> bool:
        return self.amount > 0

    def is_negative(self) -> bool:
        return self.amount < 0

    def is_zero(self) -> bool:
        return self.amount == 0

    def is_greater_than(self, other: Money) -> bool:
        self._require_same_currency(other, "compare")
        return self.amount > other.amount

    def is_less_than(self, other: Money) -> bool:
        self._require_same_currency(other, "compare")
        return self.amount < other.amount

    __add__ = add
    __sub__ = subtract

    def __neg__(self) -> Money:
        return self.negate()

    def __eq__(self, other: object) -> bool:
        """Value equality."""
        if not isinstance(other, Money):
            return False
        return self.amount == other.amount and self.currency == other.currency

    def __hash__(self) -> int:
        return hash((self.amount, self.currency))

    def __lt__(self, other: Money) -> bool:
        return self.is_less_than(other)

    def __le__(self, other: Money) -> bool:
        self._require_same_currency(other, "compare")
        return self.amount <= other.amount

    def __gt__(self, other: Money) -> bool:
        return self.is_greater_than(other)

    def __ge__(self, other: Money) -> bool:
        self._require_same_currency(other, "compare")
        return self.amount >= other.amount

    def __str__(self) -> str:
        return f"{self.amount} {self.currency.value}"

    def __repr__(self) -> str:
        return f"Money({self.amount}, {self.currency.value})"


class PaymentMethodType(str, Enum):
    """Card rails supported for subscriptions."""
    CREDIT_CARD = "credit_card"
    DEBIT_CARD = "debit_card"


class PaymentMethod(BaseModel):
    """
    Card payment method on file with the provider.

    Only the provider token and the last four digits are kept; the card
    number itself never reaches this service.
    """

    model_config = ConfigDict(frozen=True)

    type: PaymentMethodType
    external_token: str
    last_four_digits: str

    @field_validator("external_token")
    @classmethod
    def validate_token(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("External token cannot be empty")
        return v.strip()

    @field_validator("last_four_digits")
    @classmethod
    def validate_last_four(cls, v: str) -> str:
        if not re.fullmatch(r"\d{4}", v or ""):
            raise ValueError("Last 4 digits must be exactly 4 numeric characters")
        return v

    @property
    def masked_display(self) -> str:
        return f"{self.type.name} ****{self.last_four_digits}"

    def __str__(self) -> str:
        return self.masked_display


class SubscriptionType(str, Enum):
    """Plan tier, which also fixes the billing period length."""
    MONTHLY = "monthly"
    ANNUAL = "annual"

    @property
    def period_months(self) -> int:
        return 12 if self is SubscriptionType.ANNUAL else 1

    @property
    def is_annual(self) -> bool:
        return self is SubscriptionType.ANNUAL

    @classmethod
    def from_string(cls, value: str) -> SubscriptionType:
        if value is None:
            raise ValidationError("Subscription type cannot be None")
        try:
            return cls(value.strip().lower())
        except ValueError:
            raise ValidationError(f"Unknown subscription type: {value}") from None


def add_months(value: date, months: int) -> date:
    """Shift a date by whole months, clamping to the end of shorter months."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def months_between(start: date, end: date) -> int:
    """Whole months elapsed from start to end (0 if end precedes start)."""
    months = (end.year - start.year) * 12 + (end.month - start.month)
    if end.day < start.day:
        months -= 1
    return max(months, 0)
