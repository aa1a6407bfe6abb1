"""
Money value object tests.

Amounts are decimals kept at two places; every binary operation refuses to
mix currencies.
"""
from decimal import Decimal

import pytest
from pydantic import ValidationError as PydanticValidationError

from subscription_billing.domain.exceptions import CurrencyMismatchError, ValidationError
from subscription_billing.domain.value_objects import Currency, Money


class TestMoneyConstruction:
    def test_amount_is_rounded_half_up_to_cents(self):
        assert Money.of("9.995", "USD").amount == Decimal("10.00")
        assert Money.of("9.994", "USD").amount == Decimal("9.99")

    def test_float_goes_through_its_string_form(self):
        assert Money.of(9.99, "USD").amount == Decimal("9.99")

    def test_default_currency_is_eur(self):
        assert Money.of(5).currency is Currency.EUR
        assert Money.zero().currency is Currency.EUR

    def test_none_amount_is_rejected(self):
        with pytest.raises(ValidationError):
            Money.of(None, "USD")

    def test_unknown_currency_is_rejected(self):
        with pytest.raises(PydanticValidationError):
            Money.of("1.00", "XXX")

    def test_negative_amounts_are_allowed(self):
        refund = Money.of("-4.50", "USD")
        assert refund.is_negative()
        assert refund.abs() == Money.of("4.50", "USD")

    def test_is_immutable(self):
        money = Money.of("1.00", "USD")
        with pytest.raises(PydanticValidationError):
            money.amount = Decimal("2.00")


class TestMoneyArithmetic:
    def test_add_same_currency(self):
        assert Money.of("9.99", "USD") + Money.of("0.01", "USD") == Money.of("10.00", "USD")

    def test_add_is_commutative_and_associative(self):
        a, b, c = Money.of("1.10", "USD"), Money.of("2.25", "USD"), Money.of("-0.35", "USD")
        assert a.add(b) == b.add(a)
        assert (a + b) + c == a + (b + c)

    def test_subtract(self):
        assert Money.of("10", "EUR") - Money.of("2.50", "EUR") == Money.of("7.50", "EUR")

    @pytest.mark.parametrize("operation", ["add", "subtract"])
    def test_mismatched_currencies_fail(self, operation):
        usd, eur = Money.of("1", "USD"), Money.of("1", "EUR")
        with pytest.raises(CurrencyMismatchError):
            getattr(usd, operation)(eur)

    def test_currency_mismatch_is_a_value_error(self):
        with pytest.raises(ValueError):
            Money.of("1", "USD") + Money.of("1", "GBP")

    def test_multiply_and_divide(self):
        monthly = Money.of("9.99", "USD")
        assert monthly.multiply(12) == Money.of("119.88", "USD")
        assert Money.of("10", "USD").divide(3) == Money.of("3.33", "USD")

    def test_divide_by_zero(self):
        with pytest.raises(ZeroDivisionError):
            Money.of("10", "USD").divide(0)

    def test_negate(self):
        assert -Money.of("3", "USD") == Money.of("-3", "USD")


class TestMoneyComparison:
    def test_value_equality_and_hash(self):
        assert Money.of("1", "USD") == Money.of("1.00", "USD")
        assert Money.of("1", "USD") != Money.of("1", "EUR")
        assert len({Money.of("1", "USD"), Money.of("1.00", "USD")}) == 1

    def test_ordering(self):
        small, large = Money.of("1", "USD"), Money.of("2", "USD")
        assert small < large
        assert large >= small
        assert large.is_greater_than(small)
        assert small.is_less_than(large)

    def test_ordering_across_currencies_fails(self):
        with pytest.raises(CurrencyMismatchError):
            Money.of("1", "USD") < Money.of("2", "EUR")

    def test_predicates(self):
        assert Money.zero("USD").is_zero()
        assert Money.of("0.01", "USD").is_positive()

    def test_str(self):
        assert str(Money.of("9.99", "USD")) == "9.99 USD"
