"""Tests for fixed-point money and rate parsing."""

from decimal import Decimal

import pytest

from loanbook.services.ledger.errors import LedgerValidationError
from loanbook.services.ledger.money import (
    money_str,
    non_negative_money,
    percentage,
    positive_money,
    to_money,
    to_rate,
)


class TestParsing:

    def test_string_is_quantized_to_cents(self):
        assert to_money("1234.565") == Decimal("1234.57")

    def test_thousands_separator_is_accepted(self):
        assert to_money("1,000,000") == Decimal("1000000.00")

    def test_int_is_accepted(self):
        assert to_money(250) == Decimal("250.00")

    def test_float_is_rejected(self):
        with pytest.raises(LedgerValidationError) as exc:
            to_money(0.1)
        assert exc.value.field == "amount"

    def test_bool_is_rejected(self):
        with pytest.raises(LedgerValidationError):
            to_money(True)

    def test_garbage_is_rejected(self):
        with pytest.raises(LedgerValidationError):
            to_money("ten riyals")

    def test_infinity_is_rejected(self):
        with pytest.raises(LedgerValidationError):
            to_money("Infinity")

    def test_rate_keeps_four_places(self):
        assert to_rate("5.12345") == Decimal("5.1235")

    @pytest.mark.parametrize("value", ["1e30", "-1e30", "10000000000000", "1e400000000"])
    def test_oversized_amount_is_rejected(self, value):
        with pytest.raises(LedgerValidationError) as exc:
            to_money(value)
        assert exc.value.field == "amount"

    def test_largest_storable_amount_is_accepted(self):
        assert to_money("9999999999999.99") == Decimal("9999999999999.99")

    def test_oversized_rate_is_rejected(self):
        with pytest.raises(LedgerValidationError):
            to_rate("1e30", "sibor_rate")


class TestSignChecks:

    def test_positive_rejects_zero(self):
        with pytest.raises(LedgerValidationError):
            positive_money("0")

    def test_positive_rejects_sub_cent_amount(self):
        # Rounds to 0.00
        with pytest.raises(LedgerValidationError):
            positive_money("0.004")

    def test_non_negative_allows_zero(self):
        assert non_negative_money("0") == Decimal("0.00")

    def test_non_negative_rejects_negative(self):
        with pytest.raises(LedgerValidationError):
            non_negative_money("-1")


class TestPercentage:

    def test_basic_ratio(self):
        assert percentage(Decimal("400000"), Decimal("1000000")) == Decimal("40.00")

    def test_zero_denominator_gives_zero(self):
        assert percentage(Decimal("100"), Decimal("0")) == Decimal("0.00")

    def test_rounds_half_up(self):
        assert percentage(Decimal("1"), Decimal("3")) == Decimal("33.33")
        assert percentage(Decimal("2"), Decimal("3")) == Decimal("66.67")


def test_money_str():
    assert money_str(Decimal("5")) == "5.00"
    assert money_str(None) is None
