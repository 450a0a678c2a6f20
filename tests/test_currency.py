"""Tests for token/fiat conversion — rounding and tolerance of bad input."""

from decimal import Decimal

from recyclemart.currency import (
    TOKEN_TO_FIAT_RATE,
    exchange_rate_info,
    fiat_to_token,
    token_to_fiat,
)


class TestTokenToFiat:
    def test_rate_is_product_of_legs(self) -> None:
        assert TOKEN_TO_FIAT_RATE == Decimal("1.125")

    def test_converts_and_rounds_to_cents(self) -> None:
        assert token_to_fiat(Decimal("10")) == Decimal("11.25")
        assert token_to_fiat(Decimal("33.08")) == Decimal("37.22")

    def test_accepts_strings_and_ints(self) -> None:
        assert token_to_fiat("4") == Decimal("4.50")
        assert token_to_fiat(2) == Decimal("2.25")

    def test_missing_input_is_zero(self) -> None:
        assert token_to_fiat(None) == Decimal("0.00")
        assert token_to_fiat("") == Decimal("0.00")

    def test_non_numeric_input_is_zero(self) -> None:
        assert token_to_fiat("abc") == Decimal("0.00")
        assert token_to_fiat(float("nan")) == Decimal("0.00")


class TestFiatToToken:
    def test_converts_and_rounds_to_three_places(self) -> None:
        assert fiat_to_token(Decimal("11.25")) == Decimal("10.000")
        assert fiat_to_token(Decimal("1")) == Decimal("0.889")

    def test_missing_input_is_zero(self) -> None:
        assert fiat_to_token(None) == Decimal("0.000")

    def test_custom_rate(self) -> None:
        assert fiat_to_token(Decimal("10"), rate=Decimal("2")) == Decimal("5.000")


class TestRateInfo:
    def test_reports_all_legs(self) -> None:
        info = exchange_rate_info()
        assert info["token_to_usd"] == "0.25"
        assert info["usd_to_fiat"] == "4.50"
        assert Decimal(info["token_to_fiat"]) == Decimal("1.125")
