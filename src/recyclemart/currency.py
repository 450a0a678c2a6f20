"""Token/fiat conversion at a fixed demo rate.

One token is valued at 0.25 USD and one USD at 4.50 MYR, giving
1.125 MYR per token. Fiat amounts round to 2 places, token amounts
to 3 places.
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal
from typing import Union

TOKEN_TO_USD = Decimal("0.25")
USD_TO_FIAT = Decimal("4.50")
TOKEN_TO_FIAT_RATE = TOKEN_TO_USD * USD_TO_FIAT

_FIAT_PLACES = Decimal("0.01")
_TOKEN_PLACES = Decimal("0.001")

Number = Union[Decimal, int, float, str]


def _as_decimal(amount: Number | None) -> Decimal:
    if amount is None or amount == "":
        return Decimal("0")
    try:
        value = Decimal(str(amount))
    except ArithmeticError:
        return Decimal("0")
    if value.is_nan():
        return Decimal("0")
    return value


def token_to_fiat(amount: Number | None, rate: Decimal = TOKEN_TO_FIAT_RATE) -> Decimal:
    """Convert a token amount to fiat, rounded to 2 places.

    Missing or non-numeric input converts to zero.
    """
    return (_as_decimal(amount) * rate).quantize(_FIAT_PLACES, rounding=ROUND_HALF_UP)


def fiat_to_token(amount: Number | None, rate: Decimal = TOKEN_TO_FIAT_RATE) -> Decimal:
    """Convert a fiat amount to tokens, rounded to 3 places."""
    return (_as_decimal(amount) / rate).quantize(_TOKEN_PLACES, rounding=ROUND_HALF_UP)


def exchange_rate_info() -> dict[str, str]:
    return {
        "token_to_usd": str(TOKEN_TO_USD),
        "usd_to_fiat": str(USD_TO_FIAT),
        "token_to_fiat": str(TOKEN_TO_FIAT_RATE),
        "source": "static demo rate",
    }
