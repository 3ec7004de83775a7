"""
money.py — Fixed-Point Money

Exact conversion between display amounts and smallest indivisible units, and
exact cross-currency conversion given a rate.

Supported settlement currencies are a closed `Currency` enum, each member
carrying its smallest-unit scale (the money precision used for sums) and the
mint/decimals used when talking to on-chain quote providers. Arbitrary SPL
tokens required by a collection are represented by `Token`. Anything that
accepts a currency also accepts a plain code string; unknown codes fall back
to the 2-decimal scale.

All running sums above this module are kept as `int` smallest units; display
values are `Decimal` and only produced at the boundary.
"""

from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP, ROUND_DOWN
from enum import Enum
from typing import Optional, Union

DEFAULT_SCALE = 2

SOL_MINT = "So11111111111111111111111111111111111111112"
USDC_MINT = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"


class Currency(Enum):
    """Standard settlement currencies: (code, money scale, mint, mint decimals)."""
    SOL = ("SOL", 9, SOL_MINT, 9)
    USDC = ("USDC", 2, USDC_MINT, 6)
    USD = ("USD", 2, USDC_MINT, 6)

    def __init__(self, code: str, scale: int, mint: str, mint_decimals: int):
        self.code = code
        self.scale = scale
        self.mint = mint
        self.mint_decimals = mint_decimals

    @property
    def usd_pegged(self) -> bool:
        return self in (Currency.USD, Currency.USDC)

    @classmethod
    def from_code(cls, code: Optional[str]) -> Optional["Currency"]:
        if not code:
            return None
        return cls.__members__.get(code.strip().upper())

    @classmethod
    def from_mint(cls, mint: Optional[str]) -> Optional["Currency"]:
        return next((member for member in cls if member.mint == mint), None)


@dataclass(frozen=True)
class Token:
    """A fungible SPL token identified by its mint."""
    mint: str
    decimals: int
    symbol: Optional[str] = None
    name: Optional[str] = None

    @property
    def code(self) -> str:
        return self.symbol or self.mint

    @property
    def scale(self) -> int:
        return self.decimals

    @property
    def mint_decimals(self) -> int:
        return self.decimals

    @property
    def usd_pegged(self) -> bool:
        return self.mint == USDC_MINT


Denomination = Union[Currency, Token]


def as_denomination(currency: Union[Denomination, str, None]) -> Optional[Denomination]:
    """Maps a code string to its `Currency`; passes enum members and tokens through."""
    if isinstance(currency, (Currency, Token)):
        return currency
    return Currency.from_code(currency)


def scale_of(currency: Union[Denomination, str, None]) -> int:
    denomination = as_denomination(currency)
    return denomination.scale if denomination is not None else DEFAULT_SCALE


def code_of(currency: Union[Denomination, str, None]) -> str:
    denomination = as_denomination(currency)
    if denomination is not None:
        return denomination.code
    return (currency or "").upper()


def same_currency(a: Union[Denomination, str], b: Union[Denomination, str]) -> bool:
    """True when both sides denote the same unit (same code or same token mint)."""
    da, db = as_denomination(a), as_denomination(b)
    if isinstance(da, Token) or isinstance(db, Token):
        return da is not None and db is not None and da.mint == db.mint
    return code_of(a) == code_of(b)


def _decimal(value) -> Decimal:
    if isinstance(value, Decimal):
        return value
    # str() avoids binary float artefacts (0.1 -> 0.1000000000000000055...)
    return Decimal(str(value))


def to_smallest_unit(amount, currency: Union[Denomination, str]) -> int:
    """
    Converts a display amount to the currency's smallest unit.

    Args:
        amount (Decimal | int | float | str): Display amount, e.g. Decimal("1.25").
        currency (Denomination | str): Currency, token or currency code.

    Returns:
        int: Amount in smallest units, rounded half-up (e.g. 125 for 1.25 USDC).
    """
    scaled = _decimal(amount).scaleb(scale_of(currency))
    return int(scaled.to_integral_value(rounding=ROUND_HALF_UP))


def from_smallest_unit(units: int, currency: Union[Denomination, str]) -> Decimal:
    """Converts smallest units back to an exact display `Decimal`."""
    return Decimal(int(units)).scaleb(-scale_of(currency))


def round_display(amount, currency: Union[Denomination, str]) -> Decimal:
    """Rounds a display amount to the currency's precision."""
    return from_smallest_unit(to_smallest_unit(amount, currency), currency)


def convert_units(units: int, from_currency: Union[Denomination, str],
                  to_currency: Union[Denomination, str], rate) -> int:
    """
    Converts smallest units of one currency into smallest units of another.

    The product `units * rate * 10^to_scale / 10^from_scale` is evaluated
    exactly and rounded once, half-up, to the target's smallest unit.
    """
    if same_currency(from_currency, to_currency):
        return int(units)
    exact = Decimal(int(units)) * _decimal(rate)
    exact = exact.scaleb(scale_of(to_currency) - scale_of(from_currency))
    return int(exact.to_integral_value(rounding=ROUND_HALF_UP))


def convert(amount, from_currency: Union[Denomination, str],
            to_currency: Union[Denomination, str], rate) -> Decimal:
    """
    Converts a display amount between currencies given `rate` (target units per 1 source unit).

    Same-currency conversion is the identity. Otherwise the amount is taken to
    smallest units of the source, converted exactly, and only the final result
    is expressed in the target's display precision.
    """
    if same_currency(from_currency, to_currency):
        return _decimal(amount)
    units = convert_units(to_smallest_unit(amount, from_currency), from_currency, to_currency, rate)
    return from_smallest_unit(units, to_currency)


def percentage_of(units: int, percent) -> int:
    """Applies a percentage to a smallest-unit amount, truncating toward zero."""
    exact = Decimal(int(units)) * _decimal(percent) / Decimal(100)
    return int(exact.to_integral_value(rounding=ROUND_DOWN))
