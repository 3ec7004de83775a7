"""
rates.py — Rate Resolver and Quote Providers

Conversion rates (target units per 1 source unit) are sourced from external
quote services. Each service is wrapped in a provider implementing the same
`quote(source, target)` capability; the `RateResolver` walks the providers in
priority order and returns the first structurally valid, positive rate.

Priority (default chain):
    1. JupiterSwapQuoteProvider — exact swap quote
    2. DexScreenerPoolProvider  — liquidity-pool mid price (inverted when needed)
    3. UsdReferenceProvider     — independent USD quotes for both legs

Nothing is cached: every checkout re-quotes. When every provider fails the
resolver raises `RateUnavailableError`; it never falls back to a rate of 1.
The only fallback constant lives in `estimate_native_usd_price`, which feeds
informational estimates only.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import List, Optional, Protocol, Sequence, Union

import httpx

from .errors import QuoteUnavailable, RateUnavailableError
from .money import Currency, Denomination, as_denomination, code_of, same_currency

log = logging.getLogger(__name__)

# providers failing with any of these are skipped, malformed payloads included
SKIPPED_PROVIDER_ERRORS = (QuoteUnavailable, KeyError, TypeError, AttributeError, ValueError, ArithmeticError)


@dataclass(frozen=True)
class ConversionQuote:
    source: str
    target: str
    rate: Decimal
    provider: str


class QuoteProvider(Protocol):
    name: str

    def quote(self, source: Denomination, target: Denomination) -> Decimal:
        """Returns target units per 1 source unit or raises QuoteUnavailable."""
        ...


def _positive_decimal(value, what: str) -> Decimal:
    try:
        rate = Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        raise QuoteUnavailable(f"{what} is not a number: {value!r}")
    if not rate.is_finite() or rate <= 0:
        raise QuoteUnavailable(f"{what} is not positive: {value!r}")
    return rate


def _get_json(client: httpx.Client, url: str, params: Optional[dict] = None):
    try:
        response = client.get(url, params=params)
        response.raise_for_status()
        return response.json()
    except httpx.HTTPStatusError as e:
        raise QuoteUnavailable(f"HTTP {e.response.status_code} from {url}")
    except httpx.HTTPError as e:
        raise QuoteUnavailable(f"request to {url} failed: {e}")
    except ValueError:
        raise QuoteUnavailable(f"invalid JSON from {url}")


class JupiterSwapQuoteProvider:
    """Exact swap quote for one whole source unit via the Jupiter quote API."""
    name = "jupiter"

    def __init__(self, client: httpx.Client, base_url: str):
        self.client = client
        self.base_url = base_url.rstrip("/")

    def quote(self, source: Denomination, target: Denomination) -> Decimal:
        amount = 10 ** source.mint_decimals
        data = _get_json(self.client, f"{self.base_url}/quote", params={
            "inputMint": source.mint,
            "outputMint": target.mint,
            "amount": str(amount),
            "slippageBps": "1",
        })
        if not isinstance(data, dict) or not data.get("outAmount"):
            raise QuoteUnavailable(f"no route from {code_of(source)} to {code_of(target)}")
        out_amount = _positive_decimal(data["outAmount"], "outAmount")
        return out_amount.scaleb(-target.mint_decimals)


class DexScreenerPoolProvider:
    """
    Mid price of the most liquid pool holding both mints.

    DexScreener reports `priceNative` as quote-token units per base token, so
    the price is used as-is when the source is the pool's base token and
    inverted when the target is.
    """
    name = "dexscreener"

    def __init__(self, client: httpx.Client, base_url: str):
        self.client = client
        self.base_url = base_url.rstrip("/")

    def quote(self, source: Denomination, target: Denomination) -> Decimal:
        data = _get_json(self.client, f"{self.base_url}/tokens/{target.mint}")
        pairs = data.get("pairs") if isinstance(data, dict) else None
        if not pairs:
            raise QuoteUnavailable(f"no pools for {code_of(target)}")

        src, dst = source.mint.lower(), target.mint.lower()
        candidates = []
        for pair in pairs:
            base = ((pair.get("baseToken") or {}).get("address") or "").lower()
            quote = ((pair.get("quoteToken") or {}).get("address") or "").lower()
            if {base, quote} == {src, dst}:
                liquidity = (pair.get("liquidity") or {}).get("usd") or 0
                candidates.append((Decimal(str(liquidity)), base, pair))
        if not candidates:
            raise QuoteUnavailable(f"no pool pairs {code_of(source)} with {code_of(target)}")

        _, base, pair = max(candidates, key=lambda c: c[0])
        price = _positive_decimal(pair.get("priceNative"), "priceNative")
        if base == src:
            return price
        return Decimal(1) / price


class UsdReferenceProvider:
    """Rate derived from USD prices of both legs (Jupiter price API)."""
    name = "usd-reference"

    def __init__(self, client: httpx.Client, base_url: str):
        self.client = client
        self.base_url = base_url.rstrip("/")

    def usd_price(self, denomination: Denomination) -> Decimal:
        if denomination.usd_pegged:
            return Decimal(1)
        data = _get_json(self.client, self.base_url, params={"ids": denomination.mint})
        entry = ((data or {}).get("data") or {}).get(denomination.mint) if isinstance(data, dict) else None
        if not entry:
            raise QuoteUnavailable(f"no USD price for {code_of(denomination)}")
        return _positive_decimal(entry.get("price"), f"USD price of {code_of(denomination)}")

    def quote(self, source: Denomination, target: Denomination) -> Decimal:
        target_usd = self.usd_price(target)
        # secondary lookup: USD value of the source leg
        source_usd = self.usd_price(source)
        return source_usd / target_usd


class RateResolver:
    """
    Resolves conversion rates through an ordered list of quote providers.

    Args:
        providers (Sequence[QuoteProvider]): Providers in priority order.
    """

    def __init__(self, providers: Sequence[QuoteProvider]):
        self.providers = list(providers)

    def resolve(self, source: Union[Denomination, str], target: Union[Denomination, str]) -> ConversionQuote:
        """
        Returns the first valid quote for `source` → `target`.

        Raises:
            RateUnavailableError: If the pair is unknown or every provider failed.
        """
        src, dst = as_denomination(source), as_denomination(target)
        if src is None or dst is None:
            raise RateUnavailableError(f"Unsupported currency pair {code_of(source)} -> {code_of(target)}")

        if same_currency(src, dst) or (src.usd_pegged and dst.usd_pegged):
            return ConversionQuote(code_of(src), code_of(dst), Decimal(1), "identity")

        failures: List[str] = []
        for provider in self.providers:
            try:
                rate = _positive_decimal(provider.quote(src, dst), "rate")
            except SKIPPED_PROVIDER_ERRORS as e:
                log.warning(f"Kursquelle {provider.name} übersprungen ({code_of(src)} -> {code_of(dst)}): {e}")
                failures.append(f"{provider.name}: {e}")
                continue
            log.info(f"Kurs {code_of(src)} -> {code_of(dst)} = {rate} (Quelle: {provider.name})")
            return ConversionQuote(code_of(src), code_of(dst), rate, provider.name)

        raise RateUnavailableError(
            f"No conversion rate available for {code_of(src)} -> {code_of(dst)} ({'; '.join(failures) or 'no providers'})"
        )


def default_providers(client: httpx.Client, settings) -> List[QuoteProvider]:
    """Builds the standard provider chain from settings."""
    return [
        JupiterSwapQuoteProvider(client, settings.jupiter_quote_url),
        DexScreenerPoolProvider(client, settings.dexscreener_url),
        UsdReferenceProvider(client, settings.jupiter_price_url),
    ]


def estimate_native_usd_price(providers: Sequence[QuoteProvider], fallback: Decimal) -> Decimal:
    """
    Estimates the USD price of one SOL for informational values only.

    Returns `fallback` when every provider fails. Never use the result to
    price a charge.
    """
    try:
        return RateResolver(providers).resolve(Currency.SOL, Currency.USDC).rate
    except RateUnavailableError as e:
        log.warning(f"SOL/USD-Schätzung nicht verfügbar, nutze Fallback {fallback}: {e}")
        return fallback
