# tests/test_rates.py
from decimal import Decimal

import httpx
import pytest
from fastapi.testclient import TestClient

from checkout_service.errors import RateUnavailableError
from checkout_service.money import Currency, Token
from checkout_service.rates import (
    DexScreenerPoolProvider,
    JupiterSwapQuoteProvider,
    RateResolver,
    UsdReferenceProvider,
    estimate_native_usd_price,
)
from mock_services import mock_quote_service
from conftest import StaticProvider

BONK = Token(mint=mock_quote_service.BONK_MINT, decimals=5, symbol="BONK")
POOL = Token(mint=mock_quote_service.POOL_ONLY_MINT, decimals=6, symbol="POOL")


@pytest.fixture(scope="module")
def quote_client():
    return TestClient(mock_quote_service.app)


def test_same_currency_is_identity_without_provider_calls():
    provider = StaticProvider("static")
    resolver = RateResolver([provider])
    quote = resolver.resolve("SOL", Currency.SOL)
    assert quote.rate == Decimal(1)
    assert quote.provider == "identity"
    assert resolver.resolve("USD", "USDC").rate == Decimal(1)
    assert provider.calls == []


def test_first_valid_provider_wins():
    first = StaticProvider("first", {("SOL", "USDC"): Decimal("150")})
    second = StaticProvider("second", {("SOL", "USDC"): Decimal("149")})
    quote = RateResolver([first, second]).resolve("SOL", "USDC")
    assert quote.rate == Decimal("150")
    assert quote.provider == "first"
    assert second.calls == []


def test_failing_and_non_positive_providers_are_skipped():
    broken = StaticProvider("broken")
    zero = StaticProvider("zero", {("SOL", "USDC"): Decimal("0")})
    good = StaticProvider("good", {("SOL", "USDC"): Decimal("151.5")})
    quote = RateResolver([broken, zero, good]).resolve(Currency.SOL, Currency.USDC)
    assert quote.provider == "good"
    assert quote.rate == Decimal("151.5")
    assert broken.calls == [("SOL", "USDC")]


def test_exhausted_chain_raises_instead_of_defaulting():
    with pytest.raises(RateUnavailableError) as exc_info:
        RateResolver([StaticProvider("a"), StaticProvider("b")]).resolve("SOL", "USDC")
    assert "a:" in exc_info.value.message
    assert exc_info.value.status_code == 503


def test_unknown_currency_code_is_unavailable():
    with pytest.raises(RateUnavailableError):
        RateResolver([StaticProvider("a")]).resolve("EUR", "SOL")


def test_native_usd_estimate_falls_back():
    assert estimate_native_usd_price([StaticProvider("a")], Decimal("180")) == Decimal("180")
    live = StaticProvider("live", {("SOL", "USDC"): Decimal("142")})
    assert estimate_native_usd_price([live], Decimal("180")) == Decimal("142")


def test_jupiter_swap_quote(quote_client):
    provider = JupiterSwapQuoteProvider(quote_client, "http://testserver/v6")
    assert provider.quote(Currency.SOL, Currency.USDC) == Decimal("150")
    assert provider.quote(Currency.USDC, BONK) == Decimal("50000")


def test_dexscreener_inverts_when_target_is_pool_base(quote_client):
    provider = DexScreenerPoolProvider(quote_client, "http://testserver/latest/dex")
    # most liquid pool: 0.004 SOL per POOL
    assert provider.quote(Currency.SOL, POOL) == Decimal("250")


def test_usd_reference_quote(quote_client):
    provider = UsdReferenceProvider(quote_client, "http://testserver/price/v2")
    assert provider.quote(Currency.SOL, BONK) == Decimal("7500000")
    assert provider.quote(Currency.USDC, Currency.SOL) == Decimal(1) / Decimal(150)


def test_chain_falls_back_from_swap_to_pool(quote_client):
    resolver = RateResolver([
        JupiterSwapQuoteProvider(quote_client, "http://testserver/v6"),
        DexScreenerPoolProvider(quote_client, "http://testserver/latest/dex"),
        UsdReferenceProvider(quote_client, "http://testserver/price/v2"),
    ])
    quote = resolver.resolve(Currency.SOL, POOL)
    assert quote.provider == "dexscreener"
    assert quote.rate == Decimal("250")


def _dex_client(payload):
    return httpx.Client(transport=httpx.MockTransport(lambda request: httpx.Response(200, json=payload)))


def _pool(liquidity):
    return {"baseToken": {"address": mock_quote_service.SOL_MINT},
            "quoteToken": {"address": mock_quote_service.USDC_MINT},
            "priceNative": "150", "liquidity": {"usd": liquidity}}


def test_malformed_pool_payload_falls_through_to_next_provider():
    dex = DexScreenerPoolProvider(_dex_client({"pairs": [_pool("n/a")]}), "http://dex.invalid")
    fixed = StaticProvider("fixed", {("SOL", "USDC"): Decimal("150")})

    quote = RateResolver([dex, fixed]).resolve(Currency.SOL, Currency.USDC)

    assert quote.provider == "fixed"
    assert quote.rate == Decimal("150")
    assert fixed.calls == [("SOL", "USDC")]


def test_malformed_usd_price_payload_is_skipped():
    usd = UsdReferenceProvider(_dex_client({"data": ["not", "a", "dict"]}), "http://price.invalid")
    with pytest.raises(RateUnavailableError) as exc_info:
        RateResolver([usd]).resolve(Currency.SOL, BONK)
    assert "usd-reference:" in exc_info.value.message


def test_native_usd_estimate_survives_malformed_pairs():
    dex = DexScreenerPoolProvider(_dex_client({"pairs": ["not-a-dict"]}), "http://dex.invalid")
    assert estimate_native_usd_price([dex], Decimal("180")) == Decimal("180")
