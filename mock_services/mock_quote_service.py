"""
mock_quote_service.py — Mock Implementation of the External Quote Providers (REST API)

This module provides simulated quote services for testing the rate resolution
chain without network access. One FastAPI application serves the endpoints of
all providers the checkout service talks to.

Simulation Scenarios:
    • Exact swap quotes for known mint pairs
    • Mints containing "NOROUTE" have no swap route (HTTP 400), forcing the pool fallback
    • Pools listed with the target token on either side (mid price must be inverted)
    • USD prices for the USD-reference fallback
    • Token metadata lookup; unknown mints answer 404

Endpoints:
    GET /v6/quote                  — Jupiter swap quote
    GET /price/v2                  — Jupiter USD price
    GET /token/{mint}              — Jupiter token metadata
    GET /latest/dex/tokens/{mint}  — DexScreener pools

Port:
    Default: 8002 (HTTP)
"""

import logging
from decimal import Decimal
from typing import Dict, Tuple

from fastapi import FastAPI, HTTPException

app = FastAPI(title="Mock Quote Service")
logging.basicConfig(level=logging.INFO)

SOL_MINT = "So11111111111111111111111111111111111111112"
USDC_MINT = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"
BONK_MINT = "DezXAZ8z7PnrnRJjz3wXBoRgixCa6xjnB7YaB1pPB263"
POOL_ONLY_MINT = "PoolOnlyNOROUTExxxxxxxxxxxxxxxxxxxxxxxxxxxx"

TOKENS: Dict[str, Dict] = {
    SOL_MINT: {"address": SOL_MINT, "symbol": "SOL", "name": "Wrapped SOL", "decimals": 9},
    USDC_MINT: {"address": USDC_MINT, "symbol": "USDC", "name": "USD Coin", "decimals": 6},
    BONK_MINT: {"address": BONK_MINT, "symbol": "BONK", "name": "Bonk", "decimals": 5},
    POOL_ONLY_MINT: {"address": POOL_ONLY_MINT, "symbol": "POOL", "name": "Pool Only", "decimals": 6},
}

# target units per 1 source unit
SWAP_RATES: Dict[Tuple[str, str], Decimal] = {
    (SOL_MINT, USDC_MINT): Decimal("150"),
    (USDC_MINT, SOL_MINT): Decimal("0.0066"),
    (SOL_MINT, BONK_MINT): Decimal("7500000"),
    (USDC_MINT, BONK_MINT): Decimal("50000"),
}

# pool: base token, quote token, priceNative (quote per base), liquidity
POOLS = [
    {"baseToken": {"address": POOL_ONLY_MINT}, "quoteToken": {"address": SOL_MINT},
     "priceNative": "0.004", "liquidity": {"usd": 250000}},
    {"baseToken": {"address": POOL_ONLY_MINT}, "quoteToken": {"address": SOL_MINT},
     "priceNative": "0.009", "liquidity": {"usd": 1200}},
]

USD_PRICES: Dict[str, str] = {
    SOL_MINT: "150",
    BONK_MINT: "0.00002",
}


@app.get("/v6/quote")
def swap_quote(inputMint: str, outputMint: str, amount: int, slippageBps: int = 50):
    """
    Returns an exact swap quote.

    Raises:
        HTTPException(400): If either mint has no route.
    """
    logging.info(f"[Quote] Swap {inputMint} -> {outputMint} ({amount})")
    rate = SWAP_RATES.get((inputMint, outputMint))
    if rate is None or "NOROUTE" in inputMint or "NOROUTE" in outputMint:
        raise HTTPException(status_code=400, detail={"error": "No routes found"})
    in_decimals = TOKENS[inputMint]["decimals"]
    out_decimals = TOKENS[outputMint]["decimals"]
    out_amount = Decimal(amount).scaleb(-in_decimals) * rate
    return {
        "inputMint": inputMint,
        "inAmount": str(amount),
        "outputMint": outputMint,
        "outAmount": str(int(out_amount.scaleb(out_decimals))),
        "slippageBps": slippageBps,
        "routePlan": [],
    }


@app.get("/price/v2")
def usd_price(ids: str):
    data = {mint: {"id": mint, "price": USD_PRICES[mint]} for mint in ids.split(",") if mint in USD_PRICES}
    return {"data": data}


@app.get("/token/{mint}")
def token_info(mint: str):
    token = TOKENS.get(mint)
    if token is None:
        raise HTTPException(status_code=404, detail={"error": "Token not found"})
    return token


@app.get("/latest/dex/tokens/{mint}")
def dex_pools(mint: str):
    pairs = [p for p in POOLS if mint in (p["baseToken"]["address"], p["quoteToken"]["address"])]
    return {"schemaVersion": "1.0.0", "pairs": pairs or None}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8002)
