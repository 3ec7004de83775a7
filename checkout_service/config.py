"""
config.py — Service Configuration

Settings are loaded from environment variables (and an optional `.env` file)
through pydantic-settings. There is no module-level settings object: the API
layer resolves `get_settings()` per request through a FastAPI dependency,
which keeps the configuration replaceable in tests.
"""

from decimal import Decimal
from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration loaded from environment variables."""
    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    # Backend (PostgREST)
    supabase_url: str = "http://localhost:54321"
    supabase_service_role_key: str = ""

    # Quote providers / chain access
    solana_rpc_url: str = "https://api.mainnet-beta.solana.com"
    jupiter_quote_url: str = "https://quote-api.jup.ag/v6"
    jupiter_price_url: str = "https://api.jup.ag/price/v2"
    jupiter_token_url: str = "https://tokens.jup.ag"
    dexscreener_url: str = "https://api.dexscreener.com/latest/dex"

    # Settlement routing
    default_token: str = "SOL"
    stable_currency: str = "USDC"
    coupon_reference_currency: str = "SOL"
    distribution_wallet: str = "DiSTRiBuTioNWa11etP1atformxxxxxxxxxxxxxxxxx"
    distribution_fee_per_wallet: Decimal = Decimal("0.002")
    distribution_fee_currency: str = "SOL"
    fee_bearing_methods: List[str] = Field(default_factory=lambda: ["default", "spl-tokens"])
    native_usd_fallback_price: Decimal = Decimal("180")

    # Outbound timeouts (seconds)
    http_connect_timeout: float = 5.0
    http_read_timeout: float = 8.0

    # Settlement queue; publishing is disabled without a host
    rabbitmq_host: Optional[str] = None
    rabbitmq_user: str = "shopag"
    rabbitmq_password: str = "shopag"
    settlement_queue: str = "settlement.batches.new"

    log_file: str = "checkout_processing.log"
    log_level: str = "INFO"


def get_settings() -> Settings:
    """Builds a fresh `Settings` instance from the current environment."""
    return Settings()
