# tests/conftest.py
from decimal import Decimal
from typing import Dict, List, Optional

import pytest

from checkout_service.config import Settings
from checkout_service.coupons import CouponEligibilityEngine
from checkout_service.errors import QuoteUnavailable, StoreError
from checkout_service.models import BatchCheckoutRequest, CouponDefinition, ProductPricing, TokenInfo
from checkout_service.money import code_of
from checkout_service.rates import RateResolver
from checkout_service.workflow import BatchCheckoutOrchestrator

BUYER = "BuyerWa11et9xQ4mZ2kLpR8sTuVwXyZaBcDeFgHiJkL"
WALLET_A = "MerchantAwa11etxxxxxxxxxxxxxxxxxxxxxxxxxxxx"
WALLET_B = "MerchantBwa11etxxxxxxxxxxxxxxxxxxxxxxxxxxxx"
WALLET_C = "MerchantCwa11etxxxxxxxxxxxxxxxxxxxxxxxxxxxx"
DISTRIBUTION = "DistributionWa11etxxxxxxxxxxxxxxxxxxxxxxxxx"
BONK_MINT = "DezXAZ8z7PnrnRJjz3wXBoRgixCa6xjnB7YaB1pPB263"


def make_pricing(product_id: str, price, currency: str = "SOL", collection: str = "col-a", **kwargs) -> ProductPricing:
    return ProductPricing(product_id=product_id, collection_id=collection, name=product_id,
                          price=Decimal(str(price)), base_currency=currency, **kwargs)


def make_cart(*items, method: str = "default", coupon: Optional[str] = None, wallet: Optional[str] = BUYER,
              **metadata) -> BatchCheckoutRequest:
    return BatchCheckoutRequest.model_validate({
        "items": [
            {
                "product": {"id": product_id, "name": product_id, "collectionId": collection},
                "quantity": quantity,
                **extra,
            }
            for product_id, collection, quantity, extra in (
                (i[0], i[1], i[2], i[3] if len(i) > 3 else {}) for i in items
            )
        ],
        "shippingInfo": {"address": "Testweg 1", "contactMethod": "email", "contactValue": "a@b.c"},
        "walletAddress": wallet,
        "paymentMetadata": {"paymentMethod": method, "couponCode": coupon, **metadata},
    })


class FakeCatalog:
    def __init__(self, products: List[ProductPricing], strict_tokens: Optional[Dict[str, str]] = None):
        self.products = {p.product_id: p for p in products}
        self.strict_tokens = strict_tokens or {}

    def get_pricing(self, product_id):
        if product_id not in self.products:
            raise StoreError(f"Product {product_id} not found")
        return self.products[product_id]

    def get_strict_token(self, collection_id):
        return self.strict_tokens.get(collection_id)


class FakeWallets:
    def __init__(self, wallets: Optional[Dict[str, str]] = None):
        self.wallets = wallets or {"col-a": WALLET_A, "col-b": WALLET_B, "col-c": WALLET_C}

    def get_merchant_wallet(self, collection_id):
        if collection_id not in self.wallets:
            raise StoreError("No active main wallet found")
        return self.wallets[collection_id]


class FakeCoupons:
    def __init__(self, coupons: Optional[List[CouponDefinition]] = None):
        self.coupons = {c.code: c for c in coupons or []}

    def get_active_coupon(self, code):
        return self.coupons.get(code.strip().upper())


class FakeTokens:
    def __init__(self, tokens: Optional[Dict[str, TokenInfo]] = None):
        self.tokens = tokens or {}

    def get_token_info(self, mint):
        if mint not in self.tokens:
            raise StoreError(f"Token info for {mint} unavailable")
        return self.tokens[mint]


class FakeOrders:
    def __init__(self, failing_products=(), failing_updates: bool = False):
        self.failing_products = set(failing_products)
        self.failing_updates = failing_updates
        self.created: List[dict] = []
        self.updates: Dict[str, dict] = {}
        self.custom_data: List[dict] = []

    def create_order(self, product_id, variants, shipping_info, wallet_address, metadata):
        if product_id in self.failing_products:
            raise StoreError(f"create_order failed for {product_id}")
        order_id = f"order-{len(self.created) + 1}"
        self.created.append({
            "id": order_id,
            "product_id": product_id,
            "variants": variants,
            "shipping_info": shipping_info,
            "wallet_address": wallet_address,
            "metadata": metadata,
        })
        return order_id

    def update_order(self, order_id, fields):
        if self.failing_updates:
            raise StoreError("PATCH orders failed with HTTP 500")
        self.updates[order_id] = fields

    def create_custom_data_entry(self, order_id, product_id, wallet_address, customization):
        self.custom_data.append({"order_id": order_id, "product_id": product_id, "data": customization})


class FakeBalances:
    def __init__(self, balances: Optional[Dict[str, Decimal]] = None, failing: bool = False):
        self.balances = balances or {}
        self.failing = failing
        self.calls = []

    def get_token_balance(self, owner, mint):
        self.calls.append((owner, mint))
        if self.failing:
            raise StoreError("getTokenAccountsByOwner failed")
        return self.balances.get((owner, mint), Decimal(0))


class StaticProvider:
    """Quote provider answering from a fixed table of (source code, target code) → rate."""

    def __init__(self, name: str, rates: Optional[Dict[tuple, Decimal]] = None):
        self.name = name
        self.rates = rates or {}
        self.calls = []

    def quote(self, source, target):
        key = (code_of(source), code_of(target))
        self.calls.append(key)
        if key not in self.rates:
            raise QuoteUnavailable(f"no quote for {key}")
        return self.rates[key]


@pytest.fixture
def settings():
    return Settings(
        distribution_wallet=DISTRIBUTION,
        default_token="SOL",
        stable_currency="USDC",
        coupon_reference_currency="SOL",
        distribution_fee_per_wallet=Decimal("0.002"),
        distribution_fee_currency="SOL",
        fee_bearing_methods=["default", "spl-tokens"],
        rabbitmq_host=None,
    )


@pytest.fixture
def make_orchestrator(settings):
    def _make(products, orders=None, coupons=None, rates=None, balances=None, strict_tokens=None,
              tokens=None, wallets=None, publisher=None, usd_estimator=None):
        return BatchCheckoutOrchestrator(
            settings=settings,
            catalog=FakeCatalog(products, strict_tokens),
            wallets=FakeWallets(wallets),
            coupons=FakeCoupons(coupons),
            tokens=FakeTokens(tokens),
            orders=orders if orders is not None else FakeOrders(),
            rates=RateResolver([rates if rates is not None else StaticProvider("static")]),
            eligibility=CouponEligibilityEngine(balances or FakeBalances()),
            publisher=publisher,
            usd_estimator=usd_estimator,
            clock=lambda: 1700000000.5,
        )
    return _make
