"""
mock_order_store.py — Mock Implementation of the Backend Store (PostgREST)

This module provides a simulated backend for testing the checkout workflow.
It exposes a FastAPI application that mimics the PostgREST endpoints the
checkout service uses for catalog, wallet, coupon and order access.

Simulation Scenarios:
    • Products, collections and wallets served from in-memory tables
    • Collections without a wallet mapping (fallback to the main wallet)
    • Failing order creation for product ids containing "FAIL" (HTTP 500)

Endpoints:
    GET   /rest/v1/public_products
    GET   /rest/v1/collections
    GET   /rest/v1/collection_wallets
    GET   /rest/v1/merchant_wallets
    GET   /rest/v1/coupons
    POST  /rest/v1/rpc/create_order
    PATCH /rest/v1/orders
    POST  /rest/v1/product_customization

Port:
    Default: 54321 (HTTP)
"""

import logging
import uuid
from typing import Any, Dict, Optional

from fastapi import Body, FastAPI, HTTPException, Query, Response

app = FastAPI(title="Mock Order Store")
logging.basicConfig(level=logging.INFO)

MAIN_WALLET = "MainWa11etxxxxxxxxxxxxxxxxxxxxxxxxxxxxxxxxx"

PRODUCTS: Dict[str, Dict[str, Any]] = {
    "prod-tee": {
        "id": "prod-tee", "name": "Tee", "collection_id": "col-a", "price": 10, "base_currency": "USDC",
        "minimum_order_quantity": 10, "current_orders": 10, "price_modifier_before_min": None,
        "price_modifier_after_min": None, "stock": None, "variants": [{"id": "size", "name": "Size"}],
        "variant_prices": {"size:XL": 12},
    },
    "prod-hoodie": {
        "id": "prod-hoodie", "name": "Hoodie", "collection_id": "col-b", "price": 0.5, "base_currency": "SOL",
        "minimum_order_quantity": 50, "current_orders": 0, "price_modifier_before_min": -0.2,
        "price_modifier_after_min": 0.3, "stock": 100, "variants": [], "variant_prices": None,
    },
    "prod-FAIL": {
        "id": "prod-FAIL", "name": "Broken", "collection_id": "col-a", "price": 1, "base_currency": "USDC",
        "minimum_order_quantity": 1, "current_orders": 0, "price_modifier_before_min": None,
        "price_modifier_after_min": None, "stock": None, "variants": [], "variant_prices": None,
    },
}

COLLECTIONS: Dict[str, Dict[str, Any]] = {
    "col-a": {"id": "col-a", "strict_token": None},
    "col-b": {"id": "col-b", "strict_token": None},
    "col-c": {"id": "col-c", "strict_token": None},
}

COLLECTION_WALLETS: Dict[str, str] = {
    "col-a": "MerchantAwa11etxxxxxxxxxxxxxxxxxxxxxxxxxxxx",
    "col-b": "MerchantBwa11etxxxxxxxxxxxxxxxxxxxxxxxxxxxx",
}

COUPONS: Dict[str, Dict[str, Any]] = {
    "FREE100": {
        "id": "coupon-1", "code": "FREE100", "status": "active", "discount_type": "percentage",
        "discount_value": 100, "collection_ids": [], "eligibility_rules": {"groups": []},
    },
    "VIPONLY": {
        "id": "coupon-2", "code": "VIPONLY", "status": "active", "discount_type": "fixed_sol",
        "discount_value": 0.1, "collection_ids": ["col-b"],
        "eligibility_rules": {"groups": [{"operator": "OR", "rules": [
            {"type": "whitelist", "value": "VipWa11et1, VipWa11et2"},
        ]}]},
    },
}

ORDERS: Dict[str, Dict[str, Any]] = {}
CUSTOMIZATIONS: Dict[str, Dict[str, Any]] = {}


def _eq(value: Optional[str]) -> Optional[str]:
    """Strips the PostgREST `eq.` operator from a filter value."""
    if value is None:
        return None
    return value[3:] if value.startswith("eq.") else value


@app.get("/rest/v1/public_products")
def get_products(id: Optional[str] = None, select: Optional[str] = None):
    product = PRODUCTS.get(_eq(id))
    return [product] if product else []


@app.get("/rest/v1/collections")
def get_collections(id: Optional[str] = None, select: Optional[str] = None):
    collection = COLLECTIONS.get(_eq(id))
    return [collection] if collection else []


@app.get("/rest/v1/collection_wallets")
def get_collection_wallets(collection_id: Optional[str] = None, select: Optional[str] = None):
    address = COLLECTION_WALLETS.get(_eq(collection_id))
    return [{"wallet": {"address": address}}] if address else []


@app.get("/rest/v1/merchant_wallets")
def get_merchant_wallets(is_main: Optional[str] = None, is_active: Optional[str] = None,
                         select: Optional[str] = None):
    return [{"address": MAIN_WALLET}]


@app.get("/rest/v1/coupons")
def get_coupons(code: Optional[str] = None, status: Optional[str] = Query(None), select: Optional[str] = None):
    coupon = COUPONS.get(_eq(code) or "")
    if not coupon or coupon["status"] != _eq(status):
        return []
    return [coupon]


@app.post("/rest/v1/rpc/create_order")
def create_order(payload: Dict[str, Any] = Body(...)):
    """
    Simulates the `create_order` database function.

    Scenario simulation:
        - product id containing "FAIL" → HTTP 500
        - otherwise → order stored, new order id returned
    """
    product_id = payload.get("p_product_id", "")
    logging.info(f"[Store] create_order für Produkt {product_id}")

    if "FAIL" in product_id:
        logging.error(f"[Store] create_order für {product_id} fehlgeschlagen (simuliert).")
        raise HTTPException(status_code=500, detail={"message": "simulated failure"})

    order_id = str(uuid.uuid4())
    ORDERS[order_id] = {
        "id": order_id,
        "product_id": product_id,
        "variant_selections": payload.get("p_variants"),
        "shipping_info": payload.get("p_shipping_info"),
        "wallet_address": payload.get("p_wallet_address"),
        "payment_metadata": payload.get("p_payment_metadata"),
        "status": "draft",
    }
    return order_id


@app.patch("/rest/v1/orders")
def update_order(id: str, fields: Dict[str, Any] = Body(...)):
    order = ORDERS.get(_eq(id))
    if order is None:
        raise HTTPException(status_code=404, detail={"message": "order not found"})
    order.update(fields)
    return Response(status_code=204)


@app.post("/rest/v1/product_customization", status_code=201)
def create_customization(payload: Dict[str, Any] = Body(...)):
    CUSTOMIZATIONS[payload["order_id"]] = payload
    return Response(status_code=201)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=54321)
