"""
This module provides communication clients for the external systems used by the checkout service:
- Backend store (PostgREST / Supabase): product catalog, wallet directory, coupons, orders
- Solana JSON-RPC node: token balances for coupon eligibility
- Jupiter token API: token metadata for strict-token collections
- Settlement queue (RabbitMQ): notification of completed batches
Each class encapsulates its protocol logic, error handling, and connection management.
HTTP clients receive an `httpx.Client` from the caller, which owns its lifecycle and timeouts.
"""

import json
import logging
import time
from decimal import Decimal
from typing import Any, Dict, List, Optional, Protocol

import httpx
import pika

from .errors import StoreError
from .models import CouponDefinition, ProductPricing, TokenInfo

log = logging.getLogger(__name__)


def _optional_decimal(value) -> Optional[Decimal]:
    # numeric columns arrive as JSON floats
    return None if value is None else Decimal(str(value))


# --- Collaborator capabilities ---
class ProductCatalog(Protocol):
    def get_pricing(self, product_id: str) -> ProductPricing: ...

    def get_strict_token(self, collection_id: str) -> Optional[str]: ...


class WalletDirectory(Protocol):
    def get_merchant_wallet(self, collection_id: str) -> str: ...


class CouponStore(Protocol):
    def get_active_coupon(self, code: str) -> Optional[CouponDefinition]: ...


class TokenInfoProvider(Protocol):
    def get_token_info(self, mint: str) -> TokenInfo: ...


class OrderStore(Protocol):
    def create_order(self, product_id: str, variants: List[Dict[str, str]], shipping_info: Dict[str, Any],
                     wallet_address: str, metadata: Dict[str, Any]) -> str: ...

    def update_order(self, order_id: str, fields: Dict[str, Any]) -> None: ...

    def create_custom_data_entry(self, order_id: str, product_id: str, wallet_address: str,
                                 customization: Dict[str, Any]) -> None: ...


# --- Backend Store (PostgREST) ---
class SupabaseStore:
    """
    Client for the backend store exposed through PostgREST.
    Implements ProductCatalog, WalletDirectory, CouponStore and OrderStore.
    """

    def __init__(self, client: httpx.Client, base_url: str, service_key: str):
        """
        Args:
            client (httpx.Client): Shared HTTP client (timeouts configured by the owner).
            base_url (str): Project URL, e.g. "https://xyz.supabase.co".
            service_key (str): Service role key used for both `apikey` and bearer auth.
        """
        self.client = client
        self.rest_url = f"{base_url.rstrip('/')}/rest/v1"
        self.headers = {
            "apikey": service_key,
            "Authorization": f"Bearer {service_key}",
            "Content-Type": "application/json",
        }

    def _request(self, method: str, path: str, **kwargs) -> Any:
        headers = {**self.headers, **kwargs.pop("headers", {})}
        try:
            response = self.client.request(method, f"{self.rest_url}/{path}", headers=headers, **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            log.error(f"Store-Fehler {method} {path}: HTTP {e.response.status_code} - {e.response.text}")
            raise StoreError(f"{method} {path} failed with HTTP {e.response.status_code}")
        except httpx.HTTPError as e:
            log.error(f"Store nicht erreichbar ({method} {path}): {e}")
            raise StoreError(f"{method} {path} failed: {e}")
        if not response.content:
            return None
        return response.json()

    def _single(self, path: str, params: Dict[str, str]) -> Optional[Dict[str, Any]]:
        rows = self._request("GET", path, params=params)
        if not rows:
            return None
        return rows[0]

    def get_pricing(self, product_id: str) -> ProductPricing:
        row = self._single("public_products", {
            "id": f"eq.{product_id}",
            "select": "id,name,collection_id,price,base_currency,minimum_order_quantity,current_orders,"
                      "price_modifier_before_min,price_modifier_after_min,stock,variants,variant_prices",
        })
        if row is None:
            raise StoreError(f"Product {product_id} not found")
        return ProductPricing(
            product_id=row["id"],
            collection_id=row.get("collection_id"),
            name=row.get("name") or "",
            price=Decimal(str(row["price"])),
            base_currency=(row.get("base_currency") or "SOL").upper(),
            minimum_order_quantity=row.get("minimum_order_quantity"),
            current_orders=row.get("current_orders"),
            price_modifier_before_min=_optional_decimal(row.get("price_modifier_before_min")),
            price_modifier_after_min=_optional_decimal(row.get("price_modifier_after_min")),
            stock=row.get("stock"),
            variants=row.get("variants"),
            variant_prices={k: Decimal(str(v)) for k, v in (row.get("variant_prices") or {}).items()},
        )

    def get_strict_token(self, collection_id: str) -> Optional[str]:
        row = self._single("collections", {"id": f"eq.{collection_id}", "select": "id,strict_token"})
        return (row or {}).get("strict_token") or None

    def get_merchant_wallet(self, collection_id: str) -> str:
        """
        Returns the merchant wallet of a collection, falling back to the main active wallet.

        Raises:
            StoreError: If neither a collection wallet nor a main wallet exists.
        """
        row = self._single("collection_wallets", {
            "collection_id": f"eq.{collection_id}",
            "select": "wallet:wallet_id(address)",
        })
        address = ((row or {}).get("wallet") or {}).get("address")
        if address:
            return address

        log.info(f"Kein Wallet für Collection {collection_id}, nutze Haupt-Wallet.")
        main = self._single("merchant_wallets", {
            "is_main": "eq.true",
            "is_active": "eq.true",
            "select": "address",
        })
        if not main or not main.get("address"):
            raise StoreError("No active main wallet found")
        return main["address"]

    def get_active_coupon(self, code: str) -> Optional[CouponDefinition]:
        row = self._single("coupons", {
            "code": f"eq.{code.strip().upper()}",
            "status": "eq.active",
            "select": "*",
        })
        if row is None:
            return None
        rules = row.get("eligibility_rules") or {}
        return CouponDefinition(
            id=row.get("id"),
            code=row["code"],
            discount_type=row["discount_type"],
            discount_value=Decimal(str(row["discount_value"])),
            collection_ids=row.get("collection_ids"),
            eligibility_groups=rules.get("groups"),
        )

    def create_order(self, product_id: str, variants: List[Dict[str, str]], shipping_info: Dict[str, Any],
                     wallet_address: str, metadata: Dict[str, Any]) -> str:
        order_id = self._request("POST", "rpc/create_order", json={
            "p_product_id": product_id,
            "p_variants": variants,
            "p_shipping_info": shipping_info,
            "p_wallet_address": wallet_address,
            "p_payment_metadata": metadata,
        })
        if not order_id:
            raise StoreError(f"create_order returned no order id for product {product_id}")
        return str(order_id)

    def update_order(self, order_id: str, fields: Dict[str, Any]) -> None:
        self._request("PATCH", "orders", params={"id": f"eq.{order_id}"}, json=fields,
                      headers={"Prefer": "return=minimal"})

    def create_custom_data_entry(self, order_id: str, product_id: str, wallet_address: str,
                                 customization: Dict[str, Any]) -> None:
        self._request("POST", "product_customization", json={
            "order_id": order_id,
            "product_id": product_id,
            "wallet_address": wallet_address,
            "customization_data": customization,
        }, headers={"Prefer": "return=minimal"})


# --- Solana RPC (token balances) ---
class SolanaRpcClient:
    """Client for a Solana JSON-RPC node. Used for token-holding coupon rules."""

    def __init__(self, client: httpx.Client, rpc_url: str):
        self.client = client
        self.rpc_url = rpc_url

    def get_token_balance(self, owner: str, mint: str) -> Decimal:
        """
        Sums the UI balance of every token account `owner` holds for `mint`.

        Raises:
            StoreError: On transport failure, an RPC error response or an unexpected payload.
        """
        payload = {
            "jsonrpc": "2.0",
            "id": 1,
            "method": "getTokenAccountsByOwner",
            "params": [owner, {"mint": mint}, {"encoding": "jsonParsed"}],
        }
        try:
            response = self.client.post(self.rpc_url, json=payload)
            response.raise_for_status()
            body = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise StoreError(f"getTokenAccountsByOwner failed: {e}")
        try:
            if body.get("error"):
                raise StoreError(f"getTokenAccountsByOwner error: {body['error'].get('message')}")

            total = Decimal(0)
            for account in (body.get("result") or {}).get("value") or []:
                amount = account["account"]["data"]["parsed"]["info"]["tokenAmount"]
                total += Decimal(str(amount.get("uiAmountString") or amount.get("uiAmount") or 0))
        except (KeyError, TypeError, AttributeError, ArithmeticError) as e:
            raise StoreError(f"getTokenAccountsByOwner returned an unexpected payload: {e!r}")
        return total


# --- Jupiter Token API (token metadata) ---
class JupiterTokenInfoProvider:
    """Resolves decimals and symbol of a mint independently of client-supplied values."""

    def __init__(self, client: httpx.Client, base_url: str):
        self.client = client
        self.base_url = base_url.rstrip("/")

    def get_token_info(self, mint: str) -> TokenInfo:
        try:
            response = self.client.get(f"{self.base_url}/token/{mint}")
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise StoreError(f"Token info for {mint} unavailable: {e}")
        if not data or data.get("decimals") is None:
            raise StoreError(f"Token info for {mint} incomplete")
        return TokenInfo(decimals=int(data["decimals"]), symbol=data.get("symbol"), name=data.get("name"))


# --- Settlement Publisher (MQ) ---
class SettlementPublisher:
    """
    Publishes completed batches to the settlement queue (RabbitMQ).
    Downstream settlement and reconciliation consume these messages.
    """

    def __init__(self, host: str, user: str, password: str, queue: str):
        self.host = host
        self.credentials = pika.PlainCredentials(user, password)
        self.queue = queue
        self.connection = None
        self.channel = None

    def _connect(self):
        """
        Establishes the RabbitMQ connection and declares the settlement queue.
        Raises:
            pika.exceptions.AMQPConnectionError: If the connection fails.
        """
        try:
            self.connection = pika.BlockingConnection(
                pika.ConnectionParameters(host=self.host, credentials=self.credentials, heartbeat=60)
            )
            self.channel = self.connection.channel()
            self.channel.queue_declare(queue=self.queue, durable=True)
            log.info("Settlement Publisher mit RabbitMQ verbunden.")
        except pika.exceptions.AMQPConnectionError as e:
            log.critical(f"Kann nicht zu RabbitMQ (Settlement) verbinden: {e}")
            raise

    def publish_batch(self, batch_id: str, payload: Dict[str, Any]):
        """
        Sends one persistent message describing a completed batch.
        Args:
            batch_id (str): The batch order id.
            payload (dict): JSON-serializable batch summary.
        Raises:
            pika.exceptions.AMQPError: If message publishing fails.
        """
        message = {
            "batchOrderId": batch_id,
            "publishedAt": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
            **payload,
        }
        if not self.connection or self.connection.is_closed:
            self._connect()

        self.channel.basic_publish(
            exchange='',
            routing_key=self.queue,
            body=json.dumps(message, default=str),
            properties=pika.BasicProperties(delivery_mode=2)  # Macht Nachricht persistent
        )
        log.info(f"[Batch: {batch_id}] Settlement-Nachricht an Queue gesendet.")

    def close(self):
        if self.connection and self.connection.is_open:
            self.connection.close()
