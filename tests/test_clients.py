# tests/test_clients.py
import json
from decimal import Decimal

import httpx
import pytest
from fastapi.testclient import TestClient

from checkout_service import clients
from checkout_service.clients import JupiterTokenInfoProvider, SettlementPublisher, SolanaRpcClient, SupabaseStore
from checkout_service.errors import StoreError
from checkout_service.models import DiscountType
from mock_services import mock_order_store, mock_quote_service


@pytest.fixture
def store():
    return SupabaseStore(TestClient(mock_order_store.app), "http://testserver", "service-key")


def test_get_pricing(store):
    pricing = store.get_pricing("prod-hoodie")
    assert pricing.price == Decimal("0.5")
    assert pricing.base_currency == "SOL"
    assert pricing.minimum_order_quantity == 50
    assert pricing.price_modifier_before_min == Decimal("-0.2")
    assert pricing.variant_prices == {}


def test_get_pricing_unknown_product(store):
    with pytest.raises(StoreError):
        store.get_pricing("prod-missing")


def test_merchant_wallet_of_collection(store):
    assert store.get_merchant_wallet("col-b") == mock_order_store.COLLECTION_WALLETS["col-b"]


def test_merchant_wallet_falls_back_to_main_wallet(store):
    assert store.get_merchant_wallet("col-c") == mock_order_store.MAIN_WALLET


def test_active_coupon_lookup_is_case_insensitive(store):
    coupon = store.get_active_coupon(" viponly ")
    assert coupon.discount_type == DiscountType.FIXED
    assert coupon.discount_value == Decimal("0.1")
    assert coupon.collection_ids == ["col-b"]
    assert coupon.eligibility_groups[0].operator == "OR"
    assert store.get_active_coupon("NOPE") is None


def test_order_lifecycle(store):
    order_id = store.create_order("prod-tee", [{"name": "Size", "value": "XL"}], {"address": "x"},
                                  "BuyerWallet", {"batchOrderId": "b-1"})
    assert mock_order_store.ORDERS[order_id]["payment_metadata"] == {"batchOrderId": "b-1"}

    store.update_order(order_id, {"status": "confirmed", "item_index": 1})
    assert mock_order_store.ORDERS[order_id]["status"] == "confirmed"

    store.create_custom_data_entry(order_id, "prod-tee", "BuyerWallet", {"text": "Hallo"})
    assert mock_order_store.CUSTOMIZATIONS[order_id]["customization_data"] == {"text": "Hallo"}


def test_failing_order_creation_raises(store):
    with pytest.raises(StoreError):
        store.create_order("prod-FAIL", [], {}, "anonymous", {})


def test_update_of_unknown_order_raises(store):
    with pytest.raises(StoreError):
        store.update_order("does-not-exist", {"status": "draft"})


def test_unreachable_store_raises_store_error():
    def refuse(request):
        raise httpx.ConnectError("connection refused", request=request)

    store = SupabaseStore(httpx.Client(transport=httpx.MockTransport(refuse)), "http://store.invalid", "key")
    with pytest.raises(StoreError):
        store.get_pricing("prod-tee")


def _rpc_transport(body, status_code=200):
    def handler(request):
        assert json.loads(request.content)["method"] == "getTokenAccountsByOwner"
        return httpx.Response(status_code, json=body)
    return httpx.MockTransport(handler)


def test_token_balance_sums_accounts():
    def account(amount):
        return {"account": {"data": {"parsed": {"info": {"tokenAmount": {"uiAmountString": amount}}}}}}

    body = {"jsonrpc": "2.0", "id": 1, "result": {"value": [account("1.5"), account("2.25")]}}
    rpc = SolanaRpcClient(httpx.Client(transport=_rpc_transport(body)), "http://rpc.invalid")
    assert rpc.get_token_balance("owner", "mint") == Decimal("3.75")


def test_token_balance_rpc_error():
    body = {"jsonrpc": "2.0", "id": 1, "error": {"code": -32602, "message": "Invalid param"}}
    rpc = SolanaRpcClient(httpx.Client(transport=_rpc_transport(body)), "http://rpc.invalid")
    with pytest.raises(StoreError):
        rpc.get_token_balance("owner", "mint")


def test_token_info():
    provider = JupiterTokenInfoProvider(TestClient(mock_quote_service.app), "http://testserver")
    info = provider.get_token_info(mock_quote_service.BONK_MINT)
    assert info.decimals == 5
    assert info.symbol == "BONK"
    with pytest.raises(StoreError):
        provider.get_token_info("UnknownMint")


class _FakeChannel:
    def __init__(self):
        self.published = []

    def queue_declare(self, queue, durable):
        self.queue = queue

    def basic_publish(self, exchange, routing_key, body, properties):
        self.published.append((routing_key, json.loads(body), properties.delivery_mode))


class _FakeConnection:
    def __init__(self, parameters):
        self.is_closed = False
        self.is_open = True
        self._channel = _FakeChannel()

    def channel(self):
        return self._channel

    def close(self):
        self.is_open = False
        self.is_closed = True


def test_settlement_publisher_sends_persistent_message(monkeypatch):
    monkeypatch.setattr(clients.pika, "BlockingConnection", _FakeConnection)
    publisher = SettlementPublisher("mq", "user", "pw", "settlement.batches.new")

    publisher.publish_batch("batch-1", {"totalUnits": 1500, "amount": Decimal("1.5")})

    routing_key, message, delivery_mode = publisher.channel.published[0]
    assert routing_key == "settlement.batches.new"
    assert message["batchOrderId"] == "batch-1"
    assert message["totalUnits"] == 1500
    assert message["amount"] == "1.5"
    assert delivery_mode == 2
    publisher.close()
    assert publisher.connection.is_closed


def test_token_balance_with_unparsed_account_raises_store_error():
    body = {"jsonrpc": "2.0", "id": 1, "result": {"value": [{"account": {}}]}}
    rpc = SolanaRpcClient(httpx.Client(transport=_rpc_transport(body)), "http://rpc.invalid")
    with pytest.raises(StoreError):
        rpc.get_token_balance("owner", "mint")


def test_token_balance_with_non_object_body_raises_store_error():
    rpc = SolanaRpcClient(httpx.Client(transport=_rpc_transport(["unexpected"])), "http://rpc.invalid")
    with pytest.raises(StoreError):
        rpc.get_token_balance("owner", "mint")
