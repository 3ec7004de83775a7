"""
workflow.py — Batch Checkout Settlement Orchestration

This module contains the orchestration logic that turns a cart into settled,
persisted orders. It coordinates all collaborators in a fixed sequence:

Workflow Overview:
1. Validate the cart (non-empty)
2. Per item: resolve price, destination wallet and settlement-currency total
   (accumulated in smallest units per wallet and per batch)
3. Resolve the batch settlement currency label
4. Evaluate the coupon and apply its discount (capped at the pre-fee subtotal)
5. Decide free-order status and the multi-wallet distribution fee
6. Choose the receiver wallet
7. Synthesize the free-order transaction signature
8. Create one order per item, continuing past per-item failures
9. Reduce the per-item outcomes to a batch result

Steps 1–7 have no side effects; any error there rejects the whole batch before
a single order exists. Once step 8 starts, every item is attempted.
"""

import logging
import random
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx
import pika
from pydantic import ValidationError

from .clients import (
    CouponStore,
    JupiterTokenInfoProvider,
    OrderStore,
    ProductCatalog,
    SettlementPublisher,
    SolanaRpcClient,
    SupabaseStore,
    TokenInfoProvider,
    WalletDirectory,
)
from .config import Settings
from .coupons import CouponEligibilityEngine, EligibilityResult
from .errors import (
    BatchCreationError,
    CartValidationError,
    CheckoutError,
    CollectionResolutionError,
    SettlementCurrencyError,
    StoreError,
)
from .logging_config import short_wallet
from .models import BatchCheckoutRequest, CartItemRequest, DiscountType, PaymentMethod, PaymentMetadata
from .money import (
    Currency,
    Denomination,
    Token,
    as_denomination,
    code_of,
    from_smallest_unit,
    percentage_of,
    same_currency,
    to_smallest_unit,
)
from .pricing import PriceResolution, resolve_price
from .rates import ConversionQuote, RateResolver, default_providers, estimate_native_usd_price

log = logging.getLogger(__name__)


@dataclass
class ItemSettlement:
    index: int
    item: CartItemRequest
    collection_id: str
    merchant_wallet: str
    price: PriceResolution
    currency: Denomination
    unit_units: int
    total_units: int
    conversion: Optional[ConversionQuote] = None
    strict_token: Optional[Denomination] = None

    @property
    def product_id(self) -> str:
        return self.item.product.id


@dataclass
class BatchSettlement:
    batch_id: str
    payment_method: str
    currency: Optional[Denomination] = None
    currency_label: str = ""
    items: List[ItemSettlement] = field(default_factory=list)
    wallet_units: Dict[str, int] = field(default_factory=dict)
    subtotal_units: int = 0
    discount_units: int = 0
    fee_units: int = 0
    total_units: int = 0
    is_free: bool = False
    receiver_wallet: Optional[str] = None
    transaction_signature: Optional[str] = None
    coupon_code: Optional[str] = None
    coupon_error: Optional[str] = None
    rates: Dict[Tuple[str, str], ConversionQuote] = field(default_factory=dict)

    def display(self, units: int) -> Decimal:
        return from_smallest_unit(units, self.currency)


@dataclass
class ItemOutcome:
    """Result of creating the order of one cart item: either `order_id` or `error` is set."""
    settlement: ItemSettlement
    order_number: str
    order_id: Optional[str] = None
    error: Optional[str] = None
    status: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.order_id is not None


def generate_order_numbers(count: int, now: Optional[datetime] = None) -> List[str]:
    """Order numbers in the SF-MMDD-XXXX format, distinct within one batch."""
    now = now or datetime.now(timezone.utc)
    suffixes = random.sample(range(1000, 10000), count)
    return [f"SF-{now.month:02d}{now.day:02d}-{suffix}" for suffix in suffixes]


def free_order_signature(timestamp_ms: int, wallet_address: Optional[str]) -> str:
    return f"free_order_{timestamp_ms}_{wallet_address or 'anonymous'}"


def _amount(value: Decimal) -> float:
    # JSON boundary only; sums stay in smallest units
    return float(value)


class BatchCheckoutOrchestrator:
    """
    Settles a cart and creates its orders.

    All collaborators are injected; the orchestrator holds no state between
    requests. A new instance per request is cheap and expected.

    Args:
        settings (Settings): Routing, fee and currency configuration.
        catalog (ProductCatalog): Pricing snapshots and collection strict tokens.
        wallets (WalletDirectory): Merchant wallet per collection.
        coupons (CouponStore): Active coupon lookup.
        tokens (TokenInfoProvider): Token metadata for strict-token collections.
        orders (OrderStore): Order persistence.
        rates (RateResolver): Conversion rates.
        eligibility (CouponEligibilityEngine): Coupon rule evaluation.
        publisher (SettlementPublisher, optional): Notified once per completed batch.
        usd_estimator (callable, optional): Returns an estimated SOL/USD price for informational output.
        clock (callable): Seconds since epoch; used for free-order signatures.
    """

    def __init__(self, settings: Settings, catalog: ProductCatalog, wallets: WalletDirectory,
                 coupons: CouponStore, tokens: TokenInfoProvider, orders: OrderStore,
                 rates: RateResolver, eligibility: CouponEligibilityEngine,
                 publisher: Optional[SettlementPublisher] = None,
                 usd_estimator: Optional[Callable[[], Decimal]] = None,
                 clock: Callable[[], float] = time.time):
        self.settings = settings
        self.catalog = catalog
        self.wallets = wallets
        self.coupons = coupons
        self.tokens = tokens
        self.orders = orders
        self.rates = rates
        self.eligibility = eligibility
        self.publisher = publisher
        self.usd_estimator = usd_estimator
        self.clock = clock

    # --- Settlement (no side effects) ---

    def settle(self, request: BatchCheckoutRequest, batch_id: Optional[str] = None) -> BatchSettlement:
        """
        Computes the full settlement of a cart without creating any order.

        Raises:
            CartValidationError: If the cart is empty.
            CollectionResolutionError: If an item has no collection or wallet.
            SettlementCurrencyError: If items need different settlement currencies.
            RateUnavailableError: If a required conversion rate cannot be obtained.
        """
        if not request.items:
            raise CartValidationError("Invalid or empty items array")

        meta = request.paymentMetadata
        batch = BatchSettlement(batch_id=batch_id or str(uuid.uuid4()), payment_method=meta.paymentMethod)
        log_prefix = f"[Batch: {batch.batch_id}]"
        log.info(f"{log_prefix} Starte Settlement für {len(request.items)} Artikel "
                 f"(Methode: {meta.paymentMethod}, Wallet: {short_wallet(request.walletAddress)}).")

        strict_tokens: Dict[str, Denomination] = {}
        for index, item in enumerate(request.items, start=1):
            settled = self._settle_item(batch, index, item, meta, strict_tokens)
            batch.items.append(settled)
            batch.subtotal_units += settled.total_units
            batch.wallet_units[settled.merchant_wallet] = (
                batch.wallet_units.get(settled.merchant_wallet, 0) + settled.total_units
            )

        batch.currency_label = self._currency_label(batch, meta)
        log.info(f"{log_prefix} Zwischensumme: {batch.display(batch.subtotal_units)} {batch.currency_label} "
                 f"auf {len(batch.wallet_units)} Wallet(s).")

        if meta.couponCode:
            self._apply_coupon(batch, meta.couponCode, request.walletAddress)

        discounted = batch.subtotal_units - batch.discount_units
        batch.is_free = discounted <= 0
        if batch.is_free:
            batch.fee_units = 0
            batch.total_units = 0
        else:
            batch.fee_units = self._distribution_fee(batch)
            batch.total_units = discounted + batch.fee_units

        if len(batch.wallet_units) > 1:
            batch.receiver_wallet = self.settings.distribution_wallet
        else:
            batch.receiver_wallet = next(iter(batch.wallet_units))

        if batch.is_free:
            batch.transaction_signature = free_order_signature(int(self.clock() * 1000), request.walletAddress)
            log.info(f"{log_prefix} Gratis-Bestellung erkannt, Signatur: {batch.transaction_signature}")

        log.info(f"{log_prefix} Gesamt: {batch.display(batch.total_units)} {batch.currency_label} "
                 f"(Rabatt: {batch.display(batch.discount_units)}, Gebühr: {batch.display(batch.fee_units)}).")
        return batch

    def _settle_item(self, batch: BatchSettlement, index: int, item: CartItemRequest,
                     meta: PaymentMetadata, strict_tokens: Dict[str, Denomination]) -> ItemSettlement:
        product = item.product
        try:
            pricing = self.catalog.get_pricing(product.id)
        except StoreError as e:
            raise CheckoutError(f"Product {product.name or product.id} is unavailable: {e}")

        collection_id = product.collectionId or pricing.collection_id
        if not collection_id:
            raise CollectionResolutionError(f"Invalid collection for item {product.name or product.id}: missing collection id")
        try:
            merchant_wallet = self.wallets.get_merchant_wallet(collection_id)
        except StoreError as e:
            raise CollectionResolutionError(f"Invalid collection for item {product.name or product.id}: {e}")

        price = resolve_price(pricing, item.selectedOptions, product.variants)

        strict_token = None
        method = PaymentMethod.parse(meta.paymentMethod)
        if method == PaymentMethod.DEFAULT:
            target = as_denomination(meta.defaultToken or self.settings.default_token)
            if target is None:
                raise SettlementCurrencyError(f"Unsupported default token {meta.defaultToken or self.settings.default_token}")
        elif method == PaymentMethod.SPL_TOKENS:
            mint = self._strict_token_mint(collection_id)
            if mint:
                if mint not in strict_tokens:
                    strict_tokens[mint] = self._resolve_token(mint, meta)
                strict_token = strict_tokens[mint]
                target = strict_token
            else:
                target = self._stable()
        else:
            target = self._stable()

        if batch.currency is None:
            batch.currency = target
        elif not same_currency(batch.currency, target):
            raise SettlementCurrencyError(
                f"Items in this cart settle in different currencies ({code_of(batch.currency)}, {code_of(target)}); "
                f"please check out separately"
            )

        base = as_denomination(price.base_currency)
        if base is None:
            raise SettlementCurrencyError(f"Unsupported base currency {price.base_currency} for {product.id}")

        conversion = None
        if same_currency(base, target):
            unit_units = to_smallest_unit(price.unit_price, target)
        else:
            conversion = self._rate(batch, base, target)
            # derived from the unrounded price so rounding happens once
            unit_units = to_smallest_unit(price.exact_price * conversion.rate, target)

        total_units = unit_units * item.quantity
        log.info(f"[Batch: {batch.batch_id}] Artikel {index}: {product.id} x{item.quantity} = "
                 f"{from_smallest_unit(total_units, target)} {code_of(target)} -> {short_wallet(merchant_wallet)}")

        return ItemSettlement(
            index=index,
            item=item,
            collection_id=collection_id,
            merchant_wallet=merchant_wallet,
            price=price,
            currency=target,
            unit_units=unit_units,
            total_units=total_units,
            conversion=conversion,
            strict_token=strict_token,
        )

    def _stable(self) -> Denomination:
        return as_denomination(self.settings.stable_currency) or Currency.USDC

    def _strict_token_mint(self, collection_id: str) -> Optional[str]:
        try:
            return self.catalog.get_strict_token(collection_id)
        except StoreError as e:
            raise CollectionResolutionError(f"Cannot read token settings of collection {collection_id}: {e}")

    def _resolve_token(self, mint: str, meta: PaymentMetadata) -> Denomination:
        known = Currency.from_mint(mint)
        if known is not None:
            return known
        try:
            info = self.tokens.get_token_info(mint)
            return Token(mint=mint, decimals=info.decimals, symbol=info.symbol, name=info.name)
        except StoreError as e:
            if meta.tokenDecimals is None:
                raise SettlementCurrencyError(f"Cannot resolve token {mint}: {e}")
            log.warning(f"Token-Info für {mint} nicht verfügbar, nutze Client-Angaben: {e}")
            return Token(mint=mint, decimals=meta.tokenDecimals, symbol=meta.tokenSymbol)

    def _rate(self, batch: BatchSettlement, source: Denomination, target: Denomination) -> ConversionQuote:
        key = (code_of(source), code_of(target))
        if key not in batch.rates:
            batch.rates[key] = self.rates.resolve(source, target)
        return batch.rates[key]

    def _currency_label(self, batch: BatchSettlement, meta: PaymentMetadata) -> str:
        strict = next((i.strict_token for i in batch.items if i.strict_token is not None), None)
        if strict is not None:
            return code_of(strict)
        if PaymentMethod.parse(meta.paymentMethod) == PaymentMethod.DEFAULT:
            return code_of(meta.defaultToken or self.settings.default_token)
        if batch.currency is not None:
            return code_of(batch.currency)
        return code_of(self.settings.stable_currency)

    def _units_in_settlement(self, batch: BatchSettlement, amount: Decimal, currency: str) -> int:
        """Converts a configured amount into smallest units of the batch currency."""
        source = as_denomination(currency)
        if source is None or same_currency(source, batch.currency):
            return to_smallest_unit(amount, batch.currency)
        forward = batch.rates.get((code_of(source), code_of(batch.currency)))
        if forward is not None:
            return to_smallest_unit(amount * forward.rate, batch.currency)
        backward = batch.rates.get((code_of(batch.currency), code_of(source)))
        if backward is not None:
            return to_smallest_unit(amount / backward.rate, batch.currency)
        quote = self._rate(batch, source, batch.currency)
        return to_smallest_unit(amount * quote.rate, batch.currency)

    def _apply_coupon(self, batch: BatchSettlement, code: str, wallet_address: Optional[str]):
        log_prefix = f"[Batch: {batch.batch_id}]"
        batch.coupon_code = code.strip().upper()
        try:
            coupon = self.coupons.get_active_coupon(code)
        except (StoreError, ValidationError) as e:
            log.warning(f"{log_prefix} Coupon {batch.coupon_code} nicht lesbar: {e}")
            coupon = None

        result: EligibilityResult = self.eligibility.evaluate(
            coupon, wallet_address, [i.collection_id for i in batch.items]
        )
        if not result.valid:
            batch.coupon_error = result.error
            log.warning(f"{log_prefix} Coupon {batch.coupon_code} nicht angewendet: {result.error}")
            return

        if result.discount_type == DiscountType.PERCENTAGE:
            discount = percentage_of(batch.subtotal_units, result.discount_value)
        else:
            discount = self._units_in_settlement(batch, result.discount_value,
                                                 self.settings.coupon_reference_currency)
        batch.discount_units = max(0, min(discount, batch.subtotal_units))
        log.info(f"{log_prefix} Coupon {batch.coupon_code} angewendet: "
                 f"-{batch.display(batch.discount_units)} {batch.currency_label}")

    def _distribution_fee(self, batch: BatchSettlement) -> int:
        if batch.payment_method not in self.settings.fee_bearing_methods:
            return 0
        wallet_count = len(batch.wallet_units)
        if wallet_count <= 1:
            return 0
        per_wallet = self._units_in_settlement(batch, self.settings.distribution_fee_per_wallet,
                                               self.settings.distribution_fee_currency)
        return per_wallet * wallet_count

    # --- Order creation (side effects) ---

    def _metadata(self, request: BatchCheckoutRequest, batch: BatchSettlement, settled: ItemSettlement,
                  order_number: str) -> Dict[str, Any]:
        metadata = request.paymentMetadata.model_dump(exclude_none=True)
        metadata.update({
            "batchOrderId": batch.batch_id,
            "orderNumber": order_number,
            "isBatchOrder": True,
            "itemIndex": settled.index,
            "totalItemsInBatch": len(batch.items),
            "quantity": settled.item.quantity,
            "variantKey": settled.price.variant_key or None,
            "baseCurrency": settled.price.base_currency,
            "basePrice": _amount(settled.price.unit_price),
            "unitPrice": _amount(from_smallest_unit(settled.unit_units, batch.currency)),
            "itemTotal": _amount(from_smallest_unit(settled.total_units, batch.currency)),
            "itemTotalUnits": settled.total_units,
            "merchantWallet": settled.merchant_wallet,
            "walletAmounts": {w: _amount(batch.display(u)) for w, u in batch.wallet_units.items()},
            "walletUnits": dict(batch.wallet_units),
            "receiverWallet": batch.receiver_wallet,
            "originalPrice": _amount(batch.display(batch.subtotal_units)),
            "couponCode": batch.coupon_code if batch.discount_units else None,
            "couponDiscount": _amount(batch.display(batch.discount_units)),
            "fee": _amount(batch.display(batch.fee_units)),
            "totalPaymentAmount": _amount(batch.display(batch.total_units)),
            "currencyUnit": batch.currency_label,
            "isFreeOrder": batch.is_free,
        })
        if batch.transaction_signature:
            metadata["transactionId"] = batch.transaction_signature
        if settled.strict_token is not None:
            metadata["strictToken"] = {
                "mint": settled.strict_token.mint,
                "symbol": code_of(settled.strict_token),
                "decimals": settled.strict_token.scale,
            }
        if settled.conversion is not None:
            metadata["conversion"] = {
                "from": settled.conversion.source,
                "to": settled.conversion.target,
                "rate": str(settled.conversion.rate),
                "provider": settled.conversion.provider,
            }
        return metadata

    def _create_item_order(self, request: BatchCheckoutRequest, batch: BatchSettlement,
                           settled: ItemSettlement, order_number: str) -> ItemOutcome:
        log_prefix = f"[Batch: {batch.batch_id}]"
        status = "confirmed" if batch.is_free else "draft"
        wallet_address = request.walletAddress or "anonymous"
        outcome = ItemOutcome(settlement=settled, order_number=order_number)
        try:
            outcome.order_id = self.orders.create_order(
                settled.product_id,
                settled.price.variant_selections,
                request.shippingInfo,
                wallet_address,
                self._metadata(request, batch, settled, order_number),
            )
        except StoreError as e:
            log.error(f"{log_prefix} Bestellung für Artikel {settled.index} ({settled.product_id}) fehlgeschlagen: {e}")
            outcome.error = str(e)
            return outcome
        except Exception as e:
            log.error(f"{log_prefix} Unerwarteter Fehler bei Artikel {settled.index} ({settled.product_id}): {e}",
                      exc_info=True)
            outcome.error = str(e)
            return outcome

        outcome.status = status
        linkage = {
            "batch_order_id": batch.batch_id,
            "order_number": order_number,
            "item_index": settled.index,
            "total_items_in_batch": len(batch.items),
            "amount": _amount(from_smallest_unit(settled.total_units, batch.currency)),
            "status": status,
            "updated_at": datetime.now(timezone.utc).isoformat(),
        }
        if batch.transaction_signature:
            linkage["transaction_signature"] = batch.transaction_signature
        try:
            self.orders.update_order(outcome.order_id, linkage)
        except StoreError as e:
            # order exists; secondary fields may be missing until repaired
            log.warning(f"{log_prefix} Batch-Verknüpfung für Order {outcome.order_id} fehlgeschlagen: {e}")

        if settled.item.customizationData:
            try:
                self.orders.create_custom_data_entry(outcome.order_id, settled.product_id, wallet_address,
                                                     settled.item.customizationData)
            except StoreError as e:
                log.warning(f"{log_prefix} Anpassungsdaten für Order {outcome.order_id} nicht gespeichert: {e}")

        log.info(f"{log_prefix} Order {outcome.order_id} ({order_number}) für Artikel {settled.index} angelegt.")
        return outcome

    def create_orders(self, request: BatchCheckoutRequest, batch: BatchSettlement) -> List[ItemOutcome]:
        """Creates one order per item. Never stops early; failures are recorded per item."""
        order_numbers = generate_order_numbers(len(batch.items))
        return [
            self._create_item_order(request, batch, settled, order_number)
            for settled, order_number in zip(batch.items, order_numbers)
        ]

    # --- Batch reduction ---

    def _estimated_usd(self, batch: BatchSettlement) -> Optional[float]:
        total = batch.display(batch.total_units)
        if batch.currency.usd_pegged:
            return _amount(total)
        if batch.currency != Currency.SOL or self.usd_estimator is None:
            return None
        try:
            return _amount(total * self.usd_estimator())
        except Exception as e:
            # informational only; the batch is already completed here
            log.warning(f"[Batch: {batch.batch_id}] USD-Schätzung fehlgeschlagen: {e}")
            return None

    def _publish(self, batch: BatchSettlement, created: List[ItemOutcome]):
        if self.publisher is None:
            return
        try:
            self.publisher.publish_batch(batch.batch_id, {
                "orderIds": [o.order_id for o in created],
                "receiverWallet": batch.receiver_wallet,
                "walletUnits": batch.wallet_units,
                "currencyUnit": batch.currency_label,
                "totalUnits": batch.total_units,
                "feeUnits": batch.fee_units,
                "isFreeOrder": batch.is_free,
            })
        except pika.exceptions.AMQPError as e:
            log.critical(f"[Batch: {batch.batch_id}] Settlement-Nachricht nicht gesendet: {e}")

    def process(self, request: BatchCheckoutRequest) -> Dict[str, Any]:
        """
        Runs the complete batch checkout.

        Args:
            request (BatchCheckoutRequest): Validated cart payload.

        Returns:
            dict: Success response with per-item results, wallet aggregates, fee and discount.
                The `orders` list is shorter than the cart when individual items failed.

        Raises:
            CheckoutError: For every batch-level rejection (see `settle`), and
                BatchCreationError when no order could be created.
        """
        batch = self.settle(request)
        outcomes = self.create_orders(request, batch)

        created = [o for o in outcomes if o.ok]
        failed = [o for o in outcomes if not o.ok]
        if not created:
            log.error(f"[Batch: {batch.batch_id}] Keine Bestellung angelegt, Batch abgelehnt.")
            raise BatchCreationError("Failed to create any orders in batch")
        if failed:
            log.warning(f"[Batch: {batch.batch_id}] {len(failed)} von {len(outcomes)} Artikeln fehlgeschlagen.")

        self._publish(batch, created)

        return {
            "success": True,
            "batchOrderId": batch.batch_id,
            "orderId": created[0].order_id,
            "orderNumbers": [o.order_number for o in created],
            "orderIds": [o.order_id for o in created],
            "isFreeOrder": batch.is_free,
            "fee": _amount(batch.display(batch.fee_units)),
            "transactionSignature": batch.transaction_signature,
            "orders": [
                {
                    "orderId": o.order_id,
                    "orderNumber": o.order_number,
                    "productId": o.settlement.product_id,
                    "productName": o.settlement.item.product.name,
                    "status": o.status,
                    "quantity": o.settlement.item.quantity,
                    "price": _amount(from_smallest_unit(o.settlement.unit_units, batch.currency)),
                    "itemTotal": _amount(from_smallest_unit(o.settlement.total_units, batch.currency)),
                    "baseCurrency": o.settlement.price.base_currency,
                    "variantKey": o.settlement.price.variant_key or None,
                    "variantSelections": o.settlement.price.variant_selections,
                    "itemIndex": o.settlement.index,
                    "totalItems": len(batch.items),
                }
                for o in created
            ],
            "failedItems": [
                {"productId": o.settlement.product_id, "itemIndex": o.settlement.index, "error": o.error}
                for o in failed
            ],
            "receiverWallet": batch.receiver_wallet,
            "totalPaymentAmount": _amount(batch.display(batch.total_units)),
            "couponDiscount": _amount(batch.display(batch.discount_units)),
            "originalPrice": _amount(batch.display(batch.subtotal_units)),
            "walletAmounts": {w: _amount(batch.display(u)) for w, u in batch.wallet_units.items()},
            "currencyUnit": batch.currency_label,
            "estimatedUsdValue": self._estimated_usd(batch),
        }


def build_orchestrator(settings: Settings, client: httpx.Client,
                       publisher: Optional[SettlementPublisher] = None) -> BatchCheckoutOrchestrator:
    """
    Wires the production collaborators around one request-scoped HTTP client.

    Args:
        settings (Settings): Service configuration.
        client (httpx.Client): HTTP client owned by the request handler.
        publisher (SettlementPublisher, optional): Settlement queue publisher.
    """
    store = SupabaseStore(client, settings.supabase_url, settings.supabase_service_role_key)
    providers = default_providers(client, settings)
    return BatchCheckoutOrchestrator(
        settings=settings,
        catalog=store,
        wallets=store,
        coupons=store,
        tokens=JupiterTokenInfoProvider(client, settings.jupiter_token_url),
        orders=store,
        rates=RateResolver(providers),
        eligibility=CouponEligibilityEngine(SolanaRpcClient(client, settings.solana_rpc_url)),
        publisher=publisher,
        usd_estimator=lambda: estimate_native_usd_price(providers, settings.native_usd_fallback_price),
    )
