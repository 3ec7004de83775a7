"""
main.py — FastAPI Entry Point for the Checkout Service

This module provides the REST API interface for the storefront checkout backend.
It acts as the entry point between the storefront and the batch settlement
workflow that prices a cart, applies coupons and creates the orders.

Responsibilities:
    • Accept batch checkout requests via HTTP API
    • Build request-scoped collaborators (HTTP client, store, quote providers)
    • Map checkout errors to `{success: false, error}` responses
    • Offer a stand-alone coupon eligibility check
    • Provide system health information
"""

from typing import Iterator, Optional

import httpx
from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from .clients import SettlementPublisher, SolanaRpcClient, SupabaseStore
from .config import Settings, get_settings
from .coupons import CouponEligibilityEngine
from .errors import CheckoutError, StoreError
from .logging_config import get_logger, setup_logging, short_wallet
from .models import BatchCheckoutRequest, CouponValidationRequest
from .workflow import BatchCheckoutOrchestrator, build_orchestrator

# Initialization
# Configure logging and initialize FastAPI app
setup_logging(get_settings())
log = get_logger(__name__)
app = FastAPI(title="Storefront Batch Checkout Service")


# Request-scoped dependencies
def get_http_client(settings: Settings = Depends(get_settings)) -> Iterator[httpx.Client]:
    """Yields one HTTP client per request, closed when the request finishes."""
    timeout_config = httpx.Timeout(settings.http_connect_timeout, read=settings.http_read_timeout)
    client = httpx.Client(timeout=timeout_config)
    try:
        yield client
    finally:
        client.close()


def get_publisher(settings: Settings = Depends(get_settings)) -> Iterator[Optional[SettlementPublisher]]:
    """Yields a settlement publisher when a RabbitMQ host is configured, otherwise None."""
    if not settings.rabbitmq_host:
        yield None
        return
    publisher = SettlementPublisher(settings.rabbitmq_host, settings.rabbitmq_user,
                                    settings.rabbitmq_password, settings.settlement_queue)
    try:
        yield publisher
    finally:
        publisher.close()


def get_orchestrator(settings: Settings = Depends(get_settings),
                     client: httpx.Client = Depends(get_http_client),
                     publisher: Optional[SettlementPublisher] = Depends(get_publisher)) -> BatchCheckoutOrchestrator:
    return build_orchestrator(settings, client, publisher)


def get_store(settings: Settings = Depends(get_settings),
              client: httpx.Client = Depends(get_http_client)) -> SupabaseStore:
    return SupabaseStore(client, settings.supabase_url, settings.supabase_service_role_key)


def get_eligibility_engine(settings: Settings = Depends(get_settings),
                           client: httpx.Client = Depends(get_http_client)) -> CouponEligibilityEngine:
    return CouponEligibilityEngine(SolanaRpcClient(client, settings.solana_rpc_url))


@app.on_event("startup")
def on_startup():
    """Logs service start; collaborators are created per request, so nothing else is started."""
    log.info("Checkout-Service startet...")


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Malformed bodies are answered like every other rejected cart: 400 `{success: false, error}`."""
    details = "; ".join(
        f"{'.'.join(str(part) for part in error.get('loc', ()))}: {error.get('msg')}" for error in exc.errors()
    )
    log.warning(f"Ungültige Anfrage an {request.url.path}: {details}")
    return JSONResponse(status_code=400, content={"success": False, "error": "Invalid request body",
                                                  "details": details})


# API Endpoint: Storefront → Checkout Service
@app.post("/v1/checkout/batch")
def create_batch_checkout(
        checkout: BatchCheckoutRequest,
        orchestrator: BatchCheckoutOrchestrator = Depends(get_orchestrator)
):
    """
    Receives a cart from the storefront, settles it and creates one order per item.

    Processing runs synchronously; the response carries the complete breakdown.
    A batch where only some items could be created still succeeds; the caller
    detects this by comparing the length of `orders` with the cart.

    Args:
        checkout (BatchCheckoutRequest): Validated cart payload.
        orchestrator (BatchCheckoutOrchestrator): Request-scoped workflow.

    Returns:
        dict | JSONResponse: Success payload, or `{success: false, error}` with status
            400 (rejected cart, zero orders), 503 (no conversion rate) or 500 (unexpected).
    """
    log.info(f"Batch-Checkout erhalten: {len(checkout.items)} Artikel, "
             f"Wallet: {short_wallet(checkout.walletAddress)}, "
             f"Methode: {checkout.paymentMetadata.paymentMethod}")
    try:
        return orchestrator.process(checkout)
    except CheckoutError as e:
        log.error(f"Batch-Checkout abgelehnt: {e.message}")
        return JSONResponse(status_code=e.status_code, content={"success": False, "error": e.message})
    except Exception as e:
        log.critical(f"Kritischer Fehler im Batch-Checkout: {e}", exc_info=True)
        return JSONResponse(status_code=500, content={"success": False, "error": "Failed to process batch order",
                                                      "details": str(e)})


@app.post("/v1/coupons/validate")
def validate_coupon(
        payload: CouponValidationRequest,
        store: SupabaseStore = Depends(get_store),
        engine: CouponEligibilityEngine = Depends(get_eligibility_engine)
):
    """
    Checks a coupon code for a wallet and a set of collections without creating anything.

    Returns:
        dict | JSONResponse: 200 `{success, coupon}`, 404 if no active coupon matches,
            403 with the eligibility reason if the wallet does not qualify.
    """
    try:
        coupon = store.get_active_coupon(payload.code)
    except StoreError as e:
        log.error(f"Coupon-Abfrage fehlgeschlagen: {e}")
        return JSONResponse(status_code=500, content={"success": False, "error": "Internal server error"})

    if coupon is None:
        return JSONResponse(status_code=404, content={"success": False, "error": "Coupon not found or inactive"})

    result = engine.evaluate(coupon, payload.walletAddress, payload.productCollectionIds)
    if not result.valid:
        return JSONResponse(status_code=403, content={"success": False, "error": "Coupon is not eligible",
                                                      "details": result.error})
    return {"success": True, "coupon": coupon.model_dump(mode="json")}


# Health Check Endpoint
@app.get("/health")
def health_check():
    """
    Simple health check endpoint.

    Returns:
        dict: A basic JSON object indicating service availability.
    """
    return {"status": "ok"}
