"""
FastAPI application for the storefront cart and order core.
"""
import time
import logging
from dataclasses import asdict
from functools import lru_cache
from typing import Optional
from fastapi import Depends, FastAPI, HTTPException, Header, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware

from storefront.config import Config
from storefront.models import (
    CartItemRequest,
    CartResponse,
    OrderListResponse,
    PlaceOrderRequest,
    RefundRequest,
    Requester,
    StatusUpdateRequest,
    UpdateQuantityRequest
)
from storefront.results import CheckoutResult, ErrorKind
from storefront.cart_service import CartService
from storefront.checkout_service import CheckoutService
from storefront.payment_gateway import StripeGateway, parse_webhook_event, refund_ids_of
from storefront.exceptions import (
    CheckoutInProgressError,
    LimitExceededError,
    ProductNotFoundError,
    RedisConnectionError,
    ValidationError
)
from storefront.middleware import RequestContextMiddleware
from storefront.redis_client import get_redis_client

logger = logging.getLogger(__name__)

# Initialize FastAPI app
app = FastAPI(
    title="Storefront API",
    description="Cart, checkout and order service",
    version="1.0.0"
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Request ids and access logging
app.add_middleware(RequestContextMiddleware)

ERROR_STATUS_CODES = {
    ErrorKind.EMPTY_CART: 400,
    ErrorKind.UNKNOWN_PRODUCT: 400,
    ErrorKind.PAYMENT_FAILED: 402,
    ErrorKind.FORBIDDEN: 403,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.INSUFFICIENT_STOCK: 409,
    ErrorKind.CHECKOUT_IN_PROGRESS: 409,
    ErrorKind.INVALID_TRANSITION: 409,
    ErrorKind.COMPENSATION_PARTIAL_FAILURE: 502,
    ErrorKind.STORE_UNAVAILABLE: 503,
}


@lru_cache(maxsize=1)
def get_checkout_service() -> CheckoutService:
    """Build the checkout service once, with the configured payment gateway"""
    return CheckoutService(payment_gateway=StripeGateway())


def get_cart_service(checkout: CheckoutService = Depends(get_checkout_service)) -> CartService:
    return checkout.carts


def get_requester(
    user_id: str = Header(..., alias="X-User-ID", description="User identifier"),
    role: Optional[str] = Header(None, alias="X-User-Role", description="User role")
) -> Requester:
    """Identity set by the authentication middleware in front of this service"""
    if not user_id.strip():
        raise HTTPException(status_code=401, detail="User ID is required")
    return Requester(user_id=user_id.strip(), is_administrator=(role == "admin"))


def get_cart_owner(
    cart_id: Optional[str] = Header(None, alias="X-Cart-ID", description="Guest cart identifier"),
    user_id: Optional[str] = Header(None, alias="X-User-ID", description="User identifier")
) -> tuple:
    """Logged-in users own their cart; guests are identified by their cart id, in a separate key space"""
    if user_id and user_id.strip():
        return user_id.strip(), False
    if cart_id and cart_id.strip():
        return cart_id.strip(), True
    raise HTTPException(status_code=400, detail="Cart ID is required")


def result_response(result: CheckoutResult, success_status: int = 200) -> JSONResponse:
    """Render a checkout result: the order, or the typed error with its disposition"""
    if result.ok:
        return JSONResponse(
            status_code=success_status,
            content={"order": result.order.model_dump(mode="json")}
        )

    error = result.error
    content = {
        "error": error.kind.value,
        "message": error.message,
        "disposition": error.disposition.value,
        "product_id": error.product_id,
        "reason": error.reason,
        "failures": [asdict(failure) for failure in error.failures]
    }
    if result.order is not None:
        content["order"] = result.order.model_dump(mode="json")
    return JSONResponse(status_code=ERROR_STATUS_CODES[error.kind], content=content)


# Health check endpoint for ALB
@app.get("/health")
async def health_check():
    """
    Health check endpoint for ALB.
    Always returns HTTP 200 if the application is running.
    Checks Redis connectivity but does not fail if Redis is unavailable.
    """
    redis_status = "healthy"
    redis_latency_ms = None

    try:
        redis_client = get_redis_client()
        ping_start = time.time()
        ping_result = redis_client.ping()
        redis_latency_ms = round((time.time() - ping_start) * 1000, 2)

        if not ping_result:
            redis_status = "unhealthy"
    except RedisConnectionError:
        redis_status = "unhealthy"

    return JSONResponse(
        status_code=200,
        content={
            "status": "healthy",
            "service": "storefront-api",
            "redis": {
                "status": redis_status,
                "latency_ms": redis_latency_ms
            },
            "timestamp": time.time()
        }
    )


# Cart endpoints
@app.get("/cart", response_model=CartResponse)
def get_cart(
    owner: tuple = Depends(get_cart_owner),
    cart_service: CartService = Depends(get_cart_service)
):
    """Get cart contents, valued at current prices. A missing cart is empty."""
    cart_owner, is_guest = owner
    cart = cart_service.get_or_create(cart_owner, is_guest)
    return CartResponse(
        owner=cart_owner,
        items=cart.lines,
        total_items=cart.total_items,
        total_price=cart_service.total(cart_owner, is_guest),
        updated_at=cart.updated_at
    )


@app.post("/cart/items", response_model=dict)
def add_cart_item(
    request: CartItemRequest,
    owner: tuple = Depends(get_cart_owner),
    cart_service: CartService = Depends(get_cart_service)
):
    """
    Add item to cart; re-adding a product sums into its line.
    Uses atomic Lua script for thread-safe operations.
    """
    cart_owner, is_guest = owner
    start_time = time.time()

    result = cart_service.add_item(
        owner=cart_owner,
        product_id=request.product_id,
        quantity=request.quantity,
        is_guest=is_guest
    )

    latency_ms = (time.time() - start_time) * 1000

    return {
        "success": True,
        "message": "Item added to cart",
        "product_id": request.product_id,
        "quantity": result["quantity"],
        "latency_ms": round(latency_ms, 2)
    }


@app.put("/cart/items/{product_id}", response_model=dict)
def update_cart_item(
    product_id: str,
    request: UpdateQuantityRequest,
    owner: tuple = Depends(get_cart_owner),
    cart_service: CartService = Depends(get_cart_service)
):
    """Set a line's quantity; 0 removes the line"""
    cart_owner, is_guest = owner
    result = cart_service.update_quantity(cart_owner, product_id, request.quantity, is_guest)
    return {
        "success": True,
        "message": "Item removed from cart" if result["removed"] else "Item quantity updated",
        "product_id": product_id,
        "quantity": result["quantity"]
    }


@app.delete("/cart/items/{product_id}", response_model=dict)
def remove_cart_item(
    product_id: str,
    owner: tuple = Depends(get_cart_owner),
    cart_service: CartService = Depends(get_cart_service)
):
    """Remove item from cart"""
    cart_owner, is_guest = owner
    if not cart_service.remove_item(cart_owner, product_id, is_guest):
        raise HTTPException(status_code=404, detail="Product not found in cart")

    return {
        "success": True,
        "message": "Item removed from cart",
        "product_id": product_id
    }


@app.post("/cart/merge", response_model=dict)
def merge_carts(
    cart_id: Optional[str] = Header(None, alias="X-Cart-ID", description="Guest cart identifier"),
    requester: Requester = Depends(get_requester),
    cart_service: CartService = Depends(get_cart_service)
):
    """
    Merge the caller's guest cart (X-Cart-ID) into their user cart atomically.
    Typically used on login.
    """
    if not cart_id or not cart_id.strip():
        raise HTTPException(status_code=400, detail="Cart ID is required")

    result = cart_service.merge_carts(
        guest_cart_id=cart_id.strip(),
        user_id=requester.user_id
    )
    return {
        "success": True,
        "message": "Carts merged successfully",
        "merged_items": result["merged"],
        "conflicts": result["conflicts"],
        "dropped_items": result["dropped"]
    }


# Order endpoints
@app.post("/orders")
def place_order(
    request: PlaceOrderRequest,
    requester: Requester = Depends(get_requester),
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    checkout: CheckoutService = Depends(get_checkout_service)
):
    """Check out the caller's cart: charge, create the order, reserve stock, clear the cart"""
    result = checkout.place_order(
        owner=requester.user_id,
        payment_method_ref=request.payment_method_id,
        shipping_address=request.shipping_address,
        idempotency_key=idempotency_key
    )
    return result_response(result, success_status=201)


@app.get("/orders", response_model=OrderListResponse)
def list_orders(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    requester: Requester = Depends(get_requester),
    checkout: CheckoutService = Depends(get_checkout_service)
):
    """List the caller's orders, newest first"""
    return checkout.list_orders(requester, page, limit)


@app.get("/orders/{order_id}")
def get_order(
    order_id: str,
    requester: Requester = Depends(get_requester),
    checkout: CheckoutService = Depends(get_checkout_service)
):
    return result_response(checkout.get_order(order_id, requester))


@app.post("/orders/{order_id}/cancel")
def cancel_order(
    order_id: str,
    requester: Requester = Depends(get_requester),
    checkout: CheckoutService = Depends(get_checkout_service)
):
    """Cancel an order: refund, release stock, mark cancelled. Safe to retry."""
    return result_response(checkout.cancel_order(order_id, requester))


@app.patch("/orders/{order_id}/status")
def update_order_status(
    order_id: str,
    request: StatusUpdateRequest,
    requester: Requester = Depends(get_requester),
    checkout: CheckoutService = Depends(get_checkout_service)
):
    return result_response(checkout.update_status(order_id, requester, request.status))


@app.post("/orders/{order_id}/refund")
def refund_order(
    order_id: str,
    request: RefundRequest,
    requester: Requester = Depends(get_requester),
    checkout: CheckoutService = Depends(get_checkout_service)
):
    """Refund an undelivered order (administrators only)"""
    result = checkout.refund_order(order_id, requester, amount=request.amount, reason=request.reason)
    return result_response(result)


# Payment gateway notifications
@app.post("/payments/webhook")
async def payment_webhook(
    request: Request,
    signature: Optional[str] = Header(None, alias="Stripe-Signature"),
    checkout: CheckoutService = Depends(get_checkout_service)
):
    """
    Stripe webhook: refunds and payment failures reported by the gateway
    are applied to the order paid by that charge.
    """
    if not Config.STRIPE_WEBHOOK_SECRET:
        raise HTTPException(status_code=503, detail="Webhook handling is not configured")
    if not signature:
        raise HTTPException(status_code=400, detail="Stripe-Signature header is required")

    event = parse_webhook_event(await request.body(), signature, Config.STRIPE_WEBHOOK_SECRET)
    event_type = event["type"]
    payload = event.get("data", {}).get("object", {})
    logger.info("Webhook %s received: %s", event.get("id"), event_type)

    if event_type == "charge.refunded":
        await run_in_threadpool(
            checkout.reconcile_refund,
            payload.get("payment_intent") or payload.get("id"),
            refund_ids_of(payload),
            bool(payload.get("refunded"))
        )
    elif event_type == "payment_intent.payment_failed":
        await run_in_threadpool(checkout.reconcile_payment_failure, payload.get("id"))

    return {"received": True}


# Error handlers
@app.exception_handler(ValidationError)
async def validation_error_handler(request, exc):
    return JSONResponse(
        status_code=400,
        content={"error": "Validation error", "message": str(exc)}
    )


@app.exception_handler(LimitExceededError)
async def limit_exceeded_handler(request, exc):
    return JSONResponse(
        status_code=400,
        content={"error": "Limit exceeded", "message": str(exc)}
    )


@app.exception_handler(ProductNotFoundError)
async def product_not_found_handler(request, exc):
    return JSONResponse(
        status_code=404,
        content={"error": "Product not found", "message": str(exc)}
    )


@app.exception_handler(CheckoutInProgressError)
async def checkout_in_progress_handler(request, exc):
    return JSONResponse(
        status_code=409,
        content={"error": "Checkout in progress", "message": str(exc)}
    )


@app.exception_handler(RedisConnectionError)
async def redis_error_handler(request, exc):
    return JSONResponse(
        status_code=503,
        content={"error": "Service unavailable", "message": "Redis connection failed"}
    )


# Generic exception handler for unhandled errors
@app.exception_handler(Exception)
async def generic_exception_handler(request, exc):
    logger.error(
        f"Unhandled exception: {type(exc).__name__}: {exc}",
        exc_info=True
    )
    return JSONResponse(
        status_code=500,
        content={
            "error": "Internal server error",
            "message": str(exc),
            "type": type(exc).__name__
        }
    )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=Config.APP_PORT)
