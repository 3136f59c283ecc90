"""
FastAPI application for carts, checkout and orders backed by Redis.
"""
import time
import logging
from functools import lru_cache
from typing import List, Optional
from fastapi import Depends, FastAPI, Query, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware

from cartflow.auth import CallerIdentity, get_caller, require_admin, require_user
from cartflow.config import Config
from cartflow.models import (
    Cart,
    CartItemRequest,
    CartLineRequest,
    CartQuantityRequest,
    CheckoutRequest,
    CheckoutSession,
    MergeCartRequest,
    Order,
    OrderStatusRequest,
    OrderView,
    PaymentRequest,
)
from cartflow.cart_service import CartService
from cartflow.checkout_service import CheckoutService
from cartflow.order_service import OrderService
from cartflow.exceptions import (
    CartflowError,
    ForbiddenError,
    InvalidInputError,
    InvalidStateError,
    NotFoundError,
    StorageError,
    UnauthorizedError,
)
from cartflow.middleware import RequestLoggingMiddleware
from cartflow.redis_client import RedisClient, get_redis_client

logger = logging.getLogger(__name__)

# Initialize FastAPI app
app = FastAPI(
    title="Cartflow API",
    description="Cart, checkout and order service with Redis storage",
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

app.add_middleware(RequestLoggingMiddleware)


# Services are created on first use so importing the app needs no Redis
def get_redis() -> Optional[RedisClient]:
    try:
        return get_redis_client()
    except StorageError as e:
        logger.warning(f"Redis unavailable: {e}")
        return None


@lru_cache(maxsize=None)
def get_cart_service() -> CartService:
    return CartService()


@lru_cache(maxsize=None)
def get_order_service() -> OrderService:
    return OrderService()


@lru_cache(maxsize=None)
def get_checkout_service() -> CheckoutService:
    return CheckoutService(cart_service=get_cart_service(), order_service=get_order_service())


# Health check endpoint for ALB
@app.get("/health")
def health_check(redis_client: Optional[RedisClient] = Depends(get_redis)):
    """
    Health check endpoint for ALB.
    Always returns HTTP 200 if the application is running.
    Checks Redis connectivity but does not fail if Redis is unavailable.
    """
    redis_status = "healthy"
    redis_latency_ms = None

    if redis_client is None:
        redis_status = "unhealthy"
    else:
        ping_start = time.time()
        ping_result = redis_client.ping()
        redis_latency_ms = round((time.time() - ping_start) * 1000, 2)

        if not ping_result:
            redis_status = "unhealthy"

    return JSONResponse(
        status_code=200,
        content={
            "status": "healthy",
            "service": Config.PROJECT_NAME,
            "redis": {
                "status": redis_status,
                "latency_ms": redis_latency_ms
            },
            "timestamp": time.time()
        }
    )


# Cart endpoints
@app.post("/api/cart", response_model=Cart)
def add_cart_item(
    request: CartItemRequest,
    response: Response,
    caller: Optional[CallerIdentity] = Depends(get_caller),
    cart_service: CartService = Depends(get_cart_service)
):
    """
    Add an item to a cart. Answers 201 when the cart was created by this call.
    """
    cart, created = cart_service.add_item(
        product_id=request.product_id,
        quantity=request.quantity,
        size=request.size,
        color=request.color,
        user_id=request.user_id or (caller.user_id if caller else None),
        guest_id=request.guest_id
    )
    response.status_code = 201 if created else 200
    return cart


@app.put("/api/cart", response_model=Cart)
def update_cart_item(
    request: CartQuantityRequest,
    caller: Optional[CallerIdentity] = Depends(get_caller),
    cart_service: CartService = Depends(get_cart_service)
):
    """Set a line's quantity; zero or less removes it"""
    return cart_service.update_quantity(
        product_id=request.product_id,
        quantity=request.quantity,
        size=request.size,
        color=request.color,
        user_id=request.user_id or (caller.user_id if caller else None),
        guest_id=request.guest_id
    )


@app.delete("/api/cart", response_model=Cart)
def remove_cart_item(
    request: CartLineRequest,
    caller: Optional[CallerIdentity] = Depends(get_caller),
    cart_service: CartService = Depends(get_cart_service)
):
    """Remove a line from a cart"""
    return cart_service.remove_item(
        product_id=request.product_id,
        size=request.size,
        color=request.color,
        user_id=request.user_id or (caller.user_id if caller else None),
        guest_id=request.guest_id
    )


@app.get("/api/cart", response_model=Cart)
def get_cart(
    user_id: Optional[str] = Query(None, description="User identifier"),
    guest_id: Optional[str] = Query(None, description="Guest cart token"),
    caller: Optional[CallerIdentity] = Depends(get_caller),
    cart_service: CartService = Depends(get_cart_service)
):
    """Get the cart of a user, or of a guest when no user is given"""
    return cart_service.get_cart(
        user_id=user_id or (caller.user_id if caller else None),
        guest_id=guest_id
    )


@app.post("/api/cart/merge", response_model=Cart)
def merge_carts(
    request: MergeCartRequest,
    caller: CallerIdentity = Depends(require_user),
    cart_service: CartService = Depends(get_cart_service)
):
    """
    Merge the guest cart into the caller's cart.
    Called once, right after a guest logs in.
    """
    return cart_service.merge_carts(guest_id=request.guest_id, user_id=caller.user_id)


# Checkout endpoints
@app.post("/api/checkout", response_model=CheckoutSession, status_code=201)
def create_checkout(
    request: CheckoutRequest,
    caller: CallerIdentity = Depends(require_user),
    checkout_service: CheckoutService = Depends(get_checkout_service)
):
    return checkout_service.create_checkout(
        user_id=caller.user_id,
        checkout_items=request.checkout_items,
        shipping_address=request.shipping_address,
        payment_method=request.payment_method,
        total_price=request.total_price
    )


@app.get("/api/checkout/{checkout_id}", response_model=CheckoutSession)
def get_checkout(
    checkout_id: str,
    caller: CallerIdentity = Depends(require_user),
    checkout_service: CheckoutService = Depends(get_checkout_service)
):
    return checkout_service.get_checkout(checkout_id)


@app.put("/api/checkout/{checkout_id}/pay", response_model=CheckoutSession)
def pay_checkout(
    checkout_id: str,
    request: PaymentRequest,
    caller: CallerIdentity = Depends(require_user),
    checkout_service: CheckoutService = Depends(get_checkout_service)
):
    """Record a payment confirmation relayed from the payment provider"""
    return checkout_service.mark_paid(
        checkout_id,
        payment_status=request.payment_status,
        payment_details=request.payment_details
    )


@app.post("/api/checkout/{checkout_id}/finalize", response_model=Order, status_code=201)
def finalize_checkout(
    checkout_id: str,
    caller: CallerIdentity = Depends(require_user),
    checkout_service: CheckoutService = Depends(get_checkout_service)
):
    """Create the order for a paid checkout and clear the caller's cart"""
    return checkout_service.finalize_checkout(checkout_id)


# Order endpoints
@app.get("/api/orders/my-orders", response_model=List[Order])
def list_my_orders(
    caller: CallerIdentity = Depends(require_user),
    order_service: OrderService = Depends(get_order_service)
):
    return order_service.list_for_user(caller.user_id)


@app.get("/api/orders/{order_id}", response_model=OrderView)
def get_order(
    order_id: str,
    caller: CallerIdentity = Depends(require_user),
    order_service: OrderService = Depends(get_order_service)
):
    return order_service.get_order_view(order_id)


# Admin endpoints
@app.get("/api/admin/orders", response_model=List[OrderView])
def list_all_orders(
    admin: CallerIdentity = Depends(require_admin),
    order_service: OrderService = Depends(get_order_service)
):
    return order_service.list_all()


@app.put("/api/admin/orders/{order_id}", response_model=Order)
def update_order_status(
    order_id: str,
    request: OrderStatusRequest,
    admin: CallerIdentity = Depends(require_admin),
    order_service: OrderService = Depends(get_order_service)
):
    return order_service.update_status(order_id, request.status)


@app.delete("/api/admin/orders/{order_id}")
def delete_order(
    order_id: str,
    admin: CallerIdentity = Depends(require_admin),
    order_service: OrderService = Depends(get_order_service)
):
    order_service.delete_order(order_id)
    return {"message": "Order removed"}


# Error handlers
def _error_response(status_code: int, exc: CartflowError) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": exc.kind, "message": exc.message}
    )


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError):
    return _error_response(404, exc)


@app.exception_handler(InvalidInputError)
async def invalid_input_handler(request: Request, exc: InvalidInputError):
    return _error_response(400, exc)


@app.exception_handler(InvalidStateError)
async def invalid_state_handler(request: Request, exc: InvalidStateError):
    return _error_response(400, exc)


@app.exception_handler(UnauthorizedError)
async def unauthorized_handler(request: Request, exc: UnauthorizedError):
    return _error_response(401, exc)


@app.exception_handler(ForbiddenError)
async def forbidden_handler(request: Request, exc: ForbiddenError):
    return _error_response(403, exc)


@app.exception_handler(StorageError)
async def storage_error_handler(request: Request, exc: StorageError):
    logger.error(f"Storage failure: {exc}")
    return JSONResponse(
        status_code=503,
        content={"error": exc.kind, "message": "Service unavailable"}
    )


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    field = ".".join(str(part) for part in first.get("loc", ())[1:])
    message = f"{field}: {first.get('msg', 'invalid value')}" if field else "Invalid request"
    return JSONResponse(
        status_code=400,
        content={"error": InvalidInputError.kind, "message": message}
    )


# Generic exception handler for unhandled errors
@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception):
    logger.error(
        f"Unhandled exception: {type(exc).__name__}: {exc}",
        exc_info=True
    )
    return JSONResponse(
        status_code=500,
        content={"error": "internal", "message": "Internal server error"}
    )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=Config.APP_PORT)
