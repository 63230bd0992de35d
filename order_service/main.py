"""
main.py — FastAPI Entry Point for the Order Service

This module provides the REST API of the storefront order core. It sits between
the shop front-end / admin panel and the checkout and lifecycle workflow.

Responsibilities:
    • Accept checkouts (direct payload or stored cart) and return the created order
    • Serve order reads, listings and the tracking timeline
    • Accept status changes from staff and cancellations from owners or staff
    • Map workflow errors to HTTP responses
    • Provide system health information

Authentication is handled upstream; the caller identity arrives in the
`X-User-Id` and `X-User-Role` headers.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from fastapi import Depends, FastAPI, Header, Query, Request
from fastapi.responses import JSONResponse

from . import config
from .errors import (
    AccessDenied,
    EmptyCart,
    InsufficientLoyaltyPoints,
    InsufficientStock,
    InvalidTransition,
    OrderNotFound,
    OrderServiceError,
    PersistenceFailure,
    ProductNotFound,
    VariantInvalid,
)
from .logging_config import get_logger, setup_logging
from .memory import InMemoryStore
from .models import (
    CancellationRequest,
    CartItemKey,
    CartItemRequest,
    CartLine,
    CheckoutDetails,
    CheckoutRequest,
    InventoryView,
    Order,
    OrderFilter,
    OrderPage,
    OrderStatus,
    PaymentStatus,
    PaymentStatusUpdateRequest,
    StatusUpdateRequest,
    TrackingView,
)
from .repositories import MongoStore
from .workflow import OrderWorkflow

# Initialization
setup_logging()
log = get_logger(__name__)
app = FastAPI(title="Storefront Order Service")

_workflow: OrderWorkflow | None = None


def build_store():
    """Storage backend selected by ORDER_SERVICE_STORAGE ("mongo" or "memory")."""
    if config.STORAGE_BACKEND == "memory":
        log.info("Using in-memory storage backend.")
        return InMemoryStore()
    log.info(f"Using MongoDB storage backend ({config.MONGODB_DATABASE}).")
    return MongoStore()


def get_workflow() -> OrderWorkflow:
    global _workflow
    if _workflow is None:
        _workflow = OrderWorkflow(build_store())
    return _workflow


# Role carried by shop staff in `X-User-Role`; every other value is a customer.
ADMIN_ROLE = "admin"


@dataclass
class Caller:
    user_id: Optional[str]
    role: str = "customer"

    @property
    def is_admin(self) -> bool:
        return self.role == ADMIN_ROLE


def get_caller(
        user_id: Optional[str] = Header(None, alias="X-User-Id"),
        role: str = Header("customer", alias="X-User-Role"),
) -> Caller:
    return Caller(user_id=user_id or None, role=role.lower())


def require_user(caller: Caller = Depends(get_caller)) -> Caller:
    if caller.user_id is None:
        raise AccessDenied("Login required")
    return caller


def require_admin(caller: Caller = Depends(get_caller)) -> Caller:
    if not caller.is_admin:
        raise AccessDenied("Admin only")
    return caller


# Startup Event: prepare storage
@app.on_event("startup")
def on_startup():
    """
    FastAPI startup event handler.

    Builds the storage backend and makes sure the MongoDB indexes (unique
    idempotency key, cart line key, listing indexes) exist.
    """
    log.info("Order service starting...")
    get_workflow().store.ensure_indexes()


# --- Global Exception Handler ---

# Map exception types to HTTP status codes
ERROR_STATUS_CODES: dict[type, int] = {
    ProductNotFound: 404,
    VariantInvalid: 400,
    InsufficientStock: 400,
    InsufficientLoyaltyPoints: 400,
    EmptyCart: 400,
    InvalidTransition: 409,
    OrderNotFound: 404,
    AccessDenied: 403,
    PersistenceFailure: 503,
}

# Not correctable by the client; the detail stays in the logs.
GENERIC_MESSAGES: dict[type, str] = {
    InvalidTransition: "The order cannot be changed in its current state. Please refresh and try again.",
    PersistenceFailure: "The order could not be processed right now. Please try again later.",
}


@app.exception_handler(OrderServiceError)
async def order_service_error_handler(request: Request, exc: OrderServiceError) -> JSONResponse:
    """Map OrderServiceError subclasses to HTTP responses."""
    status_code = ERROR_STATUS_CODES.get(type(exc), 500)
    generic = GENERIC_MESSAGES.get(type(exc))
    content = {"success": False, "kind": exc.kind, "message": generic or exc.message}
    if generic is None:
        content["details"] = exc.details
    return JSONResponse(status_code=status_code, content=content)


# --- Checkout ---

@app.post("/api/orders", response_model=Order, status_code=201)
def create_order(
        request: CheckoutRequest,
        caller: Caller = Depends(get_caller),
        idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
        workflow: OrderWorkflow = Depends(get_workflow),
):
    """
    Checkout: validates the lines, prices the order, reserves stock and stores the order.

    Guests (no `X-User-Id`) may check out but cannot redeem loyalty points.

    Returns:
        Order: The created order (status pending) with frozen line prices and totals.
    """
    return workflow.checkout(request, user_id=caller.user_id, idempotency_key=idempotency_key)


@app.post("/api/cart/checkout", response_model=Order, status_code=201)
def checkout_cart(
        details: CheckoutDetails,
        caller: Caller = Depends(require_user),
        idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
        workflow: OrderWorkflow = Depends(get_workflow),
):
    return workflow.checkout_from_cart(details, caller.user_id, idempotency_key=idempotency_key)


# --- Customer reads and cancellation ---

@app.get("/api/orders", response_model=OrderPage)
def list_my_orders(
        page: int = Query(1, ge=1),
        limit: int = Query(10, ge=1, le=100),
        caller: Caller = Depends(require_user),
        workflow: OrderWorkflow = Depends(get_workflow),
):
    return workflow.list_user_orders(caller.user_id, page, limit)


@app.get("/api/orders/{order_number}", response_model=Order)
def get_order(order_number: str, caller: Caller = Depends(get_caller),
              workflow: OrderWorkflow = Depends(get_workflow)):
    return workflow.get_order(order_number, caller.user_id, caller.is_admin)


@app.get("/api/orders/{order_number}/tracking", response_model=TrackingView)
def get_tracking(order_number: str, caller: Caller = Depends(get_caller),
                 workflow: OrderWorkflow = Depends(get_workflow)):
    return workflow.tracking(order_number, caller.user_id, caller.is_admin)


@app.put("/api/orders/{order_number}/cancel", response_model=Order)
def cancel_order(order_number: str, body: CancellationRequest, caller: Caller = Depends(get_caller),
                 workflow: OrderWorkflow = Depends(get_workflow)):
    log.info(f"[Order: {order_number}] Cancellation requested by {caller.user_id or 'anonymous'}.")
    return workflow.cancel(order_number, body.reason, caller.user_id, caller.is_admin)


# --- Staff ---

@app.get("/api/admin/orders", response_model=OrderPage)
def list_orders(
        status: Optional[OrderStatus] = None,
        payment_status: Optional[PaymentStatus] = Query(None, alias="paymentStatus"),
        date_from: Optional[datetime] = Query(None, alias="dateFrom"),
        date_to: Optional[datetime] = Query(None, alias="dateTo"),
        search: Optional[str] = None,
        page: int = Query(1, ge=1),
        limit: int = Query(20, ge=1, le=100),
        caller: Caller = Depends(require_admin),
        workflow: OrderWorkflow = Depends(get_workflow),
):
    order_filter = OrderFilter(status=status, payment_status=payment_status,
                               date_from=date_from, date_to=date_to, search=search)
    return workflow.search_orders(order_filter, page, limit)


@app.patch("/api/admin/orders/{order_number}/status", response_model=Order)
def update_order_status(order_number: str, body: StatusUpdateRequest,
                        caller: Caller = Depends(require_admin),
                        workflow: OrderWorkflow = Depends(get_workflow)):
    return workflow.update_status(order_number, body, actor_id=caller.user_id)


@app.patch("/api/admin/orders/{order_number}/payment-status", response_model=Order)
def update_payment_status(order_number: str, body: PaymentStatusUpdateRequest,
                          caller: Caller = Depends(require_admin),
                          workflow: OrderWorkflow = Depends(get_workflow)):
    return workflow.update_payment_status(order_number, body, actor_id=caller.user_id)


# --- Cart ---

@app.get("/api/cart", response_model=List[CartLine])
def get_cart(caller: Caller = Depends(require_user), workflow: OrderWorkflow = Depends(get_workflow)):
    return workflow.get_cart(caller.user_id)


@app.put("/api/cart/items", response_model=CartLine)
def put_cart_item(body: CartItemRequest, caller: Caller = Depends(require_user),
                  workflow: OrderWorkflow = Depends(get_workflow)):
    return workflow.add_to_cart(caller.user_id, body)


@app.delete("/api/cart/items")
def delete_cart_item(product_id: str = Query(..., alias="productId"),
                     color: Optional[str] = None,
                     size: Optional[str] = None,
                     caller: Caller = Depends(require_user),
                     workflow: OrderWorkflow = Depends(get_workflow)):
    key = CartItemKey(product_id=product_id, color=color, size=size)
    return {"removed": workflow.remove_from_cart(caller.user_id, key)}


# --- Inventory ---

@app.get("/api/inventory/{product_id}", response_model=InventoryView)
def get_inventory(product_id: str, workflow: OrderWorkflow = Depends(get_workflow)):
    return workflow.inventory.available(product_id)


# Health Check Endpoint
@app.get("/health")
def health_check():
    """Liveness probe. Does not touch the storage backend."""
    return {"status": "ok"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=config.PORT)
