"""
models.py — Data Models for Checkout and Order Lifecycle

This module defines the data structures exchanged over the API and persisted in
the order ledger. It uses Pydantic models to ensure type safety and automatic
validation of incoming data. Python attributes are snake_case; the wire format
(and the stored documents) use camelCase aliases.

Models:
    - Product / Inventory: catalog view of a product, owned by the catalog.
    - UserAccount: loyalty and spend ledger of a user, owned by the user service.
    - OrderItem: frozen snapshot of a purchased line.
    - Pricing: monetary breakdown of an order.
    - Order: the persisted order record.
    - CheckoutRequest, StatusUpdateRequest, CancellationRequest, ...: request payloads.
"""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class OrderStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    RETURNED = "returned"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class PaymentMethod(str, Enum):
    CARD = "card"
    UPI = "upi"
    NETBANKING = "netbanking"
    WALLET = "wallet"
    COD = "cod"


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# --- Catalog / user views (external entities) ---

class Inventory(CamelModel):
    quantity: int = Field(0, ge=0)
    in_stock: bool = True
    low_stock_threshold: int = 5
    sku: Optional[str] = None


class Product(CamelModel):
    """
    Catalog view of a product as needed by checkout.

    Attributes:
        id (str): Product identifier.
        price (Decimal): Current unit price; frozen into the order at checkout.
        status (str): Only "active" products can be ordered.
        colors / sizes (list[str]): Allowed variant selectors (empty = no selector allowed).
        inventory (Inventory): Available quantity and in-stock flag.
    """
    id: str
    name: str
    price: Decimal = Field(..., ge=0)
    status: Literal["active", "inactive", "draft"] = "active"
    colors: List[str] = Field(default_factory=list)
    sizes: List[str] = Field(default_factory=list)
    image: Optional[str] = None
    inventory: Inventory = Field(default_factory=Inventory)


class UserAccount(CamelModel):
    id: str
    loyalty_points: int = Field(0, ge=0)
    total_spent: Decimal = Decimal("0")


class InventoryView(CamelModel):
    product_id: str
    quantity: int
    in_stock: bool


# --- Order ledger ---

class Address(CamelModel):
    first_name: str
    last_name: str
    email: str
    phone: Optional[str] = None
    address_line1: str
    address_line2: Optional[str] = None
    city: str
    state: str
    postal_code: str
    country: str = "India"


class OrderItem(CamelModel):
    """
    Snapshot of a purchased line, taken at order creation.

    The name and price are frozen: later catalog edits do not touch them.
    """
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    product_id: str
    name: str
    price: Decimal = Field(..., ge=0)
    quantity: int = Field(..., ge=1)
    selected_color: Optional[str] = None
    selected_size: Optional[str] = None
    image: Optional[str] = None
    total_price: Decimal = Field(..., ge=0)


class Pricing(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    subtotal: Decimal
    tax: Decimal
    shipping: Decimal
    discount: Decimal = Decimal("0")
    total: Decimal


class StatusHistoryEntry(CamelModel):
    status: str
    timestamp: datetime = Field(default_factory=utc_now)
    note: Optional[str] = None
    updated_by: Optional[str] = None


class Order(CamelModel):
    """
    The persisted order record.

    Created with status=pending and payment_status=pending, then mutated in place
    by lifecycle transitions. Orders are never deleted.
    """
    order_number: str
    user_id: Optional[str] = None
    items: List[OrderItem]
    pricing: Pricing
    payment_method: PaymentMethod
    payment_status: PaymentStatus = PaymentStatus.PENDING
    status: OrderStatus = OrderStatus.PENDING
    shipping_address: Address
    billing_address: Address
    notes: Optional[str] = None
    coupon_code: Optional[str] = None
    loyalty_points_used: int = 0
    loyalty_points_earned: int = 0
    tracking_number: Optional[str] = None
    carrier: Optional[str] = None
    status_history: List[StatusHistoryEntry] = Field(default_factory=list)
    idempotency_key: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    paid_at: Optional[datetime] = None
    shipped_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancel_reason: Optional[str] = None
    returned_at: Optional[datetime] = None
    return_reason: Optional[str] = None
    refund_amount: Optional[Decimal] = None
    refund_reason: Optional[str] = None
    refunded_at: Optional[datetime] = None
    # Set with the cancelled/returned status; cleared once stock and loyalty are reversed.
    reversal_pending: bool = False

    @property
    def is_guest(self) -> bool:
        return self.user_id is None


class OrderPage(CamelModel):
    orders: List[Order]
    total: int
    page: int
    limit: int
    pages: int


class OrderFilter(CamelModel):
    status: Optional[OrderStatus] = None
    payment_status: Optional[PaymentStatus] = None
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None
    search: Optional[str] = None


class TrackingStep(CamelModel):
    status: str
    label: str
    completed: bool = False
    timestamp: Optional[datetime] = None


class TrackingView(CamelModel):
    order_number: str
    current_status: OrderStatus
    tracking_number: Optional[str] = None
    carrier: Optional[str] = None
    cancellable: bool = False
    steps: List[TrackingStep]


# --- Requests ---

class CheckoutItem(CamelModel):
    """
    A requested line in a checkout payload.

    Attributes:
        product_id (str): Referenced product.
        quantity (int): Must be greater than zero.
        color / size (str | None): Optional variant selectors.
    """
    product_id: str
    quantity: int = Field(..., gt=0)
    color: Optional[str] = None
    size: Optional[str] = None


class CheckoutDetails(CamelModel):
    shipping_address: Address
    billing_address: Optional[Address] = None
    payment_method: PaymentMethod
    loyalty_points_to_redeem: int = Field(0, ge=0)
    coupon_code: Optional[str] = None
    notes: Optional[str] = None


class CheckoutRequest(CheckoutDetails):
    """Checkout payload: the lines to buy plus addresses and payment details."""
    items: List[CheckoutItem] = Field(..., min_length=1)


class StatusUpdateRequest(CamelModel):
    status: OrderStatus
    tracking_number: Optional[str] = None
    carrier: Optional[str] = None
    note: Optional[str] = None
    reason: Optional[str] = None
    override: bool = False


class CancellationRequest(CamelModel):
    reason: str = Field(..., min_length=1)


class PaymentStatusUpdateRequest(CamelModel):
    payment_status: PaymentStatus
    refund_amount: Optional[Decimal] = Field(None, ge=0)
    refund_reason: Optional[str] = None
    note: Optional[str] = None


# --- Cart ---

class CartItemRequest(CamelModel):
    product_id: str
    quantity: int = Field(1, gt=0)
    color: Optional[str] = None
    size: Optional[str] = None


class CartItemKey(CamelModel):
    product_id: str
    color: Optional[str] = None
    size: Optional[str] = None


class CartLine(CamelModel):
    user_id: str
    product_id: str
    quantity: int = Field(..., gt=0)
    color: Optional[str] = None
    size: Optional[str] = None
    added_at: datetime = Field(default_factory=utc_now)
