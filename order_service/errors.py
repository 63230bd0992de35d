"""
errors.py — Error kinds raised by checkout and the order lifecycle

Every error carries a stable `kind` string (used on the wire and in logs) and a
`details` dict with whatever the client needs to correct its request, e.g. the
offending product id and the available quantity.
"""


class OrderServiceError(Exception):
    """Base exception for all order service errors."""

    kind = "OrderServiceError"

    def __init__(self, message: str, **details):
        self.message = message
        self.details = {k: v for k, v in details.items() if v is not None}
        super().__init__(message)


class ProductNotFound(OrderServiceError):
    """Raised when a referenced product does not exist or is not active."""

    kind = "ProductNotFound"

    def __init__(self, product_id: str, line_index: int | None = None):
        self.product_id = product_id
        super().__init__(
            f"Product not found: {product_id}",
            productId=product_id,
            lineIndex=line_index,
        )


class VariantInvalid(OrderServiceError):
    """Raised when a colour or size selector is not offered by the product."""

    kind = "VariantInvalid"

    def __init__(self, product_id: str, selector: str, value: str, allowed: list[str],
                 line_index: int | None = None):
        self.product_id = product_id
        self.selector = selector
        self.value = value
        super().__init__(
            f"Unsupported {selector} '{value}' for product {product_id}",
            productId=product_id,
            lineIndex=line_index,
            selector=selector,
            value=value,
            allowed=list(allowed),
        )


class InsufficientStock(OrderServiceError):
    """Raised when the requested quantity exceeds the available stock."""

    kind = "InsufficientStock"

    def __init__(self, product_id: str, requested: int, available: int,
                 product_name: str | None = None, line_index: int | None = None):
        self.product_id = product_id
        self.requested = requested
        self.available = available
        self.product_name = product_name
        label = product_name or product_id
        super().__init__(
            f"Insufficient stock for product: {label} (requested {requested}, available {available})",
            productId=product_id,
            lineIndex=line_index,
            requested=requested,
            available=available,
        )


class InsufficientLoyaltyPoints(OrderServiceError):
    """Raised when a redemption request exceeds the user's loyalty balance."""

    kind = "InsufficientLoyaltyPoints"

    def __init__(self, requested: int, available: int):
        self.requested = requested
        self.available = available
        super().__init__(
            "Insufficient loyalty points",
            requested=requested,
            available=available,
        )


class InvalidTransition(OrderServiceError):
    """Raised when a status change is illegal for the order's current state."""

    kind = "InvalidTransition"

    def __init__(self, order_number: str, current: str, target: str, reason: str | None = None):
        self.order_number = order_number
        self.current = current
        self.target = target
        msg = f"Order {order_number} cannot move from '{current}' to '{target}'"
        if reason:
            msg = f"{msg} ({reason})"
        super().__init__(msg, orderNumber=order_number, current=current, target=target)


InvalidOrderState = InvalidTransition


class PersistenceFailure(OrderServiceError):
    """Raised when the store could not durably commit a change."""

    kind = "PersistenceFailure"

    def __init__(self, message: str, order_number: str | None = None):
        self.order_number = order_number
        super().__init__(message, orderNumber=order_number)


class OrderNotFound(OrderServiceError):
    """Raised when an order number does not exist."""

    kind = "OrderNotFound"

    def __init__(self, order_number: str):
        self.order_number = order_number
        super().__init__(f"Order not found: {order_number}", orderNumber=order_number)


class AccessDenied(OrderServiceError):
    """Raised when the caller is neither the order owner nor staff."""

    kind = "AccessDenied"

    def __init__(self, message: str = "Access denied"):
        super().__init__(message)


class EmptyCart(OrderServiceError):
    """Raised when checking out a stored cart that has no lines."""

    kind = "EmptyCart"

    def __init__(self, user_id: str):
        super().__init__("Cart is empty", userId=user_id)


class DuplicateOrderKey(OrderServiceError):
    """Raised by the order ledger when an idempotency key was already used."""

    kind = "DuplicateOrderKey"

    def __init__(self, idempotency_key: str):
        self.idempotency_key = idempotency_key
        super().__init__(f"Idempotency key already used: {idempotency_key}")
