"""
validator.py — Cart snapshot validation

Checks requested lines against the live catalog and freezes them into order line
items priced at the product's current price (last-look pricing). Read-only: no
stock is touched here; reservation happens when the order is created.
"""

from .errors import InsufficientStock, ProductNotFound, VariantInvalid
from .logging_config import get_logger
from .models import CheckoutItem, OrderItem

log = get_logger(__name__)


def merge_duplicate_lines(items: list[CheckoutItem]) -> list[tuple[int, CheckoutItem]]:
    """
    Merges lines for the same (product, colour, size) into one line.

    Quantities are summed and the merged line keeps the position and index of its
    first occurrence, so stock is checked against the combined quantity.

    Returns:
        list[tuple[int, CheckoutItem]]: (index in the original payload, merged line).
    """
    merged: dict[tuple, tuple[int, CheckoutItem]] = {}
    for index, item in enumerate(items):
        key = (item.product_id, item.color, item.size)
        if key in merged:
            first_index, existing = merged[key]
            merged[key] = (first_index, existing.model_copy(
                update={"quantity": existing.quantity + item.quantity}
            ))
        else:
            merged[key] = (index, item)
    return list(merged.values())


def validate_cart(items: list[CheckoutItem], catalog) -> list[OrderItem]:
    """
    Validates every requested line against the catalog, in input order.

    Args:
        items (list[CheckoutItem]): Non-empty list of requested lines.
        catalog: Repository exposing `get_product(product_id)`.

    Returns:
        list[OrderItem]: Frozen line items, one per merged input line.

    Raises:
        ValueError: If `items` is empty.
        ProductNotFound: If a product is missing or not active.
        VariantInvalid: If a colour/size selector is not offered by the product.
        InsufficientStock: If the product is out of stock or has fewer units than requested.
    """
    if not items:
        raise ValueError("Order must contain at least one item")

    order_items = []
    for index, item in merge_duplicate_lines(items):
        product = catalog.get_product(item.product_id)
        if product is None or product.status != "active":
            raise ProductNotFound(item.product_id, line_index=index)

        if item.color is not None and item.color not in product.colors:
            raise VariantInvalid(product.id, "color", item.color, product.colors, line_index=index)
        if item.size is not None and item.size not in product.sizes:
            raise VariantInvalid(product.id, "size", item.size, product.sizes, line_index=index)

        available = product.inventory.quantity if product.inventory.in_stock else 0
        if item.quantity > available:
            raise InsufficientStock(product.id, item.quantity, available,
                                    product_name=product.name, line_index=index)

        order_items.append(OrderItem(
            product_id=product.id,
            name=product.name,
            price=product.price,
            quantity=item.quantity,
            selected_color=item.color,
            selected_size=item.size,
            image=product.image,
            total_price=product.price * item.quantity,
        ))

    log.info(f"Cart snapshot validated: {len(order_items)} line(s) from {len(items)} requested.")
    return order_items
