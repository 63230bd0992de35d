"""
inventory.py — Inventory Ledger

Per-product available quantity, mutated only through reserve / release. Both are
single atomic conditional updates in the storage layer, so two checkouts racing for
the last unit cannot both succeed, across threads or server processes.

Reservations made for an order line are recorded as tokens; releasing the line
first flips its token, which makes every line releasable at most once.
"""

from . import config
from .errors import InsufficientStock, ProductNotFound
from .logging_config import get_logger
from .models import InventoryView, Product

log = get_logger(__name__)


class InventoryLedger:
    """
    Reserve / release stock against the catalog.

    Args:
        catalog: Repository with `get_product`, `decrement_stock`, `increment_stock`.
        reservations: Repository with `hold`, `release_hold`, `restore_hold`, `for_order`.
        max_quantity (int): Ceiling for a product's stock; a release past it is refused.
    """
    def __init__(self, catalog, reservations, max_quantity: int = config.MAX_STOCK_QUANTITY):
        self.catalog = catalog
        self.reservations = reservations
        self.max_quantity = max_quantity

    def reserve(self, product_id: str, quantity: int, *, order_number: str | None = None,
                line_index: int | None = None) -> Product:
        """
        Takes `quantity` units if, and only if, that many are available.

        Args:
            product_id (str): Product to reserve.
            quantity (int): Units to take, at least 1.
            order_number (str | None): When given, a reservation token is recorded for the line.
            line_index (int | None): Position of the line within the order.

        Returns:
            Product: The product after the decrement.

        Raises:
            ProductNotFound: If the product does not exist.
            InsufficientStock: If fewer than `quantity` units are available. Nothing is decremented.
        """
        if quantity < 1:
            raise ValueError(f"Reservation quantity must be at least 1, got {quantity}")

        product = self.catalog.decrement_stock(product_id, quantity)
        if product is None:
            current = self.catalog.get_product(product_id)
            if current is None:
                raise ProductNotFound(product_id, line_index=line_index)
            log.warning(f"[Inventory] Reservation of {quantity} x {product_id} refused: "
                        f"{current.inventory.quantity} available.")
            raise InsufficientStock(product_id, quantity, current.inventory.quantity,
                                    product_name=current.name, line_index=line_index)

        if order_number is not None:
            try:
                self.reservations.hold(order_number, line_index, product_id, quantity)
            except Exception:
                self.catalog.increment_stock(product_id, quantity, self.max_quantity)
                raise

        log.info(f"[Inventory] Reserved {quantity} x {product_id} "
                 f"({product.inventory.quantity} left).")
        return product

    def release(self, product_id: str, quantity: int) -> Product | None:
        """
        Returns `quantity` units to stock.

        Never raises on stock grounds. An increment that would push the product past
        `max_quantity` is refused and logged as critical, since it points at a double
        release.

        Returns:
            Product | None: The product after the increment, or None if it was refused.
        """
        product = self.catalog.increment_stock(product_id, quantity, self.max_quantity)
        if product is None:
            log.critical(f"[Inventory] Release of {quantity} x {product_id} refused "
                         f"(unknown product or above {self.max_quantity}). MANUAL ACTION REQUIRED!")
            return None
        log.info(f"[Inventory] Released {quantity} x {product_id} "
                 f"({product.inventory.quantity} available).")
        return product

    def release_line(self, order_number: str, line_index: int, product_id: str, quantity: int) -> bool:
        """
        Releases the stock held for one order line, at most once.

        Returns:
            bool: True if stock was returned, False if the line had already been released.
        """
        if not self.reservations.release_hold(order_number, line_index):
            log.info(f"[Order: {order_number}] Line {line_index} already released, skipping.")
            return False
        try:
            self.release(product_id, quantity)
        except Exception:
            self.reservations.restore_hold(order_number, line_index)
            raise
        return True

    def release_order(self, order_number: str) -> int:
        """
        Releases every line still held for an order, as recorded by its reservation tokens.

        Returns:
            int: The number of lines released by this call; 0 when all were released before.
        """
        released = 0
        for token in self.reservations.for_order(order_number):
            if token["state"] != "held":
                continue
            if self.release_line(order_number, token["lineIndex"], token["productId"], token["quantity"]):
                released += 1
        return released

    def available(self, product_id: str) -> InventoryView:
        product = self.catalog.get_product(product_id)
        if product is None:
            raise ProductNotFound(product_id)
        return InventoryView(
            product_id=product.id,
            quantity=product.inventory.quantity,
            in_stock=product.inventory.in_stock and product.inventory.quantity > 0,
        )
