"""
memory.py — In-memory storage backend

Drop-in replacement for the MongoDB repositories, used for local development
(ORDER_SERVICE_STORAGE=memory) and by the test-suite. Each repository guards its
documents with a lock, so every conditional update is atomic the same way a single
MongoDB `find_one_and_update` is.
"""

import threading
from collections import defaultdict
from datetime import datetime
from decimal import Decimal

from . import config
from .errors import DuplicateOrderKey, PersistenceFailure
from .models import (
    CartItemKey,
    CartLine,
    Order,
    OrderFilter,
    OrderStatus,
    PaymentStatus,
    Product,
    StatusHistoryEntry,
    UserAccount,
    utc_now,
)


class InMemoryCatalogRepository:
    def __init__(self):
        self._lock = threading.Lock()
        self._products: dict[str, Product] = {}

    def add_product(self, product: Product) -> Product:
        with self._lock:
            self._products[product.id] = product.model_copy(deep=True)
        return product

    def get_product(self, product_id: str) -> Product | None:
        with self._lock:
            product = self._products.get(product_id)
            return product.model_copy(deep=True) if product else None

    def decrement_stock(self, product_id: str, quantity: int) -> Product | None:
        with self._lock:
            product = self._products.get(product_id)
            if product is None or product.inventory.quantity < quantity:
                return None
            product.inventory.quantity -= quantity
            if product.inventory.quantity == 0:
                product.inventory.in_stock = False
            return product.model_copy(deep=True)

    def increment_stock(self, product_id: str, quantity: int, max_quantity: int) -> Product | None:
        with self._lock:
            product = self._products.get(product_id)
            if product is None or product.inventory.quantity + quantity > max_quantity:
                return None
            product.inventory.quantity += quantity
            if product.inventory.quantity > 0:
                product.inventory.in_stock = True
            return product.model_copy(deep=True)


class InMemoryUserRepository:
    def __init__(self):
        self._lock = threading.Lock()
        self._accounts: dict[str, UserAccount] = {}
        self._reversed: dict[str, set[str]] = defaultdict(set)

    def add_account(self, account: UserAccount) -> UserAccount:
        with self._lock:
            self._accounts[account.id] = account.model_copy(deep=True)
        return account

    def get_account(self, user_id: str) -> UserAccount | None:
        with self._lock:
            account = self._accounts.get(user_id)
            return account.model_copy(deep=True) if account else None

    def apply_order(self, user_id: str, points_used: int, points_earned: int,
                    amount: Decimal) -> UserAccount | None:
        with self._lock:
            account = self._accounts.get(user_id)
            if account is None or account.loyalty_points < points_used:
                return None
            account.loyalty_points += points_earned - points_used
            account.total_spent += amount
            return account.model_copy(deep=True)

    def revert_order(self, user_id: str, order_number: str, points_used: int, points_earned: int,
                     amount: Decimal) -> int:
        with self._lock:
            account = self._accounts.get(user_id)
            if account is None or order_number in self._reversed[user_id]:
                return 0
            balance = account.loyalty_points + points_used
            revoke = min(points_earned, balance)
            account.loyalty_points = balance - revoke
            account.total_spent -= amount
            self._reversed[user_id].add(order_number)
            return revoke


class InMemoryOrderRepository:
    def __init__(self):
        self._lock = threading.Lock()
        self._orders: dict[str, Order] = {}
        self._counters: dict[str, int] = defaultdict(int)

    def next_order_number(self, now: datetime | None = None) -> str:
        day = (now or utc_now()).strftime("%y%m%d")
        with self._lock:
            self._counters[day] += 1
            seq = self._counters[day]
        return f"{config.ORDER_NUMBER_PREFIX}{day}{seq:05d}"

    def insert(self, order: Order) -> Order:
        with self._lock:
            if order.order_number in self._orders:
                raise PersistenceFailure("Order could not be stored", order.order_number)
            if order.idempotency_key and any(
                o.idempotency_key == order.idempotency_key for o in self._orders.values()
            ):
                raise DuplicateOrderKey(order.idempotency_key)
            self._orders[order.order_number] = order.model_copy(deep=True)
        return order

    def get(self, order_number: str) -> Order | None:
        with self._lock:
            order = self._orders.get(order_number)
            return order.model_copy(deep=True) if order else None

    def find_by_idempotency_key(self, key: str) -> Order | None:
        with self._lock:
            for order in self._orders.values():
                if order.idempotency_key == key:
                    return order.model_copy(deep=True)
        return None

    def list_for_user(self, user_id: str, page: int, limit: int) -> tuple[list[Order], int]:
        return self._page(lambda o: o.user_id == user_id, page, limit)

    def search(self, order_filter: OrderFilter, page: int, limit: int) -> tuple[list[Order], int]:
        needle = order_filter.search.lower() if order_filter.search else None

        def matches(order: Order) -> bool:
            if order_filter.status and order.status != order_filter.status:
                return False
            if order_filter.payment_status and order.payment_status != order_filter.payment_status:
                return False
            if order_filter.date_from and order.created_at < order_filter.date_from:
                return False
            if order_filter.date_to and order.created_at > order_filter.date_to:
                return False
            if needle:
                address = order.shipping_address
                fields = (order.order_number, address.first_name, address.last_name, address.city)
                return any(needle in field.lower() for field in fields)
            return True

        return self._page(matches, page, limit)

    def _page(self, predicate, page: int, limit: int) -> tuple[list[Order], int]:
        with self._lock:
            matched = [o for o in self._orders.values() if predicate(o)]
        matched.sort(key=lambda o: (o.created_at, o.order_number), reverse=True)
        start = (page - 1) * limit
        return [o.model_copy(deep=True) for o in matched[start:start + limit]], len(matched)

    def compare_and_set(self, order_number: str, expected_status: OrderStatus,
                        expected_payment_status: PaymentStatus, changes: dict,
                        history: StatusHistoryEntry | None = None) -> Order | None:
        with self._lock:
            order = self._orders.get(order_number)
            if order is None or order.status != expected_status \
                    or order.payment_status != expected_payment_status:
                return None
            updated = order.model_copy(update={**changes, "updated_at": utc_now()}, deep=True)
            if history is not None:
                updated.status_history.append(history)
            self._orders[order_number] = updated
            return updated.model_copy(deep=True)


class InMemoryReservationRepository:
    def __init__(self):
        self._lock = threading.Lock()
        self._tokens: dict[tuple[str, int], dict] = {}

    def hold(self, order_number: str, line_index: int, product_id: str, quantity: int):
        with self._lock:
            self._tokens[(order_number, line_index)] = {
                "orderNumber": order_number,
                "lineIndex": line_index,
                "productId": product_id,
                "quantity": quantity,
                "state": "held",
                "createdAt": utc_now(),
            }

    def release_hold(self, order_number: str, line_index: int) -> bool:
        with self._lock:
            token = self._tokens.get((order_number, line_index))
            if token is None or token["state"] != "held":
                return False
            token["state"] = "released"
            token["releasedAt"] = utc_now()
            return True

    def restore_hold(self, order_number: str, line_index: int):
        with self._lock:
            token = self._tokens.get((order_number, line_index))
            if token is not None and token["state"] == "released":
                token["state"] = "held"
                token.pop("releasedAt", None)

    def for_order(self, order_number: str) -> list[dict]:
        with self._lock:
            tokens = [dict(t) for (n, _), t in self._tokens.items() if n == order_number]
        return sorted(tokens, key=lambda t: t["lineIndex"])


class InMemoryCartRepository:
    def __init__(self):
        self._lock = threading.Lock()
        self._lines: dict[tuple, CartLine] = {}

    @staticmethod
    def _key(user_id: str, product_id: str, color, size) -> tuple:
        return (user_id, product_id, color, size)

    def upsert(self, line: CartLine) -> CartLine:
        key = self._key(line.user_id, line.product_id, line.color, line.size)
        with self._lock:
            existing = self._lines.get(key)
            if existing is not None:
                line = line.model_copy(update={"added_at": existing.added_at})
            self._lines[key] = line
        return line

    def remove(self, user_id: str, key: CartItemKey) -> bool:
        with self._lock:
            return self._lines.pop(self._key(user_id, key.product_id, key.color, key.size), None) is not None

    def lines(self, user_id: str) -> list[CartLine]:
        with self._lock:
            lines = [line for line in self._lines.values() if line.user_id == user_id]
        return sorted(lines, key=lambda line: line.added_at)

    def clear(self, user_id: str, keys: list[CartItemKey]) -> int:
        removed = 0
        with self._lock:
            for key in keys:
                if self._lines.pop(self._key(user_id, key.product_id, key.color, key.size), None):
                    removed += 1
        return removed


class InMemoryStore:
    """Bundles the in-memory repositories; mirrors `MongoStore`."""

    def __init__(self):
        self.catalog = InMemoryCatalogRepository()
        self.users = InMemoryUserRepository()
        self.orders = InMemoryOrderRepository()
        self.reservations = InMemoryReservationRepository()
        self.carts = InMemoryCartRepository()

    def ensure_indexes(self):
        pass

    def close(self):
        pass
