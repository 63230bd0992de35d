"""
repositories.py — MongoDB access for the order core

One repository class per collection the order core reads or mutates:
- Catalog (products): product lookup and atomic stock adjustments
- Users: loyalty balance and spend ledger
- Orders: the durable order ledger and its order-number counter
- Reservations: one token per reserved order line, released at most once
- Carts: the per-user cart collection read by checkout

All mutations that can race are single-document conditional updates
(`find_one_and_update` with a guard in the filter). Driver errors are logged and
re-raised as PersistenceFailure.
"""

import re
from datetime import datetime
from decimal import Decimal
from enum import Enum

from bson import ObjectId
from bson.decimal128 import Decimal128
from pymongo import ASCENDING, DESCENDING, MongoClient, ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError
from pydantic.alias_generators import to_camel

from . import config
from .errors import DuplicateOrderKey, PersistenceFailure
from .logging_config import get_logger
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

log = get_logger(__name__)

# Compare-and-set retries before a contended account update gives up.
MAX_CAS_ATTEMPTS = 10


def _id_filter(entity_id: str):
    """Products and users are keyed by ObjectId; fall back to the raw string id."""
    return ObjectId(entity_id) if ObjectId.is_valid(entity_id) else entity_id


def _encode(value):
    if isinstance(value, Decimal):
        return Decimal128(str(value))
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _encode(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_encode(v) for v in value]
    return value


def _decode(value):
    if isinstance(value, Decimal128):
        return value.to_decimal()
    if isinstance(value, dict):
        return {k: _decode(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_decode(v) for v in value]
    return value


def _money(value) -> Decimal:
    """Stored amount (Decimal128, int or missing) as a Decimal."""
    value = _decode(value)
    return Decimal(str(value)) if value is not None else Decimal("0")


def _account_from_doc(doc) -> UserAccount:
    return UserAccount(
        id=str(doc["_id"]),
        loyalty_points=doc.get("loyaltyPoints") or 0,
        total_spent=_money(doc.get("totalSpent")),
    )


def _product_from_doc(doc) -> Product:
    images = [
        (img.get("url"), img.get("isPrimary", False)) if isinstance(img, dict) else (img, False)
        for img in doc.get("images") or []
    ]
    image = next((url for url, primary in images if primary), images[0][0] if images else None)
    data = {k: v for k, v in _decode(doc).items() if k not in ("_id", "images")}
    return Product.model_validate({**data, "id": str(doc["_id"]), "image": image})


def _order_from_doc(doc) -> Order:
    data = _decode(doc)
    data.pop("_id", None)
    return Order.model_validate(data)


# --- Catalog ---
class MongoCatalogRepository:
    """
    Access to the `products` collection.
    Stock is mutated only through the conditional updates below.
    """
    def __init__(self, db):
        self.products = db["products"]

    def get_product(self, product_id: str) -> Product | None:
        doc = self.products.find_one({"_id": _id_filter(product_id)})
        return _product_from_doc(doc) if doc else None

    def decrement_stock(self, product_id: str, quantity: int) -> Product | None:
        """
        Atomically decrements `inventory.quantity` if at least `quantity` is available.
        Args:
            product_id (str): Product to decrement.
            quantity (int): Units to take.
        Returns:
            Product | None: The product after the update, or None if the guard did not
            match (unknown product or not enough stock).
        Raises:
            PersistenceFailure: If the driver call fails.
        """
        try:
            doc = self.products.find_one_and_update(
                {"_id": _id_filter(product_id), "inventory.quantity": {"$gte": quantity}},
                {"$inc": {"inventory.quantity": -quantity}},
                return_document=ReturnDocument.AFTER,
            )
            if doc and doc["inventory"]["quantity"] == 0:
                # Guarded on the quantity so a concurrent release is not clobbered.
                self.products.update_one(
                    {"_id": doc["_id"], "inventory.quantity": 0},
                    {"$set": {"inventory.inStock": False}},
                )
                doc["inventory"]["inStock"] = False
        except PyMongoError as e:
            log.error(f"Stock decrement for product {product_id} failed: {e}")
            raise PersistenceFailure(f"Could not update stock for product {product_id}") from e
        return _product_from_doc(doc) if doc else None

    def increment_stock(self, product_id: str, quantity: int, max_quantity: int) -> Product | None:
        """
        Atomically increments `inventory.quantity`, refusing to exceed `max_quantity`.
        Returns:
            Product | None: The product after the update, or None if the product is unknown
            or the increment would exceed the cap.
        Raises:
            PersistenceFailure: If the driver call fails.
        """
        try:
            doc = self.products.find_one_and_update(
                {"_id": _id_filter(product_id), "inventory.quantity": {"$lte": max_quantity - quantity}},
                {"$inc": {"inventory.quantity": quantity}},
                return_document=ReturnDocument.AFTER,
            )
            if doc and doc["inventory"]["quantity"] > 0 and not doc["inventory"].get("inStock", True):
                self.products.update_one(
                    {"_id": doc["_id"], "inventory.quantity": {"$gt": 0}},
                    {"$set": {"inventory.inStock": True}},
                )
                doc["inventory"]["inStock"] = True
        except PyMongoError as e:
            log.error(f"Stock increment for product {product_id} failed: {e}")
            raise PersistenceFailure(f"Could not update stock for product {product_id}") from e
        return _product_from_doc(doc) if doc else None


# --- Users ---
class MongoUserRepository:
    """
    Loyalty balance and spend ledger on the `users` collection.

    Both mutations are compare-and-set loops: read the balance and spend, then write
    the new values with the read values in the filter. `revert_order` also records
    the order number in `reversedOrders` within the same update, so a repeated
    reversal of the same order is a no-op.
    """
    def __init__(self, db):
        self.users = db["users"]

    def get_account(self, user_id: str) -> UserAccount | None:
        doc = self.users.find_one({"_id": _id_filter(user_id)})
        return _account_from_doc(doc) if doc else None

    def apply_order(self, user_id: str, points_used: int, points_earned: int,
                    amount: Decimal) -> UserAccount | None:
        """
        Debits redeemed points, credits earned points and adds `amount` to `totalSpent`.
        Returns:
            UserAccount | None: The account after the update, or None if the account is
            unknown or its balance no longer covers `points_used`.
        Raises:
            PersistenceFailure: If the driver call fails or the update keeps losing races.
        """
        uid = _id_filter(user_id)
        try:
            for _ in range(MAX_CAS_ATTEMPTS):
                doc = self.users.find_one({"_id": uid})
                if not doc or (doc.get("loyaltyPoints") or 0) < points_used:
                    return None
                points, spent = doc.get("loyaltyPoints"), doc.get("totalSpent")
                updated = self.users.find_one_and_update(
                    {"_id": uid, "loyaltyPoints": points, "totalSpent": spent},
                    {"$set": {
                        "loyaltyPoints": (points or 0) + points_earned - points_used,
                        "totalSpent": _encode(_money(spent) + amount),
                    }},
                    return_document=ReturnDocument.AFTER,
                )
                if updated:
                    return _account_from_doc(updated)
        except PyMongoError as e:
            log.error(f"Loyalty update for user {user_id} failed: {e}")
            raise PersistenceFailure(f"Could not update account {user_id}") from e
        log.error(f"Loyalty update for user {user_id} lost {MAX_CAS_ATTEMPTS} races in a row.")
        raise PersistenceFailure(f"Could not update account {user_id}")

    def revert_order(self, user_id: str, order_number: str, points_used: int, points_earned: int,
                     amount: Decimal) -> int:
        """
        Reverses `apply_order` for one order: refunds redeemed points, removes `amount`
        from `totalSpent` and revokes earned points without taking the balance below zero.
        All three happen in one update, which also marks the order as reversed.
        Returns:
            int: Earned points revoked now (0 if the order was already reversed).
        Raises:
            PersistenceFailure: If the driver call fails or the update keeps losing races.
        """
        uid = _id_filter(user_id)
        try:
            for _ in range(MAX_CAS_ATTEMPTS):
                doc = self.users.find_one({"_id": uid})
                if not doc or order_number in (doc.get("reversedOrders") or []):
                    return 0
                points, spent = doc.get("loyaltyPoints"), doc.get("totalSpent")
                balance = (points or 0) + points_used
                revoke = min(points_earned, balance)
                result = self.users.update_one(
                    {
                        "_id": uid,
                        "loyaltyPoints": points,
                        "totalSpent": spent,
                        "reversedOrders": {"$ne": order_number},
                    },
                    {
                        "$set": {
                            "loyaltyPoints": balance - revoke,
                            "totalSpent": _encode(_money(spent) - amount),
                        },
                        "$addToSet": {"reversedOrders": order_number},
                    },
                )
                if result.modified_count == 1:
                    return revoke
        except PyMongoError as e:
            log.error(f"[Order: {order_number}] Loyalty reversal for user {user_id} failed: {e}")
            raise PersistenceFailure(f"Could not update account {user_id}", order_number) from e
        log.error(f"[Order: {order_number}] Loyalty reversal for user {user_id} lost "
                  f"{MAX_CAS_ATTEMPTS} races in a row.")
        raise PersistenceFailure(f"Could not update account {user_id}", order_number)


# --- Orders ---
class MongoOrderRepository:
    """
    The order ledger (`orders` collection) and its order-number counter.
    Orders are keyed by order number and never deleted.
    """
    def __init__(self, db):
        self.orders = db["orders"]
        self.counters = db["counters"]

    def ensure_indexes(self):
        self.orders.create_index([("userId", ASCENDING), ("createdAt", DESCENDING)])
        self.orders.create_index([("status", ASCENDING)])
        self.orders.create_index([("paymentStatus", ASCENDING)])
        self.orders.create_index([("createdAt", DESCENDING)])
        self.orders.create_index("idempotencyKey", unique=True, sparse=True)

    def next_order_number(self, now: datetime | None = None) -> str:
        """
        Allocates the next order number: prefix, yymmdd, 5-digit daily sequence.
        Numbers are unique and sort in creation order.
        """
        day = (now or utc_now()).strftime("%y%m%d")
        try:
            doc = self.counters.find_one_and_update(
                {"_id": f"orders-{day}"},
                {"$inc": {"seq": 1}},
                upsert=True,
                return_document=ReturnDocument.AFTER,
            )
        except PyMongoError as e:
            log.error(f"Order number allocation failed: {e}")
            raise PersistenceFailure("Could not allocate an order number") from e
        return f"{config.ORDER_NUMBER_PREFIX}{day}{doc['seq']:05d}"

    def insert(self, order: Order) -> Order:
        doc = _encode(order.model_dump(by_alias=True))
        if doc.get("idempotencyKey") is None:
            doc.pop("idempotencyKey", None)
        doc["_id"] = order.order_number
        try:
            self.orders.insert_one(doc)
        except DuplicateKeyError as e:
            if order.idempotency_key and "idempotencyKey" in str(e):
                raise DuplicateOrderKey(order.idempotency_key) from e
            log.error(f"[Order: {order.order_number}] Duplicate order number: {e}")
            raise PersistenceFailure("Order could not be stored", order.order_number) from e
        except PyMongoError as e:
            log.error(f"[Order: {order.order_number}] Order insert failed: {e}")
            raise PersistenceFailure("Order could not be stored", order.order_number) from e
        return order

    def get(self, order_number: str) -> Order | None:
        doc = self.orders.find_one({"_id": order_number})
        return _order_from_doc(doc) if doc else None

    def find_by_idempotency_key(self, key: str) -> Order | None:
        doc = self.orders.find_one({"idempotencyKey": key})
        return _order_from_doc(doc) if doc else None

    def list_for_user(self, user_id: str, page: int, limit: int) -> tuple[list[Order], int]:
        return self._page({"userId": user_id}, page, limit)

    def search(self, order_filter: OrderFilter, page: int, limit: int) -> tuple[list[Order], int]:
        query = {}
        if order_filter.status:
            query["status"] = order_filter.status.value
        if order_filter.payment_status:
            query["paymentStatus"] = order_filter.payment_status.value
        if order_filter.date_from or order_filter.date_to:
            query["createdAt"] = {}
            if order_filter.date_from:
                query["createdAt"]["$gte"] = order_filter.date_from
            if order_filter.date_to:
                query["createdAt"]["$lte"] = order_filter.date_to
        if order_filter.search:
            pattern = {"$regex": re.escape(order_filter.search), "$options": "i"}
            query["$or"] = [
                {"orderNumber": pattern},
                {"shippingAddress.firstName": pattern},
                {"shippingAddress.lastName": pattern},
                {"shippingAddress.city": pattern},
            ]
        return self._page(query, page, limit)

    def _page(self, query: dict, page: int, limit: int) -> tuple[list[Order], int]:
        cursor = (
            self.orders.find(query)
            .sort([("createdAt", DESCENDING), ("_id", DESCENDING)])
            .skip((page - 1) * limit)
            .limit(limit)
        )
        orders = [_order_from_doc(doc) for doc in cursor]
        return orders, self.orders.count_documents(query)

    def compare_and_set(self, order_number: str, expected_status: OrderStatus,
                        expected_payment_status: PaymentStatus, changes: dict,
                        history: StatusHistoryEntry | None = None) -> Order | None:
        """
        Applies `changes` only if the stored status and payment status still equal the
        expected values. This serializes transitions per order.
        Args:
            order_number (str): Order to update.
            expected_status (OrderStatus): Status the caller read.
            expected_payment_status (PaymentStatus): Payment status the caller read.
            changes (dict): Field updates keyed by model attribute name.
            history (StatusHistoryEntry | None): Entry appended to the status history.
        Returns:
            Order | None: The updated order, or None if the guard did not match.
        Raises:
            PersistenceFailure: If the driver call fails.
        """
        fields = {to_camel(k): v for k, v in changes.items()}
        fields["updatedAt"] = utc_now()
        update = {"$set": _encode(fields)}
        if history is not None:
            update["$push"] = {"statusHistory": _encode(history.model_dump(by_alias=True))}
        try:
            doc = self.orders.find_one_and_update(
                {
                    "_id": order_number,
                    "status": expected_status.value,
                    "paymentStatus": expected_payment_status.value,
                },
                update,
                return_document=ReturnDocument.AFTER,
            )
        except PyMongoError as e:
            log.error(f"[Order: {order_number}] Status update failed: {e}")
            raise PersistenceFailure("Order could not be updated", order_number) from e
        return _order_from_doc(doc) if doc else None


# --- Reservations ---
class MongoReservationRepository:
    """
    Reservation tokens (`reservations` collection), one per reserved order line.
    A token moves from "held" to "released" exactly once.
    """
    def __init__(self, db):
        self.reservations = db["reservations"]

    def hold(self, order_number: str, line_index: int, product_id: str, quantity: int):
        try:
            self.reservations.insert_one({
                "_id": f"{order_number}:{line_index}",
                "orderNumber": order_number,
                "lineIndex": line_index,
                "productId": product_id,
                "quantity": quantity,
                "state": "held",
                "createdAt": utc_now(),
            })
        except PyMongoError as e:
            log.error(f"[Order: {order_number}] Could not record reservation for line {line_index}: {e}")
            raise PersistenceFailure("Reservation could not be recorded", order_number) from e

    def release_hold(self, order_number: str, line_index: int) -> bool:
        """Flips the token to "released". Returns False if it was not held."""
        try:
            doc = self.reservations.find_one_and_update(
                {"_id": f"{order_number}:{line_index}", "state": "held"},
                {"$set": {"state": "released", "releasedAt": utc_now()}},
            )
        except PyMongoError as e:
            log.error(f"[Order: {order_number}] Could not release reservation for line {line_index}: {e}")
            raise PersistenceFailure("Reservation could not be released", order_number) from e
        return doc is not None

    def restore_hold(self, order_number: str, line_index: int):
        self.reservations.update_one(
            {"_id": f"{order_number}:{line_index}", "state": "released"},
            {"$set": {"state": "held"}, "$unset": {"releasedAt": ""}},
        )

    def for_order(self, order_number: str) -> list[dict]:
        cursor = self.reservations.find({"orderNumber": order_number}).sort("lineIndex", ASCENDING)
        return [{k: v for k, v in doc.items() if k != "_id"} for doc in cursor]


# --- Carts ---
class MongoCartRepository:
    """Cart lines keyed by (user, product, colour, size) in the `carts` collection."""

    def __init__(self, db):
        self.carts = db["carts"]

    def ensure_indexes(self):
        self.carts.create_index(
            [("userId", ASCENDING), ("productId", ASCENDING), ("color", ASCENDING), ("size", ASCENDING)],
            unique=True,
        )

    @staticmethod
    def _key(user_id: str, key: CartItemKey) -> dict:
        return {"userId": user_id, "productId": key.product_id, "color": key.color, "size": key.size}

    def upsert(self, line: CartLine) -> CartLine:
        key = self._key(line.user_id, CartItemKey(product_id=line.product_id, color=line.color, size=line.size))
        self.carts.update_one(
            key,
            {"$set": {"quantity": line.quantity}, "$setOnInsert": {"addedAt": line.added_at}},
            upsert=True,
        )
        return line

    def remove(self, user_id: str, key: CartItemKey) -> bool:
        return self.carts.delete_one(self._key(user_id, key)).deleted_count == 1

    def lines(self, user_id: str) -> list[CartLine]:
        cursor = self.carts.find({"userId": user_id}).sort("addedAt", ASCENDING)
        return [CartLine.model_validate({k: v for k, v in doc.items() if k != "_id"}) for doc in cursor]

    def clear(self, user_id: str, keys: list[CartItemKey]) -> int:
        if not keys:
            return 0
        result = self.carts.delete_many({"userId": user_id, "$or": [
            {"productId": k.product_id, "color": k.color, "size": k.size} for k in keys
        ]})
        return result.deleted_count


class MongoStore:
    """
    Bundles the repositories over one MongoDB database.
    """
    def __init__(self, client: MongoClient | None = None, database: str | None = None):
        self.client = client or MongoClient(config.MONGODB_URL, tz_aware=True)
        self.db = self.client[database or config.MONGODB_DATABASE]
        self.catalog = MongoCatalogRepository(self.db)
        self.users = MongoUserRepository(self.db)
        self.orders = MongoOrderRepository(self.db)
        self.reservations = MongoReservationRepository(self.db)
        self.carts = MongoCartRepository(self.db)

    def ensure_indexes(self):
        self.orders.ensure_indexes()
        self.carts.ensure_indexes()
        log.info("MongoDB indexes ensured.")

    def close(self):
        self.client.close()
