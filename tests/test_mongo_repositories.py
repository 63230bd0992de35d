"""MongoDB repositories exercised against mongomock."""

from datetime import datetime, timezone
from decimal import Decimal

import pytest
from bson.decimal128 import Decimal128
from pymongo.errors import AutoReconnect

from order_service.errors import InvalidTransition, PersistenceFailure
from order_service.models import (
    CartItemKey,
    CartLine,
    OrderFilter,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
    StatusHistoryEntry,
)
from order_service.repositories import MongoStore
from order_service.workflow import OrderWorkflow

mongomock = pytest.importorskip("mongomock")


@pytest.fixture
def mongo_store():
    store = MongoStore(client=mongomock.MongoClient(), database="storefront_test")
    store.db["products"].insert_many([
        {
            "_id": "p-helmet",
            "name": "Trail Helmet",
            "price": Decimal128("2000"),
            "status": "active",
            "colors": ["black", "red"],
            "sizes": ["M", "L"],
            "images": [{"url": "/img/helmet-side.jpg"}, {"url": "/img/helmet.jpg", "isPrimary": True}],
            "inventory": {"quantity": 10, "inStock": True, "lowStockThreshold": 3},
        },
        {
            "_id": "p-chain",
            "name": "11-speed Chain",
            "price": Decimal128("1500"),
            "status": "active",
            "inventory": {"quantity": 1, "inStock": True},
        },
    ])
    return store


@pytest.fixture
def account(mongo_store):
    mongo_store.db["users"].insert_one({"_id": "u-1", "loyaltyPoints": 500, "totalSpent": Decimal128("0")})
    return "u-1"


class FlakyCollection:
    """Wraps a collection; the first `update_one` raises like a dropped connection."""

    def __init__(self, collection):
        self.collection = collection
        self.failures = 1

    def update_one(self, *args, **kwargs):
        if self.failures:
            self.failures -= 1
            raise AutoReconnect("connection reset")
        return self.collection.update_one(*args, **kwargs)

    def __getattr__(self, name):
        return getattr(self.collection, name)


class TestCatalog:
    def test_product_view(self, mongo_store):
        product = mongo_store.catalog.get_product("p-helmet")
        assert product.price == Decimal("2000")
        assert product.image == "/img/helmet.jpg"
        assert product.inventory.low_stock_threshold == 3
        assert mongo_store.catalog.get_product("p-ghost") is None

    def test_decrement_is_guarded(self, mongo_store):
        assert mongo_store.catalog.decrement_stock("p-chain", 2) is None
        product = mongo_store.catalog.decrement_stock("p-chain", 1)
        assert product.inventory.quantity == 0
        assert product.inventory.in_stock is False
        assert mongo_store.db["products"].find_one({"_id": "p-chain"})["inventory"]["inStock"] is False

    def test_increment_restores_flag_and_respects_cap(self, mongo_store):
        mongo_store.catalog.decrement_stock("p-chain", 1)
        product = mongo_store.catalog.increment_stock("p-chain", 1, max_quantity=100)
        assert product.inventory.quantity == 1
        assert product.inventory.in_stock is True
        assert mongo_store.catalog.increment_stock("p-chain", 100, max_quantity=100) is None


class TestReservations:
    def test_token_released_once(self, mongo_store):
        reservations = mongo_store.reservations
        reservations.hold("CH26101900001", 0, "p-helmet", 2)
        assert reservations.release_hold("CH26101900001", 0) is True
        assert reservations.release_hold("CH26101900001", 0) is False

        reservations.restore_hold("CH26101900001", 0)
        tokens = reservations.for_order("CH26101900001")
        assert [(t["productId"], t["state"]) for t in tokens] == [("p-helmet", "held")]


class TestOrders:
    def test_order_numbers_follow_daily_sequence(self, mongo_store):
        day = datetime(2026, 10, 19, tzinfo=timezone.utc)
        assert mongo_store.orders.next_order_number(day) == "CH26101900001"
        assert mongo_store.orders.next_order_number(day) == "CH26101900002"
        assert mongo_store.orders.next_order_number(datetime(2026, 10, 20, tzinfo=timezone.utc)) == "CH26102000001"

    def test_guest_checkout_and_cancel(self, mongo_store, make_request):
        workflow = OrderWorkflow(mongo_store)
        order = workflow.checkout(make_request(("p-helmet", 3, "black", "M")))

        stored = mongo_store.orders.get(order.order_number)
        assert stored.pricing.total == Decimal("7080")
        assert stored.items[0].image == "/img/helmet.jpg"
        assert mongo_store.catalog.get_product("p-helmet").inventory.quantity == 7

        cancelled = workflow.cancel(order.order_number, "ordered twice", is_staff=True)
        assert cancelled.status == OrderStatus.CANCELLED
        assert mongo_store.catalog.get_product("p-helmet").inventory.quantity == 10
        assert [e.status for e in mongo_store.orders.get(order.order_number).status_history] == [
            "pending", "cancelled",
        ]

    def test_compare_and_set_guard(self, mongo_store, make_request):
        workflow = OrderWorkflow(mongo_store)
        order = workflow.checkout(make_request(("p-chain", 1)), idempotency_key="abc")
        entry = StatusHistoryEntry(status="confirmed", note="confirmed")

        updated = mongo_store.orders.compare_and_set(order.order_number, OrderStatus.PENDING,
                                                     PaymentStatus.PENDING,
                                                     {"status": OrderStatus.CONFIRMED}, entry)
        assert updated.status == OrderStatus.CONFIRMED
        assert mongo_store.orders.compare_and_set(order.order_number, OrderStatus.PENDING,
                                                  PaymentStatus.PENDING,
                                                  {"status": OrderStatus.CANCELLED}, entry) is None
        assert mongo_store.orders.find_by_idempotency_key("abc").status == OrderStatus.CONFIRMED

    def test_search(self, mongo_store, make_request):
        workflow = OrderWorkflow(mongo_store)
        first = workflow.checkout(make_request(("p-helmet", 1), method=PaymentMethod.COD))
        workflow.checkout(make_request(("p-helmet", 1)))

        orders, total = mongo_store.orders.search(OrderFilter(search="BENGALURU"), 1, 10)
        assert total == 2
        orders, total = mongo_store.orders.search(OrderFilter(search=first.order_number), 1, 10)
        assert [o.order_number for o in orders] == [first.order_number]
        orders, total = mongo_store.orders.search(OrderFilter(status=OrderStatus.SHIPPED), 1, 10)
        assert total == 0


class TestCarts:
    def test_upsert_list_and_clear(self, mongo_store):
        carts = mongo_store.carts
        carts.upsert(CartLine(user_id="u-1", product_id="p-helmet", quantity=1, color="red"))
        carts.upsert(CartLine(user_id="u-1", product_id="p-helmet", quantity=2, color="red"))
        carts.upsert(CartLine(user_id="u-1", product_id="p-chain", quantity=1))

        lines = carts.lines("u-1")
        assert {(line.product_id, line.quantity) for line in lines} == {("p-helmet", 2), ("p-chain", 1)}

        assert carts.clear("u-1", [CartItemKey(product_id="p-helmet", color="red")]) == 1
        assert carts.remove("u-1", CartItemKey(product_id="p-chain")) is True
        assert carts.lines("u-1") == []


class TestUsers:
    def test_apply_order_needs_enough_points(self, mongo_store, account):
        users = mongo_store.users
        assert users.apply_order(account, 501, 0, Decimal("100")) is None
        updated = users.apply_order(account, 200, 68, Decimal("6880"))
        assert updated.loyalty_points == 368
        assert updated.total_spent == Decimal("6880")
        assert users.apply_order("u-ghost", 0, 10, Decimal("100")) is None

    def test_revert_order_is_applied_once(self, mongo_store, account):
        users = mongo_store.users
        users.apply_order(account, 200, 68, Decimal("6880"))

        assert users.revert_order(account, "CH26101900001", 200, 68, Decimal("6880")) == 68
        assert users.revert_order(account, "CH26101900001", 200, 68, Decimal("6880")) == 0
        restored = users.get_account(account)
        assert restored.loyalty_points == 500
        assert restored.total_spent == Decimal("0")
        assert mongo_store.db["users"].find_one({"_id": account})["reversedOrders"] == ["CH26101900001"]
        assert isinstance(mongo_store.db["users"].find_one({"_id": account})["totalSpent"], Decimal128)

    def test_revoke_never_goes_negative(self, mongo_store, account):
        users = mongo_store.users
        users.apply_order(account, 0, 80, Decimal("8000"))
        mongo_store.db["users"].update_one({"_id": account}, {"$set": {"loyaltyPoints": 30}})
        assert users.revert_order(account, "CH26101900002", 0, 80, Decimal("8000")) == 30
        assert users.get_account(account).loyalty_points == 0

    def test_signed_in_checkout_and_cancel(self, mongo_store, account, make_request):
        workflow = OrderWorkflow(mongo_store)
        order = workflow.checkout(make_request(("p-helmet", 3), points=200), user_id=account)

        assert order.pricing.total == Decimal("6880")
        assert order.loyalty_points_earned == 68
        assert mongo_store.users.get_account(account).loyalty_points == 368

        cancelled = workflow.cancel(order.order_number, "changed my mind", user_id=account)
        assert cancelled.status == OrderStatus.CANCELLED
        assert cancelled.reversal_pending is False
        restored = mongo_store.users.get_account(account)
        assert restored.loyalty_points == 500
        assert restored.total_spent == Decimal("0")
        assert mongo_store.catalog.get_product("p-helmet").inventory.quantity == 10
        assert order.order_number in mongo_store.db["users"].find_one({"_id": account})["reversedOrders"]

    def test_cancel_resumed_after_dropped_connection(self, mongo_store, account, make_request, monkeypatch):
        workflow = OrderWorkflow(mongo_store)
        order = workflow.checkout(make_request(("p-helmet", 3), points=200), user_id=account)

        monkeypatch.setattr(mongo_store.users, "users", FlakyCollection(mongo_store.users.users))
        with pytest.raises(PersistenceFailure):
            workflow.cancel(order.order_number, "changed my mind", user_id=account)

        stored = mongo_store.orders.get(order.order_number)
        assert stored.status == OrderStatus.CANCELLED
        assert stored.reversal_pending is True
        assert mongo_store.catalog.get_product("p-helmet").inventory.quantity == 10
        assert mongo_store.users.get_account(account).loyalty_points == 368

        workflow.cancel(order.order_number, "changed my mind", user_id=account)
        stored = mongo_store.orders.get(order.order_number)
        assert stored.reversal_pending is False
        assert mongo_store.users.get_account(account).loyalty_points == 500
        assert mongo_store.catalog.get_product("p-helmet").inventory.quantity == 10

        assert mongo_store.users.revert_order(account, order.order_number, 200, 68, Decimal("6880")) == 0
        assert mongo_store.users.get_account(account).loyalty_points == 500
        with pytest.raises(InvalidTransition):
            workflow.cancel(order.order_number, "again", user_id=account)
