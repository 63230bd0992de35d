"""Pytest fixtures for order service tests."""

from decimal import Decimal

import pytest

from order_service.memory import InMemoryStore
from order_service.models import (
    Address,
    CheckoutItem,
    CheckoutRequest,
    Inventory,
    PaymentMethod,
    Product,
    UserAccount,
)
from order_service.workflow import OrderWorkflow


@pytest.fixture
def store():
    """In-memory store seeded with a small catalog and two customers."""
    store = InMemoryStore()
    store.catalog.add_product(Product(
        id="p-helmet", name="Trail Helmet", price=Decimal("2000"),
        colors=["black", "red"], sizes=["M", "L"], inventory=Inventory(quantity=10),
    ))
    store.catalog.add_product(Product(
        id="p-chain", name="11-speed Chain", price=Decimal("1500"), inventory=Inventory(quantity=1),
    ))
    store.catalog.add_product(Product(
        id="p-pump", name="Floor Pump", price=Decimal("800"), status="inactive",
        inventory=Inventory(quantity=5),
    ))
    store.users.add_account(UserAccount(id="u-1", loyalty_points=300))
    store.users.add_account(UserAccount(id="u-2", loyalty_points=1000))
    return store


@pytest.fixture
def workflow(store):
    return OrderWorkflow(store)


@pytest.fixture
def address():
    return Address(
        first_name="Asha", last_name="Rao", email="asha@example.com", phone="9800000000",
        address_line1="12 MG Road", city="Bengaluru", state="KA", postal_code="560001",
    )


@pytest.fixture
def make_request(address):
    """Factory for checkout requests: make_request(("p-helmet", 3), points=0, ...)."""
    def _make(*lines, points=0, method=PaymentMethod.CARD, coupon=None, billing=None):
        items = []
        for line in lines:
            product_id, quantity, *variant = line
            color = variant[0] if len(variant) > 0 else None
            size = variant[1] if len(variant) > 1 else None
            items.append(CheckoutItem(product_id=product_id, quantity=quantity, color=color, size=size))
        return CheckoutRequest(
            items=items,
            shipping_address=address,
            billing_address=billing,
            payment_method=method,
            loyalty_points_to_redeem=points,
            coupon_code=coupon,
        )
    return _make


@pytest.fixture
def stock_of(store):
    def _stock(product_id):
        return store.catalog.get_product(product_id).inventory.quantity
    return _stock


@pytest.fixture
def points_of(store):
    def _points(user_id):
        return store.users.get_account(user_id).loyalty_points
    return _points
