from decimal import Decimal

import pytest

from order_service.errors import InsufficientStock, ProductNotFound, VariantInvalid
from order_service.models import CheckoutItem
from order_service.validator import merge_duplicate_lines, validate_cart


def line(product_id, quantity, color=None, size=None):
    return CheckoutItem(product_id=product_id, quantity=quantity, color=color, size=size)


class TestMergeDuplicateLines:
    def test_same_variant_is_merged_at_first_position(self):
        merged = merge_duplicate_lines([
            line("p-helmet", 1, "black", "M"),
            line("p-chain", 1),
            line("p-helmet", 2, "black", "M"),
        ])
        assert [(index, item.product_id, item.quantity) for index, item in merged] == [
            (0, "p-helmet", 3),
            (1, "p-chain", 1),
        ]

    def test_different_variants_stay_apart(self):
        merged = merge_duplicate_lines([line("p-helmet", 1, "black"), line("p-helmet", 1, "red")])
        assert len(merged) == 2


class TestValidateCart:
    def test_freezes_catalog_price_and_name(self, store):
        items = validate_cart([line("p-helmet", 3, "red", "L")], store.catalog)
        assert len(items) == 1
        item = items[0]
        assert item.name == "Trail Helmet"
        assert item.price == Decimal("2000")
        assert item.total_price == Decimal("6000")
        assert item.selected_color == "red"
        assert item.selected_size == "L"

    def test_does_not_touch_stock(self, store, stock_of):
        validate_cart([line("p-helmet", 10)], store.catalog)
        assert stock_of("p-helmet") == 10

    def test_empty_cart_rejected(self, store):
        with pytest.raises(ValueError):
            validate_cart([], store.catalog)

    def test_unknown_product(self, store):
        with pytest.raises(ProductNotFound) as exc_info:
            validate_cart([line("p-helmet", 1), line("p-ghost", 1)], store.catalog)
        assert exc_info.value.details == {"productId": "p-ghost", "lineIndex": 1}

    def test_inactive_product_is_not_orderable(self, store):
        with pytest.raises(ProductNotFound):
            validate_cart([line("p-pump", 1)], store.catalog)

    def test_unknown_colour(self, store):
        with pytest.raises(VariantInvalid) as exc_info:
            validate_cart([line("p-helmet", 1, "green")], store.catalog)
        assert exc_info.value.selector == "color"
        assert exc_info.value.details["allowed"] == ["black", "red"]

    def test_selector_on_product_without_variants(self, store):
        with pytest.raises(VariantInvalid) as exc_info:
            validate_cart([line("p-chain", 1, size="XL")], store.catalog)
        assert exc_info.value.selector == "size"

    def test_insufficient_stock_reports_line(self, store):
        with pytest.raises(InsufficientStock) as exc_info:
            validate_cart([line("p-helmet", 1), line("p-chain", 2)], store.catalog)
        err = exc_info.value
        assert err.product_id == "p-chain"
        assert err.requested == 2
        assert err.available == 1
        assert err.details["lineIndex"] == 1
        assert "11-speed Chain" in err.message

    def test_merged_quantity_checked_against_stock(self, store):
        with pytest.raises(InsufficientStock) as exc_info:
            validate_cart([line("p-chain", 1), line("p-chain", 1)], store.catalog)
        assert exc_info.value.requested == 2
        assert exc_info.value.details["lineIndex"] == 0

    def test_out_of_stock_flag_means_nothing_available(self, store):
        product = store.catalog.get_product("p-helmet")
        product.inventory.in_stock = False
        store.catalog.add_product(product)
        with pytest.raises(InsufficientStock) as exc_info:
            validate_cart([line("p-helmet", 1)], store.catalog)
        assert exc_info.value.available == 0
