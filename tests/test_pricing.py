"""Tests for the pricing calculator."""

from decimal import Decimal

import pytest

from order_service.errors import InsufficientLoyaltyPoints
from order_service.models import OrderItem
from order_service.pricing import calculate_pricing, round_currency


def item(price, quantity, product_id="p-1"):
    price = Decimal(price)
    return OrderItem(product_id=product_id, name="Item", price=price, quantity=quantity,
                     total_price=price * quantity)


class TestTotals:
    def test_free_shipping_at_threshold(self):
        quote = calculate_pricing([item("2500", 2)])
        pricing = quote.pricing
        assert pricing.subtotal == Decimal("5000")
        assert pricing.shipping == Decimal("0")
        assert pricing.tax == Decimal("900")
        assert pricing.total == Decimal("5900")

    def test_flat_shipping_below_threshold(self):
        pricing = calculate_pricing([item("4999", 1)]).pricing
        assert pricing.shipping == Decimal("500")
        assert pricing.tax == Decimal("900")  # 899.82 rounds up
        assert pricing.total == Decimal("6399")

    def test_multiple_lines_summed(self):
        pricing = calculate_pricing([item("2000", 3, "p-1"), item("150", 2, "p-2")]).pricing
        assert pricing.subtotal == Decimal("6300")
        assert pricing.tax == Decimal("1134")

    def test_tax_rounds_half_up(self):
        # 25 * 0.18 = 4.5; bankers' rounding would give 4.
        assert calculate_pricing([item("25", 1)]).pricing.tax == Decimal("5")
        assert round_currency(Decimal("2.5")) == Decimal("3")

    def test_total_identity_holds(self):
        cases = [
            ([item("19.99", 3)], 0),
            ([item("2000", 3)], 500),
            ([item("4999.50", 1), item("0.75", 2)], 120),
            ([item("100", 1)], 100),
        ]
        for items, redeem in cases:
            p = calculate_pricing(items, redeem, 10_000).pricing
            assert p.total == p.subtotal + p.tax + p.shipping - p.discount
            assert p.total >= 0


class TestLoyalty:
    def test_redemption_discount_and_accrual(self):
        quote = calculate_pricing([item("2000", 3)], loyalty_points_requested=500,
                                  loyalty_points_available=1000)
        assert quote.pricing.discount == Decimal("500")
        assert quote.pricing.total == Decimal("6580")
        assert quote.loyalty_points_used == 500
        assert quote.loyalty_points_earned == 65

    def test_discount_capped_at_subtotal(self):
        quote = calculate_pricing([item("200", 1)], 3000, 3000)
        assert quote.pricing.discount == Decimal("200")
        assert quote.loyalty_points_used == 200
        assert quote.pricing.total == Decimal("536")  # 200 + 36 tax + 500 shipping - 200

    def test_fractional_subtotal_redeems_whole_points(self):
        quote = calculate_pricing([item("19.99", 1)], 50, 50)
        assert quote.loyalty_points_used == 19
        assert quote.pricing.discount == Decimal("19")

    def test_insufficient_points(self):
        with pytest.raises(InsufficientLoyaltyPoints) as exc_info:
            calculate_pricing([item("2000", 1)], loyalty_points_requested=500, loyalty_points_available=300)
        assert exc_info.value.requested == 500
        assert exc_info.value.available == 300

    def test_accrual_floors(self):
        quote = calculate_pricing([item("2000", 1)])
        assert quote.pricing.total == Decimal("2860")
        assert quote.loyalty_points_earned == 28


class TestInputs:
    def test_empty_items_rejected(self):
        with pytest.raises(ValueError):
            calculate_pricing([])

    def test_negative_redemption_rejected(self):
        with pytest.raises(ValueError):
            calculate_pricing([item("10", 1)], -1, 10)

    def test_custom_rules(self):
        pricing = calculate_pricing([item("100", 1)], tax_rate=Decimal("0.05"),
                                    free_shipping_threshold=Decimal("50"),
                                    flat_shipping_fee=Decimal("40")).pricing
        assert pricing.tax == Decimal("5")
        assert pricing.shipping == Decimal("0")

    def test_coupon_passes_through(self):
        quote = calculate_pricing([item("100", 1)], coupon_code="WELCOME10")
        assert quote.coupon_code == "WELCOME10"
        assert quote.pricing.discount == Decimal("0")
