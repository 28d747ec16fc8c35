from decimal import Decimal

import pytest

from order_engine.application.errors import (
    InsufficientStock, OrderLineNotFound, OrderNotFound, BusinessRuleViolation, ValidationFailed,
)
from order_engine.application.service import OrderService, PaymentService
from order_engine.domain.models import Variant


def stock(session_factory, variant_id):
    with session_factory() as fresh:
        return fresh.get(Variant, variant_id).quantity


@pytest.fixture
def placed(db, catalog, command):
    """Order of 2 x shirt XL (100 each) with 20 shipping."""
    return OrderService(db).place(command([(catalog.shirt, catalog.shirt_xl, 2)], shipping_charge="20.00"))


def assert_totals_consistent(order):
    assert order.item_subtotal == sum(line.unit_price * line.quantity for line in order.lines)
    assert order.total_amount == order.item_subtotal + order.shipping_charge - order.discount
    assert order.payment.amount == order.total_amount


def test_add_new_product_line(db, session_factory, catalog, placed):
    order = OrderService(db).add_product(placed.id, catalog.cap, catalog.cap_std, 2)
    assert len(order.lines) == 2
    assert order.item_subtotal == Decimal("300.00")
    assert order.total_amount == Decimal("320.00")
    assert order.order_description.endswith("; Cap [SKU: CAP-STD] x 2")
    assert stock(session_factory, catalog.cap_std) == 8
    assert_totals_consistent(order)


def test_add_existing_product_merges_quantity(db, session_factory, catalog, placed):
    order = OrderService(db).add_product(placed.id, catalog.shirt, catalog.shirt_xl, 1)
    assert len(order.lines) == 1
    assert order.lines[0].quantity == 3
    assert order.lines[0].unit_price == Decimal("100.00")
    assert order.order_description.endswith("x 3")
    assert stock(session_factory, catalog.shirt_xl) == 7
    assert_totals_consistent(order)


def test_add_with_price_override_reprices_merged_line(db, catalog, placed):
    order = OrderService(db).add_product(placed.id, catalog.shirt, catalog.shirt_xl, 1, price=Decimal("90.00"))
    assert order.lines[0].unit_price == Decimal("90.00")
    assert order.item_subtotal == Decimal("270.00")
    assert_totals_consistent(order)


def test_added_line_keeps_captured_price_after_catalog_change(db, session_factory, catalog, placed):
    with session_factory() as admin:
        admin.get(Variant, catalog.shirt_xl).price = Decimal("150.00")
        admin.commit()
    order = OrderService(db).get(placed.id)
    assert order.lines[0].unit_price == Decimal("100.00")
    assert order.item_subtotal == Decimal("200.00")


def test_add_more_than_available_is_rejected(db, session_factory, catalog, placed):
    with pytest.raises(InsufficientStock):
        OrderService(db).add_product(placed.id, catalog.shirt, catalog.shirt_m, 3)
    order = OrderService(db).get(placed.id)
    assert order.item_subtotal == Decimal("200.00")
    assert stock(session_factory, catalog.shirt_m) == 2


def test_add_unknown_variant_fails_validation(db, catalog, placed):
    with pytest.raises(ValidationFailed) as exc:
        OrderService(db).add_product(placed.id, catalog.cap, 999, 1)
    assert "product_sku_id" in exc.value.errors


def test_add_to_missing_order(db, catalog):
    with pytest.raises(OrderNotFound):
        OrderService(db).add_product(404, catalog.cap, catalog.cap_std, 1)


def test_remove_line_releases_stock(db, session_factory, catalog, placed):
    service = OrderService(db)
    order = service.add_product(placed.id, catalog.cap, catalog.cap_std, 1)
    shirt_line = order.lines[0]
    order = service.remove_line(placed.id, shirt_line.id)
    assert [line.product_sku_id for line in order.lines] == [catalog.cap_std]
    assert order.item_subtotal == Decimal("50.00")
    assert order.order_description == "Cap [SKU: CAP-STD] x 1"
    assert stock(session_factory, catalog.shirt_xl) == 10
    assert_totals_consistent(order)


def test_remove_unknown_line(db, placed):
    with pytest.raises(OrderLineNotFound):
        OrderService(db).remove_line(placed.id, 999)


def test_change_quantity_up_and_down(db, session_factory, catalog, placed):
    service = OrderService(db)
    line_id = placed.lines[0].id

    order = service.update_line_quantity(placed.id, line_id, 5)
    assert order.item_subtotal == Decimal("500.00")
    assert stock(session_factory, catalog.shirt_xl) == 5

    order = service.update_line_quantity(placed.id, line_id, 1)
    assert order.item_subtotal == Decimal("100.00")
    assert order.order_description.endswith("x 1")
    assert stock(session_factory, catalog.shirt_xl) == 9
    assert_totals_consistent(order)


def test_change_quantity_beyond_stock_is_rejected(db, session_factory, catalog, placed):
    with pytest.raises(InsufficientStock):
        OrderService(db).update_line_quantity(placed.id, placed.lines[0].id, 13)
    assert stock(session_factory, catalog.shirt_xl) == 8


def test_change_quantity_with_price_override(db, placed):
    order = OrderService(db).update_line_quantity(placed.id, placed.lines[0].id, 2, price=Decimal("75.50"))
    assert order.lines[0].unit_price == Decimal("75.50")
    assert order.item_subtotal == Decimal("151.00")
    assert_totals_consistent(order)


def test_mutation_cannot_push_total_below_paid_amount(db, catalog, placed):
    PaymentService(db).update_paid_amount(placed.payment.id, Decimal("220.00"))
    with pytest.raises(BusinessRuleViolation):
        OrderService(db).update_line_quantity(placed.id, placed.lines[0].id, 1)
    assert OrderService(db).get(placed.id).item_subtotal == Decimal("200.00")


def test_mutation_cannot_push_total_below_zero(db, catalog, make_coupon, command):
    coupon_id = make_coupon(code="FIFTY", amount=Decimal("50.00"))
    order = OrderService(db).place(command([(catalog.shirt, catalog.shirt_xl, 1)], coupon_id=coupon_id))
    with pytest.raises(BusinessRuleViolation):
        OrderService(db).remove_line(order.id, order.lines[0].id)
