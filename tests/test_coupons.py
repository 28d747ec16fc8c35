from datetime import datetime, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select

from order_engine.application.catalog import CatalogReader
from order_engine.application.collaborators import ActivityRecorder
from order_engine.application.coupons import CouponEvaluator, compute_discount
from order_engine.application.errors import CouponRejected, CouponRejection, CouponNotFound, ValidationFailed
from order_engine.application.schemas import CouponUpdate
from order_engine.application.service import OrderService, CouponService
from order_engine.domain.models import Activity, Coupon
from order_engine.domain.values import CartItem


def priced(db, *items):
    cart = CatalogReader(db).snapshot([CartItem(p, v, q) for p, v, q in items], lock=False)
    return list(cart.lines)


def test_global_flat_coupon_discounts_whole_cart(db, catalog, make_coupon):
    coupon_id = make_coupon()
    quote = CouponEvaluator(db).evaluate(coupon_id, priced(db, (catalog.shirt, catalog.shirt_xl, 1)))
    assert quote.eligible_amount == Decimal("100.00")
    assert quote.discount == Decimal("10.00")


def test_scoped_percent_coupon_only_discounts_scoped_lines(db, catalog, make_coupon):
    coupon_id = make_coupon(code="SHIRT10", type="percent", amount=Decimal("10"),
                            is_global=False, products=[catalog.shirt])
    lines = priced(db, (catalog.shirt, catalog.shirt_xl, 1), (catalog.cap, catalog.cap_std, 1))
    quote = CouponEvaluator(db).evaluate(coupon_id, lines)
    assert quote.eligible_amount == Decimal("100.00")
    assert quote.discount == Decimal("10.00")


def test_scoped_coupon_with_nothing_in_scope_gives_zero(db, catalog, make_coupon):
    coupon_id = make_coupon(code="SHIRTONLY", is_global=False, products=[catalog.shirt])
    quote = CouponEvaluator(db).evaluate(coupon_id, priced(db, (catalog.cap, catalog.cap_std, 2)))
    assert quote.eligible_amount == Decimal("0.00")
    assert quote.discount == Decimal("0.00")


def test_flat_discount_is_capped_at_eligible_amount(db, catalog, make_coupon):
    coupon_id = make_coupon(code="BIG", amount=Decimal("500.00"))
    quote = CouponEvaluator(db).evaluate(coupon_id, priced(db, (catalog.cap, catalog.cap_std, 1)))
    assert quote.discount == Decimal("50.00")


def test_percent_discount_rounds_half_up_to_cents():
    coupon = Coupon(type="percent", amount=Decimal("15"))
    # 15% of 33.33 = 4.9995
    assert compute_discount(coupon, Decimal("33.33")) == Decimal("5.00")


@pytest.mark.parametrize("kind,amount,eligible", [
    ("flat", "0", "10.00"),
    ("flat", "999", "10.00"),
    ("percent", "100", "10.00"),
    ("percent", "250", "10.00"),
    ("percent", "33", "0.01"),
    ("flat", "5", "0.00"),
])
def test_discount_is_bounded_by_eligible_amount(kind, amount, eligible):
    discount = compute_discount(Coupon(type=kind, amount=Decimal(amount)), Decimal(eligible))
    assert Decimal("0") <= discount <= Decimal(eligible)


def test_expired_coupon_is_rejected(db, catalog, make_coupon):
    past = datetime.utcnow() - timedelta(days=10)
    coupon_id = make_coupon(code="OLD", start_date=past - timedelta(days=5), end_date=past)
    with pytest.raises(CouponRejected) as exc:
        CouponEvaluator(db).evaluate(coupon_id, priced(db, (catalog.shirt, catalog.shirt_xl, 1)))
    assert exc.value.reason == CouponRejection.EXPIRED


def test_coupon_not_yet_valid_is_rejected(db, catalog, make_coupon):
    future = datetime.utcnow() + timedelta(days=3)
    coupon_id = make_coupon(code="SOON", start_date=future, end_date=future + timedelta(days=3))
    with pytest.raises(CouponRejected) as exc:
        CouponEvaluator(db).evaluate(coupon_id, priced(db, (catalog.shirt, catalog.shirt_xl, 1)))
    assert exc.value.reason == CouponRejection.NOT_YET_VALID


def test_evaluation_time_can_be_pinned(db, catalog, make_coupon):
    coupon_id = make_coupon(code="WINDOW", start_date=datetime(2030, 1, 1), end_date=datetime(2030, 1, 31))
    quote = CouponEvaluator(db, now=datetime(2030, 1, 15)).evaluate(
        coupon_id, priced(db, (catalog.shirt, catalog.shirt_xl, 1))
    )
    assert quote.discount == Decimal("10.00")


def test_inactive_coupon_is_rejected(db, catalog, make_coupon):
    coupon_id = make_coupon(code="OFF", is_active=False)
    with pytest.raises(CouponRejected) as exc:
        CouponEvaluator(db).evaluate(coupon_id, priced(db, (catalog.shirt, catalog.shirt_xl, 1)))
    assert exc.value.reason == CouponRejection.INACTIVE


def test_minimum_purchase_uses_eligible_amount(db, catalog, make_coupon):
    coupon_id = make_coupon(code="MIN", is_global=False, products=[catalog.cap], min_purchase=Decimal("60.00"))
    lines = priced(db, (catalog.shirt, catalog.shirt_xl, 1), (catalog.cap, catalog.cap_std, 1))
    with pytest.raises(CouponRejected) as exc:
        CouponEvaluator(db).evaluate(coupon_id, lines)
    assert exc.value.reason == CouponRejection.MINIMUM_PURCHASE_NOT_MET


def test_unknown_coupon_is_not_found(db, catalog):
    with pytest.raises(CouponNotFound):
        CouponEvaluator(db).evaluate(9999, priced(db, (catalog.shirt, catalog.shirt_xl, 1)))


def test_usage_cap_counts_committed_orders(db, catalog, make_coupon, command):
    coupon_id = make_coupon(code="ONCE", max_usage=1)
    OrderService(db).place(command([(catalog.shirt, catalog.shirt_xl, 1)], coupon_id=coupon_id))

    with pytest.raises(CouponRejected) as exc:
        CouponEvaluator(db).evaluate(coupon_id, priced(db, (catalog.shirt, catalog.shirt_xl, 1)))
    assert exc.value.reason == CouponRejection.USAGE_LIMIT_REACHED


def test_per_user_cap_only_applies_to_that_customer(db, catalog, make_coupon, command):
    coupon_id = make_coupon(code="PERUSER", max_usage_per_user=1)
    OrderService(db).place(command([(catalog.shirt, catalog.shirt_xl, 1)], coupon_id=coupon_id, customer_id=7))
    lines = priced(db, (catalog.shirt, catalog.shirt_xl, 1))

    with pytest.raises(CouponRejected) as exc:
        CouponEvaluator(db).evaluate(coupon_id, lines, customer_id=7)
    assert exc.value.reason == CouponRejection.PER_USER_LIMIT_REACHED
    assert CouponEvaluator(db).evaluate(coupon_id, lines, customer_id=8).discount == Decimal("10.00")


def test_check_reports_rejection_without_discount(db, catalog, make_coupon):
    past = datetime.utcnow() - timedelta(days=1)
    make_coupon(code="GONE", start_date=past - timedelta(days=2), end_date=past)
    result = CouponService(db).check("GONE", [CartItem(catalog.shirt, catalog.shirt_xl, 2)])
    assert result["valid"] is False
    assert result["reason"] == "expired"
    assert result["discount"] == Decimal("0.00")
    assert result["final_total"] == Decimal("200.00")


def test_check_valid_coupon_returns_final_total(db, catalog, make_coupon):
    make_coupon(code="TEN")
    result = CouponService(db).check("TEN", [CartItem(catalog.shirt, catalog.shirt_xl, 1)])
    assert result["valid"] is True
    assert result["discount"] == Decimal("10.00")
    assert result["final_total"] == Decimal("90.00")


def coupon_terms(**overrides):
    terms = dict(code="SAVE10", type="flat", amount=Decimal("10.00"), is_global=True)
    terms.update(overrides)
    return CouponUpdate(**terms)


def coupon_activity(session_factory, coupon_id):
    with session_factory() as fresh:
        return fresh.scalars(
            select(Activity.description).where(Activity.type == "Coupon", Activity.relatable_id == coupon_id)
        ).all()


def test_update_replaces_terms_and_records_activity(db, session_factory, make_coupon):
    coupon_id = make_coupon()
    service = CouponService(db, ActivityRecorder(session_factory))
    coupon = service.update(coupon_id, coupon_terms(code="SAVE15", type="percent", amount=Decimal("15"),
                                                    max_usage=50), actor_id="admin-1")
    assert (coupon.code, coupon.type, coupon.amount, coupon.max_usage) == ("SAVE15", "percent", Decimal("15.00"), 50)
    assert coupon_activity(session_factory, coupon_id) == [
        "Updated Coupon: Code - SAVE15, Type - percent, Amount - 15.00, Scope - Global"
    ]


def test_update_keeps_own_code_but_refuses_anothers(db, make_coupon):
    coupon_id = make_coupon()
    make_coupon(code="TAKEN")
    service = CouponService(db)
    assert service.update(coupon_id, coupon_terms(amount=Decimal("12.00"))).amount == Decimal("12.00")

    with pytest.raises(ValidationFailed) as exc:
        service.update(coupon_id, coupon_terms(code="TAKEN", type="percent", amount=Decimal("120")))
    assert set(exc.value.errors) == {"code", "amount"}


def test_update_missing_coupon(db):
    with pytest.raises(CouponNotFound):
        CouponService(db).update(999, coupon_terms())


def test_delete_detaches_orders_and_keeps_their_discount(db, session_factory, catalog, make_coupon, command):
    coupon_id = make_coupon()
    order = OrderService(db).place(command([(catalog.shirt, catalog.shirt_xl, 1)], coupon_id=coupon_id))

    CouponService(db, ActivityRecorder(session_factory)).delete(coupon_id, actor_id="admin-1")

    reloaded = OrderService(db).get(order.id)
    assert reloaded.coupon_id is None
    assert reloaded.discount == Decimal("10.00")
    with pytest.raises(CouponNotFound):
        CouponService(db).get(coupon_id)
    assert coupon_activity(session_factory, coupon_id) == [
        "Deleted Coupon: Code - SAVE10, Type - flat, Amount - 10.00, Scope - Global, Items - All items"
    ]


def test_added_products_join_the_scope_once(db, session_factory, catalog, make_coupon):
    coupon_id = make_coupon(code="SHIRTS", is_global=False, products=[catalog.shirt])
    service = CouponService(db, ActivityRecorder(session_factory))
    coupon = service.add_products(coupon_id, [catalog.shirt, catalog.cap])
    assert sorted(p.id for p in coupon.products) == sorted([catalog.shirt, catalog.cap])

    quote = CouponEvaluator(db).evaluate(coupon_id, priced(db, (catalog.cap, catalog.cap_std, 1)))
    assert quote.discount == Decimal("10.00")
    assert coupon_activity(session_factory, coupon_id) == [f"Products [{catalog.cap}] added to coupon SHIRTS"]


def test_add_unknown_product_is_rejected(db, make_coupon):
    coupon_id = make_coupon(is_global=False)
    with pytest.raises(ValidationFailed) as exc:
        CouponService(db).add_products(coupon_id, [4040])
    assert "product_ids" in exc.value.errors


def test_removed_product_leaves_the_scope(db, session_factory, catalog, make_coupon):
    coupon_id = make_coupon(code="BOTH", is_global=False, products=[catalog.shirt, catalog.cap])
    service = CouponService(db, ActivityRecorder(session_factory))
    coupon = service.remove_product(coupon_id, catalog.cap)
    assert [p.id for p in coupon.products] == [catalog.shirt]

    quote = CouponEvaluator(db).evaluate(coupon_id, priced(db, (catalog.cap, catalog.cap_std, 1)))
    assert quote.discount == Decimal("0.00")
    assert coupon_activity(session_factory, coupon_id) == [f"Product {catalog.cap} removed from coupon BOTH"]
