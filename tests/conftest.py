import os
import tempfile
from datetime import datetime, timedelta
from decimal import Decimal
from types import SimpleNamespace

import pytest

# Settings are cached on first import; point the module-level engine at a scratch file
os.environ.setdefault("DATABASE_URL", f"sqlite:///{tempfile.mkdtemp()}/order_engine.db")
os.environ.setdefault("JWT_SECRET", "test-secret")

from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from order_engine.domain.models import (
    ParentCategory, Category, Product, Attribute, AttributeValue, Variant, VariantAttribute,
    Coupon, ShippingAddress, PaymentMethod,
)
from order_engine.domain.values import CartItem, PlacementCommand, GuestShipping, NoCoupon, AppliedCoupon
from order_engine.infrastructure.db import build_engine, init_models, get_db


@pytest.fixture
def engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'orders.db'}")
    init_models(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def catalog(db):
    """Men > Shirt (two sizes) and an uncategorised cap priced from its product."""
    men = ParentCategory(name="Men")
    db.add(men)
    db.flush()
    shirt_category = Category(name="Shirt", parent_category_id=men.id)
    db.add(shirt_category)
    db.flush()

    shirt = Product(name="Oxford Shirt", base_price=Decimal("120.00"),
                    parent_category_id=men.id, category_id=shirt_category.id)
    cap = Product(name="Cap", base_price=Decimal("50.00"))
    db.add_all([shirt, cap])
    db.flush()

    size = Attribute(name="Size", code="size")
    color = Attribute(name="Color", code="color")
    db.add_all([size, color])
    db.flush()
    xl = AttributeValue(attribute_id=size.id, value="XL")
    red = AttributeValue(attribute_id=color.id, value="Red")
    medium = AttributeValue(attribute_id=size.id, value="M")
    db.add_all([xl, red, medium])
    db.flush()

    shirt_xl = Variant(product_id=shirt.id, sku="OX-XL-RED", quantity=10, price=Decimal("100.00"))
    # Discount price wins over price; only two left
    shirt_m = Variant(product_id=shirt.id, sku="OX-M", quantity=2, price=Decimal("100.00"),
                      discount_price=Decimal("80.00"))
    cap_std = Variant(product_id=cap.id, sku="CAP-STD", quantity=10)
    db.add_all([shirt_xl, shirt_m, cap_std])
    db.flush()
    db.add_all([
        VariantAttribute(product_sku_id=shirt_xl.id, attribute_id=size.id, attribute_value_id=xl.id),
        VariantAttribute(product_sku_id=shirt_xl.id, attribute_id=color.id, attribute_value_id=red.id),
        VariantAttribute(product_sku_id=shirt_m.id, attribute_id=size.id, attribute_value_id=medium.id),
    ])
    address = ShippingAddress(user_id=7, f_name="Rahim", phone="01700000000", address="House 1, Road 2")
    db.add(address)
    db.commit()
    return SimpleNamespace(
        shirt=shirt.id, cap=cap.id,
        shirt_xl=shirt_xl.id, shirt_m=shirt_m.id, cap_std=cap_std.id,
        shipping_id=address.id,
    )


@pytest.fixture
def make_coupon(db):
    def _make(code="SAVE10", products=(), **fields):
        now = datetime.utcnow()
        values = dict(
            code=code, type="flat", amount=Decimal("10.00"), is_global=True, is_active=True,
            start_date=now - timedelta(days=1), end_date=now + timedelta(days=1),
        )
        values.update(fields)
        coupon = Coupon(**values)
        if products:
            coupon.products = [db.get(Product, pid) for pid in products]
        db.add(coupon)
        db.commit()
        return coupon.id
    return _make


def guest_command(items, coupon_id=None, customer_id=None, shipping_charge="0.00",
                  method=PaymentMethod.CASH_ON_DELIVERY):
    """Placement command for a guest cart; ``items`` are (product, variant, quantity) tuples."""
    return PlacementCommand(
        items=tuple(CartItem(product_id=p, variant_id=v, quantity=q) for p, v, q in items),
        shipping=GuestShipping(name="Karim", phone="01800000000", address="Dhaka"),
        payment_method=method,
        shipping_charge=Decimal(shipping_charge),
        coupon=AppliedCoupon(coupon_id) if coupon_id is not None else NoCoupon(),
        customer_id=customer_id,
    )


@pytest.fixture
def client(session_factory):
    from order_engine.main import app

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def command():
    return guest_command
