from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy import (
    String, Integer, ForeignKey, Numeric, DateTime, Boolean, Text, Table, Column,
    UniqueConstraint, CheckConstraint,
)
from datetime import datetime
from decimal import Decimal
from enum import Enum, IntEnum
from typing import Optional

class Base(DeclarativeBase):
    pass

class OrderStatus(IntEnum):
    PROCESSING = 0
    COMPLETED = 1
    ON_HOLD = 2
    CANCELLED = 3
    REFUNDED = 4

    @property
    def label(self) -> str:
        return ORDER_STATUS_LABELS[self]

ORDER_STATUS_LABELS = {
    OrderStatus.PROCESSING: "On Process",
    OrderStatus.COMPLETED: "Complete",
    OrderStatus.ON_HOLD: "On Hold",
    OrderStatus.CANCELLED: "Cancelled",
    OrderStatus.REFUNDED: "Refund",
}

class PaymentStatus(IntEnum):
    UNPAID = 0
    PAID = 1
    PARTIALLY_PAID = 2
    # Paid by the customer at checkout, awaiting reconciliation
    PREPAID = 4

class PaymentMethod(IntEnum):
    CASH_ON_DELIVERY = 1
    MOBILE_WALLET = 2
    CARD = 3

# Every payment method must have an entry
INITIAL_PAYMENT_STATUS = {
    PaymentMethod.CASH_ON_DELIVERY: PaymentStatus.UNPAID,
    PaymentMethod.MOBILE_WALLET: PaymentStatus.PREPAID,
    PaymentMethod.CARD: PaymentStatus.UNPAID,
}

def check_initial_payment_statuses(table=INITIAL_PAYMENT_STATUS) -> None:
    missing = set(PaymentMethod) - set(table)
    if missing:
        raise RuntimeError(f"No initial payment status for: {sorted(m.name for m in missing)}")

check_initial_payment_statuses()

class DiscountType(str, Enum):
    FLAT = "flat"
    PERCENT = "percent"

# ---------- catalog (owned by the catalog collaborator, read here) ----------

class ParentCategory(Base):
    __tablename__ = "parent_categories"
    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(String(255))

class Category(Base):
    __tablename__ = "categories"
    id: Mapped[int] = mapped_column(primary_key=True)
    parent_category_id: Mapped[Optional[int]] = mapped_column(ForeignKey("parent_categories.id"), nullable=True)
    name: Mapped[str] = mapped_column(String(255))

class Product(Base):
    __tablename__ = "products"
    id: Mapped[int] = mapped_column(primary_key=True)
    parent_category_id: Mapped[Optional[int]] = mapped_column(ForeignKey("parent_categories.id"), nullable=True)
    category_id: Mapped[Optional[int]] = mapped_column(ForeignKey("categories.id"), nullable=True)
    name: Mapped[str] = mapped_column(String(255))
    slug: Mapped[Optional[str]] = mapped_column(String(255), unique=True, nullable=True)
    base_price: Mapped[Decimal] = mapped_column(Numeric(10, 2))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    parent_category: Mapped[Optional[ParentCategory]] = relationship()
    category: Mapped[Optional[Category]] = relationship()
    variants: Mapped[list["Variant"]] = relationship(back_populates="product")

class Attribute(Base):
    __tablename__ = "attributes"
    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(String(100))  # "Size", "Color"
    code: Mapped[str] = mapped_column(String(100), unique=True)

class AttributeValue(Base):
    __tablename__ = "attribute_values"
    id: Mapped[int] = mapped_column(primary_key=True)
    attribute_id: Mapped[int] = mapped_column(ForeignKey("attributes.id"))
    value: Mapped[str] = mapped_column(String(100))  # "XL", "Red"

class Variant(Base):
    """A purchasable SKU. `quantity` is only ever changed by the stock ledger."""
    __tablename__ = "product_skus"
    __table_args__ = (CheckConstraint("quantity >= 0", name="product_skus_quantity_non_negative"),)
    id: Mapped[int] = mapped_column(primary_key=True)
    product_id: Mapped[int] = mapped_column(ForeignKey("products.id"), index=True)
    sku: Mapped[str] = mapped_column(String(100), unique=True)
    quantity: Mapped[int] = mapped_column(Integer, default=0)
    # Overrides product.base_price when set
    price: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)
    discount_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)

    product: Mapped[Product] = relationship(back_populates="variants")
    attributes: Mapped[list["VariantAttribute"]] = relationship(order_by="VariantAttribute.attribute_id")

class VariantAttribute(Base):
    __tablename__ = "product_sku_attributes"
    __table_args__ = (UniqueConstraint("product_sku_id", "attribute_id", "attribute_value_id", name="sku_attr_unique"),)
    id: Mapped[int] = mapped_column(primary_key=True)
    product_sku_id: Mapped[int] = mapped_column(ForeignKey("product_skus.id"), index=True)
    attribute_id: Mapped[int] = mapped_column(ForeignKey("attributes.id"))
    attribute_value_id: Mapped[int] = mapped_column(ForeignKey("attribute_values.id"))

    attribute: Mapped[Attribute] = relationship()
    attribute_value: Mapped[AttributeValue] = relationship()

# ---------- coupons ----------

coupon_products = Table(
    "coupon_products",
    Base.metadata,
    Column("coupon_id", ForeignKey("coupons.id", ondelete="CASCADE"), primary_key=True),
    Column("product_id", ForeignKey("products.id", ondelete="CASCADE"), primary_key=True),
)

class Coupon(Base):
    __tablename__ = "coupons"
    id: Mapped[int] = mapped_column(primary_key=True)
    code: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    type: Mapped[str] = mapped_column(String(16))
    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2))
    is_global: Mapped[bool] = mapped_column(Boolean, default=True)
    min_purchase: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)
    max_usage: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    max_usage_per_user: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    start_date: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    end_date: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    products: Mapped[list[Product]] = relationship(secondary=coupon_products)

# ---------- orders ----------

class ShippingAddress(Base):
    __tablename__ = "shipping_addresses"
    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True, index=True)
    f_name: Mapped[str] = mapped_column(String(120))
    l_name: Mapped[Optional[str]] = mapped_column(String(120), nullable=True)
    phone: Mapped[str] = mapped_column(String(20))
    address: Mapped[str] = mapped_column(String(255))
    city: Mapped[Optional[str]] = mapped_column(String(120), nullable=True)
    zip: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)

class Order(Base):
    __tablename__ = "orders"
    id: Mapped[int] = mapped_column(primary_key=True)
    invoice_code: Mapped[str] = mapped_column(String(50), unique=True, index=True)
    # Registered customer; null for guests, whose contact fields are inline
    user_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True, index=True)
    shipping_id: Mapped[Optional[int]] = mapped_column(ForeignKey("shipping_addresses.id"), nullable=True)
    user_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    phone: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    address: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    status: Mapped[int] = mapped_column(Integer, default=OrderStatus.PROCESSING, index=True)
    item_subtotal: Mapped[Decimal] = mapped_column(Numeric(12, 2))
    shipping_charge: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0.00"))
    discount: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0.00"))
    total_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2))
    coupon_id: Mapped[Optional[int]] = mapped_column(ForeignKey("coupons.id", ondelete="SET NULL"), nullable=True, index=True)
    order_description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status_change_desc: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    lines: Mapped[list["OrderLine"]] = relationship(
        back_populates="order", cascade="all, delete-orphan", order_by="OrderLine.id"
    )
    payment: Mapped[Optional["Payment"]] = relationship(
        back_populates="order", cascade="all, delete-orphan", uselist=False
    )
    coupon: Mapped[Optional[Coupon]] = relationship()
    shipping_address: Mapped[Optional[ShippingAddress]] = relationship()

class OrderLine(Base):
    __tablename__ = "order_lines"
    __table_args__ = (UniqueConstraint("order_id", "product_id", "product_sku_id", name="order_line_unique"),)
    id: Mapped[int] = mapped_column(primary_key=True)
    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id", ondelete="CASCADE"), index=True)
    product_id: Mapped[int] = mapped_column(ForeignKey("products.id"))
    product_sku_id: Mapped[int] = mapped_column(ForeignKey("product_skus.id"))
    quantity: Mapped[int] = mapped_column(Integer)
    # Captured at purchase time, never re-read from the catalog
    unit_price: Mapped[Decimal] = mapped_column(Numeric(12, 2))

    order: Mapped[Order] = relationship(back_populates="lines")
    product: Mapped[Product] = relationship()
    variant: Mapped[Variant] = relationship()

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.quantity

class Payment(Base):
    __tablename__ = "payments"
    id: Mapped[int] = mapped_column(primary_key=True)
    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id", ondelete="CASCADE"), unique=True)
    status: Mapped[int] = mapped_column(Integer, default=PaymentStatus.UNPAID)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2))
    paid_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0.00"))
    method: Mapped[int] = mapped_column(Integer)
    trx_ref: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    phone: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    order: Mapped[Order] = relationship(back_populates="payment")

    @property
    def due_amount(self) -> Decimal:
        return self.amount - self.paid_amount

class InvoiceSequence(Base):
    """Counter row; locked and incremented inside the placing transaction."""
    __tablename__ = "invoice_sequences"
    name: Mapped[str] = mapped_column(String(32), primary_key=True)
    prefix: Mapped[str] = mapped_column(String(8))
    next_value: Mapped[int] = mapped_column(Integer)

class Activity(Base):
    __tablename__ = "activities"
    id: Mapped[int] = mapped_column(primary_key=True)
    relatable_id: Mapped[int] = mapped_column(Integer, index=True)
    type: Mapped[str] = mapped_column(String(32))
    user_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    description: Mapped[str] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
