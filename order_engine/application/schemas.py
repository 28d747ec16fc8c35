from pydantic import BaseModel, ConfigDict, Field, model_validator
from datetime import datetime
from decimal import Decimal
from typing import Optional

from order_engine.domain.models import OrderStatus, PaymentStatus, PaymentMethod, DiscountType, Order
from order_engine.domain.values import (
    CartItem, PlacementCommand, GuestShipping, RegisteredShipping, NoCoupon, AppliedCoupon,
)
from .assembler import attribute_summary

# ---------- requests ----------

class CartLineIn(BaseModel):
    product_id: int
    product_sku_id: int
    quantity: int = Field(gt=0)

    def to_item(self) -> CartItem:
        return CartItem(product_id=self.product_id, variant_id=self.product_sku_id, quantity=self.quantity)

class OrderCreate(BaseModel):
    products: list[CartLineIn] = Field(min_length=1)
    payment_method: PaymentMethod
    shipping_charge: Decimal = Field(default=Decimal("0.00"), ge=0)
    # Advisory only; the server recomputes the item subtotal
    product_subtotal: Optional[Decimal] = None
    coupon_id: Optional[int] = None
    user_id: Optional[int] = None
    shipping_id: Optional[int] = None
    user_name: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    trx_ref: Optional[str] = None
    payment_phone: Optional[str] = None

    @model_validator(mode="after")
    def shipping_or_guest_contact(self):
        if self.shipping_id is None and not (self.user_name and self.phone and self.address):
            raise ValueError("Either shipping_id or user_name, phone and address are required.")
        return self

    def to_command(self) -> PlacementCommand:
        if self.shipping_id is not None:
            shipping = RegisteredShipping(shipping_id=self.shipping_id)
        else:
            shipping = GuestShipping(name=self.user_name, phone=self.phone, address=self.address)
        coupon = AppliedCoupon(coupon_id=self.coupon_id) if self.coupon_id is not None else NoCoupon()
        return PlacementCommand(
            items=tuple(line.to_item() for line in self.products),
            shipping=shipping,
            payment_method=self.payment_method,
            shipping_charge=self.shipping_charge,
            coupon=coupon,
            customer_id=self.user_id,
            declared_subtotal=self.product_subtotal,
            trx_ref=self.trx_ref,
            payment_phone=self.payment_phone,
        )

class AddProductIn(BaseModel):
    product_id: int
    product_sku_id: int
    quantity: int = Field(gt=0)
    price: Optional[Decimal] = Field(default=None, ge=0)

class UpdateQuantityIn(BaseModel):
    quantity: int = Field(gt=0)
    price: Optional[Decimal] = Field(default=None, ge=0)

class StatusUpdate(BaseModel):
    status: OrderStatus

class CustomerInfoUpdate(BaseModel):
    user_name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    phone: Optional[str] = Field(default=None, min_length=1, max_length=20)
    address: Optional[str] = Field(default=None, min_length=1, max_length=255)

class CouponCreate(BaseModel):
    code: str = Field(min_length=1, max_length=64)
    type: DiscountType
    amount: Decimal = Field(ge=0)
    is_global: bool = True
    product_ids: list[int] = []
    min_purchase: Optional[Decimal] = Field(default=None, ge=0)
    max_usage: Optional[int] = Field(default=None, ge=1)
    max_usage_per_user: Optional[int] = Field(default=None, ge=1)
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    is_active: bool = True

class CouponUpdate(BaseModel):
    code: str = Field(min_length=1, max_length=64)
    type: DiscountType
    amount: Decimal = Field(ge=0)
    is_global: bool = True
    min_purchase: Optional[Decimal] = Field(default=None, ge=0)
    max_usage: Optional[int] = Field(default=None, ge=1)
    max_usage_per_user: Optional[int] = Field(default=None, ge=1)
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None

class CouponProductsIn(BaseModel):
    product_ids: list[int] = Field(min_length=1)

class CouponCheck(BaseModel):
    coupon_code: str
    products: list[CartLineIn] = Field(min_length=1)
    user_id: Optional[int] = None

class PaymentStatusUpdate(BaseModel):
    status: PaymentStatus

class PaidAmountUpdate(BaseModel):
    paid_amount: Decimal = Field(ge=0)

# ---------- responses ----------

class OrderLineRead(BaseModel):
    id: int
    product_id: int
    product_sku_id: int
    product_name: Optional[str] = None
    sku: Optional[str] = None
    attributes: Optional[str] = None
    quantity: int
    unit_price: Decimal
    line_total: Decimal

class PaymentRead(BaseModel):
    id: int
    order_id: int
    status: PaymentStatus
    method: PaymentMethod
    amount: Decimal
    paid_amount: Decimal
    due_amount: Decimal
    trx_ref: Optional[str] = None
    phone: Optional[str] = None
    model_config = ConfigDict(from_attributes=True)

class CouponSummary(BaseModel):
    id: int
    code: str
    type: str
    amount: Decimal
    model_config = ConfigDict(from_attributes=True)

class OrderRead(BaseModel):
    id: int
    invoice_code: str
    user_id: Optional[int] = None
    shipping_id: Optional[int] = None
    user_name: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    status: OrderStatus
    status_label: str
    item_subtotal: Decimal
    shipping_charge: Decimal
    discount: Decimal
    total_amount: Decimal
    coupon: Optional[CouponSummary] = None
    order_description: Optional[str] = None
    status_change_desc: Optional[str] = None
    created_at: datetime
    lines: list[OrderLineRead]
    payment: Optional[PaymentRead] = None

    @classmethod
    def from_order(cls, order: Order) -> "OrderRead":
        lines = [
            OrderLineRead(
                id=line.id,
                product_id=line.product_id,
                product_sku_id=line.product_sku_id,
                product_name=line.product.name if line.product else None,
                sku=line.variant.sku if line.variant else None,
                attributes=attribute_summary(line.variant) if line.variant else None,
                quantity=line.quantity,
                unit_price=line.unit_price,
                line_total=line.line_total,
            )
            for line in order.lines
        ]
        status = OrderStatus(order.status)
        return cls(
            id=order.id,
            invoice_code=order.invoice_code,
            user_id=order.user_id,
            shipping_id=order.shipping_id,
            user_name=order.user_name,
            phone=order.phone,
            address=order.address,
            status=status,
            status_label=status.label,
            item_subtotal=order.item_subtotal,
            shipping_charge=order.shipping_charge,
            discount=order.discount,
            total_amount=order.total_amount,
            coupon=CouponSummary.model_validate(order.coupon) if order.coupon else None,
            order_description=order.order_description,
            status_change_desc=order.status_change_desc,
            created_at=order.created_at,
            lines=lines,
            payment=PaymentRead.model_validate(order.payment) if order.payment else None,
        )

class OrderPage(BaseModel):
    items: list[OrderRead]
    total: int
    page: int
    limit: int
    # Counts over every order, keyed processing/completed/on_hold/cancelled/refunded
    status_summary: Optional[dict[str, int]] = None

class CouponRead(BaseModel):
    id: int
    code: str
    type: str
    amount: Decimal
    is_global: bool
    product_ids: list[int] = []
    min_purchase: Optional[Decimal] = None
    max_usage: Optional[int] = None
    max_usage_per_user: Optional[int] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    is_active: bool
    usage_count: Optional[int] = None

    @classmethod
    def from_coupon(cls, coupon, usage_count: Optional[int] = None) -> "CouponRead":
        return cls(
            id=coupon.id,
            code=coupon.code,
            type=coupon.type,
            amount=coupon.amount,
            is_global=coupon.is_global,
            product_ids=[p.id for p in coupon.products],
            min_purchase=coupon.min_purchase,
            max_usage=coupon.max_usage,
            max_usage_per_user=coupon.max_usage_per_user,
            start_date=coupon.start_date,
            end_date=coupon.end_date,
            is_active=coupon.is_active,
            usage_count=usage_count,
        )

class CouponCheckResult(BaseModel):
    valid: bool
    reason: Optional[str] = None
    message: str
    coupon_id: Optional[int] = None
    subtotal: Decimal
    eligible_amount: Decimal
    discount: Decimal
    final_total: Decimal
