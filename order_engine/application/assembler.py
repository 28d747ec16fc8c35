"""Builds and re-totals the order aggregate.

Monetary fields are only written here. ``total_amount`` is always
``item_subtotal + shipping_charge - discount`` and the payment amount always
mirrors it.
"""
from decimal import Decimal
from typing import Iterable, Optional, Sequence

from sqlalchemy.orm import Session

from order_engine.domain.models import (
    Order, OrderLine, Payment, OrderStatus, PaymentMethod, INITIAL_PAYMENT_STATUS, Variant,
)
from order_engine.domain.values import (
    PricedCart, PlacementCommand, GuestShipping, RegisteredShipping, DiscountQuote, money,
)
from .catalog import CatalogReader, breadcrumb
from .errors import BusinessRuleViolation

DESCRIPTION_SEPARATOR = "; "


def attribute_summary(variant: Variant) -> str:
    parts = []
    for link in variant.attributes:
        name = link.attribute.name if link.attribute else None
        value = link.attribute_value.value if link.attribute_value else None
        if name and value:
            parts.append(f"{name}: {value}")
    return ", ".join(parts)


def describe_line(variant: Variant, quantity: int) -> str:
    """e.g. ``Men > Shirt | Oxford Shirt [SKU: OX-XL-RED] (Size: XL, Color: Red) x 2``"""
    product = variant.product
    path = " > ".join(breadcrumb(product))
    prefix = f"{path} | " if path else ""
    sku = f" [SKU: {variant.sku}]" if variant.sku else ""
    attrs = attribute_summary(variant)
    attrs = f" ({attrs})" if attrs else ""
    return f"{prefix}{product.name}{sku}{attrs} x {quantity}"


def build_description(db: Session, pairs: Sequence) -> str:
    """``pairs`` is a sequence of (variant_id, quantity) in display order."""
    variants = CatalogReader(db).variants_for_description(vid for vid, _ in pairs)
    parts = []
    for vid, quantity in pairs:
        variant = variants.get(vid)
        if variant is None or variant.product is None:
            continue
        parts.append(describe_line(variant, quantity))
    return DESCRIPTION_SEPARATOR.join(parts)


def line_pairs(lines: Iterable[OrderLine]) -> list:
    return [(line.product_sku_id, line.quantity) for line in lines]


def order_total(subtotal: Decimal, shipping_charge: Decimal, discount: Decimal) -> Decimal:
    return money(Decimal(subtotal) + Decimal(shipping_charge) - Decimal(discount))


class OrderAssembler:
    def __init__(self, db: Session):
        self.db = db

    def assemble(
        self,
        command: PlacementCommand,
        cart: PricedCart,
        quote: Optional[DiscountQuote],
        invoice_code: str,
    ) -> Order:
        subtotal = cart.subtotal
        shipping_charge = money(command.shipping_charge)
        discount = quote.discount if quote else Decimal("0.00")
        total = order_total(subtotal, shipping_charge, discount)
        if total < 0:
            raise BusinessRuleViolation("Order total cannot be negative.", {"total_amount": str(total)})

        order = Order(
            invoice_code=invoice_code,
            user_id=command.customer_id,
            status=OrderStatus.PROCESSING,
            item_subtotal=subtotal,
            shipping_charge=shipping_charge,
            discount=discount,
            total_amount=total,
            coupon_id=quote.coupon_id if quote else None,
        )
        if isinstance(command.shipping, RegisteredShipping):
            order.shipping_id = command.shipping.shipping_id
        elif isinstance(command.shipping, GuestShipping):
            order.user_name = command.shipping.name
            order.phone = command.shipping.phone
            order.address = command.shipping.address

        # Repeated variants in one cart become one line
        merged = {}
        for line in cart.lines:
            if line.variant_id in merged:
                existing = merged[line.variant_id]
                existing.quantity += line.quantity
            else:
                merged[line.variant_id] = OrderLine(
                    product_id=line.product_id,
                    product_sku_id=line.variant_id,
                    quantity=line.quantity,
                    unit_price=line.unit_price,
                )
        order.lines = list(merged.values())

        method = PaymentMethod(command.payment_method)
        order.payment = Payment(
            status=INITIAL_PAYMENT_STATUS[method],
            amount=total,
            paid_amount=Decimal("0.00"),
            method=method,
            trx_ref=command.trx_ref,
            phone=command.payment_phone or self._contact_phone(command),
        )
        self.db.add(order)
        self.db.flush()
        order.order_description = build_description(self.db, line_pairs(order.lines))
        return order

    def _contact_phone(self, command: PlacementCommand) -> Optional[str]:
        if isinstance(command.shipping, GuestShipping):
            return command.shipping.phone
        return None

    def apply_delta(self, order: Order, delta: Decimal) -> None:
        """Shift subtotal, total and payment amount by the same signed amount."""
        delta = money(delta)
        new_subtotal = money(order.item_subtotal + delta)
        new_total = order_total(new_subtotal, order.shipping_charge, order.discount)
        if new_total < 0:
            raise BusinessRuleViolation(
                "Order total cannot drop below zero after the applied discount.",
                {"total_amount": str(new_total)},
            )
        payment = order.payment
        if payment is not None and new_total < payment.paid_amount:
            raise BusinessRuleViolation(
                "Order total cannot drop below the amount already paid.",
                {"total_amount": str(new_total), "paid_amount": str(money(payment.paid_amount))},
            )
        order.item_subtotal = new_subtotal
        order.total_amount = new_total
        if payment is not None:
            payment.amount = new_total

    def refresh_description(self, order: Order) -> None:
        order.order_description = build_description(self.db, line_pairs(order.lines))
