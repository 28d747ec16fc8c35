from datetime import datetime, date, time
from decimal import Decimal
from typing import Optional, Tuple

from sqlalchemy import select, update, func, or_
from sqlalchemy.orm import Session, selectinload

from order_engine.core.logging_config import get_logger
from order_engine.core_settings import Settings, get_settings
from order_engine.domain.models import (
    Order, OrderLine, OrderStatus, Payment, PaymentStatus, Coupon, ShippingAddress,
    Variant, VariantAttribute, Product, DiscountType,
)
from order_engine.domain.values import (
    CartItem, PlacementCommand, RegisteredShipping, GuestShipping, AppliedCoupon, money,
)
from .assembler import OrderAssembler
from .catalog import CatalogReader
from .collaborators import ActivityRecorder
from .coupons import CouponEvaluator, usage_count
from .errors import (
    ValidationFailed, OrderNotFound, OrderLineNotFound, PaymentNotFound, BusinessRuleViolation,
    CouponNotFound, CouponRejected,
)
from .invoices import InvoiceSequencer
from .stock import StockLedger
from .unit_of_work import UnitOfWork

logger = get_logger(__name__)

ORDER_ACTIVITY = "Order"
COUPON_ACTIVITY = "Coupon"
PAYMENT_ACTIVITY = "payment"
TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"


def _order_query():
    return select(Order).options(
        selectinload(Order.lines).selectinload(OrderLine.product),
        selectinload(Order.lines).selectinload(OrderLine.variant)
        .selectinload(Variant.attributes).selectinload(VariantAttribute.attribute),
        selectinload(Order.lines).selectinload(OrderLine.variant)
        .selectinload(Variant.attributes).selectinload(VariantAttribute.attribute_value),
        selectinload(Order.payment),
        selectinload(Order.coupon),
        selectinload(Order.shipping_address),
    )


class OrderService:
    """Places orders and applies every later change to them.

    Each write runs inside one ``UnitOfWork``. Locks are always taken in the
    same order: order row, variants by ascending id, coupon row, invoice
    counter.
    """

    def __init__(
        self,
        db: Session,
        activity: Optional[ActivityRecorder] = None,
        settings: Optional[Settings] = None,
        now: Optional[datetime] = None,
    ):
        self.db = db
        self.activity = activity
        self.settings = settings or get_settings()
        self.now = now
        self.catalog = CatalogReader(db)
        self.stock = StockLedger(db)
        self.assembler = OrderAssembler(db)

    def _unit_of_work(self) -> UnitOfWork:
        return UnitOfWork(self.db, self.settings.LOCK_TIMEOUT_MS)

    def _record(self, subject_type: str, subject_id: int, actor_id: Optional[str], description: str) -> None:
        if self.activity is not None:
            self.activity.record(subject_type, subject_id, actor_id, description)

    def _lock_order(self, order_id: int) -> Order:
        order = self.db.execute(
            select(Order).where(Order.id == order_id)
            .with_for_update(of=Order)
            .execution_options(populate_existing=True)
        ).scalars().first()
        if order is None:
            raise OrderNotFound(order_id)
        return order

    # ---------- placement ----------

    def _validate_placement(self, command: PlacementCommand) -> None:
        errors = {}
        if not command.items:
            errors["products"] = "At least one product is required."
        if isinstance(command.shipping, RegisteredShipping):
            if self.db.get(ShippingAddress, command.shipping.shipping_id) is None:
                errors["shipping_id"] = "The selected shipping id is invalid."
        elif isinstance(command.shipping, GuestShipping):
            for field, key in (("name", "user_name"), ("phone", "phone"), ("address", "address")):
                if not getattr(command.shipping, field):
                    errors[key] = f"The {key} field is required for guest orders."
        if isinstance(command.coupon, AppliedCoupon):
            if self.db.get(Coupon, command.coupon.coupon_id) is None:
                errors["coupon_id"] = "The selected coupon id is invalid."
        errors.update(self.catalog.missing_references(command.items))
        if errors:
            raise ValidationFailed(errors)

    def place(self, command: PlacementCommand, actor_id: Optional[str] = None) -> Order:
        self._validate_placement(command)

        with self._unit_of_work():
            cart = self.catalog.snapshot(command.items)
            if command.declared_subtotal is not None and money(command.declared_subtotal) != cart.subtotal:
                logger.warning(
                    f"Declared subtotal {money(command.declared_subtotal)} differs from computed {cart.subtotal}; using computed"
                )
            quote = None
            if isinstance(command.coupon, AppliedCoupon):
                quote = CouponEvaluator(self.db, now=self.now).evaluate(
                    command.coupon.coupon_id, list(cart.lines), command.customer_id
                )
            self.stock.reserve(cart.requested_quantities())
            invoice_code = InvoiceSequencer(
                self.db, self.settings.INVOICE_PREFIX, self.settings.INVOICE_START
            ).next()
            order = self.assembler.assemble(command, cart, quote, invoice_code)
            order_id = order.id

        logger.info(f"Order {invoice_code} placed: total {order.total_amount}")
        self._record(ORDER_ACTIVITY, order_id, actor_id, f"Order placed successfully. Invoice Code: {invoice_code}")
        return self.get(order_id)

    # ---------- line item mutations ----------

    def add_product(
        self,
        order_id: int,
        product_id: int,
        variant_id: int,
        quantity: int,
        price: Optional[Decimal] = None,
        actor_id: Optional[str] = None,
    ) -> Order:
        item = CartItem(product_id=product_id, variant_id=variant_id, quantity=quantity)
        errors = self.catalog.missing_references([item], field_prefix="")
        if errors:
            raise ValidationFailed(errors)

        with self._unit_of_work():
            order = self._lock_order(order_id)
            priced = self.catalog.snapshot([item]).lines[0]
            self.stock.reserve({variant_id: quantity})

            line = next(
                (existing for existing in order.lines
                 if existing.product_id == product_id and existing.product_sku_id == variant_id), None
            )
            if line is not None:
                unit_price = money(price) if price is not None else money(line.unit_price)
                delta = unit_price * (line.quantity + quantity) - money(line.unit_price) * line.quantity
                self.assembler.apply_delta(order, delta)
                line.quantity += quantity
                line.unit_price = unit_price
            else:
                unit_price = money(price) if price is not None else priced.unit_price
                self.assembler.apply_delta(order, unit_price * quantity)
                order.lines.append(OrderLine(
                    product_id=product_id, product_sku_id=variant_id, quantity=quantity, unit_price=unit_price,
                ))
            self.db.flush()
            self.assembler.refresh_description(order)
            invoice_code = order.invoice_code

        self._record(
            ORDER_ACTIVITY, order_id, actor_id,
            f"Product {product_id} (SKU {priced.sku}) x {quantity} added to order {invoice_code}",
        )
        return self.get(order_id)

    def _find_line(self, order: Order, line_id: int) -> OrderLine:
        line = next((candidate for candidate in order.lines if candidate.id == line_id), None)
        if line is None:
            raise OrderLineNotFound(order.id, line_id)
        return line

    def remove_line(self, order_id: int, line_id: int, actor_id: Optional[str] = None) -> Order:
        with self._unit_of_work():
            order = self._lock_order(order_id)
            line = self._find_line(order, line_id)
            description = f"Line {line_id} (product {line.product_id}) removed from order {order.invoice_code}"
            self.stock.release({line.product_sku_id: line.quantity})
            self.assembler.apply_delta(order, -(money(line.unit_price) * line.quantity))
            order.lines.remove(line)
            self.db.flush()
            self.assembler.refresh_description(order)

        self._record(ORDER_ACTIVITY, order_id, actor_id, description)
        return self.get(order_id)

    def update_line_quantity(
        self,
        order_id: int,
        line_id: int,
        quantity: int,
        price: Optional[Decimal] = None,
        actor_id: Optional[str] = None,
    ) -> Order:
        with self._unit_of_work():
            order = self._lock_order(order_id)
            line = self._find_line(order, line_id)
            old_quantity = line.quantity
            old_price = money(line.unit_price)
            new_price = money(price) if price is not None else old_price

            self.stock.adjust(line.product_sku_id, quantity - old_quantity)
            self.assembler.apply_delta(order, new_price * quantity - old_price * old_quantity)
            line.quantity = quantity
            line.unit_price = new_price
            self.db.flush()
            self.assembler.refresh_description(order)
            description = (
                f"Line {line_id} of order {order.invoice_code}: quantity {old_quantity} -> {quantity}, "
                f"unit price {old_price} -> {new_price}"
            )

        self._record(ORDER_ACTIVITY, order_id, actor_id, description)
        return self.get(order_id)

    # ---------- header changes ----------

    def update_status(self, order_id: int, status: OrderStatus, actor_id: Optional[str] = None) -> Order:
        status = OrderStatus(status)
        with self._unit_of_work():
            order = self._lock_order(order_id)
            current = OrderStatus(order.status)
            if (
                self.settings.STRICT_STATUS_TRANSITIONS
                and current in (OrderStatus.CANCELLED, OrderStatus.REFUNDED)
                and status != current
            ):
                raise BusinessRuleViolation(
                    f"Order is {current.label} and its status can no longer change.",
                    {"status": int(current)},
                )
            stamp = (self.now or datetime.utcnow()).strftime(TIMESTAMP_FORMAT)
            narrative = (
                f"Order Id {order.invoice_code} Status changed from {current.label} to {status.label} at {stamp}"
            )
            order.status = status
            order.status_change_desc = (
                f"{order.status_change_desc}\n{narrative}" if order.status_change_desc else narrative
            )

        logger.info(narrative)
        self._record(ORDER_ACTIVITY, order_id, actor_id, narrative)
        return self.get(order_id)

    def update_customer_info(
        self,
        order_id: int,
        name: Optional[str] = None,
        phone: Optional[str] = None,
        address: Optional[str] = None,
        actor_id: Optional[str] = None,
    ) -> Order:
        """Guest orders only. Fields left as None keep their stored value."""
        with self._unit_of_work():
            order = self._lock_order(order_id)
            if order.user_id is not None or order.shipping_id is not None:
                raise BusinessRuleViolation("Customer details can only be edited on guest orders.")
            if name is not None:
                order.user_name = name
            if phone is not None:
                order.phone = phone
            if address is not None:
                order.address = address
            invoice_code = order.invoice_code

        self._record(ORDER_ACTIVITY, order_id, actor_id, f"Customer info updated for order {invoice_code}")
        return self.get(order_id)

    def delete(self, order_id: int, actor_id: Optional[str] = None) -> None:
        with self._unit_of_work():
            order = self._lock_order(order_id)
            payment = order.payment
            if self.settings.STRICT_ORDER_DELETION and payment is not None and (
                payment.status == PaymentStatus.PAID or payment.paid_amount > 0
            ):
                raise BusinessRuleViolation("Orders with a settled payment cannot be deleted.")
            invoice_code = order.invoice_code
            self.db.delete(order)

        logger.info(f"Order {invoice_code} deleted")
        self._record(ORDER_ACTIVITY, order_id, actor_id, f"Order {invoice_code} deleted")

    # ---------- queries ----------

    def get(self, order_id: int) -> Order:
        order = self.db.execute(
            _order_query().where(Order.id == order_id).execution_options(populate_existing=True)
        ).scalars().first()
        if order is None:
            raise OrderNotFound(order_id)
        return order

    def get_by_invoice(self, invoice_code: str, customer_id: int) -> Order:
        """A customer's own order; other customers' invoices read as not found."""
        stmt = _order_query().where(Order.invoice_code == invoice_code, Order.user_id == customer_id)
        order = self.db.execute(stmt).scalars().first()
        if order is None:
            raise OrderNotFound(invoice_code)
        return order

    def list(
        self,
        search: Optional[str] = None,
        status: Optional[int] = None,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
        page: int = 1,
        limit: int = 20,
        customer_id: Optional[int] = None,
    ) -> Tuple[list, int]:
        """Newest first. Returns (page of orders, total matching)."""
        conditions = []
        if customer_id is not None:
            conditions.append(Order.user_id == customer_id)
        if search:
            like = f"%{search}%"
            conditions.append(or_(Order.invoice_code.ilike(like), Order.user_name.ilike(like), Order.phone.ilike(like)))
        if status is not None:
            conditions.append(Order.status == status)
        if date_from:
            conditions.append(Order.created_at >= datetime.combine(date_from, time.min))
        if date_to:
            conditions.append(Order.created_at <= datetime.combine(date_to, time.max))

        total = self.db.scalar(select(func.count(Order.id)).where(*conditions)) or 0
        orders = self.db.execute(
            _order_query().where(*conditions)
            .order_by(Order.created_at.desc(), Order.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        ).scalars().all()
        return list(orders), total

    def status_summary(self) -> dict:
        """Order count per status across all orders, every status present."""
        counts = dict(self.db.execute(select(Order.status, func.count(Order.id)).group_by(Order.status)).all())
        return {status.name.lower(): counts.get(int(status), 0) for status in OrderStatus}


class CouponService:
    def __init__(self, db: Session, activity: Optional[ActivityRecorder] = None, now: Optional[datetime] = None):
        self.db = db
        self.activity = activity
        self.now = now

    def _record(self, coupon_id: int, actor_id: Optional[str], description: str) -> None:
        if self.activity is not None:
            self.activity.record(COUPON_ACTIVITY, coupon_id, actor_id, description)

    def _code_taken(self, code: str, exclude_id: Optional[int] = None) -> bool:
        stmt = select(Coupon.id).where(Coupon.code == code)
        if exclude_id is not None:
            stmt = stmt.where(Coupon.id != exclude_id)
        return self.db.scalar(stmt) is not None

    def _terms_errors(self, data, exclude_id: Optional[int] = None) -> dict:
        errors = {}
        if data.type == DiscountType.PERCENT and data.amount > 100:
            errors["amount"] = "Percentage discount cannot exceed 100."
        if data.start_date and data.end_date and data.end_date < data.start_date:
            errors["end_date"] = "The end date must be a date after or equal to start date."
        if self._code_taken(data.code, exclude_id):
            errors["code"] = "The code has already been taken."
        return errors

    def _load_products(self, product_ids, errors: dict, field: str = "product_ids") -> list:
        products = list(self.db.scalars(select(Product).where(Product.id.in_(product_ids))))
        missing = set(product_ids) - {p.id for p in products}
        if missing:
            errors[field] = f"Unknown products: {sorted(missing)}"
        return products

    def _lock(self, coupon_id: int) -> Coupon:
        coupon = self.db.execute(
            select(Coupon).options(selectinload(Coupon.products)).where(Coupon.id == coupon_id)
            .with_for_update(of=Coupon)
            .execution_options(populate_existing=True)
        ).scalars().first()
        if coupon is None:
            raise CouponNotFound(coupon_id)
        return coupon

    def create(self, data, actor_id: Optional[str] = None) -> Coupon:
        errors = self._terms_errors(data)
        products = []
        if not data.is_global:
            if not data.product_ids:
                errors["product_ids"] = "Scoped coupons need at least one product."
            else:
                products = self._load_products(data.product_ids, errors)
        if errors:
            raise ValidationFailed(errors)

        with UnitOfWork(self.db):
            coupon = Coupon(
                code=data.code,
                type=DiscountType(data.type).value,
                amount=money(data.amount),
                is_global=data.is_global,
                min_purchase=money(data.min_purchase) if data.min_purchase is not None else None,
                max_usage=data.max_usage,
                max_usage_per_user=data.max_usage_per_user,
                start_date=data.start_date,
                end_date=data.end_date,
                is_active=data.is_active,
                products=products,
            )
            self.db.add(coupon)
            self.db.flush()
            coupon_id = coupon.id

        self._record(coupon_id, actor_id, f"Coupon {data.code} created")
        return self.get(coupon_id)

    def update(self, coupon_id: int, data, actor_id: Optional[str] = None) -> Coupon:
        """Replace the coupon's terms. The scoped product set is edited separately."""
        self.get(coupon_id)
        errors = self._terms_errors(data, exclude_id=coupon_id)
        if errors:
            raise ValidationFailed(errors)

        with UnitOfWork(self.db):
            coupon = self._lock(coupon_id)
            coupon.code = data.code
            coupon.type = DiscountType(data.type).value
            coupon.amount = money(data.amount)
            coupon.is_global = data.is_global
            coupon.min_purchase = money(data.min_purchase) if data.min_purchase is not None else None
            coupon.max_usage = data.max_usage
            coupon.max_usage_per_user = data.max_usage_per_user
            coupon.start_date = data.start_date
            coupon.end_date = data.end_date
            description = (
                f"Updated Coupon: Code - {coupon.code}, Type - {coupon.type}, Amount - {coupon.amount}, "
                f"Scope - {'Global' if coupon.is_global else 'Specific Items'}"
            )

        self._record(coupon_id, actor_id, description)
        return self.get(coupon_id)

    def delete(self, coupon_id: int, actor_id: Optional[str] = None) -> None:
        """Removes the coupon and its product scope. Orders keep their frozen discount."""
        with UnitOfWork(self.db):
            coupon = self._lock(coupon_id)
            items = "All items" if coupon.is_global else ", ".join(str(p.id) for p in coupon.products)
            description = (
                f"Deleted Coupon: Code - {coupon.code}, Type - {coupon.type}, Amount - {coupon.amount}, "
                f"Scope - {'Global' if coupon.is_global else 'Specific Items'}, Items - {items}"
            )
            self.db.execute(update(Order).where(Order.coupon_id == coupon_id).values(coupon_id=None))
            self.db.delete(coupon)

        logger.info(description)
        self._record(coupon_id, actor_id, description)

    def add_products(self, coupon_id: int, product_ids: list, actor_id: Optional[str] = None) -> Coupon:
        """Extend the scoped product set; products already in scope are skipped."""
        errors = {}
        if not product_ids:
            errors["product_ids"] = "At least one product is required."
        products = self._load_products(product_ids, errors) if product_ids else []
        if errors:
            raise ValidationFailed(errors)

        with UnitOfWork(self.db):
            coupon = self._lock(coupon_id)
            scoped = {p.id for p in coupon.products}
            added = [p for p in products if p.id not in scoped]
            coupon.products.extend(added)
            code = coupon.code

        self._record(coupon_id, actor_id, f"Products {sorted(p.id for p in added)} added to coupon {code}")
        return self.get(coupon_id)

    def remove_product(self, coupon_id: int, product_id: int, actor_id: Optional[str] = None) -> Coupon:
        errors = {}
        self._load_products([product_id], errors, field="product_id")
        if errors:
            raise ValidationFailed(errors)

        with UnitOfWork(self.db):
            coupon = self._lock(coupon_id)
            coupon.products = [p for p in coupon.products if p.id != product_id]
            code = coupon.code

        self._record(coupon_id, actor_id, f"Product {product_id} removed from coupon {code}")
        return self.get(coupon_id)

    def get(self, coupon_id: int) -> Coupon:
        coupon = self.db.execute(
            select(Coupon).options(selectinload(Coupon.products)).where(Coupon.id == coupon_id)
            .execution_options(populate_existing=True)
        ).scalars().first()
        if coupon is None:
            raise CouponNotFound(coupon_id)
        return coupon

    def list(self) -> list:
        """(coupon, usage count) pairs, newest first."""
        coupons = self.db.execute(
            select(Coupon).options(selectinload(Coupon.products)).order_by(Coupon.id.desc())
        ).scalars().all()
        return [(coupon, usage_count(self.db, coupon.id)) for coupon in coupons]

    def toggle(self, coupon_id: int, actor_id: Optional[str] = None) -> Coupon:
        with UnitOfWork(self.db):
            coupon = self._lock(coupon_id)
            coupon.is_active = not coupon.is_active
            state = "activated" if coupon.is_active else "deactivated"
            code = coupon.code

        self._record(coupon_id, actor_id, f"Coupon {code} {state}")
        return self.get(coupon_id)

    def check(self, code: str, items: list, customer_id: Optional[int] = None) -> dict:
        """Preview a coupon against a cart. Never raises for an inapplicable coupon."""
        cart = CatalogReader(self.db).snapshot(items, lock=False)
        subtotal = cart.subtotal
        try:
            quote = CouponEvaluator(self.db, now=self.now).check_code(code, list(cart.lines), customer_id)
        except CouponRejected as rejection:
            return {
                "valid": False,
                "reason": rejection.reason.value,
                "message": rejection.message,
                "coupon_id": None,
                "subtotal": subtotal,
                "eligible_amount": Decimal("0.00"),
                "discount": Decimal("0.00"),
                "final_total": subtotal,
            }
        finally:
            # Nothing was written; end the read transaction
            self.db.rollback()
        return {
            "valid": True,
            "reason": None,
            "message": "Coupon is valid!",
            "coupon_id": quote.coupon_id,
            "subtotal": subtotal,
            "eligible_amount": quote.eligible_amount,
            "discount": quote.discount,
            "final_total": money(subtotal - quote.discount),
        }


class PaymentService:
    def __init__(self, db: Session, activity: Optional[ActivityRecorder] = None):
        self.db = db
        self.activity = activity

    def _lock(self, payment_id: int) -> Payment:
        payment = self.db.execute(
            select(Payment).where(Payment.id == payment_id).with_for_update()
            .execution_options(populate_existing=True)
        ).scalars().first()
        if payment is None:
            raise PaymentNotFound(payment_id)
        return payment

    def _record(self, payment_id: int, actor_id: Optional[str], description: str) -> None:
        if self.activity is not None:
            self.activity.record(PAYMENT_ACTIVITY, payment_id, actor_id, description)

    def update_status(self, payment_id: int, status: PaymentStatus, actor_id: Optional[str] = None) -> Payment:
        status = PaymentStatus(status)
        with UnitOfWork(self.db):
            payment = self._lock(payment_id)
            old = PaymentStatus(payment.status)
            payment.status = status

        self._record(
            payment_id, actor_id,
            f"Updated Payment ID: {payment_id}, Status: {old.name} -> {status.name}, "
            f"at {datetime.utcnow().strftime(TIMESTAMP_FORMAT)}",
        )
        return payment

    def update_paid_amount(self, payment_id: int, paid_amount: Decimal, actor_id: Optional[str] = None) -> Payment:
        paid_amount = money(paid_amount)
        if paid_amount < 0:
            raise ValidationFailed({"paid_amount": "The paid amount must be at least 0."})
        with UnitOfWork(self.db):
            payment = self._lock(payment_id)
            if paid_amount > payment.amount:
                raise BusinessRuleViolation(
                    "paid_amount cannot be greater than the total amount.",
                    {"paid_amount": str(paid_amount), "amount": str(money(payment.amount))},
                )
            old = money(payment.paid_amount)
            payment.paid_amount = paid_amount
            total = money(payment.amount)

        self._record(
            payment_id, actor_id,
            f"Updated paid_amount for Payment ID: {payment_id}, Amount: {old} -> {paid_amount}, "
            f"Total Payment Amount: {total}",
        )
        return payment
