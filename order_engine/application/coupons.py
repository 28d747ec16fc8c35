"""Coupon evaluation.

Usage is never stored as a counter; it is the number of orders that reference
the coupon. The coupon row is locked for the rest of the unit of work so two
placements cannot both see ``usage < cap`` and both commit.
"""
from datetime import datetime
from decimal import Decimal
from typing import Optional, Iterable

from sqlalchemy import select, func
from sqlalchemy.orm import Session, selectinload

from order_engine.core.logging_config import get_logger
from order_engine.domain.models import Coupon, Order, DiscountType
from order_engine.domain.values import PricedLine, DiscountQuote, money
from .errors import CouponNotFound, CouponRejected, CouponRejection

logger = get_logger(__name__)

ZERO = Decimal("0.00")


def usage_count(db: Session, coupon_id: int, customer_id: Optional[int] = None) -> int:
    stmt = select(func.count(Order.id)).where(Order.coupon_id == coupon_id)
    if customer_id is not None:
        stmt = stmt.where(Order.user_id == customer_id)
    return db.scalar(stmt) or 0


def eligible_amount(coupon: Coupon, lines: Iterable[PricedLine]) -> Decimal:
    """Whole cart for global coupons, otherwise only lines whose product is in scope."""
    if coupon.is_global:
        in_scope = list(lines)
    else:
        scoped = {p.id for p in coupon.products}
        in_scope = [line for line in lines if line.product_id in scoped]
    return money(sum((line.line_total for line in in_scope), Decimal("0")))


def compute_discount(coupon: Coupon, eligible: Decimal) -> Decimal:
    if eligible <= 0:
        return ZERO
    if coupon.type == DiscountType.PERCENT.value:
        raw = eligible * Decimal(coupon.amount) / Decimal(100)
    else:
        raw = Decimal(coupon.amount)
    return money(max(ZERO, min(raw, eligible)))


class CouponEvaluator:
    def __init__(self, db: Session, now: Optional[datetime] = None):
        self.db = db
        self.now = now

    def _load(self, *, coupon_id: Optional[int] = None, code: Optional[str] = None, lock: bool = True) -> Coupon:
        stmt = select(Coupon).options(selectinload(Coupon.products))
        if coupon_id is not None:
            stmt = stmt.where(Coupon.id == coupon_id)
        else:
            stmt = stmt.where(Coupon.code == code)
        if lock:
            stmt = stmt.with_for_update(of=Coupon).execution_options(populate_existing=True)
        coupon = self.db.execute(stmt).scalars().first()
        if coupon is None:
            raise CouponNotFound(coupon_id if coupon_id is not None else code)
        return coupon

    def _reject(self, coupon: Coupon, reason: CouponRejection, message: str):
        logger.warning(f"Coupon {coupon.code} rejected: {reason.value}")
        raise CouponRejected(reason, message)

    def _check(self, coupon: Coupon, lines: list, customer_id: Optional[int]) -> DiscountQuote:
        now = self.now or datetime.utcnow()
        if not coupon.is_active:
            self._reject(coupon, CouponRejection.INACTIVE, "Coupon is not active.")
        if coupon.start_date and now < coupon.start_date:
            self._reject(coupon, CouponRejection.NOT_YET_VALID, "Coupon is not valid yet.")
        if coupon.end_date and now > coupon.end_date:
            self._reject(coupon, CouponRejection.EXPIRED, "Coupon has expired.")
        if coupon.max_usage is not None and usage_count(self.db, coupon.id) >= coupon.max_usage:
            self._reject(coupon, CouponRejection.USAGE_LIMIT_REACHED, "Coupon usage limit reached.")
        if (
            customer_id is not None
            and coupon.max_usage_per_user is not None
            and usage_count(self.db, coupon.id, customer_id) >= coupon.max_usage_per_user
        ):
            self._reject(coupon, CouponRejection.PER_USER_LIMIT_REACHED, "You have already used this coupon.")

        eligible = eligible_amount(coupon, lines)
        if coupon.min_purchase is not None and eligible < Decimal(coupon.min_purchase):
            self._reject(
                coupon,
                CouponRejection.MINIMUM_PURCHASE_NOT_MET,
                f"Minimum purchase amount of {money(coupon.min_purchase)} required.",
            )
        return DiscountQuote(coupon_id=coupon.id, eligible_amount=eligible, discount=compute_discount(coupon, eligible))

    def evaluate(self, coupon_id: int, lines: list, customer_id: Optional[int] = None) -> DiscountQuote:
        """Locks the coupon and prices it against ``lines``; raises ``CouponRejected`` when inapplicable."""
        coupon = self._load(coupon_id=coupon_id)
        quote = self._check(coupon, lines, customer_id)
        logger.info(f"Coupon {coupon.code} applied: eligible {quote.eligible_amount}, discount {quote.discount}")
        return quote

    def check_code(self, code: str, lines: list, customer_id: Optional[int] = None) -> DiscountQuote:
        """Read-only preview used by the storefront before checkout."""
        coupon = self._load(code=code, lock=False)
        return self._check(coupon, lines, customer_id)
