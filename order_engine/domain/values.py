"""Immutable values passed between the placement steps."""
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Union

CENT = Decimal("0.01")


def money(value) -> Decimal:
    """Round to currency precision."""
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class CartItem:
    product_id: int
    variant_id: int
    quantity: int


@dataclass(frozen=True)
class PricedLine:
    """A cart line priced under the variant row lock."""
    product_id: int
    variant_id: int
    sku: str
    quantity: int
    unit_price: Decimal
    available: int

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.quantity


@dataclass(frozen=True)
class PricedCart:
    lines: tuple

    @property
    def subtotal(self) -> Decimal:
        return money(sum((line.line_total for line in self.lines), Decimal("0")))

    def requested_quantities(self) -> dict:
        """Total requested quantity per variant; repeated variants are summed."""
        totals: dict = {}
        for line in self.lines:
            totals[line.variant_id] = totals.get(line.variant_id, 0) + line.quantity
        return totals


@dataclass(frozen=True)
class GuestShipping:
    name: str
    phone: str
    address: str


@dataclass(frozen=True)
class RegisteredShipping:
    shipping_id: int


ShippingChoice = Union[GuestShipping, RegisteredShipping]


@dataclass(frozen=True)
class NoCoupon:
    pass


@dataclass(frozen=True)
class AppliedCoupon:
    coupon_id: int


CouponChoice = Union[NoCoupon, AppliedCoupon]


@dataclass(frozen=True)
class PlacementCommand:
    items: tuple
    shipping: ShippingChoice
    payment_method: int
    shipping_charge: Decimal = Decimal("0.00")
    coupon: CouponChoice = field(default_factory=NoCoupon)
    customer_id: Optional[int] = None
    declared_subtotal: Optional[Decimal] = None
    trx_ref: Optional[str] = None
    payment_phone: Optional[str] = None


@dataclass(frozen=True)
class DiscountQuote:
    coupon_id: int
    eligible_amount: Decimal
    discount: Decimal
