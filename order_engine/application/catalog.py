from decimal import Decimal
from typing import Iterable, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from order_engine.domain.models import Variant, VariantAttribute, Product
from order_engine.domain.values import CartItem, PricedLine, PricedCart, money
from .errors import VariantNotFound, VariantProductMismatch


def effective_price(variant: Variant) -> Decimal:
    """Discount price, else the variant's own price, else the product base price."""
    if variant.discount_price is not None:
        return money(variant.discount_price)
    if variant.price is not None:
        return money(variant.price)
    return money(variant.product.base_price)


class CatalogReader:
    """Reads variant prices and stock under the same row lock the stock ledger uses."""

    def __init__(self, db: Session):
        self.db = db

    def lock_variants(self, variant_ids: Iterable[int], lock: bool = True) -> dict:
        ids = sorted(set(variant_ids))
        if not ids:
            return {}
        stmt = select(Variant).where(Variant.id.in_(ids)).order_by(Variant.id)
        if lock:
            # Ascending id order, shared by every caller that locks variants
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        rows = self.db.execute(stmt).scalars().all()
        return {v.id: v for v in rows}

    def snapshot(self, items: Sequence[CartItem], lock: bool = True) -> PricedCart:
        variants = self.lock_variants((item.variant_id for item in items), lock=lock)
        lines = []
        for item in items:
            variant = variants.get(item.variant_id)
            if variant is None:
                raise VariantNotFound(item.variant_id)
            if variant.product_id != item.product_id:
                raise VariantProductMismatch(item.product_id, item.variant_id)
            lines.append(PricedLine(
                product_id=variant.product_id,
                variant_id=variant.id,
                sku=variant.sku,
                quantity=item.quantity,
                unit_price=effective_price(variant),
                available=variant.quantity,
            ))
        return PricedCart(lines=tuple(lines))

    def missing_references(self, items: Sequence[CartItem], field_prefix: Optional[str] = None) -> dict:
        """Field errors for cart lines pointing at unknown products or variants (no locks).

        Keys are ``products.<index>.<field>`` unless ``field_prefix`` is given.
        """
        product_ids = {item.product_id for item in items}
        variant_ids = {item.variant_id for item in items}
        known_products = set(self.db.scalars(select(Product.id).where(Product.id.in_(product_ids))))
        known_variants = set(self.db.scalars(select(Variant.id).where(Variant.id.in_(variant_ids))))
        errors = {}
        for index, item in enumerate(items):
            prefix = f"products.{index}." if field_prefix is None else field_prefix
            if item.product_id not in known_products:
                errors[f"{prefix}product_id"] = "The selected product id is invalid."
            if item.variant_id not in known_variants:
                errors[f"{prefix}product_sku_id"] = "The selected product sku id is invalid."
        return errors

    def variants_for_description(self, variant_ids: Iterable[int]) -> dict:
        """Variants with product, categories and attributes loaded; no lock."""
        ids = sorted(set(variant_ids))
        if not ids:
            return {}
        rows = self.db.execute(
            select(Variant)
            .where(Variant.id.in_(ids))
            .options(
                selectinload(Variant.product).selectinload(Product.category),
                selectinload(Variant.product).selectinload(Product.parent_category),
                selectinload(Variant.attributes).selectinload(VariantAttribute.attribute),
                selectinload(Variant.attributes).selectinload(VariantAttribute.attribute_value),
            )
        ).scalars().all()
        return {v.id: v for v in rows}


def breadcrumb(product: Product) -> list:
    """[parent category, category], skipping whichever is missing."""
    names = [
        product.parent_category.name if product.parent_category else None,
        product.category.name if product.category else None,
    ]
    return [name for name in names if name]
