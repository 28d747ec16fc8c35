from typing import Dict

from sqlalchemy import update
from sqlalchemy.orm import Session

from order_engine.core.logging_config import get_logger
from order_engine.domain.models import Variant
from .catalog import CatalogReader
from .errors import VariantNotFound, InsufficientStock

logger = get_logger(__name__)


class StockLedger:
    """Debits and credits variant quantity.

    Every call locks the whole batch in ascending variant id before reading a
    quantity. Debits are written as ``quantity = quantity - n WHERE quantity >= n``
    so the row can never go negative even if the engine ignores ``FOR UPDATE``.
    """

    def __init__(self, db: Session):
        self.db = db
        self.catalog = CatalogReader(db)

    def reserve(self, quantities: Dict[int, int]) -> None:
        wanted = {vid: qty for vid, qty in quantities.items() if qty > 0}
        if not wanted:
            return
        variants = self.catalog.lock_variants(wanted)

        # Check the whole batch first: nothing is debited unless everything fits
        for vid in sorted(wanted):
            variant = variants.get(vid)
            if variant is None:
                raise VariantNotFound(vid)
            if variant.quantity < wanted[vid]:
                logger.warning(f"Insufficient stock for {variant.sku}: available {variant.quantity}, requested {wanted[vid]}")
                raise InsufficientStock(vid, variant.sku, variant.quantity, wanted[vid])

        for vid in sorted(wanted):
            result = self.db.execute(
                update(Variant)
                .where(Variant.id == vid, Variant.quantity >= wanted[vid])
                .values(quantity=Variant.quantity - wanted[vid])
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                # Another writer got there between our read and the debit
                variant = self.db.get(Variant, vid, populate_existing=True)
                raise InsufficientStock(vid, variant.sku, variant.quantity, wanted[vid])
        self._refresh(variants.values())
        logger.info(f"Reserved stock: {wanted}")

    def release(self, quantities: Dict[int, int]) -> None:
        returned = {vid: qty for vid, qty in quantities.items() if qty > 0}
        if not returned:
            return
        variants = self.catalog.lock_variants(returned)
        for vid in sorted(returned):
            if vid not in variants:
                raise VariantNotFound(vid)
            self.db.execute(
                update(Variant)
                .where(Variant.id == vid)
                .values(quantity=Variant.quantity + returned[vid])
                .execution_options(synchronize_session=False)
            )
        self._refresh(variants.values())
        logger.info(f"Released stock: {returned}")

    def adjust(self, variant_id: int, delta: int) -> None:
        """Positive delta takes more stock, negative gives it back."""
        if delta > 0:
            self.reserve({variant_id: delta})
        elif delta < 0:
            self.release({variant_id: -delta})

    def _refresh(self, variants) -> None:
        for variant in variants:
            self.db.refresh(variant, attribute_names=["quantity"])
