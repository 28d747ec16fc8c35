import pytest

from order_engine.application.errors import InsufficientStock, VariantNotFound
from order_engine.application.stock import StockLedger
from order_engine.domain.models import Variant


def quantity(session_factory, variant_id):
    with session_factory() as fresh:
        return fresh.get(Variant, variant_id).quantity


def test_reserve_debits_every_variant(db, session_factory, catalog):
    StockLedger(db).reserve({catalog.shirt_xl: 3, catalog.cap_std: 1})
    db.commit()
    assert quantity(session_factory, catalog.shirt_xl) == 7
    assert quantity(session_factory, catalog.cap_std) == 9


def test_reserve_is_all_or_nothing(db, session_factory, catalog):
    with pytest.raises(InsufficientStock) as exc:
        StockLedger(db).reserve({catalog.shirt_xl: 1, catalog.shirt_m: 3})
    db.rollback()
    assert exc.value.variant_id == catalog.shirt_m
    assert exc.value.errors == {"product_sku_id": catalog.shirt_m, "sku": "OX-M", "available": 2, "requested": 3}
    assert quantity(session_factory, catalog.shirt_xl) == 10
    assert quantity(session_factory, catalog.shirt_m) == 2


def test_reserve_exact_remaining_quantity(db, session_factory, catalog):
    StockLedger(db).reserve({catalog.shirt_m: 2})
    db.commit()
    assert quantity(session_factory, catalog.shirt_m) == 0


def test_reserve_unknown_variant(db, catalog):
    with pytest.raises(VariantNotFound):
        StockLedger(db).reserve({424242: 1})


def test_reserve_sees_quantity_committed_by_other_writer(db, session_factory, catalog):
    ledger = StockLedger(db)
    ledger.reserve({catalog.shirt_m: 1})
    db.commit()
    # Another writer drains the row after our first reservation
    with session_factory() as other:
        other.get(Variant, catalog.shirt_m).quantity = 0
        other.commit()

    with pytest.raises(InsufficientStock):
        ledger.reserve({catalog.shirt_m: 1})
    db.rollback()
    assert quantity(session_factory, catalog.shirt_m) == 0


def test_release_credits_stock(db, session_factory, catalog):
    ledger = StockLedger(db)
    ledger.reserve({catalog.cap_std: 4})
    ledger.release({catalog.cap_std: 3})
    db.commit()
    assert quantity(session_factory, catalog.cap_std) == 9


def test_adjust_moves_stock_in_either_direction(db, session_factory, catalog):
    ledger = StockLedger(db)
    ledger.adjust(catalog.cap_std, 5)
    ledger.adjust(catalog.cap_std, -2)
    ledger.adjust(catalog.cap_std, 0)
    db.commit()
    assert quantity(session_factory, catalog.cap_std) == 7


def test_empty_reservation_is_a_no_op(db, catalog):
    StockLedger(db).reserve({})
    StockLedger(db).release({catalog.cap_std: 0})


def test_guarded_debit_rejects_stale_read(db, session_factory, catalog, monkeypatch):
    ledger = StockLedger(db)
    stale = ledger.catalog.lock_variants([catalog.shirt_m])
    db.commit()
    with session_factory() as other:
        other.get(Variant, catalog.shirt_m).quantity = 1
        other.commit()
    # Serve the pre-drain snapshot so only the conditional UPDATE can catch it
    monkeypatch.setattr(ledger.catalog, "lock_variants", lambda ids, lock=True: stale)

    with pytest.raises(InsufficientStock) as exc:
        ledger.reserve({catalog.shirt_m: 2})
    db.rollback()
    assert exc.value.errors["available"] == 1
    assert quantity(session_factory, catalog.shirt_m) == 1
