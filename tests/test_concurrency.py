import threading

from sqlalchemy import select, func

from order_engine.application.errors import InsufficientStock, Contention
from order_engine.application.service import OrderService
from order_engine.domain.models import Order, OrderLine, Variant


def test_oversubscribed_variant_never_goes_negative(session_factory, catalog, command):
    """Six shoppers race for the two remaining medium shirts."""
    placed, rejected, unexpected = [], [], []
    lock = threading.Lock()
    start = threading.Barrier(6)

    def shop():
        session = session_factory()
        try:
            start.wait()
            order = OrderService(session).place(command([(catalog.shirt, catalog.shirt_m, 1)]))
            with lock:
                placed.append(order.invoice_code)
        except (InsufficientStock, Contention) as exc:
            with lock:
                rejected.append(exc)
        except Exception as exc:  # surfaced by the assertion below
            with lock:
                unexpected.append(exc)
        finally:
            session.close()

    threads = [threading.Thread(target=shop) for _ in range(6)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert not unexpected
    assert len(placed) <= 2
    assert len(placed) + len(rejected) == 6
    assert len(set(placed)) == len(placed)

    with session_factory() as fresh:
        remaining = fresh.get(Variant, catalog.shirt_m).quantity
        orders = fresh.scalar(select(func.count()).select_from(Order))
        sold = fresh.scalar(
            select(func.coalesce(func.sum(OrderLine.quantity), 0)).where(OrderLine.product_sku_id == catalog.shirt_m)
        )
    assert remaining >= 0
    assert orders == len(placed)
    assert remaining + sold == 2
