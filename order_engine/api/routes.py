from datetime import date
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Query
from sqlalchemy.orm import Session, sessionmaker

from order_engine.api.identity import current_actor_id, current_customer_id
from order_engine.application.collaborators import ActivityRecorder, Notifier
from order_engine.application.schemas import (
    OrderCreate, OrderRead, OrderPage, AddProductIn, UpdateQuantityIn, StatusUpdate, CustomerInfoUpdate,
    CouponCreate, CouponUpdate, CouponProductsIn, CouponRead, CouponCheck, CouponCheckResult, PaymentStatusUpdate, PaidAmountUpdate,
    PaymentRead,
)
from order_engine.application.service import OrderService, CouponService, PaymentService
from order_engine.core_settings import get_settings
from order_engine.infrastructure.db import get_db

def get_activity_recorder(db: Session = Depends(get_db)) -> ActivityRecorder:
    # Own session on the same engine; audit writes stay outside the order transaction
    return ActivityRecorder(sessionmaker(bind=db.get_bind(), expire_on_commit=False))

def get_notifier() -> Notifier:
    return Notifier(get_settings().NOTIFY_WEBHOOK_URL)

def get_order_service(
    db: Session = Depends(get_db), activity: ActivityRecorder = Depends(get_activity_recorder)
) -> OrderService:
    return OrderService(db, activity=activity)

# ---------- orders ----------

router = APIRouter(prefix="/orders", tags=["orders"])

@router.post("/", response_model=OrderRead, status_code=201)
def place_order(
    payload: OrderCreate,
    background_tasks: BackgroundTasks,
    service: OrderService = Depends(get_order_service),
    notifier: Notifier = Depends(get_notifier),
    actor_id: Optional[str] = Depends(current_actor_id),
):
    order = service.place(payload.to_command(), actor_id=actor_id)
    background_tasks.add_task(notifier.order_placed, order.id)
    return OrderRead.from_order(order)

@router.get("/", response_model=OrderPage)
def list_orders(
    search: Optional[str] = None,
    status: Optional[int] = Query(default=None, ge=0, le=4),
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    service: OrderService = Depends(get_order_service),
):
    """Newest first, filtered by invoice code, name or phone."""
    orders, total = service.list(search=search, status=status, date_from=date_from, date_to=date_to, page=page, limit=limit)
    return OrderPage(
        items=[OrderRead.from_order(o) for o in orders], total=total, page=page, limit=limit,
        status_summary=service.status_summary(),
    )

@router.get("/mine", response_model=OrderPage)
def list_my_orders(
    search: Optional[str] = None,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    customer_id: int = Depends(current_customer_id),
    service: OrderService = Depends(get_order_service),
):
    """The calling customer's orders, newest first, searchable by invoice code."""
    orders, total = service.list(search=search, page=page, limit=limit, customer_id=customer_id)
    return OrderPage(items=[OrderRead.from_order(o) for o in orders], total=total, page=page, limit=limit)

@router.get("/by-invoice/{invoice_code}", response_model=OrderRead)
def get_order_by_invoice(
    invoice_code: str,
    customer_id: int = Depends(current_customer_id),
    service: OrderService = Depends(get_order_service),
):
    """The calling customer's own order."""
    return OrderRead.from_order(service.get_by_invoice(invoice_code, customer_id=customer_id))

@router.get("/{order_id}", response_model=OrderRead)
def get_order(order_id: int, service: OrderService = Depends(get_order_service)):
    return OrderRead.from_order(service.get(order_id))

@router.put("/{order_id}/status", response_model=OrderRead)
def update_order_status(
    order_id: int,
    payload: StatusUpdate,
    service: OrderService = Depends(get_order_service),
    actor_id: Optional[str] = Depends(current_actor_id),
):
    return OrderRead.from_order(service.update_status(order_id, payload.status, actor_id=actor_id))

@router.post("/{order_id}/lines", response_model=OrderRead)
def add_product_to_order(
    order_id: int,
    payload: AddProductIn,
    service: OrderService = Depends(get_order_service),
    actor_id: Optional[str] = Depends(current_actor_id),
):
    order = service.add_product(
        order_id, payload.product_id, payload.product_sku_id, payload.quantity, payload.price, actor_id=actor_id
    )
    return OrderRead.from_order(order)

@router.put("/{order_id}/lines/{line_id}", response_model=OrderRead)
def update_line_quantity(
    order_id: int,
    line_id: int,
    payload: UpdateQuantityIn,
    service: OrderService = Depends(get_order_service),
    actor_id: Optional[str] = Depends(current_actor_id),
):
    order = service.update_line_quantity(order_id, line_id, payload.quantity, payload.price, actor_id=actor_id)
    return OrderRead.from_order(order)

@router.delete("/{order_id}/lines/{line_id}", response_model=OrderRead)
def remove_line(
    order_id: int,
    line_id: int,
    service: OrderService = Depends(get_order_service),
    actor_id: Optional[str] = Depends(current_actor_id),
):
    return OrderRead.from_order(service.remove_line(order_id, line_id, actor_id=actor_id))

@router.put("/{order_id}/customer", response_model=OrderRead)
def update_customer_info(
    order_id: int,
    payload: CustomerInfoUpdate,
    service: OrderService = Depends(get_order_service),
    actor_id: Optional[str] = Depends(current_actor_id),
):
    order = service.update_customer_info(order_id, payload.user_name, payload.phone, payload.address, actor_id=actor_id)
    return OrderRead.from_order(order)

@router.delete("/{order_id}", status_code=204)
def delete_order(
    order_id: int,
    service: OrderService = Depends(get_order_service),
    actor_id: Optional[str] = Depends(current_actor_id),
):
    service.delete(order_id, actor_id=actor_id)
    return None

# ---------- coupons ----------

coupon_router = APIRouter(prefix="/coupons", tags=["coupons"])

@coupon_router.post("/", response_model=CouponRead, status_code=201)
def create_coupon(
    payload: CouponCreate,
    db: Session = Depends(get_db),
    activity: ActivityRecorder = Depends(get_activity_recorder),
    actor_id: Optional[str] = Depends(current_actor_id),
):
    return CouponRead.from_coupon(CouponService(db, activity).create(payload, actor_id=actor_id), usage_count=0)

@coupon_router.get("/", response_model=list[CouponRead])
def list_coupons(db: Session = Depends(get_db)):
    return [CouponRead.from_coupon(c, usage) for c, usage in CouponService(db).list()]

@coupon_router.patch("/{coupon_id}/toggle", response_model=CouponRead)
def toggle_coupon(
    coupon_id: int,
    db: Session = Depends(get_db),
    activity: ActivityRecorder = Depends(get_activity_recorder),
    actor_id: Optional[str] = Depends(current_actor_id),
):
    return CouponRead.from_coupon(CouponService(db, activity).toggle(coupon_id, actor_id=actor_id))

@coupon_router.put("/{coupon_id}", response_model=CouponRead)
def update_coupon(
    coupon_id: int,
    payload: CouponUpdate,
    db: Session = Depends(get_db),
    activity: ActivityRecorder = Depends(get_activity_recorder),
    actor_id: Optional[str] = Depends(current_actor_id),
):
    return CouponRead.from_coupon(CouponService(db, activity).update(coupon_id, payload, actor_id=actor_id))

@coupon_router.delete("/{coupon_id}", status_code=204)
def delete_coupon(
    coupon_id: int,
    db: Session = Depends(get_db),
    activity: ActivityRecorder = Depends(get_activity_recorder),
    actor_id: Optional[str] = Depends(current_actor_id),
):
    CouponService(db, activity).delete(coupon_id, actor_id=actor_id)
    return None

@coupon_router.post("/{coupon_id}/products", response_model=CouponRead)
def add_coupon_products(
    coupon_id: int,
    payload: CouponProductsIn,
    db: Session = Depends(get_db),
    activity: ActivityRecorder = Depends(get_activity_recorder),
    actor_id: Optional[str] = Depends(current_actor_id),
):
    coupon = CouponService(db, activity).add_products(coupon_id, payload.product_ids, actor_id=actor_id)
    return CouponRead.from_coupon(coupon)

@coupon_router.delete("/{coupon_id}/products/{product_id}", response_model=CouponRead)
def remove_coupon_product(
    coupon_id: int,
    product_id: int,
    db: Session = Depends(get_db),
    activity: ActivityRecorder = Depends(get_activity_recorder),
    actor_id: Optional[str] = Depends(current_actor_id),
):
    coupon = CouponService(db, activity).remove_product(coupon_id, product_id, actor_id=actor_id)
    return CouponRead.from_coupon(coupon)

@coupon_router.post("/check", response_model=CouponCheckResult)
def check_coupon(payload: CouponCheck, db: Session = Depends(get_db)):
    """Preview a coupon against a cart without placing an order."""
    result = CouponService(db).check(payload.coupon_code, [line.to_item() for line in payload.products], payload.user_id)
    return CouponCheckResult(**result)

# ---------- payments ----------

payment_router = APIRouter(prefix="/payments", tags=["payments"])

@payment_router.put("/{payment_id}/status", response_model=PaymentRead)
def update_payment_status(
    payment_id: int,
    payload: PaymentStatusUpdate,
    db: Session = Depends(get_db),
    activity: ActivityRecorder = Depends(get_activity_recorder),
    actor_id: Optional[str] = Depends(current_actor_id),
):
    return PaymentService(db, activity).update_status(payment_id, payload.status, actor_id=actor_id)

@payment_router.put("/{payment_id}/paid-amount", response_model=PaymentRead)
def update_paid_amount(
    payment_id: int,
    payload: PaidAmountUpdate,
    db: Session = Depends(get_db),
    activity: ActivityRecorder = Depends(get_activity_recorder),
    actor_id: Optional[str] = Depends(current_actor_id),
):
    return PaymentService(db, activity).update_paid_amount(payment_id, payload.paid_amount, actor_id=actor_id)
