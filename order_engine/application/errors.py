"""Errors raised by the order engine.

Each class knows the HTTP status it maps to, so the API layer renders them
without inspecting messages. Client faults are 4xx; anything the caller
cannot fix is an ``InternalError``.
"""
from enum import Enum
from typing import Any, Optional


class OrderEngineError(Exception):
    status_code = 500
    code = "internal_error"
    retryable = False

    def __init__(self, message: str, errors: Optional[Any] = None):
        super().__init__(message)
        self.message = message
        self.errors = errors

    def to_dict(self) -> dict:
        return {
            "detail": self.message,
            "code": self.code,
            "errors": self.errors,
            "retryable": self.retryable,
        }


class ValidationFailed(OrderEngineError):
    status_code = 422
    code = "validation_failed"

    def __init__(self, errors: dict, message: str = "Validation failed."):
        super().__init__(message, errors)


class Unauthenticated(OrderEngineError):
    status_code = 401
    code = "unauthenticated"

    def __init__(self, message: str = "Unauthorized. Please login."):
        super().__init__(message)


class NotFound(OrderEngineError):
    status_code = 404
    code = "not_found"


class OrderNotFound(NotFound):
    def __init__(self, order_id):
        super().__init__("Order not found.", {"order_id": order_id})


class OrderLineNotFound(NotFound):
    def __init__(self, order_id, line_id):
        super().__init__("Product not found in the order.", {"order_id": order_id, "line_id": line_id})


class PaymentNotFound(NotFound):
    def __init__(self, payment_id):
        super().__init__("Payment not found.", {"payment_id": payment_id})


class VariantNotFound(NotFound):
    def __init__(self, variant_id, message: Optional[str] = None, errors: Optional[Any] = None):
        super().__init__(message or f"SKU not found: {variant_id}", errors or {"product_sku_id": variant_id})
        self.variant_id = variant_id


class VariantProductMismatch(VariantNotFound):
    """The variant exists but belongs to a different product."""
    status_code = 400
    code = "variant_product_mismatch"

    def __init__(self, product_id, variant_id):
        super().__init__(
            variant_id,
            "SKU does not belong to this product.",
            {"product_id": product_id, "product_sku_id": variant_id},
        )


class BusinessRuleViolation(OrderEngineError):
    status_code = 400
    code = "business_rule_violation"


class CouponRejection(str, Enum):
    NOT_FOUND = "not_found"
    INACTIVE = "inactive"
    NOT_YET_VALID = "not_yet_valid"
    EXPIRED = "expired"
    USAGE_LIMIT_REACHED = "usage_limit_reached"
    PER_USER_LIMIT_REACHED = "per_user_limit_reached"
    MINIMUM_PURCHASE_NOT_MET = "minimum_purchase_not_met"


class CouponRejected(BusinessRuleViolation):
    code = "coupon_rejected"

    def __init__(self, reason: CouponRejection, message: str):
        super().__init__(message, {"reason": reason.value})
        self.reason = reason


class CouponNotFound(CouponRejected):
    status_code = 404

    def __init__(self, coupon_ref):
        super().__init__(CouponRejection.NOT_FOUND, "Invalid coupon provided.")
        self.errors["coupon"] = coupon_ref


class InsufficientStock(OrderEngineError):
    status_code = 409
    code = "insufficient_stock"

    def __init__(self, variant_id: int, sku: str, available: int, requested: int):
        super().__init__(
            f"Insufficient quantity for SKU: {sku}",
            {"product_sku_id": variant_id, "sku": sku, "available": available, "requested": requested},
        )
        self.variant_id = variant_id


class Contention(OrderEngineError):
    status_code = 409
    code = "contention"
    retryable = True

    def __init__(self, message: str = "The order could not be completed because of concurrent activity. Please retry."):
        super().__init__(message)


class IntegrityConflict(OrderEngineError):
    status_code = 409
    code = "integrity_conflict"


class InternalError(OrderEngineError):
    def __init__(self, message: str = "Something went wrong while processing the order."):
        super().__init__(message)
