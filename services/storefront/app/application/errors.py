"""Error kinds raised by the order and payment services.

Each error carries a machine-readable ``kind`` for callers to branch on, a
human message, the HTTP status the API layer answers with, and an optional
suggestion shown to the shopper.
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(str, Enum):
    # Validation
    EMPTY_CART = "EMPTY_CART"
    MISSING_FIELDS = "MISSING_FIELDS"
    INVALID_EMAIL = "INVALID_EMAIL"
    INVALID_PHONE = "INVALID_PHONE"
    INVALID_PINCODE = "INVALID_PINCODE"
    INVALID_QUANTITY = "INVALID_QUANTITY"
    INVALID_PAYMENT_METHOD = "INVALID_PAYMENT_METHOD"
    INVALID_STATUS = "INVALID_STATUS"
    INVALID_STATUS_TRANSITION = "INVALID_STATUS_TRANSITION"
    # Concurrency / state
    PRODUCT_NOT_FOUND = "PRODUCT_NOT_FOUND"
    INSUFFICIENT_STOCK = "INSUFFICIENT_STOCK"
    STOCK_UPDATE_CONFLICT = "STOCK_UPDATE_CONFLICT"
    ORDER_NOT_FOUND = "ORDER_NOT_FOUND"
    # Access
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"
    # Gateway
    GATEWAY_MISCONFIGURED = "GATEWAY_MISCONFIGURED"
    GATEWAY_AUTH_ERROR = "GATEWAY_AUTH_ERROR"
    MERCHANT_NOT_CONFIGURED = "MERCHANT_NOT_CONFIGURED"
    BAD_REQUEST = "BAD_REQUEST"
    GATEWAY_ERROR = "GATEWAY_ERROR"
    GATEWAY_RESPONSE_UNRECOGNIZED = "GATEWAY_RESPONSE_UNRECOGNIZED"
    MINIMUM_AMOUNT_ERROR = "MINIMUM_AMOUNT_ERROR"
    # Integrity
    INVALID_SIGNATURE = "INVALID_SIGNATURE"


CART_SUGGESTION = (
    "One or more items in your cart are no longer available. "
    "Please refresh your cart and try again."
)
COD_SUGGESTION = "Online payment is unavailable right now. Please choose Cash on Delivery to complete your order."


class StorefrontError(Exception):
    status_code = 500

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        status_code: Optional[int] = None,
        suggestion: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.suggestion = suggestion
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.message, "kind": self.kind.value}
        if self.suggestion:
            body["suggestion"] = self.suggestion
        return body


class ValidationError(StorefrontError):
    status_code = 400


class OrderError(StorefrontError):
    status_code = 400


class ProductNotFound(OrderError):
    status_code = 404

    def __init__(self, product_id: str):
        super().__init__(
            ErrorKind.PRODUCT_NOT_FOUND,
            f"Product {product_id} not found",
            suggestion=CART_SUGGESTION,
            details={"product_id": product_id},
        )
        self.product_id = product_id


class InsufficientStock(OrderError):
    def __init__(self, product_id: str, product_name: str, available: int, requested: int):
        super().__init__(
            ErrorKind.INSUFFICIENT_STOCK,
            f"Insufficient stock for {product_name}. Available: {available}, Requested: {requested}",
            suggestion="Remove unavailable items or reduce the quantity and try again.",
            details={
                "product_id": product_id,
                "product_name": product_name,
                "available": available,
                "requested": requested,
            },
        )
        self.product_name = product_name
        self.available = available
        self.requested = requested


class StockUpdateConflict(OrderError):
    def __init__(self, product_id: str, product_name: str):
        super().__init__(
            ErrorKind.STOCK_UPDATE_CONFLICT,
            f"Failed to update stock for {product_name}. Stock may have changed.",
            suggestion="Please refresh your cart and try again.",
            details={"product_id": product_id, "product_name": product_name},
        )


class OrderNotFound(StorefrontError):
    status_code = 404

    def __init__(self, ref: str):
        super().__init__(ErrorKind.ORDER_NOT_FOUND, f"Order {ref} not found", details={"order": ref})


class AuthError(StorefrontError):
    status_code = 401


class PaymentGatewayError(StorefrontError):
    """A failure talking to the payment provider.

    ``provider_code``/``provider_message``/``raw_body`` preserve what the
    provider said. ``retryable`` is True only for transient failures.
    """

    status_code = 502

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        provider_code: Optional[str] = None,
        provider_message: Optional[str] = None,
        raw_body: Optional[str] = None,
        http_status: Optional[int] = None,
        retryable: bool = False,
        status_code: Optional[int] = None,
    ):
        super().__init__(kind, message, status_code=status_code, suggestion=COD_SUGGESTION)
        self.provider_code = provider_code
        self.provider_message = provider_message
        self.raw_body = raw_body
        self.http_status = http_status
        self.retryable = retryable
        self.details = {
            "provider_code": provider_code,
            "provider_message": provider_message,
            "http_status": http_status,
        }

    def to_dict(self) -> Dict[str, Any]:
        body = super().to_dict()
        if self.provider_code:
            body["providerCode"] = self.provider_code
        return body
