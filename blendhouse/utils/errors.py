from typing import Any, Dict, Optional


class CheckoutError(Exception):
    """Base error for the checkout core; carries its HTTP mapping."""

    status_code = 400
    code = "BAD_REQUEST"
    retryable = False

    def __init__(self, message: str = "Bad request", details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        payload = {"error": self.code, "message": self.message, "status_code": self.status_code}
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationError(CheckoutError):
    status_code = 422
    code = "VALIDATION_ERROR"


class ProductUnavailableError(ValidationError):
    code = "PRODUCT_UNAVAILABLE"


class DiscountCodeError(ValidationError):
    code = "INVALID_DISCOUNT_CODE"


class InsufficientStockError(CheckoutError):
    status_code = 409
    code = "INSUFFICIENT_STOCK"

    def __init__(self, product_id: str, available: int, requested: int, message: Optional[str] = None):
        super().__init__(
            message or "Insufficient stock",
            {"product_id": product_id, "available": available, "requested": requested},
        )
        self.product_id = product_id
        self.available = available
        self.requested = requested


class NotFoundError(CheckoutError):
    status_code = 404
    code = "NOT_FOUND"


class ConflictError(CheckoutError):
    status_code = 409
    code = "CONFLICT"


class InvalidTransitionError(ConflictError):
    code = "INVALID_TRANSITION"

    def __init__(self, from_status: Optional[str], to_status: str):
        super().__init__(
            f"Cannot move order from {from_status} to {to_status}",
            {"from_status": from_status, "to_status": to_status},
        )
        self.from_status = from_status
        self.to_status = to_status


class AuthorizationError(CheckoutError):
    status_code = 403
    code = "FORBIDDEN"


class PaymentError(CheckoutError):
    """Provider failure translated into the payment taxonomy (see ``kind``)."""

    status_code = 402
    code = "PAYMENT_ERROR"
    kind = "payment-error"

    def to_dict(self) -> Dict[str, Any]:
        payload = super().to_dict()
        payload["kind"] = self.kind
        payload["retryable"] = self.retryable
        return payload


class CardDeclinedError(PaymentError):
    code = "CARD_DECLINED"
    kind = "card-declined"


class InvalidPaymentRequestError(PaymentError):
    status_code = 400
    code = "INVALID_PAYMENT_REQUEST"
    kind = "invalid-request"


class ProviderOutageError(PaymentError):
    status_code = 503
    code = "PROVIDER_OUTAGE"
    kind = "provider-outage"
    retryable = True


class ProviderAuthError(PaymentError):
    status_code = 500
    code = "PROVIDER_AUTH_FAILURE"
    kind = "auth-failure"


class PaymentsUnavailableError(CheckoutError):
    status_code = 503
    code = "PAYMENTS_UNAVAILABLE"


class TransactionError(CheckoutError):
    status_code = 503
    code = "TRANSACTION_ERROR"
    retryable = True


class TransactionTimeoutError(TransactionError):
    code = "TRANSACTION_TIMEOUT"


class TransactionConflictError(TransactionError):
    code = "TRANSACTION_CONFLICT"


class WebhookSignatureError(CheckoutError):
    code = "INVALID_SIGNATURE"


class WebhookProcessingError(CheckoutError):
    status_code = 500
    code = "WEBHOOK_PROCESSING_ERROR"
