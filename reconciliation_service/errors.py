"""
errors.py — Error Taxonomy of the Reconciliation Service

Every failure the service can surface is one of these classes. The HTTP layer
maps them to status codes, the webhook ingress decides from them whether the
provider should retry, and the engine decides from them whether a captured
payment has to be recorded as orphaned.
"""

from typing import Optional


class ReconciliationServiceError(Exception):
    """Base class for all service errors."""

    #: True when repeating the same call later could succeed.
    retryable = False


class ValidationError(ReconciliationServiceError):
    """A request failed validation (bad amount, incomplete guest info, ...)."""


class EmptyCartError(ValidationError):
    """The cart holds no lines; raised before any transaction is opened."""

    def __init__(self, owner_description: str):
        super().__init__(f"Cart is empty for {owner_description}")
        self.owner_description = owner_description


class InsufficientStockError(ReconciliationServiceError):
    """A cart line asks for more units than the product has in stock."""

    def __init__(self, product_id: str, requested: int, available: Optional[int], product_name: Optional[str] = None):
        label = product_name or product_id
        if available is None:
            message = f"Product {label} is not available"
        elif available <= 0:
            message = f"Product {label} is out of stock"
        else:
            message = f"Insufficient stock for product {label}. Only {available} items available."
        super().__init__(message)
        self.product_id = product_id
        self.requested = requested
        self.available = available


class ProductNotFoundError(InsufficientStockError):
    """A cart line references a product that no longer exists."""

    def __init__(self, product_id: str, requested: int):
        super().__init__(product_id, requested, None)
        self.args = (f"Product {product_id} not found",)


class DuplicatePaymentError(ReconciliationServiceError):
    """
    An order for this payment reference already exists.

    Never surfaced to callers: the engine resolves it to an
    "already materialized" success.
    """

    def __init__(self, payment_intent_id: str):
        super().__init__(f"Order already exists for payment intent {payment_intent_id}")
        self.payment_intent_id = payment_intent_id


class OrphanedPaymentError(ReconciliationServiceError):
    """Money was captured but no order can be tied to it (e.g. unusable owner metadata)."""

    def __init__(self, payment_intent_id: str, reason: str):
        super().__init__(f"Payment {payment_intent_id} cannot be reconciled: {reason}")
        self.payment_intent_id = payment_intent_id
        self.reason = reason


class SignatureVerificationError(ReconciliationServiceError):
    """A webhook payload is unsigned or its signature does not match."""


class MalformedEventError(ReconciliationServiceError):
    """A correctly signed webhook payload could not be decoded."""


class OrderNotFoundError(ReconciliationServiceError):
    """No order matches the given identifier."""


class InvalidStatusTransitionError(ReconciliationServiceError):
    """The requested order status change is not allowed from the current status."""

    def __init__(self, current: str, requested: str):
        super().__init__(f"Cannot move order from '{current}' to '{requested}'")
        self.current = current
        self.requested = requested


class StoreUnavailableError(ReconciliationServiceError):
    """The database could not complete the transaction in time. Safe to retry."""

    retryable = True


class PaymentGatewayError(ReconciliationServiceError):
    """The payment provider rejected a request."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class PaymentGatewayUnavailableError(PaymentGatewayError):
    """The payment provider timed out or could not be reached. Safe to retry."""

    retryable = True
