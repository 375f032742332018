"""
Order lifecycle error taxonomy.

Every error carries a stable ``error_type``, the HTTP status it maps to, and a
``details`` dict with enough structure for a client to correct the request
(current status, legal next statuses, available balance, ...).
"""

from typing import Any, Dict, Iterable, Optional


class OrderingError(Exception):
    """Base class for all lifecycle errors."""

    error_type = "ordering_error"
    status_code = 400
    retryable = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.error_type, "message": self.message, "details": self.details}


# ---------------------------------------------------------------------------
# Validation (rejected before any transaction is opened)
# ---------------------------------------------------------------------------

class OrderValidationError(OrderingError):
    error_type = "validation_error"
    status_code = 422

    def __init__(self, errors: Iterable[str]):
        errors = list(errors)
        super().__init__("Invalid order data: " + "; ".join(errors), {"errors": errors})


class MissingPaymentProofError(OrderingError):
    error_type = "missing_payment_proof"

    def __init__(self, payment_method: str):
        super().__init__(
            f"Payment proof is required for {payment_method} payments",
            {"payment_method": payment_method},
        )


# ---------------------------------------------------------------------------
# Business rules (transaction rolled back)
# ---------------------------------------------------------------------------

class OrderNotFoundError(OrderingError):
    error_type = "order_not_found"
    status_code = 404

    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__("Order not found", {"order_id": order_id})


class OrderTerminalError(OrderingError):
    error_type = "order_terminal"
    status_code = 409

    def __init__(self, order_id: str, current_status: str):
        self.current_status = current_status
        super().__init__(
            "Cannot update orders that are already completed or cancelled",
            {"order_id": order_id, "current_status": current_status},
        )


class IllegalTransitionError(OrderingError):
    error_type = "illegal_transition"
    status_code = 409

    def __init__(self, current_status: str, requested_status: str, allowed_next: Iterable[str], delivery_method: str):
        self.current_status = current_status
        self.requested_status = requested_status
        self.allowed_next = sorted(allowed_next)
        allowed_text = ", ".join(self.allowed_next) or "none"
        super().__init__(
            f'Invalid status transition from "{current_status}" to "{requested_status}" '
            f"for {delivery_method.lower()} orders. Valid next statuses are: {allowed_text}",
            {
                "current_status": current_status,
                "requested_status": requested_status,
                "delivery_method": delivery_method,
                "allowed_next": self.allowed_next,
            },
        )


class OrderInUseError(OrderingError):
    error_type = "order_in_use"
    status_code = 409

    def __init__(self, order_id: str, item_count: int, ledger_entry_count: int):
        super().__init__(
            "Order has dependent records and cannot be deleted",
            {"order_id": order_id, "items": item_count, "ledger_entries": ledger_entry_count},
        )


class OrderAccessDeniedError(OrderingError):
    error_type = "order_access_denied"
    status_code = 403

    def __init__(self, order_id: str):
        super().__init__("You don't have permission to access this order", {"order_id": order_id})


class PaymentStatusError(OrderingError):
    error_type = "payment_status_error"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)


class AccountNotFoundError(OrderingError):
    error_type = "loyalty_account_not_found"
    status_code = 404

    def __init__(self, user_id: str):
        super().__init__("Loyalty points record not found", {"user_id": user_id})


class InsufficientBalanceError(OrderingError):
    error_type = "insufficient_balance"

    def __init__(self, user_id: str, available: int, requested: int):
        self.available = available
        self.requested = requested
        super().__init__(
            "Insufficient points for redemption",
            {"user_id": user_id, "available": available, "requested": requested},
        )


# ---------------------------------------------------------------------------
# Infrastructure (safe to retry; nothing was committed)
# ---------------------------------------------------------------------------

class LedgerTimeoutError(OrderingError):
    error_type = "ledger_timeout"
    status_code = 503
    retryable = True

    def __init__(self, operation: str):
        super().__init__(
            "The order store is busy. Please try again.",
            {"operation": operation},
        )


class IdempotencyConflictError(OrderingError):
    """A request with the same Idempotency-Key is still being processed."""

    error_type = "idempotency_conflict"
    status_code = 409
    retryable = True

    def __init__(self, key: str):
        super().__init__(
            "A request with this Idempotency-Key is already in progress. Retry shortly for its result.",
            {"idempotency_key": key},
        )
