"""
Business-level errors raised by the engine. The HTTP layer turns each into a
structured body; nothing here should reach a client as a 500.
"""


class OrderEngineError(Exception):
    code = "order_engine_error"
    retryable = False

    def __init__(self, message: str, **details):
        self.message = message
        self.details = details
        super().__init__(message)

    def to_dict(self) -> dict:
        return {
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
            **self.details,
        }


class OrderNotFoundError(OrderEngineError):
    code = "order_not_found"

    def __init__(self, order_id: str):
        super().__init__(f"order {order_id} not found", order_id=order_id)


class InvalidOrderError(OrderEngineError):
    """Order data breaks a creation invariant (e.g. totalPrice != unitPrice * quantity)."""
    code = "invalid_order"


class GuardError(OrderEngineError):
    """Transition not permitted from the current state, or a precondition is unmet."""
    code = "guard_rejected"

    def __init__(self, message: str, current_state: str | None = None, **details):
        self.current_state = current_state
        super().__init__(message, current_state=current_state, **details)


class VerificationPendingError(GuardError):
    """Deliver attempted before the customer confirmed receipt."""
    code = "verification_pending"

    def __init__(self, order_id: str):
        super().__init__(
            "The customer has not yet received this product.",
            current_state="order_in_progress",
            order_id=order_id,
        )


class InsufficientInventoryError(OrderEngineError):
    code = "insufficient_inventory"

    def __init__(self, product_id: str, requested: int, available: int | None = None):
        self.product_id = product_id
        self.requested = requested
        self.available = available
        super().__init__(
            "Inventory is insufficient to approve this order.",
            product_id=product_id,
            requested=requested,
            available=available,
        )


class ConflictError(OrderEngineError):
    """Version mismatch on write. Reload the order and re-issue the command."""
    code = "version_conflict"
    retryable = True

    def __init__(self, order_id: str, expected_version: int, current_version: int | None = None):
        self.expected_version = expected_version
        self.current_version = current_version
        super().__init__(
            f"order {order_id} was modified concurrently",
            order_id=order_id,
            expected_version=expected_version,
            current_version=current_version,
        )


class AuthorizationError(OrderEngineError):
    code = "not_authorized"


class TransientStoreError(OrderEngineError):
    """I/O failure talking to the order store, ledger or audit log."""
    code = "store_unavailable"
    retryable = True
