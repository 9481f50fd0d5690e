"""
Order engine error taxonomy.

Every failure the reservation engine, state machine or inventory store can
report is one of these. The HTTP layer maps them to status codes; the
background sweeper logs them and moves on.
"""
from typing import Dict, Optional


class OrderEngineError(Exception):
    """Base exception for order engine errors."""
    def __init__(self, message: str, details: Dict = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)


class ValidationFailed(OrderEngineError):
    """Malformed input. Raised before any lock is taken."""
    pass


class NotFoundError(OrderEngineError):
    """Unknown order or product reference."""
    pass


class ConflictError(OrderEngineError):
    """Well-formed request that the current state does not allow."""
    pass


class InsufficientStockError(ConflictError):
    """A line asks for more units than are available."""
    def __init__(self, product_id, available: int, requested: int, product_name: Optional[str] = None):
        self.product_id = product_id
        self.available = available
        self.requested = requested
        label = product_name or str(product_id)
        super().__init__(
            f"Insufficient stock for {label}",
            details={
                "product_id": str(product_id),
                "available": available,
                "requested": requested,
            },
        )


class InvalidTransitionError(ConflictError):
    """The order cannot move from its current status to the target."""
    def __init__(self, current_status: str, target_status: str, message: Optional[str] = None):
        self.current_status = current_status
        self.target_status = target_status
        super().__init__(
            message or f"Cannot change order from '{current_status}' to '{target_status}'",
            details={"current_status": current_status, "target_status": target_status},
        )


class PermissionDeniedError(ConflictError):
    """The acting principal's role may not perform this transition."""
    def __init__(self, role: str, required_roles, action: str):
        self.role = role
        self.required_roles = sorted(str(r) for r in required_roles)
        super().__init__(
            f"Role '{role}' may not {action}",
            details={"role": role, "required_roles": self.required_roles},
        )


class InternalFailure(OrderEngineError):
    """Unexpected persistence error. The transaction was rolled back in full."""
    pass
