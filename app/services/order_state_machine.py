"""
Order State Machine

Every order status change goes through this module: the HTTP status
endpoint, and the expiry sweeper through ``apply_cancellation``.

    pending_payment -> paid -> preparing -> ready_for_pickup -> shipped -> delivered
    (any state before shipped) -> cancelled

Forward moves may skip intermediate states. ``delivered`` is only reachable
from ``shipped``. ``delivered`` and ``cancelled`` are terminal.
"""

from typing import Dict, FrozenSet, List, Optional
from datetime import datetime, timezone
import uuid
import logging

from sqlalchemy import select
from sqlalchemy.orm import selectinload
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.exc import SQLAlchemyError

from app.core.exceptions import (
    OrderEngineError, ValidationFailed, NotFoundError, InvalidTransitionError, InternalFailure,
)
from app.core.permissions import Principal, Role, OPS_ROLES, ELEVATED_ROLES, require_role
from app.models.inventory import StockMovementType
from app.models.order import Order, OrderStatus, OrderStatusHistory, PaymentStatus
from app.services.cache_service import CatalogCache, invalidate_after_commit
from app.services.inventory_service import InventoryService
from app.services.stock_ledger_service import StockLedgerService

logger = logging.getLogger(__name__)


# =============================================================================
# STATUS NORMALIZATION
# =============================================================================

STATUS_SYNONYMS: Dict[str, str] = {
    "ship": OrderStatus.SHIPPED.value,
    "dispatched": OrderStatus.SHIPPED.value,
    "dispatch": OrderStatus.SHIPPED.value,
    "sent": OrderStatus.SHIPPED.value,
    "in_transit": OrderStatus.SHIPPED.value,
    "picked_up": OrderStatus.SHIPPED.value,
    "despachado": OrderStatus.SHIPPED.value,
    "enviado": OrderStatus.SHIPPED.value,
    "canceled": OrderStatus.CANCELLED.value,
}

ALL_STATUSES: FrozenSet[str] = frozenset(s.value for s in OrderStatus)


def normalize_status(value) -> str:
    """
    Map a requested status to one of the seven order statuses.

    Trims, lower-cases and turns spaces and hyphens into underscores before
    resolving synonyms. Raises ValidationFailed for anything unrecognised.
    """
    if isinstance(value, OrderStatus):
        return value.value
    if not isinstance(value, str) or not value.strip():
        raise ValidationFailed("Status is required", details={"status": value})

    key = value.strip().lower().replace(" ", "_").replace("-", "_")
    key = STATUS_SYNONYMS.get(key, key)
    if key not in ALL_STATUSES:
        raise ValidationFailed(
            f"Unknown order status '{value}'",
            details={"status": value, "allowed": sorted(ALL_STATUSES)},
        )
    return key


# =============================================================================
# TRANSITION RULES
# =============================================================================

# Format: current_status -> [list of allowed next statuses]
ORDER_TRANSITIONS: Dict[str, List[str]] = {
    OrderStatus.PENDING_PAYMENT.value: [
        OrderStatus.PAID.value,
        OrderStatus.PREPARING.value,
        OrderStatus.READY_FOR_PICKUP.value,
        OrderStatus.SHIPPED.value,
        OrderStatus.CANCELLED.value,
    ],
    OrderStatus.PAID.value: [
        OrderStatus.PREPARING.value,
        OrderStatus.READY_FOR_PICKUP.value,
        OrderStatus.SHIPPED.value,
        OrderStatus.CANCELLED.value,
    ],
    OrderStatus.PREPARING.value: [
        OrderStatus.READY_FOR_PICKUP.value,
        OrderStatus.SHIPPED.value,
        OrderStatus.CANCELLED.value,
    ],
    OrderStatus.READY_FOR_PICKUP.value: [
        OrderStatus.SHIPPED.value,
        OrderStatus.CANCELLED.value,
    ],
    OrderStatus.SHIPPED.value: [
        OrderStatus.DELIVERED.value,
    ],
    OrderStatus.DELIVERED.value: [],    # Terminal state
    OrderStatus.CANCELLED.value: [],    # Terminal state
}

# Stock has physically left or been released; these never cross over
GUARDED_TRANSITIONS: Dict[tuple, str] = {
    (OrderStatus.SHIPPED.value, OrderStatus.CANCELLED.value): "A shipped order cannot be cancelled",
    (OrderStatus.CANCELLED.value, OrderStatus.SHIPPED.value): "A cancelled order cannot be shipped",
}


def can_transition(current_status: str, new_status: str) -> bool:
    """Check if a transition is allowed."""
    return new_status in ORDER_TRANSITIONS.get(current_status, [])


def get_allowed_transitions(current_status: str) -> List[str]:
    return ORDER_TRANSITIONS.get(current_status, [])


def validate_transition(current_status: str, new_status: str) -> None:
    """
    Validate a status transition. Raises InvalidTransitionError if invalid.

    A transition to the current status is always allowed (no-op).
    """
    if current_status == new_status:
        return

    guard = GUARDED_TRANSITIONS.get((current_status, new_status))
    if guard:
        raise InvalidTransitionError(current_status, new_status, guard)

    if not can_transition(current_status, new_status):
        allowed = get_allowed_transitions(current_status)
        if not allowed:
            raise InvalidTransitionError(
                current_status, new_status,
                f"Order in '{current_status}' status cannot be modified. This is a terminal state.",
            )
        raise InvalidTransitionError(
            current_status, new_status,
            f"Cannot change order from '{current_status}' to '{new_status}'. "
            f"Allowed transitions: {', '.join(allowed)}",
        )


def required_roles_for(target_status: str) -> FrozenSet[Role]:
    """Shipping takes the elevated tier; every other change takes the ops tier."""
    if target_status == OrderStatus.SHIPPED.value:
        return ELEVATED_ROLES
    return OPS_ROLES


# =============================================================================
# SIDE EFFECTS (order row and inventory rows locked by the caller)
# =============================================================================

async def apply_cancellation(
    db: AsyncSession,
    order: Order,
    user_id: Optional[uuid.UUID],
    notes: Optional[str] = None,
) -> None:
    """
    Cancel a locked order: release its reservations and void its payment.

    Each product's release is recorded once per order, so running this
    again for the same order changes nothing further.
    """
    inventory = InventoryService(db)
    ledger = StockLedgerService(db)
    now = datetime.now(timezone.utc)

    records = await inventory.lock_records([item.product_id for item in order.items])
    for item in order.items:
        movement = await ledger.record_once(
            StockMovementType.RELEASE_RESERVE,
            product_id=item.product_id,
            order_id=order.id,
            quantity=item.quantity,
            user_id=user_id,
            note=f"Released by cancellation of {order.order_number}",
        )
        if movement is None:
            continue
        record = records.get(item.product_id)
        if record is not None:
            inventory.release(record, item.quantity)

    if order.payment is not None and order.payment.status == PaymentStatus.INITIATED.value:
        order.payment.status = PaymentStatus.VOIDED.value
        order.payment.completed_at = now

    _record_change(db, order, OrderStatus.CANCELLED.value, user_id, notes)
    order.cancelled_at = now


async def apply_shipment(
    db: AsyncSession,
    order: Order,
    user_id: Optional[uuid.UUID],
    notes: Optional[str] = None,
) -> None:
    """Ship a locked order: consume its stock from on-hand and reserved."""
    inventory = InventoryService(db)
    ledger = StockLedgerService(db)

    records = await inventory.lock_records([item.product_id for item in order.items])
    for item in order.items:
        movement = await ledger.record_once(
            StockMovementType.OUT,
            product_id=item.product_id,
            order_id=order.id,
            quantity=item.quantity,
            user_id=user_id,
            note=f"Shipped with {order.order_number}",
        )
        if movement is None:
            continue
        record = records.get(item.product_id)
        if record is not None:
            inventory.consume(record, item.quantity)

    _record_change(db, order, OrderStatus.SHIPPED.value, user_id, notes)
    order.shipped_at = datetime.now(timezone.utc)


def _record_change(
    db: AsyncSession,
    order: Order,
    new_status: str,
    user_id: Optional[uuid.UUID],
    notes: Optional[str],
) -> None:
    db.add(OrderStatusHistory(
        order_id=order.id,
        from_status=order.status,
        to_status=new_status,
        changed_by=user_id,
        notes=notes,
    ))
    order.status = new_status


# =============================================================================
# TRANSITION EXECUTOR
# =============================================================================

class OrderStateMachine:
    """Applies guarded status changes to orders."""

    def __init__(self, db: AsyncSession, cache: Optional[CatalogCache] = None):
        self.db = db
        self.cache = cache

    async def lock_order(self, order_id: uuid.UUID) -> Optional[Order]:
        """Select the order row FOR UPDATE, with lines and payment loaded."""
        stmt = (
            select(Order)
            .where(Order.id == order_id)
            .options(selectinload(Order.items), selectinload(Order.payment))
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def set_status(
        self,
        order_id: uuid.UUID,
        target_status,
        principal: Principal,
        notes: Optional[str] = None,
    ) -> Order:
        """
        Move an order to a new status.

        Raises:
            ValidationFailed: unknown target status
            PermissionDeniedError: principal's role may not set this status
            NotFoundError: unknown order
            InvalidTransitionError: transition not allowed from current status
            InternalFailure: unexpected database error
        """
        target = normalize_status(target_status)
        require_role(principal, required_roles_for(target), f"set order status to '{target}'")

        stock_changed = False
        try:
            order = await self.lock_order(order_id)
            if order is None:
                raise NotFoundError(
                    f"Order {order_id} not found",
                    details={"order_id": str(order_id)},
                )

            current = order.status
            validate_transition(current, target)

            if current == target:
                await self.db.commit()
                logger.debug(f"Order {order.order_number} already {target}, nothing to do")
                return order

            if target == OrderStatus.CANCELLED.value:
                await apply_cancellation(self.db, order, principal.id, notes)
                stock_changed = True
            elif target == OrderStatus.SHIPPED.value:
                await apply_shipment(self.db, order, principal.id, notes)
                stock_changed = True
            else:
                if (
                    target == OrderStatus.PAID.value
                    and order.payment is not None
                    and order.payment.status == PaymentStatus.INITIATED.value
                ):
                    order.payment.status = PaymentStatus.SETTLED.value
                    order.payment.completed_at = datetime.now(timezone.utc)
                _record_change(self.db, order, target, principal.id, notes)

            await self.db.commit()

        except OrderEngineError:
            await self.db.rollback()
            raise
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Database error changing status of order {order_id}: {e}")
            raise InternalFailure("Status change failed: database error")

        logger.info(
            f"Order {order.order_number} moved {current} -> {target} "
            f"by {principal.role.value} {principal.id}"
        )
        if stock_changed:
            await invalidate_after_commit(self.cache)
        return order
