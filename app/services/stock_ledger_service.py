"""
Stock movement ledger.

Append-only record of every event that changes reserved or on-hand
quantities. ``release_reserve`` and ``out`` movements are written at most
once per (product, order): the service checks for an existing row inside
the caller's transaction, and a partial unique index rejects anything that
slips past the check.
"""
from typing import Optional, List, Tuple
from datetime import datetime
import uuid
import logging

from sqlalchemy import select, func, and_
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.inventory import StockMovement, StockMovementType, ONCE_PER_ORDER_MOVEMENTS

logger = logging.getLogger(__name__)


class StockLedgerService:
    """Writes and reads stock movements. Never commits; callers own the transaction."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def record_reserve(
        self,
        product_id: uuid.UUID,
        order_id: uuid.UUID,
        quantity: int,
        user_id: Optional[uuid.UUID] = None,
        note: Optional[str] = None,
    ) -> StockMovement:
        """Append a reserve movement for one order line."""
        movement = StockMovement(
            product_id=product_id,
            order_id=order_id,
            user_id=user_id,
            movement_type=StockMovementType.RESERVE.value,
            quantity=quantity,
            note=note,
        )
        self.db.add(movement)
        return movement

    async def record_once(
        self,
        movement_type: StockMovementType,
        product_id: uuid.UUID,
        order_id: uuid.UUID,
        quantity: int,
        user_id: Optional[uuid.UUID] = None,
        note: Optional[str] = None,
    ) -> Optional[StockMovement]:
        """
        Append a movement unless one already exists for (product, order, type).

        Returns the new movement, or None when the movement was already
        recorded by an earlier run of the same transition.
        """
        if movement_type not in ONCE_PER_ORDER_MOVEMENTS:
            raise ValueError(f"{movement_type.value} movements are not once-per-order")

        if await self.exists(movement_type, product_id, order_id):
            logger.info(
                f"Skipping duplicate {movement_type.value} movement "
                f"for product {product_id} on order {order_id}"
            )
            return None

        movement = StockMovement(
            product_id=product_id,
            order_id=order_id,
            user_id=user_id,
            movement_type=movement_type.value,
            quantity=quantity,
            note=note,
        )
        self.db.add(movement)
        # Flush so a later existence check in the same transaction sees it
        await self.db.flush()
        return movement

    async def record_adjustment(
        self,
        product_id: uuid.UUID,
        delta: int,
        user_id: Optional[uuid.UUID] = None,
        note: Optional[str] = None,
    ) -> StockMovement:
        """Append a manual on-hand correction. Quantity is the signed delta."""
        movement = StockMovement(
            product_id=product_id,
            order_id=None,
            user_id=user_id,
            movement_type=StockMovementType.ADJUSTMENT.value,
            quantity=delta,
            note=note,
        )
        self.db.add(movement)
        return movement

    async def exists(
        self,
        movement_type: StockMovementType,
        product_id: uuid.UUID,
        order_id: uuid.UUID,
    ) -> bool:
        stmt = select(func.count(StockMovement.id)).where(
            and_(
                StockMovement.product_id == product_id,
                StockMovement.order_id == order_id,
                StockMovement.movement_type == movement_type.value,
            )
        )
        return ((await self.db.execute(stmt)).scalar() or 0) > 0

    async def get_movements(
        self,
        product_id: Optional[uuid.UUID] = None,
        order_id: Optional[uuid.UUID] = None,
        movement_type: Optional[StockMovementType] = None,
        date_from: Optional[datetime] = None,
        skip: int = 0,
        limit: int = 50,
    ) -> Tuple[List[StockMovement], int]:
        """Get stock movement history, newest first."""
        query = select(StockMovement)

        conditions = []
        if product_id:
            conditions.append(StockMovement.product_id == product_id)
        if order_id:
            conditions.append(StockMovement.order_id == order_id)
        if movement_type:
            conditions.append(StockMovement.movement_type == movement_type.value)
        if date_from:
            conditions.append(StockMovement.created_at >= date_from)

        if conditions:
            query = query.where(and_(*conditions))

        # Count
        count_query = select(func.count()).select_from(query.subquery())
        total = await self.db.scalar(count_query)

        # Paginate
        query = query.order_by(StockMovement.created_at.desc()).offset(skip).limit(limit)
        result = await self.db.execute(query)

        return list(result.scalars().all()), total
