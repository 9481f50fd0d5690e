"""Inventory Service for stock counters and manual stock corrections."""
from typing import Optional, List, Dict, Iterable
import uuid
import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import joinedload
from sqlalchemy.exc import SQLAlchemyError

from app.core.exceptions import ValidationFailed, NotFoundError, InternalFailure, OrderEngineError
from app.core.permissions import Principal, OPS_ROLES, require_role
from app.models.inventory import InventoryRecord
from app.models.product import Product
from app.services.cache_service import CatalogCache, invalidate_after_commit
from app.services.stock_ledger_service import StockLedgerService

logger = logging.getLogger(__name__)


class InventoryService:
    """
    Per-product on-hand/reserved counters.

    Counter mutations happen only while the caller holds the row lock
    obtained through ``lock_records``. Decrements clamp at zero so that a
    manual correction shrinking on_hand below outstanding reservations
    never drives a counter negative; clamping is logged as drift.
    """

    def __init__(self, db: AsyncSession, cache: Optional[CatalogCache] = None):
        self.db = db
        self.cache = cache

    # ==================== READS ====================

    async def get_record(self, product_id: uuid.UUID) -> Optional[InventoryRecord]:
        """Get inventory record by product ID."""
        result = await self.db.execute(
            select(InventoryRecord).where(InventoryRecord.product_id == product_id)
        )
        return result.scalar_one_or_none()

    async def available(self, product_id: uuid.UUID) -> int:
        """Units of a product that can still be reserved. Zero without a record."""
        record = await self.get_record(product_id)
        return record.available if record else 0

    async def list_inventory(self, only_active: bool = True) -> List[InventoryRecord]:
        """Inventory records with their products, ordered by product name."""
        query = (
            select(InventoryRecord)
            .join(Product, Product.id == InventoryRecord.product_id)
            .options(joinedload(InventoryRecord.product))
            .order_by(Product.name.asc())
        )
        if only_active:
            query = query.where(Product.is_active == True)  # noqa: E712

        result = await self.db.execute(query)
        return list(result.scalars().unique().all())

    # ==================== LOCKING ====================

    async def lock_records(self, product_ids: Iterable[uuid.UUID]) -> Dict[uuid.UUID, InventoryRecord]:
        """
        Lock the inventory rows of these products for the current transaction.

        One statement, rows locked in product id order so that concurrent
        callers always acquire overlapping locks in the same sequence.
        """
        ids = sorted(set(product_ids))
        if not ids:
            return {}

        result = await self.db.execute(
            select(InventoryRecord)
            .where(InventoryRecord.product_id.in_(ids))
            .order_by(InventoryRecord.product_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return {record.product_id: record for record in result.scalars().all()}

    # ==================== COUNTER MUTATIONS (row lock held) ====================

    @staticmethod
    def reserve(record: InventoryRecord, quantity: int) -> None:
        record.reserved += quantity

    @staticmethod
    def release(record: InventoryRecord, quantity: int) -> None:
        """Give back reserved units, clamped at zero."""
        if quantity > record.reserved:
            logger.warning(
                f"Inventory drift on product {record.product_id}: releasing {quantity} "
                f"with only {record.reserved} reserved, clamping to 0"
            )
        record.reserved = max(record.reserved - quantity, 0)

    @staticmethod
    def consume(record: InventoryRecord, quantity: int) -> None:
        """Remove shipped units from on_hand and from reserved, both clamped at zero."""
        if quantity > record.on_hand or quantity > record.reserved:
            logger.warning(
                f"Inventory drift on product {record.product_id}: shipping {quantity} "
                f"with on_hand={record.on_hand} reserved={record.reserved}, clamping to 0"
            )
        record.on_hand = max(record.on_hand - quantity, 0)
        record.reserved = max(record.reserved - quantity, 0)

    # ==================== MANUAL CORRECTION ====================

    async def set_on_hand(
        self,
        product_id: uuid.UUID,
        on_hand,
        principal: Principal,
        note: Optional[str] = None,
    ) -> InventoryRecord:
        """
        Overwrite a product's on-hand count (ops stock correction).

        Bypasses reservation logic; reserved is left as is. Creates the
        inventory record when the product has none yet. Always invalidates
        the catalog cache.
        """
        require_role(principal, OPS_ROLES, "correct stock levels")

        if isinstance(on_hand, bool) or not isinstance(on_hand, int) or on_hand < 0:
            raise ValidationFailed(
                "on_hand must be a non-negative integer",
                details={"on_hand": on_hand},
            )

        try:
            product = await self.db.get(Product, product_id)
            if product is None:
                raise NotFoundError(
                    f"Product {product_id} not found",
                    details={"product_id": str(product_id)},
                )

            records = await self.lock_records([product_id])
            record = records.get(product_id)
            previous = 0
            if record is None:
                record = InventoryRecord(product_id=product_id, on_hand=on_hand, reserved=0)
                self.db.add(record)
            else:
                previous = record.on_hand
                record.on_hand = on_hand

            if record.reserved > on_hand:
                logger.warning(
                    f"Stock correction leaves product {product_id} with "
                    f"reserved={record.reserved} above on_hand={on_hand}"
                )

            delta = on_hand - previous
            if delta:
                await StockLedgerService(self.db).record_adjustment(
                    product_id=product_id,
                    delta=delta,
                    user_id=principal.id,
                    note=note or "Manual stock correction",
                )

            await self.db.commit()
        except OrderEngineError:
            await self.db.rollback()
            raise
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Database error correcting stock for {product_id}: {e}")
            raise InternalFailure("Stock correction failed: database error")

        logger.info(f"Stock for product {product_id} set to {on_hand} (was {previous}) by {principal.id}")
        await invalidate_after_commit(self.cache)
        return record
