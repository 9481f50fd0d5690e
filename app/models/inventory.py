"""Inventory models: per-product stock counters and the movement ledger."""
from enum import Enum
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Optional
import uuid

from sqlalchemy import String, Text, Integer, DateTime, ForeignKey, Index, CheckConstraint, text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base
from app.db_types import UUIDType

if TYPE_CHECKING:
    from app.models.product import Product


class InventoryRecord(Base):
    """
    Stock counters for one product.

    on_hand counts physically held units, reserved counts units promised to
    open orders. Both are only changed under a row lock.
    """

    __tablename__ = "inventory"
    __table_args__ = (
        CheckConstraint("on_hand >= 0", name="ck_inventory_on_hand_non_negative"),
        CheckConstraint("reserved >= 0", name="ck_inventory_reserved_non_negative"),
    )

    product_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("products.id", ondelete="RESTRICT"),
        primary_key=True,
    )

    on_hand: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    reserved: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    product: Mapped["Product"] = relationship("Product", back_populates="inventory")

    @property
    def available(self) -> int:
        """Units that can still be promised to new orders."""
        return max(self.on_hand - self.reserved, 0)

    @property
    def is_out_of_stock(self) -> bool:
        return self.available == 0

    def __repr__(self) -> str:
        return f"<InventoryRecord(product={self.product_id}, on_hand={self.on_hand}, reserved={self.reserved})>"


class StockMovementType(str, Enum):
    """Stock movement type enum."""
    RESERVE = "reserve"  # Units promised to a new order
    RELEASE_RESERVE = "release_reserve"  # Promise withdrawn (cancellation)
    OUT = "out"  # Units physically left with a shipment
    ADJUSTMENT = "adjustment"  # Manual on-hand correction


# Movement types that may be written at most once per (product, order)
ONCE_PER_ORDER_MOVEMENTS = (StockMovementType.RELEASE_RESERVE, StockMovementType.OUT)


class StockMovement(Base):
    """Append-only stock movement ledger."""

    __tablename__ = "stock_movements"
    __table_args__ = (
        Index(
            "uq_stock_movement_once_per_order",
            "product_id", "order_id", "movement_type",
            unique=True,
            postgresql_where=text("movement_type IN ('release_reserve', 'out')"),
            sqlite_where=text("movement_type IN ('release_reserve', 'out')"),
        ),
        Index("ix_stock_movement_order", "order_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUIDType, primary_key=True, default=uuid.uuid4)

    product_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("products.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    order_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUIDType,
        ForeignKey("orders.id", ondelete="RESTRICT"),
        nullable=True,
        comment="Empty for manual adjustments",
    )
    user_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUIDType,
        nullable=True,
        comment="Acting principal",
    )

    movement_type: Mapped[str] = mapped_column(
        String(30), nullable=False,
        comment="reserve, release_reserve, out, adjustment"
    )
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    def __repr__(self) -> str:
        return f"<StockMovement({self.movement_type}, product={self.product_id}, qty={self.quantity})>"
