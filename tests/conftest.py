"""
Shared fixtures for order engine tests.

Every test gets its own SQLite database file under tmp_path, created with
the same engine setup the application uses (BEGIN IMMEDIATE, busy timeout).
SQLite serializes writers per transaction, so tests open a short-lived
session per step instead of holding one across service calls.
"""

import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("SCHEDULER_ENABLED", "false")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import uuid
from decimal import Decimal
from typing import List, Optional

import pytest
from sqlalchemy import select
from sqlalchemy.orm import selectinload

from app.core.permissions import Principal, Role
from app.database import build_engine, build_session_factory, init_db
from app.models.inventory import InventoryRecord, StockMovement, StockMovementType
from app.models.order import Order
from app.models.product import Product
from app.services.cache_service import CatalogCache, InMemoryCache


# ====================
# Database
# ====================


@pytest.fixture
async def engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'orders.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


class RecordingCache(CatalogCache):
    """Catalog cache that counts invalidate() calls."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.invalidations = 0

    async def invalidate(self) -> int:
        self.invalidations += 1
        return await super().invalidate()


@pytest.fixture
def cache():
    """Catalog cache with a long TTL so invalidation is the only way entries vanish."""
    return RecordingCache(InMemoryCache(), namespace="test", ttl=60)


# ====================
# Principals
# ====================


@pytest.fixture
def customer():
    return Principal(id=uuid.uuid4(), role=Role.CUSTOMER)


@pytest.fixture
def staff():
    return Principal(id=uuid.uuid4(), role=Role.STAFF)


@pytest.fixture
def manager():
    return Principal(id=uuid.uuid4(), role=Role.MANAGER)


# ====================
# Data access helpers
# ====================


class Store:
    """Seeds and reads rows, one session per call."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    async def add_product(
        self,
        sku: str,
        on_hand: Optional[int] = 10,
        price: str = "25.00",
        is_active: bool = True,
        reserved: int = 0,
    ) -> uuid.UUID:
        async with self.session_factory() as session:
            product = Product(sku=sku, name=f"Product {sku}", price=Decimal(price), is_active=is_active)
            session.add(product)
            await session.flush()
            if on_hand is not None:
                session.add(InventoryRecord(product_id=product.id, on_hand=on_hand, reserved=reserved))
            await session.commit()
            return product.id

    async def inventory(self, product_id: uuid.UUID) -> Optional[InventoryRecord]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(InventoryRecord).where(InventoryRecord.product_id == product_id)
            )
            record = result.scalar_one_or_none()
            await session.commit()
            return record

    async def set_counters(self, product_id: uuid.UUID, on_hand: int, reserved: int) -> None:
        async with self.session_factory() as session:
            record = await session.get(InventoryRecord, product_id)
            record.on_hand = on_hand
            record.reserved = reserved
            await session.commit()

    async def order(self, order_id: uuid.UUID) -> Optional[Order]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Order)
                .where(Order.id == order_id)
                .options(
                    selectinload(Order.items),
                    selectinload(Order.payment),
                    selectinload(Order.status_history),
                )
            )
            order = result.scalar_one_or_none()
            await session.commit()
            return order

    async def order_count(self) -> int:
        async with self.session_factory() as session:
            result = await session.execute(select(Order.id))
            count = len(result.scalars().all())
            await session.commit()
            return count

    async def movements(
        self,
        product_id: Optional[uuid.UUID] = None,
        order_id: Optional[uuid.UUID] = None,
        movement_type: Optional[StockMovementType] = None,
    ) -> List[StockMovement]:
        async with self.session_factory() as session:
            stmt = select(StockMovement)
            if product_id:
                stmt = stmt.where(StockMovement.product_id == product_id)
            if order_id:
                stmt = stmt.where(StockMovement.order_id == order_id)
            if movement_type:
                stmt = stmt.where(StockMovement.movement_type == movement_type.value)
            result = await session.execute(stmt.order_by(StockMovement.created_at))
            rows = list(result.scalars().all())
            await session.commit()
            return rows


@pytest.fixture
def store(session_factory):
    return Store(session_factory)
