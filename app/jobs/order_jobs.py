"""
Order Processing Jobs

Background jobs for managing order-related tasks:
- Expiry of unpaid online orders (reservation window elapsed)
"""

import logging
from typing import List, Optional
from datetime import datetime, timezone
import uuid

from sqlalchemy import select, and_
from sqlalchemy.orm import selectinload
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import settings
from app.core.permissions import Principal, ELEVATED_ROLES, require_role
from app.database import get_db_session
from app.models.order import Order, OrderStatus, PaymentMethod
from app.services.cache_service import CatalogCache, get_catalog_cache, invalidate_after_commit
from app.services.order_state_machine import apply_cancellation

logger = logging.getLogger(__name__)


def _expired_conditions(now: datetime):
    # Compared in SQL so naive (SQLite) and aware (PostgreSQL) timestamps behave the same
    return and_(
        Order.status == OrderStatus.PENDING_PAYMENT.value,
        Order.payment_method == PaymentMethod.ONLINE.value,
        Order.expires_at.is_not(None),
        Order.expires_at <= now,
    )


async def _find_expired_order_ids(session: AsyncSession, now: datetime, limit: int) -> List[uuid.UUID]:
    result = await session.execute(
        select(Order.id)
        .where(_expired_conditions(now))
        .order_by(Order.expires_at.asc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def _cancel_if_still_expired(session: AsyncSession, order_id: uuid.UUID, now: datetime) -> bool:
    """Re-check the order under lock and cancel it. False when it no longer qualifies."""
    result = await session.execute(
        select(Order)
        .where(Order.id == order_id, _expired_conditions(now))
        .options(selectinload(Order.items), selectinload(Order.payment))
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    order = result.scalar_one_or_none()
    if order is None:
        await session.rollback()
        return False

    await apply_cancellation(
        session,
        order,
        user_id=order.customer_id,
        notes="Payment not received within the reservation window",
    )
    await session.commit()
    logger.info(f"Order {order.order_number}: expired, reservation released")
    return True


async def cancel_expired_online_orders(
    limit: Optional[int] = None,
    now: Optional[datetime] = None,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    cache: Optional[CatalogCache] = None,
) -> int:
    """
    Cancel unpaid online orders whose reservation window has elapsed.

    Oldest expiry first, at most ``limit`` orders per pass. Each order is
    cancelled in its own transaction; one that fails is rolled back,
    logged and left for a later pass, and the sweep moves on.

    Returns the number of orders cancelled.
    """
    limit = limit or settings.EXPIRY_SWEEP_BATCH_SIZE
    now = now or datetime.now(timezone.utc)
    cache = cache if cache is not None else get_catalog_cache()

    logger.info("Starting expired orders sweep...")
    start_time = datetime.now(timezone.utc)

    async with get_db_session(session_factory) as session:
        candidate_ids = await _find_expired_order_ids(session, now, limit)
        await session.commit()

    cancelled_count = 0
    for order_id in candidate_ids:
        try:
            async with get_db_session(session_factory) as session:
                cancelled = await _cancel_if_still_expired(session, order_id, now)
        except Exception as e:
            logger.error(f"Error expiring order {order_id}: {e}")
            continue

        if cancelled:
            cancelled_count += 1
            await invalidate_after_commit(cache)

    elapsed = (datetime.now(timezone.utc) - start_time).total_seconds()
    logger.info(
        f"Expired orders sweep completed: "
        f"{len(candidate_ids)} candidates, {cancelled_count} cancelled "
        f"in {elapsed:.2f}s"
    )
    return cancelled_count


async def run_expiry_sweep(
    principal: Principal,
    batch_limit: Optional[int] = None,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    cache: Optional[CatalogCache] = None,
) -> int:
    """On-demand sweep. Managers only."""
    require_role(principal, ELEVATED_ROLES, "run the expired orders sweep")
    logger.info(f"Expired orders sweep requested by {principal.id}")
    return await cancel_expired_online_orders(
        limit=batch_limit,
        session_factory=session_factory,
        cache=cache,
    )
