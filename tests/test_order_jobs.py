"""Expiry sweeper: cancels unpaid online orders past their reservation window."""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import OperationalError

from app.core.exceptions import PermissionDeniedError
from app.jobs.order_jobs import cancel_expired_online_orders, run_expiry_sweep
from app.models.inventory import StockMovementType
from app.models.order import OrderStatus, PaymentStatus
from app.services import order_state_machine
from app.services.order_service import OrderService
from app.services.order_state_machine import OrderStateMachine


async def place_order(session_factory, cache, customer_id, product_id, quantity=2,
                      payment_method="online", minutes_ago=0):
    async with session_factory() as session:
        return await OrderService(session, cache).create_order(
            customer_id=customer_id,
            delivery_mode="pickup",
            payment_method=payment_method,
            items=[{"product_id": product_id, "quantity": quantity}],
            now=datetime.now(timezone.utc) - timedelta(minutes=minutes_ago),
        )


async def sweep(session_factory, cache, **kwargs):
    return await cancel_expired_online_orders(session_factory=session_factory, cache=cache, **kwargs)


async def test_expired_online_order_is_cancelled(session_factory, cache, store, customer):
    """Online order expires unpaid: reservation released once, payment voided."""
    product = await store.add_product("WIDGET", on_hand=10)
    order = await place_order(session_factory, cache, customer.id, product, quantity=3, minutes_ago=20)
    assert (await store.inventory(product)).reserved == 3
    invalidations_before = cache.invalidations

    assert await sweep(session_factory, cache) == 1

    stored = await store.order(order.id)
    assert stored.status == OrderStatus.CANCELLED.value
    assert stored.payment.status == PaymentStatus.VOIDED.value
    assert stored.status_history[-1].changed_by == customer.id
    assert (await store.inventory(product)).reserved == 0
    releases = await store.movements(order_id=order.id, movement_type=StockMovementType.RELEASE_RESERVE)
    assert [m.quantity for m in releases] == [3]
    assert cache.invalidations == invalidations_before + 1


async def test_sweep_skips_orders_that_do_not_qualify(session_factory, cache, store, customer, staff):
    product = await store.add_product("WIDGET", on_hand=20)
    fresh = await place_order(session_factory, cache, customer.id, product, minutes_ago=1)
    in_store = await place_order(session_factory, cache, customer.id, product, payment_method="in_store",
                                 minutes_ago=60)
    paid = await place_order(session_factory, cache, customer.id, product, minutes_ago=60)
    async with session_factory() as session:
        await OrderStateMachine(session, cache).set_status(paid.id, "paid", staff)

    assert await sweep(session_factory, cache) == 0

    assert (await store.order(fresh.id)).status == OrderStatus.PENDING_PAYMENT.value
    assert (await store.order(in_store.id)).status == OrderStatus.PENDING_PAYMENT.value
    assert (await store.order(paid.id)).status == OrderStatus.PAID.value
    assert (await store.inventory(product)).reserved == 6


async def test_sweep_uses_supplied_clock(session_factory, cache, store, customer):
    product = await store.add_product("WIDGET", on_hand=10)
    order = await place_order(session_factory, cache, customer.id, product, minutes_ago=1)

    assert await sweep(session_factory, cache) == 0
    assert await sweep(session_factory, cache, now=datetime.now(timezone.utc) + timedelta(minutes=30)) == 1
    assert (await store.order(order.id)).status == OrderStatus.CANCELLED.value


async def test_repeated_sweeps_are_idempotent(session_factory, cache, store, customer):
    product = await store.add_product("WIDGET", on_hand=10)
    order = await place_order(session_factory, cache, customer.id, product, quantity=4, minutes_ago=30)

    assert await sweep(session_factory, cache) == 1
    assert await sweep(session_factory, cache) == 0

    releases = await store.movements(order_id=order.id, movement_type=StockMovementType.RELEASE_RESERVE)
    assert len(releases) == 1
    assert (await store.inventory(product)).reserved == 0


async def test_batch_limit_takes_oldest_expiry_first(session_factory, cache, store, customer):
    product = await store.add_product("WIDGET", on_hand=30)
    oldest = await place_order(session_factory, cache, customer.id, product, minutes_ago=90)
    middle = await place_order(session_factory, cache, customer.id, product, minutes_ago=60)
    newest = await place_order(session_factory, cache, customer.id, product, minutes_ago=30)

    assert await sweep(session_factory, cache, limit=2) == 2

    assert (await store.order(oldest.id)).status == OrderStatus.CANCELLED.value
    assert (await store.order(middle.id)).status == OrderStatus.CANCELLED.value
    assert (await store.order(newest.id)).status == OrderStatus.PENDING_PAYMENT.value


async def test_failing_order_does_not_undo_earlier_cancellations(session_factory, cache, store, customer,
                                                                 monkeypatch):
    product = await store.add_product("WIDGET", on_hand=10)
    healthy = await place_order(session_factory, cache, customer.id, product, quantity=2, minutes_ago=60)
    broken = await place_order(session_factory, cache, customer.id, product, quantity=1, minutes_ago=30)

    real_record_change = order_state_machine._record_change

    def failing_record_change(db, order, new_status, user_id, notes):
        if order.id == broken.id:
            raise OperationalError("INSERT INTO order_status_history", {}, Exception("disk I/O error"))
        real_record_change(db, order, new_status, user_id, notes)

    monkeypatch.setattr(order_state_machine, "_record_change", failing_record_change)

    assert await sweep(session_factory, cache) == 1

    assert (await store.order(healthy.id)).status == OrderStatus.CANCELLED.value
    assert len(await store.movements(order_id=healthy.id, movement_type=StockMovementType.RELEASE_RESERVE)) == 1

    stored = await store.order(broken.id)
    assert stored.status == OrderStatus.PENDING_PAYMENT.value
    assert stored.payment.status == PaymentStatus.INITIATED.value
    assert await store.movements(order_id=broken.id, movement_type=StockMovementType.RELEASE_RESERVE) == []
    assert (await store.inventory(product)).reserved == 1


async def test_on_demand_sweep_requires_manager(session_factory, cache, store, customer, staff, manager):
    product = await store.add_product("WIDGET", on_hand=10)
    await place_order(session_factory, cache, customer.id, product, minutes_ago=60)

    for principal in (customer, staff):
        with pytest.raises(PermissionDeniedError):
            await run_expiry_sweep(principal, session_factory=session_factory, cache=cache)

    assert await run_expiry_sweep(manager, batch_limit=10, session_factory=session_factory, cache=cache) == 1
