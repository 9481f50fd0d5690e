from typing import Optional
import uuid
from math import ceil

from fastapi import APIRouter, HTTPException, status, Query, Depends

from app.api.deps import DB, Cache, CurrentPrincipal, SessionFactory, require_roles
from app.core.permissions import Principal, Role
from app.jobs.order_jobs import run_expiry_sweep
from app.models.order import Order
from app.schemas.order import (
    OrderCreate,
    OrderStatusUpdate,
    OrderResponse,
    OrderDetailResponse,
    OrderListResponse,
    ExpirySweepRequest,
    ExpirySweepResponse,
)
from app.services.order_service import OrderService
from app.services.order_state_machine import OrderStateMachine, normalize_status


router = APIRouter(tags=["Orders"])


def _ensure_visible(order: Optional[Order], principal: Principal, order_id: uuid.UUID) -> Order:
    """Customers only see their own orders; others get the same 404 as a missing one."""
    if order is None or (not principal.is_ops and order.customer_id != principal.id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Order {order_id} not found",
        )
    return order


@router.post(
    "",
    response_model=OrderDetailResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_order(
    data: OrderCreate,
    db: DB,
    cache: Cache,
    principal: CurrentPrincipal,
):
    """
    Create an order for the authenticated customer and reserve its stock.
    Online orders expire if unpaid within the reservation window.
    """
    service = OrderService(db, cache)
    order = await service.create_order(
        customer_id=principal.id,
        delivery_mode=data.delivery_mode,
        payment_method=data.payment_method,
        address_id=data.address_id,
        items=data.items,
    )
    return OrderDetailResponse.model_validate(order)


@router.get(
    "",
    response_model=OrderListResponse,
)
async def list_orders(
    db: DB,
    principal: CurrentPrincipal,
    page: int = Query(1, ge=1),
    size: int = Query(20, ge=1, le=100),
    customer_id: Optional[uuid.UUID] = Query(None),
    status_filter: Optional[str] = Query(None, alias="status"),
):
    """
    Get paginated list of orders.
    Customers always get their own orders only.
    """
    if not principal.is_ops:
        customer_id = principal.id

    service = OrderService(db)
    skip = (page - 1) * size

    orders, total = await service.list_orders(
        customer_id=customer_id,
        status=normalize_status(status_filter) if status_filter else None,
        skip=skip,
        limit=size,
    )

    return OrderListResponse(
        items=[OrderResponse.model_validate(o) for o in orders],
        total=total,
        page=page,
        size=size,
        pages=ceil(total / size) if total > 0 else 1,
    )


@router.post(
    "/expired/cancel",
    response_model=ExpirySweepResponse,
    dependencies=[Depends(require_roles(Role.MANAGER, action="run the expired orders sweep"))],
)
async def cancel_expired_orders(
    principal: CurrentPrincipal,
    cache: Cache,
    session_factory: SessionFactory,
    data: Optional[ExpirySweepRequest] = None,
):
    """Run the expired online orders sweep now. Managers only."""
    cancelled = await run_expiry_sweep(
        principal,
        batch_limit=data.limit if data else None,
        session_factory=session_factory,
        cache=cache,
    )
    return ExpirySweepResponse(cancelled=cancelled)


@router.get(
    "/{order_id}",
    response_model=OrderDetailResponse,
)
async def get_order(
    order_id: uuid.UUID,
    db: DB,
    principal: CurrentPrincipal,
):
    """Get order details with lines, payment and status history."""
    service = OrderService(db)
    order = _ensure_visible(await service.get_order(order_id), principal, order_id)
    return OrderDetailResponse.model_validate(order)


@router.patch(
    "/{order_id}/status",
    response_model=OrderDetailResponse,
)
async def update_order_status(
    order_id: uuid.UUID,
    data: OrderStatusUpdate,
    db: DB,
    cache: Cache,
    principal: CurrentPrincipal,
):
    """
    Change order status.
    Shipping requires a manager; every other change requires staff or manager.
    """
    machine = OrderStateMachine(db, cache)
    await machine.set_status(order_id, data.status, principal, notes=data.notes)

    order = await OrderService(db).get_order(order_id)
    return OrderDetailResponse.model_validate(order)
