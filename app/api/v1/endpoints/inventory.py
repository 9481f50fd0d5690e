import uuid
from math import ceil
from typing import Optional

from fastapi import APIRouter, Query, Depends

from app.api.deps import DB, Cache, CurrentPrincipal, require_roles
from app.core.permissions import Role
from app.models.inventory import StockMovementType
from app.schemas.inventory import (
    StockCorrection,
    InventoryResponse,
    InventoryListItem,
    InventoryListResponse,
    StockMovementResponse,
    StockMovementListResponse,
)
from app.services.inventory_service import InventoryService
from app.services.stock_ledger_service import StockLedgerService


router = APIRouter(tags=["Inventory"])

ops_only = require_roles(Role.STAFF, Role.MANAGER, action="view inventory")


@router.get(
    "",
    response_model=InventoryListResponse,
    dependencies=[Depends(ops_only)],
)
async def list_inventory(
    db: DB,
    include_inactive: bool = Query(False),
):
    """Stock counters per product. Requires staff or manager."""
    records = await InventoryService(db).list_inventory(only_active=not include_inactive)
    items = [
        InventoryListItem(
            product_id=record.product_id,
            sku=record.product.sku,
            name=record.product.name,
            is_active=record.product.is_active,
            on_hand=record.on_hand,
            reserved=record.reserved,
            available=record.available,
            updated_at=record.updated_at,
        )
        for record in records
    ]
    return InventoryListResponse(items=items, total=len(items))


@router.patch(
    "/{product_id}",
    response_model=InventoryResponse,
)
async def correct_stock(
    product_id: uuid.UUID,
    data: StockCorrection,
    db: DB,
    cache: Cache,
    principal: CurrentPrincipal,
):
    """
    Overwrite a product's on-hand count.
    Reservations are left untouched. Requires staff or manager.
    """
    record = await InventoryService(db, cache).set_on_hand(
        product_id,
        data.on_hand,
        principal,
        note=data.note,
    )
    return InventoryResponse.model_validate(record)


@router.get(
    "/{product_id}/movements",
    response_model=StockMovementListResponse,
    dependencies=[Depends(ops_only)],
)
async def list_movements(
    product_id: uuid.UUID,
    db: DB,
    page: int = Query(1, ge=1),
    size: int = Query(50, ge=1, le=200),
    order_id: Optional[uuid.UUID] = Query(None),
    movement_type: Optional[StockMovementType] = Query(None),
):
    """Stock movement ledger for a product, newest first."""
    skip = (page - 1) * size
    movements, total = await StockLedgerService(db).get_movements(
        product_id=product_id,
        order_id=order_id,
        movement_type=movement_type,
        skip=skip,
        limit=size,
    )
    return StockMovementListResponse(
        items=[StockMovementResponse.model_validate(m) for m in movements],
        total=total,
        page=page,
        size=size,
        pages=ceil(total / size) if total > 0 else 1,
    )
