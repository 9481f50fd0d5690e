from datetime import datetime
from typing import List, Optional
import uuid

from pydantic import BaseModel, Field

from app.schemas.base import BaseResponseSchema


class StockCorrection(BaseModel):
    """Manual on-hand correction."""
    on_hand: int = Field(..., ge=0, strict=True)
    note: Optional[str] = Field(None, max_length=500)


class InventoryResponse(BaseResponseSchema):
    product_id: uuid.UUID
    on_hand: int
    reserved: int
    available: int
    updated_at: datetime


class InventoryListItem(InventoryResponse):
    sku: str
    name: str
    is_active: bool


class InventoryListResponse(BaseModel):
    items: List[InventoryListItem]
    total: int


class StockMovementResponse(BaseResponseSchema):
    id: uuid.UUID
    product_id: uuid.UUID
    order_id: Optional[uuid.UUID] = None
    user_id: Optional[uuid.UUID] = None
    movement_type: str
    quantity: int
    note: Optional[str] = None
    created_at: datetime


class StockMovementListResponse(BaseModel):
    items: List[StockMovementResponse]
    total: int
    page: int
    size: int
    pages: int
