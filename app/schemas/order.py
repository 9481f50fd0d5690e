from datetime import datetime
from decimal import Decimal
from typing import List, Optional
import uuid

from pydantic import BaseModel, Field, field_validator

from app.models.order import DeliveryMode, PaymentMethod
from app.schemas.base import BaseResponseSchema, BaseCreateSchema


# ==================== REQUESTS ====================

class OrderItemCreate(BaseCreateSchema):
    """One requested line. Repeated products are merged by the service."""
    product_id: uuid.UUID
    quantity: int = Field(..., ge=1, strict=True)


class OrderCreate(BaseCreateSchema):
    """Order creation request. The customer is the authenticated caller."""
    delivery_mode: DeliveryMode
    payment_method: PaymentMethod
    address_id: Optional[uuid.UUID] = Field(None, description="Required for delivery orders")
    items: List[OrderItemCreate] = Field(..., min_length=1)

    @field_validator("delivery_mode", "payment_method", mode="before")
    @classmethod
    def normalize_choice(cls, v):
        """Choices are matched case-insensitively, as the order service does."""
        if isinstance(v, str):
            return v.strip().lower()
        return v


class OrderStatusUpdate(BaseModel):
    """Target status; synonyms such as 'dispatched' or 'canceled' are accepted."""
    status: str = Field(..., min_length=1, max_length=50)
    notes: Optional[str] = Field(None, max_length=500)


class ExpirySweepRequest(BaseModel):
    limit: Optional[int] = Field(None, ge=1, le=1000)


# ==================== RESPONSES ====================

class OrderItemResponse(BaseResponseSchema):
    id: uuid.UUID
    product_id: uuid.UUID
    product_sku: str
    product_name: str
    quantity: int
    unit_price: Decimal
    line_total: Decimal


class PaymentResponse(BaseResponseSchema):
    id: uuid.UUID
    provider: str
    status: str
    amount: Decimal
    created_at: datetime
    completed_at: Optional[datetime] = None


class StatusHistoryResponse(BaseResponseSchema):
    id: uuid.UUID
    from_status: Optional[str] = None
    to_status: str
    changed_by: Optional[uuid.UUID] = None
    notes: Optional[str] = None
    created_at: datetime


class OrderResponse(BaseResponseSchema):
    id: uuid.UUID
    order_number: str
    customer_id: uuid.UUID
    status: str
    delivery_mode: str
    payment_method: str
    address_id: Optional[uuid.UUID] = None
    subtotal: Decimal
    shipping_cost: Decimal
    total: Decimal
    expires_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime
    shipped_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    items: List[OrderItemResponse] = []
    payment: Optional[PaymentResponse] = None


class OrderDetailResponse(OrderResponse):
    status_history: List[StatusHistoryResponse] = []


class OrderListResponse(BaseModel):
    items: List[OrderResponse]
    total: int
    page: int
    size: int
    pages: int


class ExpirySweepResponse(BaseModel):
    cancelled: int
