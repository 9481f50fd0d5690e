from typing import Any, Dict, List, Optional, Sequence, Tuple
from datetime import datetime, timedelta, timezone
from decimal import Decimal
import uuid
import logging

from sqlalchemy import select, func, and_
from sqlalchemy.orm import selectinload
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.exc import SQLAlchemyError

from app.config import settings
from app.core.exceptions import (
    OrderEngineError, ValidationFailed, InsufficientStockError, InternalFailure,
)
from app.models.order import (
    Order, OrderItem, OrderStatus, OrderStatusHistory,
    Payment, PaymentStatus, PaymentMethod, DeliveryMode,
)
from app.models.product import Product
from app.services.cache_service import CatalogCache, invalidate_after_commit
from app.services.inventory_service import InventoryService
from app.services.stock_ledger_service import StockLedgerService

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


def _line_value(line: Any, key: str) -> Any:
    if isinstance(line, dict):
        return line.get(key)
    return getattr(line, key, None)


def _enum_value(enum_cls, value, field: str) -> str:
    """Coerce an enum member or its string value, rejecting anything else."""
    if isinstance(value, enum_cls):
        return value.value
    try:
        return enum_cls(str(value).strip().lower()).value
    except ValueError:
        allowed = [m.value for m in enum_cls]
        raise ValidationFailed(
            f"Invalid {field} '{value}'",
            details={field: value, "allowed": allowed},
        )


def _parse_uuid(value, field: str) -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError):
        raise ValidationFailed(f"Invalid {field} '{value}'", details={field: str(value)})


def merge_lines(items: Sequence[Any]) -> List[Tuple[uuid.UUID, int]]:
    """
    Validate order lines and merge repeated products by summing quantities.

    Keeps first-seen order. Raises ValidationFailed for an empty list, an
    unparseable product reference or a quantity that is not a positive integer.
    """
    if not items:
        raise ValidationFailed("Order must contain at least one item")

    merged: Dict[uuid.UUID, int] = {}
    for index, line in enumerate(items):
        product_id = _parse_uuid(_line_value(line, "product_id"), "product_id")
        quantity = _line_value(line, "quantity")
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
            raise ValidationFailed(
                "Quantity must be a positive integer",
                details={"line": index, "product_id": str(product_id), "quantity": quantity},
            )
        merged[product_id] = merged.get(product_id, 0) + quantity

    return list(merged.items())


class OrderService:
    """Reservation engine: creates orders and reserves their stock atomically."""

    def __init__(self, db: AsyncSession, cache: Optional[CatalogCache] = None):
        self.db = db
        self.cache = cache

    # ==================== ORDER NUMBER GENERATION ====================

    @staticmethod
    def generate_order_number(now: Optional[datetime] = None) -> str:
        """Generate unique order number: ORD-YYYYMMDD-XXXXXXXX"""
        today = (now or datetime.now(timezone.utc)).strftime("%Y%m%d")
        return f"ORD-{today}-{uuid.uuid4().hex[:8].upper()}"

    # ==================== READS ====================

    async def get_order(self, order_id: uuid.UUID) -> Optional[Order]:
        """Get order by ID with lines, payment and status history."""
        stmt = (
            select(Order)
            .where(Order.id == order_id)
            .options(
                selectinload(Order.items),
                selectinload(Order.payment),
                selectinload(Order.status_history),
            )
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def list_orders(
        self,
        customer_id: Optional[uuid.UUID] = None,
        status: Optional[str] = None,
        skip: int = 0,
        limit: int = 20,
    ) -> Tuple[List[Order], int]:
        """Get paginated orders, newest first."""
        stmt = select(Order).options(selectinload(Order.items), selectinload(Order.payment))

        filters = []
        if customer_id:
            filters.append(Order.customer_id == customer_id)
        if status:
            filters.append(Order.status == status)
        if filters:
            stmt = stmt.where(and_(*filters))

        # Count
        count_stmt = select(func.count(Order.id))
        if filters:
            count_stmt = count_stmt.where(and_(*filters))
        total = (await self.db.execute(count_stmt)).scalar() or 0

        # Paginate
        stmt = stmt.order_by(Order.created_at.desc()).offset(skip).limit(limit)
        result = await self.db.execute(stmt)
        return list(result.scalars().unique().all()), total

    # ==================== CREATE ====================

    async def create_order(
        self,
        customer_id: uuid.UUID,
        delivery_mode,
        payment_method,
        address_id: Optional[uuid.UUID] = None,
        items: Sequence[Any] = (),
        now: Optional[datetime] = None,
    ) -> Order:
        """
        Create an order and reserve its stock in one transaction.

        Input is validated before any lock is taken. All inventory rows the
        order touches are then locked in one statement, stock is checked for
        every line, and the order, its lines, reservations, ledger rows and
        payment record are committed together. Nothing is written if any
        line fails.

        Raises:
            ValidationFailed: malformed input, unknown or inactive product,
                product without an inventory record
            InsufficientStockError: first line whose available stock is short
            InternalFailure: unexpected database error
        """
        customer_id = _parse_uuid(customer_id, "customer_id")
        delivery_mode = _enum_value(DeliveryMode, delivery_mode, "delivery_mode")
        payment_method = _enum_value(PaymentMethod, payment_method, "payment_method")
        if delivery_mode == DeliveryMode.DELIVERY.value and not address_id:
            raise ValidationFailed(
                "Delivery orders require an address",
                details={"delivery_mode": delivery_mode},
            )
        if address_id is not None:
            address_id = _parse_uuid(address_id, "address_id")
        lines = merge_lines(items)

        now = now or datetime.now(timezone.utc)
        inventory = InventoryService(self.db, self.cache)
        ledger = StockLedgerService(self.db)

        try:
            records = await inventory.lock_records([product_id for product_id, _ in lines])

            products = await self._load_products([product_id for product_id, _ in lines])
            for product_id, quantity in lines:
                product = products.get(product_id)
                if product is None or not product.is_active:
                    raise ValidationFailed(
                        f"Product {product_id} is not available for sale",
                        details={"product_id": str(product_id)},
                    )
                if product_id not in records:
                    raise ValidationFailed(
                        f"Product {product.sku} has no inventory record",
                        details={"product_id": str(product_id)},
                    )

            for product_id, quantity in lines:
                record = records[product_id]
                if record.available < quantity:
                    raise InsufficientStockError(
                        product_id=product_id,
                        available=record.available,
                        requested=quantity,
                        product_name=products[product_id].name,
                    )

            subtotal = sum(
                (products[product_id].price * quantity for product_id, quantity in lines),
                Decimal("0.00"),
            ).quantize(CENT)
            shipping_cost = Decimal("0.00")

            order = Order(
                order_number=self.generate_order_number(now),
                customer_id=customer_id,
                delivery_mode=delivery_mode,
                payment_method=payment_method,
                address_id=address_id,
                status=OrderStatus.PENDING_PAYMENT.value,
                subtotal=subtotal,
                shipping_cost=shipping_cost,
                total=subtotal + shipping_cost,
                created_at=now,
                updated_at=now,
            )
            if payment_method == PaymentMethod.ONLINE.value:
                order.expires_at = now + timedelta(minutes=settings.RESERVATION_WINDOW_MINUTES)
            self.db.add(order)
            await self.db.flush()

            for product_id, quantity in lines:
                product = products[product_id]
                self.db.add(OrderItem(
                    order_id=order.id,
                    product_id=product_id,
                    product_sku=product.sku,
                    product_name=product.name,
                    quantity=quantity,
                    unit_price=product.price,
                    line_total=(product.price * quantity).quantize(CENT),
                    created_at=now,
                ))
                inventory.reserve(records[product_id], quantity)
                await ledger.record_reserve(
                    product_id=product_id,
                    order_id=order.id,
                    quantity=quantity,
                    user_id=customer_id,
                    note=f"Reserved for {order.order_number}",
                )

            await self._ensure_payment(order)

            self.db.add(OrderStatusHistory(
                order_id=order.id,
                from_status=None,
                to_status=OrderStatus.PENDING_PAYMENT.value,
                changed_by=customer_id,
                notes="Order created",
                created_at=now,
            ))

            await self.db.commit()

        except OrderEngineError:
            await self.db.rollback()
            raise
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Database error creating order: {e}")
            raise InternalFailure("Order creation failed: database error")
        except Exception as e:
            await self.db.rollback()
            logger.error(f"Unexpected error creating order: {e}")
            raise

        logger.info(
            f"Order {order.order_number} created for customer {customer_id} "
            f"with {len(lines)} line(s), total {order.total}"
        )
        await invalidate_after_commit(self.cache)
        return await self.get_order(order.id)

    # ==================== HELPERS ====================

    async def _load_products(self, product_ids: List[uuid.UUID]) -> Dict[uuid.UUID, Product]:
        result = await self.db.execute(select(Product).where(Product.id.in_(product_ids)))
        return {product.id: product for product in result.scalars().all()}

    async def _ensure_payment(self, order: Order) -> Payment:
        """Create the order's payment record unless one already exists."""
        result = await self.db.execute(select(Payment).where(Payment.order_id == order.id))
        payment = result.scalar_one_or_none()
        if payment is not None:
            return payment

        provider = (
            settings.ONLINE_PAYMENT_PROVIDER
            if order.payment_method == PaymentMethod.ONLINE.value
            else settings.IN_STORE_PAYMENT_PROVIDER
        )
        payment = Payment(
            order_id=order.id,
            provider=provider,
            status=PaymentStatus.INITIATED.value,
            amount=order.total,
        )
        self.db.add(payment)
        return payment
