# Services module
from app.services.cache_service import CatalogCache, get_catalog_cache
from app.services.stock_ledger_service import StockLedgerService
from app.services.inventory_service import InventoryService
from app.services.order_service import OrderService
from app.services.order_state_machine import OrderStateMachine

__all__ = [
    "CatalogCache",
    "get_catalog_cache",
    "StockLedgerService",
    "InventoryService",
    "OrderService",
    "OrderStateMachine",
]
