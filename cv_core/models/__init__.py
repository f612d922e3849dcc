"""
CraftVillages 数据模型包
"""
from .base import Base, utcnow
from .orders import Order, OrderItem, OrderStatusEvent
from .settlements import ShopSettlement, SettlementAdjustment
from .commission import CommissionConfig, CommissionHistoryEntry
from .returns import ReturnRequest, ReturnItem, ReturnStatusEvent
from .performance import SellerPerformanceSnapshot

__all__ = [
    "Base",
    "utcnow",
    "Order",
    "OrderItem",
    "OrderStatusEvent",
    "ShopSettlement",
    "SettlementAdjustment",
    "CommissionConfig",
    "CommissionHistoryEntry",
    "ReturnRequest",
    "ReturnItem",
    "ReturnStatusEvent",
    "SellerPerformanceSnapshot",
]
