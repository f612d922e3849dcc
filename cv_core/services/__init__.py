"""
CraftVillages 核心服务模块
"""

from .base import BaseService
from .commission import CommissionService, ResolvedCommission
from .settlements import SettlementService
from .orders import OrdersService
from .returns import ReturnsService
from .performance import PerformanceService

__all__ = [
    "BaseService",
    "CommissionService",
    "ResolvedCommission",
    "SettlementService",
    "OrdersService",
    "ReturnsService",
    "PerformanceService",
]
