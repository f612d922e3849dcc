"""
API 依赖注入：服务实例共用应用上的数据库管理器
"""
from fastapi import Request

from cv_core.services import (
    CommissionService, OrdersService, PerformanceService, ReturnsService, SettlementService
)


def _db_manager(request: Request):
    return request.app.state.db_manager


async def get_orders_service(request: Request) -> OrdersService:
    """依赖注入：获取订单服务"""
    return OrdersService(db_manager=_db_manager(request))


async def get_settlement_service(request: Request) -> SettlementService:
    """依赖注入：获取结算服务"""
    return SettlementService(db_manager=_db_manager(request))


async def get_commission_service(request: Request) -> CommissionService:
    """依赖注入：获取佣金服务"""
    return CommissionService(db_manager=_db_manager(request))


async def get_returns_service(request: Request) -> ReturnsService:
    """依赖注入：获取退货服务"""
    return ReturnsService(db_manager=_db_manager(request))


async def get_performance_service(request: Request) -> PerformanceService:
    """依赖注入：获取绩效服务"""
    return PerformanceService(db_manager=_db_manager(request))
