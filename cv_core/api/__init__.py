"""
API 路由
"""
from fastapi import APIRouter

from .orders import router as orders_router
from .commission import router as commission_router
from .returns import router as returns_router
from .performance import router as performance_router

api_router = APIRouter()

api_router.include_router(orders_router, prefix="/orders", tags=["Orders"])
api_router.include_router(commission_router, prefix="/commission", tags=["Commission"])
api_router.include_router(returns_router, prefix="/returns", tags=["Returns"])
api_router.include_router(performance_router, prefix="/performance", tags=["Performance"])

__all__ = ["api_router"]
