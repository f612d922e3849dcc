"""
佣金管理 API 路由
"""
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from cv_core.services import CommissionService
from .deps import get_commission_service
from .models import (
    ApiResponse, CommissionConfigResponse, CommissionHistoryResponse, CommissionResponse,
    UpdateGlobalCommissionRequest, UpdateShopCommissionRequest
)

router = APIRouter()


@router.get("/resolve", response_model=ApiResponse[CommissionResponse])
async def resolve_commission(
    shop_id: int = Query(..., description="店铺ID"),
    at: Optional[datetime] = Query(None, description="解析时刻 (ISO8601)，默认当前时间"),
    commission_service: CommissionService = Depends(get_commission_service)
):
    """解析店铺在某时刻适用的佣金"""
    resolved = await commission_service.resolve(shop_id, at)
    return ApiResponse.success(CommissionResponse.model_validate(resolved))


@router.put("/shops/{shop_id}", response_model=ApiResponse[CommissionHistoryResponse])
async def update_shop_commission(
    shop_id: int,
    payload: UpdateShopCommissionRequest,
    commission_service: CommissionService = Depends(get_commission_service)
):
    """设置店铺自定义佣金"""
    entry = await commission_service.update_shop_rate(
        shop_id,
        payload.rate,
        payload.reason,
        note=payload.note,
        actor_id=payload.actor_id,
        fee_type=payload.fee_type,
        minimum_fee=payload.minimum_fee,
        maximum_fee=payload.maximum_fee,
    )
    return ApiResponse.success(CommissionHistoryResponse.model_validate(entry))


@router.put("/global", response_model=ApiResponse[CommissionHistoryResponse])
async def update_global_commission(
    payload: UpdateGlobalCommissionRequest,
    commission_service: CommissionService = Depends(get_commission_service)
):
    """更新全局佣金，可选覆盖所有店铺自定义配置"""
    entry = await commission_service.update_global_rate(
        payload.rate,
        payload.reason,
        note=payload.note,
        actor_id=payload.actor_id,
        override_shop_configs=payload.override_shop_configs,
        fee_type=payload.fee_type,
        minimum_fee=payload.minimum_fee,
        maximum_fee=payload.maximum_fee,
    )
    return ApiResponse.success(
        CommissionHistoryResponse.model_validate(entry),
        metadata={"superseded_count": entry.superseded_count or 0},
    )


@router.get("/history", response_model=ApiResponse[List[CommissionHistoryResponse]])
async def get_commission_history(
    shop_id: Optional[int] = Query(None, description="店铺ID，不传则返回全局变更"),
    limit: int = Query(50, ge=1, le=200, description="每页大小"),
    offset: int = Query(0, ge=0, description="偏移量"),
    commission_service: CommissionService = Depends(get_commission_service)
):
    """佣金变更历史（新到旧）"""
    entries = await commission_service.get_history(shop_id, limit=limit, offset=offset)
    return ApiResponse.success(
        [CommissionHistoryResponse.model_validate(e) for e in entries],
        metadata={"limit": limit, "offset": offset},
    )


@router.get("/shops", response_model=ApiResponse[List[CommissionConfigResponse]])
async def list_shop_commissions(
    limit: int = Query(50, ge=1, le=200, description="每页大小"),
    offset: int = Query(0, ge=0, description="偏移量"),
    include_inactive: bool = Query(False, description="是否包含已关闭的配置"),
    commission_service: CommissionService = Depends(get_commission_service)
):
    """店铺自定义佣金列表"""
    configs = await commission_service.list_shop_configs(
        limit=limit, offset=offset, include_inactive=include_inactive
    )
    return ApiResponse.success(
        [CommissionConfigResponse.model_validate(c) for c in configs],
        metadata={"limit": limit, "offset": offset, "include_inactive": include_inactive},
    )
