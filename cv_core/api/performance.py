"""
卖家绩效 API 路由
"""
from typing import List

from fastapi import APIRouter, Depends, Query

from cv_core.services import PerformanceService
from .deps import get_performance_service
from .models import ApiResponse, ComputePerformanceRequest, PerformanceSnapshotResponse

router = APIRouter()


@router.post("/compute", response_model=ApiResponse[List[PerformanceSnapshotResponse]])
async def compute_performance(
    payload: ComputePerformanceRequest,
    performance_service: PerformanceService = Depends(get_performance_service)
):
    """计算统计周期内的卖家绩效并保存快照"""
    ratings = {r.shop_id: (r.rating, r.rating_count) for r in payload.ratings}
    snapshots = await performance_service.compute_seller_performance(
        payload.period_start,
        payload.period_end,
        ratings=ratings,
        period_label=payload.period_label,
    )
    return ApiResponse.success(
        [PerformanceSnapshotResponse.model_validate(s) for s in snapshots],
        metadata={"count": len(snapshots)},
    )


@router.get("/snapshots", response_model=ApiResponse[List[PerformanceSnapshotResponse]])
async def list_snapshots(
    period_label: str = Query(..., description="统计周期标签，如 2024-05"),
    performance_service: PerformanceService = Depends(get_performance_service)
):
    """查询某周期最近一次的排名快照"""
    snapshots = await performance_service.list_snapshots(period_label)
    return ApiResponse.success([PerformanceSnapshotResponse.model_validate(s) for s in snapshots])
