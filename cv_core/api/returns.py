"""
退货退款（RMA）API 路由
"""
from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from cv_core.models.enums import ReturnStatus
from cv_core.services import ReturnsService
from .deps import get_returns_service
from .models import (
    ApiResponse, CreateReturnRequest, ReturnResponse, ReturnStatisticsResponse,
    ReturnTransitionRequest
)

router = APIRouter()


@router.post("", response_model=ApiResponse[ReturnResponse], status_code=201)
async def create_return(
    payload: CreateReturnRequest,
    returns_service: ReturnsService = Depends(get_returns_service)
):
    """买家发起退货"""
    rma = await returns_service.create_return(payload.model_dump())
    return ApiResponse.success(ReturnResponse.model_validate(rma))


@router.get("/shops/{shop_id}", response_model=ApiResponse[List[ReturnResponse]])
async def list_shop_returns(
    shop_id: int,
    status: Optional[ReturnStatus] = Query(None, description="按退货单状态过滤"),
    limit: int = Query(20, ge=1, le=100, description="每页大小"),
    offset: int = Query(0, ge=0, description="偏移量"),
    returns_service: ReturnsService = Depends(get_returns_service)
):
    """卖家查看本店退货单（新到旧）"""
    returns = await returns_service.list_returns_by_shop(shop_id, status=status, limit=limit, offset=offset)
    return ApiResponse.success(
        [ReturnResponse.model_validate(r) for r in returns],
        metadata={"limit": limit, "offset": offset},
    )


@router.get("/shops/{shop_id}/statistics", response_model=ApiResponse[ReturnStatisticsResponse])
async def get_shop_return_statistics(
    shop_id: int,
    returns_service: ReturnsService = Depends(get_returns_service)
):
    """店铺退货单按状态统计"""
    counts = dict(await returns_service.return_statistics(shop_id))
    total = counts.pop("total")
    return ApiResponse.success(ReturnStatisticsResponse(shop_id=shop_id, counts=counts, total=total))


@router.get("/{rma_code}", response_model=ApiResponse[ReturnResponse])
async def get_return(
    rma_code: str,
    returns_service: ReturnsService = Depends(get_returns_service)
):
    """查询退货单"""
    rma = await returns_service.get_return(rma_code)
    return ApiResponse.success(ReturnResponse.model_validate(rma))


@router.post("/{rma_code}/transitions", response_model=ApiResponse[ReturnResponse])
async def transition_return(
    rma_code: str,
    payload: ReturnTransitionRequest,
    returns_service: ReturnsService = Depends(get_returns_service)
):
    """退货单状态变更"""
    rma = await returns_service.transition_return(
        rma_code,
        payload.target_status,
        payload.actor_role,
        actor_id=payload.actor_id,
        note=payload.note,
        expected_version=payload.expected_version,
    )
    return ApiResponse.success(ReturnResponse.model_validate(rma))
