"""
订单 API 路由
"""
from typing import List

from fastapi import APIRouter, Depends

from cv_core.services import OrdersService, SettlementService, ReturnsService
from .deps import get_orders_service, get_settlement_service, get_returns_service
from .models import (
    ApiResponse, OrderResponse, OrderStatusEventResponse, OrderTransitionRequest,
    PlaceOrderRequest, ReturnResponse, SettlementAdjustmentResponse, SettlementResponse
)

router = APIRouter()


@router.post("", response_model=ApiResponse[OrderResponse], status_code=201)
async def place_order(
    payload: PlaceOrderRequest,
    orders_service: OrdersService = Depends(get_orders_service)
):
    """下单"""
    order_data, items_data = payload.to_service_args()
    order = await orders_service.place_order(order_data, items_data)
    return ApiResponse.success(OrderResponse.model_validate(order))


@router.get("/{order_id}", response_model=ApiResponse[OrderResponse])
async def get_order(
    order_id: int,
    orders_service: OrdersService = Depends(get_orders_service)
):
    """查询订单"""
    order = await orders_service.get_order(order_id)
    return ApiResponse.success(OrderResponse.model_validate(order))


@router.post("/{order_id}/transitions", response_model=ApiResponse[OrderResponse])
async def transition_order(
    order_id: int,
    payload: OrderTransitionRequest,
    orders_service: OrdersService = Depends(get_orders_service)
):
    """订单状态变更"""
    order = await orders_service.transition_order(
        order_id,
        payload.target_status,
        payload.actor_role,
        actor_id=payload.actor_id,
        reason=payload.reason,
        expected_version=payload.expected_version,
        transaction_id=payload.transaction_id,
    )
    return ApiResponse.success(OrderResponse.model_validate(order))


@router.get("/{order_id}/events", response_model=ApiResponse[List[OrderStatusEventResponse]])
async def list_order_events(
    order_id: int,
    orders_service: OrdersService = Depends(get_orders_service)
):
    """订单状态变更记录"""
    events = await orders_service.list_status_events(order_id)
    return ApiResponse.success([OrderStatusEventResponse.model_validate(e) for e in events])


@router.get("/{order_id}/settlements", response_model=ApiResponse[List[SettlementResponse]])
async def list_settlements(
    order_id: int,
    settlement_service: SettlementService = Depends(get_settlement_service)
):
    """订单的全部分店结算"""
    settlements = await settlement_service.list_settlements(order_id)
    return ApiResponse.success([SettlementResponse.model_validate(s) for s in settlements])


@router.get("/{order_id}/settlements/{shop_id}", response_model=ApiResponse[SettlementResponse])
async def get_settlement(
    order_id: int,
    shop_id: int,
    settlement_service: SettlementService = Depends(get_settlement_service)
):
    """单个店铺的结算"""
    settlement = await settlement_service.get_settlement(order_id, shop_id)
    return ApiResponse.success(SettlementResponse.model_validate(settlement))


@router.get("/{order_id}/adjustments", response_model=ApiResponse[List[SettlementAdjustmentResponse]])
async def list_adjustments(
    order_id: int,
    settlement_service: SettlementService = Depends(get_settlement_service)
):
    """打款后的退款扣回记录"""
    adjustments = await settlement_service.list_adjustments(order_id)
    return ApiResponse.success([SettlementAdjustmentResponse.model_validate(a) for a in adjustments])


@router.get("/{order_id}/returns", response_model=ApiResponse[List[ReturnResponse]])
async def list_order_returns(
    order_id: int,
    returns_service: ReturnsService = Depends(get_returns_service)
):
    """订单下的退货单"""
    returns = await returns_service.list_returns(order_id)
    return ApiResponse.success([ReturnResponse.model_validate(r) for r in returns])
