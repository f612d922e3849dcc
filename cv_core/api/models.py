"""
API 请求与响应模型
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Generic, TypeVar
from pydantic import BaseModel, ConfigDict, Field

from cv_core.models.enums import (
    ActorRole, EvidenceType, FeeType, OrderStatus, PaymentMethod, PaymentStatus,
    ReturnMethod, ReturnReason, ReturnResolution, ReturnStatus
)

T = TypeVar('T')


class ApiResponse(BaseModel, Generic[T]):
    """统一 API 响应格式"""
    ok: bool = Field(description="操作是否成功")
    data: Optional[T] = Field(default=None, description="响应数据")
    error: Optional[Dict[str, Any]] = Field(default=None, description="错误信息（RFC7807 Problem Details）")
    metadata: Optional[Dict[str, Any]] = Field(default=None, description="元数据")

    @classmethod
    def success(cls, data: T, metadata: Optional[Dict[str, Any]] = None) -> "ApiResponse[T]":
        """创建成功响应"""
        return cls(ok=True, data=data, metadata=metadata)


class OrmModel(BaseModel):
    """可直接从 ORM 对象构建的响应模型"""
    model_config = ConfigDict(from_attributes=True)


# 订单
class ShippingAddress(BaseModel):
    """收货地址"""
    recipient_name: str = Field(min_length=1)
    phone_number: str = Field(min_length=1)
    full_address: str = Field(min_length=1)


class PlaceOrderItem(BaseModel):
    """下单商品行"""
    product_id: int
    shop_id: int
    product_name: Optional[str] = None
    quantity: int = Field(gt=0)
    price_at_purchase: Decimal = Field(ge=0)


class PlaceOrderRequest(BaseModel):
    """下单请求"""
    buyer_id: int
    buyer_name: Optional[str] = None
    shipping_address: ShippingAddress
    payment_method: PaymentMethod
    payment_status: PaymentStatus = PaymentStatus.PENDING
    payment_transaction_id: Optional[str] = None
    subtotal: Optional[Decimal] = Field(default=None, description="客户端计算的小计，若提供则必须与商品合计一致")
    shipping_fee: Decimal = Field(default=Decimal("0"), ge=0)
    discount_amount: Decimal = Field(default=Decimal("0"), ge=0)
    currency: Optional[str] = None
    items: List[PlaceOrderItem] = Field(min_length=1)

    def to_service_args(self):
        order_data = self.model_dump(exclude={"items", "shipping_address"})
        order_data.update(self.shipping_address.model_dump())
        return order_data, [item.model_dump() for item in self.items]


class OrderTransitionRequest(BaseModel):
    """订单状态变更请求"""
    target_status: OrderStatus
    actor_role: ActorRole
    actor_id: Optional[int] = None
    reason: Optional[str] = Field(default=None, max_length=500)
    expected_version: Optional[int] = Field(default=None, ge=0)
    transaction_id: Optional[str] = Field(default=None, max_length=100)


class OrderItemResponse(OrmModel):
    product_id: int
    shop_id: int
    product_name: Optional[str] = None
    quantity: int
    price_at_purchase: Decimal


class OrderResponse(OrmModel):
    """订单响应"""
    id: int
    buyer_id: int
    buyer_name: Optional[str] = None
    recipient_name: str
    phone_number: str
    full_address: str
    payment_method: str
    payment_status: str
    payment_transaction_id: Optional[str] = None
    paid_at: Optional[datetime] = None
    subtotal: Decimal
    shipping_fee: Decimal
    discount_amount: Decimal
    final_amount: Decimal
    currency: str
    status: str
    cancellation_reason: Optional[str] = None
    cancelled_by: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    version: int
    created_at: datetime
    updated_at: datetime
    items: List[OrderItemResponse]


class OrderStatusEventResponse(OrmModel):
    from_status: Optional[str] = None
    to_status: str
    actor_role: str
    actor_id: Optional[int] = None
    reason: Optional[str] = None
    created_at: datetime


class SettlementResponse(OrmModel):
    """分店结算响应"""
    order_id: int
    shop_id: int
    shop_subtotal: Decimal
    shop_shipping_fee: Decimal
    commission_config_id: Optional[int] = None
    commission_fee_type: str
    commission_rate_applied: Decimal
    resolved_at: datetime
    platform_fee: Decimal
    refunded_amount: Decimal
    net_amount: Decimal
    status: str
    is_paid: bool
    paid_at: Optional[datetime] = None
    transaction_id: Optional[str] = None
    finalized_at: Optional[datetime] = None
    voided_at: Optional[datetime] = None


class SettlementAdjustmentResponse(OrmModel):
    shop_id: int
    rma_code: str
    adjustment_type: str
    refund_amount: Decimal
    platform_fee_delta: Decimal
    amount: Decimal
    created_at: datetime


# 佣金
class CommissionResponse(OrmModel):
    """佣金解析结果"""
    shop_id: Optional[int] = None
    source: str
    config_id: Optional[int] = None
    fee_type: FeeType
    rate: Decimal
    minimum_fee: Optional[Decimal] = None
    maximum_fee: Optional[Decimal] = None
    is_custom: bool
    effective_from: Optional[datetime] = None
    effective_to: Optional[datetime] = None
    resolved_at: datetime


class UpdateShopCommissionRequest(BaseModel):
    """设置店铺佣金"""
    rate: Decimal
    fee_type: FeeType = FeeType.PERCENTAGE
    reason: str = Field(min_length=1, max_length=300)
    note: Optional[str] = Field(default=None, max_length=500)
    minimum_fee: Optional[Decimal] = None
    maximum_fee: Optional[Decimal] = None
    actor_id: Optional[int] = None


class UpdateGlobalCommissionRequest(UpdateShopCommissionRequest):
    """更新全局佣金"""
    override_shop_configs: bool = False


class CommissionHistoryResponse(OrmModel):
    id: int
    shop_id: Optional[int] = None
    config_id: Optional[int] = None
    fee_type: str
    previous_rate: Optional[Decimal] = None
    new_rate: Decimal
    reason: str
    note: Optional[str] = None
    changed_by: Optional[int] = None
    superseded_count: Optional[int] = None
    created_at: datetime


class CommissionConfigResponse(OrmModel):
    """店铺佣金配置"""
    id: int
    scope: str
    shop_id: Optional[int] = None
    fee_type: FeeType
    rate_value: Decimal
    minimum_fee: Optional[Decimal] = None
    maximum_fee: Optional[Decimal] = None
    is_custom: bool
    effective_from: datetime
    effective_to: Optional[datetime] = None
    created_by: Optional[int] = None
    created_at: datetime


# 退货
class ReturnItemRequest(BaseModel):
    product_id: int
    quantity: int = Field(gt=0)
    unit_price: Optional[Decimal] = Field(default=None, ge=0)


class EvidenceRequest(BaseModel):
    url: str = Field(min_length=1)
    type: EvidenceType = EvidenceType.IMAGE


class CreateReturnRequest(BaseModel):
    """创建退货单"""
    order_id: int
    buyer_id: int
    reason_code: ReturnReason
    reason_detail: Optional[str] = Field(default=None, max_length=1000)
    requested_resolution: ReturnResolution
    return_method: ReturnMethod
    items: List[ReturnItemRequest] = Field(min_length=1)
    evidences: List[EvidenceRequest] = Field(default_factory=list)
    restocking_fee: Decimal = Field(default=Decimal("0"), ge=0)
    shipping_fee: Decimal = Field(default=Decimal("0"), ge=0)


class ReturnTransitionRequest(BaseModel):
    """退货单状态变更"""
    target_status: ReturnStatus
    actor_role: ActorRole
    actor_id: Optional[int] = None
    note: Optional[str] = Field(default=None, max_length=1000)
    expected_version: Optional[int] = Field(default=None, ge=0)


class ReturnItemResponse(OrmModel):
    product_id: int
    product_name: Optional[str] = None
    quantity: int
    unit_price: Decimal


class ReturnEventResponse(OrmModel):
    status: str
    actor_role: str
    actor_id: Optional[int] = None
    note: Optional[str] = None
    created_at: datetime


class ReturnResponse(OrmModel):
    """退货单响应"""
    rma_code: str
    order_id: int
    buyer_id: int
    shop_id: int
    reason_code: str
    reason_detail: Optional[str] = None
    requested_resolution: str
    return_method: str
    evidences: List[Dict[str, Any]]
    subtotal: Decimal
    shipping_fee: Decimal
    restocking_fee: Decimal
    refund_total: Decimal
    currency: str
    status: str
    settlement_applied_at: Optional[datetime] = None
    version: int
    created_at: datetime
    updated_at: datetime
    items: List[ReturnItemResponse]
    events: List[ReturnEventResponse]


class ReturnStatisticsResponse(BaseModel):
    """店铺退货单按状态计数"""
    shop_id: int
    counts: Dict[str, int]
    total: int


# 卖家绩效
class ShopRating(BaseModel):
    shop_id: int
    rating: Decimal = Field(ge=0, le=5)
    rating_count: int = Field(default=0, ge=0)


class ComputePerformanceRequest(BaseModel):
    """计算卖家绩效"""
    period_start: datetime
    period_end: datetime
    period_label: Optional[str] = Field(default=None, max_length=32)
    ratings: List[ShopRating] = Field(default_factory=list)


class PerformanceSnapshotResponse(OrmModel):
    shop_id: int
    period_label: str
    period_start: datetime
    period_end: datetime
    total_revenue: Decimal
    total_orders: int
    rating: Decimal
    rating_count: int
    gmv: Decimal
    revenue_score: Decimal
    orders_score: Decimal
    rating_score: Decimal
    gmv_score: Decimal
    performance_score: Decimal
    rank: int
    computed_at: datetime
