"""
分店结算相关数据模型
"""

from decimal import Decimal, ROUND_HALF_UP
from typing import List, Optional, Annotated
from pydantic import BaseModel, Field

from cv_core.models.enums import FeeType


class SettlementLine(BaseModel):
    """订单行快照"""

    product_id: int
    shop_id: int
    quantity: Annotated[int, Field(gt=0)]
    price_at_purchase: Annotated[Decimal, Field(ge=0)]

    @property
    def line_total(self) -> Decimal:
        return self.price_at_purchase * self.quantity


class OrderSnapshot(BaseModel):
    """计算结算所需的订单快照"""

    order_id: Optional[int] = None
    lines: List[SettlementLine] = Field(min_length=1)
    subtotal: Annotated[Decimal, Field(ge=0)]
    shipping_fee: Annotated[Decimal, Field(ge=0)] = Decimal("0")


class CommissionTerms(BaseModel):
    """某店铺在某时刻适用的佣金条款"""

    config_id: Optional[int] = None  # 兜底默认值没有配置记录
    fee_type: FeeType = FeeType.PERCENTAGE
    rate: Annotated[Decimal, Field(ge=0)]  # PERCENTAGE 为百分比，FIXED 为固定金额
    minimum_fee: Optional[Annotated[Decimal, Field(ge=0)]] = None
    maximum_fee: Optional[Annotated[Decimal, Field(ge=0)]] = None

    def calculate_fee(self, base_amount: Decimal, quantum: Decimal) -> Decimal:
        """
        计算平台费

        Args:
            base_amount: 计费基数（店铺商品小计，扣除已退款）
            quantum: 金额最小单位

        Returns:
            平台费（未做上限截断）
        """
        if base_amount <= 0:
            return Decimal("0")

        if self.fee_type == FeeType.FIXED:
            fee = self.rate
        else:
            fee = base_amount * self.rate / Decimal("100")

        # 应用最小/最大限制
        if self.minimum_fee is not None:
            fee = max(fee, self.minimum_fee)
        if self.maximum_fee is not None:
            fee = min(fee, self.maximum_fee)

        return fee.quantize(quantum, ROUND_HALF_UP)


class ShopSettlementDraft(BaseModel):
    """单个店铺的结算计算结果"""

    shop_id: int
    shop_subtotal: Decimal
    shop_shipping_fee: Decimal
    terms: CommissionTerms
    platform_fee: Decimal
    refunded_amount: Decimal = Decimal("0")
    net_amount: Decimal


class RefundRecalculation(BaseModel):
    """退款后重新计算的平台费与净额"""

    refunded_amount: Decimal
    platform_fee: Decimal
    net_amount: Decimal
    platform_fee_delta: Decimal
    net_delta: Decimal
