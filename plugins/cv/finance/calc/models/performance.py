"""
卖家绩效相关数据模型
"""

from decimal import Decimal
from typing import Annotated
from pydantic import BaseModel, Field


class ScoreWeights(BaseModel):
    """各维度权重（按比例使用，无需合计为 100）"""

    revenue: Annotated[Decimal, Field(ge=0)] = Decimal("40")
    orders: Annotated[Decimal, Field(ge=0)] = Decimal("30")
    rating: Annotated[Decimal, Field(ge=0)] = Decimal("20")
    gmv: Annotated[Decimal, Field(ge=0)] = Decimal("10")

    @property
    def total(self) -> Decimal:
        return self.revenue + self.orders + self.rating + self.gmv


class SellerMetrics(BaseModel):
    """单个店铺在统计周期内的汇总指标"""

    shop_id: int
    total_revenue: Decimal = Decimal("0")
    total_orders: Annotated[int, Field(ge=0)] = 0
    rating: Annotated[Decimal, Field(ge=0, le=5)] = Decimal("0")
    rating_count: Annotated[int, Field(ge=0)] = 0
    gmv: Annotated[Decimal, Field(ge=0)] = Decimal("0")


class SellerScore(BaseModel):
    """评分与排名结果"""

    metrics: SellerMetrics
    revenue_score: Decimal
    orders_score: Decimal
    rating_score: Decimal
    gmv_score: Decimal
    performance_score: Decimal
    rank: int = 0

    @property
    def shop_id(self) -> int:
        return self.metrics.shop_id
