"""
卖家绩效服务
按统计周期汇总已妥投订单的结算数据，评分排名后追加快照
"""
from datetime import datetime
from decimal import Decimal
from typing import Awaitable, Callable, Dict, List, Mapping, Optional, Tuple

from sqlalchemy import select, func, distinct
from sqlalchemy.ext.asyncio import AsyncSession

from cv_core.models import Order, ShopSettlement, SettlementAdjustment, SellerPerformanceSnapshot
from cv_core.models.enums import OrderStatus, SettlementStatus
from cv_core.utils.errors import ValidationError
from plugins.cv.finance.calc.models import ScoreWeights, SellerMetrics
from plugins.cv.finance.calc.services import PerformanceScorer
from .base import BaseService

# 计入绩效的订单状态
SETTLED_ORDER_STATUSES = (
    OrderStatus.DELIVERED.value,
    OrderStatus.PAID.value,
    OrderStatus.REFUNDED.value,
)

# shop_id -> (平均评分, 评分数)，来自外部评价系统
Ratings = Mapping[int, Tuple[Decimal, int]]
RatingProvider = Callable[[datetime, datetime], Awaitable[Ratings]]


class PerformanceService(BaseService):
    """卖家绩效服务"""

    def __init__(self, *args, rating_provider: Optional[RatingProvider] = None, **kwargs):
        super().__init__(*args, **kwargs)
        self.rating_provider = rating_provider
        self.scorer = PerformanceScorer(ScoreWeights(
            revenue=self.settings.performance_weight_revenue,
            orders=self.settings.performance_weight_orders,
            rating=self.settings.performance_weight_rating,
            gmv=self.settings.performance_weight_gmv,
        ))

    async def compute_seller_performance(
        self,
        period_start: datetime,
        period_end: datetime,
        ratings: Optional[Ratings] = None,
        period_label: Optional[str] = None,
    ) -> List[SellerPerformanceSnapshot]:
        """
        计算周期 [period_start, period_end) 内的卖家绩效并保存快照

        Args:
            period_start: 周期开始（含）
            period_end: 周期结束（不含）
            ratings: 外部评分；为空时使用 rating_provider
            period_label: 快照标签，默认为日期区间

        Returns:
            按排名排序的新快照
        """
        if period_start.tzinfo is None or period_end.tzinfo is None:
            raise ValidationError(code="PERFORMANCE_INVALID_PERIOD", detail="Period bounds must be timezone-aware")
        if period_start >= period_end:
            raise ValidationError(code="PERFORMANCE_INVALID_PERIOD", detail="period_start must be before period_end")

        if ratings is None and self.rating_provider is not None:
            ratings = await self.rating_provider(period_start, period_end)
        label = period_label or f"{period_start:%Y-%m-%d}..{period_end:%Y-%m-%d}"

        return await self.execute_with_transaction(
            self._compute_tx, period_start, period_end, ratings or {}, label
        )

    async def _compute_tx(
        self,
        session: AsyncSession,
        period_start: datetime,
        period_end: datetime,
        ratings: Ratings,
        label: str,
    ) -> List[SellerPerformanceSnapshot]:
        now = self.now()
        metrics = await self.collect_metrics(session, period_start, period_end, ratings)
        scores = self.scorer.score(metrics)

        snapshots = []
        for score in scores:
            m = score.metrics
            snapshot = SellerPerformanceSnapshot(
                shop_id=m.shop_id,
                period_label=label,
                period_start=period_start,
                period_end=period_end,
                total_revenue=m.total_revenue,
                total_orders=m.total_orders,
                rating=m.rating,
                rating_count=m.rating_count,
                gmv=m.gmv,
                revenue_score=score.revenue_score,
                orders_score=score.orders_score,
                rating_score=score.rating_score,
                gmv_score=score.gmv_score,
                performance_score=score.performance_score,
                rank=score.rank,
                computed_at=now,
            )
            session.add(snapshot)
            snapshots.append(snapshot)
        await session.flush()

        self.logger.info(
            "Seller performance computed",
            period_label=label,
            shops=len(snapshots),
            top_shop=snapshots[0].shop_id if snapshots else None,
        )
        return snapshots

    async def collect_metrics(
        self,
        session: AsyncSession,
        period_start: datetime,
        period_end: datetime,
        ratings: Ratings,
    ) -> List[SellerMetrics]:
        """汇总每个店铺的订单数、GMV 与净收入（含退款扣回）"""
        in_period = (
            Order.status.in_(SETTLED_ORDER_STATUSES),
            Order.delivered_at >= period_start,
            Order.delivered_at < period_end,
        )

        settlement_rows = await session.execute(
            select(
                ShopSettlement.shop_id,
                func.count(distinct(ShopSettlement.order_id)),
                func.sum(ShopSettlement.shop_subtotal),
                func.sum(ShopSettlement.net_amount),
            )
            .join(Order, Order.id == ShopSettlement.order_id)
            .where(*in_period, ShopSettlement.status != SettlementStatus.VOID.value)
            .group_by(ShopSettlement.shop_id)
        )
        adjustment_rows = await session.execute(
            select(SettlementAdjustment.shop_id, func.sum(SettlementAdjustment.amount))
            .join(Order, Order.id == SettlementAdjustment.order_id)
            .where(*in_period)
            .group_by(SettlementAdjustment.shop_id)
        )
        adjustments: Dict[int, Decimal] = {
            shop_id: self._decimal(amount) for shop_id, amount in adjustment_rows.all()
        }

        metrics: Dict[int, SellerMetrics] = {}
        for shop_id, order_count, gmv, net in settlement_rows.all():
            metrics[shop_id] = SellerMetrics(
                shop_id=shop_id,
                total_orders=int(order_count),
                gmv=self._decimal(gmv),
                total_revenue=self._decimal(net) + adjustments.get(shop_id, Decimal("0")),
            )

        for shop_id, (rating, rating_count) in ratings.items():
            item = metrics.setdefault(shop_id, SellerMetrics(shop_id=shop_id))
            item.rating = Decimal(str(rating))
            item.rating_count = int(rating_count)

        return [metrics[shop_id] for shop_id in sorted(metrics)]

    async def list_snapshots(self, period_label: str) -> List[SellerPerformanceSnapshot]:
        """查询某周期最近一次计算的快照（按排名）"""
        return await self.execute_with_session(self._list_snapshots, period_label)

    async def _list_snapshots(self, session: AsyncSession, period_label: str) -> List[SellerPerformanceSnapshot]:
        latest = await session.execute(
            select(func.max(SellerPerformanceSnapshot.computed_at))
            .where(SellerPerformanceSnapshot.period_label == period_label)
        )
        computed_at = latest.scalar_one_or_none()
        if computed_at is None:
            return []

        result = await session.execute(
            select(SellerPerformanceSnapshot)
            .where(
                SellerPerformanceSnapshot.period_label == period_label,
                SellerPerformanceSnapshot.computed_at == computed_at,
            )
            .order_by(SellerPerformanceSnapshot.rank)
        )
        return list(result.scalars().all())

    @staticmethod
    def _decimal(value) -> Decimal:
        return Decimal(str(value)) if value is not None else Decimal("0")
