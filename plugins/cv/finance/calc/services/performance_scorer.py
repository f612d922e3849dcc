"""
卖家绩效评分器

各维度分数 = 指标值 / 全体最大值 × 100，综合分为加权平均。
排名：综合分降序，其次总收入降序，再次 shop_id 升序。
"""

from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, List, Optional

from ..models.performance import ScoreWeights, SellerMetrics, SellerScore


class PerformanceScorer:
    """卖家绩效评分器"""

    SCORE_PRECISION = Decimal("0.01")

    def __init__(self, weights: Optional[ScoreWeights] = None):
        self.weights = weights or ScoreWeights()

    def score(self, metrics: Iterable[SellerMetrics]) -> List[SellerScore]:
        """计算所有店铺的评分并排名"""
        metrics = list(metrics)
        if not metrics:
            return []

        max_revenue = max(max(m.total_revenue for m in metrics), Decimal("0"))
        max_orders = Decimal(max(m.total_orders for m in metrics))
        max_rating = max(m.rating for m in metrics)
        max_gmv = max(m.gmv for m in metrics)

        scores = []
        for item in metrics:
            revenue_score = self._dimension(item.total_revenue, max_revenue)
            orders_score = self._dimension(Decimal(item.total_orders), max_orders)
            rating_score = self._dimension(item.rating, max_rating)
            gmv_score = self._dimension(item.gmv, max_gmv)

            scores.append(SellerScore(
                metrics=item,
                revenue_score=revenue_score,
                orders_score=orders_score,
                rating_score=rating_score,
                gmv_score=gmv_score,
                performance_score=self._weighted(revenue_score, orders_score, rating_score, gmv_score),
            ))

        scores.sort(key=lambda s: (-s.performance_score, -s.metrics.total_revenue, s.metrics.shop_id))
        for rank, item in enumerate(scores, start=1):
            item.rank = rank
        return scores

    def _dimension(self, value: Decimal, max_value: Decimal) -> Decimal:
        if max_value <= 0 or value <= 0:
            return Decimal("0.00")
        return (value / max_value * 100).quantize(self.SCORE_PRECISION, ROUND_HALF_UP)

    def _weighted(self, revenue: Decimal, orders: Decimal, rating: Decimal, gmv: Decimal) -> Decimal:
        w = self.weights
        if w.total <= 0:
            return Decimal("0.00")
        weighted = revenue * w.revenue + orders * w.orders + rating * w.rating + gmv * w.gmv
        return (weighted / w.total).quantize(self.SCORE_PRECISION, ROUND_HALF_UP)
