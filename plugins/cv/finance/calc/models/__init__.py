"""
财务计算插件数据模型
"""

from .settlement import (
    SettlementLine,
    OrderSnapshot,
    CommissionTerms,
    ShopSettlementDraft,
    RefundRecalculation,
)

from .performance import ScoreWeights, SellerMetrics, SellerScore

__all__ = [
    # Settlement
    "SettlementLine",
    "OrderSnapshot",
    "CommissionTerms",
    "ShopSettlementDraft",
    "RefundRecalculation",
    # Performance
    "ScoreWeights",
    "SellerMetrics",
    "SellerScore",
]
