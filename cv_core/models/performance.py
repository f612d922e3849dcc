"""
卖家绩效快照数据模型
每次计算追加新快照，历史快照保留
"""
from datetime import datetime
from decimal import Decimal

from sqlalchemy import BigInteger, Integer, String, Numeric, Index
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, BigIntPK, Money


class SellerPerformanceSnapshot(Base):
    """卖家绩效快照表"""
    __tablename__ = "seller_performance_snapshots"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    shop_id: Mapped[int] = mapped_column(BigInteger, nullable=False)

    period_label: Mapped[str] = mapped_column(String(32), nullable=False, comment="统计周期标签，如 2026-09")
    period_start: Mapped[datetime] = mapped_column(nullable=False)
    period_end: Mapped[datetime] = mapped_column(nullable=False, comment="不含")

    total_revenue: Mapped[Decimal] = mapped_column(Money, nullable=False)
    total_orders: Mapped[int] = mapped_column(Integer, nullable=False)
    rating: Mapped[Decimal] = mapped_column(Numeric(4, 2), nullable=False, default=Decimal("0"))
    rating_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    gmv: Mapped[Decimal] = mapped_column(Money, nullable=False)

    revenue_score: Mapped[Decimal] = mapped_column(Numeric(7, 2), nullable=False)
    orders_score: Mapped[Decimal] = mapped_column(Numeric(7, 2), nullable=False)
    rating_score: Mapped[Decimal] = mapped_column(Numeric(7, 2), nullable=False)
    gmv_score: Mapped[Decimal] = mapped_column(Numeric(7, 2), nullable=False)
    performance_score: Mapped[Decimal] = mapped_column(Numeric(7, 2), nullable=False)
    rank: Mapped[int] = mapped_column(Integer, nullable=False)

    computed_at: Mapped[datetime] = mapped_column(nullable=False)

    __table_args__ = (
        Index("idx_seller_performance_period", "period_label", "rank"),
        Index("idx_seller_performance_shop", "shop_id", "computed_at"),
    )
