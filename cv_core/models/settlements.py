"""
分店结算数据模型
每个 (订单, 店铺) 至多一条结算记录；打款后不可修改
"""
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    BigInteger, Boolean, String, Text, Numeric,
    CheckConstraint, Index, ForeignKey, UniqueConstraint
)
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, BigIntPK, Money
from .enums import SettlementStatus, FeeType, AdjustmentType, check_values


class ShopSettlement(Base):
    """分店结算表"""
    __tablename__ = "shop_settlements"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    order_id: Mapped[int] = mapped_column(
        BigInteger,
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False
    )
    shop_id: Mapped[int] = mapped_column(BigInteger, nullable=False, comment="店铺ID")

    shop_subtotal: Mapped[Decimal] = mapped_column(Money, nullable=False, comment="店铺商品小计")
    shop_shipping_fee: Mapped[Decimal] = mapped_column(Money, nullable=False, comment="分摊运费")

    # 佣金（生成时解析并固化）
    commission_config_id: Mapped[Optional[int]] = mapped_column(BigInteger, comment="生效佣金配置ID，兜底默认值时为空")
    commission_fee_type: Mapped[str] = mapped_column(
        String(20),
        CheckConstraint(f"commission_fee_type IN ({check_values(FeeType)})", name="ck_shop_settlements_fee_type"),
        nullable=False
    )
    commission_rate_applied: Mapped[Decimal] = mapped_column(
        Numeric(18, 4), nullable=False, comment="适用费率（百分比）或固定费用"
    )
    commission_minimum_fee: Mapped[Optional[Decimal]] = mapped_column(Money, comment="最低平台费")
    commission_maximum_fee: Mapped[Optional[Decimal]] = mapped_column(Money, comment="最高平台费")
    resolved_at: Mapped[datetime] = mapped_column(nullable=False, comment="佣金解析时间")

    platform_fee: Mapped[Decimal] = mapped_column(Money, nullable=False, comment="平台费")
    refunded_amount: Mapped[Decimal] = mapped_column(
        Money, nullable=False, default=Decimal("0"), comment="打款前已退款金额"
    )
    net_amount: Mapped[Decimal] = mapped_column(Money, nullable=False, comment="卖家应收净额")

    status: Mapped[str] = mapped_column(
        String(20),
        CheckConstraint(f"status IN ({check_values(SettlementStatus)})", name="ck_shop_settlements_status"),
        nullable=False,
        default=SettlementStatus.PENDING.value
    )
    is_paid: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    paid_at: Mapped[Optional[datetime]] = mapped_column(comment="打款时间")
    transaction_id: Mapped[Optional[str]] = mapped_column(String(100), comment="打款交易号")

    finalized_at: Mapped[Optional[datetime]] = mapped_column(comment="转为可打款时间")
    voided_at: Mapped[Optional[datetime]] = mapped_column(comment="作废时间")
    void_reason: Mapped[Optional[str]] = mapped_column(Text, comment="作废原因")

    created_at: Mapped[datetime] = mapped_column(nullable=False)
    updated_at: Mapped[datetime] = mapped_column(nullable=False)

    __table_args__ = (
        UniqueConstraint("order_id", "shop_id", name="uq_shop_settlements_order_shop"),
        CheckConstraint("net_amount >= 0", name="ck_shop_settlements_net"),
        CheckConstraint("platform_fee >= 0", name="ck_shop_settlements_fee"),
        Index("idx_shop_settlements_shop", "shop_id", "status"),
    )

    def __repr__(self) -> str:
        return f"<ShopSettlement(order_id={self.order_id}, shop_id={self.shop_id}, net={self.net_amount})>"


class SettlementAdjustment(Base):
    """结算调整记录（已打款后发生退款时的扣回）"""
    __tablename__ = "settlement_adjustments"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    settlement_id: Mapped[int] = mapped_column(
        BigInteger,
        ForeignKey("shop_settlements.id", ondelete="CASCADE"),
        nullable=False
    )
    order_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    shop_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    return_request_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    rma_code: Mapped[str] = mapped_column(String(32), nullable=False)

    adjustment_type: Mapped[str] = mapped_column(
        String(30),
        CheckConstraint(f"adjustment_type IN ({check_values(AdjustmentType)})", name="ck_settlement_adjustments_type"),
        nullable=False,
        default=AdjustmentType.REFUND_DEDUCTION.value
    )
    refund_amount: Mapped[Decimal] = mapped_column(Money, nullable=False, comment="退款金额")
    platform_fee_delta: Mapped[Decimal] = mapped_column(Money, nullable=False, comment="平台费变化（退还为负）")
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False, comment="卖家净额变化（扣回为负）")

    created_at: Mapped[datetime] = mapped_column(nullable=False)

    __table_args__ = (
        UniqueConstraint("settlement_id", "return_request_id", name="uq_settlement_adjustments_rma"),
        Index("idx_settlement_adjustments_shop", "shop_id", "created_at"),
    )
