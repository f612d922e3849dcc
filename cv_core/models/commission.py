"""
佣金配置与变更历史数据模型
"""
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    BigInteger, Boolean, Integer, String, Text, Numeric,
    CheckConstraint, Index, text
)
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, BigIntPK, Money
from .enums import CommissionScope, FeeType, check_values


class CommissionConfig(Base):
    """佣金配置表

    effective_to 为空表示当前生效；同一作用域同一时刻至多一条生效配置。
    """
    __tablename__ = "commission_configs"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)

    scope: Mapped[str] = mapped_column(
        String(10),
        CheckConstraint(f"scope IN ({check_values(CommissionScope)})", name="ck_commission_configs_scope"),
        nullable=False
    )
    shop_id: Mapped[Optional[int]] = mapped_column(BigInteger, comment="店铺ID，全局配置为空")

    fee_type: Mapped[str] = mapped_column(
        String(20),
        CheckConstraint(f"fee_type IN ({check_values(FeeType)})", name="ck_commission_configs_fee_type"),
        nullable=False,
        default=FeeType.PERCENTAGE.value
    )
    percentage_rate: Mapped[Optional[Decimal]] = mapped_column(Numeric(7, 4), comment="百分比费率 0-100")
    fixed_amount: Mapped[Optional[Decimal]] = mapped_column(Money, comment="固定费用")
    minimum_fee: Mapped[Optional[Decimal]] = mapped_column(Money, comment="最低平台费")
    maximum_fee: Mapped[Optional[Decimal]] = mapped_column(Money, comment="最高平台费")

    effective_from: Mapped[datetime] = mapped_column(nullable=False, comment="生效开始")
    effective_to: Mapped[Optional[datetime]] = mapped_column(comment="生效结束（不含）")

    is_custom: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, comment="是否店铺自定义")
    created_by: Mapped[Optional[int]] = mapped_column(BigInteger, comment="操作管理员ID")
    created_at: Mapped[datetime] = mapped_column(nullable=False)

    __table_args__ = (
        CheckConstraint(
            "(scope = 'GLOBAL' AND shop_id IS NULL) OR (scope = 'SHOP' AND shop_id IS NOT NULL)",
            name="ck_commission_configs_scope_shop"
        ),
        CheckConstraint(
            "percentage_rate IS NULL OR (percentage_rate >= 0 AND percentage_rate <= 100)",
            name="ck_commission_configs_rate_range"
        ),
        CheckConstraint("fixed_amount IS NULL OR fixed_amount >= 0", name="ck_commission_configs_fixed"),
        Index(
            "uq_commission_configs_active_shop",
            "shop_id",
            unique=True,
            postgresql_where=text("scope = 'SHOP' AND effective_to IS NULL"),
            sqlite_where=text("scope = 'SHOP' AND effective_to IS NULL"),
        ),
        Index(
            "uq_commission_configs_active_global",
            "scope",
            unique=True,
            postgresql_where=text("scope = 'GLOBAL' AND effective_to IS NULL"),
            sqlite_where=text("scope = 'GLOBAL' AND effective_to IS NULL"),
        ),
        Index("idx_commission_configs_window", "scope", "shop_id", "effective_from"),
    )

    @property
    def rate_value(self) -> Decimal:
        """当前计费方式对应的数值"""
        if self.fee_type == FeeType.FIXED.value:
            return self.fixed_amount if self.fixed_amount is not None else Decimal("0")
        return self.percentage_rate if self.percentage_rate is not None else Decimal("0")

    def __repr__(self) -> str:
        return f"<CommissionConfig(id={self.id}, scope={self.scope}, shop_id={self.shop_id}, rate={self.rate_value})>"


class CommissionHistoryEntry(Base):
    """佣金变更历史（只追加，不可修改）"""
    __tablename__ = "commission_history"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    shop_id: Mapped[Optional[int]] = mapped_column(BigInteger, comment="店铺ID，全局变更为空")
    config_id: Mapped[Optional[int]] = mapped_column(BigInteger, comment="新生效配置ID")

    fee_type: Mapped[str] = mapped_column(String(20), nullable=False)
    previous_rate: Mapped[Optional[Decimal]] = mapped_column(Numeric(18, 4), comment="变更前费率")
    new_rate: Mapped[Decimal] = mapped_column(Numeric(18, 4), nullable=False, comment="变更后费率")

    reason: Mapped[str] = mapped_column(String(300), nullable=False, comment="变更原因")
    note: Mapped[Optional[str]] = mapped_column(String(500), comment="备注")
    changed_by: Mapped[Optional[int]] = mapped_column(BigInteger, comment="操作管理员ID")
    superseded_count: Mapped[Optional[int]] = mapped_column(Integer, comment="全局覆盖时关闭的店铺配置数")

    created_at: Mapped[datetime] = mapped_column(nullable=False)

    __table_args__ = (
        Index("idx_commission_history_shop", "shop_id", "created_at"),
    )
