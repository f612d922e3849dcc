"""
退货退款（RMA）数据模型
"""
from datetime import datetime
from decimal import Decimal
from typing import Optional, List

from sqlalchemy import (
    BigInteger, Integer, String, Text,
    CheckConstraint, Index, ForeignKey, UniqueConstraint
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base, BigIntPK, JSONType, Money
from .enums import (
    ReturnStatus, ReturnReason, ReturnResolution, ReturnMethod, ActorRole, check_values
)

# 未结束的退货单状态：占用可退数量、阻止卖家打款
OPEN_RETURN_STATUSES = (
    ReturnStatus.REQUESTED.value,
    ReturnStatus.APPROVED.value,
    ReturnStatus.SHIPPED.value,
    ReturnStatus.RETURNED.value,
)

# 不再占用可退数量的状态
RELEASED_RETURN_STATUSES = (
    ReturnStatus.REJECTED.value,
    ReturnStatus.CANCELLED.value,
)


class ReturnRequest(Base):
    """退货单"""
    __tablename__ = "return_requests"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    rma_code: Mapped[str] = mapped_column(String(32), nullable=False, unique=True, comment="退货单号")

    order_id: Mapped[int] = mapped_column(
        BigInteger,
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False
    )
    buyer_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    shop_id: Mapped[int] = mapped_column(BigInteger, nullable=False, comment="退货商品所属店铺")

    reason_code: Mapped[str] = mapped_column(
        String(30),
        CheckConstraint(f"reason_code IN ({check_values(ReturnReason)})", name="ck_return_requests_reason"),
        nullable=False
    )
    reason_detail: Mapped[Optional[str]] = mapped_column(String(1000), comment="原因说明")
    requested_resolution: Mapped[str] = mapped_column(
        String(20),
        CheckConstraint(
            f"requested_resolution IN ({check_values(ReturnResolution)})", name="ck_return_requests_resolution"
        ),
        nullable=False
    )
    return_method: Mapped[str] = mapped_column(
        String(20),
        CheckConstraint(f"return_method IN ({check_values(ReturnMethod)})", name="ck_return_requests_method"),
        nullable=False
    )
    evidences: Mapped[list] = mapped_column(JSONType, nullable=False, default=list, comment="凭证 [{url, type}]")

    # 金额
    subtotal: Mapped[Decimal] = mapped_column(Money, nullable=False, comment="退货商品金额")
    shipping_fee: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0"), comment="退货运费")
    restocking_fee: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0"), comment="重新入库费")
    refund_total: Mapped[Decimal] = mapped_column(Money, nullable=False, comment="应退金额")
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="VND")

    status: Mapped[str] = mapped_column(
        String(20),
        CheckConstraint(f"status IN ({check_values(ReturnStatus)})", name="ck_return_requests_status"),
        nullable=False,
        default=ReturnStatus.REQUESTED.value
    )
    settlement_applied_at: Mapped[Optional[datetime]] = mapped_column(comment="退款已计入结算的时间")

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0, comment="乐观锁版本号")
    created_at: Mapped[datetime] = mapped_column(nullable=False)
    updated_at: Mapped[datetime] = mapped_column(nullable=False)

    items: Mapped[List["ReturnItem"]] = relationship(
        "ReturnItem",
        back_populates="return_request",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="ReturnItem.id",
    )
    events: Mapped[List["ReturnStatusEvent"]] = relationship(
        "ReturnStatusEvent",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="ReturnStatusEvent.id",
    )

    __table_args__ = (
        CheckConstraint("restocking_fee >= 0", name="ck_return_requests_restocking"),
        CheckConstraint("refund_total >= 0", name="ck_return_requests_refund_total"),
        Index("idx_return_requests_order", "order_id", "status"),
        Index("idx_return_requests_shop", "shop_id", "created_at"),
    )

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_RETURN_STATUSES


class ReturnItem(Base):
    """退货行"""
    __tablename__ = "return_items"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    return_request_id: Mapped[int] = mapped_column(
        BigInteger,
        ForeignKey("return_requests.id", ondelete="CASCADE"),
        nullable=False
    )
    product_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    product_name: Mapped[Optional[str]] = mapped_column(Text)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(Money, nullable=False, comment="成交单价快照")

    return_request: Mapped["ReturnRequest"] = relationship("ReturnRequest", back_populates="items")

    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_return_items_quantity"),
        UniqueConstraint("return_request_id", "product_id", name="uq_return_items_product"),
    )

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.quantity


class ReturnStatusEvent(Base):
    """退货单状态事件（只追加）"""
    __tablename__ = "return_status_events"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    return_request_id: Mapped[int] = mapped_column(
        BigInteger,
        ForeignKey("return_requests.id", ondelete="CASCADE"),
        nullable=False
    )
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    actor_role: Mapped[str] = mapped_column(
        String(20),
        CheckConstraint(f"actor_role IN ({check_values(ActorRole)})", name="ck_return_status_events_actor"),
        nullable=False
    )
    actor_id: Mapped[Optional[int]] = mapped_column(BigInteger)
    note: Mapped[Optional[str]] = mapped_column(String(1000))
    created_at: Mapped[datetime] = mapped_column(nullable=False)
