"""
订单相关数据模型
一个订单可包含多个店铺的商品，按店铺拆分结算
"""
from datetime import datetime
from decimal import Decimal
from typing import Optional, List

from sqlalchemy import (
    BigInteger, String, Text, Integer,
    CheckConstraint, Index, ForeignKey, UniqueConstraint, func
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base, BigIntPK, Money
from .enums import (
    OrderStatus, PaymentMethod, PaymentStatus, ActorRole, check_values
)


class Order(Base):
    """订单表"""
    __tablename__ = "orders"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)

    # 买家
    buyer_id: Mapped[int] = mapped_column(BigInteger, nullable=False, comment="买家ID")
    buyer_name: Mapped[Optional[str]] = mapped_column(Text, comment="买家姓名")

    # 收货地址 - PII 数据
    recipient_name: Mapped[str] = mapped_column(Text, nullable=False, comment="收货人")
    phone_number: Mapped[str] = mapped_column(Text, nullable=False, comment="收货电话")
    full_address: Mapped[str] = mapped_column(Text, nullable=False, comment="完整收货地址")

    # 支付信息
    payment_method: Mapped[str] = mapped_column(
        String(20),
        CheckConstraint(f"payment_method IN ({check_values(PaymentMethod)})", name="ck_orders_payment_method"),
        nullable=False,
        comment="支付方式"
    )
    payment_status: Mapped[str] = mapped_column(
        String(20),
        CheckConstraint(f"payment_status IN ({check_values(PaymentStatus)})", name="ck_orders_payment_status"),
        nullable=False,
        default=PaymentStatus.PENDING.value,
        comment="买家支付状态"
    )
    payment_transaction_id: Mapped[Optional[str]] = mapped_column(String(100), comment="支付网关交易号")
    paid_at: Mapped[Optional[datetime]] = mapped_column(comment="买家付款时间")

    # 金额（下单时固定）
    subtotal: Mapped[Decimal] = mapped_column(Money, nullable=False, comment="商品小计")
    shipping_fee: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0"), comment="运费")
    discount_amount: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0"), comment="优惠金额")
    final_amount: Mapped[Decimal] = mapped_column(Money, nullable=False, comment="应付金额")
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="VND", comment="币种")

    # 状态
    status: Mapped[str] = mapped_column(
        String(20),
        CheckConstraint(f"status IN ({check_values(OrderStatus)})", name="ck_orders_status"),
        nullable=False,
        default=OrderStatus.PENDING.value,
        comment="订单状态"
    )

    # 取消信息
    cancellation_reason: Mapped[Optional[str]] = mapped_column(Text, comment="取消原因")
    cancelled_by: Mapped[Optional[str]] = mapped_column(String(20), comment="取消方角色")
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(comment="取消时间")

    delivered_at: Mapped[Optional[datetime]] = mapped_column(comment="妥投时间")

    # 乐观锁
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0, comment="状态变更乐观锁版本号")
    rma_version: Mapped[int] = mapped_column(Integer, nullable=False, default=0, comment="退货数量占用乐观锁版本号")

    created_at: Mapped[datetime] = mapped_column(nullable=False, comment="创建时间")
    updated_at: Mapped[datetime] = mapped_column(nullable=False, comment="更新时间")

    items: Mapped[List["OrderItem"]] = relationship(
        "OrderItem",
        back_populates="order",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="OrderItem.id",
    )

    __table_args__ = (
        CheckConstraint("subtotal >= 0", name="ck_orders_subtotal"),
        CheckConstraint("shipping_fee >= 0", name="ck_orders_shipping_fee"),
        CheckConstraint("discount_amount >= 0", name="ck_orders_discount"),
        CheckConstraint("final_amount >= 0", name="ck_orders_final_amount"),
        Index("idx_orders_buyer", "buyer_id", "created_at"),
        Index("idx_orders_status_delivered", "status", "delivered_at"),
    )

    @property
    def shop_ids(self) -> List[int]:
        return sorted({item.shop_id for item in self.items})

    def __repr__(self) -> str:
        return f"<Order(id={self.id}, status={self.status}, final_amount={self.final_amount})>"


class OrderItem(Base):
    """订单行（下单快照，不可修改）"""
    __tablename__ = "order_items"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    order_id: Mapped[int] = mapped_column(
        BigInteger,
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False
    )

    product_id: Mapped[int] = mapped_column(BigInteger, nullable=False, comment="商品ID")
    shop_id: Mapped[int] = mapped_column(BigInteger, nullable=False, comment="所属店铺ID")
    product_name: Mapped[Optional[str]] = mapped_column(Text, comment="商品名称快照")

    quantity: Mapped[int] = mapped_column(Integer, nullable=False, comment="购买数量")
    price_at_purchase: Mapped[Decimal] = mapped_column(Money, nullable=False, comment="成交单价")

    order: Mapped["Order"] = relationship("Order", back_populates="items")

    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_order_items_quantity"),
        CheckConstraint("price_at_purchase >= 0", name="ck_order_items_price"),
        UniqueConstraint("order_id", "product_id", name="uq_order_items_product"),
        Index("idx_order_items_shop", "shop_id"),
    )

    @property
    def line_total(self) -> Decimal:
        return self.price_at_purchase * self.quantity


class OrderStatusEvent(Base):
    """订单状态变更记录（只追加）"""
    __tablename__ = "order_status_events"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    order_id: Mapped[int] = mapped_column(
        BigInteger,
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False
    )
    from_status: Mapped[Optional[str]] = mapped_column(String(20), comment="变更前状态，下单时为空")
    to_status: Mapped[str] = mapped_column(String(20), nullable=False, comment="变更后状态")
    actor_role: Mapped[str] = mapped_column(
        String(20),
        CheckConstraint(f"actor_role IN ({check_values(ActorRole)})", name="ck_order_status_events_actor"),
        nullable=False
    )
    actor_id: Mapped[Optional[int]] = mapped_column(BigInteger, comment="操作者ID")
    reason: Mapped[Optional[str]] = mapped_column(Text, comment="变更原因")
    created_at: Mapped[datetime] = mapped_column(nullable=False, server_default=func.now())

    __table_args__ = (
        Index("idx_order_status_events_order", "order_id", "id"),
    )
