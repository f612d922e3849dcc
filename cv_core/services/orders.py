"""
订单服务
处理订单的下单、状态流转与卖家打款，状态变更使用乐观锁
"""
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update, exists
from sqlalchemy.ext.asyncio import AsyncSession

from cv_core.models import Order, OrderItem, OrderStatusEvent, ReturnRequest
from cv_core.models.enums import (
    OrderStatus, PaymentMethod, PaymentStatus, ActorRole
)
from cv_core.models.returns import OPEN_RETURN_STATUSES
from cv_core.utils.errors import (
    CraftVillagesException, ConcurrentModificationError, InvalidTransitionError,
    MissingReasonError, NotFoundError, ValidationError
)
from cv_core.utils.logger import LogContext
from .base import BaseService
from .settlements import SettlementService
from .state_machine import ORDER_CANCEL_ROLES, check_order_transition

CANCELLATION_REASON_MAX_LENGTH = 500


class OrdersService(BaseService):
    """订单服务"""

    def __init__(self, *args, settlement_service: Optional[SettlementService] = None, **kwargs):
        super().__init__(*args, **kwargs)
        self.settlement_service = settlement_service or SettlementService(
            db_manager=self.db_manager, settings=self.settings, clock=self.clock
        )

    async def place_order(
        self,
        order_data: Dict[str, Any],
        items_data: List[Dict[str, Any]],
    ) -> Order:
        """
        下单

        Args:
            order_data: 买家、收货地址、支付方式、运费、优惠等
            items_data: 订单行 [{product_id, shop_id, product_name, quantity, price_at_purchase}]

        Returns:
            新建的 PENDING 订单
        """
        values = self._validate_order_data(order_data, items_data)
        return await self.execute_with_transaction(self._place_order_tx, values)

    async def _place_order_tx(self, session: AsyncSession, values: Dict[str, Any]) -> Order:
        now = self.now()
        items = values.pop("items")

        order = Order(
            **values,
            status=OrderStatus.PENDING.value,
            version=0,
            rma_version=0,
            created_at=now,
            updated_at=now,
        )
        order.items = [OrderItem(**item) for item in items]
        session.add(order)
        await session.flush()

        session.add(OrderStatusEvent(
            order_id=order.id,
            from_status=None,
            to_status=OrderStatus.PENDING.value,
            actor_role=ActorRole.BUYER.value,
            actor_id=order.buyer_id,
            created_at=now,
        ))
        await session.flush()

        self.logger.info(
            "Order placed",
            order_id=order.id,
            buyer_id=order.buyer_id,
            shops=order.shop_ids,
            final_amount=str(order.final_amount),
        )
        return order

    async def get_order(self, order_id: int) -> Order:
        """查询订单（含订单行）"""
        return await self.execute_with_session(self.load_order, order_id)

    async def list_status_events(self, order_id: int) -> List[OrderStatusEvent]:
        """查询订单状态变更记录"""
        return await self.execute_with_session(self._list_status_events, order_id)

    async def _list_status_events(self, session: AsyncSession, order_id: int) -> List[OrderStatusEvent]:
        await self.load_order(session, order_id)
        result = await session.execute(
            select(OrderStatusEvent)
            .where(OrderStatusEvent.order_id == order_id)
            .order_by(OrderStatusEvent.id)
        )
        return list(result.scalars().all())

    async def transition_order(
        self,
        order_id: int,
        target: OrderStatus,
        actor_role: ActorRole,
        actor_id: Optional[int] = None,
        reason: Optional[str] = None,
        expected_version: Optional[int] = None,
        transaction_id: Optional[str] = None,
    ) -> Order:
        """
        订单状态流转

        Args:
            order_id: 订单ID
            target: 目标状态（REFUNDED 只能由退货流程触发）
            actor_role: 操作者角色
            actor_id: 操作者ID
            reason: 变更原因，取消时必填
            expected_version: 调用方读取到的版本号，不一致则拒绝
            transaction_id: 打款交易号（目标为 PAID 时可选）

        Raises:
            NotFoundError / InvalidTransitionError / MissingReasonError /
            ConcurrentModificationError
        """
        target = self._coerce(OrderStatus, target, "ORDER_INVALID_STATUS")
        actor_role = self._coerce(ActorRole, actor_role, "INVALID_ACTOR_ROLE")

        with LogContext(order_id=order_id):
            return await self.execute_with_transaction(
                self._transition_tx,
                order_id, target, actor_role, actor_id, reason, expected_version, transaction_id
            )

    async def _transition_tx(
        self,
        session: AsyncSession,
        order_id: int,
        target: OrderStatus,
        actor_role: ActorRole,
        actor_id: Optional[int],
        reason: Optional[str],
        expected_version: Optional[int],
        transaction_id: Optional[str],
    ) -> Order:
        order = await self.load_order(session, order_id)
        return await self.transition_in_session(
            session, order, target, actor_role,
            actor_id=actor_id,
            reason=reason,
            expected_version=expected_version,
            transaction_id=transaction_id,
        )

    async def transition_in_session(
        self,
        session: AsyncSession,
        order: Order,
        target: OrderStatus,
        actor_role: ActorRole,
        actor_id: Optional[int] = None,
        reason: Optional[str] = None,
        expected_version: Optional[int] = None,
        transaction_id: Optional[str] = None,
        internal: bool = False,
    ) -> Order:
        """在调用方事务内执行状态流转；internal 仅供退货流程使用"""
        current = OrderStatus(order.status)
        now = self.now()

        if expected_version is not None and expected_version != order.version:
            raise ConcurrentModificationError(
                code="ORDER_VERSION_MISMATCH",
                detail=f"Order {order.id} is at version {order.version}, expected {expected_version}",
            )

        check_order_transition(current, target, order.id, internal=internal)

        values: Dict[str, Any] = {
            "status": target.value,
            "version": order.version + 1,
            "updated_at": now,
        }

        if target == OrderStatus.CANCELLED:
            if reason is None or not reason.strip():
                raise MissingReasonError(
                    code="ORDER_CANCEL_REASON_REQUIRED",
                    detail="A cancellation reason is required",
                )
            if actor_role not in ORDER_CANCEL_ROLES:
                raise ValidationError(
                    code="ORDER_CANCEL_ROLE_INVALID",
                    detail=f"{actor_role.value} cannot cancel orders",
                )
            reason = reason.strip()[:CANCELLATION_REASON_MAX_LENGTH]
            values.update(
                cancellation_reason=reason,
                cancelled_by=actor_role.value,
                cancelled_at=now,
                payment_status=(
                    PaymentStatus.REFUNDED.value
                    if order.payment_status == PaymentStatus.PAID.value
                    else PaymentStatus.CANCELLED.value
                ),
            )
        elif target == OrderStatus.DELIVERED:
            values["delivered_at"] = now
            if order.payment_method == PaymentMethod.COD.value and order.payment_status == PaymentStatus.PENDING.value:
                values.update(payment_status=PaymentStatus.PAID.value, paid_at=now)
        elif target == OrderStatus.PAID:
            if await self.has_open_returns(session, order.id):
                raise InvalidTransitionError(
                    code="ORDER_PAYOUT_BLOCKED_BY_RETURN",
                    detail=f"Order {order.id} has an open return request",
                    current_status=current.value,
                    target_status=target.value,
                )
        elif target == OrderStatus.REFUNDED:
            values["payment_status"] = PaymentStatus.REFUNDED.value

        result = await session.execute(
            update(Order)
            .where(
                Order.id == order.id,
                Order.version == order.version,
                Order.status == current.value,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConcurrentModificationError(
                code="ORDER_CONCURRENT_UPDATE",
                detail=f"Order {order.id} was modified concurrently, please retry",
            )
        await session.refresh(order)

        session.add(OrderStatusEvent(
            order_id=order.id,
            from_status=current.value,
            to_status=target.value,
            actor_role=actor_role.value,
            actor_id=actor_id,
            reason=reason,
            created_at=now,
        ))

        if target == OrderStatus.CONFIRMED:
            await self.settlement_service.materialize(session, order, now)
        elif target == OrderStatus.DELIVERED:
            await self.settlement_service.materialize(session, order, now)
            await self.settlement_service.finalize(session, order.id, now)
        elif target == OrderStatus.CANCELLED:
            await self.settlement_service.void_unpaid(session, order.id, reason, now)
        elif target == OrderStatus.PAID:
            await self.settlement_service.pay_out_order(session, order.id, now, transaction_id)

        await session.flush()

        self.logger.info(
            "Order status changed",
            order_id=order.id,
            from_status=current.value,
            to_status=target.value,
            actor_role=actor_role.value,
            version=order.version,
        )
        return order

    async def release_due_payouts(self, now: Optional[datetime] = None) -> List[int]:
        """
        定时打款：妥投超过托管期且无进行中退货的订单转为 PAID

        Returns:
            本次完成打款的订单ID
        """
        now = now or self.now()
        cutoff = now - timedelta(days=self.settings.payout_escrow_days)
        order_ids = await self.execute_with_session(self._find_due_orders, cutoff)

        paid: List[int] = []
        for order_id in order_ids:
            try:
                await self.transition_order(order_id, OrderStatus.PAID, ActorRole.SYSTEM)
                paid.append(order_id)
            except CraftVillagesException as e:
                # 单个订单失败不影响其他订单，下次调度重试
                self.logger.warning(
                    "Payout release skipped order",
                    order_id=order_id,
                    code=e.code,
                    detail=e.detail,
                )

        self.logger.info(
            "Payout release finished",
            cutoff=cutoff.isoformat(),
            candidates=len(order_ids),
            paid=len(paid),
        )
        return paid

    async def _find_due_orders(self, session: AsyncSession, cutoff: datetime) -> List[int]:
        open_returns = exists().where(
            ReturnRequest.order_id == Order.id,
            ReturnRequest.status.in_(OPEN_RETURN_STATUSES),
        )
        result = await session.execute(
            select(Order.id)
            .where(
                Order.status == OrderStatus.DELIVERED.value,
                Order.delivered_at <= cutoff,
                ~open_returns,
            )
            .order_by(Order.delivered_at, Order.id)
        )
        return list(result.scalars().all())

    async def load_order(self, session: AsyncSession, order_id: int) -> Order:
        result = await session.execute(
            select(Order).where(Order.id == order_id).execution_options(populate_existing=True)
        )
        order = result.scalar_one_or_none()
        if order is None:
            raise NotFoundError(code="ORDER_NOT_FOUND", resource=f"Order {order_id}")
        return order

    async def has_open_returns(self, session: AsyncSession, order_id: int) -> bool:
        result = await session.execute(
            select(ReturnRequest.id)
            .where(
                ReturnRequest.order_id == order_id,
                ReturnRequest.status.in_(OPEN_RETURN_STATUSES),
            )
            .limit(1)
        )
        return result.scalar_one_or_none() is not None

    @staticmethod
    def _coerce(enum_cls, value, code: str):
        try:
            return enum_cls(value)
        except ValueError:
            raise ValidationError(code=code, detail=f"Invalid {enum_cls.__name__}: {value}")

    def _validate_order_data(
        self,
        order_data: Dict[str, Any],
        items_data: List[Dict[str, Any]],
    ) -> Dict[str, Any]:
        """校验下单数据并计算金额"""
        for field in ("buyer_id", "recipient_name", "phone_number", "full_address", "payment_method"):
            if order_data.get(field) in (None, ""):
                raise ValidationError(code="MISSING_REQUIRED_FIELDS", detail=f"Missing required field: {field}")

        payment_method = self._coerce(PaymentMethod, order_data["payment_method"], "INVALID_PAYMENT_METHOD")
        payment_status = self._coerce(
            PaymentStatus, order_data.get("payment_status") or PaymentStatus.PENDING.value, "INVALID_PAYMENT_STATUS"
        )
        if payment_status not in (PaymentStatus.PENDING, PaymentStatus.PAID):
            raise ValidationError(
                code="INVALID_PAYMENT_STATUS",
                detail="New orders must be PENDING or PAID",
            )
        if payment_method == PaymentMethod.COD and payment_status == PaymentStatus.PAID:
            raise ValidationError(
                code="INVALID_PAYMENT_STATUS",
                detail="COD orders are paid on delivery",
            )

        if not items_data:
            raise ValidationError(code="ORDER_ITEMS_REQUIRED", detail="Order must contain at least one item")

        items = []
        seen_products = set()
        subtotal = Decimal("0")
        for index, item in enumerate(items_data):
            product_id = item.get("product_id")
            shop_id = item.get("shop_id")
            if product_id is None or shop_id is None:
                raise ValidationError(
                    code="ORDER_ITEM_INVALID",
                    detail=f"Item {index} must have product_id and shop_id",
                )
            if product_id in seen_products:
                raise ValidationError(
                    code="ORDER_ITEM_DUPLICATE_PRODUCT",
                    detail=f"Product {product_id} appears more than once",
                )
            seen_products.add(product_id)

            quantity = item.get("quantity")
            if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity <= 0:
                raise ValidationError(
                    code="ORDER_ITEM_INVALID_QUANTITY",
                    detail=f"Item {index} quantity must be a positive integer",
                )
            price = self._money(item.get("price_at_purchase"), "ORDER_ITEM_INVALID_PRICE", f"item {index} price")

            subtotal += price * quantity
            items.append({
                "product_id": product_id,
                "shop_id": shop_id,
                "product_name": item.get("product_name"),
                "quantity": quantity,
                "price_at_purchase": price,
            })

        if order_data.get("subtotal") is not None:
            declared = self._money(order_data["subtotal"], "ORDER_INVALID_SUBTOTAL", "subtotal")
            if declared != subtotal:
                raise ValidationError(
                    code="ORDER_SUBTOTAL_MISMATCH",
                    detail=f"Declared subtotal {declared} does not match items total {subtotal}",
                )

        shipping_fee = self._money(order_data.get("shipping_fee", 0), "ORDER_INVALID_SHIPPING_FEE", "shipping_fee")
        discount = self._money(order_data.get("discount_amount", 0), "ORDER_INVALID_DISCOUNT", "discount_amount")
        if discount > subtotal + shipping_fee:
            raise ValidationError(
                code="ORDER_INVALID_DISCOUNT",
                detail="Discount cannot exceed subtotal plus shipping fee",
            )

        return {
            "buyer_id": order_data["buyer_id"],
            "buyer_name": order_data.get("buyer_name"),
            "recipient_name": order_data["recipient_name"],
            "phone_number": order_data["phone_number"],
            "full_address": order_data["full_address"],
            "payment_method": payment_method.value,
            "payment_status": payment_status.value,
            "payment_transaction_id": order_data.get("payment_transaction_id"),
            "paid_at": self.now() if payment_status == PaymentStatus.PAID else None,
            "subtotal": subtotal,
            "shipping_fee": shipping_fee,
            "discount_amount": discount,
            "final_amount": subtotal + shipping_fee - discount,
            "currency": order_data.get("currency") or self.settings.currency,
            "items": items,
        }

    def _money(self, value, code: str, field_name: str) -> Decimal:
        """解析非负金额，且精度不超过货币最小单位"""
        try:
            amount = Decimal(str(value))
        except (InvalidOperation, ValueError, TypeError):
            raise ValidationError(code=code, detail=f"Invalid {field_name}: {value}")
        if not amount.is_finite() or amount < 0:
            raise ValidationError(code=code, detail=f"{field_name} must be a non-negative amount")
        if amount != amount.quantize(self.settings.money_quantum):
            raise ValidationError(
                code=code,
                detail=f"{field_name} has more precision than {self.settings.currency} allows",
            )
        return amount
