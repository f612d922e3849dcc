"""
退货退款服务
退货单创建、状态流转，以及退款对卖家结算的影响
"""
import secrets
from collections import defaultdict
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from cv_core.models import Order, ReturnRequest, ReturnItem, ReturnStatusEvent
from cv_core.models.enums import (
    OrderStatus, ReturnStatus, ReturnReason, ReturnResolution, ReturnMethod,
    EvidenceType, ActorRole
)
from cv_core.models.returns import RELEASED_RETURN_STATUSES
from cv_core.utils.errors import (
    ConcurrentModificationError, ForbiddenError, MissingReasonError,
    NotFoundError, QuantityExceededError, ValidationError
)
from cv_core.utils.logger import LogContext
from .base import BaseService
from .orders import OrdersService
from .settlements import SettlementService
from .state_machine import check_return_transition

# 可以申请退货的订单状态
RETURNABLE_ORDER_STATUSES = (OrderStatus.DELIVERED.value, OrderStatus.PAID.value)

# 进入这些状态且买家要求退款时，退款计入结算
REFUND_SETTLING_STATUSES = (ReturnStatus.REFUNDED, ReturnStatus.COMPLETED)

MAX_EVIDENCES = 10


class ReturnsService(BaseService):
    """退货退款服务"""

    def __init__(
        self,
        *args,
        orders_service: Optional[OrdersService] = None,
        settlement_service: Optional[SettlementService] = None,
        **kwargs
    ):
        super().__init__(*args, **kwargs)
        self.settlement_service = settlement_service or SettlementService(
            db_manager=self.db_manager, settings=self.settings, clock=self.clock
        )
        self.orders_service = orders_service or OrdersService(
            db_manager=self.db_manager,
            settings=self.settings,
            clock=self.clock,
            settlement_service=self.settlement_service,
        )

    async def create_return(self, return_data: Dict[str, Any]) -> ReturnRequest:
        """
        创建退货单

        Args:
            return_data: order_id, buyer_id, reason_code, reason_detail, requested_resolution,
                return_method, items [{product_id, quantity, unit_price?}], evidences [{url, type}],
                restocking_fee, shipping_fee

        Raises:
            NotFoundError: 订单不存在
            ValidationError: 订单状态不可退、退货行不合法
            QuantityExceededError: 退货数量超过可退数量
            ConcurrentModificationError: 同一订单并发创建退货单
        """
        values = self._validate_return_data(return_data)
        with LogContext(order_id=values["order_id"]):
            return await self.execute_with_transaction(self._create_return_tx, values)

    async def _create_return_tx(self, session: AsyncSession, values: Dict[str, Any]) -> ReturnRequest:
        now = self.now()
        order = await self.orders_service.load_order(session, values["order_id"])

        if order.buyer_id != values["buyer_id"]:
            raise ForbiddenError(
                code="RETURN_ORDER_NOT_OWNED",
                detail=f"Order {order.id} does not belong to buyer {values['buyer_id']}",
            )
        if order.status not in RETURNABLE_ORDER_STATUSES:
            raise ValidationError(
                code="RETURN_ORDER_NOT_ELIGIBLE",
                detail=f"Order {order.id} is {order.status}; returns require a delivered order",
            )

        # 先记下版本号，再统计已占用数量
        rma_version = order.rma_version
        purchased = {item.product_id: item for item in order.items}

        requested_items = []
        shop_ids = set()
        for item in values["items"]:
            order_item = purchased.get(item["product_id"])
            if order_item is None:
                raise ValidationError(
                    code="RETURN_ITEM_NOT_IN_ORDER",
                    detail=f"Product {item['product_id']} is not part of order {order.id}",
                )
            if item["unit_price"] is not None and item["unit_price"] != order_item.price_at_purchase:
                raise ValidationError(
                    code="RETURN_ITEM_PRICE_MISMATCH",
                    detail=f"Unit price for product {item['product_id']} must equal the purchase price",
                )
            shop_ids.add(order_item.shop_id)
            requested_items.append((order_item, item["quantity"]))

        if len(shop_ids) != 1:
            raise ValidationError(
                code="RETURN_MULTIPLE_SHOPS",
                detail="All returned items must belong to the same shop",
            )

        reserved = await self.reserved_quantities(session, order.id)
        for order_item, quantity in requested_items:
            available = order_item.quantity - reserved.get(order_item.product_id, 0)
            if quantity > available:
                raise QuantityExceededError(
                    detail=(
                        f"Requested {quantity} of product {order_item.product_id}, "
                        f"only {max(available, 0)} can still be returned"
                    ),
                    product_id=order_item.product_id,
                    available=max(available, 0),
                )

        # 占用可退数量：同一订单的并发申请只有一个能成功
        bumped = await session.execute(
            update(Order)
            .where(Order.id == order.id, Order.rma_version == rma_version)
            .values(rma_version=rma_version + 1)
            .execution_options(synchronize_session=False)
        )
        if bumped.rowcount != 1:
            raise ConcurrentModificationError(
                code="RETURN_CONCURRENT_REQUEST",
                detail=f"Another return request for order {order.id} was created concurrently, please retry",
            )

        subtotal = sum((oi.price_at_purchase * qty for oi, qty in requested_items), Decimal("0"))
        restocking_fee = values["restocking_fee"]
        if restocking_fee > subtotal:
            raise ValidationError(
                code="RETURN_INVALID_RESTOCKING_FEE",
                detail="Restocking fee cannot exceed the returned items subtotal",
            )

        return_request = ReturnRequest(
            rma_code=self._generate_rma_code(now),
            order_id=order.id,
            buyer_id=order.buyer_id,
            shop_id=shop_ids.pop(),
            reason_code=values["reason_code"],
            reason_detail=values["reason_detail"],
            requested_resolution=values["requested_resolution"],
            return_method=values["return_method"],
            evidences=values["evidences"],
            subtotal=subtotal,
            shipping_fee=values["shipping_fee"],
            restocking_fee=restocking_fee,
            refund_total=subtotal - restocking_fee,
            currency=order.currency,
            status=ReturnStatus.REQUESTED.value,
            version=0,
            created_at=now,
            updated_at=now,
        )
        return_request.items = [
            ReturnItem(
                product_id=oi.product_id,
                product_name=oi.product_name,
                quantity=qty,
                unit_price=oi.price_at_purchase,
            )
            for oi, qty in requested_items
        ]
        return_request.events = [
            ReturnStatusEvent(
                status=ReturnStatus.REQUESTED.value,
                actor_role=ActorRole.BUYER.value,
                actor_id=order.buyer_id,
                note=values["reason_detail"],
                created_at=now,
            )
        ]
        session.add(return_request)
        try:
            await session.flush()
        except IntegrityError:
            raise ConcurrentModificationError(
                code="RETURN_CODE_CONFLICT",
                detail="Return code collision, please retry",
            )

        self.logger.info(
            "Return request created",
            rma_code=return_request.rma_code,
            order_id=order.id,
            shop_id=return_request.shop_id,
            refund_total=str(return_request.refund_total),
        )
        return return_request

    async def transition_return(
        self,
        rma_code: str,
        target: ReturnStatus,
        actor_role: ActorRole,
        actor_id: Optional[int] = None,
        note: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> ReturnRequest:
        """
        退货单状态流转

        拒绝必须附带说明；进入 REFUNDED/COMPLETED 且买家要求退款时，
        退款计入卖家结算（每张退货单只计一次）。
        """
        target = self._coerce(ReturnStatus, target, "RETURN_INVALID_STATUS")
        actor_role = self._coerce(ActorRole, actor_role, "INVALID_ACTOR_ROLE")
        return await self.execute_with_transaction(
            self._transition_tx, rma_code, target, actor_role, actor_id, note, expected_version
        )

    async def _transition_tx(
        self,
        session: AsyncSession,
        rma_code: str,
        target: ReturnStatus,
        actor_role: ActorRole,
        actor_id: Optional[int],
        note: Optional[str],
        expected_version: Optional[int],
    ) -> ReturnRequest:
        now = self.now()
        return_request = await self._load_return(session, rma_code)
        current = ReturnStatus(return_request.status)

        if expected_version is not None and expected_version != return_request.version:
            raise ConcurrentModificationError(
                code="RETURN_VERSION_MISMATCH",
                detail=f"Return {rma_code} is at version {return_request.version}, expected {expected_version}",
            )

        check_return_transition(current, target, actor_role, rma_code)

        note = note.strip() if note and note.strip() else None
        if target == ReturnStatus.REJECTED and note is None:
            raise MissingReasonError(
                code="RETURN_REJECT_REASON_REQUIRED",
                detail="A note is required when rejecting a return request",
            )

        result = await session.execute(
            update(ReturnRequest)
            .where(
                ReturnRequest.id == return_request.id,
                ReturnRequest.version == return_request.version,
                ReturnRequest.status == current.value,
            )
            .values(status=target.value, version=return_request.version + 1, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConcurrentModificationError(
                code="RETURN_CONCURRENT_UPDATE",
                detail=f"Return {rma_code} was modified concurrently, please retry",
            )

        session.add(ReturnStatusEvent(
            return_request_id=return_request.id,
            status=target.value,
            actor_role=actor_role.value,
            actor_id=actor_id,
            note=note,
            created_at=now,
        ))
        await session.flush()
        await session.refresh(return_request)

        with LogContext(shop_id=return_request.shop_id, order_id=return_request.order_id, rma_code=rma_code):
            if (
                target in REFUND_SETTLING_STATUSES
                and return_request.requested_resolution == ReturnResolution.REFUND.value
                and return_request.settlement_applied_at is None
            ):
                await self._settle_refund(session, return_request, now)

            self.logger.info(
                "Return status changed",
                rma_code=rma_code,
                from_status=current.value,
                to_status=target.value,
                actor_role=actor_role.value,
            )
        return return_request

    async def _settle_refund(self, session: AsyncSession, return_request: ReturnRequest, now) -> None:
        await self.settlement_service.apply_refund(session, return_request, now)
        return_request.settlement_applied_at = now
        await session.flush()

        # 全部商品均已退款的订单转为 REFUNDED
        order = await self.orders_service.load_order(session, return_request.order_id)
        if order.status != OrderStatus.DELIVERED.value:
            return

        refunded = await self.refunded_quantities(session, order.id)
        if all(refunded.get(item.product_id, 0) >= item.quantity for item in order.items):
            await self.orders_service.transition_in_session(
                session,
                order,
                OrderStatus.REFUNDED,
                ActorRole.SYSTEM,
                reason=f"All items refunded (last return {return_request.rma_code})",
                internal=True,
            )

    async def get_return(self, rma_code: str) -> ReturnRequest:
        """按退货单号查询"""
        return await self.execute_with_session(self._load_return, rma_code)

    async def list_returns(self, order_id: int) -> List[ReturnRequest]:
        """查询订单下的退货单"""
        return await self.execute_with_session(self._list_returns, order_id)

    async def _list_returns(self, session: AsyncSession, order_id: int) -> List[ReturnRequest]:
        result = await session.execute(
            select(ReturnRequest)
            .where(ReturnRequest.order_id == order_id)
            .order_by(ReturnRequest.id)
        )
        return list(result.scalars().all())

    async def list_returns_by_shop(
        self,
        shop_id: int,
        status: Optional[ReturnStatus] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> List[ReturnRequest]:
        """卖家查看本店退货单（新到旧），可按状态过滤"""
        if status is not None:
            status = self._coerce(ReturnStatus, status, "RETURN_INVALID_STATUS")
        return await self.execute_with_session(self._list_returns_by_shop, shop_id, status, limit, offset)

    async def _list_returns_by_shop(
        self,
        session: AsyncSession,
        shop_id: int,
        status: Optional[ReturnStatus],
        limit: int,
        offset: int,
    ) -> List[ReturnRequest]:
        stmt = select(ReturnRequest).where(ReturnRequest.shop_id == shop_id)
        if status is not None:
            stmt = stmt.where(ReturnRequest.status == status.value)

        stmt = stmt.order_by(
            ReturnRequest.created_at.desc(),
            ReturnRequest.id.desc(),
        ).offset(offset).limit(limit)

        result = await session.execute(stmt)
        return list(result.scalars().all())

    async def return_statistics(self, shop_id: int) -> Dict[str, int]:
        """
        店铺退货单按状态计数

        Returns:
            每个 ReturnStatus 一项（没有记录的为 0），另加 total
        """
        return await self.execute_with_session(self._return_statistics, shop_id)

    async def _return_statistics(self, session: AsyncSession, shop_id: int) -> Dict[str, int]:
        result = await session.execute(
            select(ReturnRequest.status, func.count(ReturnRequest.id))
            .where(ReturnRequest.shop_id == shop_id)
            .group_by(ReturnRequest.status)
        )
        counts = {status.value: 0 for status in ReturnStatus}
        for status, count in result.all():
            counts[status] = int(count)
        counts["total"] = sum(counts.values())
        return counts

    async def _load_return(self, session: AsyncSession, rma_code: str) -> ReturnRequest:
        result = await session.execute(
            select(ReturnRequest)
            .where(ReturnRequest.rma_code == rma_code)
            .execution_options(populate_existing=True)
        )
        return_request = result.scalar_one_or_none()
        if return_request is None:
            raise NotFoundError(code="RETURN_NOT_FOUND", resource=f"Return {rma_code}")
        return return_request

    async def reserved_quantities(self, session: AsyncSession, order_id: int) -> Dict[int, int]:
        """未被拒绝/取消的退货单占用的数量（按商品）"""
        result = await session.execute(
            select(ReturnItem.product_id, func.sum(ReturnItem.quantity))
            .join(ReturnRequest, ReturnRequest.id == ReturnItem.return_request_id)
            .where(
                ReturnRequest.order_id == order_id,
                ReturnRequest.status.not_in(RELEASED_RETURN_STATUSES),
            )
            .group_by(ReturnItem.product_id)
        )
        return {product_id: int(quantity) for product_id, quantity in result.all()}

    async def refunded_quantities(self, session: AsyncSession, order_id: int) -> Dict[int, int]:
        """已计入结算的退款数量（按商品）"""
        result = await session.execute(
            select(ReturnItem.product_id, func.sum(ReturnItem.quantity))
            .join(ReturnRequest, ReturnRequest.id == ReturnItem.return_request_id)
            .where(
                ReturnRequest.order_id == order_id,
                ReturnRequest.settlement_applied_at.is_not(None),
            )
            .group_by(ReturnItem.product_id)
        )
        return {product_id: int(quantity) for product_id, quantity in result.all()}

    @staticmethod
    def _generate_rma_code(now) -> str:
        return f"RMA-{now:%Y%m%d}-{secrets.token_hex(3).upper()}"

    @staticmethod
    def _coerce(enum_cls, value, code: str):
        try:
            return enum_cls(value)
        except ValueError:
            raise ValidationError(code=code, detail=f"Invalid {enum_cls.__name__}: {value}")

    def _validate_return_data(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """校验退货申请数据"""
        for field in ("order_id", "buyer_id", "reason_code", "requested_resolution", "return_method"):
            if data.get(field) in (None, ""):
                raise ValidationError(code="MISSING_REQUIRED_FIELDS", detail=f"Missing required field: {field}")

        items_data = data.get("items") or []
        if not items_data:
            raise ValidationError(code="RETURN_ITEMS_REQUIRED", detail="Return must contain at least one item")

        items = []
        quantities: Dict[int, int] = defaultdict(int)
        for index, item in enumerate(items_data):
            product_id = item.get("product_id")
            if product_id is None:
                raise ValidationError(code="RETURN_ITEM_INVALID", detail=f"Item {index} must have product_id")
            if product_id in quantities:
                raise ValidationError(
                    code="RETURN_ITEM_DUPLICATE_PRODUCT",
                    detail=f"Product {product_id} appears more than once",
                )
            quantity = item.get("quantity")
            if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity <= 0:
                raise ValidationError(
                    code="RETURN_ITEM_INVALID_QUANTITY",
                    detail=f"Item {index} quantity must be a positive integer",
                )
            quantities[product_id] = quantity

            unit_price = item.get("unit_price")
            items.append({
                "product_id": product_id,
                "quantity": quantity,
                "unit_price": None if unit_price is None else self._money(unit_price, "unit_price"),
            })

        evidences = []
        for evidence in data.get("evidences") or []:
            url = evidence.get("url")
            if not url:
                raise ValidationError(code="RETURN_EVIDENCE_INVALID", detail="Evidence url is required")
            evidence_type = self._coerce(EvidenceType, evidence.get("type") or "IMAGE", "RETURN_EVIDENCE_INVALID")
            evidences.append({"url": url, "type": evidence_type.value})
        if len(evidences) > MAX_EVIDENCES:
            raise ValidationError(
                code="RETURN_EVIDENCE_INVALID",
                detail=f"At most {MAX_EVIDENCES} evidences are allowed",
            )

        return {
            "order_id": data["order_id"],
            "buyer_id": data["buyer_id"],
            "reason_code": self._coerce(ReturnReason, data["reason_code"], "RETURN_INVALID_REASON").value,
            "reason_detail": (data.get("reason_detail") or "").strip()[:1000] or None,
            "requested_resolution": self._coerce(
                ReturnResolution, data["requested_resolution"], "RETURN_INVALID_RESOLUTION"
            ).value,
            "return_method": self._coerce(ReturnMethod, data["return_method"], "RETURN_INVALID_METHOD").value,
            "items": items,
            "evidences": evidences,
            "restocking_fee": self._money(data.get("restocking_fee", 0), "restocking_fee"),
            "shipping_fee": self._money(data.get("shipping_fee", 0), "shipping_fee"),
        }

    def _money(self, value, field_name: str) -> Decimal:
        try:
            amount = Decimal(str(value))
        except (InvalidOperation, ValueError, TypeError):
            raise ValidationError(code="RETURN_INVALID_AMOUNT", detail=f"Invalid {field_name}: {value}")
        if not amount.is_finite() or amount < 0:
            raise ValidationError(code="RETURN_INVALID_AMOUNT", detail=f"{field_name} must be non-negative")
        if amount != amount.quantize(self.settings.money_quantum):
            raise ValidationError(
                code="RETURN_INVALID_AMOUNT",
                detail=f"{field_name} has more precision than {self.settings.currency} allows",
            )
        return amount
