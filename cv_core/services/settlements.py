"""
分店结算服务
生成、确认、作废、打款以及退款冲减
"""
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import select, update, func
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from cv_core.models import Order, ShopSettlement, SettlementAdjustment, ReturnRequest
from cv_core.models.enums import SettlementStatus, FeeType, AdjustmentType
from cv_core.utils.errors import (
    ConcurrentModificationError, InvalidTransitionError, NotFoundError,
    SettlementAlreadyFinalizedError
)
from plugins.cv.finance.calc.models import CommissionTerms, OrderSnapshot, SettlementLine
from plugins.cv.finance.calc.services import SettlementCalculator
from .base import BaseService
from .commission import CommissionService

# 仍可修改（未打款、未作废）的结算状态
UNPAID_STATUSES = (SettlementStatus.PENDING.value, SettlementStatus.PAYABLE.value)


class SettlementService(BaseService):
    """分店结算服务"""

    def __init__(self, *args, commission_service: Optional[CommissionService] = None, **kwargs):
        super().__init__(*args, **kwargs)
        self.commission_service = commission_service or CommissionService(
            db_manager=self.db_manager, settings=self.settings, clock=self.clock
        )
        self.calculator = SettlementCalculator(quantum=self.settings.money_quantum)

    async def get_settlement(self, order_id: int, shop_id: int) -> ShopSettlement:
        """查询某订单某店铺的结算"""
        return await self.execute_with_session(self._get_settlement, order_id, shop_id)

    async def _get_settlement(self, session: AsyncSession, order_id: int, shop_id: int) -> ShopSettlement:
        settlement = await self.find(session, order_id, shop_id)
        if settlement is None:
            raise NotFoundError(code="SETTLEMENT_NOT_FOUND", resource=f"Settlement for order {order_id} shop {shop_id}")
        return settlement

    async def list_settlements(self, order_id: int) -> List[ShopSettlement]:
        """查询订单的全部分店结算（按 shop_id 升序）"""
        return await self.execute_with_session(self.list_for_order, order_id)

    async def list_adjustments(self, order_id: int) -> List[SettlementAdjustment]:
        """查询订单的结算调整记录"""
        return await self.execute_with_session(self._list_adjustments, order_id)

    async def _list_adjustments(self, session: AsyncSession, order_id: int) -> List[SettlementAdjustment]:
        result = await session.execute(
            select(SettlementAdjustment)
            .where(SettlementAdjustment.order_id == order_id)
            .order_by(SettlementAdjustment.id)
        )
        return list(result.scalars().all())

    async def mark_paid(self, order_id: int, shop_id: int, transaction_id: str) -> ShopSettlement:
        """
        单店打款

        相同交易号重复调用为无操作；已用其他交易号打款则抛出 SettlementAlreadyFinalizedError。
        """
        transaction_id = self.require_text(transaction_id, "SETTLEMENT_TRANSACTION_REQUIRED", "transaction_id", 100)
        return await self.execute_with_transaction(self._mark_paid_tx, order_id, shop_id, transaction_id)

    async def _mark_paid_tx(
        self, session: AsyncSession, order_id: int, shop_id: int, transaction_id: str
    ) -> ShopSettlement:
        settlement = await self._get_settlement(session, order_id, shop_id)
        return await self.mark_paid_in_session(session, settlement, transaction_id, self.now())

    # ---- 以下方法在调用方事务内执行 ----

    async def find(self, session: AsyncSession, order_id: int, shop_id: int) -> Optional[ShopSettlement]:
        result = await session.execute(
            select(ShopSettlement).where(
                ShopSettlement.order_id == order_id,
                ShopSettlement.shop_id == shop_id,
            )
        )
        return result.scalar_one_or_none()

    async def list_for_order(self, session: AsyncSession, order_id: int) -> List[ShopSettlement]:
        result = await session.execute(
            select(ShopSettlement)
            .where(ShopSettlement.order_id == order_id)
            .order_by(ShopSettlement.shop_id)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def materialize(self, session: AsyncSession, order: Order, at: datetime) -> List[ShopSettlement]:
        """
        为订单的每个店铺生成结算（幂等）

        佣金在生成时刻解析并固化；(order_id, shop_id) 唯一约束保证至多生成一次。
        """
        existing = {s.shop_id for s in await self.list_for_order(session, order.id)}
        missing = [shop_id for shop_id in order.shop_ids if shop_id not in existing]

        if missing:
            terms = {}
            for shop_id in order.shop_ids:
                resolved = await self.commission_service.resolve_in_session(session, shop_id, at)
                terms[shop_id] = resolved.to_terms()

            drafts = self.calculator.calculate(self._snapshot(order), terms)
            rows = [
                {
                    "order_id": order.id,
                    "shop_id": draft.shop_id,
                    "shop_subtotal": draft.shop_subtotal,
                    "shop_shipping_fee": draft.shop_shipping_fee,
                    "commission_config_id": draft.terms.config_id,
                    "commission_fee_type": draft.terms.fee_type.value,
                    "commission_rate_applied": draft.terms.rate,
                    "commission_minimum_fee": draft.terms.minimum_fee,
                    "commission_maximum_fee": draft.terms.maximum_fee,
                    "resolved_at": at,
                    "platform_fee": draft.platform_fee,
                    "refunded_amount": Decimal("0"),
                    "net_amount": draft.net_amount,
                    "status": SettlementStatus.PENDING.value,
                    "is_paid": False,
                    "created_at": at,
                    "updated_at": at,
                }
                for draft in drafts
                if draft.shop_id in missing
            ]
            await self._insert_ignore_conflicts(session, rows)

            self.logger.info(
                "Shop settlements materialized",
                order_id=order.id,
                shops=missing,
            )

        return await self.list_for_order(session, order.id)

    async def finalize(self, session: AsyncSession, order_id: int, now: datetime) -> None:
        """订单妥投：待定结算转为可打款"""
        await session.execute(
            update(ShopSettlement)
            .where(
                ShopSettlement.order_id == order_id,
                ShopSettlement.status == SettlementStatus.PENDING.value,
            )
            .values(status=SettlementStatus.PAYABLE.value, finalized_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )

    async def void_unpaid(self, session: AsyncSession, order_id: int, reason: str, now: datetime) -> int:
        """订单取消：作废未打款结算（保留记录用于审计）"""
        result = await session.execute(
            update(ShopSettlement)
            .where(
                ShopSettlement.order_id == order_id,
                ShopSettlement.status.in_(UNPAID_STATUSES),
                ShopSettlement.is_paid.is_(False),
            )
            .values(status=SettlementStatus.VOID.value, voided_at=now, void_reason=reason, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    async def pay_out_order(
        self,
        session: AsyncSession,
        order_id: int,
        now: datetime,
        transaction_id: Optional[str] = None,
    ) -> List[ShopSettlement]:
        """向订单内所有可打款店铺打款；已单独打款的店铺跳过"""
        settlements = await self.list_for_order(session, order_id)
        for settlement in settlements:
            if settlement.status == SettlementStatus.VOID.value or settlement.is_paid:
                continue
            txid = transaction_id or f"PAYOUT-{order_id}-{settlement.shop_id}"
            await self.mark_paid_in_session(session, settlement, txid, now)
        return await self.list_for_order(session, order_id)

    async def mark_paid_in_session(
        self,
        session: AsyncSession,
        settlement: ShopSettlement,
        transaction_id: str,
        now: datetime,
    ) -> ShopSettlement:
        if settlement.is_paid:
            if settlement.transaction_id == transaction_id:
                return settlement
            raise SettlementAlreadyFinalizedError(
                detail=f"Settlement {settlement.id} was already paid with transaction {settlement.transaction_id}"
            )

        if settlement.status != SettlementStatus.PAYABLE.value:
            raise InvalidTransitionError(
                code="SETTLEMENT_NOT_PAYABLE",
                detail=f"Settlement {settlement.id} is {settlement.status} and cannot be paid",
                current_status=settlement.status,
                target_status=SettlementStatus.PAID.value,
            )

        result = await session.execute(
            update(ShopSettlement)
            .where(
                ShopSettlement.id == settlement.id,
                ShopSettlement.status == SettlementStatus.PAYABLE.value,
                ShopSettlement.is_paid.is_(False),
            )
            .values(
                status=SettlementStatus.PAID.value,
                is_paid=True,
                paid_at=now,
                transaction_id=transaction_id,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        await session.refresh(settlement)

        if result.rowcount != 1:
            if settlement.is_paid and settlement.transaction_id == transaction_id:
                return settlement
            raise ConcurrentModificationError(
                code="SETTLEMENT_CONCURRENT_UPDATE",
                detail=f"Settlement {settlement.id} was modified concurrently, please retry",
            )

        self.logger.info(
            "Settlement paid",
            order_id=settlement.order_id,
            shop_id=settlement.shop_id,
            net_amount=str(settlement.net_amount),
            transaction_id=transaction_id,
        )
        return settlement

    async def apply_refund(
        self,
        session: AsyncSession,
        return_request: ReturnRequest,
        now: datetime,
    ) -> Optional[SettlementAdjustment]:
        """
        退款计入结算

        未打款：累加 refunded_amount 并重算平台费与净额；
        已打款：生成负向调整记录（扣回卖家净额）。

        Returns:
            已打款时生成的调整记录，否则为 None
        """
        settlement = await self.find(session, return_request.order_id, return_request.shop_id)
        if settlement is None:
            raise NotFoundError(
                code="SETTLEMENT_NOT_FOUND",
                resource=f"Settlement for order {return_request.order_id} shop {return_request.shop_id}",
            )
        if settlement.status == SettlementStatus.VOID.value:
            raise InvalidTransitionError(
                code="SETTLEMENT_VOID",
                detail=f"Settlement {settlement.id} is void and cannot absorb refunds",
                current_status=settlement.status,
            )

        refund_amount = return_request.refund_total
        terms = self.terms_of(settlement)

        if not settlement.is_paid:
            recalculated = self.calculator.recalculate_after_refund(
                settlement.shop_subtotal,
                settlement.shop_shipping_fee,
                terms,
                settlement.refunded_amount,
                refund_amount,
            )
            settlement.refunded_amount = recalculated.refunded_amount
            settlement.platform_fee = recalculated.platform_fee
            settlement.net_amount = recalculated.net_amount
            settlement.updated_at = now
            await session.flush()

            self.logger.info(
                "Refund applied to unpaid settlement",
                order_id=settlement.order_id,
                shop_id=settlement.shop_id,
                rma_code=return_request.rma_code,
                refund_amount=str(refund_amount),
                net_amount=str(settlement.net_amount),
            )
            return None

        adjusted = await session.execute(
            select(func.coalesce(func.sum(SettlementAdjustment.refund_amount), 0))
            .where(SettlementAdjustment.settlement_id == settlement.id)
        )
        refunded_before = settlement.refunded_amount + Decimal(str(adjusted.scalar_one()))

        recalculated = self.calculator.recalculate_after_refund(
            settlement.shop_subtotal,
            settlement.shop_shipping_fee,
            terms,
            refunded_before,
            refund_amount,
        )
        adjustment = SettlementAdjustment(
            settlement_id=settlement.id,
            order_id=settlement.order_id,
            shop_id=settlement.shop_id,
            return_request_id=return_request.id,
            rma_code=return_request.rma_code,
            adjustment_type=AdjustmentType.REFUND_DEDUCTION.value,
            refund_amount=refund_amount,
            platform_fee_delta=recalculated.platform_fee_delta,
            amount=recalculated.net_delta,
            created_at=now,
        )
        session.add(adjustment)
        await session.flush()

        self.logger.info(
            "Refund deducted from paid settlement",
            order_id=settlement.order_id,
            shop_id=settlement.shop_id,
            rma_code=return_request.rma_code,
            refund_amount=str(refund_amount),
            amount=str(adjustment.amount),
        )
        return adjustment

    @staticmethod
    def terms_of(settlement: ShopSettlement) -> CommissionTerms:
        """结算单上固化的佣金条款"""
        return CommissionTerms(
            config_id=settlement.commission_config_id,
            fee_type=FeeType(settlement.commission_fee_type),
            rate=settlement.commission_rate_applied,
            minimum_fee=settlement.commission_minimum_fee,
            maximum_fee=settlement.commission_maximum_fee,
        )

    @staticmethod
    def _snapshot(order: Order) -> OrderSnapshot:
        return OrderSnapshot(
            order_id=order.id,
            lines=[
                SettlementLine(
                    product_id=item.product_id,
                    shop_id=item.shop_id,
                    quantity=item.quantity,
                    price_at_purchase=item.price_at_purchase,
                )
                for item in order.items
            ],
            subtotal=order.subtotal,
            shipping_fee=order.shipping_fee,
        )

    async def _insert_ignore_conflicts(self, session: AsyncSession, rows: List[dict]) -> None:
        """INSERT ... ON CONFLICT (order_id, shop_id) DO NOTHING"""
        dialect = session.get_bind().dialect.name
        insert_fn = pg_insert if dialect == "postgresql" else sqlite_insert
        stmt = insert_fn(ShopSettlement).values(rows).on_conflict_do_nothing(
            index_elements=["order_id", "shop_id"]
        )
        await session.execute(stmt)
