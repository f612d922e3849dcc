"""
退货退款服务测试
"""
import re
from decimal import Decimal

import pytest
from sqlalchemy import update

from cv_core.models import Order
from cv_core.models.enums import (
    ActorRole, OrderStatus, PaymentStatus, ReturnStatus, SettlementStatus
)
from cv_core.utils.errors import (
    ConcurrentModificationError, ForbiddenError, InvalidTransitionError,
    MissingReasonError, QuantityExceededError, ValidationError
)

from .conftest import BUYER_ID, SHOP_A, SHOP_B


def _return_data(order_id, items, **overrides):
    data = {
        "order_id": order_id,
        "buyer_id": BUYER_ID,
        "reason_code": "DAMAGED_ITEM",
        "reason_detail": "Vase arrived cracked",
        "requested_resolution": "REFUND",
        "return_method": "PICKUP",
        "items": [{"product_id": pid, "quantity": qty} for pid, qty in items],
        "evidences": [{"url": "https://cdn.example.vn/rma/1.jpg", "type": "IMAGE"}],
    }
    data.update(overrides)
    return data


async def _walk(returns_service, rma_code, final=ReturnStatus.REFUNDED):
    """按正常流程推进退货单直到 final"""
    steps = [
        (ReturnStatus.APPROVED, ActorRole.SELLER),
        (ReturnStatus.SHIPPED, ActorRole.BUYER),
        (ReturnStatus.RETURNED, ActorRole.SELLER),
        (final, ActorRole.SELLER),
    ]
    rma = None
    for target, role in steps:
        rma = await returns_service.transition_return(rma_code, target, role)
    return rma


class TestCreateReturn:

    async def test_create_return(self, returns_service, delivered_order):
        rma = await returns_service.create_return(_return_data(delivered_order.id, [(1, 1)]))

        assert re.fullmatch(r"RMA-20260901-[0-9A-F]{6}", rma.rma_code)
        assert rma.status == ReturnStatus.REQUESTED.value
        assert rma.shop_id == SHOP_A
        assert rma.subtotal == Decimal("250000")
        assert rma.refund_total == Decimal("250000")
        assert [(i.product_id, i.quantity, i.unit_price) for i in rma.items] == [(1, 1, Decimal("250000"))]
        assert [(e.status, e.actor_role) for e in rma.events] == [("REQUESTED", "BUYER")]
        assert rma.evidences == [{"url": "https://cdn.example.vn/rma/1.jpg", "type": "IMAGE"}]

    async def test_quantity_exceeding_purchase(self, returns_service, delivered_order):
        with pytest.raises(QuantityExceededError) as exc_info:
            await returns_service.create_return(_return_data(delivered_order.id, [(1, 3)]))

        assert exc_info.value.status == 422
        assert exc_info.value.extra["available"] == 2

    async def test_open_returns_reserve_quantity(self, returns_service, delivered_order):
        first = await returns_service.create_return(_return_data(delivered_order.id, [(1, 2)]))

        with pytest.raises(QuantityExceededError):
            await returns_service.create_return(_return_data(delivered_order.id, [(1, 1)]))

        await returns_service.transition_return(
            first.rma_code, ReturnStatus.REJECTED, ActorRole.SELLER, note="Damage caused by buyer"
        )
        second = await returns_service.create_return(_return_data(delivered_order.id, [(1, 1)]))
        assert second.rma_code != first.rma_code

    async def test_order_must_be_delivered(self, returns_service, placed_order):
        with pytest.raises(ValidationError) as exc_info:
            await returns_service.create_return(_return_data(placed_order.id, [(1, 1)]))
        assert exc_info.value.code == "RETURN_ORDER_NOT_ELIGIBLE"

    async def test_only_order_buyer_can_return(self, returns_service, delivered_order):
        with pytest.raises(ForbiddenError):
            await returns_service.create_return(_return_data(delivered_order.id, [(1, 1)], buyer_id=1))

    @pytest.mark.parametrize("items,code", [
        ([(1, 1), (3, 1)], "RETURN_MULTIPLE_SHOPS"),
        ([(99, 1)], "RETURN_ITEM_NOT_IN_ORDER"),
        ([(1, 1), (1, 1)], "RETURN_ITEM_DUPLICATE_PRODUCT"),
        ([(1, 0)], "RETURN_ITEM_INVALID_QUANTITY"),
        ([], "RETURN_ITEMS_REQUIRED"),
    ])
    async def test_invalid_items(self, returns_service, delivered_order, items, code):
        with pytest.raises(ValidationError) as exc_info:
            await returns_service.create_return(_return_data(delivered_order.id, items))
        assert exc_info.value.code == code

    async def test_restocking_fee_reduces_refund(self, returns_service, delivered_order):
        rma = await returns_service.create_return(
            _return_data(delivered_order.id, [(1, 2)], restocking_fee=Decimal("50000"))
        )
        assert rma.subtotal == Decimal("500000")
        assert rma.refund_total == Decimal("450000")

    async def test_restocking_fee_finer_than_currency_rejected(self, returns_service, delivered_order):
        with pytest.raises(ValidationError) as exc_info:
            await returns_service.create_return(
                _return_data(delivered_order.id, [(1, 1)], restocking_fee=Decimal("0.5"))
            )
        assert exc_info.value.code == "RETURN_INVALID_AMOUNT"

    async def test_concurrent_request_for_same_order(self, returns_service, delivered_order, monkeypatch):
        reserved_quantities = returns_service.reserved_quantities

        async def reserved_after_other_request(session, order_id):
            # 另一个退货申请在本次读取版本号之后提交
            await session.execute(
                update(Order)
                .where(Order.id == order_id)
                .values(rma_version=Order.rma_version + 1)
                .execution_options(synchronize_session=False)
            )
            return await reserved_quantities(session, order_id)

        monkeypatch.setattr(returns_service, "reserved_quantities", reserved_after_other_request)
        with pytest.raises(ConcurrentModificationError) as exc_info:
            await returns_service.create_return(_return_data(delivered_order.id, [(1, 1)]))
        assert exc_info.value.code == "RETURN_CONCURRENT_REQUEST"
        assert await returns_service.list_returns(delivered_order.id) == []

        monkeypatch.undo()
        rma = await returns_service.create_return(_return_data(delivered_order.id, [(1, 2)]))
        assert rma.status == ReturnStatus.REQUESTED.value


class TestReturnTransitions:

    async def test_buyer_cannot_approve(self, returns_service, delivered_order):
        rma = await returns_service.create_return(_return_data(delivered_order.id, [(1, 1)]))

        with pytest.raises(ForbiddenError):
            await returns_service.transition_return(rma.rma_code, ReturnStatus.APPROVED, ActorRole.BUYER)

    async def test_reject_requires_note(self, returns_service, delivered_order):
        rma = await returns_service.create_return(_return_data(delivered_order.id, [(1, 1)]))

        with pytest.raises(MissingReasonError):
            await returns_service.transition_return(rma.rma_code, ReturnStatus.REJECTED, ActorRole.SELLER)

        rejected = await returns_service.transition_return(
            rma.rma_code, ReturnStatus.REJECTED, ActorRole.SELLER, note="Outside return window"
        )
        assert rejected.status == ReturnStatus.REJECTED.value
        assert rejected.events[-1].note == "Outside return window"

    async def test_cannot_skip_to_refunded(self, returns_service, delivered_order):
        rma = await returns_service.create_return(_return_data(delivered_order.id, [(1, 1)]))

        with pytest.raises(InvalidTransitionError):
            await returns_service.transition_return(rma.rma_code, ReturnStatus.REFUNDED, ActorRole.ADMIN)

    async def test_refund_before_payout_reduces_settlement(
        self, returns_service, settlement_service, orders_service, delivered_order
    ):
        rma = await returns_service.create_return(_return_data(delivered_order.id, [(1, 1)]))
        rma = await _walk(returns_service, rma.rma_code)

        assert rma.status == ReturnStatus.REFUNDED.value
        assert rma.settlement_applied_at is not None
        assert rma.version == 4
        assert len(rma.events) == 5

        a = await settlement_service.get_settlement(delivered_order.id, SHOP_A)
        assert a.refunded_amount == Decimal("250000")
        assert a.platform_fee == Decimal("18000")
        assert a.net_amount == Decimal("453000")
        b = await settlement_service.get_settlement(delivered_order.id, SHOP_B)
        assert b.net_amount == Decimal("294000")

        assert await settlement_service.list_adjustments(delivered_order.id) == []
        order = await orders_service.get_order(delivered_order.id)
        assert order.status == OrderStatus.DELIVERED.value

    async def test_open_return_blocks_payout(self, returns_service, orders_service, delivered_order, clock):
        await returns_service.create_return(_return_data(delivered_order.id, [(1, 1)]))

        with pytest.raises(InvalidTransitionError) as exc_info:
            await orders_service.transition_order(delivered_order.id, OrderStatus.PAID, ActorRole.SYSTEM)
        assert exc_info.value.code == "ORDER_PAYOUT_BLOCKED_BY_RETURN"

        clock.advance(days=30)
        assert await orders_service.release_due_payouts() == []

    async def test_refund_after_payout_creates_adjustment(
        self, returns_service, settlement_service, orders_service, delivered_order
    ):
        await orders_service.transition_order(delivered_order.id, OrderStatus.PAID, ActorRole.SYSTEM)

        rma = await returns_service.create_return(_return_data(delivered_order.id, [(1, 1)]))
        await _walk(returns_service, rma.rma_code)

        a = await settlement_service.get_settlement(delivered_order.id, SHOP_A)
        assert a.status == SettlementStatus.PAID.value
        assert a.net_amount == Decimal("693000")
        assert a.refunded_amount == Decimal("0")

        (adjustment,) = await settlement_service.list_adjustments(delivered_order.id)
        assert adjustment.shop_id == SHOP_A
        assert adjustment.rma_code == rma.rma_code
        assert adjustment.refund_amount == Decimal("250000")
        assert adjustment.platform_fee_delta == Decimal("-10000")
        assert adjustment.amount == Decimal("-240000")

        order = await orders_service.get_order(delivered_order.id)
        assert order.status == OrderStatus.PAID.value

    async def test_second_refund_after_payout_counts_earlier_ones(
        self, returns_service, settlement_service, orders_service, delivered_order
    ):
        await orders_service.transition_order(delivered_order.id, OrderStatus.PAID, ActorRole.SYSTEM)
        first = await returns_service.create_return(_return_data(delivered_order.id, [(1, 1)]))
        await _walk(returns_service, first.rma_code)
        second = await returns_service.create_return(_return_data(delivered_order.id, [(2, 1)]))
        await _walk(returns_service, second.rma_code, final=ReturnStatus.COMPLETED)

        adjustments = await settlement_service.list_adjustments(delivered_order.id)
        assert [a.refund_amount for a in adjustments] == [Decimal("250000"), Decimal("200000")]
        # 450000 -> 250000: 平台费 18000 -> 10000
        assert adjustments[1].platform_fee_delta == Decimal("-8000")
        assert adjustments[1].amount == Decimal("-192000")

    async def test_full_refund_moves_order_to_refunded(
        self, returns_service, settlement_service, orders_service, delivered_order
    ):
        shop_b_rma = await returns_service.create_return(_return_data(delivered_order.id, [(3, 1)]))
        await _walk(returns_service, shop_b_rma.rma_code)
        order = await orders_service.get_order(delivered_order.id)
        assert order.status == OrderStatus.DELIVERED.value

        shop_a_rma = await returns_service.create_return(_return_data(delivered_order.id, [(1, 2), (2, 1)]))
        await _walk(returns_service, shop_a_rma.rma_code)

        order = await orders_service.get_order(delivered_order.id)
        assert order.status == OrderStatus.REFUNDED.value
        assert order.payment_status == PaymentStatus.REFUNDED.value

        events = await orders_service.list_status_events(order.id)
        assert (events[-1].to_status, events[-1].actor_role) == ("REFUNDED", "SYSTEM")

        b = await settlement_service.get_settlement(order.id, SHOP_B)
        assert b.platform_fee == Decimal("0")
        assert b.net_amount == Decimal("9000")

    async def test_replacement_moves_no_money(self, returns_service, settlement_service, delivered_order):
        rma = await returns_service.create_return(
            _return_data(delivered_order.id, [(1, 1)], requested_resolution="REPLACE")
        )
        rma = await _walk(returns_service, rma.rma_code, final=ReturnStatus.COMPLETED)

        assert rma.settlement_applied_at is None
        a = await settlement_service.get_settlement(delivered_order.id, SHOP_A)
        assert a.net_amount == Decimal("693000")

    async def test_cancelled_return_releases_quantity(self, returns_service, delivered_order):
        rma = await returns_service.create_return(_return_data(delivered_order.id, [(3, 1)]))
        await returns_service.transition_return(rma.rma_code, ReturnStatus.CANCELLED, ActorRole.BUYER)

        again = await returns_service.create_return(_return_data(delivered_order.id, [(3, 1)]))
        assert again.status == ReturnStatus.REQUESTED.value

    async def test_list_returns_for_order(self, returns_service, delivered_order):
        await returns_service.create_return(_return_data(delivered_order.id, [(1, 1)]))
        await returns_service.create_return(_return_data(delivered_order.id, [(3, 1)]))

        returns = await returns_service.list_returns(delivered_order.id)
        assert [r.shop_id for r in returns] == [SHOP_A, SHOP_B]


class TestShopReturns:

    async def test_list_returns_by_shop(self, returns_service, delivered_order, clock):
        first = await returns_service.create_return(_return_data(delivered_order.id, [(1, 1)]))
        await returns_service.create_return(_return_data(delivered_order.id, [(3, 1)]))
        clock.advance(minutes=1)
        latest = await returns_service.create_return(_return_data(delivered_order.id, [(2, 1)]))
        await returns_service.transition_return(
            first.rma_code, ReturnStatus.REJECTED, ActorRole.SELLER, note="Outside return window"
        )

        shop_a = await returns_service.list_returns_by_shop(SHOP_A)
        assert [r.rma_code for r in shop_a] == [latest.rma_code, first.rma_code]

        requested = await returns_service.list_returns_by_shop(SHOP_A, status=ReturnStatus.REQUESTED)
        assert [r.rma_code for r in requested] == [latest.rma_code]

        page = await returns_service.list_returns_by_shop(SHOP_A, limit=1, offset=1)
        assert [r.rma_code for r in page] == [first.rma_code]

        assert [r.shop_id for r in await returns_service.list_returns_by_shop(SHOP_B)] == [SHOP_B]

    async def test_invalid_status_filter(self, returns_service):
        with pytest.raises(ValidationError) as exc_info:
            await returns_service.list_returns_by_shop(SHOP_A, status="LOST")
        assert exc_info.value.code == "RETURN_INVALID_STATUS"

    async def test_return_statistics(self, returns_service, delivered_order):
        rejected = await returns_service.create_return(_return_data(delivered_order.id, [(1, 1)]))
        await returns_service.transition_return(
            rejected.rma_code, ReturnStatus.REJECTED, ActorRole.SELLER, note="Outside return window"
        )
        refunded = await returns_service.create_return(_return_data(delivered_order.id, [(2, 1)]))
        await _walk(returns_service, refunded.rma_code)
        await returns_service.create_return(_return_data(delivered_order.id, [(1, 1)]))

        stats = await returns_service.return_statistics(SHOP_A)

        assert stats["total"] == 3
        assert (stats["REQUESTED"], stats["REJECTED"], stats["REFUNDED"]) == (1, 1, 1)
        assert stats["APPROVED"] == 0
        assert set(stats) == {s.value for s in ReturnStatus} | {"total"}

        empty = await returns_service.return_statistics(SHOP_B)
        assert empty["total"] == 0
