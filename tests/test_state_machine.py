"""
订单与退货单状态机测试
"""
import pytest

from cv_core.models.enums import ActorRole, OrderStatus, ReturnStatus
from cv_core.services.state_machine import (
    ORDER_TRANSITIONS, check_order_transition, check_return_transition,
    is_terminal_order_status, is_terminal_return_status
)
from cv_core.utils.errors import ForbiddenError, InvalidTransitionError


@pytest.mark.parametrize("current,target", [
    (OrderStatus.PENDING, OrderStatus.CONFIRMED),
    (OrderStatus.PENDING, OrderStatus.PROCESSING),
    (OrderStatus.PROCESSING, OrderStatus.SHIPPED),
    (OrderStatus.CONFIRMED, OrderStatus.SHIPPED),
    (OrderStatus.SHIPPED, OrderStatus.DELIVERED),
    (OrderStatus.DELIVERED, OrderStatus.PAID),
])
def test_allowed_order_transitions(current, target):
    check_order_transition(current, target, order_id=1)


@pytest.mark.parametrize("current,target", [
    (OrderStatus.PENDING, OrderStatus.SHIPPED),
    (OrderStatus.SHIPPED, OrderStatus.CANCELLED),
    (OrderStatus.DELIVERED, OrderStatus.CANCELLED),
    (OrderStatus.PAID, OrderStatus.REFUNDED),
    (OrderStatus.CANCELLED, OrderStatus.PENDING),
])
def test_rejected_order_transitions(current, target):
    with pytest.raises(InvalidTransitionError) as exc_info:
        check_order_transition(current, target, order_id=1)

    assert exc_info.value.code == "ORDER_INVALID_TRANSITION"
    assert exc_info.value.status == 409


def test_refunded_only_through_return_workflow():
    with pytest.raises(InvalidTransitionError) as exc_info:
        check_order_transition(OrderStatus.DELIVERED, OrderStatus.REFUNDED, order_id=1)
    assert exc_info.value.code == "ORDER_REFUND_VIA_RETURN_ONLY"

    check_order_transition(OrderStatus.DELIVERED, OrderStatus.REFUNDED, order_id=1, internal=True)


def test_terminal_statuses():
    terminal = {status for status in ORDER_TRANSITIONS if is_terminal_order_status(status)}
    assert terminal == {OrderStatus.PAID, OrderStatus.CANCELLED, OrderStatus.REFUNDED}

    assert is_terminal_return_status(ReturnStatus.COMPLETED)
    assert not is_terminal_return_status(ReturnStatus.RETURNED)


def test_return_transition_roles():
    check_return_transition(ReturnStatus.REQUESTED, ReturnStatus.APPROVED, ActorRole.SELLER, "RMA-1")
    check_return_transition(ReturnStatus.APPROVED, ReturnStatus.SHIPPED, ActorRole.BUYER, "RMA-1")

    with pytest.raises(ForbiddenError) as exc_info:
        check_return_transition(ReturnStatus.REQUESTED, ReturnStatus.APPROVED, ActorRole.BUYER, "RMA-1")
    assert exc_info.value.code == "RETURN_ROLE_NOT_ALLOWED"


def test_return_cannot_skip_states():
    with pytest.raises(InvalidTransitionError) as exc_info:
        check_return_transition(ReturnStatus.REQUESTED, ReturnStatus.REFUNDED, ActorRole.ADMIN, "RMA-1")
    assert exc_info.value.code == "RETURN_INVALID_TRANSITION"
