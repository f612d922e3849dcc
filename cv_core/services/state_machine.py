"""
订单与退货单状态机

状态转换表集中定义于此，服务层只通过这里判断合法性。
"""
from typing import Dict, FrozenSet, Optional

from cv_core.models.enums import OrderStatus, ReturnStatus, ActorRole
from cv_core.utils.errors import ForbiddenError, InvalidTransitionError

ORDER_TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.CONFIRMED, OrderStatus.PROCESSING, OrderStatus.CANCELLED}),
    OrderStatus.PROCESSING: frozenset({OrderStatus.CONFIRMED, OrderStatus.SHIPPED, OrderStatus.CANCELLED}),
    OrderStatus.CONFIRMED: frozenset({OrderStatus.SHIPPED, OrderStatus.CANCELLED}),
    OrderStatus.SHIPPED: frozenset({OrderStatus.DELIVERED}),
    OrderStatus.DELIVERED: frozenset({OrderStatus.PAID, OrderStatus.REFUNDED}),
    OrderStatus.PAID: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
    OrderStatus.REFUNDED: frozenset(),
}

# 只能由退货流程内部触发的目标状态
ORDER_INTERNAL_TARGETS: FrozenSet[OrderStatus] = frozenset({OrderStatus.REFUNDED})

# 可以取消订单的角色
ORDER_CANCEL_ROLES: FrozenSet[ActorRole] = frozenset({ActorRole.BUYER, ActorRole.SELLER, ActorRole.ADMIN})

RETURN_TRANSITIONS: Dict[ReturnStatus, FrozenSet[ReturnStatus]] = {
    ReturnStatus.REQUESTED: frozenset({ReturnStatus.APPROVED, ReturnStatus.REJECTED, ReturnStatus.CANCELLED}),
    ReturnStatus.APPROVED: frozenset({ReturnStatus.SHIPPED, ReturnStatus.CANCELLED}),
    ReturnStatus.SHIPPED: frozenset({ReturnStatus.RETURNED, ReturnStatus.CANCELLED}),
    ReturnStatus.RETURNED: frozenset({ReturnStatus.REFUNDED, ReturnStatus.COMPLETED, ReturnStatus.CANCELLED}),
    ReturnStatus.REJECTED: frozenset(),
    ReturnStatus.REFUNDED: frozenset(),
    ReturnStatus.COMPLETED: frozenset(),
    ReturnStatus.CANCELLED: frozenset(),
}

# 目标状态 -> 允许执行的角色
RETURN_TRANSITION_ROLES: Dict[ReturnStatus, FrozenSet[ActorRole]] = {
    ReturnStatus.APPROVED: frozenset({ActorRole.SELLER, ActorRole.ADMIN}),
    ReturnStatus.REJECTED: frozenset({ActorRole.SELLER, ActorRole.ADMIN}),
    ReturnStatus.SHIPPED: frozenset({ActorRole.BUYER, ActorRole.ADMIN, ActorRole.SYSTEM}),
    ReturnStatus.RETURNED: frozenset({ActorRole.SELLER, ActorRole.ADMIN, ActorRole.SYSTEM}),
    ReturnStatus.REFUNDED: frozenset({ActorRole.SELLER, ActorRole.ADMIN, ActorRole.SYSTEM}),
    ReturnStatus.COMPLETED: frozenset({ActorRole.SELLER, ActorRole.ADMIN, ActorRole.SYSTEM}),
    ReturnStatus.CANCELLED: frozenset({ActorRole.BUYER, ActorRole.ADMIN, ActorRole.SYSTEM}),
}


def is_terminal_order_status(status: OrderStatus) -> bool:
    return not ORDER_TRANSITIONS[status]


def is_terminal_return_status(status: ReturnStatus) -> bool:
    return not RETURN_TRANSITIONS[status]


def check_order_transition(
    current: OrderStatus,
    target: OrderStatus,
    order_id: Optional[int] = None,
    internal: bool = False,
) -> None:
    """校验订单状态转换，非法时抛出 InvalidTransitionError"""
    if target not in ORDER_TRANSITIONS[current]:
        raise InvalidTransitionError(
            code="ORDER_INVALID_TRANSITION",
            detail=f"Order {order_id} cannot move from {current.value} to {target.value}",
            current_status=current.value,
            target_status=target.value,
        )
    if target in ORDER_INTERNAL_TARGETS and not internal:
        raise InvalidTransitionError(
            code="ORDER_REFUND_VIA_RETURN_ONLY",
            detail=f"Order {order_id} can only become {target.value} through the return workflow",
            current_status=current.value,
            target_status=target.value,
        )


def check_return_transition(
    current: ReturnStatus,
    target: ReturnStatus,
    actor_role: ActorRole,
    rma_code: Optional[str] = None,
) -> None:
    """校验退货单状态转换与操作角色"""
    if target not in RETURN_TRANSITIONS[current]:
        raise InvalidTransitionError(
            code="RETURN_INVALID_TRANSITION",
            detail=f"Return {rma_code} cannot move from {current.value} to {target.value}",
            current_status=current.value,
            target_status=target.value,
        )
    if actor_role not in RETURN_TRANSITION_ROLES[target]:
        raise ForbiddenError(
            code="RETURN_ROLE_NOT_ALLOWED",
            detail=f"{actor_role.value} is not allowed to move return {rma_code} to {target.value}",
        )
