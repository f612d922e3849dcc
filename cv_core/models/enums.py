"""
枚举类型定义
"""

from enum import Enum


class OrderStatus(str, Enum):
    """订单状态"""

    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    CONFIRMED = "CONFIRMED"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    PAID = "PAID"  # 已向卖家打款
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"


class PaymentMethod(str, Enum):
    """买家支付方式"""

    COD = "COD"
    VNPAY = "VNPAY"
    MOMO = "MOMO"
    BANK_TRANSFER = "BANK_TRANSFER"


class PaymentStatus(str, Enum):
    """买家支付状态"""

    PENDING = "PENDING"
    PAID = "PAID"
    REFUNDED = "REFUNDED"
    CANCELLED = "CANCELLED"


class ActorRole(str, Enum):
    """操作者角色"""

    BUYER = "BUYER"
    SELLER = "SELLER"
    ADMIN = "ADMIN"
    SYSTEM = "SYSTEM"


class SettlementStatus(str, Enum):
    """分店结算状态"""

    PENDING = "PENDING"  # 已生成，订单未妥投
    PAYABLE = "PAYABLE"  # 已妥投，等待打款
    PAID = "PAID"
    VOID = "VOID"  # 订单取消，保留审计


class AdjustmentType(str, Enum):
    """结算调整类型"""

    REFUND_DEDUCTION = "REFUND_DEDUCTION"


class CommissionScope(str, Enum):
    """佣金配置作用域"""

    GLOBAL = "GLOBAL"
    SHOP = "SHOP"


class FeeType(str, Enum):
    """平台费计费方式"""

    PERCENTAGE = "PERCENTAGE"
    FIXED = "FIXED"


class ReturnStatus(str, Enum):
    """退货单状态"""

    REQUESTED = "REQUESTED"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    SHIPPED = "SHIPPED"
    RETURNED = "RETURNED"
    REFUNDED = "REFUNDED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class ReturnReason(str, Enum):
    """退货原因"""

    DAMAGED_ITEM = "DAMAGED_ITEM"
    NOT_AS_DESCRIBED = "NOT_AS_DESCRIBED"
    WRONG_ITEM = "WRONG_ITEM"
    OTHER = "OTHER"


class ReturnResolution(str, Enum):
    """买家期望的处理方式"""

    REFUND = "REFUND"
    REPLACE = "REPLACE"
    REPAIR = "REPAIR"


class ReturnMethod(str, Enum):
    """退货寄回方式"""

    PICKUP = "PICKUP"
    DROP_OFF = "DROP_OFF"


class EvidenceType(str, Enum):
    """凭证类型"""

    IMAGE = "IMAGE"
    VIDEO = "VIDEO"
    OTHER = "OTHER"


def check_values(enum_cls) -> str:
    """生成 CHECK 约束中的取值列表"""
    return ",".join(f"'{member.value}'" for member in enum_cls)
