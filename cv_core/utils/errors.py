"""
CraftVillages 错误处理系统
遵循 RFC7807 Problem Details 标准
"""
from typing import Optional
from fastapi import Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field


class ProblemDetail(BaseModel):
    """RFC7807 Problem Details 模型"""
    model_config = ConfigDict(
        extra="allow",
        json_schema_extra={
            "example": {
                "type": "about:blank",
                "title": "Invalid Transition",
                "status": 409,
                "detail": "Order 42 cannot move from SHIPPED to CONFIRMED",
                "code": "ORDER_INVALID_TRANSITION"
            }
        }
    )

    type: str = Field(default="about:blank")
    title: str
    status: int
    detail: Optional[str] = None
    instance: Optional[str] = None
    code: Optional[str] = None  # 业务错误码


class CraftVillagesException(Exception):
    """CraftVillages 基础异常类"""

    def __init__(
        self,
        status: int,
        code: str,
        title: str,
        detail: Optional[str] = None,
        **kwargs
    ):
        self.status = status
        self.code = code
        self.title = title
        self.detail = detail
        self.extra = kwargs
        super().__init__(detail or title)

    def to_problem_detail(self, instance: Optional[str] = None) -> ProblemDetail:
        """转换为 Problem Details 格式"""
        return ProblemDetail(
            type="about:blank",
            title=self.title,
            status=self.status,
            detail=self.detail,
            instance=instance,
            code=self.code,
            **self.extra
        )

    def to_response(self, request: Optional[Request] = None) -> JSONResponse:
        """转换为 JSON 响应"""
        instance = str(request.url) if request else None
        problem = self.to_problem_detail(instance)

        return JSONResponse(
            status_code=self.status,
            content={
                "ok": False,
                "error": problem.model_dump(mode="json", exclude_none=True)
            }
        )


# 预定义错误类
class ForbiddenError(CraftVillagesException):
    """403 禁止访问（角色不允许执行该状态变更）"""
    def __init__(self, code: str = "FORBIDDEN", detail: str = "Access denied"):
        super().__init__(
            status=403,
            code=code,
            title="Forbidden",
            detail=detail
        )


class NotFoundError(CraftVillagesException):
    """404 未找到"""
    def __init__(self, code: str, resource: str):
        super().__init__(
            status=404,
            code=code,
            title="Not Found",
            detail=f"{resource} not found"
        )


class ConflictError(CraftVillagesException):
    """409 冲突"""
    def __init__(self, code: str, detail: str, title: str = "Conflict", **kwargs):
        super().__init__(
            status=409,
            code=code,
            title=title,
            detail=detail,
            **kwargs
        )


class InvalidTransitionError(ConflictError):
    """409 状态机不允许的状态变更"""
    def __init__(self, code: str, detail: str, current_status: Optional[str] = None, target_status: Optional[str] = None):
        super().__init__(
            code=code,
            detail=detail,
            title="Invalid Transition",
            current_status=current_status,
            target_status=target_status,
        )


class ConcurrentModificationError(ConflictError):
    """409 并发修改冲突（可重试）"""
    def __init__(self, code: str, detail: str):
        super().__init__(
            code=code,
            detail=detail,
            title="Concurrent Modification",
            retryable=True,
        )


class SettlementAlreadyFinalizedError(ConflictError):
    """409 结算单已用不同交易号完成打款"""
    def __init__(self, detail: str):
        super().__init__(
            code="SETTLEMENT_ALREADY_FINALIZED",
            detail=detail,
            title="Settlement Already Finalized",
        )


class ValidationError(CraftVillagesException):
    """422 验证失败"""
    def __init__(self, code: str, detail: str):
        super().__init__(
            status=422,
            code=code,
            title="Validation Failed",
            detail=detail
        )


class OutOfRangeError(ValidationError):
    """422 数值超出允许范围（如佣金比例）"""
    def __init__(self, detail: str, code: str = "OUT_OF_RANGE"):
        super().__init__(code=code, detail=detail)


class MissingReasonError(ValidationError):
    """422 缺少必填原因（如取消订单、拒绝退货）"""
    def __init__(self, detail: str, code: str = "MISSING_REASON"):
        super().__init__(code=code, detail=detail)


class QuantityExceededError(CraftVillagesException):
    """422 退货数量超出可退数量"""
    def __init__(self, detail: str, product_id: Optional[int] = None, available: Optional[int] = None):
        super().__init__(
            status=422,
            code="RETURN_QUANTITY_EXCEEDED",
            title="Quantity Exceeded",
            detail=detail,
            product_id=product_id,
            available=available,
        )


class InternalServerError(CraftVillagesException):
    """500 内部错误"""
    def __init__(self, code: str = "INTERNAL_ERROR", detail: str = "An internal error occurred"):
        super().__init__(
            status=500,
            code=code,
            title="Internal Server Error",
            detail=detail
        )
