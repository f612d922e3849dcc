"""
基础服务类
"""
from datetime import datetime
from typing import Any, Callable, Optional
from abc import ABC

from cv_core.config import Settings
from cv_core.database import DatabaseManager, get_db_manager
from cv_core.models.base import utcnow
from cv_core.utils.logger import get_logger
from cv_core.utils.errors import CraftVillagesException, InternalServerError, ValidationError


class BaseService(ABC):
    """基础服务类

    db_manager / settings / clock 可注入，便于测试。
    """

    def __init__(
        self,
        db_manager: Optional[DatabaseManager] = None,
        settings: Optional[Settings] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.db_manager = db_manager or get_db_manager()
        self.settings = settings or self.db_manager.settings
        self.clock = clock or utcnow
        self.logger = get_logger(self.__class__.__name__)

    def now(self) -> datetime:
        return self.clock()

    async def execute_with_transaction(
        self,
        operation,
        *args,
        **kwargs
    ) -> Any:
        """在事务中执行操作：状态与审计记录一起提交或一起回滚"""
        try:
            async with self.db_manager.get_transaction() as session:
                return await operation(session, *args, **kwargs)
        except CraftVillagesException:
            raise
        except Exception as e:
            self.logger.error("Transaction operation failed", operation=operation.__name__, exc_info=True)
            raise InternalServerError(
                code="TRANSACTION_FAILED",
                detail=f"Database transaction failed: {str(e)}"
            )

    async def execute_with_session(
        self,
        operation,
        *args,
        **kwargs
    ) -> Any:
        """使用数据库会话执行只读操作"""
        try:
            async with self.db_manager.get_session() as session:
                return await operation(session, *args, **kwargs)
        except CraftVillagesException:
            raise
        except Exception as e:
            self.logger.error("Session operation failed", operation=operation.__name__, exc_info=True)
            raise InternalServerError(
                code="SESSION_OPERATION_FAILED",
                detail=f"Database operation failed: {str(e)}"
            )

    @staticmethod
    def require_text(value: Optional[str], code: str, field_name: str, max_length: Optional[int] = None) -> str:
        """校验必填文本字段"""
        if value is None or not value.strip():
            raise ValidationError(code=code, detail=f"{field_name} is required")
        value = value.strip()
        if max_length is not None and len(value) > max_length:
            raise ValidationError(
                code=code,
                detail=f"{field_name} must be at most {max_length} characters"
            )
        return value
