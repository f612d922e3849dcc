# mypy: disable-error-code="no-untyped-def, assignment, var-annotated"
"""
CraftVillages 日志系统

- structlog 输出 JSON（开发环境可切换为 console）
- 业务上下文（trace_id / order_id / shop_id / rma_code / job_id）通过 LogContext 注入
- 买家个人信息与收款账号自动脱敏
"""
import logging
import re
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import structlog
from structlog.processors import JSONRenderer, TimeStamper, add_log_level

# 可注入日志的上下文字段
CONTEXT_FIELDS = ("trace_id", "order_id", "shop_id", "rma_code", "job_id")

_context_vars: Dict[str, ContextVar] = {
    name: ContextVar(f"cv_log_{name}", default=None) for name in CONTEXT_FIELDS
}


def current_context() -> Dict[str, Any]:
    """当前协程内已设置的日志上下文"""
    return {
        name: var.get()
        for name, var in _context_vars.items()
        if var.get() is not None
    }


class BuyerDataMasker:
    """脱敏买家个人信息和卖家收款信息"""

    # 越南手机号：保留前3位与后3位
    PHONE = re.compile(r"\b((?:\+84|0)\d{2})\d{3,5}(\d{3})\b")
    EMAIL = re.compile(r"\b([a-zA-Z0-9])[a-zA-Z0-9._-]*@([a-zA-Z0-9.-]+\.[a-zA-Z]{2,})\b")
    SECRET = re.compile(r"(token|secret|password|api_key)[\"']?\s*[:=]\s*[\"']?([^\"'\s,}]+)", re.IGNORECASE)

    # 整个值替换
    REDACTED_KEYS = frozenset({"recipient_name", "buyer_name", "phone_number", "full_address"})
    # 只保留末 4 位
    TAIL_KEYS = frozenset({"bank_account", "account_number", "card_number"})

    def __call__(self, logger, method_name, event_dict):
        return self._mask_mapping(event_dict)

    def _mask_mapping(self, data: Dict[str, Any]) -> Dict[str, Any]:
        return {key: self._mask_value(key, value) for key, value in data.items()}

    def _mask_value(self, key: str, value: Any) -> Any:
        if value in (None, ""):
            return value
        if key in self.REDACTED_KEYS:
            return "[MASKED]"
        if key in self.TAIL_KEYS:
            text = str(value)
            return "*" * max(len(text) - 4, 0) + text[-4:]
        if isinstance(value, str):
            return self._mask_text(value)
        if isinstance(value, dict):
            return self._mask_mapping(value)
        if isinstance(value, (list, tuple)):
            return [self._mask_value(key, item) for item in value]
        return value

    def _mask_text(self, text: str) -> str:
        text = self.PHONE.sub(r"\1****\2", text)
        text = self.EMAIL.sub(r"\1***@\2", text)
        return self.SECRET.sub(r"\1=***MASKED***", text)


def add_marketplace_context(logger, method_name, event_dict):
    """补充 ts、业务上下文，并统一字段名（event -> action, exception -> err）"""
    event_dict["ts"] = datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
    for name, value in current_context().items():
        event_dict.setdefault(name, value)

    if "event" in event_dict:
        event_dict["action"] = event_dict.pop("event")
    if "exception" in event_dict:
        event_dict["err"] = str(event_dict.pop("exception"))
    return event_dict


# 只在 WARNING 以上输出的第三方日志
QUIET_LOGGERS = (
    "httpx",
    "httpcore",
    "asyncio",
    "aiosqlite",
    "uvicorn.access",
    "sqlalchemy.engine",
    "apscheduler",
)


def setup_logging(log_level: str = "INFO", log_format: str = "json", mask_pii: bool = True) -> None:
    """配置 structlog 与标准 logging，统一输出到 stdout"""
    level = getattr(logging, log_level.upper(), logging.INFO)

    processors: List[Any] = [
        TimeStamper(fmt="iso"),
        add_log_level,
        structlog.processors.format_exc_info,
        add_marketplace_context,
    ]
    if mask_pii:
        processors.append(BuyerDataMasker())
    processors.append(JSONRenderer() if log_format == "json" else structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter("%(message)s"))

    root_logger = logging.getLogger()
    for existing in root_logger.handlers[:]:
        root_logger.removeHandler(existing)
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))


def get_logger(name: str = __name__) -> structlog.stdlib.BoundLogger:
    """获取日志记录器"""
    return structlog.get_logger(name)


class LogContext:
    """
    日志上下文管理器

    用法：
        with LogContext(order_id=42, shop_id=7):
            logger.info("Settlement paid")
    """

    def __init__(self, **fields: Any):
        unknown = set(fields) - set(CONTEXT_FIELDS)
        if unknown:
            raise ValueError(f"Unknown log context fields: {sorted(unknown)}")
        self.fields = {name: value for name, value in fields.items() if value is not None}
        self._tokens = []

    def __enter__(self):
        for name, value in self.fields.items():
            self._tokens.append(_context_vars[name].set(value))
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        for token in reversed(self._tokens):
            token.var.reset(token)
        self._tokens.clear()
