"""
CraftVillages Configuration Management
遵循约束：环境变量前缀 CV__
"""
from decimal import Decimal
from typing import List, Optional
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, field_validator
from functools import lru_cache


class Settings(BaseSettings):
    """全局配置类"""
    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="CV__",
        case_sensitive=False
    )

    # Database
    db_host: str = Field(default="localhost")
    db_port: int = Field(default=5432)
    db_name: str = Field(default="craftvillages")
    db_user: str = Field(default="craftvillages")
    db_password: str = Field(default="")
    db_pool_size: int = Field(default=20)
    db_max_overflow: int = Field(default=40)
    # 完整连接串（测试时指向 sqlite+aiosqlite）
    db_url: Optional[str] = Field(default=None)

    # API Settings
    api_host: str = Field(default="0.0.0.0")
    api_port: int = Field(default=8000)
    api_prefix: str = Field(default="/api/cv/v1")
    api_title: str = Field(default="CraftVillages API")
    api_version: str = Field(default="1.0.0")
    api_debug: bool = Field(default=False)
    cors_origins: List[str] = Field(default=["http://localhost:3000"])

    # Monitoring
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="json")  # json or text

    # 货币与金额精度（VND 无小数）
    currency: str = Field(default="VND")
    money_decimal_places: int = Field(default=0, ge=0, le=4)

    # 佣金：无任何配置时的兜底费率（百分比）
    commission_default_rate: Decimal = Field(default=Decimal("5"), ge=0, le=100)

    # 结算：妥投后托管天数，到期自动打款给卖家
    payout_escrow_days: int = Field(default=7, ge=0)

    # 卖家绩效权重
    performance_weight_revenue: Decimal = Field(default=Decimal("40"))
    performance_weight_orders: Decimal = Field(default=Decimal("30"))
    performance_weight_rating: Decimal = Field(default=Decimal("20"))
    performance_weight_gmv: Decimal = Field(default=Decimal("10"))

    # 定时任务
    scheduler_enabled: bool = Field(default=True)
    payout_release_cron: str = Field(default="0 2 * * *")
    performance_snapshot_cron: str = Field(default="30 3 1 * *")

    @field_validator("api_prefix")
    @classmethod
    def validate_api_prefix(cls, v):
        """确保 API 前缀符合规范"""
        if not v.startswith("/api/cv/"):
            raise ValueError("API prefix must start with /api/cv/")
        return v

    @field_validator(
        "performance_weight_revenue",
        "performance_weight_orders",
        "performance_weight_rating",
        "performance_weight_gmv",
    )
    @classmethod
    def validate_weight(cls, v):
        """权重不能为负数"""
        if v < 0:
            raise ValueError("Performance weight must be non-negative")
        return v

    @property
    def database_url(self) -> str:
        """构建数据库连接字符串"""
        if self.db_url:
            return self.db_url
        return f"postgresql+asyncpg://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"

    @property
    def sync_database_url(self) -> str:
        """构建同步数据库连接字符串（用于 Alembic）"""
        if self.db_url:
            return self.db_url.replace("+asyncpg", "").replace("+aiosqlite", "")
        return f"postgresql://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"

    @property
    def money_quantum(self) -> Decimal:
        """金额最小单位，例如 VND 为 1，两位小数为 0.01"""
        return Decimal(1).scaleb(-self.money_decimal_places)


@lru_cache()
def get_settings() -> Settings:
    """获取配置单例"""
    return Settings()
