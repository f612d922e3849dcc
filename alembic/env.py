"""
Alembic 环境配置
数据库地址取自 CV__ 配置（CV__DB_URL 或 CV__DB_HOST 等），不读 alembic.ini
"""
import asyncio
from logging.config import fileConfig
from typing import Any, Dict

from sqlalchemy import pool
from sqlalchemy.engine import Connection, make_url
from sqlalchemy.ext.asyncio import create_async_engine
from alembic import context

from cv_core.config import get_settings
from cv_core.models.base import Base

# 注册订单、结算、佣金、退货、绩效全部表
import cv_core.models  # noqa: F401

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

settings = get_settings()
config.set_main_option("sqlalchemy.url", settings.sync_database_url)

target_metadata = Base.metadata

# SQLite 不支持 ALTER COLUMN，需要 batch 模式重建表
IS_SQLITE = make_url(settings.database_url).get_backend_name() == "sqlite"


def _configure_options() -> Dict[str, Any]:
    return {
        "target_metadata": target_metadata,
        "compare_type": True,
        "compare_server_default": True,
        "render_as_batch": IS_SQLITE,
    }


def run_migrations_offline() -> None:
    """离线模式：只输出 SQL 脚本"""
    context.configure(
        url=config.get_main_option("sqlalchemy.url"),
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        **_configure_options(),
    )

    with context.begin_transaction():
        context.run_migrations()


def do_run_migrations(connection: Connection) -> None:
    context.configure(connection=connection, **_configure_options())

    with context.begin_transaction():
        context.run_migrations()


async def run_async_migrations() -> None:
    """使用应用同一个异步驱动（asyncpg / aiosqlite）执行迁移"""
    connectable = create_async_engine(settings.database_url, poolclass=pool.NullPool)

    async with connectable.connect() as connection:
        await connection.run_sync(do_run_migrations)

    await connectable.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    asyncio.run(run_async_migrations())
