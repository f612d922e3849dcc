"""
Pytest 配置和 fixtures
"""
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
import pytest_asyncio

from cv_core.config import Settings
from cv_core.database import DatabaseManager
from cv_core.models.enums import ActorRole, OrderStatus
from cv_core.services import (
    CommissionService, OrdersService, PerformanceService, ReturnsService, SettlementService
)

SHOP_A = 101
SHOP_B = 202
BUYER_ID = 9001


class FrozenClock:
    """可手动推进的时钟"""

    def __init__(self, start: datetime):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current += timedelta(**kwargs)
        return self.current


@pytest.fixture
def settings(tmp_path):
    """测试配置：每个测试独立的 SQLite 文件库"""
    return Settings(
        db_url=f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        scheduler_enabled=False,
        log_level="WARNING",
        api_debug=False,
    )


@pytest_asyncio.fixture
async def db_manager(settings):
    """数据库管理器 fixture"""
    manager = DatabaseManager(settings)
    await manager.create_tables()

    yield manager

    await manager.drop_tables()
    await manager.close()


@pytest.fixture
def clock():
    return FrozenClock(datetime(2026, 9, 1, 8, 0, tzinfo=timezone.utc))


@pytest.fixture
def commission_service(db_manager, clock):
    return CommissionService(db_manager=db_manager, clock=clock)


@pytest.fixture
def settlement_service(db_manager, clock, commission_service):
    return SettlementService(db_manager=db_manager, clock=clock, commission_service=commission_service)


@pytest.fixture
def orders_service(db_manager, clock, settlement_service):
    return OrdersService(db_manager=db_manager, clock=clock, settlement_service=settlement_service)


@pytest.fixture
def returns_service(db_manager, clock, orders_service, settlement_service):
    return ReturnsService(
        db_manager=db_manager,
        clock=clock,
        orders_service=orders_service,
        settlement_service=settlement_service,
    )


@pytest.fixture
def performance_service(db_manager, clock):
    return PerformanceService(db_manager=db_manager, clock=clock)


@pytest.fixture
def sample_order_data():
    """示例订单数据"""
    return {
        "buyer_id": BUYER_ID,
        "buyer_name": "Nguyen Van A",
        "recipient_name": "Nguyen Van A",
        "phone_number": "0912345678",
        "full_address": "12 Hang Bac, Hoan Kiem, Ha Noi",
        "payment_method": "VNPAY",
        "payment_status": "PAID",
        "payment_transaction_id": "VNP-0001",
        "shipping_fee": Decimal("30000"),
    }


@pytest.fixture
def sample_order_items():
    """示例订单行：店铺 A 两件商品共 700,000，店铺 B 一件 300,000"""
    return [
        {
            "product_id": 1,
            "shop_id": SHOP_A,
            "product_name": "Bat Trang vase",
            "quantity": 2,
            "price_at_purchase": Decimal("250000"),
        },
        {
            "product_id": 2,
            "shop_id": SHOP_A,
            "product_name": "Bat Trang bowl",
            "quantity": 1,
            "price_at_purchase": Decimal("200000"),
        },
        {
            "product_id": 3,
            "shop_id": SHOP_B,
            "product_name": "Van Phuc silk scarf",
            "quantity": 1,
            "price_at_purchase": Decimal("300000"),
        },
    ]


@pytest_asyncio.fixture
async def placed_order(orders_service, sample_order_data, sample_order_items):
    """已下单（PENDING）的订单"""
    return await orders_service.place_order(sample_order_data, sample_order_items)


@pytest.fixture
def advance_order(orders_service):
    """按顺序推进订单状态"""

    async def _advance(order_id, *targets, actor_role=ActorRole.SELLER):
        order = None
        for target in targets:
            role = ActorRole.SYSTEM if target == OrderStatus.PAID else actor_role
            order = await orders_service.transition_order(order_id, target, role)
        return order

    return _advance


@pytest_asyncio.fixture
async def delivered_order(placed_order, advance_order, commission_service):
    """店铺 A 自定义 4% 佣金、已妥投的订单"""
    await commission_service.update_shop_rate(SHOP_A, Decimal("4"), "Artisan partner program")
    await advance_order(
        placed_order.id,
        OrderStatus.CONFIRMED,
        OrderStatus.SHIPPED,
        OrderStatus.DELIVERED,
    )
    return placed_order
