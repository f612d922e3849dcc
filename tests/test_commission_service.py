"""
佣金服务测试
"""
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import update

from cv_core.models import CommissionConfig
from cv_core.models.enums import FeeType
from cv_core.utils.errors import ConcurrentModificationError, OutOfRangeError, ValidationError

from .conftest import SHOP_A, SHOP_B


async def test_resolve_falls_back_to_default(commission_service):
    resolved = await commission_service.resolve(SHOP_A)

    assert resolved.source == "DEFAULT"
    assert resolved.config_id is None
    assert resolved.fee_type == FeeType.PERCENTAGE
    assert resolved.rate == Decimal("5")


async def test_shop_rate_overrides_global(commission_service, clock):
    await commission_service.update_global_rate(Decimal("7"), "Platform pricing 2026")
    clock.advance(minutes=1)
    entry = await commission_service.update_shop_rate(SHOP_A, Decimal("4"), "Artisan partner program", actor_id=1)

    assert entry.previous_rate == Decimal("7")
    assert entry.new_rate == Decimal("4")

    shop_a = await commission_service.resolve(SHOP_A)
    shop_b = await commission_service.resolve(SHOP_B)
    assert (shop_a.source, shop_a.rate, shop_a.is_custom) == ("SHOP", Decimal("4"), True)
    assert (shop_b.source, shop_b.rate) == ("GLOBAL", Decimal("7"))


async def test_resolution_at_past_time(commission_service, clock):
    before = clock()
    clock.advance(hours=1)
    await commission_service.update_shop_rate(SHOP_A, Decimal("3"), "Promotion")
    clock.advance(hours=1)
    await commission_service.update_shop_rate(SHOP_A, Decimal("6"), "Promotion ended")

    assert (await commission_service.resolve(SHOP_A, before)).source == "DEFAULT"
    assert (await commission_service.resolve(SHOP_A, before + timedelta(minutes=90))).rate == Decimal("3")
    assert (await commission_service.resolve(SHOP_A)).rate == Decimal("6")


async def test_history_newest_first(commission_service, clock):
    await commission_service.update_shop_rate(SHOP_A, Decimal("4"), "First")
    clock.advance(minutes=5)
    await commission_service.update_shop_rate(SHOP_A, Decimal("4.5"), "Second", note="Quarterly review")

    history = await commission_service.get_history(SHOP_A)

    assert [h.reason for h in history] == ["Second", "First"]
    assert history[0].previous_rate == Decimal("4")
    assert history[0].note == "Quarterly review"
    assert history[1].previous_rate == Decimal("5")

    page = await commission_service.get_history(SHOP_A, limit=1, offset=1)
    assert [h.reason for h in page] == ["First"]


async def test_global_override_closes_custom_configs(commission_service, clock):
    shop_c = 303
    await commission_service.update_shop_rate(SHOP_A, Decimal("4"), "Partner")
    await commission_service.update_shop_rate(SHOP_B, Decimal("3"), "Partner")
    clock.advance(minutes=1)

    entry = await commission_service.update_global_rate(
        Decimal("6"), "Unify commission", override_shop_configs=True
    )

    assert entry.shop_id is None
    assert entry.superseded_count == 2
    assert "Overrode 2 shop commission configs" in entry.note
    for shop_id in (SHOP_A, SHOP_B, shop_c):
        resolved = await commission_service.resolve(shop_id)
        assert resolved.rate == Decimal("6")
        assert resolved.source == "GLOBAL"

    shop_entries = (
        await commission_service.get_history(SHOP_A) + await commission_service.get_history(SHOP_B)
    )
    overrides = [h for h in shop_entries if h.new_rate == Decimal("6")]
    assert len(overrides) == 2
    assert {h.previous_rate for h in overrides} == {Decimal("4"), Decimal("3")}
    assert len(await commission_service.get_history(shop_c)) == 0
    assert len(await commission_service.get_history()) == 1


async def test_global_update_without_override_keeps_custom(commission_service, clock):
    await commission_service.update_shop_rate(SHOP_A, Decimal("4"), "Partner")
    clock.advance(minutes=1)
    entry = await commission_service.update_global_rate(Decimal("8"), "Raise")

    assert entry.superseded_count is None
    assert entry.previous_rate == Decimal("5")
    assert (await commission_service.resolve(SHOP_A)).rate == Decimal("4")
    assert (await commission_service.resolve(SHOP_B)).rate == Decimal("8")


@pytest.mark.parametrize("rate", [Decimal("-1"), Decimal("100.01"), Decimal("150")])
async def test_percentage_out_of_range(commission_service, rate):
    with pytest.raises(OutOfRangeError):
        await commission_service.update_shop_rate(SHOP_A, rate, "Bad rate")


async def test_min_fee_above_max_fee_rejected(commission_service):
    with pytest.raises(OutOfRangeError):
        await commission_service.update_shop_rate(
            SHOP_A, Decimal("5"), "Caps", minimum_fee=Decimal("5000"), maximum_fee=Decimal("1000")
        )


async def test_reason_required(commission_service):
    with pytest.raises(ValidationError) as exc_info:
        await commission_service.update_shop_rate(SHOP_A, Decimal("5"), "   ")
    assert exc_info.value.code == "COMMISSION_REASON_REQUIRED"

    with pytest.raises(ValidationError):
        await commission_service.update_shop_rate(SHOP_A, Decimal("5"), "x" * 301)


async def test_fixed_fee_config(commission_service):
    await commission_service.update_shop_rate(SHOP_A, Decimal("15000"), "Flat fee", fee_type=FeeType.FIXED)

    resolved = await commission_service.resolve(SHOP_A)
    assert resolved.fee_type == FeeType.FIXED
    assert resolved.rate == Decimal("15000")


async def test_config_closed_concurrently(commission_service, clock, monkeypatch):
    await commission_service.update_shop_rate(SHOP_A, Decimal("4"), "Partner")
    clock.advance(minutes=1)
    find_open = commission_service._find_open

    async def closed_after_read(session, scope, shop_id=None):
        config = await find_open(session, scope, shop_id)
        # 另一位管理员在读取之后关闭了这条配置
        await session.execute(
            update(CommissionConfig)
            .where(CommissionConfig.id == config.id)
            .values(effective_to=clock())
            .execution_options(synchronize_session=False)
        )
        return config

    monkeypatch.setattr(commission_service, "_find_open", closed_after_read)
    with pytest.raises(ConcurrentModificationError) as exc_info:
        await commission_service.update_shop_rate(SHOP_A, Decimal("6"), "Raise")
    assert exc_info.value.code == "COMMISSION_CONCURRENT_UPDATE"

    monkeypatch.undo()
    assert (await commission_service.resolve(SHOP_A)).rate == Decimal("4")
    assert len(await commission_service.get_history(SHOP_A)) == 1


async def test_second_open_config_rejected(commission_service, clock, monkeypatch):
    await commission_service.update_global_rate(Decimal("7"), "Platform pricing 2026")
    clock.advance(minutes=1)

    async def nothing_open(session, scope, shop_id=None):
        return None

    # 未读到已生效的全局配置，插入新配置时撞上部分唯一索引
    monkeypatch.setattr(commission_service, "_find_open", nothing_open)
    with pytest.raises(ConcurrentModificationError) as exc_info:
        await commission_service.update_global_rate(Decimal("9"), "Raise")
    assert exc_info.value.code == "COMMISSION_CONCURRENT_UPDATE"

    monkeypatch.undo()
    assert (await commission_service.resolve(SHOP_A)).rate == Decimal("7")
    assert len(await commission_service.get_history()) == 1


async def test_list_shop_configs(commission_service, clock):
    shop_c = 303
    await commission_service.update_shop_rate(SHOP_B, Decimal("3"), "Partner")
    await commission_service.update_shop_rate(SHOP_A, Decimal("4"), "Partner")
    clock.advance(minutes=1)
    await commission_service.update_shop_rate(SHOP_A, Decimal("4.5"), "Quarterly review")
    await commission_service.update_shop_rate(shop_c, Decimal("2"), "Partner")
    await commission_service.update_global_rate(Decimal("6"), "Raise")

    active = await commission_service.list_shop_configs()
    assert [(c.shop_id, c.rate_value) for c in active] == [
        (SHOP_A, Decimal("4.5")), (SHOP_B, Decimal("3")), (shop_c, Decimal("2"))
    ]
    assert all(c.effective_to is None and c.is_custom for c in active)

    everything = await commission_service.list_shop_configs(include_inactive=True)
    assert [(c.shop_id, c.rate_value) for c in everything] == [
        (SHOP_A, Decimal("4.5")), (SHOP_A, Decimal("4")), (SHOP_B, Decimal("3")), (shop_c, Decimal("2"))
    ]
    assert everything[1].effective_to == clock()

    page = await commission_service.list_shop_configs(limit=1, offset=1)
    assert [c.shop_id for c in page] == [SHOP_B]
