"""
定时任务测试
"""
from datetime import datetime, timezone

import pytest

from cv_core.models.enums import OrderStatus
from cv_core.tasks import PAYOUT_RELEASE_JOB, PERFORMANCE_SNAPSHOT_JOB, TaskScheduler, previous_month


@pytest.mark.parametrize("now,expected", [
    (datetime(2026, 10, 19, 15, 30, tzinfo=timezone.utc), (datetime(2026, 9, 1), datetime(2026, 10, 1), "2026-09")),
    (datetime(2026, 1, 1, 0, 0, tzinfo=timezone.utc), (datetime(2025, 12, 1), datetime(2026, 1, 1), "2025-12")),
])
def test_previous_month(now, expected):
    start, end, label = previous_month(now)

    assert (start, end) == (
        expected[0].replace(tzinfo=timezone.utc),
        expected[1].replace(tzinfo=timezone.utc),
    )
    assert label == expected[2]


@pytest.fixture
def scheduler(db_manager, settings, clock):
    return TaskScheduler(db_manager, settings, clock=clock)


async def test_payout_release_job(scheduler, orders_service, delivered_order, clock):
    clock.advance(days=9)

    result = await scheduler.run_job(PAYOUT_RELEASE_JOB)

    assert result == {"paid_orders": 1, "order_ids": [delivered_order.id]}
    order = await orders_service.get_order(delivered_order.id)
    assert order.status == OrderStatus.PAID.value


async def test_monthly_snapshot_job(scheduler, performance_service, delivered_order, clock):
    clock.advance(days=31)

    result = await scheduler.run_job(PERFORMANCE_SNAPSHOT_JOB)

    assert result == {"period_label": "2026-09", "shops": 2}
    snapshots = await performance_service.list_snapshots("2026-09")
    assert len(snapshots) == 2


async def test_failing_job_is_logged_and_released(scheduler):
    calls = []

    async def broken():
        calls.append(1)
        raise RuntimeError("boom")

    scheduler.register_handler("cv.test.broken", broken)

    assert await scheduler.run_job("cv.test.broken") is None
    assert await scheduler.run_job("cv.test.broken") is None
    assert len(calls) == 2


async def test_start_schedules_jobs(scheduler):
    await scheduler.start()
    try:
        assert scheduler.scheduler.get_job(PAYOUT_RELEASE_JOB) is not None
        assert scheduler.scheduler.get_job(PERFORMANCE_SNAPSHOT_JOB) is not None

        scheduler.remove_job(PERFORMANCE_SNAPSHOT_JOB)
        assert scheduler.scheduler.get_job(PERFORMANCE_SNAPSHOT_JOB) is None
    finally:
        await scheduler.shutdown()

    assert not scheduler.scheduler.running


def test_unknown_job_rejected(scheduler):
    with pytest.raises(ValueError):
        scheduler.add_job("cv.unknown", "0 * * * *")
