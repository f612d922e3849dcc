"""
任务调度器 - 基于APScheduler
负责托管期满后的自动打款与月度卖家绩效快照
"""
import asyncio
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.jobstores.base import JobLookupError

from cv_core.config import Settings
from cv_core.database import DatabaseManager
from cv_core.models.base import utcnow
from cv_core.services import OrdersService, PerformanceService
from cv_core.utils.logger import LogContext, get_logger

logger = get_logger(__name__)

PAYOUT_RELEASE_JOB = "cv.settlement.payout_release"
PERFORMANCE_SNAPSHOT_JOB = "cv.performance.monthly_snapshot"

JobHandler = Callable[[], Awaitable[Dict[str, Any]]]


def previous_month(now: datetime) -> Tuple[datetime, datetime, str]:
    """返回上一个自然月的 [开始, 结束) 区间（UTC）及标签"""
    now = now.astimezone(timezone.utc)
    end = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    if end.month == 1:
        start = end.replace(year=end.year - 1, month=12)
    else:
        start = end.replace(month=end.month - 1)
    return start, end, f"{start:%Y-%m}"


class TaskScheduler:
    """任务调度器 - 管理结算打款与绩效快照任务"""

    def __init__(
        self,
        db_manager: DatabaseManager,
        settings: Optional[Settings] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.db_manager = db_manager
        self.settings = settings or db_manager.settings
        self.clock = clock or utcnow
        self.scheduler = AsyncIOScheduler(
            timezone='UTC',
            job_defaults={
                'coalesce': True,  # 合并多个pending的相同任务
                'max_instances': 1,  # 同一任务不并发执行
                'misfire_grace_time': 300  # 允许延迟5分钟
            }
        )
        self.registered_handlers: Dict[str, JobHandler] = {}
        self._running_jobs: set = set()

        self.register_handler(PAYOUT_RELEASE_JOB, self.release_payouts)
        self.register_handler(PERFORMANCE_SNAPSHOT_JOB, self.snapshot_previous_month)

    def register_handler(self, job_id: str, handler: JobHandler):
        """
        注册任务处理函数

        Args:
            job_id: 任务唯一标识
            handler: 无参异步处理函数，返回执行结果字典
        """
        self.registered_handlers[job_id] = handler
        logger.info("Registered job handler", job_id=job_id)

    async def start(self):
        """按配置的 cron 表达式添加任务并启动调度器"""
        logger.info("Starting task scheduler")
        self.add_job(PAYOUT_RELEASE_JOB, self.settings.payout_release_cron)
        self.add_job(PERFORMANCE_SNAPSHOT_JOB, self.settings.performance_snapshot_cron)
        self.scheduler.start()
        logger.info("Task scheduler started", jobs=sorted(self.registered_handlers))

    async def shutdown(self):
        """关闭调度器"""
        logger.info("Shutting down task scheduler")

        if self._running_jobs:
            logger.info("Waiting for running jobs", count=len(self._running_jobs))
            try:
                await asyncio.wait_for(
                    asyncio.gather(*[self._wait_for_job(job_id) for job_id in list(self._running_jobs)]),
                    timeout=30
                )
            except asyncio.TimeoutError:
                logger.warning("Timeout waiting for jobs to complete, shutting down anyway")

        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        logger.info("Task scheduler shut down")

    async def _wait_for_job(self, job_id: str):
        while job_id in self._running_jobs:
            await asyncio.sleep(0.5)

    def add_job(self, job_id: str, cron: str):
        """以 cron 表达式调度已注册的任务"""
        if job_id not in self.registered_handlers:
            raise ValueError(f"No handler registered for job: {job_id}")

        async def job_wrapper():
            await self.run_job(job_id)

        self.scheduler.add_job(
            job_wrapper,
            trigger=CronTrigger.from_crontab(cron, timezone='UTC'),
            id=job_id,
            name=job_id,
            replace_existing=True
        )
        logger.info("Job scheduled", job_id=job_id, cron=cron)

    def remove_job(self, job_id: str):
        try:
            self.scheduler.remove_job(job_id)
            logger.info("Job removed", job_id=job_id)
        except JobLookupError:
            logger.warning("Job not found in scheduler", job_id=job_id)

    async def run_job(self, job_id: str) -> Optional[Dict[str, Any]]:
        """
        执行一次任务

        同一任务正在执行时跳过；任务异常只记录日志，等待下一次调度重试
        """
        if job_id in self._running_jobs:
            logger.warning("Job is already running, skipping this execution", job_id=job_id)
            return None

        handler = self.registered_handlers[job_id]
        self._running_jobs.add(job_id)
        started_at = datetime.now(timezone.utc)
        run_id = f"{job_id}_{started_at:%Y%m%d%H%M%S}"

        with LogContext(job_id=job_id):
            logger.info("Job started", run_id=run_id)
            try:
                result = await handler()
            except Exception as e:
                logger.error("Job failed", run_id=run_id, err=str(e), exc_info=True)
                return None
            finally:
                self._running_jobs.discard(job_id)

            execution_time_ms = int((datetime.now(timezone.utc) - started_at).total_seconds() * 1000)
            logger.info("Job finished", run_id=run_id, latency_ms=execution_time_ms, **result)
        return result

    async def release_payouts(self) -> Dict[str, Any]:
        """托管期满的 DELIVERED 订单自动打款"""
        service = OrdersService(db_manager=self.db_manager, settings=self.settings, clock=self.clock)
        paid_order_ids = await service.release_due_payouts()
        return {"paid_orders": len(paid_order_ids), "order_ids": paid_order_ids}

    async def snapshot_previous_month(self) -> Dict[str, Any]:
        """计算上一自然月的卖家绩效快照"""
        start, end, label = previous_month(self.clock())
        service = PerformanceService(db_manager=self.db_manager, settings=self.settings, clock=self.clock)
        snapshots = await service.compute_seller_performance(start, end, period_label=label)
        return {"period_label": label, "shops": len(snapshots)}
