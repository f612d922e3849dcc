"""
后台定时任务（基于 APScheduler）
"""
from .scheduler import TaskScheduler, PAYOUT_RELEASE_JOB, PERFORMANCE_SNAPSHOT_JOB, previous_month

__all__ = [
    "TaskScheduler",
    "PAYOUT_RELEASE_JOB",
    "PERFORMANCE_SNAPSHOT_JOB",
    "previous_month",
]
