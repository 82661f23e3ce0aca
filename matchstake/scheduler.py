import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, Hashable, Optional

from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.base import JobLookupError
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger

from matchstake.logging_config import get_logger

logger = get_logger(__name__)


class TaskScheduler:
    """
    One pending one-shot job per key on an in-memory APScheduler.

    Scheduling a key replaces its pending job. Cancelling is safe at any point: before the
    job fires it is removed, after it fired there is nothing left to cancel.
    """

    def __init__(self) -> None:
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._keys: Dict[str, Hashable] = {}

    @staticmethod
    def job_id(key: Hashable) -> str:
        return f"task-{key}"

    def _ensure_started(self) -> AsyncIOScheduler:
        loop = asyncio.get_running_loop()
        if self._scheduler is None:
            self._scheduler = AsyncIOScheduler(
                jobstores={"default": MemoryJobStore()},
                executors={"default": AsyncIOExecutor()},
                job_defaults={"coalesce": True, "max_instances": 1, "misfire_grace_time": None},
                timezone="UTC",
                event_loop=loop,
            )
            self._scheduler.start()
        return self._scheduler

    def schedule(self, key: Hashable, delay: float, func: Callable[..., Awaitable[Any]], *args: Any) -> None:
        scheduler = self._ensure_started()
        job_id = self.job_id(key)
        self._keys[job_id] = key
        scheduler.add_job(
            self._run,
            trigger=DateTrigger(run_date=datetime.now(timezone.utc) + timedelta(seconds=max(0.0, delay))),
            args=[key, func, args],
            id=job_id,
            replace_existing=True,
        )

    async def _run(self, key: Hashable, func: Callable[..., Awaitable[Any]], args: tuple) -> None:
        try:
            await func(*args)
        except Exception:  # noqa: BLE001
            logger.exception("Scheduled task failed key=%s", key)

    def cancel(self, key: Hashable) -> bool:
        job_id = self.job_id(key)
        self._keys.pop(job_id, None)
        if self._scheduler is None:
            return False
        try:
            self._scheduler.remove_job(job_id)
        except JobLookupError:
            return False
        return True

    def is_scheduled(self, key: Hashable) -> bool:
        return self._scheduler is not None and self._scheduler.get_job(self.job_id(key)) is not None

    def pending_keys(self) -> list:
        if self._scheduler is None:
            return []
        return [self._keys.get(job.id, job.id) for job in self._scheduler.get_jobs()]

    def cancel_all(self) -> int:
        if self._scheduler is None:
            return 0
        cancelled = len(self._scheduler.get_jobs())
        self._scheduler.remove_all_jobs()
        self._keys.clear()
        return cancelled

    def shutdown(self) -> None:
        if self._scheduler is not None and self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        self._scheduler = None
        self._keys.clear()
