"""
Job Scheduler
Named periodic jobs on asyncio tasks, started and stopped by the app lifespan
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional

from clockwork.services.billing_jobs import BillingJobs
from clockwork.services.task_sweep import TaskSweeper
from clockwork.utils.database import utcnow

logger = logging.getLogger(__name__)

Schedule = Callable[[datetime], datetime]


def every_minutes(minutes: int) -> Schedule:
    """Next run on the next multiple of `minutes` past the hour"""
    def next_run(now: datetime) -> datetime:
        base = now.replace(second=0, microsecond=0)
        return base + timedelta(minutes=minutes - base.minute % minutes)
    return next_run


def daily_at(hour: int, minute: int = 0) -> Schedule:
    def next_run(now: datetime) -> datetime:
        candidate = now.replace(hour=hour, minute=minute, second=0, microsecond=0)
        if candidate <= now:
            candidate += timedelta(days=1)
        return candidate
    return next_run


def weekly_at(weekday: int, hour: int, minute: int = 0) -> Schedule:
    """weekday follows datetime.weekday(): Monday is 0"""
    def next_run(now: datetime) -> datetime:
        candidate = now.replace(hour=hour, minute=minute, second=0, microsecond=0)
        candidate += timedelta(days=(weekday - now.weekday()) % 7)
        if candidate <= now:
            candidate += timedelta(days=7)
        return candidate
    return next_run


def monthly_at(day: int, hour: int, minute: int = 0) -> Schedule:
    """day must exist in every month (1-28)"""
    def next_run(now: datetime) -> datetime:
        candidate = now.replace(day=day, hour=hour, minute=minute, second=0, microsecond=0)
        if candidate <= now:
            if now.month == 12:
                candidate = candidate.replace(year=now.year + 1, month=1)
            else:
                candidate = candidate.replace(month=now.month + 1)
        return candidate
    return next_run


class Job:
    """A named coroutine function and its schedule"""

    def __init__(self, name: str, func: Callable[[], Awaitable[Any]], schedule: Schedule):
        self.name = name
        self.func = func
        self.schedule = schedule
        self.task: Optional[asyncio.Task] = None
        self.running = False
        self.last_run: Optional[datetime] = None
        self.last_error: Optional[str] = None

    def next_run(self, now: Optional[datetime] = None) -> datetime:
        return self.schedule(now or utcnow())

    def __repr__(self):
        return f"<Job(name='{self.name}', running={self.running}, last_run={self.last_run})>"


class JobScheduler:
    """
    Owns the background loops. Built once at startup, no module-level state.
    A job is never run while its previous run is still in flight.
    """

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self.jobs: Dict[str, Job] = {}
        self.clock = clock
        self.started = False

    def add_job(self, name: str, func: Callable[[], Awaitable[Any]], schedule: Schedule) -> Job:
        if name in self.jobs:
            raise ValueError(f"Job already registered: {name}")
        job = Job(name, func, schedule)
        self.jobs[name] = job
        return job

    def job_names(self) -> List[str]:
        return list(self.jobs)

    async def run_job(self, name: str) -> bool:
        """Run a job once now. Returns False if it was already running."""
        job = self.jobs[name]
        if job.running:
            logger.warning(f"Job {name} still running, skipping this run")
            return False

        job.running = True
        started = self.clock()
        try:
            await job.func()
            job.last_error = None
        except Exception as e:
            job.last_error = str(e)
            logger.error(f"Job {name} failed: {e}", exc_info=True)
        finally:
            job.running = False
            job.last_run = started
        logger.debug(f"Job {name} finished in {(self.clock() - started).total_seconds():.1f}s")
        return True

    async def _loop(self, job: Job):
        while True:
            now = self.clock()
            delay = (job.next_run(now) - now).total_seconds()
            await asyncio.sleep(max(delay, 0))
            await self.run_job(job.name)

    def start(self):
        if self.started:
            return
        for job in self.jobs.values():
            job.task = asyncio.create_task(self._loop(job), name=f"job:{job.name}")
        self.started = True
        logger.info(f"Scheduler started with jobs: {', '.join(self.jobs)}")

    async def stop(self):
        if not self.started:
            return
        tasks = [job.task for job in self.jobs.values() if job.task]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        for job in self.jobs.values():
            job.task = None
        self.started = False
        logger.info("Scheduler stopped")


def build_scheduler(session_factory=None) -> JobScheduler:
    """Scheduler with the billing sweep and the periodic billing jobs"""
    kwargs = {"session_factory": session_factory} if session_factory else {}
    sweeper = TaskSweeper(**kwargs)
    jobs = BillingJobs(**kwargs)

    scheduler = JobScheduler()
    scheduler.add_job("pending-tasks", sweeper.run_pending_tasks, every_minutes(5))
    scheduler.add_job("trial-ends", jobs.check_trial_ends, daily_at(9))
    scheduler.add_job("smart-archive", jobs.run_smart_archive, weekly_at(0, 10))
    scheduler.add_job("overdue-invoices", jobs.check_overdue_invoices, daily_at(10))
    scheduler.add_job("usage-metrics", jobs.rollup_usage_metrics, daily_at(0))
    scheduler.add_job("cleanup", jobs.cleanup, monthly_at(1, 0))
    return scheduler
