"""
Periodic job scheduler.

Runs each indexer (and the reputation and session-expiry sweeps) as an
APScheduler interval job on the running asyncio loop. A job that raises is
logged and simply runs again at its next tick; one failing job never stalls
the others, and a slow run is never overlapped by its own next tick.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from paytrail.core.config import Config
from paytrail.core.exceptions import PayTrailError
from paytrail.core.logging import get_logger

if TYPE_CHECKING:
    from paytrail.escrow.manager import SessionManager
    from paytrail.indexer.feedback import FeedbackIndexer
    from paytrail.indexer.payment import PaymentIndexer
    from paytrail.indexer.transaction import TransactionIndexer
    from paytrail.reputation.engine import ReputationEngine

logger = get_logger("scheduler")


@dataclass
class ScheduledJob:
    name: str
    func: Callable[[], Awaitable[Any]]
    interval: float
    run_on_start: bool = True
    runs: int = 0
    failures: int = 0
    last_error: str | None = None
    last_duration_ms: int | None = None


class IndexerScheduler:
    """
    Interval scheduler for indexer and maintenance jobs.

    Usage:
        scheduler = IndexerScheduler.from_components(config, payments=..., ...)
        scheduler.start()
        ...
        await scheduler.stop()
    """

    def __init__(self) -> None:
        self._jobs: dict[str, ScheduledJob] = {}
        self._scheduler: AsyncIOScheduler | None = None
        self._in_flight: set[asyncio.Task[Any]] = set()

    @classmethod
    def from_components(
        cls,
        config: Config,
        payments: PaymentIndexer | None = None,
        feedback: FeedbackIndexer | None = None,
        transactions: TransactionIndexer | None = None,
        reputation: ReputationEngine | None = None,
        sessions: SessionManager | None = None,
    ) -> IndexerScheduler:
        """Wire the standard jobs with the configured intervals."""
        scheduler = cls()
        if payments is not None:
            scheduler.add_job("payment", payments.run, config.payment_indexer_interval)
        if feedback is not None:
            scheduler.add_job("feedback", feedback.run, config.feedback_indexer_interval)
        if transactions is not None:
            scheduler.add_job("transaction", transactions.run, config.transaction_indexer_interval)
        if reputation is not None:
            scheduler.add_job("reputation", reputation.recompute_all, config.reputation_interval)
        if sessions is not None:
            scheduler.add_job(
                "session_expiry", sessions.expire_stale_sessions, config.session_expiry_interval
            )
        return scheduler

    @property
    def jobs(self) -> dict[str, ScheduledJob]:
        return dict(self._jobs)

    @property
    def is_running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def add_job(
        self,
        name: str,
        func: Callable[[], Awaitable[Any]],
        interval: float,
        run_on_start: bool = True,
    ) -> None:
        if interval <= 0:
            raise ValueError(f"Interval for job '{name}' must be positive")
        if name in self._jobs:
            raise ValueError(f"Job '{name}' already registered")
        self._jobs[name] = ScheduledJob(name, func, interval, run_on_start)
        if self.is_running:
            self._schedule(self._jobs[name])

    async def run_once(self, name: str) -> Any:
        """Run one job immediately. Errors propagate to the caller."""
        job = self._jobs.get(name)
        if job is None:
            raise KeyError(f"Unknown job '{name}'. Available: {', '.join(self._jobs)}")
        return await self._execute(job)

    async def _execute(self, job: ScheduledJob) -> Any:
        started = time.monotonic()
        job.runs += 1
        try:
            result = await job.func()
        except Exception as e:
            job.failures += 1
            job.last_error = str(e)
            raise
        finally:
            job.last_duration_ms = int((time.monotonic() - started) * 1000)
        job.last_error = None
        return result

    async def _tick(self, name: str) -> None:
        """APScheduler entry point for one run of a job."""
        job = self._jobs[name]
        task = asyncio.current_task()
        if task is not None:
            self._in_flight.add(task)
        try:
            await self._execute(job)
        except PayTrailError as e:
            level = "warning" if e.retryable else "error"
            getattr(logger, level)(f"Job '{name}' failed ({e.code}): {e.message}")
        except Exception:
            logger.exception(f"Job '{name}' crashed")
        finally:
            if task is not None:
                self._in_flight.discard(task)

    def _schedule(self, job: ScheduledJob) -> None:
        assert self._scheduler is not None
        options: dict[str, Any] = {}
        if job.run_on_start:
            options["next_run_time"] = datetime.now(self._scheduler.timezone)
        self._scheduler.add_job(
            self._tick,
            IntervalTrigger(seconds=job.interval),
            args=[job.name],
            id=job.name,
            name=job.name,
            max_instances=1,
            coalesce=True,
            misfire_grace_time=None,
            **options,
        )

    def start(self) -> None:
        """Schedule every registered job. Must be called inside a running loop."""
        if self.is_running:
            return
        self._scheduler = AsyncIOScheduler(event_loop=asyncio.get_running_loop())
        for job in self._jobs.values():
            self._schedule(job)
        self._scheduler.start()
        logger.info(f"Scheduler started with jobs: {', '.join(self._jobs)}")

    async def stop(self) -> None:
        """Stop scheduling new runs and wait for in-flight runs to finish."""
        if self._scheduler is None:
            return
        self._scheduler.pause()
        if self._in_flight:
            await asyncio.gather(*self._in_flight, return_exceptions=True)
        self._scheduler.shutdown(wait=False)
        self._scheduler = None
        logger.info("Scheduler stopped")
