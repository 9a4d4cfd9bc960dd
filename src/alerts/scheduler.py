"""
Alert scheduler - runs each monitor on its own periodic timer.

One asyncio task per job. A job's tick runs to completion before its next
sleep starts, so ticks of the same job never overlap; different jobs run
concurrently. Each sleep is ``interval + uniform(0, jitter)`` so the jobs
drift apart instead of firing together.

A tick that raises is logged and counted and the loop carries on with the
next tick. ``start()`` is idempotent and ``stop()`` is safe even if the
scheduler never started.
"""

import asyncio
import random
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import structlog

from src.observability.metrics import MetricsCollector

logger = structlog.get_logger(__name__)

JobFunc = Callable[[], Awaitable[Any]]


@dataclass
class JobState:
    """Registration and run bookkeeping for one scheduled job."""

    name: str
    func: JobFunc
    interval_seconds: float
    jitter_seconds: float = 0.0
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)
    ticks: int = 0
    errors: int = 0
    last_started_at: datetime | None = None
    last_finished_at: datetime | None = None
    last_error: str | None = None
    last_result: Any = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "interval_seconds": self.interval_seconds,
            "jitter_seconds": self.jitter_seconds,
            "ticks": self.ticks,
            "errors": self.errors,
            "running": self.lock.locked(),
            "last_started_at": self.last_started_at.isoformat() if self.last_started_at else None,
            "last_finished_at": self.last_finished_at.isoformat() if self.last_finished_at else None,
            "last_error": self.last_error,
        }


class AlertScheduler:
    """
    Owns the periodic timers of the alert engine.

    Constructed by the composition root (``build_engine``) and owned by
    whatever hosts the engine (the API lifespan); never a module global.

    Usage:
        scheduler = AlertScheduler()
        scheduler.add_job("late_visit", tick, interval_seconds=120, jitter_seconds=5)
        await scheduler.start()
        ...
        await scheduler.stop()
    """

    def __init__(
        self,
        metrics: MetricsCollector | None = None,
        run_immediately: bool = True,
    ):
        """
        Initialize the scheduler.

        Args:
            metrics: Optional Prometheus collector for tick outcomes
            run_immediately: Run each job once on start before the first sleep
        """
        self._jobs: dict[str, JobState] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        self._metrics = metrics
        self._run_immediately = run_immediately
        self._running = False
        self._started_at: datetime | None = None

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def jobs(self) -> dict[str, JobState]:
        return dict(self._jobs)

    def add_job(
        self,
        name: str,
        func: JobFunc,
        interval_seconds: float,
        jitter_seconds: float = 0.0,
    ) -> None:
        """Register a job. Jobs added while running start on the next ``start()``."""
        if name in self._jobs:
            raise ValueError(f"Job {name!r} already registered")
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        if jitter_seconds < 0:
            raise ValueError("jitter_seconds must be non-negative")
        self._jobs[name] = JobState(
            name=name,
            func=func,
            interval_seconds=interval_seconds,
            jitter_seconds=jitter_seconds,
        )

    async def start(self) -> None:
        """Start one task per job (no-op when already running)."""
        if self._running:
            logger.debug("Scheduler already running")
            return

        self._running = True
        self._started_at = datetime.now(timezone.utc)
        for name, job in self._jobs.items():
            self._tasks[name] = asyncio.create_task(self._loop(job), name=f"alerts:{name}")

        if self._metrics is not None:
            self._metrics.scheduler_running.set(1)
        logger.info("Alert scheduler started", jobs=sorted(self._jobs))

    async def stop(self) -> None:
        """Cancel all job tasks and wait for them to finish."""
        if not self._running and not self._tasks:
            return

        self._running = False
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        if self._metrics is not None:
            self._metrics.scheduler_running.set(0)
        logger.info("Alert scheduler stopped")

    async def run_now(self, name: str) -> Any:
        """
        Run a job immediately, serialized with its scheduled ticks.

        Raises:
            KeyError: If no job with that name is registered.
        """
        job = self._jobs[name]
        return await self._tick(job, raise_errors=True)

    def next_delay(self, job: JobState) -> float:
        return job.interval_seconds + random.uniform(0, job.jitter_seconds)

    async def _loop(self, job: JobState) -> None:
        if not self._run_immediately:
            await asyncio.sleep(self.next_delay(job))
        while self._running:
            await self._tick(job)
            await asyncio.sleep(self.next_delay(job))

    async def _tick(self, job: JobState, raise_errors: bool = False) -> Any:
        async with job.lock:
            log = logger.bind(job=job.name)
            job.last_started_at = datetime.now(timezone.utc)
            started = time.monotonic()
            try:
                result = await job.func()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                latency = time.monotonic() - started
                job.errors += 1
                job.last_error = f"{type(e).__name__}: {e}"
                job.last_finished_at = datetime.now(timezone.utc)
                log.error("Tick failed", error=str(e), latency=round(latency, 3), exc_info=True)
                if self._metrics is not None:
                    self._metrics.record_tick(job.name, "error", latency=latency)
                if raise_errors:
                    raise
                return None

            latency = time.monotonic() - started
            job.ticks += 1
            job.last_error = None
            job.last_result = result
            job.last_finished_at = datetime.now(timezone.utc)
            log.debug("Tick finished", latency=round(latency, 3))
            if self._metrics is not None:
                self._metrics.record_tick(job.name, "success", latency=latency)
            return result

    def status(self) -> dict[str, Any]:
        """Scheduler and per-job state for the monitoring endpoint."""
        return {
            "running": self._running,
            "started_at": self._started_at.isoformat() if self._started_at else None,
            "jobs": {name: job.to_dict() for name, job in self._jobs.items()},
        }
