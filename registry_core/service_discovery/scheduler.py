"""
Background scheduling for the registry.

``PeriodicScheduler`` owns the interval loops. A loop tick only dispatches
work onto a ``WorkerPool``; it never waits for that work, so one slow
service cannot hold back the next tick for the others.

The pool runs each job as its own task behind a ``Bulkhead``. Jobs are
keyed (e.g. ``"health:billing"``) and a key that is still in flight is
not submitted again, so passes of one kind for one service never overlap.
That keying also bounds the backlog to one job per key: jobs waiting for a
slot are never dropped, however many services are registered.
"""

import asyncio
from typing import Awaitable, Callable, Dict, List, Optional

import structlog

from registry_core.resilience import Bulkhead

logger = structlog.get_logger("registry-scheduler")

Job = Callable[[], Awaitable[object]]


class WorkerPool:
    """
    Keyed background jobs, at most ``max_concurrent`` running at once.

    Args:
        name: Pool name used in logs and stats
        max_concurrent: Jobs allowed to run at once; the rest wait their turn
    """

    def __init__(self, name: str, max_concurrent: int = 10):
        self.name = name
        self.bulkhead = Bulkhead(name, max_concurrent=max_concurrent)
        self._in_flight: Dict[str, asyncio.Task] = {}

        self._stats = {
            'submitted': 0,
            'skipped': 0,
            'completed': 0,
            'failed': 0,
        }

    def running_task(self, key: str) -> Optional[asyncio.Task]:
        task = self._in_flight.get(key)
        if task is None or task.done():
            return None
        return task

    def is_running(self, key: str) -> bool:
        return self.running_task(key) is not None

    def submit(self, key: str, job: Job) -> Optional[asyncio.Task]:
        """
        Schedule ``job`` under ``key``.

        Returns the task, or None if a job with the same key is still
        running.
        """
        if self.is_running(key):
            self._stats['skipped'] += 1
            logger.debug("Job still in flight, skipping", pool=self.name, key=key)
            return None

        self._stats['submitted'] += 1
        task = asyncio.create_task(self._run(key, job), name=f"{self.name}:{key}")
        self._in_flight[key] = task
        task.add_done_callback(lambda t, k=key: self._forget(k, t))
        return task

    def _forget(self, key: str, task: asyncio.Task) -> None:
        if self._in_flight.get(key) is task:
            del self._in_flight[key]

    async def _run(self, key: str, job: Job) -> object:
        try:
            result = await self.bulkhead.execute(job)
        except asyncio.CancelledError:
            raise
        except Exception:
            self._stats['failed'] += 1
            logger.exception("Background job failed", pool=self.name, key=key)
            return None

        self._stats['completed'] += 1
        return result

    async def join(self) -> None:
        """Wait for every job currently in flight"""
        while True:
            pending = [task for task in self._in_flight.values() if not task.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel in-flight jobs and wait for them to unwind"""
        tasks: List[asyncio.Task] = list(self._in_flight.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._in_flight.clear()
        logger.info("Worker pool stopped", pool=self.name, cancelled=len(tasks))

    def get_stats(self) -> dict:
        return {
            'name': self.name,
            'in_flight': sum(1 for task in self._in_flight.values() if not task.done()),
            **self._stats,
            'bulkhead': self.bulkhead.get_stats(),
        }


class PeriodicScheduler:
    """
    Named interval loops with an explicit start/stop lifecycle.

    Usage:
        scheduler = PeriodicScheduler()
        scheduler.add_job("health", 10.0, dispatch_health_checks)
        await scheduler.start()
        ...
        await scheduler.stop()
    """

    def __init__(self):
        self._jobs: Dict[str, tuple] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self.running = False

    def add_job(self, name: str, interval: float, tick: Callable[[], object]) -> None:
        """Register a loop that calls ``tick`` every ``interval`` seconds"""
        if interval <= 0:
            raise ValueError(f"Interval for {name} must be positive, got {interval}")
        self._jobs[name] = (interval, tick)
        if self.running and name not in self._tasks:
            self._tasks[name] = asyncio.create_task(self._loop(name, interval, tick), name=f"loop:{name}")

    async def start(self) -> None:
        if self.running:
            return
        self.running = True
        for name, (interval, tick) in self._jobs.items():
            self._tasks[name] = asyncio.create_task(self._loop(name, interval, tick), name=f"loop:{name}")
        logger.info("Scheduler started", loops={name: job[0] for name, job in self._jobs.items()})

    async def stop(self) -> None:
        self.running = False
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        logger.info("Scheduler stopped")

    async def _loop(self, name: str, interval: float, tick: Callable[[], object]) -> None:
        while self.running:
            await asyncio.sleep(interval)
            try:
                result = tick()
                if asyncio.iscoroutine(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Scheduler tick failed", loop=name)
