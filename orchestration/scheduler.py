import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from monitoring.async_utils import run_tasks_with_cleanup


logger = logging.getLogger(__name__)

JobFn = Callable[[], Awaitable[Any]]


@dataclass
class ScheduledJob:
    name: str
    interval_s: float
    fn: JobFn
    run_on_start: bool = False
    runs: int = 0
    failures: int = 0
    last_run: Optional[float] = None
    last_result: Any = None
    last_error: Optional[str] = None
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    def to_dict(self) -> Dict[str, Any]:
        result = self.last_result
        if hasattr(result, "to_dict"):
            result = result.to_dict()
        return {
            "name": self.name,
            "interval_s": self.interval_s,
            "runs": self.runs,
            "failures": self.failures,
            "last_run": self.last_run,
            "last_result": result,
            "last_error": self.last_error,
        }


class SyncScheduler:
    """Fixed-interval runner for background jobs. A failing run never stops its job."""

    def __init__(self):
        self.jobs: Dict[str, ScheduledJob] = {}
        self.running = False
        self._tasks: List[asyncio.Task] = []

    def add_job(self, name: str, interval_s: float, fn: JobFn, run_on_start: bool = False) -> ScheduledJob:
        if name in self.jobs:
            raise ValueError(f"Job {name} already registered")
        job = ScheduledJob(name=name, interval_s=float(interval_s), fn=fn, run_on_start=run_on_start)
        self.jobs[name] = job
        return job

    async def run_job(self, name: str) -> Any:
        """Run a job now. Overlapping runs of the same job are serialized."""
        job = self.jobs[name]
        async with job._lock:
            started = time.perf_counter()
            job.last_run = time.time()
            try:
                job.last_result = await job.fn()
                job.last_error = None
                return job.last_result
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                job.failures += 1
                job.last_error = str(exc)
                logger.error("Scheduled job %s failed: %s", name, exc)
                return None
            finally:
                job.runs += 1
                logger.debug("Scheduled job %s took %.2fs", name, time.perf_counter() - started)

    async def _job_loop(self, job: ScheduledJob) -> None:
        try:
            if not job.run_on_start:
                await asyncio.sleep(job.interval_s)
            while self.running:
                await self.run_job(job.name)
                await asyncio.sleep(job.interval_s)
        except asyncio.CancelledError:
            pass

    def start(self) -> List[asyncio.Task]:
        if self.running:
            return self._tasks
        self.running = True
        self._tasks = [asyncio.create_task(self._job_loop(job)) for job in self.jobs.values()]
        logger.info("Scheduler started with jobs: %s", ", ".join(self.jobs) or "none")
        return self._tasks

    async def stop(self) -> None:
        self.running = False
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        await run_tasks_with_cleanup(tasks)

    def status(self) -> Dict[str, Any]:
        return {name: job.to_dict() for name, job in self.jobs.items()}
