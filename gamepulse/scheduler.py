# gamepulse/scheduler.py
"""
Interval scheduler for the aggregation jobs.

Each job runs in its own asyncio task at a fixed interval. Execution history
(last start, last success, in-flight flag, counters) is written to the
`job_runs` table so it survives restarts and shows up in /stats.
"""
import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import sessionmaker

from gamepulse.cache import serialize
from gamepulse.database import upsert, utcnow
from gamepulse.models import JobRun

logger = logging.getLogger(__name__)

JobFn = Callable[[], Awaitable[Any]]


@dataclass
class Job:
    name: str
    interval: float
    func: JobFn
    running: bool = False


def _result_payload(result: Any) -> Optional[dict]:
    if result is None:
        return None
    if hasattr(result, "to_dict"):
        result = result.to_dict()
    if not isinstance(result, dict):
        result = {"value": result}
    # store only what survives JSON
    return json.loads(serialize(result))


class Scheduler:
    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory
        self.jobs: Dict[str, Job] = {}
        self._tasks: List[asyncio.Task] = []

    def add_job(self, name: str, interval: float, func: JobFn) -> Job:
        if name in self.jobs:
            raise ValueError(f"job already registered: {name}")
        job = Job(name=name, interval=interval, func=func)
        self.jobs[name] = job
        return job

    async def start(self) -> None:
        await self._clear_stale_flags()
        for job in self.jobs.values():
            self._tasks.append(asyncio.create_task(self._loop(job), name=f"job:{job.name}"))
        logger.info("Scheduler started with jobs: %s", ", ".join(self.jobs) or "none")

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        logger.info("Scheduler stopped")

    async def _loop(self, job: Job) -> None:
        while True:
            await self.run_job(job.name)
            await asyncio.sleep(job.interval)

    async def run_job(self, name: str, func: Optional[JobFn] = None) -> bool:
        """
        Run a job now. Returns False if it is unknown or still in flight.

        `func` replaces the job's callable for this run only (a rebuild runs
        under its domain's job so the two never overlap).
        """
        job = self.jobs.get(name)
        if job is None:
            return False
        if job.running:
            logger.info("Job %s still running, skipping this tick", name)
            return False

        job.running = True
        try:
            await self._mark_started(name)
            try:
                result = await (func or job.func)()
            except asyncio.CancelledError:
                await self._mark_finished(name, error="cancelled")
                raise
            except Exception as e:
                logger.exception("Job %s failed", name)
                await self._mark_finished(name, error=f"{type(e).__name__}: {e}")
            else:
                await self._mark_finished(name, result=_result_payload(result))
        except Exception as e:
            # bookkeeping itself failed (database down); the next tick tries again
            logger.error("Could not record run of job %s: %s", name, e)
        finally:
            job.running = False
        return True

    # --- history ---

    async def _clear_stale_flags(self) -> None:
        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    update(JobRun).where(JobRun.in_flight.is_(True)).values(in_flight=False)
                    .execution_options(synchronize_session=False)
                )
        if result.rowcount:
            logger.warning("Cleared %d stale in-flight job flags", result.rowcount)

    async def _mark_started(self, name: str) -> None:
        now = utcnow()
        async with self.session_factory() as session:
            async with session.begin():
                stmt = upsert(session, JobRun).values(
                    name=name, in_flight=True, last_started_at=now, run_count=1, failure_count=0
                )
                await session.execute(stmt.on_conflict_do_update(
                    index_elements=["name"],
                    set_={
                        "in_flight": True,
                        "last_started_at": now,
                        "run_count": JobRun.run_count + 1,
                    },
                ))

    async def _mark_finished(self, name: str, result: Optional[dict] = None, error: Optional[str] = None) -> None:
        now = utcnow()
        values = {"in_flight": False, "last_finished_at": now}
        if error is None:
            values.update(last_success_at=now, last_error=None, last_result=result)
        else:
            values.update(last_error=error[:1000], failure_count=JobRun.failure_count + 1)
        async with self.session_factory() as session:
            async with session.begin():
                await session.execute(
                    update(JobRun).where(JobRun.name == name).values(**values)
                    .execution_options(synchronize_session=False)
                )

    async def history(self) -> List[dict]:
        async with self.session_factory() as session:
            result = await session.execute(select(JobRun).order_by(JobRun.name))
            runs = result.scalars().all()
        return [
            {
                "name": run.name,
                "interval_seconds": self.jobs[run.name].interval if run.name in self.jobs else None,
                "in_flight": run.in_flight,
                "last_started_at": run.last_started_at,
                "last_finished_at": run.last_finished_at,
                "last_success_at": run.last_success_at,
                "last_error": run.last_error,
                "run_count": run.run_count,
                "failure_count": run.failure_count,
                "last_result": run.last_result,
            }
            for run in runs
        ]
