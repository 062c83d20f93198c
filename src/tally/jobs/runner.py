from datetime import datetime, timedelta, timezone
from pydantic import BaseModel
from typing import (
    Awaitable,
    Callable,
    Dict,
    List,
    Optional,
    Protocol,
    Tuple,
    Type,
    TypeVar,
    cast,
    get_type_hints,
)
from aiosqlitepool import SQLiteConnectionPool
from litestar.types.protocols import Logger
import asyncio
import inspect
import cronexpr
import uuid


TInput = TypeVar("TInput", bound=BaseModel)

JOB_PARAMETERS = ["job_id", "schedule", "input"]


class ScheduledJobFunc(Protocol):
    async def __call__(
        self, job_id: str, schedule: str, input: TInput
    ) -> Optional[TInput]: ...

    function_id: str
    model_type: Type[BaseModel]


def scheduled_job(
    name: str, version: float
) -> Callable[[Callable[[str, str, TInput], Awaitable[Optional[TInput]]]], ScheduledJobFunc]:
    """Register a coroutine as a schedulable job.

    The job receives its row id, its cron schedule and the pydantic input it was
    submitted with. Returning a new input schedules the next run; returning None
    ends the chain. ``version`` is part of the stored id, so bump it when the
    input model changes shape.
    """

    def decorator(func: Callable) -> ScheduledJobFunc:
        found = list(inspect.signature(func).parameters)
        if found != JOB_PARAMETERS:
            raise ValueError(
                f"Job {func.__name__} must take exactly 3 parameters {JOB_PARAMETERS}, got {found}"
            )

        job = cast(ScheduledJobFunc, func)
        job.function_id = f"{name}-v{version}"
        job.model_type = get_type_hints(func)["input"]
        return job

    return decorator


# (row id, running task, job, schedule, fire time the run was due at)
RunningJob = Tuple[int, asyncio.Task, ScheduledJobFunc, str, datetime]
# (row id, schedule, function id, input json, fire_at)
DueRow = Tuple[int, str, str, str, str]


class JobRunner:
    """
    Persisted cron-style job executor.

    Jobs live in the ``scheduled_jobs`` table with a cron schedule and a JSON
    input. A poller claims due rows with this runner's id and starts them as
    tasks; a finalizer awaits each task in order, deletes its row and, when the
    job returned a new input, schedules the next run from the same schedule.
    A job that raises is logged and not rescheduled.

    Rows claimed by a runner that crashed are picked up again by the next one,
    so jobs must tolerate running more than once. One runner per database.
    """

    def __init__(
        self,
        jobs: List[ScheduledJobFunc],
        period: timedelta,
        db_pool: SQLiteConnectionPool,
        logger: Logger,
    ) -> None:
        self.period = period
        self.db_pool = db_pool
        self.logger = logger
        self.jobs: Dict[str, ScheduledJobFunc] = {job.function_id: job for job in jobs}
        self.runner_id = str(uuid.uuid4())
        self._poller: Optional[asyncio.Task] = None
        self._finalizer: Optional[asyncio.Task] = None

    async def __aenter__(self) -> "JobRunner":
        async with self.db_pool.connection() as db:
            await db.execute("""
                CREATE TABLE IF NOT EXISTS scheduled_jobs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    schedule TEXT NOT NULL,
                    function_id TEXT NOT NULL,
                    input_json TEXT NOT NULL,
                    fire_at TEXT NOT NULL,
                    claimed_by TEXT
                )
            """)
            await db.execute(
                "CREATE INDEX IF NOT EXISTS idx_scheduled_jobs_fire_at ON scheduled_jobs(fire_at)"
            )
            await db.commit()  # type: ignore

        # None marks the end of the stream for the finalizer
        self.running: asyncio.Queue[Optional[RunningJob]] = asyncio.Queue()
        self._poller = asyncio.create_task(self._poll())
        self._finalizer = asyncio.create_task(self._finalize())
        self.logger.info(f"Job runner {self.runner_id} started with {len(self.jobs)} jobs")
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        # Stop the poller first so nothing is queued behind the end marker
        if self._poller is not None:
            self._poller.cancel()
            try:
                await self._poller
            except asyncio.CancelledError:
                pass

        if self._finalizer is not None:
            await self.running.put(None)
            try:
                await asyncio.wait_for(self._finalizer, timeout=1.0)
            except asyncio.TimeoutError:
                self.logger.warning("Job finalizer did not finish in time")

    async def _claim_due(self, now: datetime) -> List[DueRow]:
        """Mark every due row not already held by this runner as ours."""
        async with self.db_pool.connection() as db:
            cursor = await db.execute(
                "SELECT id, schedule, function_id, input_json, fire_at FROM scheduled_jobs "
                "WHERE fire_at <= ? AND (claimed_by IS NULL OR claimed_by != ?) "
                "ORDER BY fire_at",
                (now.isoformat(), self.runner_id),
            )
            rows = list(await cursor.fetchall())
            if rows:
                ids = [row[0] for row in rows]
                await db.execute(
                    f"UPDATE scheduled_jobs SET claimed_by = ? WHERE id IN ({','.join('?' * len(ids))})",
                    [self.runner_id, *ids],
                )
                await db.commit()  # type: ignore
        return cast(List[DueRow], rows)

    async def _poll(self) -> None:
        while True:
            tick = asyncio.create_task(asyncio.sleep(self.period.total_seconds()))

            for row_id, schedule, function_id, input_json, fire_at in await self._claim_due(
                datetime.now(timezone.utc)
            ):
                job = self.jobs.get(function_id)
                if job is None:
                    self.logger.warning(f"No job registered for {function_id}, leaving row {row_id}")
                    continue

                input = job.model_type.model_validate_json(input_json)
                task = asyncio.create_task(job(job_id=str(row_id), schedule=schedule, input=input))
                await self.running.put(
                    (row_id, task, job, schedule, datetime.fromisoformat(fire_at))
                )

            await tick

    async def _finalize(self) -> None:
        while (item := await self.running.get()) is not None:
            row_id, task, job, schedule, fired_at = item
            try:
                next_input = await task
            except Exception as e:
                self.logger.error(f"Job {job.function_id} (row {row_id}) failed: {e}", exc_info=True)
                continue

            async with self.db_pool.connection() as db:
                await db.execute("DELETE FROM scheduled_jobs WHERE id = ?", (row_id,))
                await db.commit()  # type: ignore

            if next_input is not None:
                await self.submit(job, next_input, schedule, fired_at)

    async def submit(
        self,
        job: ScheduledJobFunc,
        input: BaseModel,
        schedule: str,
        after: Optional[datetime] = None,
    ) -> datetime:
        """Queue ``job`` for the first fire time of ``schedule`` after ``after`` (default now)."""
        fire_at: datetime = cronexpr.next_fire(schedule, after)  # type: ignore

        async with self.db_pool.connection() as db:
            await db.execute(
                "INSERT INTO scheduled_jobs (schedule, function_id, input_json, fire_at) VALUES (?, ?, ?, ?)",
                (schedule, job.function_id, input.model_dump_json(), fire_at.isoformat()),
            )
            await db.commit()  # type: ignore
        return fire_at

    async def ensure_scheduled(self, job: ScheduledJobFunc, input: BaseModel, schedule: str) -> bool:
        """Submit ``job`` unless a row for it already exists; True if submitted."""
        async with self.db_pool.connection() as db:
            cursor = await db.execute(
                "SELECT 1 FROM scheduled_jobs WHERE function_id = ? LIMIT 1",
                (job.function_id,),
            )
            exists = await cursor.fetchone() is not None

        if exists:
            return False
        fire_at = await self.submit(job, input, schedule)
        self.logger.info(f"Scheduled {job.function_id}, first run at {fire_at.isoformat()}")
        return True
