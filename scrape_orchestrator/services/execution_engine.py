"""
Execution engine for scrape jobs.

``submit`` persists a job and returns its id at once; the job then runs on
the engine's own tasks. Three independent ceilings bound the work:

- jobs running at the same time, system-wide
- targets running at the same time, within one job
- worker processes alive at the same time, across all jobs

Targets are dispatched in tribunal order. Every attempt writes a new
execution row. Failed attempts are classified; transient errors are retried
after the backoff delay (the per-job slot is released while waiting), hard
errors fail the target at once.

Job outcome once every target is terminal:
- canceled, if cancellation was requested
- failed, if no target completed
- completed otherwise, with ``partial_failure`` set when any target failed
"""

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Protocol

from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from scrape_orchestrator.config import ScriptsConfig, Settings, get_config
from scrape_orchestrator.core.compression import compress_payload
from scrape_orchestrator.core.datetime_utils import get_cutoff, utc_now
from scrape_orchestrator.core.errors import ClassifiedError, ErrorType, classify
from scrape_orchestrator.core.logging import get_logger
from scrape_orchestrator.core.retry import RetryPolicy
from scrape_orchestrator.models.job import (
    TERMINAL_STATUSES,
    JobStatus,
    ScrapeExecution,
    ScrapeJob,
    ScrapeJobTarget,
    ScrapeSubType,
    ScrapeType,
)
from scrape_orchestrator.models.target import TargetConfig
from scrape_orchestrator.schemas.scrape import (
    JobCounts,
    JobStatusResponse,
    LogEntryResponse,
    ScrapeJobRequest,
    TargetStatus,
)
from scrape_orchestrator.services import tribunal_sorter
from scrape_orchestrator.services.data_persister import persist_records
from scrape_orchestrator.services.log_stream import JobLogger, LogEntry, LogStream, sanitize_entry
from scrape_orchestrator.services.performance_tracker import PerformanceTracker
from scrape_orchestrator.services.worker import (
    ScriptOutputError,
    ScriptResult,
    WorkerProcess,
    WorkerState,
    build_command,
    build_worker_env,
    parse_script_output,
    resolve_script,
)

logger = get_logger(__name__)

LOG_SNAPSHOT_SIZE = 200
ACTIVE_STATUSES = (JobStatus.PENDING, JobStatus.RUNNING)


class JobSubmissionError(ValueError):
    """The job request was rejected before anything was persisted."""


class JobNotFoundError(LookupError):
    pass


class ExecutionNotFoundError(LookupError):
    pass


class ExecutionNotRetryableError(ValueError):
    pass


# =============================================================================
# Concurrency
# =============================================================================


class ConcurrencyLimit:
    """Counting semaphore that tracks how many slots are in use.

    ``in_use`` and ``peak`` are only changed inside ``acquire``/``release``.
    """

    def __init__(self, name: str, limit: int) -> None:
        if limit < 1:
            raise ValueError(f"{name}: limit must be at least 1")
        self.name = name
        self.limit = limit
        self._semaphore = asyncio.Semaphore(limit)
        self.in_use = 0
        self.peak = 0

    async def acquire(self) -> None:
        await self._semaphore.acquire()
        self.in_use += 1
        self.peak = max(self.peak, self.in_use)

    def release(self) -> None:
        if self.in_use <= 0:
            raise RuntimeError(f"{self.name}: release without acquire")
        self.in_use -= 1
        self._semaphore.release()

    @asynccontextmanager
    async def slot(self) -> AsyncIterator[None]:
        await self.acquire()
        try:
            yield
        finally:
            self.release()

    def __repr__(self) -> str:
        return f"<ConcurrencyLimit {self.name} {self.in_use}/{self.limit} peak={self.peak}>"


# =============================================================================
# Attempt runners
# =============================================================================


@dataclass
class AttemptContext:
    """What a runner needs to perform one attempt."""

    job_id: str
    execution_id: str
    attempt: int
    target: TargetConfig
    credential_id: str
    scrape_type: ScrapeType
    scrape_subtype: ScrapeSubType | None
    log: JobLogger


class AttemptRunner(Protocol):
    """Performs one attempt; returns the script result or raises on failure."""

    async def __call__(self, ctx: AttemptContext) -> ScriptResult: ...


class ScriptAttemptRunner:
    """Runs the portal script for the scrape type in a worker process."""

    def __init__(self, settings: Settings, scripts: ScriptsConfig | None = None) -> None:
        self.settings = settings
        self.scripts = scripts or get_config().scripts

    async def __call__(self, ctx: AttemptContext) -> ScriptResult:
        script = resolve_script(
            ctx.scrape_type, ctx.scrape_subtype, self.scripts, self.settings.scripts_dir
        )
        worker = WorkerProcess(
            build_command(self.settings, script),
            env=build_worker_env(ctx.target, ctx.credential_id),
            timeout=self.settings.script_timeout_seconds,
            grace_period=self.settings.kill_grace_seconds,
        )
        outcome = await worker.run()

        if outcome.state == WorkerState.TIMED_OUT:
            raise TimeoutError(
                f"Script timed out after {self.settings.script_timeout_seconds:.0f}s"
            )

        try:
            result = parse_script_output(outcome.stdout)
        except ScriptOutputError:
            if outcome.returncode:
                detail = outcome.stderr_tail.strip()
                raise RuntimeError(
                    detail or f"Script exited with code {outcome.returncode}"
                ) from None
            raise

        if not result.success:
            raise RuntimeError(result.error or outcome.stderr_tail.strip() or "Script reported failure")
        return result


# =============================================================================
# Status policy
# =============================================================================


def resolve_job_status(
    target_statuses: Iterable[JobStatus],
    cancel_requested: bool = False,
) -> tuple[JobStatus, bool]:
    """Job status and partial-failure flag derived from its targets' statuses."""
    statuses = list(target_statuses)
    if any(s in ACTIVE_STATUSES for s in statuses):
        return JobStatus.RUNNING, False
    if cancel_requested:
        return JobStatus.CANCELED, False

    completed = sum(1 for s in statuses if s == JobStatus.COMPLETED)
    if completed == 0:
        return JobStatus.FAILED, False
    return JobStatus.COMPLETED, completed < len(statuses)


# =============================================================================
# Engine
# =============================================================================


class ExecutionEngine:
    """Runs scrape jobs under the configured concurrency ceilings."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings,
        log_stream: LogStream,
        tracker: PerformanceTracker | None = None,
        runner: AttemptRunner | None = None,
        retry_policy: RetryPolicy | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.session_factory = session_factory
        self.settings = settings
        self.log_stream = log_stream
        self.tracker = tracker
        self.runner: AttemptRunner = runner or ScriptAttemptRunner(settings)
        self.retry_policy = retry_policy or RetryPolicy.from_settings(settings)
        self.sleep = sleep

        self.job_slots = ConcurrencyLimit("jobs", settings.max_concurrent_jobs)
        self.process_slots = ConcurrencyLimit("processes", settings.max_worker_processes)
        self.target_limits: dict[str, ConcurrencyLimit] = {}
        self.worker_id = settings.instance_id

        self._tasks: dict[str, asyncio.Task[None]] = {}
        # Jobs this process finalized while their task is still unwinding
        self._finished_here: set[str] = set()
        self._job_locks: dict[str, asyncio.Lock] = {}
        self._poller: asyncio.Task[None] | None = None
        self._shutting_down = False

    # -------------------------------------------------------------------------
    # Public operations
    # -------------------------------------------------------------------------

    async def submit(self, request: ScrapeJobRequest) -> str:
        """Persist a new job and start it in the background. Returns the job id.

        Raises:
            JobSubmissionError: unknown targets, or a pending scrape without subtype
        """
        if (
            request.scrape_type == ScrapeType.PENDING_MANIFESTATIONS
            and request.scrape_subtype is None
        ):
            raise JobSubmissionError("Pending manifestation scrapes require a subtype")

        async with self.session_factory() as db:
            result = await db.execute(
                select(TargetConfig).where(TargetConfig.id.in_(request.target_config_ids))
            )
            targets = list(result.scalars().all())
            missing = set(request.target_config_ids) - {t.id for t in targets}
            if missing:
                raise JobSubmissionError(f"Unknown target configs: {', '.join(sorted(missing))}")

            ordered = tribunal_sorter.order(targets)
            job = ScrapeJob(
                status=JobStatus.PENDING,
                scrape_type=request.scrape_type,
                scrape_subtype=request.scrape_subtype,
                credential_id=request.credential_id,
                definition_id=request.definition_id,
            )
            job.targets = [
                ScrapeJobTarget(target_config_id=t.id, position=i, status=JobStatus.PENDING)
                for i, t in enumerate(ordered)
            ]
            db.add(job)
            await db.commit()
            job_id = job.id

        self.log_stream.job_logger(job_id).info(
            f"Job created with {len(ordered)} targets",
            order=tribunal_sorter.describe_order(ordered),
            scrape_type=request.scrape_type.value,
        )
        logger.bind(job_id=job_id, targets=len(ordered)).info("job_submitted")
        self._start(job_id)
        return job_id

    async def cancel(self, job_id: str) -> JobStatus:
        """Cancel a job. Idempotent: a terminal job's status is returned unchanged.

        Raises:
            JobNotFoundError: no such job
        """
        async with self.session_factory() as db:
            job = await db.get(ScrapeJob, job_id)
            if job is None:
                raise JobNotFoundError(job_id)
            if job.status in TERMINAL_STATUSES:
                return job.status
            job.cancel_requested = True
            await db.commit()

        self.log_stream.job_logger(job_id).warn("Cancellation requested")
        task = self._tasks.get(job_id)
        if task is not None and not task.done():
            task.cancel()
            await asyncio.wait({task}, timeout=self.settings.kill_grace_seconds + 10)

        await self._settle_leftover_targets(job_id, JobStatus.CANCELED)
        status = await self._recompute_job_status(job_id)
        logger.bind(job_id=job_id, status=status.value).info("job_canceled")
        return status

    async def retry_execution(self, execution_id: str) -> tuple[str, str]:
        """Re-run the target of a failed execution. Returns (job_id, job_target_id).

        Raises:
            ExecutionNotFoundError: no such execution
            ExecutionNotRetryableError: execution not failed, target already
                re-run, or the job still running
        """
        async with self.session_factory() as db:
            execution = await db.get(ScrapeExecution, execution_id)
            if execution is None:
                raise ExecutionNotFoundError(execution_id)
            if execution.status != JobStatus.FAILED:
                raise ExecutionNotRetryableError("Only failed executions can be retried")

            job = await db.get(ScrapeJob, execution.job_id)
            job_target = await db.get(ScrapeJobTarget, execution.job_target_id)
            if job is None or job_target is None:
                raise ExecutionNotFoundError(execution_id)
            if job.status not in TERMINAL_STATUSES or job.id in self._tasks:
                raise ExecutionNotRetryableError("Job is still running")
            if job_target.status != JobStatus.FAILED:
                raise ExecutionNotRetryableError("Target is not in a failed state")

            job_target.status = JobStatus.PENDING
            job.status = JobStatus.PENDING
            job.completed_at = None
            job.partial_failure = False
            job.cancel_requested = False
            await db.commit()
            job_id, job_target_id = job.id, job_target.id

        self.log_stream.job_logger(job_id).info(
            "Retry requested for a failed target", execution_id=execution_id
        )
        self._start(job_id)
        return job_id, job_target_id

    async def recover_interrupted_jobs(self) -> int:
        """Fail jobs a previous run of this instance left running. Returns how many.

        Jobs owned by other instances are left to the poller's heartbeat check.
        """
        async with self.session_factory() as db:
            result = await db.execute(
                select(ScrapeJob.id).where(
                    ScrapeJob.status == JobStatus.RUNNING,
                    or_(ScrapeJob.worker_id == self.worker_id, ScrapeJob.worker_id.is_(None)),
                )
            )
            job_ids = [job_id for job_id in result.scalars().all() if job_id not in self._tasks]

        for job_id in job_ids:
            await self._fail_abandoned_job(job_id, "Job interrupted by a service restart")
        if job_ids:
            logger.bind(count=len(job_ids)).warning("interrupted_jobs_marked_failed")
        return len(job_ids)

    async def poll_once(self) -> dict[str, int]:
        """Start pending jobs this process is not running; fail stuck ones.

        A running job is stuck when neither its heartbeat nor, lacking one, its
        start time is within ``stuck_job_timeout_seconds``.
        """
        async with self.session_factory() as db:
            pending = await db.execute(
                select(ScrapeJob.id)
                .where(ScrapeJob.status == JobStatus.PENDING)
                .order_by(ScrapeJob.created_at)
            )
            pending_ids = [j for j in pending.scalars().all() if j not in self._tasks]

            last_seen = func.coalesce(ScrapeJob.heartbeat_at, ScrapeJob.started_at)
            stuck = await db.execute(
                select(ScrapeJob.id).where(
                    ScrapeJob.status == JobStatus.RUNNING,
                    last_seen < get_cutoff(seconds=self.settings.stuck_job_timeout_seconds),
                )
            )
            stuck_ids = [j for j in stuck.scalars().all() if j not in self._tasks]

        for job_id in pending_ids:
            self._start(job_id)
        for job_id in stuck_ids:
            await self._fail_abandoned_job(job_id, "Job exceeded the stuck-job timeout")

        if pending_ids or stuck_ids:
            logger.bind(started=len(pending_ids), stuck=len(stuck_ids)).info("job_poll_completed")
        return {"started": len(pending_ids), "stuck": len(stuck_ids)}

    async def run_poller(self) -> None:
        while True:
            try:
                await self.poll_once()
            except Exception as e:
                logger.bind(error=str(e)).error("job_poll_failed")
            await asyncio.sleep(self.settings.poll_interval_seconds)

    def start_poller(self) -> None:
        if self._poller is None or self._poller.done():
            self._poller = asyncio.create_task(self.run_poller(), name="scrape-job-poller")

    async def wait(self, job_id: str, timeout: float | None = None) -> None:
        """Wait until this process has finished running a job."""
        task = self._tasks.get(job_id)
        if task is not None:
            await asyncio.wait({task}, timeout=timeout)

    def is_running(self, job_id: str) -> bool:
        return job_id in self._tasks

    @property
    def running_jobs(self) -> list[str]:
        return list(self._tasks)

    async def shutdown(self) -> None:
        """Stop the poller and all in-flight jobs. Jobs are recovered on next start."""
        self._shutting_down = True
        if self._poller is not None:
            self._poller.cancel()
        tasks = [t for t in [self._poller, *self._tasks.values()] if t is not None]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._poller = None
        logger.bind(jobs=len(tasks)).info("execution_engine_stopped")

    # -------------------------------------------------------------------------
    # Job execution
    # -------------------------------------------------------------------------

    def _start(self, job_id: str) -> None:
        if job_id in self._tasks:
            return
        task = asyncio.create_task(self._run_job(job_id), name=f"scrape-job-{job_id}")
        self._tasks[job_id] = task

        def _done(t: asyncio.Task[None]) -> None:
            if self._tasks.get(job_id) is t:
                del self._tasks[job_id]
                self._finished_here.discard(job_id)

        task.add_done_callback(_done)

    async def _run_job(self, job_id: str) -> None:
        async with self.job_slots.slot():
            if not await self._claim_job(job_id):
                return
            heartbeat = asyncio.create_task(
                self._heartbeat(job_id, asyncio.current_task()), name=f"scrape-heartbeat-{job_id}"
            )
            try:
                await self._dispatch_targets(job_id)
            finally:
                heartbeat.cancel()
                self.target_limits.pop(job_id, None)

            if not self._shutting_down:
                await self._settle_leftover_targets(job_id, JobStatus.FAILED)
                await self._recompute_job_status(job_id)

    async def _claim_job(self, job_id: str) -> bool:
        """Move the job from pending to running; False if it is no longer pending."""
        async with self.session_factory() as db:
            result = await db.execute(
                update(ScrapeJob)
                .where(
                    ScrapeJob.id == job_id,
                    ScrapeJob.status == JobStatus.PENDING,
                    ScrapeJob.cancel_requested.is_(False),
                )
                .values(
                    status=JobStatus.RUNNING,
                    started_at=func.coalesce(ScrapeJob.started_at, utc_now()),
                    worker_id=self.worker_id,
                    heartbeat_at=utc_now(),
                )
            )
            await db.commit()
        if result.rowcount == 0:
            logger.bind(job_id=job_id).debug("job_claim_skipped")
            return False
        self.log_stream.retain(job_id)
        self.log_stream.job_logger(job_id).info("Job started", instance=self.worker_id)
        return True

    async def _heartbeat(self, job_id: str, job_task: asyncio.Task[Any] | None) -> None:
        """Refresh the job's heartbeat while it runs here.

        Stops the local run once the job was finished or canceled by another
        instance, since the row no longer matches.
        """
        while True:
            await asyncio.sleep(self.settings.heartbeat_interval_seconds)
            try:
                async with self.session_factory() as db:
                    result = await db.execute(
                        update(ScrapeJob)
                        .where(
                            ScrapeJob.id == job_id,
                            ScrapeJob.worker_id == self.worker_id,
                            ScrapeJob.status == JobStatus.RUNNING,
                            ScrapeJob.cancel_requested.is_(False),
                        )
                        .values(heartbeat_at=utc_now())
                    )
                    await db.commit()
            except Exception as e:
                logger.bind(job_id=job_id, error=str(e)).warning("job_heartbeat_failed")
                continue

            if result.rowcount == 0:
                if job_id in self._finished_here:
                    return
                logger.bind(job_id=job_id, instance=self.worker_id).warning(
                    "job_released_elsewhere"
                )
                if job_task is not None:
                    job_task.cancel()
                return

    async def _dispatch_targets(self, job_id: str) -> None:
        async with self.session_factory() as db:
            job = await db.get(ScrapeJob, job_id)
            result = await db.execute(
                select(ScrapeJobTarget, TargetConfig)
                .join(TargetConfig, TargetConfig.id == ScrapeJobTarget.target_config_id)
                .where(
                    ScrapeJobTarget.job_id == job_id,
                    ScrapeJobTarget.status == JobStatus.PENDING,
                )
                .order_by(ScrapeJobTarget.position)
            )
            pending = list(result.tuples().all())

        if job is None:
            return

        per_job = ConcurrencyLimit(f"targets:{job_id}", self.settings.max_concurrent_targets)
        self.target_limits[job_id] = per_job
        tasks: list[asyncio.Task[None]] = []
        try:
            for job_target, target in pending:
                await per_job.acquire()
                tasks.append(
                    asyncio.create_task(self._run_target(job, job_target, target, per_job))
                )
            results = await asyncio.gather(*tasks, return_exceptions=True)
        except asyncio.CancelledError:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        for (job_target, target), outcome in zip(pending, results, strict=False):
            if isinstance(outcome, Exception):
                logger.bind(job_id=job_id, target=target.label, error=str(outcome)).error(
                    "target_task_crashed"
                )

    async def _run_target(
        self,
        job: ScrapeJob,
        job_target: ScrapeJobTarget,
        target: TargetConfig,
        per_job: ConcurrencyLimit,
    ) -> None:
        """Attempt loop for one target. Entered holding one per-job slot."""
        log = self.log_stream.job_logger(job.id)
        held = True
        tries = 0
        attempt = job_target.attempts
        try:
            while True:
                tries += 1
                attempt += 1
                execution_id = await self._start_execution(job.id, job_target.id, target, attempt)
                if execution_id is None:
                    break
                log.info(f"{target.label}: attempt {attempt} started", execution_id=execution_id)

                ctx = AttemptContext(
                    job_id=job.id,
                    execution_id=execution_id,
                    attempt=attempt,
                    target=target,
                    credential_id=job.credential_id,
                    scrape_type=job.scrape_type,
                    scrape_subtype=job.scrape_subtype,
                    log=log,
                )
                try:
                    async with self.process_slots.slot():
                        result = await self.runner(ctx)
                except asyncio.CancelledError:
                    if not self._shutting_down:
                        await self._record_canceled(execution_id, job_target.id, attempt - 1)
                        log.warn(f"{target.label}: canceled")
                    raise
                except Exception as e:
                    error = classify(
                        e,
                        context={"target": target.label, "attempt": attempt, "tries": tries},
                    )
                    retry = self.retry_policy.should_retry(error, tries)
                    if not await self._record_failure(
                        execution_id, job_target.id, target, error, final=not retry
                    ):
                        break
                    if not retry:
                        log.error(
                            f"{target.label}: failed ({error.type.value}) after {tries} attempt(s)",
                            error=error.technical_message,
                            user_message=error.user_message,
                        )
                        break

                    delay = self.retry_policy.delay_for(tries - 1)
                    log.warn(
                        f"{target.label}: attempt {attempt} failed ({error.type.value}), "
                        f"retrying in {delay:.0f}s",
                        error=error.technical_message,
                    )
                    per_job.release()
                    held = False
                    await self.sleep(delay)
                    await per_job.acquire()
                    held = True
                    continue

                if not await self._record_success(execution_id, job, job_target.id, target, result):
                    break
                log.success(f"{target.label}: {result.count} records", execution_id=execution_id)
                break
        finally:
            if held:
                per_job.release()

    # -------------------------------------------------------------------------
    # Bookkeeping
    # -------------------------------------------------------------------------

    async def _job_is_open(self, db: AsyncSession, job_id: str) -> bool:
        """False once the job is terminal, e.g. failed or canceled by another instance."""
        status = await db.scalar(select(ScrapeJob.status).where(ScrapeJob.id == job_id))
        if status is None or status in TERMINAL_STATUSES:
            logger.bind(job_id=job_id, status=getattr(status, "value", None)).warning(
                "job_already_finished"
            )
            return False
        return True

    async def _start_execution(
        self, job_id: str, job_target_id: str, target: TargetConfig, attempt: int
    ) -> str | None:
        """Open a new execution row; None when the job is already finished."""
        async with self.session_factory() as db:
            if not await self._job_is_open(db, job_id):
                return None
            execution = ScrapeExecution(
                job_id=job_id,
                job_target_id=job_target_id,
                target_config_id=target.id,
                attempt=attempt,
                status=JobStatus.RUNNING,
                started_at=utc_now(),
            )
            db.add(execution)
            await db.execute(
                update(ScrapeJobTarget)
                .where(ScrapeJobTarget.id == job_target_id)
                .values(status=JobStatus.RUNNING, attempts=attempt)
            )
            await db.commit()
            return execution.id

    async def _record_success(
        self,
        execution_id: str,
        job: ScrapeJob,
        job_target_id: str,
        target: TargetConfig,
        result: ScriptResult,
    ) -> bool:
        payload = compress_payload(
            {"records": result.records, "count": result.count, "timestamp": result.timestamp}
        )
        async with self.session_factory() as db:
            if not await self._job_is_open(db, job.id):
                return False
            execution = await db.get(ScrapeExecution, execution_id)
            execution.status = JobStatus.COMPLETED
            execution.completed_at = utc_now()
            execution.result_count = result.count
            execution.result_payload = payload
            await db.execute(
                update(ScrapeJobTarget)
                .where(ScrapeJobTarget.id == job_target_id)
                .values(status=JobStatus.COMPLETED)
            )
            await db.commit()

        try:
            async with self.session_factory() as db:
                await persist_records(db, execution_id, job.scrape_type, result.records)
                await db.commit()
        except Exception as e:
            # The compressed payload remains the source for this execution
            logger.bind(execution_id=execution_id, error=str(e)).warning("record_persist_failed")

        await self._track(execution, target)
        await self._recompute_job_status(job.id)
        return True

    async def _record_failure(
        self,
        execution_id: str,
        job_target_id: str,
        target: TargetConfig,
        error: ClassifiedError,
        final: bool,
    ) -> bool:
        async with self.session_factory() as db:
            execution = await db.get(ScrapeExecution, execution_id)
            job_id = execution.job_id
            if not await self._job_is_open(db, job_id):
                return False
            execution.status = JobStatus.FAILED
            execution.completed_at = utc_now()
            execution.error_payload = error.to_dict()
            # While a retry is pending the target stays pending
            await db.execute(
                update(ScrapeJobTarget)
                .where(ScrapeJobTarget.id == job_target_id)
                .values(status=JobStatus.FAILED if final else JobStatus.PENDING)
            )
            await db.commit()

        logger.bind(
            job_id=job_id,
            target=target.label,
            error_type=error.type.value,
            retryable=error.retryable,
            error=error.technical_message,
        ).warning("target_attempt_failed")
        await self._track(execution, target)
        await self._recompute_job_status(job_id)
        return True

    async def _record_canceled(self, execution_id: str, job_target_id: str, attempts: int) -> None:
        """Canceled attempts do not count against the target's attempts."""
        async with self.session_factory() as db:
            execution = await db.get(ScrapeExecution, execution_id)
            if execution is None or not await self._job_is_open(db, execution.job_id):
                return
            execution.status = JobStatus.CANCELED
            execution.completed_at = utc_now()
            await db.execute(
                update(ScrapeJobTarget)
                .where(ScrapeJobTarget.id == job_target_id)
                .values(status=JobStatus.CANCELED, attempts=attempts)
            )
            await db.commit()

    async def _track(self, execution: ScrapeExecution, target: TargetConfig) -> None:
        if self.tracker is None:
            return
        alerts = await self.tracker.record(execution, target_label=target.label)
        for alert in alerts:
            self.log_stream.job_logger(execution.job_id).warn(
                f"Performance alert for {target.label}: {alert.message}",
                alert_type=alert.type.value,
            )

    async def _settle_leftover_targets(self, job_id: str, status: JobStatus) -> None:
        """Move targets that never reached a terminal state to ``status``."""
        async with self.session_factory() as db:
            await db.execute(
                update(ScrapeJobTarget)
                .where(
                    ScrapeJobTarget.job_id == job_id,
                    ScrapeJobTarget.status.in_(ACTIVE_STATUSES),
                )
                .values(status=status)
            )
            await db.execute(
                update(ScrapeExecution)
                .where(
                    ScrapeExecution.job_id == job_id,
                    ScrapeExecution.status == JobStatus.RUNNING,
                )
                .values(status=status, completed_at=utc_now())
            )
            await db.commit()

    async def _fail_abandoned_job(self, job_id: str, reason: str) -> None:
        error = ClassifiedError(
            type=ErrorType.UNKNOWN,
            retryable=False,
            user_message="The job was interrupted before it finished.",
            technical_message=reason,
        )
        async with self.session_factory() as db:
            await db.execute(
                update(ScrapeExecution)
                .where(
                    ScrapeExecution.job_id == job_id,
                    ScrapeExecution.status == JobStatus.RUNNING,
                )
                .values(
                    status=JobStatus.FAILED,
                    completed_at=utc_now(),
                    error_payload=error.to_dict(),
                )
            )
            await db.commit()
        await self._settle_leftover_targets(job_id, JobStatus.FAILED)
        await self._recompute_job_status(job_id)
        self.log_stream.job_logger(job_id).error(reason)
        self.log_stream.release(job_id)

    def _job_lock(self, job_id: str) -> asyncio.Lock:
        lock = self._job_locks.get(job_id)
        if lock is None:
            lock = self._job_locks[job_id] = asyncio.Lock()
        return lock

    async def _recompute_job_status(self, job_id: str) -> JobStatus:
        """Derive the job status from its targets; finalize the job when all are terminal."""
        async with self._job_lock(job_id), self.session_factory() as db:
            job = await db.get(ScrapeJob, job_id)
            if job is None:
                raise JobNotFoundError(job_id)
            if job.status in TERMINAL_STATUSES:
                return job.status

            result = await db.execute(
                select(ScrapeJobTarget.status).where(ScrapeJobTarget.job_id == job_id)
            )
            status, partial = resolve_job_status(result.scalars().all(), job.cancel_requested)
            if status == JobStatus.RUNNING:
                if job.status == JobStatus.PENDING and job_id not in self._tasks:
                    # Canceled while queued: nothing to finalize yet
                    return job.status
                job.status = JobStatus.RUNNING
                await db.commit()
                return status

            job.status = status
            job.partial_failure = partial
            job.completed_at = utc_now()
            job.logs = [e.to_dict() for e in self.log_stream.tail(job_id, LOG_SNAPSHOT_SIZE)]
            if job_id in self._tasks:
                self._finished_here.add(job_id)
            await db.commit()

        self._job_locks.pop(job_id, None)
        level = "WARNING" if partial or status != JobStatus.COMPLETED else "INFO"
        logger.bind(job_id=job_id, status=status.value, partial_failure=partial).log(
            level, "job_finished"
        )
        message = f"Job finished: {status.value}"
        if partial:
            message += " (some targets failed)"
        log = self.log_stream.job_logger(job_id)
        if status == JobStatus.COMPLETED and not partial:
            log.success(message)
        elif status == JobStatus.COMPLETED:
            log.warn(message)
        else:
            log.error(message)
        self.log_stream.release(job_id)
        return status


# =============================================================================
# Status query
# =============================================================================


def _entry_response(data: dict[str, Any]) -> LogEntryResponse:
    return LogEntryResponse(
        timestamp=data["timestamp"],
        level=data["level"],
        message=data["message"],
        context=data.get("context"),
    )


async def get_job_status(
    db: AsyncSession,
    job_id: str,
    log_stream: LogStream | None = None,
    log_lines: int = 10,
) -> JobStatusResponse:
    """Job, per-target statuses, counts and the last log lines in one response.

    Raises:
        JobNotFoundError: no such job
    """
    job = await db.get(ScrapeJob, job_id)
    if job is None:
        raise JobNotFoundError(job_id)

    result = await db.execute(
        select(ScrapeJobTarget, TargetConfig)
        .join(TargetConfig, TargetConfig.id == ScrapeJobTarget.target_config_id)
        .where(ScrapeJobTarget.job_id == job_id)
        .order_by(ScrapeJobTarget.position)
    )
    rows = list(result.tuples().all())

    executions_result = await db.execute(
        select(ScrapeExecution)
        .where(ScrapeExecution.job_id == job_id)
        .order_by(ScrapeExecution.attempt)
    )
    latest: dict[str, ScrapeExecution] = {}
    for execution in executions_result.scalars().all():
        latest[execution.job_target_id] = execution

    targets: list[TargetStatus] = []
    for job_target, target in rows:
        execution = latest.get(job_target.id)
        targets.append(
            TargetStatus(
                job_target_id=job_target.id,
                target_config_id=target.id,
                label=target.label,
                status=job_target.status,
                attempts=job_target.attempts,
                result_count=execution.result_count
                if execution and execution.status == JobStatus.COMPLETED
                else 0,
                last_error={
                    k: v
                    for k, v in (execution.error_payload or {}).items()
                    if k != "technical_message"
                }
                if execution and execution.error_payload
                else None,
            )
        )

    def _count(status: JobStatus) -> int:
        return sum(1 for t in targets if t.status == status)

    entries: list[LogEntry] = log_stream.tail(job_id, log_lines) if log_stream else []
    if entries:
        logs = [_entry_response(sanitize_entry(e)) for e in entries]
    else:
        snapshot = (job.logs or [])[-log_lines:] if log_lines > 0 else []
        logs = [_entry_response(sanitize_entry(LogEntry.from_dict(e))) for e in snapshot]

    duration = None
    if job.started_at:
        duration = ((job.completed_at or utc_now()) - job.started_at).total_seconds()

    return JobStatusResponse(
        job_id=job.id,
        status=job.status,
        scrape_type=job.scrape_type,
        scrape_subtype=job.scrape_subtype,
        partial_failure=job.partial_failure,
        created_at=job.created_at,
        started_at=job.started_at,
        completed_at=job.completed_at,
        duration_seconds=duration,
        counts=JobCounts(
            total=len(targets),
            pending=_count(JobStatus.PENDING),
            running=_count(JobStatus.RUNNING),
            completed=_count(JobStatus.COMPLETED),
            failed=_count(JobStatus.FAILED),
            canceled=_count(JobStatus.CANCELED),
            result_count=sum(t.result_count for t in targets),
        ),
        targets=targets,
        logs=logs,
    )
