"""
APScheduler integration for recurring scrape definitions.

Each active JobDefinition gets one cron timer keyed by its id. When a timer
fires, the definition is turned into a scrape job on the execution engine and
its run bookkeeping (last_run_at, last_job_id, run_count, next_run_at) is
updated.

The registry (definition id -> timer handle) is owned by ScrapeScheduler and
every path that touches it (register, unregister, pause, resume, fire) holds
the same lock, so a fire can never race an unregister.

Timers run on APScheduler's AsyncScheduler with in-memory storage; the
definitions themselves are persisted in the database and re-registered on
startup.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol

from apscheduler import AsyncScheduler, ConflictPolicy
from apscheduler.datastores.memory import MemoryDataStore
from apscheduler.triggers.cron import CronTrigger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from scrape_orchestrator.config import Settings, get_settings
from scrape_orchestrator.core.cron import CronValidationError, build_trigger, get_next_run_time
from scrape_orchestrator.core.datetime_utils import is_valid_timezone, to_naive_utc, utc_now
from scrape_orchestrator.core.logging import get_logger
from scrape_orchestrator.models.schedule import JobDefinition
from scrape_orchestrator.schemas.scrape import ScrapeJobRequest

logger = get_logger(__name__)

SCHEDULE_ID_PREFIX = "definition:"


class ScheduleNotFoundError(LookupError):
    pass


class JobSubmitter(Protocol):
    async def submit(self, request: ScrapeJobRequest) -> str: ...


class TimerBackend(Protocol):
    """Something that calls ``fire_definition(definition_id)`` on a cron trigger."""

    async def start(self) -> None: ...

    async def add(self, definition_id: str, trigger: CronTrigger) -> None: ...

    async def remove(self, definition_id: str) -> None: ...

    async def stop(self) -> None: ...


@dataclass
class TimerHandle:
    definition_id: str
    cron_expression: str
    timezone: str
    registered_at: datetime = field(default_factory=utc_now)


# Scheduler whose registry receives APScheduler fires
_active_scheduler: "ScrapeScheduler | None" = None


async def fire_definition(definition_id: str) -> None:
    """APScheduler task: fire a definition on the active scheduler."""
    if _active_scheduler is None:
        logger.bind(definition_id=definition_id).warning("definition_fired_without_scheduler")
        return
    await _active_scheduler.fire(definition_id)


class APSchedulerTimerBackend:
    """Cron timers on an in-process APScheduler AsyncScheduler."""

    def __init__(self) -> None:
        self.scheduler: AsyncScheduler | None = None

    async def start(self) -> None:
        # In-memory storage: definitions are reloaded from the database on startup
        self.scheduler = AsyncScheduler(data_store=MemoryDataStore())
        # Required before calling other methods in APScheduler 4.x
        await self.scheduler.__aenter__()
        await self.scheduler.start_in_background()

    async def add(self, definition_id: str, trigger: CronTrigger) -> None:
        assert self.scheduler is not None, "timer backend not started"
        await self.scheduler.add_schedule(
            fire_definition,
            trigger,
            id=f"{SCHEDULE_ID_PREFIX}{definition_id}",
            args=[definition_id],
            conflict_policy=ConflictPolicy.replace,
        )

    async def remove(self, definition_id: str) -> None:
        if self.scheduler is None:
            return
        await self.scheduler.remove_schedule(f"{SCHEDULE_ID_PREFIX}{definition_id}")

    async def stop(self) -> None:
        if self.scheduler is not None:
            await self.scheduler.__aexit__(None, None, None)
            self.scheduler = None


class ScrapeScheduler:
    """Registry of cron timers for JobDefinitions."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        engine: JobSubmitter,
        backend: TimerBackend,
        settings: Settings | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.engine = engine
        self.backend = backend
        self.settings = settings or get_settings()
        self._timers: dict[str, TimerHandle] = {}
        self._lock = asyncio.Lock()

    @property
    def registered_ids(self) -> list[str]:
        return list(self._timers)

    def is_registered(self, definition_id: str) -> bool:
        return definition_id in self._timers

    async def register(self, definition: JobDefinition) -> datetime | None:
        """Add (or replace) the timer for a definition. Returns next_run_at (naive UTC).

        Raises:
            CronValidationError: the cron expression is invalid
        """
        async with self._lock:
            return await self._register(definition)

    async def unregister(self, definition_id: str) -> bool:
        """Stop a definition's timer. History fields are left untouched."""
        async with self._lock:
            return await self._unregister(definition_id)

    async def pause(self, definition_id: str) -> None:
        """Stop the timer and mark the definition inactive."""
        async with self._lock:
            await self._unregister(definition_id)
            async with self.session_factory() as db:
                definition = await db.get(JobDefinition, definition_id)
                if definition is None:
                    raise ScheduleNotFoundError(definition_id)
                definition.active = False
                await db.commit()
        logger.bind(definition_id=definition_id).info("schedule_paused")

    async def resume(self, definition_id: str) -> datetime | None:
        """Re-derive the timer from the persisted definition and mark it active."""
        async with self._lock:
            async with self.session_factory() as db:
                definition = await db.get(JobDefinition, definition_id)
                if definition is None:
                    raise ScheduleNotFoundError(definition_id)
                definition.active = True
                await db.commit()
            next_run = await self._register(definition)
        logger.bind(definition_id=definition_id).info("schedule_resumed")
        return next_run

    async def load_active_on_startup(self) -> int:
        """Register every active definition. Returns how many were registered.

        A definition with an invalid cron expression is skipped; one with an
        invalid timezone is registered with the default timezone. Only a
        failure to read the definitions themselves propagates.
        """
        async with self.session_factory() as db:
            result = await db.execute(select(JobDefinition).where(JobDefinition.active.is_(True)))
            definitions = list(result.scalars().all())

        registered = 0
        async with self._lock:
            for definition in definitions:
                try:
                    await self._register(definition)
                    registered += 1
                except CronValidationError as e:
                    logger.bind(
                        definition_id=definition.id,
                        cron=definition.cron_expression,
                        error=str(e),
                    ).warning("schedule_skipped_invalid_cron")
                except Exception as e:
                    logger.bind(definition_id=definition.id, error=str(e)).error(
                        "schedule_registration_failed"
                    )

        logger.bind(registered=registered, total=len(definitions)).info("schedules_loaded")
        return registered

    async def fire(self, definition_id: str) -> str | None:
        """Create a job from a definition and update its run bookkeeping.

        Returns the new job id, or None if nothing was submitted. A submit
        failure is logged; the timer stays registered.
        """
        async with self._lock:
            handle = self._timers.get(definition_id)
            if handle is None:
                logger.bind(definition_id=definition_id).debug("fire_for_unregistered_definition")
                return None

            async with self.session_factory() as db:
                definition = await db.get(JobDefinition, definition_id)
            if definition is None or not definition.active:
                logger.bind(definition_id=definition_id).warning("fire_for_inactive_definition")
                await self._unregister(definition_id)
                return None

            job_id: str | None = None
            try:
                job_id = await self.engine.submit(
                    ScrapeJobRequest(
                        credential_id=definition.credential_id,
                        target_config_ids=list(definition.target_config_ids),
                        scrape_type=definition.scrape_type,
                        scrape_subtype=definition.scrape_subtype,
                        definition_id=definition.id,
                    )
                )
            except Exception as e:
                logger.bind(definition_id=definition_id, error=str(e)).error(
                    "scheduled_job_submit_failed"
                )

            await self._update_bookkeeping(definition_id, handle, job_id)

        if job_id:
            logger.bind(definition_id=definition_id, job_id=job_id).info("scheduled_job_created")
        return job_id

    async def stop(self) -> None:
        async with self._lock:
            self._timers.clear()
        await self.backend.stop()

    def stats(self) -> dict[str, Any]:
        return {
            "registered": len(self._timers),
            "definitions": [
                {
                    "id": h.definition_id,
                    "cron": h.cron_expression,
                    "timezone": h.timezone,
                    "registered_at": h.registered_at.isoformat(),
                }
                for h in self._timers.values()
            ],
        }

    # Callers hold self._lock

    async def _register(self, definition: JobDefinition) -> datetime | None:
        timezone = definition.timezone
        if not is_valid_timezone(timezone or ""):
            logger.bind(
                definition_id=definition.id,
                timezone=timezone,
                fallback=self.settings.default_timezone,
            ).warning("schedule_invalid_timezone")
            timezone = self.settings.default_timezone

        trigger = build_trigger(definition.cron_expression, timezone)
        if definition.id in self._timers:
            await self.backend.remove(definition.id)
        await self.backend.add(definition.id, trigger)
        self._timers[definition.id] = TimerHandle(
            definition_id=definition.id,
            cron_expression=definition.cron_expression,
            timezone=timezone,
        )

        next_run = get_next_run_time(definition.cron_expression, timezone)
        next_run_naive = to_naive_utc(next_run) if next_run else None
        async with self.session_factory() as db:
            stored = await db.get(JobDefinition, definition.id)
            if stored is not None:
                stored.next_run_at = next_run_naive
                stored.timezone = timezone
                await db.commit()

        logger.bind(
            definition_id=definition.id,
            cron=definition.cron_expression,
            timezone=timezone,
            next_run_at=next_run_naive.isoformat() if next_run_naive else None,
        ).info("schedule_registered")
        return next_run_naive

    async def _unregister(self, definition_id: str) -> bool:
        handle = self._timers.pop(definition_id, None)
        if handle is None:
            return False
        try:
            await self.backend.remove(definition_id)
        except Exception as e:
            logger.bind(definition_id=definition_id, error=str(e)).warning(
                "schedule_timer_remove_failed"
            )
        logger.bind(definition_id=definition_id).info("schedule_unregistered")
        return True

    async def _update_bookkeeping(
        self, definition_id: str, handle: TimerHandle, job_id: str | None
    ) -> None:
        try:
            next_run = get_next_run_time(handle.cron_expression, handle.timezone)
        except CronValidationError:
            next_run = None

        async with self.session_factory() as db:
            definition = await db.get(JobDefinition, definition_id)
            if definition is None:
                return
            if job_id:
                definition.last_run_at = utc_now()
                definition.last_job_id = job_id
                definition.run_count = (definition.run_count or 0) + 1
            definition.next_run_at = to_naive_utc(next_run) if next_run else None
            await db.commit()


# Global scheduler instance
scheduler: ScrapeScheduler | None = None


async def start_scheduler(
    session_factory: async_sessionmaker[AsyncSession],
    engine: JobSubmitter,
    backend: TimerBackend | None = None,
) -> ScrapeScheduler | None:
    """Start timers for every active definition."""
    global scheduler, _active_scheduler

    settings = get_settings()
    if not settings.scheduler_enabled:
        logger.info("scheduler_disabled_by_config")
        return None

    backend = backend or APSchedulerTimerBackend()
    await backend.start()
    scheduler = ScrapeScheduler(session_factory, engine, backend, settings)
    _active_scheduler = scheduler
    await scheduler.load_active_on_startup()
    logger.info("scheduler_started")
    return scheduler


async def stop_scheduler() -> None:
    """Gracefully stop the scheduler."""
    global scheduler, _active_scheduler
    if scheduler:
        await scheduler.stop()
        logger.info("scheduler_stopped")
        scheduler = None
        _active_scheduler = None


def get_scheduler() -> ScrapeScheduler | None:
    return scheduler
