"""
Schedule management: CRUD for JobDefinitions.

Every write validates the definition first and then brings the scheduler's
timer registry in line with the stored ``active`` flag. The scheduler is
optional so definitions can still be managed while timers are disabled.
"""

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from scrape_orchestrator.config import Settings, get_settings
from scrape_orchestrator.core.cron import (
    CronValidationError,
    cron_to_frequency,
    describe_cron,
    frequency_to_cron,
    get_next_run_time,
    min_interval_minutes,
)
from scrape_orchestrator.core.datetime_utils import normalize_timezone, to_naive_utc
from scrape_orchestrator.core.logging import get_logger
from scrape_orchestrator.core.scheduler import ScheduleNotFoundError, ScrapeScheduler
from scrape_orchestrator.models.job import ScrapeType
from scrape_orchestrator.models.schedule import JobDefinition
from scrape_orchestrator.models.target import TargetConfig
from scrape_orchestrator.schemas.schedule import ScheduleCreate, ScheduleResponse, ScheduleUpdate

logger = get_logger(__name__)

__all__ = [
    "ScheduleNotFoundError",
    "ScheduleValidationError",
    "create_definition",
    "delete_definition",
    "get_definition",
    "list_definitions",
    "to_response",
    "toggle_definition",
    "update_definition",
]


class ScheduleValidationError(ValueError):
    pass


def _resolve_cron(frequency: str, timezone: str, settings: Settings) -> str:
    try:
        cron_expression = frequency_to_cron(frequency)
    except CronValidationError as e:
        raise ScheduleValidationError(str(e)) from e

    if settings.min_interval_minutes > 0:
        interval = min_interval_minutes(cron_expression, timezone)
        if interval is not None and interval < settings.min_interval_minutes:
            raise ScheduleValidationError(
                f"Schedule fires every {interval:.0f} minutes; "
                f"the minimum interval is {settings.min_interval_minutes} minutes"
            )
    return cron_expression


async def _check_targets(db: AsyncSession, target_config_ids: list[str]) -> None:
    result = await db.execute(
        select(TargetConfig.id).where(TargetConfig.id.in_(target_config_ids))
    )
    missing = set(target_config_ids) - set(result.scalars().all())
    if missing:
        raise ScheduleValidationError(f"Unknown target configs: {', '.join(sorted(missing))}")


async def _check_credential_quota(
    db: AsyncSession,
    credential_id: str,
    settings: Settings,
    exclude_id: str | None = None,
) -> None:
    if settings.max_schedules_per_credential <= 0:
        return
    query = select(func.count(JobDefinition.id)).where(
        JobDefinition.credential_id == credential_id
    )
    if exclude_id:
        query = query.where(JobDefinition.id != exclude_id)
    count = (await db.execute(query)).scalar() or 0
    if count >= settings.max_schedules_per_credential:
        raise ScheduleValidationError(
            f"Credential already has {count} schedules "
            f"(limit: {settings.max_schedules_per_credential})"
        )


async def _sync_timer(
    db: AsyncSession, definition: JobDefinition, scheduler: ScrapeScheduler | None
) -> None:
    """Register or drop the definition's timer to match ``active``."""
    if not definition.active:
        definition.next_run_at = None
        await db.commit()
        if scheduler is not None:
            await scheduler.unregister(definition.id)
        return

    if scheduler is not None:
        definition.next_run_at = await scheduler.register(definition)
    else:
        next_run = get_next_run_time(definition.cron_expression, definition.timezone)
        definition.next_run_at = to_naive_utc(next_run) if next_run else None
    await db.commit()


async def create_definition(
    db: AsyncSession,
    data: ScheduleCreate,
    scheduler: ScrapeScheduler | None = None,
    settings: Settings | None = None,
) -> JobDefinition:
    """Validate and store a new definition, then start its timer if active.

    Raises:
        ScheduleValidationError: bad frequency, interval, quota or targets
    """
    settings = settings or get_settings()
    timezone = normalize_timezone(data.timezone, settings.default_timezone)
    if data.timezone and timezone != data.timezone:
        logger.bind(timezone=data.timezone, fallback=timezone).warning(
            "schedule_timezone_replaced"
        )

    cron_expression = _resolve_cron(data.frequency, timezone, settings)
    await _check_targets(db, data.target_config_ids)
    await _check_credential_quota(db, data.credential_id, settings)

    definition = JobDefinition(
        name=data.name,
        cron_expression=cron_expression,
        timezone=timezone,
        target_config_ids=data.target_config_ids,
        scrape_type=data.scrape_type,
        scrape_subtype=data.scrape_subtype,
        credential_id=data.credential_id,
        active=data.active,
        run_count=0,
    )
    db.add(definition)
    await db.commit()

    await _sync_timer(db, definition, scheduler)
    logger.bind(
        definition_id=definition.id,
        cron=cron_expression,
        timezone=timezone,
        active=definition.active,
    ).info("schedule_created")
    return definition


async def get_definition(db: AsyncSession, definition_id: str) -> JobDefinition:
    definition = await db.get(JobDefinition, definition_id)
    if definition is None:
        raise ScheduleNotFoundError(definition_id)
    return definition


async def list_definitions(
    db: AsyncSession,
    credential_id: str | None = None,
    active: bool | None = None,
) -> list[JobDefinition]:
    query = select(JobDefinition).order_by(JobDefinition.created_at)
    if credential_id:
        query = query.where(JobDefinition.credential_id == credential_id)
    if active is not None:
        query = query.where(JobDefinition.active.is_(active))
    result = await db.execute(query)
    return list(result.scalars().all())


async def update_definition(
    db: AsyncSession,
    definition_id: str,
    data: ScheduleUpdate,
    scheduler: ScrapeScheduler | None = None,
    settings: Settings | None = None,
) -> JobDefinition:
    """Apply a partial update and re-register the timer.

    Raises:
        ScheduleNotFoundError: no such definition
        ScheduleValidationError: the updated definition is invalid
    """
    settings = settings or get_settings()
    definition = await get_definition(db, definition_id)
    changes = data.model_dump(exclude_unset=True)

    timezone = definition.timezone
    if "timezone" in changes:
        timezone = normalize_timezone(changes["timezone"], settings.default_timezone)

    if "frequency" in changes or "timezone" in changes:
        frequency = changes.get("frequency") or definition.cron_expression
        definition.cron_expression = _resolve_cron(frequency, timezone, settings)
        definition.timezone = timezone

    if changes.get("target_config_ids"):
        await _check_targets(db, changes["target_config_ids"])
        definition.target_config_ids = list(dict.fromkeys(changes["target_config_ids"]))

    if changes.get("credential_id") and changes["credential_id"] != definition.credential_id:
        await _check_credential_quota(db, changes["credential_id"], settings, exclude_id=definition.id)
        definition.credential_id = changes["credential_id"]

    for field in ("name", "scrape_type", "active"):
        if changes.get(field) is not None:
            setattr(definition, field, changes[field])
    if "scrape_subtype" in changes:
        definition.scrape_subtype = changes["scrape_subtype"]

    if (
        definition.scrape_type == ScrapeType.PENDING_MANIFESTATIONS
        and definition.scrape_subtype is None
    ):
        raise ScheduleValidationError(
            "scrape_subtype is required for pending manifestation scrapes"
        )

    await db.commit()
    await _sync_timer(db, definition, scheduler)
    logger.bind(definition_id=definition.id, fields=sorted(changes)).info("schedule_updated")
    return definition


async def toggle_definition(
    db: AsyncSession,
    definition_id: str,
    scheduler: ScrapeScheduler | None = None,
) -> JobDefinition:
    """Pause an active definition or resume a paused one. History is kept."""
    definition = await get_definition(db, definition_id)
    if scheduler is None:
        definition.active = not definition.active
        await db.commit()
        await _sync_timer(db, definition, None)
        return definition

    if definition.active:
        await scheduler.pause(definition_id)
    else:
        await scheduler.resume(definition_id)
    await db.refresh(definition)
    return definition


async def delete_definition(
    db: AsyncSession,
    definition_id: str,
    scheduler: ScrapeScheduler | None = None,
) -> None:
    definition = await get_definition(db, definition_id)
    if scheduler is not None:
        await scheduler.unregister(definition_id)
    await db.delete(definition)
    await db.commit()
    logger.bind(definition_id=definition_id).info("schedule_deleted")


def to_response(definition: JobDefinition) -> ScheduleResponse:
    return ScheduleResponse(
        id=definition.id,
        name=definition.name,
        cron_expression=definition.cron_expression,
        frequency=cron_to_frequency(definition.cron_expression),
        description=describe_cron(definition.cron_expression),
        timezone=definition.timezone,
        target_config_ids=list(definition.target_config_ids or []),
        scrape_type=definition.scrape_type,
        scrape_subtype=definition.scrape_subtype,
        credential_id=definition.credential_id,
        active=definition.active,
        last_run_at=definition.last_run_at,
        next_run_at=definition.next_run_at,
        run_count=definition.run_count or 0,
        last_job_id=definition.last_job_id,
        created_at=definition.created_at,
        updated_at=definition.updated_at,
    )
