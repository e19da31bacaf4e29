"""Recurring schedule API endpoints."""

from fastapi import APIRouter, HTTPException, Query, Response, status

from scrape_orchestrator.core.cron import (
    CronValidationError,
    describe_cron,
    frequency_to_cron,
    get_next_run_times,
)
from scrape_orchestrator.core.datetime_utils import normalize_timezone
from scrape_orchestrator.dependencies import AppSettings, DBSession, Scheduler
from scrape_orchestrator.schemas.schedule import (
    ScheduleCreate,
    SchedulePreviewResponse,
    ScheduleResponse,
    ScheduleUpdate,
)
from scrape_orchestrator.services import schedules
from scrape_orchestrator.services.schedules import ScheduleNotFoundError, ScheduleValidationError

router = APIRouter()


def _not_found(definition_id: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail=f"Schedule {definition_id} not found",
    )


def _invalid(error: Exception) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        detail=str(error),
    )


@router.get("/schedules/preview", response_model=SchedulePreviewResponse)
async def preview_schedule(
    settings: AppSettings,
    frequency: str = Query(..., min_length=1, description="Structured frequency or cron"),
    timezone: str | None = Query(default=None),
    count: int = Query(default=5, ge=1, le=20),
) -> SchedulePreviewResponse:
    """
    Preview the next fire times of a frequency without saving it.
    """
    tz = normalize_timezone(timezone, settings.default_timezone)
    try:
        cron_expression = frequency_to_cron(frequency)
        next_runs = get_next_run_times(cron_expression, tz, count=count)
    except CronValidationError as e:
        raise _invalid(e) from e

    return SchedulePreviewResponse(
        cron_expression=cron_expression,
        timezone=tz,
        description=describe_cron(cron_expression),
        next_runs=next_runs,
    )


@router.get("/schedules", response_model=list[ScheduleResponse])
async def list_schedules(
    db: DBSession,
    credential_id: str | None = Query(default=None),
    active: bool | None = Query(default=None),
) -> list[ScheduleResponse]:
    definitions = await schedules.list_definitions(db, credential_id=credential_id, active=active)
    return [schedules.to_response(d) for d in definitions]


@router.post("/schedules", response_model=ScheduleResponse, status_code=status.HTTP_201_CREATED)
async def create_schedule(
    data: ScheduleCreate,
    db: DBSession,
    scheduler: Scheduler,
    settings: AppSettings,
) -> ScheduleResponse:
    """
    Create a recurring scrape.

    Unsupported timezones fall back to the default timezone.
    """
    try:
        definition = await schedules.create_definition(db, data, scheduler, settings)
    except ScheduleValidationError as e:
        raise _invalid(e) from e
    return schedules.to_response(definition)


@router.get("/schedules/{definition_id}", response_model=ScheduleResponse)
async def get_schedule(definition_id: str, db: DBSession) -> ScheduleResponse:
    try:
        definition = await schedules.get_definition(db, definition_id)
    except ScheduleNotFoundError as e:
        raise _not_found(definition_id) from e
    return schedules.to_response(definition)


@router.patch("/schedules/{definition_id}", response_model=ScheduleResponse)
async def update_schedule(
    definition_id: str,
    data: ScheduleUpdate,
    db: DBSession,
    scheduler: Scheduler,
    settings: AppSettings,
) -> ScheduleResponse:
    try:
        definition = await schedules.update_definition(
            db, definition_id, data, scheduler, settings
        )
    except ScheduleNotFoundError as e:
        raise _not_found(definition_id) from e
    except ScheduleValidationError as e:
        raise _invalid(e) from e
    return schedules.to_response(definition)


@router.post("/schedules/{definition_id}/toggle", response_model=ScheduleResponse)
async def toggle_schedule(
    definition_id: str,
    db: DBSession,
    scheduler: Scheduler,
) -> ScheduleResponse:
    """Pause an active schedule or resume a paused one. Run history is kept."""
    try:
        definition = await schedules.toggle_definition(db, definition_id, scheduler)
    except ScheduleNotFoundError as e:
        raise _not_found(definition_id) from e
    except CronValidationError as e:
        raise _invalid(e) from e
    return schedules.to_response(definition)


@router.delete("/schedules/{definition_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_schedule(
    definition_id: str,
    db: DBSession,
    scheduler: Scheduler,
) -> Response:
    try:
        await schedules.delete_definition(db, definition_id, scheduler)
    except ScheduleNotFoundError as e:
        raise _not_found(definition_id) from e
    return Response(status_code=status.HTTP_204_NO_CONTENT)
