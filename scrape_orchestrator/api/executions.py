"""Execution API endpoints: scraped records and manual retry."""

from fastapi import APIRouter, HTTPException, status
from sqlalchemy import select

from scrape_orchestrator.dependencies import DBSession, Engine
from scrape_orchestrator.models.job import JobStatus, ScrapeExecution, ScrapeJob
from scrape_orchestrator.schemas.scrape import (
    ExecutionRecordsResponse,
    ExecutionResponse,
    RetryResponse,
)
from scrape_orchestrator.services import data_loader
from scrape_orchestrator.services.execution_engine import (
    ExecutionNotFoundError,
    ExecutionNotRetryableError,
)

router = APIRouter()


@router.get("/scrapes/{job_id}/executions", response_model=list[ExecutionResponse])
async def list_executions(job_id: str, db: DBSession) -> list[ExecutionResponse]:
    """Every attempt of a job, oldest first."""
    job = await db.get(ScrapeJob, job_id)
    if job is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Job {job_id} not found",
        )

    result = await db.execute(
        select(ScrapeExecution)
        .where(ScrapeExecution.job_id == job_id)
        .order_by(ScrapeExecution.started_at)
    )
    return [
        ExecutionResponse(
            id=e.id,
            job_id=e.job_id,
            target_config_id=e.target_config_id,
            attempt=e.attempt,
            status=e.status,
            started_at=e.started_at,
            completed_at=e.completed_at,
            result_count=e.result_count or 0,
            error=e.error_payload,
        )
        for e in result.scalars().all()
    ]


@router.get("/executions/{execution_id}/records", response_model=ExecutionRecordsResponse)
async def execution_records(execution_id: str, db: DBSession) -> ExecutionRecordsResponse:
    """
    Records scraped by one execution.

    Read from the normalized table, falling back to the execution's
    compressed payload. An execution without data returns an empty list.
    """
    execution = await db.get(ScrapeExecution, execution_id)
    if execution is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Execution {execution_id} not found",
        )
    job = await db.get(ScrapeJob, execution.job_id)
    if job is None or execution.status != JobStatus.COMPLETED:
        return ExecutionRecordsResponse(execution_id=execution_id, count=0, records=[])

    records = await data_loader.load(db, execution_id, job.scrape_type, execution.result_payload)
    return ExecutionRecordsResponse(execution_id=execution_id, count=len(records), records=records)


@router.post(
    "/executions/{execution_id}/retry",
    response_model=RetryResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def retry_execution(execution_id: str, engine: Engine) -> RetryResponse:
    """Re-run the target of a failed execution within its finished job."""
    try:
        job_id, job_target_id = await engine.retry_execution(execution_id)
    except ExecutionNotFoundError as e:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Execution {execution_id} not found",
        ) from e
    except ExecutionNotRetryableError as e:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=str(e),
        ) from e
    return RetryResponse(job_id=job_id, job_target_id=job_target_id, status=JobStatus.PENDING)
