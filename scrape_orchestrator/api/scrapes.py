"""Scrape job API endpoints: submit, status, cancel and logs."""

import asyncio
import json
from collections.abc import AsyncGenerator
from contextlib import aclosing

from fastapi import APIRouter, HTTPException, Query, Request, status
from fastapi.responses import StreamingResponse

from scrape_orchestrator.core.logging import get_logger
from scrape_orchestrator.dependencies import DBSession, Engine, Logs
from scrape_orchestrator.models.job import TERMINAL_STATUSES, ScrapeJob
from scrape_orchestrator.schemas.scrape import (
    CancelResponse,
    JobStatusResponse,
    LogEntryResponse,
    ScrapeJobAccepted,
    ScrapeJobRequest,
)
from scrape_orchestrator.services.execution_engine import (
    ExecutionEngine,
    JobNotFoundError,
    JobSubmissionError,
    get_job_status,
)
from scrape_orchestrator.services.log_stream import LogEntry, LogStream, sanitize_entry

logger = get_logger(__name__)

router = APIRouter()

SSE_HEARTBEAT_SECONDS = 15.0
# Idle time after which the stream re-checks whether the job has finished
SSE_STATUS_CHECK_SECONDS = 1.0


@router.post(
    "/scrapes",
    response_model=ScrapeJobAccepted,
    status_code=status.HTTP_202_ACCEPTED,
)
async def submit_scrape(request: ScrapeJobRequest, engine: Engine) -> ScrapeJobAccepted:
    """
    Submit a scrape job.

    Returns as soon as the job is persisted; targets run in the background.
    Poll the status endpoint or follow the log stream for progress.
    """
    try:
        job_id = await engine.submit(request)
    except JobSubmissionError as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=str(e),
        ) from e
    return ScrapeJobAccepted(job_id=job_id)


@router.get("/scrapes/{job_id}/status", response_model=JobStatusResponse)
async def scrape_status(
    job_id: str,
    db: DBSession,
    log_stream: Logs,
    log_lines: int = Query(default=10, ge=0, le=200),
) -> JobStatusResponse:
    """
    Get a job's status, per-target progress and its most recent log lines.
    """
    try:
        return await get_job_status(db, job_id, log_stream, log_lines)
    except JobNotFoundError as e:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Job {job_id} not found",
        ) from e


@router.post("/scrapes/{job_id}/cancel", response_model=CancelResponse)
async def cancel_scrape(job_id: str, engine: Engine) -> CancelResponse:
    """Cancel a job. Canceling a finished job returns its final status."""
    try:
        job_status = await engine.cancel(job_id)
    except JobNotFoundError as e:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Job {job_id} not found",
        ) from e
    return CancelResponse(job_id=job_id, status=job_status)


@router.get("/scrapes/{job_id}/logs", response_model=list[LogEntryResponse])
async def scrape_logs(
    job_id: str,
    db: DBSession,
    log_stream: Logs,
    tail: int = Query(default=100, ge=1, le=1000),
) -> list[LogEntryResponse]:
    """Last ``tail`` log lines of a job, with sensitive values masked."""
    entries = log_stream.tail(job_id, tail)
    if not entries:
        job = await db.get(ScrapeJob, job_id)
        if job is None:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail=f"Job {job_id} not found",
            )
        entries = [LogEntry.from_dict(e) for e in (job.logs or [])[-tail:]]

    return [LogEntryResponse(**sanitize_entry(e)) for e in entries]


async def _job_finished(engine: ExecutionEngine, job_id: str) -> bool:
    async with engine.session_factory() as db:
        job = await db.get(ScrapeJob, job_id)
    return job is None or job.status in TERMINAL_STATUSES


async def _log_event_generator(
    request: Request,
    job_id: str,
    engine: ExecutionEngine,
    log_stream: LogStream,
) -> AsyncGenerator[str, None]:
    """Yield SSE events for a job's log entries until the job finishes."""
    logger.bind(job_id=job_id).info("log_stream_subscriber_connected")
    try:
        yield f"data: {json.dumps({'type': 'connected', 'job_id': job_id})}\n\n"

        loop = asyncio.get_running_loop()
        last_sent = loop.time()
        idle = min(SSE_STATUS_CHECK_SECONDS, SSE_HEARTBEAT_SECONDS)
        async with aclosing(log_stream.follow(job_id, heartbeat=idle)) as entries:
            async for entry in entries:
                if await request.is_disconnected():
                    break
                if entry is None:
                    if await _job_finished(engine, job_id):
                        yield f"event: end\ndata: {json.dumps({'job_id': job_id})}\n\n"
                        break
                    if loop.time() - last_sent >= SSE_HEARTBEAT_SECONDS:
                        # Keepalive comment
                        yield ": keepalive\n\n"
                        last_sent = loop.time()
                    continue
                yield f"data: {json.dumps(sanitize_entry(entry))}\n\n"
                last_sent = loop.time()
    except asyncio.CancelledError:
        pass
    finally:
        logger.bind(job_id=job_id).info("log_stream_subscriber_disconnected")


@router.get("/scrapes/{job_id}/logs/stream")
async def stream_scrape_logs(
    job_id: str,
    request: Request,
    db: DBSession,
    engine: Engine,
    log_stream: Logs,
) -> StreamingResponse:
    """Stream a job's log entries via server-sent events."""
    job = await db.get(ScrapeJob, job_id)
    if job is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Job {job_id} not found",
        )

    return StreamingResponse(
        _log_event_generator(request, job_id, engine, log_stream),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no",  # Disable nginx buffering
            "Connection": "keep-alive",
        },
    )
