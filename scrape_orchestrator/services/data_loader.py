"""
Load the records of a finished execution.

Hybrid strategy:
1. The normalized per-type table (preferred)
2. The compressed result payload on the execution, when the table is empty

One source always wins entirely; rows from the table are never merged with
records from the payload. An empty result means "no data", not an error.
"""

import asyncio
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from scrape_orchestrator.core.compression import decompress_payload
from scrape_orchestrator.core.logging import get_logger
from scrape_orchestrator.models.job import JobStatus, ScrapeExecution, ScrapeJob, ScrapeType
from scrape_orchestrator.models.records import RECORD_MODELS

logger = get_logger(__name__)

LOAD_CONCURRENCY = 10


async def load_from_table(
    db: AsyncSession, execution_id: str, scrape_type: ScrapeType
) -> list[dict[str, Any]]:
    model = RECORD_MODELS[scrape_type]
    result = await db.execute(
        select(model.data).where(model.execution_id == execution_id).order_by(model.position)
    )
    return [row for row in result.scalars().all() if row is not None]


def load_from_payload(payload: str | None) -> list[dict[str, Any]]:
    """Decompress a result payload and return its record array, or []."""
    if not payload:
        return []
    try:
        data = decompress_payload(payload)
    except ValueError as e:
        logger.bind(error=str(e)).warning("result_payload_decompress_failed")
        return []

    if isinstance(data, dict):
        records = data.get("records", data.get("processos"))
        if isinstance(records, list):
            return records
    logger.warning("result_payload_without_records")
    return []


async def load(
    db: AsyncSession,
    execution_id: str,
    scrape_type: ScrapeType,
    result_payload: str | None = None,
) -> list[dict[str, Any]]:
    """Records of one execution, from the normalized table or else the payload.

    Args:
        db: Database session
        execution_id: Execution to load
        scrape_type: Scrape type, selects the normalized table
        result_payload: Payload to fall back to; read from the execution if omitted

    Returns:
        Record dicts; empty when neither source has data
    """
    try:
        records = await load_from_table(db, execution_id, scrape_type)
        if records:
            logger.bind(execution_id=execution_id, count=len(records), source="table").debug(
                "records_loaded"
            )
            return records
    except Exception as e:
        logger.bind(execution_id=execution_id, error=str(e)).warning("record_table_load_failed")

    if result_payload is None:
        execution = await db.get(ScrapeExecution, execution_id)
        result_payload = execution.result_payload if execution else None

    records = load_from_payload(result_payload)
    logger.bind(execution_id=execution_id, count=len(records), source="payload").debug(
        "records_loaded"
    )
    return records


async def load_job(
    session_factory: async_sessionmaker[AsyncSession],
    job_id: str,
    concurrency: int = LOAD_CONCURRENCY,
) -> list[dict[str, Any]]:
    """Records of every completed execution of a job, in execution order."""
    async with session_factory() as db:
        job = await db.get(ScrapeJob, job_id)
        if job is None:
            return []
        scrape_type = job.scrape_type
        result = await db.execute(
            select(ScrapeExecution.id, ScrapeExecution.result_payload)
            .where(
                ScrapeExecution.job_id == job_id,
                ScrapeExecution.status == JobStatus.COMPLETED,
            )
            .order_by(ScrapeExecution.started_at)
        )
        executions = result.all()

    semaphore = asyncio.Semaphore(concurrency)

    async def _load_one(execution_id: str, payload: str | None) -> list[dict[str, Any]]:
        async with semaphore, session_factory() as db:
            return await load(db, execution_id, scrape_type, payload)

    batches = await asyncio.gather(*(_load_one(e.id, e.result_payload) for e in executions))
    return [record for batch in batches for record in batch]
