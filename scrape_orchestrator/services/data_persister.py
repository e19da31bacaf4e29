"""
Persist scraped records into the normalized per-type tables.

The compressed payload on the execution stays the fallback source; the data
loader reads these tables first.
"""

from typing import Any

from sqlalchemy import insert
from sqlalchemy.ext.asyncio import AsyncSession

from scrape_orchestrator.core.logging import get_logger
from scrape_orchestrator.models.job import ScrapeType
from scrape_orchestrator.models.records import RECORD_MODELS, PendingManifestation

logger = get_logger(__name__)

BATCH_SIZE = 500


def _text(value: Any) -> str | None:
    if value is None or value == "":
        return None
    return str(value)


def record_to_row(
    execution_id: str,
    scrape_type: ScrapeType,
    position: int,
    record: dict[str, Any],
) -> dict[str, Any]:
    """Map one scraped record onto the columns of its per-type table."""
    row = {
        "execution_id": execution_id,
        "position": position,
        "portal_id": _text(record.get("id")),
        "process_number": _text(record.get("numeroProcesso") or record.get("numero")),
        "court_body": _text(record.get("descricaoOrgaoJulgador")),
        "data": record,
    }
    if RECORD_MODELS[scrape_type] is PendingManifestation:
        row["deadline_expired"] = bool(record.get("prazoVencido", False))
    return row


async def persist_records(
    db: AsyncSession,
    execution_id: str,
    scrape_type: ScrapeType,
    records: list[dict[str, Any]],
) -> int:
    """Insert records in batches. Returns the number of rows written."""
    if not records:
        return 0

    model = RECORD_MODELS[scrape_type]
    rows = [
        record_to_row(execution_id, scrape_type, position, record)
        for position, record in enumerate(records)
        if isinstance(record, dict)
    ]

    for start in range(0, len(rows), BATCH_SIZE):
        await db.execute(insert(model), rows[start : start + BATCH_SIZE])

    logger.bind(
        execution_id=execution_id,
        scrape_type=scrape_type.value,
        count=len(rows),
        batches=(len(rows) + BATCH_SIZE - 1) // BATCH_SIZE,
    ).debug("records_persisted")
    return len(rows)
