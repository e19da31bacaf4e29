"""Tests for record persistence and the hybrid data loader."""

import itertools

import pytest
from sqlalchemy import select

from scrape_orchestrator.core.compression import compress_payload
from scrape_orchestrator.core.datetime_utils import utc_now
from scrape_orchestrator.models.job import (
    JobStatus,
    ScrapeExecution,
    ScrapeJob,
    ScrapeJobTarget,
    ScrapeType,
)
from scrape_orchestrator.models.records import PendingManifestation
from scrape_orchestrator.services import data_loader
from scrape_orchestrator.services.data_persister import persist_records, record_to_row

pytestmark = pytest.mark.asyncio

_codes = itertools.count(1)

RECORDS = [
    {"id": "1", "numeroProcesso": "0010001-11.2024.5.03.0001", "descricaoOrgaoJulgador": "1ª VT"},
    {"id": "2", "numeroProcesso": "0010002-22.2024.5.03.0001", "prazoVencido": True},
]


@pytest.fixture
def make_execution(session_factory, target_factory):
    """Create a job with one target and one execution."""

    async def _make(
        scrape_type: ScrapeType = ScrapeType.GENERAL_DOCKET,
        status: JobStatus = JobStatus.COMPLETED,
        payload: str | None = None,
    ) -> ScrapeExecution:
        target = await target_factory(code=f"TRT{next(_codes)}")
        async with session_factory() as db:
            job = ScrapeJob(
                status=JobStatus.COMPLETED,
                scrape_type=scrape_type,
                credential_id="cred-1",
            )
            job_target = ScrapeJobTarget(target_config_id=target.id, status=status)
            job.targets = [job_target]
            db.add(job)
            await db.flush()
            execution = ScrapeExecution(
                job_id=job.id,
                job_target_id=job_target.id,
                target_config_id=target.id,
                status=status,
                started_at=utc_now(),
                completed_at=utc_now(),
                result_payload=payload,
            )
            db.add(execution)
            await db.commit()
        return execution

    return _make


class TestRecordToRow:
    async def test_maps_columns(self):
        row = record_to_row("exec-1", ScrapeType.GENERAL_DOCKET, 0, RECORDS[0])

        assert row["process_number"] == "0010001-11.2024.5.03.0001"
        assert row["court_body"] == "1ª VT"
        assert row["data"] == RECORDS[0]
        assert "deadline_expired" not in row

    async def test_pending_manifestation_flag(self):
        row = record_to_row("exec-1", ScrapeType.PENDING_MANIFESTATIONS, 1, RECORDS[1])

        assert row["deadline_expired"] is True
        assert row["position"] == 1


class TestLoad:
    """Tests for data_loader.load."""

    async def test_prefers_normalized_table(self, session_factory, make_execution):
        """Should read the table and ignore the payload when rows exist."""
        execution = await make_execution(payload=compress_payload({"records": [{"id": "stale"}]}))
        async with session_factory() as db:
            written = await persist_records(db, execution.id, ScrapeType.GENERAL_DOCKET, RECORDS)
            await db.commit()

        async with session_factory() as db:
            records = await data_loader.load(db, execution.id, ScrapeType.GENERAL_DOCKET)

        assert written == 2
        assert records == RECORDS

    async def test_falls_back_to_payload(self, session_factory, make_execution):
        """Should decompress the payload when the table has no rows."""
        execution = await make_execution(payload=compress_payload({"records": RECORDS, "count": 2}))

        async with session_factory() as db:
            records = await data_loader.load(db, execution.id, ScrapeType.GENERAL_DOCKET)

        assert records == RECORDS

    async def test_legacy_payload_key(self):
        payload = compress_payload({"processos": [{"id": "9"}]})

        assert data_loader.load_from_payload(payload) == [{"id": "9"}]

    async def test_empty_when_no_data(self, session_factory, make_execution):
        """Should return [] rather than fail when neither source has data."""
        execution = await make_execution()

        async with session_factory() as db:
            assert await data_loader.load(db, execution.id, ScrapeType.GENERAL_DOCKET) == []

    async def test_corrupt_payload_is_empty(self, session_factory, make_execution):
        execution = await make_execution(payload="not-a-payload")

        async with session_factory() as db:
            assert await data_loader.load(db, execution.id, ScrapeType.GENERAL_DOCKET) == []

    async def test_table_is_per_scrape_type(self, session_factory, make_execution):
        """Should persist pending manifestations into their own table."""
        execution = await make_execution(scrape_type=ScrapeType.PENDING_MANIFESTATIONS)
        async with session_factory() as db:
            await persist_records(db, execution.id, ScrapeType.PENDING_MANIFESTATIONS, RECORDS)
            await db.commit()

        async with session_factory() as db:
            pending = await data_loader.load(db, execution.id, ScrapeType.PENDING_MANIFESTATIONS)
            docket = await data_loader.load_from_table(db, execution.id, ScrapeType.GENERAL_DOCKET)
            result = await db.execute(
                select(PendingManifestation.deadline_expired).order_by(PendingManifestation.position)
            )
            flags = list(result.scalars().all())

        assert pending == RECORDS
        assert docket == []
        assert flags == [False, True]

    async def test_load_job_only_completed(self, session_factory, make_execution):
        """Should gather the records of completed executions only."""
        ok = await make_execution(payload=compress_payload({"records": RECORDS}))
        failed = await make_execution(
            status=JobStatus.FAILED, payload=compress_payload({"records": [{"id": "x"}]})
        )

        records = await data_loader.load_job(session_factory, ok.job_id)
        failed_records = await data_loader.load_job(session_factory, failed.job_id)

        assert records == RECORDS
        assert failed_records == []
        assert await data_loader.load_job(session_factory, "missing") == []
