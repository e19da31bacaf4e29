from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, model_validator

from scrape_orchestrator.models.job import JobStatus, ScrapeSubType, ScrapeType


class ScrapeJobRequest(BaseModel):
    """Request body for submitting a scrape job."""

    credential_id: str = Field(min_length=1, max_length=64)
    target_config_ids: list[str] = Field(min_length=1)
    scrape_type: ScrapeType
    scrape_subtype: ScrapeSubType | None = None
    definition_id: str | None = None

    @model_validator(mode="after")
    def _check_subtype(self) -> "ScrapeJobRequest":
        if self.scrape_type == ScrapeType.PENDING_MANIFESTATIONS and self.scrape_subtype is None:
            raise ValueError("scrape_subtype is required for pending manifestation scrapes")
        # Duplicate ids would create duplicate job targets
        self.target_config_ids = list(dict.fromkeys(self.target_config_ids))
        return self


class ScrapeJobAccepted(BaseModel):
    """Response after submitting a job; execution continues asynchronously."""

    job_id: str
    status: JobStatus = JobStatus.PENDING


class CancelResponse(BaseModel):
    job_id: str
    status: JobStatus


class TargetStatus(BaseModel):
    """Status of one target within a job."""

    job_target_id: str
    target_config_id: str
    label: str
    status: JobStatus
    attempts: int
    result_count: int = 0
    last_error: dict[str, Any] | None = None


class JobCounts(BaseModel):
    total: int
    pending: int
    running: int
    completed: int
    failed: int
    canceled: int
    result_count: int


class LogEntryResponse(BaseModel):
    timestamp: datetime
    level: str
    message: str
    context: dict[str, Any] | None = None


class JobStatusResponse(BaseModel):
    """Consolidated job status so a poller needs a single round trip."""

    job_id: str
    status: JobStatus
    scrape_type: ScrapeType
    scrape_subtype: ScrapeSubType | None
    partial_failure: bool
    created_at: datetime
    started_at: datetime | None
    completed_at: datetime | None
    duration_seconds: float | None
    counts: JobCounts
    targets: list[TargetStatus]
    logs: list[LogEntryResponse]


class ExecutionResponse(BaseModel):
    id: str
    job_id: str
    target_config_id: str
    attempt: int
    status: JobStatus
    started_at: datetime | None
    completed_at: datetime | None
    result_count: int
    error: dict[str, Any] | None = None


class ExecutionRecordsResponse(BaseModel):
    execution_id: str
    count: int
    records: list[dict[str, Any]]


class RetryResponse(BaseModel):
    job_id: str
    job_target_id: str
    status: JobStatus


class TargetPerformanceResponse(BaseModel):
    target_config_id: str
    days: int
    total_executions: int
    success_rate: float
    avg_duration_ms: float
    avg_result_count: float
    error_types: dict[str, int]
