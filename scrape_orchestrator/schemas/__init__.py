from scrape_orchestrator.schemas.schedule import (
    ScheduleCreate,
    SchedulePreviewResponse,
    ScheduleResponse,
    ScheduleUpdate,
)
from scrape_orchestrator.schemas.scrape import (
    CancelResponse,
    ExecutionRecordsResponse,
    ExecutionResponse,
    JobStatusResponse,
    LogEntryResponse,
    RetryResponse,
    ScrapeJobAccepted,
    ScrapeJobRequest,
    TargetPerformanceResponse,
)

__all__ = [
    "ScrapeJobRequest",
    "ScrapeJobAccepted",
    "CancelResponse",
    "JobStatusResponse",
    "LogEntryResponse",
    "ExecutionResponse",
    "ExecutionRecordsResponse",
    "RetryResponse",
    "TargetPerformanceResponse",
    "ScheduleCreate",
    "ScheduleUpdate",
    "ScheduleResponse",
    "SchedulePreviewResponse",
]
