from scrape_orchestrator.models.base import Base
from scrape_orchestrator.models.job import (
    JobStatus,
    ScrapeExecution,
    ScrapeJob,
    ScrapeJobTarget,
    ScrapeSubType,
    ScrapeType,
)
from scrape_orchestrator.models.metrics import PerformanceMetric
from scrape_orchestrator.models.records import (
    RECORD_MODELS,
    AgendaEntry,
    ArchivedProcess,
    DocketProcess,
    PendingManifestation,
)
from scrape_orchestrator.models.schedule import JobDefinition
from scrape_orchestrator.models.target import Degree, TargetConfig

__all__ = [
    "Base",
    "TargetConfig",
    "Degree",
    "JobDefinition",
    "ScrapeJob",
    "ScrapeJobTarget",
    "ScrapeExecution",
    "JobStatus",
    "ScrapeType",
    "ScrapeSubType",
    "PerformanceMetric",
    "DocketProcess",
    "PendingManifestation",
    "ArchivedProcess",
    "AgendaEntry",
    "RECORD_MODELS",
]
