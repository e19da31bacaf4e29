from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, model_validator

from scrape_orchestrator.models.job import ScrapeSubType, ScrapeType


class ScheduleCreate(BaseModel):
    """Request body for creating a recurring scrape.

    ``frequency`` is either a structured shape (``daily@09:00``,
    ``weekly@1,3,5@08:30``, ``every 6 hours``) or a raw 5-field cron expression.
    """

    name: str = Field(min_length=1, max_length=255)
    frequency: str = Field(min_length=1, max_length=100)
    timezone: str | None = None
    target_config_ids: list[str] = Field(min_length=1)
    scrape_type: ScrapeType
    scrape_subtype: ScrapeSubType | None = None
    credential_id: str = Field(min_length=1, max_length=64)
    active: bool = True

    @model_validator(mode="after")
    def _check_subtype(self) -> "ScheduleCreate":
        if self.scrape_type == ScrapeType.PENDING_MANIFESTATIONS and self.scrape_subtype is None:
            raise ValueError("scrape_subtype is required for pending manifestation scrapes")
        self.target_config_ids = list(dict.fromkeys(self.target_config_ids))
        return self


class ScheduleUpdate(BaseModel):
    """Partial update; omitted fields keep their value."""

    name: str | None = Field(default=None, min_length=1, max_length=255)
    frequency: str | None = Field(default=None, min_length=1, max_length=100)
    timezone: str | None = None
    target_config_ids: list[str] | None = Field(default=None, min_length=1)
    scrape_type: ScrapeType | None = None
    scrape_subtype: ScrapeSubType | None = None
    credential_id: str | None = Field(default=None, min_length=1, max_length=64)
    active: bool | None = None


class ScheduleResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    cron_expression: str
    frequency: str
    description: str
    timezone: str
    target_config_ids: list[str]
    scrape_type: ScrapeType
    scrape_subtype: ScrapeSubType | None
    credential_id: str
    active: bool
    last_run_at: datetime | None
    next_run_at: datetime | None
    run_count: int
    last_job_id: str | None
    created_at: datetime
    updated_at: datetime


class SchedulePreviewResponse(BaseModel):
    """Upcoming fire times for a frequency, without saving anything."""

    cron_expression: str
    timezone: str
    description: str
    next_runs: list[datetime]
