"""Recurring scrape definitions."""

from datetime import datetime

from sqlalchemy import JSON, Boolean, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from scrape_orchestrator.core.datetime_utils import DEFAULT_TIMEZONE, utc_now
from scrape_orchestrator.models.base import Base, TimestampMixin, enum_column, uuid_pk
from scrape_orchestrator.models.job import ScrapeSubType, ScrapeType


class JobDefinition(Base, TimestampMixin):
    """A persisted schedule that turns cron fires into scrape jobs.

    Pausing deactivates the definition; history fields are kept.
    """

    __tablename__ = "job_definitions"

    id: Mapped[str] = uuid_pk()
    name: Mapped[str] = mapped_column(String(255))
    cron_expression: Mapped[str] = mapped_column(String(100))
    timezone: Mapped[str] = mapped_column(String(64), default=DEFAULT_TIMEZONE)
    target_config_ids: Mapped[list] = mapped_column(JSON, default=list)
    scrape_type: Mapped[ScrapeType] = mapped_column(enum_column(ScrapeType, "scrapetype"))
    scrape_subtype: Mapped[ScrapeSubType | None] = mapped_column(
        enum_column(ScrapeSubType, "scrapesubtype"), nullable=True
    )
    credential_id: Mapped[str] = mapped_column(String(64), index=True)
    active: Mapped[bool] = mapped_column(Boolean, default=True, index=True)

    # Run bookkeeping, updated on every fire
    last_run_at: Mapped[datetime | None]
    next_run_at: Mapped[datetime | None]
    run_count: Mapped[int] = mapped_column(Integer, default=0)
    last_job_id: Mapped[str | None] = mapped_column(String(36))

    updated_at: Mapped[datetime] = mapped_column(default=utc_now, onupdate=utc_now)

    def __repr__(self) -> str:
        return f"<JobDefinition {self.name} '{self.cron_expression}' active={self.active}>"
