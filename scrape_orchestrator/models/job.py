"""Scrape jobs, their per-target entries and attempt records."""

import enum
from datetime import datetime

from sqlalchemy import JSON, Boolean, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from scrape_orchestrator.models.base import Base, TimestampMixin, enum_column, uuid_pk


class JobStatus(str, enum.Enum):
    """Lifecycle shared by jobs, job targets and executions."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELED = "canceled"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELED})


class ScrapeType(str, enum.Enum):
    """The four scrape types the portal scripts support."""

    GENERAL_DOCKET = "acervo_geral"
    PENDING_MANIFESTATIONS = "pendentes"
    ARCHIVED = "arquivados"
    AGENDA = "minha_pauta"


class ScrapeSubType(str, enum.Enum):
    """Variants of the pending-manifestations scrape."""

    WITH_NOTICE_DATE = "com_dado_ciencia"
    NO_DEADLINE = "sem_prazo"


class ScrapeJob(Base, TimestampMixin):
    """One run of a scrape over a set of targets."""

    __tablename__ = "scrape_jobs"

    id: Mapped[str] = uuid_pk()
    status: Mapped[JobStatus] = mapped_column(
        enum_column(JobStatus, "jobstatus"), default=JobStatus.PENDING, index=True
    )
    scrape_type: Mapped[ScrapeType] = mapped_column(enum_column(ScrapeType, "scrapetype"))
    scrape_subtype: Mapped[ScrapeSubType | None] = mapped_column(
        enum_column(ScrapeSubType, "scrapesubtype"), nullable=True
    )
    credential_id: Mapped[str] = mapped_column(String(64), index=True)
    definition_id: Mapped[str | None] = mapped_column(String(36), index=True)

    # Set when the job completed with at least one failed target
    partial_failure: Mapped[bool] = mapped_column(Boolean, default=False)
    cancel_requested: Mapped[bool] = mapped_column(Boolean, default=False)

    started_at: Mapped[datetime | None]
    completed_at: Mapped[datetime | None]

    # Instance running the job and its last sign of life
    worker_id: Mapped[str | None] = mapped_column(String(64), index=True)
    heartbeat_at: Mapped[datetime | None]

    # Tail of the log stream, captured when the job finishes
    logs: Mapped[list | None] = mapped_column(JSON)

    targets: Mapped[list["ScrapeJobTarget"]] = relationship(
        back_populates="job", cascade="all, delete-orphan", order_by="ScrapeJobTarget.position"
    )
    executions: Mapped[list["ScrapeExecution"]] = relationship(
        back_populates="job",
        cascade="all, delete-orphan",
        order_by="ScrapeExecution.started_at",
    )

    def __repr__(self) -> str:
        return f"<ScrapeJob {self.id} {self.scrape_type.value} {self.status.value}>"


class ScrapeJobTarget(Base, TimestampMixin):
    """A target requested by a job; tracks that target's status and attempts."""

    __tablename__ = "scrape_job_targets"

    id: Mapped[str] = uuid_pk()
    job_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("scrape_jobs.id", ondelete="CASCADE"), index=True
    )
    target_config_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("target_configs.id"), index=True
    )
    position: Mapped[int] = mapped_column(Integer, default=0)  # dispatch order
    status: Mapped[JobStatus] = mapped_column(
        enum_column(JobStatus, "jobstatus"), default=JobStatus.PENDING
    )
    attempts: Mapped[int] = mapped_column(Integer, default=0)

    job: Mapped["ScrapeJob"] = relationship(back_populates="targets")

    def __repr__(self) -> str:
        return f"<ScrapeJobTarget {self.target_config_id} {self.status.value}>"


class ScrapeExecution(Base, TimestampMixin):
    """One attempt at one job target. Finalized once; a retry writes a new row."""

    __tablename__ = "scrape_executions"

    id: Mapped[str] = uuid_pk()
    job_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("scrape_jobs.id", ondelete="CASCADE"), index=True
    )
    job_target_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("scrape_job_targets.id", ondelete="CASCADE"), index=True
    )
    target_config_id: Mapped[str] = mapped_column(String(36), index=True)
    attempt: Mapped[int] = mapped_column(Integer, default=1)
    status: Mapped[JobStatus] = mapped_column(
        enum_column(JobStatus, "jobstatus"), default=JobStatus.RUNNING
    )
    started_at: Mapped[datetime | None]
    completed_at: Mapped[datetime | None]
    result_count: Mapped[int] = mapped_column(Integer, default=0)

    # gzip + base64 of {"records": [...], ...}
    result_payload: Mapped[str | None] = mapped_column(Text)
    error_payload: Mapped[dict | None] = mapped_column(JSON)

    job: Mapped["ScrapeJob"] = relationship(back_populates="executions")

    def __repr__(self) -> str:
        return f"<ScrapeExecution {self.id} attempt={self.attempt} {self.status.value}>"
