"""Normalized scrape results, one table per scrape type."""

from sqlalchemy import JSON, ForeignKey, Integer, String
from sqlalchemy.orm import Mapped, declared_attr, mapped_column

from scrape_orchestrator.models.base import Base, TimestampMixin, uuid_pk
from scrape_orchestrator.models.job import ScrapeType


class ScrapedRecordMixin(TimestampMixin):
    """Columns shared by every per-type record table."""

    id: Mapped[str] = uuid_pk()
    position: Mapped[int] = mapped_column(Integer, default=0)  # order within the execution
    portal_id: Mapped[str | None] = mapped_column(String(64))
    process_number: Mapped[str | None] = mapped_column(String(64), index=True)
    court_body: Mapped[str | None] = mapped_column(String(255))
    data: Mapped[dict] = mapped_column(JSON, default=dict)  # full record as scraped

    @declared_attr
    def execution_id(cls) -> Mapped[str]:
        return mapped_column(
            String(36), ForeignKey("scrape_executions.id", ondelete="CASCADE"), index=True
        )


class DocketProcess(ScrapedRecordMixin, Base):
    """General docket (acervo geral) process."""

    __tablename__ = "docket_processes"


class PendingManifestation(ScrapedRecordMixin, Base):
    """Process awaiting a manifestation (pendentes)."""

    __tablename__ = "pending_manifestations"

    deadline_expired: Mapped[bool] = mapped_column(default=False)


class ArchivedProcess(ScrapedRecordMixin, Base):
    """Archived process (arquivados)."""

    __tablename__ = "archived_processes"


class AgendaEntry(ScrapedRecordMixin, Base):
    """Hearing or session on the lawyer's agenda (minha pauta)."""

    __tablename__ = "agenda_entries"


RECORD_MODELS: dict[ScrapeType, type[ScrapedRecordMixin]] = {
    ScrapeType.GENERAL_DOCKET: DocketProcess,
    ScrapeType.PENDING_MANIFESTATIONS: PendingManifestation,
    ScrapeType.ARCHIVED: ArchivedProcess,
    ScrapeType.AGENDA: AgendaEntry,
}
