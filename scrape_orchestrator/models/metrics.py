"""Per-execution performance metrics."""

from datetime import datetime

from sqlalchemy import Boolean, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from scrape_orchestrator.core.datetime_utils import utc_now
from scrape_orchestrator.models.base import Base, uuid_pk


class PerformanceMetric(Base):
    """Append-only metric derived from a finished execution."""

    __tablename__ = "performance_metrics"

    id: Mapped[str] = uuid_pk()
    target_config_id: Mapped[str] = mapped_column(String(36), index=True)
    execution_id: Mapped[str] = mapped_column(String(36), index=True)
    duration_ms: Mapped[int] = mapped_column(Integer)
    success: Mapped[bool] = mapped_column(Boolean)
    result_count: Mapped[int] = mapped_column(Integer, default=0)
    error_type: Mapped[str | None] = mapped_column(String(32))

    # Python-side default: rules read metrics back in insertion order
    created_at: Mapped[datetime] = mapped_column(default=utc_now, index=True)

    def __repr__(self) -> str:
        outcome = "ok" if self.success else "failed"
        return f"<PerformanceMetric {self.target_config_id} {self.duration_ms}ms {outcome}>"
