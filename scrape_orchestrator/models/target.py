"""Court portal target configuration."""

import enum

from sqlalchemy import String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from scrape_orchestrator.models.base import Base, TimestampMixin, enum_column, uuid_pk


class Degree(str, enum.Enum):
    """Instance degree (grau) of a court endpoint."""

    FIRST = "1g"
    SECOND = "2g"
    SINGLE = "unico"


class TargetConfig(Base, TimestampMixin):
    """One court x degree endpoint the engine can scrape."""

    __tablename__ = "target_configs"
    __table_args__ = (UniqueConstraint("code", "degree", name="uq_target_code_degree"),)

    id: Mapped[str] = uuid_pk()
    code: Mapped[str] = mapped_column(String(20), index=True)  # TRT3, TJMG, ...
    degree: Mapped[Degree] = mapped_column(enum_column(Degree, "degree"))
    system: Mapped[str] = mapped_column(String(20), default="PJE")
    name: Mapped[str | None] = mapped_column(String(255))
    base_url: Mapped[str] = mapped_column(String(512))
    login_url: Mapped[str] = mapped_column(String(512))
    api_url: Mapped[str] = mapped_column(String(512))

    @property
    def label(self) -> str:
        return f"{self.code} {self.degree.value}"

    def __repr__(self) -> str:
        return f"<TargetConfig {self.label}>"
