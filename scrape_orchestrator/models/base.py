from datetime import datetime
from typing import Any
from uuid import uuid4

from sqlalchemy import Enum, String
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from scrape_orchestrator.core.datetime_utils import utc_now


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    type_annotation_map: dict[type, Any] = {}


class TimestampMixin:
    """Mixin that adds created_at timestamp to models."""

    created_at: Mapped[datetime] = mapped_column(default=utc_now, index=True)


def new_id() -> str:
    return str(uuid4())


def uuid_pk() -> Mapped[str]:
    """String UUID primary key column."""
    return mapped_column(String(36), primary_key=True, default=new_id)


def enum_column(enum_cls: type, name: str) -> Enum:
    """Enum column type storing the member values."""
    return Enum(
        enum_cls,
        values_callable=lambda e: [x.value for x in e],
        name=name,
        native_enum=False,
        length=32,
    )
