"""Reusable SQLAlchemy mixins for access graph models."""

from __future__ import annotations

from datetime import UTC, datetime
from uuid import UUID, uuid4

from sqlalchemy.orm import Mapped, declared_attr, mapped_column

from .types import UTCDateTime, UUIDType

__all__ = ["ActorStampMixin", "TimestampMixin", "UUIDPrimaryKeyMixin", "utc_now"]


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


class UUIDPrimaryKeyMixin:
    """Mixin that supplies a UUID primary key column."""

    @declared_attr.directive
    def id(cls) -> Mapped[UUID]:  # noqa: N805 - SQLAlchemy declared attr
        return mapped_column(
            "id",
            UUIDType(),
            primary_key=True,
            default=uuid4,
        )


class TimestampMixin:
    """Mixin that records created/updated timestamps as timezone-aware datetimes."""

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        nullable=False,
        default=utc_now,
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        nullable=False,
        default=utc_now,
        onupdate=utc_now,
    )


class ActorStampMixin:
    """Mixin recording which principal created and last updated a row."""

    created_by_id: Mapped[UUID | None] = mapped_column(UUIDType(), nullable=True)
    updated_by_id: Mapped[UUID | None] = mapped_column(UUIDType(), nullable=True)
