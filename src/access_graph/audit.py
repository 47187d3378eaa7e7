"""Audit sink for authorization mutations.

Audit recording is best-effort: a failing sink is logged and never rolls
back, or even interrupts, the graph mutation that produced the event.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from .db.engine import session_scope
from .db.models import AuditLog
from .logging import log_context
from .types import ActionType

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuditChanges:
    """Before/after payload attached to update and delete events."""

    before: dict[str, Any] | None = None
    after: dict[str, Any] | None = None

    def as_dict(self) -> dict[str, Any]:
        return {"before": self.before, "after": self.after}


@dataclass(frozen=True)
class AuditEvent:
    """One authorization mutation, attributed to the acting principal."""

    detail: str
    action_type: ActionType
    collection: str
    object_id: str | None
    actor_id: UUID
    changes: AuditChanges | None = None


@dataclass(frozen=True)
class AuditEntry:
    """Stored audit event as read back from the log."""

    id: UUID
    detail: str
    action_type: ActionType
    collection: str
    object_id: str | None
    actor_id: UUID
    changes: dict[str, Any] | None
    created_at: datetime


class AuditSink(Protocol):
    def record(self, event: AuditEvent) -> None: ...


def record_safely(sink: AuditSink, event: AuditEvent) -> None:
    """Hand ``event`` to ``sink``; failures are logged, never raised."""
    try:
        sink.record(event)
    except Exception:
        logger.exception(
            "access_graph.audit.record.failed",
            extra=log_context(
                actor_id=event.actor_id,
                collection=event.collection,
                object_id=event.object_id,
                action_type=event.action_type.value,
            ),
        )


class SqlAuditSink:
    """Persist audit events to ``audit_events`` in their own transaction."""

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    def record(self, event: AuditEvent) -> None:
        row = AuditLog(
            detail=event.detail,
            action_type=event.action_type,
            collection=event.collection,
            object_id=event.object_id,
            changes=event.changes.as_dict() if event.changes is not None else None,
            actor_id=event.actor_id,
        )
        try:
            with session_scope(self._session_factory) as session:
                session.add(row)
        except Exception:
            logger.exception(
                "access_graph.audit.persist.failed",
                extra=log_context(
                    actor_id=event.actor_id,
                    collection=event.collection,
                    object_id=event.object_id,
                ),
            )


class LoggingAuditSink:
    """Emit audit events as structured log lines only."""

    def __init__(self, logger_name: str = "access_graph.audit.events") -> None:
        self._logger = logging.getLogger(logger_name)

    def record(self, event: AuditEvent) -> None:
        self._logger.info(
            "access_graph.audit.event",
            extra=log_context(
                actor_id=event.actor_id,
                detail=event.detail,
                action_type=event.action_type.value,
                collection=event.collection,
                object_id=event.object_id,
                changes=event.changes.as_dict() if event.changes is not None else None,
            ),
        )


def list_events(
    session_factory: sessionmaker[Session],
    *,
    collection: str | None = None,
    object_id: str | None = None,
    actor_id: UUID | None = None,
    limit: int = 50,
) -> Sequence[AuditEntry]:
    """Return stored audit events, newest first."""

    stmt = select(AuditLog).order_by(AuditLog.created_at.desc(), AuditLog.id).limit(limit)
    if collection is not None:
        stmt = stmt.where(AuditLog.collection == collection)
    if object_id is not None:
        stmt = stmt.where(AuditLog.object_id == object_id)
    if actor_id is not None:
        stmt = stmt.where(AuditLog.actor_id == actor_id)

    with session_factory() as session:
        rows = session.execute(stmt).scalars().all()
        return [
            AuditEntry(
                id=row.id,
                detail=row.detail,
                action_type=row.action_type,
                collection=row.collection,
                object_id=row.object_id,
                actor_id=row.actor_id,
                changes=row.changes,
                created_at=row.created_at,
            )
            for row in rows
        ]


__all__ = [
    "AuditChanges",
    "AuditEntry",
    "AuditEvent",
    "AuditSink",
    "LoggingAuditSink",
    "SqlAuditSink",
    "list_events",
    "record_safely",
]
