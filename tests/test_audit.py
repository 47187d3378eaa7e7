from __future__ import annotations

import logging
from uuid import uuid4

from sqlalchemy import text

from access_graph.audit import (
    AuditChanges,
    AuditEvent,
    LoggingAuditSink,
    SqlAuditSink,
    list_events,
    record_safely,
)
from access_graph.types import ActionType


def _event(actor_id, **overrides) -> AuditEvent:
    values = {
        "detail": "Created role: editor",
        "action_type": ActionType.CREATE,
        "collection": "Role",
        "object_id": "role-1",
        "actor_id": actor_id,
        "changes": AuditChanges(before=None, after={"name": "editor"}),
    }
    values.update(overrides)
    return AuditEvent(**values)


def test_sql_sink_persists_events(session_factory, actor_id) -> None:
    sink = SqlAuditSink(session_factory)

    sink.record(_event(actor_id))

    (entry,) = list_events(session_factory)
    assert entry.detail == "Created role: editor"
    assert entry.action_type is ActionType.CREATE
    assert entry.collection == "Role"
    assert entry.object_id == "role-1"
    assert entry.actor_id == actor_id
    assert entry.changes == {"before": None, "after": {"name": "editor"}}
    assert entry.created_at.tzinfo is not None


def test_list_events_filters(session_factory, actor_id) -> None:
    sink = SqlAuditSink(session_factory)
    other_actor = uuid4()
    sink.record(_event(actor_id))
    sink.record(_event(actor_id, collection="Permission", object_id="perm-1"))
    sink.record(_event(other_actor, object_id="role-2"))

    assert {e.object_id for e in list_events(session_factory, collection="Role")} == {
        "role-1",
        "role-2",
    }
    assert [e.object_id for e in list_events(session_factory, object_id="perm-1")] == ["perm-1"]
    assert [e.object_id for e in list_events(session_factory, actor_id=other_actor)] == [
        "role-2"
    ]
    assert len(list_events(session_factory, limit=2)) == 2


def test_sql_sink_swallows_store_failures(engine, session_factory, actor_id, caplog) -> None:
    with engine.begin() as conn:
        conn.execute(text("DROP TABLE audit_events"))
    sink = SqlAuditSink(session_factory)

    with caplog.at_level(logging.ERROR, logger="access_graph.audit"):
        sink.record(_event(actor_id))

    assert any(r.getMessage() == "access_graph.audit.persist.failed" for r in caplog.records)


def test_record_safely_swallows_sink_exceptions(actor_id, caplog) -> None:
    class BrokenSink:
        def record(self, event: AuditEvent) -> None:
            raise RuntimeError("sink offline")

    with caplog.at_level(logging.ERROR, logger="access_graph.audit"):
        record_safely(BrokenSink(), _event(actor_id))

    (record,) = [r for r in caplog.records if r.name == "access_graph.audit"]
    assert record.getMessage() == "access_graph.audit.record.failed"
    assert record.collection == "Role"
    assert record.exc_info is not None


def test_logging_sink_emits_structured_line(actor_id, caplog) -> None:
    with caplog.at_level(logging.INFO, logger="access_graph.audit.events"):
        LoggingAuditSink().record(_event(actor_id))

    (record,) = caplog.records
    assert record.getMessage() == "access_graph.audit.event"
    assert record.actor_id == str(actor_id)
    assert record.action_type == "create"
    assert record.changes == {"before": None, "after": {"name": "editor"}}
