"""Shared pytest fixtures for access graph tests."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterator
from pathlib import Path
from uuid import UUID, uuid4

import pytest
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from access_graph.audit import AuditEvent
from access_graph.db import build_engine, build_sessionmaker, create_schema
from access_graph.repository import PermissionRecord, RoleRecord, SqlGraphRepository
from access_graph.settings import Settings
from access_graph.types import EntityKind


class RecordingAuditSink:
    """In-memory audit sink used to assert on emitted events."""

    def __init__(self) -> None:
        self.events: list[AuditEvent] = []

    def record(self, event: AuditEvent) -> None:
        self.events.append(event)

    def for_collection(self, collection: str) -> list[AuditEvent]:
        return [event for event in self.events if event.collection == collection]


@pytest.fixture
def database_url(tmp_path: Path) -> str:
    """File-backed SQLite database unique to each test."""

    return f"sqlite:///{tmp_path / 'access_graph.sqlite'}"


@pytest.fixture
def settings(database_url: str) -> Settings:
    return Settings(_env_file=None, database_url=database_url)


@pytest.fixture
def engine(settings: Settings) -> Iterator[Engine]:
    engine = build_engine(settings)
    create_schema(engine)
    try:
        yield engine
    finally:
        engine.dispose()


@pytest.fixture
def session_factory(engine: Engine) -> sessionmaker[Session]:
    return build_sessionmaker(engine)


@pytest.fixture
def repository(session_factory: sessionmaker[Session]) -> SqlGraphRepository:
    return SqlGraphRepository(session_factory)


@pytest.fixture
def audit_sink() -> RecordingAuditSink:
    return RecordingAuditSink()


@pytest.fixture
def actor_id() -> UUID:
    return uuid4()


@pytest.fixture
def make_role(repository: SqlGraphRepository, actor_id: UUID) -> Callable[..., RoleRecord]:
    def _make(name: str, guard_name: str = "User") -> RoleRecord:
        record = repository.add_entity(
            EntityKind.ROLE, name=name, guard_name=guard_name, actor_id=actor_id
        )
        assert isinstance(record, RoleRecord)
        return record

    return _make


@pytest.fixture
def make_permission(
    repository: SqlGraphRepository, actor_id: UUID
) -> Callable[..., PermissionRecord]:
    def _make(name: str, guard_name: str = "User") -> PermissionRecord:
        record = repository.add_entity(
            EntityKind.PERMISSION, name=name, guard_name=guard_name, actor_id=actor_id
        )
        assert isinstance(record, PermissionRecord)
        return record

    return _make


@pytest.fixture
def restore_root_logger() -> Iterator[None]:
    """Undo ``setup_logging`` side effects on the root logger."""

    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    configured = root.__dict__.get("_access_graph_configured")
    yield
    root.handlers = handlers
    root.setLevel(level)
    if configured is None:
        root.__dict__.pop("_access_graph_configured", None)
    else:
        root._access_graph_configured = configured
