"""Graph repository: the storage seam for roles, permissions, and their edges.

:class:`GraphRepository` is the contract the reconciler, cascade guard, and
resolver are written against. :class:`SqlGraphRepository` implements it on
SQLAlchemy. By default every call runs in its own short transaction, so a
batch of edge writes is best-effort: one rejected edge never undoes its
neighbours. Inside :meth:`SqlGraphRepository.unit_of_work` all calls share one
session and commit or roll back together, while edge inserts still run in
their own SAVEPOINT.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator, Sequence
from contextlib import AbstractContextManager, contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, ClassVar, Protocol
from uuid import UUID

from sqlalchemy import ColumnElement, delete, insert, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from .db.engine import session_scope
from .db.models import Permission, PrincipalPermission, PrincipalRole, Role, RolePermission
from .errors import AnchorRelationMismatchError, EdgeWriteError
from .types import Anchor, EdgeFilter, EdgeWriteStatus, EntityKind, PrincipalType, Relation

# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class EntityRecord:
    """Immutable snapshot of a role or permission row; identity is the id."""

    kind: ClassVar[EntityKind]

    id: UUID
    name: str = field(compare=False)
    guard_name: str = field(compare=False)
    created_at: datetime | None = field(default=None, compare=False)
    updated_at: datetime | None = field(default=None, compare=False)
    created_by_id: UUID | None = field(default=None, compare=False)
    updated_by_id: UUID | None = field(default=None, compare=False)

    def snapshot(self) -> dict[str, Any]:
        """Audit-friendly view, omitting creation metadata."""
        return {
            "id": str(self.id),
            "name": self.name,
            "guard_name": self.guard_name,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "updated_by_id": str(self.updated_by_id) if self.updated_by_id else None,
        }


@dataclass(frozen=True)
class RoleRecord(EntityRecord):
    kind: ClassVar[EntityKind] = EntityKind.ROLE


@dataclass(frozen=True)
class PermissionRecord(EntityRecord):
    kind: ClassVar[EntityKind] = EntityKind.PERMISSION


def _to_record(row: Role | Permission) -> EntityRecord:
    record_type = RoleRecord if isinstance(row, Role) else PermissionRecord
    return record_type(
        id=row.id,
        name=row.name,
        guard_name=row.guard_name,
        created_at=row.created_at,
        updated_at=row.updated_at,
        created_by_id=row.created_by_id,
        updated_by_id=row.updated_by_id,
    )


# ---------------------------------------------------------------------------
# Contract
# ---------------------------------------------------------------------------


class GraphRepository(Protocol):
    """Storage operations consumed by the access graph core."""

    def unit_of_work(self) -> AbstractContextManager[Any]: ...

    def find_edges(self, relation: Relation, anchor: Anchor) -> set[UUID]: ...

    def create_edge(
        self, relation: Relation, anchor: Anchor, other_id: UUID
    ) -> EdgeWriteStatus: ...

    def delete_edge(
        self, relation: Relation, anchor: Anchor, other_id: UUID
    ) -> EdgeWriteStatus: ...

    def delete_edges_where(self, relation: Relation, predicate: EdgeFilter) -> int: ...

    def get_entity(self, kind: EntityKind, entity_id: UUID) -> EntityRecord | None: ...

    def delete_entity(self, kind: EntityKind, entity_id: UUID) -> bool: ...

    def add_entity(
        self, kind: EntityKind, *, name: str, guard_name: str, actor_id: UUID
    ) -> EntityRecord: ...

    def update_entity(
        self,
        kind: EntityKind,
        entity_id: UUID,
        *,
        actor_id: UUID,
        name: str | None = None,
        guard_name: str | None = None,
    ) -> EntityRecord | None: ...

    def find_entity_by_name(self, kind: EntityKind, name: str) -> EntityRecord | None: ...

    def list_entities(
        self, kind: EntityKind, *, guard_name: str | None = None
    ) -> list[EntityRecord]: ...

    def get_entities(self, kind: EntityKind, ids: Iterable[UUID]) -> list[EntityRecord]: ...

    def permission_ids_for_roles(self, role_ids: Iterable[UUID]) -> dict[UUID, set[UUID]]: ...

    def principals_with_role(self, role_id: UUID) -> set[tuple[PrincipalType, UUID]]: ...


# ---------------------------------------------------------------------------
# SQLAlchemy implementation
# ---------------------------------------------------------------------------

_ENTITY_MODELS: dict[EntityKind, type[Role] | type[Permission]] = {
    EntityKind.ROLE: Role,
    EntityKind.PERMISSION: Permission,
}

_EDGE_MODELS = {
    Relation.ROLE_PERMISSIONS: RolePermission,
    Relation.PRINCIPAL_ROLES: PrincipalRole,
    Relation.PRINCIPAL_PERMISSIONS: PrincipalPermission,
}

_EDGE_TARGETS = {
    Relation.ROLE_PERMISSIONS: RolePermission.permission_id,
    Relation.PRINCIPAL_ROLES: PrincipalRole.role_id,
    Relation.PRINCIPAL_PERMISSIONS: PrincipalPermission.permission_id,
}


def check_anchor(relation: Relation, anchor: Anchor) -> None:
    if anchor.kind is not relation.anchor_kind:
        raise AnchorRelationMismatchError(
            f"{relation.value} requires a {relation.anchor_kind.value} anchor, "
            f"got {anchor.kind.value}"
        )


def _anchor_clauses(relation: Relation, anchor: Anchor) -> list[ColumnElement[bool]]:
    check_anchor(relation, anchor)
    if relation is Relation.ROLE_PERMISSIONS:
        return [RolePermission.role_id == anchor.id]
    model = _EDGE_MODELS[relation]
    return [
        model.principal_type == anchor.principal_type,
        model.principal_id == anchor.id,
    ]


def _edge_values(relation: Relation, anchor: Anchor, other_id: UUID) -> dict[str, Any]:
    if relation is Relation.ROLE_PERMISSIONS:
        return {"role_id": anchor.id, "permission_id": other_id}
    target = _EDGE_TARGETS[relation].key
    return {
        target: other_id,
        "principal_type": anchor.principal_type,
        "principal_id": anchor.id,
    }


def _filter_clauses(relation: Relation, predicate: EdgeFilter) -> list[ColumnElement[bool]]:
    model = _EDGE_MODELS[relation]
    clauses: list[ColumnElement[bool]] = []
    for name in ("role_id", "permission_id", "principal_id", "principal_type"):
        value = getattr(predicate, name)
        if value is None:
            continue
        column = getattr(model, name, None)
        if column is None:
            raise ValueError(f"{relation.value} edges have no {name} column")
        clauses.append(column == value)
    return clauses


def _integrity_reason(exc: IntegrityError) -> str:
    return str(exc.orig or exc).splitlines()[0][:200]


class SqlGraphRepository:
    """:class:`GraphRepository` backed by a SQLAlchemy ``sessionmaker``."""

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory
        self._bound: ContextVar[Session | None] = ContextVar(
            f"access_graph_uow_{id(self)}", default=None
        )

    # ------------- session handling -------------

    @contextmanager
    def unit_of_work(self) -> Iterator[Session]:
        """Bind one session to every repository call made inside the block."""
        existing = self._bound.get()
        if existing is not None:
            yield existing
            return
        with session_scope(self._session_factory) as session:
            token = self._bound.set(session)
            try:
                yield session
            finally:
                self._bound.reset(token)

    @property
    def in_unit_of_work(self) -> bool:
        return self._bound.get() is not None

    @contextmanager
    def _session(self) -> Iterator[Session]:
        bound = self._bound.get()
        if bound is not None:
            yield bound
            return
        with session_scope(self._session_factory) as session:
            yield session

    # ------------- edges ------------------------

    def find_edges(self, relation: Relation, anchor: Anchor) -> set[UUID]:
        stmt = select(_EDGE_TARGETS[relation]).where(*_anchor_clauses(relation, anchor))
        with self._session() as session:
            return set(session.execute(stmt).scalars().all())

    def _edge_exists(
        self, session: Session, relation: Relation, anchor: Anchor, other_id: UUID
    ) -> bool:
        target = _EDGE_TARGETS[relation]
        stmt = (
            select(target)
            .where(*_anchor_clauses(relation, anchor), target == other_id)
            .limit(1)
        )
        return session.execute(stmt).first() is not None

    def create_edge(self, relation: Relation, anchor: Anchor, other_id: UUID) -> EdgeWriteStatus:
        model = _EDGE_MODELS[relation]
        values = _edge_values(relation, anchor, other_id)
        with self._session() as session:
            try:
                with session.begin_nested():
                    session.execute(insert(model).values(**values))
            except IntegrityError as exc:
                # Unique violation means a concurrent writer got there first.
                if self._edge_exists(session, relation, anchor, other_id):
                    return EdgeWriteStatus.ALREADY_EXISTS
                raise EdgeWriteError(relation, other_id, _integrity_reason(exc)) from exc
        return EdgeWriteStatus.CREATED

    def delete_edge(self, relation: Relation, anchor: Anchor, other_id: UUID) -> EdgeWriteStatus:
        model = _EDGE_MODELS[relation]
        stmt = delete(model).where(
            *_anchor_clauses(relation, anchor),
            _EDGE_TARGETS[relation] == other_id,
        )
        with self._session() as session:
            deleted = session.execute(stmt).rowcount
        if deleted:
            return EdgeWriteStatus.DELETED
        return EdgeWriteStatus.NOT_FOUND

    def delete_edges_where(self, relation: Relation, predicate: EdgeFilter) -> int:
        model = _EDGE_MODELS[relation]
        stmt = delete(model).where(*_filter_clauses(relation, predicate))
        with self._session() as session:
            removed = session.execute(stmt).rowcount
        return int(removed or 0)

    def permission_ids_for_roles(self, role_ids: Iterable[UUID]) -> dict[UUID, set[UUID]]:
        ids = tuple(set(role_ids))
        mapping: dict[UUID, set[UUID]] = {role_id: set() for role_id in ids}
        if not ids:
            return mapping
        stmt = select(RolePermission.role_id, RolePermission.permission_id).where(
            RolePermission.role_id.in_(ids)
        )
        with self._session() as session:
            for role_id, permission_id in session.execute(stmt).all():
                mapping[role_id].add(permission_id)
        return mapping

    def principals_with_role(self, role_id: UUID) -> set[tuple[PrincipalType, UUID]]:
        stmt = select(PrincipalRole.principal_type, PrincipalRole.principal_id).where(
            PrincipalRole.role_id == role_id
        )
        with self._session() as session:
            return {(ptype, pid) for ptype, pid in session.execute(stmt).all()}

    # ------------- entities ---------------------

    def get_entity(self, kind: EntityKind, entity_id: UUID) -> EntityRecord | None:
        with self._session() as session:
            row = session.get(_ENTITY_MODELS[kind], entity_id)
            return _to_record(row) if row is not None else None

    def get_entities(self, kind: EntityKind, ids: Iterable[UUID]) -> list[EntityRecord]:
        wanted = tuple(set(ids))
        if not wanted:
            return []
        model = _ENTITY_MODELS[kind]
        stmt = select(model).where(model.id.in_(wanted)).order_by(model.name, model.id)
        with self._session() as session:
            return [_to_record(row) for row in session.execute(stmt).scalars().all()]

    def delete_entity(self, kind: EntityKind, entity_id: UUID) -> bool:
        model = _ENTITY_MODELS[kind]
        with self._session() as session:
            deleted = session.execute(delete(model).where(model.id == entity_id)).rowcount
        return bool(deleted)

    def add_entity(
        self, kind: EntityKind, *, name: str, guard_name: str, actor_id: UUID
    ) -> EntityRecord:
        model = _ENTITY_MODELS[kind]
        row = model(
            name=name,
            guard_name=guard_name,
            created_by_id=actor_id,
            updated_by_id=actor_id,
        )
        with self._session() as session:
            session.add(row)
            session.flush([row])
            return _to_record(row)

    def update_entity(
        self,
        kind: EntityKind,
        entity_id: UUID,
        *,
        actor_id: UUID,
        name: str | None = None,
        guard_name: str | None = None,
    ) -> EntityRecord | None:
        with self._session() as session:
            row = session.get(_ENTITY_MODELS[kind], entity_id)
            if row is None:
                return None
            if name is not None:
                row.name = name
            if guard_name is not None:
                row.guard_name = guard_name
            row.updated_by_id = actor_id
            session.flush([row])
            return _to_record(row)

    def find_entity_by_name(self, kind: EntityKind, name: str) -> EntityRecord | None:
        model = _ENTITY_MODELS[kind]
        stmt = select(model).where(model.name == name).order_by(model.created_at).limit(1)
        with self._session() as session:
            row = session.execute(stmt).scalar_one_or_none()
            return _to_record(row) if row is not None else None

    def list_entities(
        self, kind: EntityKind, *, guard_name: str | None = None
    ) -> list[EntityRecord]:
        model = _ENTITY_MODELS[kind]
        stmt = select(model).order_by(model.name, model.id)
        if guard_name:
            stmt = stmt.where(model.guard_name == guard_name)
        with self._session() as session:
            return [_to_record(row) for row in session.execute(stmt).scalars().all()]


def sorted_ids(ids: Iterable[UUID]) -> Sequence[UUID]:
    """Deterministic ordering for id sets (logging, audit payloads)."""
    return sorted(ids, key=str)


__all__ = [
    "EntityRecord",
    "GraphRepository",
    "PermissionRecord",
    "RoleRecord",
    "SqlGraphRepository",
    "check_anchor",
    "sorted_ids",
]
