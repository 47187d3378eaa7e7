"""Cascade deletion for roles and permissions.

This is the only sanctioned way to delete a role or permission: every edge
referencing the entity is removed first, then the row itself. In
transactional mode both phases commit or roll back together. In best-effort
mode a failed edge cleanup is logged and the row delete is still attempted;
a store with foreign keys then rejects the row delete rather than leave a
dangling edge.

Reference checks run before any write. In transactional mode they read
through the same session as the cleanup and the row delete.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Protocol
from uuid import UUID

from sqlalchemy import column, select, table
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from .audit import AuditChanges, AuditEvent, AuditSink, record_safely
from .errors import NotFoundError, ReferencedEntityError, not_found
from .logging import log_context
from .repository import EntityRecord, GraphRepository
from .types import ActionType, EdgeFilter, EntityKind, Relation

logger = logging.getLogger(__name__)

_CASCADE_PLAN: dict[EntityKind, tuple[tuple[Relation, str], ...]] = {
    EntityKind.ROLE: (
        (Relation.PRINCIPAL_ROLES, "role_id"),
        (Relation.ROLE_PERMISSIONS, "role_id"),
    ),
    EntityKind.PERMISSION: (
        (Relation.PRINCIPAL_PERMISSIONS, "permission_id"),
        (Relation.ROLE_PERMISSIONS, "permission_id"),
    ),
}

_COLLECTIONS = {EntityKind.ROLE: "Role", EntityKind.PERMISSION: "Permission"}


# ---------------------------------------------------------------------------
# Reference checks
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ReferenceCheckTarget:
    """A table whose ``columns`` may hold the id of the entity being deleted."""

    table: str
    columns: tuple[str, ...]
    id_column: str = "id"


@dataclass(frozen=True)
class ReferenceHit:
    table: str
    column: str
    row_id: str


class ReferenceChecker(Protocol):
    def find_reference(
        self, kind: EntityKind, entity_id: UUID, session: Session | None = None
    ) -> ReferenceHit | None: ...


class SqlReferenceChecker:
    """Look for foreign references to a role or permission outside the graph.

    When handed the delete's own session the lookup shares its transaction;
    otherwise it opens a short-lived session of its own. Either way a row
    inserted by another transaction after the lookup is only rejected if the
    referencing table carries a foreign key.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        targets: Mapping[EntityKind, Sequence[ReferenceCheckTarget]],
    ) -> None:
        self._session_factory = session_factory
        self._targets = {kind: tuple(items) for kind, items in targets.items()}

    def find_reference(
        self, kind: EntityKind, entity_id: UUID, session: Session | None = None
    ) -> ReferenceHit | None:
        targets = self._targets.get(kind, ())
        if not targets:
            return None
        if session is not None:
            return self._lookup(session, targets, entity_id)
        with self._session_factory() as own_session:
            return self._lookup(own_session, targets, entity_id)

    @staticmethod
    def _lookup(
        session: Session, targets: Sequence[ReferenceCheckTarget], entity_id: UUID
    ) -> ReferenceHit | None:
        for target in targets:
            tbl = table(
                target.table,
                column(target.id_column),
                *(column(name) for name in target.columns),
            )
            for name in target.columns:
                stmt = (
                    select(tbl.c[target.id_column])
                    .where(tbl.c[name] == str(entity_id))
                    .limit(1)
                )
                row_id = session.execute(stmt).scalar()
                if row_id is not None:
                    return ReferenceHit(table=target.table, column=name, row_id=str(row_id))
        return None


# ---------------------------------------------------------------------------
# Guard
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DeletionReport:
    """What a cascade delete removed."""

    entity: EntityRecord
    edges_removed: Mapping[Relation, int] = field(default_factory=lambda: MappingProxyType({}))
    cleanup_failures: Mapping[Relation, str] = field(
        default_factory=lambda: MappingProxyType({})
    )

    @property
    def total_edges_removed(self) -> int:
        return sum(self.edges_removed.values())


class CascadeDeletionGuard:
    """Delete roles and permissions together with every edge that references them."""

    def __init__(
        self,
        repository: GraphRepository,
        audit_sink: AuditSink,
        *,
        transactional: bool = True,
        reference_checks: Iterable[ReferenceChecker] = (),
    ) -> None:
        self._repository = repository
        self._audit_sink = audit_sink
        self._transactional = transactional
        self._reference_checks = tuple(reference_checks)

    def delete_role(self, role_id: UUID, *, actor_id: UUID) -> DeletionReport:
        return self._delete(EntityKind.ROLE, role_id, actor_id=actor_id)

    def delete_permission(self, permission_id: UUID, *, actor_id: UUID) -> DeletionReport:
        return self._delete(EntityKind.PERMISSION, permission_id, actor_id=actor_id)

    def delete_roles(self, role_ids: Iterable[UUID], *, actor_id: UUID) -> list[DeletionReport]:
        """Delete several roles; ids that no longer exist are skipped."""
        return self._delete_many(EntityKind.ROLE, role_ids, actor_id=actor_id)

    def delete_permissions(
        self, permission_ids: Iterable[UUID], *, actor_id: UUID
    ) -> list[DeletionReport]:
        """Delete several permissions; ids that no longer exist are skipped."""
        return self._delete_many(EntityKind.PERMISSION, permission_ids, actor_id=actor_id)

    def _delete_many(
        self, kind: EntityKind, ids: Iterable[UUID], *, actor_id: UUID
    ) -> list[DeletionReport]:
        reports: list[DeletionReport] = []
        for entity_id in dict.fromkeys(ids):
            try:
                reports.append(self._delete(kind, entity_id, actor_id=actor_id))
            except NotFoundError:
                logger.debug(
                    "access_graph.cascade.skip_missing",
                    extra=log_context(entity_kind=kind.value, entity_id=str(entity_id)),
                )
        return reports

    def _delete(self, kind: EntityKind, entity_id: UUID, *, actor_id: UUID) -> DeletionReport:
        entity = self._repository.get_entity(kind, entity_id)
        if entity is None:
            raise not_found(kind, entity_id)

        if self._transactional:
            with self._repository.unit_of_work() as session:
                self._check_references(kind, entity_id, session)
                report = self._cascade(entity, tolerate_cleanup_failures=False)
        else:
            self._check_references(kind, entity_id, None)
            report = self._cascade(entity, tolerate_cleanup_failures=True)

        removed_text = ", ".join(
            f"{count} {relation.value}" for relation, count in report.edges_removed.items()
        )
        record_safely(
            self._audit_sink,
            AuditEvent(
                detail=f"Deleted {kind.value}: {entity.name} ({removed_text or 'no edges'})",
                action_type=ActionType.DELETE,
                collection=_COLLECTIONS[kind],
                object_id=str(entity.id),
                actor_id=actor_id,
                changes=AuditChanges(
                    before={
                        **entity.snapshot(),
                        "edges_removed": {
                            relation.value: count
                            for relation, count in report.edges_removed.items()
                        },
                    },
                    after=None,
                ),
            ),
        )
        logger.info(
            f"access_graph.cascade.{kind.value}.deleted",
            extra=log_context(
                actor_id=actor_id,
                entity_id=str(entity.id),
                edges_removed=report.total_edges_removed,
                cleanup_failures=len(report.cleanup_failures),
            ),
        )
        return report

    def _check_references(
        self, kind: EntityKind, entity_id: UUID, session: Session | None
    ) -> None:
        for checker in self._reference_checks:
            hit = checker.find_reference(kind, entity_id, session)
            if hit is not None:
                raise ReferencedEntityError(
                    kind,
                    entity_id,
                    table=hit.table,
                    column=hit.column,
                    row_id=hit.row_id,
                )

    def _cascade(self, entity: EntityRecord, *, tolerate_cleanup_failures: bool) -> DeletionReport:
        removed: dict[Relation, int] = {}
        failures: dict[Relation, str] = {}

        for relation, column_name in _CASCADE_PLAN[entity.kind]:
            predicate = EdgeFilter(**{column_name: entity.id})
            try:
                removed[relation] = self._repository.delete_edges_where(relation, predicate)
            except SQLAlchemyError as exc:
                if not tolerate_cleanup_failures:
                    raise
                failures[relation] = str(exc).splitlines()[0][:200]
                logger.warning(
                    "access_graph.cascade.cleanup.failed",
                    extra=log_context(relation=relation, entity_id=str(entity.id)),
                    exc_info=exc,
                )

        if not self._repository.delete_entity(entity.kind, entity.id):
            # Another caller deleted the row between the lookup and now.
            raise not_found(entity.kind, entity.id)

        return DeletionReport(
            entity=entity,
            edges_removed=MappingProxyType(removed),
            cleanup_failures=MappingProxyType(failures),
        )


__all__ = [
    "CascadeDeletionGuard",
    "DeletionReport",
    "ReferenceCheckTarget",
    "ReferenceChecker",
    "ReferenceHit",
    "SqlReferenceChecker",
]
