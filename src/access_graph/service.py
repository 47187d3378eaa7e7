"""Access graph service: administrative entry point over the core.

Wires the repository, audit sink, reconciler, cascade guard, and resolver
from :class:`~access_graph.settings.Settings`, and adds the entity-level
operations callers need around them (create, rename, list, seed).
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from typing import cast
from uuid import UUID

from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from .audit import AuditChanges, AuditEntry, AuditEvent, AuditSink, SqlAuditSink
from .audit import list_events, record_safely
from .cascade import CascadeDeletionGuard, DeletionReport, ReferenceChecker
from .db.engine import build_engine, build_sessionmaker, create_schema
from .errors import (
    PermissionConflictError,
    RoleConflictError,
    ValidationError,
    not_found,
)
from .locks import AnchorLocks
from .logging import log_context
from .reconciler import AssignmentReconciler, ReconcileResult
from .registry import PERMISSIONS, ROLES
from .repository import EntityRecord, GraphRepository, PermissionRecord, RoleRecord
from .repository import SqlGraphRepository
from .resolver import EffectivePermissionResolver, EffectivePermissions
from .settings import Settings, get_settings
from .types import ActionType, Anchor, EdgeWriteStatus, EntityKind, PrincipalType, Relation

logger = logging.getLogger(__name__)

_NAME_MAX_LENGTH = 150
_GUARD_MAX_LENGTH = 100
_COLLECTIONS = {EntityKind.ROLE: "Role", EntityKind.PERMISSION: "Permission"}


def _normalize_name(kind: EntityKind, value: str) -> str:
    candidate = value.strip()
    if not candidate:
        raise ValidationError(f"{kind.value.capitalize()} name is required")
    if len(candidate) > _NAME_MAX_LENGTH:
        raise ValidationError(
            f"{kind.value.capitalize()} name must be at most {_NAME_MAX_LENGTH} characters"
        )
    return candidate


def _normalize_guard(value: str | None, default: str) -> str:
    candidate = (value or "").strip() or default
    if len(candidate) > _GUARD_MAX_LENGTH:
        raise ValidationError(f"guard_name must be at most {_GUARD_MAX_LENGTH} characters")
    return candidate


def _conflict(kind: EntityKind, name: str) -> Exception:
    if kind is EntityKind.ROLE:
        return RoleConflictError(f"Role name already exists: {name}")
    return PermissionConflictError(f"Permission name already exists: {name}")


@dataclass(frozen=True)
class RoleUpdate:
    """Outcome of :meth:`AccessGraphService.update_role`."""

    role: RoleRecord
    permissions: ReconcileResult | None = None


@dataclass(frozen=True)
class SeedResult:
    created_permissions: tuple[PermissionRecord, ...] = ()
    created_roles: tuple[RoleRecord, ...] = ()
    role_syncs: tuple[ReconcileResult, ...] = ()
    assignments: tuple[ReconcileResult, ...] = ()


class AccessGraphService:
    """Administrative operations on roles, permissions, and assignments."""

    def __init__(
        self,
        repository: GraphRepository,
        audit_sink: AuditSink,
        *,
        default_guard_name: str = "User",
        emit_zero_delta_audit: bool = True,
        transactional_reconcile: bool = False,
        transactional_cascade: bool = True,
        edge_write_concurrency: int = 1,
        anchor_locking: bool = True,
        reference_checks: Iterable[ReferenceChecker] = (),
        session_factory: sessionmaker[Session] | None = None,
    ) -> None:
        self._repository = repository
        self._audit_sink = audit_sink
        self._default_guard_name = default_guard_name
        self._session_factory = session_factory
        self.reconciler = AssignmentReconciler(
            repository,
            audit_sink,
            emit_zero_delta_audit=emit_zero_delta_audit,
            transactional=transactional_reconcile,
            max_workers=edge_write_concurrency,
            locks=AnchorLocks() if anchor_locking else None,
        )
        self.guard = CascadeDeletionGuard(
            repository,
            audit_sink,
            transactional=transactional_cascade,
            reference_checks=reference_checks,
        )
        self.resolver = EffectivePermissionResolver(repository)

    @classmethod
    def from_settings(
        cls,
        settings: Settings | None = None,
        *,
        engine: Engine | None = None,
        audit_sink: AuditSink | None = None,
        reference_checks: Iterable[ReferenceChecker] = (),
        create_tables: bool = False,
    ) -> AccessGraphService:
        settings = settings or get_settings()
        engine = engine or build_engine(settings)
        if create_tables:
            create_schema(engine)
        session_factory = build_sessionmaker(engine)
        return cls(
            SqlGraphRepository(session_factory),
            audit_sink or SqlAuditSink(session_factory),
            default_guard_name=settings.default_guard_name,
            emit_zero_delta_audit=settings.audit_zero_delta_reconciles,
            transactional_reconcile=settings.transactional_reconcile,
            transactional_cascade=settings.transactional_cascade,
            edge_write_concurrency=settings.edge_write_concurrency,
            anchor_locking=settings.anchor_locking,
            reference_checks=reference_checks,
            session_factory=session_factory,
        )

    # ------------- entities ---------------------

    def create_role(
        self, name: str, guard_name: str | None = None, *, actor_id: UUID
    ) -> RoleRecord:
        """Create a role; raises :class:`RoleConflictError` if the name is taken."""
        return cast(RoleRecord, self._create(EntityKind.ROLE, name, guard_name, actor_id))

    def create_permission(
        self, name: str, guard_name: str | None = None, *, actor_id: UUID
    ) -> PermissionRecord:
        """Create a permission; raises :class:`PermissionConflictError` if the name is taken."""
        return cast(
            PermissionRecord, self._create(EntityKind.PERMISSION, name, guard_name, actor_id)
        )

    def ensure_roles(
        self, names: Iterable[str], guard_name: str | None = None, *, actor_id: UUID
    ) -> list[RoleRecord]:
        """Create every missing role in ``names``; returns only the roles created."""
        created = self._ensure(EntityKind.ROLE, names, guard_name, actor_id)
        return [cast(RoleRecord, record) for record in created]

    def ensure_permissions(
        self, names: Iterable[str], guard_name: str | None = None, *, actor_id: UUID
    ) -> list[PermissionRecord]:
        """Create every missing permission in ``names``; returns only those created."""
        created = self._ensure(EntityKind.PERMISSION, names, guard_name, actor_id)
        return [cast(PermissionRecord, record) for record in created]

    def _create(
        self, kind: EntityKind, name: str, guard_name: str | None, actor_id: UUID
    ) -> EntityRecord:
        normalized = _normalize_name(kind, name)
        guard = _normalize_guard(guard_name, self._default_guard_name)
        if self._repository.find_entity_by_name(kind, normalized) is not None:
            raise _conflict(kind, normalized)

        record = self._repository.add_entity(
            kind, name=normalized, guard_name=guard, actor_id=actor_id
        )
        record_safely(
            self._audit_sink,
            AuditEvent(
                detail=f"Created {kind.value}: {record.name}",
                action_type=ActionType.CREATE,
                collection=_COLLECTIONS[kind],
                object_id=str(record.id),
                actor_id=actor_id,
                changes=AuditChanges(before=None, after=record.snapshot()),
            ),
        )
        logger.info(
            f"access_graph.{kind.value}.created",
            extra=log_context(
                actor_id=actor_id, entity_id=str(record.id), entity_name=record.name
            ),
        )
        return record

    def _ensure(
        self,
        kind: EntityKind,
        names: Iterable[str],
        guard_name: str | None,
        actor_id: UUID,
    ) -> list[EntityRecord]:
        created: list[EntityRecord] = []
        for name in dict.fromkeys(_normalize_name(kind, n) for n in names):
            if self._repository.find_entity_by_name(kind, name) is not None:
                continue
            created.append(self._create(kind, name, guard_name, actor_id))
        return created

    def update_role(
        self,
        role_id: UUID,
        *,
        actor_id: UUID,
        name: str | None = None,
        guard_name: str | None = None,
        permission_ids: Iterable[UUID] | None = None,
    ) -> RoleUpdate:
        """Rename a role and, when ``permission_ids`` is given, converge its permissions."""
        record = self._update(EntityKind.ROLE, role_id, actor_id, name, guard_name)
        result = None
        if permission_ids is not None:
            result = self.reconciler.sync_role_permissions(
                role_id, permission_ids, actor_id=actor_id
            )
        return RoleUpdate(role=cast(RoleRecord, record), permissions=result)

    def update_permission(
        self,
        permission_id: UUID,
        *,
        actor_id: UUID,
        name: str | None = None,
        guard_name: str | None = None,
    ) -> PermissionRecord:
        record = self._update(EntityKind.PERMISSION, permission_id, actor_id, name, guard_name)
        return cast(PermissionRecord, record)

    def _update(
        self,
        kind: EntityKind,
        entity_id: UUID,
        actor_id: UUID,
        name: str | None,
        guard_name: str | None,
    ) -> EntityRecord:
        before = self._repository.get_entity(kind, entity_id)
        if before is None:
            raise not_found(kind, entity_id)

        new_name = _normalize_name(kind, name) if name is not None else None
        if new_name is not None and new_name != before.name:
            clash = self._repository.find_entity_by_name(kind, new_name)
            if clash is not None and clash.id != entity_id:
                raise _conflict(kind, new_name)
        new_guard = (
            _normalize_guard(guard_name, self._default_guard_name)
            if guard_name is not None
            else None
        )

        after = self._repository.update_entity(
            kind, entity_id, actor_id=actor_id, name=new_name, guard_name=new_guard
        )
        if after is None:
            raise not_found(kind, entity_id)

        record_safely(
            self._audit_sink,
            AuditEvent(
                detail=f"Updated {kind.value}: {after.name}",
                action_type=ActionType.UPDATE,
                collection=_COLLECTIONS[kind],
                object_id=str(entity_id),
                actor_id=actor_id,
                changes=AuditChanges(before=before.snapshot(), after=after.snapshot()),
            ),
        )
        return after

    def get_role(self, role_id: UUID) -> RoleRecord | None:
        return cast(RoleRecord | None, self._repository.get_entity(EntityKind.ROLE, role_id))

    def get_permission(self, permission_id: UUID) -> PermissionRecord | None:
        record = self._repository.get_entity(EntityKind.PERMISSION, permission_id)
        return cast(PermissionRecord | None, record)

    def list_roles(self, guard_name: str | None = None) -> list[RoleRecord]:
        records = self._repository.list_entities(EntityKind.ROLE, guard_name=guard_name)
        return [cast(RoleRecord, record) for record in records]

    def list_permissions(self, guard_name: str | None = None) -> list[PermissionRecord]:
        records = self._repository.list_entities(EntityKind.PERMISSION, guard_name=guard_name)
        return [cast(PermissionRecord, record) for record in records]

    def role_permission_ids(self, role_id: UUID) -> set[UUID]:
        return self._repository.find_edges(Relation.ROLE_PERMISSIONS, Anchor.role(role_id))

    # ------------- assignments ------------------

    def reconcile(
        self,
        anchor: Anchor,
        relation: Relation,
        desired_ids: Iterable[UUID],
        *,
        actor_id: UUID,
    ) -> ReconcileResult:
        return self.reconciler.reconcile(anchor, relation, desired_ids, actor_id=actor_id)

    def assign(
        self, anchor: Anchor, relation: Relation, other_id: UUID, *, actor_id: UUID
    ) -> EdgeWriteStatus:
        return self.reconciler.assign(anchor, relation, other_id, actor_id=actor_id)

    def revoke(
        self, anchor: Anchor, relation: Relation, other_id: UUID, *, actor_id: UUID
    ) -> EdgeWriteStatus:
        return self.reconciler.revoke(anchor, relation, other_id, actor_id=actor_id)

    def principals_affected_by_role(self, role_id: UUID) -> set[tuple[PrincipalType, UUID]]:
        """Principals whose effective permissions change when ``role_id`` changes."""
        return self._repository.principals_with_role(role_id)

    # ------------- deletion ---------------------

    def delete_role(self, role_id: UUID, *, actor_id: UUID) -> DeletionReport:
        return self.guard.delete_role(role_id, actor_id=actor_id)

    def delete_permission(self, permission_id: UUID, *, actor_id: UUID) -> DeletionReport:
        return self.guard.delete_permission(permission_id, actor_id=actor_id)

    def delete_roles(self, role_ids: Iterable[UUID], *, actor_id: UUID) -> list[DeletionReport]:
        return self.guard.delete_roles(role_ids, actor_id=actor_id)

    def delete_permissions(
        self, permission_ids: Iterable[UUID], *, actor_id: UUID
    ) -> list[DeletionReport]:
        return self.guard.delete_permissions(permission_ids, actor_id=actor_id)

    # ------------- read path --------------------

    def resolve(
        self, principal_id: UUID, principal_type: PrincipalType = PrincipalType.USER
    ) -> frozenset[PermissionRecord]:
        return self.resolver.resolve(principal_id, principal_type)

    def explain(
        self, principal_id: UUID, principal_type: PrincipalType = PrincipalType.USER
    ) -> EffectivePermissions:
        return self.resolver.explain(principal_id, principal_type)

    def audit_events(
        self,
        *,
        collection: str | None = None,
        object_id: str | None = None,
        actor_id: UUID | None = None,
        limit: int = 50,
    ) -> Sequence[AuditEntry]:
        if self._session_factory is None:
            raise RuntimeError("Audit history requires a SQL-backed service")
        return list_events(
            self._session_factory,
            collection=collection,
            object_id=object_id,
            actor_id=actor_id,
            limit=limit,
        )

    # ------------- seeding ----------------------

    def seed_registry(self, *, actor_id: UUID, assign_to: UUID | None = None) -> SeedResult:
        """Create the default catalog and converge each catalog role's permissions.

        When ``assign_to`` is given, that user is granted every catalog role.
        """
        created_permissions: list[PermissionRecord] = []
        for permission_def in PERMISSIONS:
            created_permissions += self.ensure_permissions(
                [permission_def.name], permission_def.guard_name, actor_id=actor_id
            )
        created_roles: list[RoleRecord] = []
        for role_def in ROLES:
            created_roles += self.ensure_roles(
                [role_def.name], role_def.guard_name, actor_id=actor_id
            )

        syncs: list[ReconcileResult] = []
        role_ids: list[UUID] = []
        for definition in ROLES:
            role = self._repository.find_entity_by_name(EntityKind.ROLE, definition.name)
            if role is None:
                # Deleted by another caller since ensure_roles ran.
                continue
            role_ids.append(role.id)
            permission_ids = []
            for permission_name in definition.permissions:
                permission = self._repository.find_entity_by_name(
                    EntityKind.PERMISSION, permission_name
                )
                if permission is not None:
                    permission_ids.append(permission.id)
            syncs.append(
                self.reconciler.sync_role_permissions(role.id, permission_ids, actor_id=actor_id)
            )

        assignments: list[ReconcileResult] = []
        if assign_to is not None:
            current = self._repository.find_edges(
                Relation.PRINCIPAL_ROLES, Anchor.principal(assign_to)
            )
            assignments.append(
                self.reconciler.sync_principal_roles(
                    assign_to, current | set(role_ids), actor_id=actor_id
                )
            )

        logger.info(
            "access_graph.seed.completed",
            extra=log_context(
                actor_id=actor_id,
                permissions_created=len(created_permissions),
                roles_created=len(created_roles),
            ),
        )
        return SeedResult(
            created_permissions=tuple(created_permissions),
            created_roles=tuple(created_roles),
            role_syncs=tuple(syncs),
            assignments=tuple(assignments),
        )


__all__ = ["AccessGraphService", "RoleUpdate", "SeedResult"]
