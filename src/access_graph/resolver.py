"""Effective-permission resolution (read path).

A principal's effective permissions are its direct grants plus every
permission held by any role assigned to it. Grants are purely additive and
de-duplicated by permission id, so a permission reachable through several
paths appears once. The resolver is stateless; callers that cache results
own invalidation.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from uuid import UUID

from .repository import EntityRecord, GraphRepository, PermissionRecord, RoleRecord
from .types import Anchor, EntityKind, PrincipalType, Relation


@dataclass(frozen=True)
class EffectivePermissions:
    """Effective permissions of one principal, with the path each one came from."""

    principal: Anchor
    direct: frozenset[PermissionRecord] = frozenset()
    roles: tuple[RoleRecord, ...] = ()
    by_role: Mapping[UUID, frozenset[PermissionRecord]] = field(
        default_factory=lambda: MappingProxyType({})
    )

    @property
    def permissions(self) -> frozenset[PermissionRecord]:
        merged = set(self.direct)
        for granted in self.by_role.values():
            merged.update(granted)
        return frozenset(merged)

    @property
    def names(self) -> tuple[str, ...]:
        return tuple(sorted(p.name for p in self.permissions))

    def has(self, permission_name: str) -> bool:
        return any(p.name == permission_name for p in self.permissions)


class EffectivePermissionResolver:
    def __init__(self, repository: GraphRepository) -> None:
        self._repository = repository

    def resolve(
        self,
        principal_id: UUID,
        principal_type: PrincipalType = PrincipalType.USER,
    ) -> frozenset[PermissionRecord]:
        """Return the de-duplicated union of direct and role-derived permissions."""
        return self.explain(principal_id, principal_type).permissions

    def explain(
        self,
        principal_id: UUID,
        principal_type: PrincipalType = PrincipalType.USER,
    ) -> EffectivePermissions:
        anchor = Anchor.principal(principal_id, principal_type)
        # One unit of work so every read sees the same transaction.
        with self._repository.unit_of_work():
            direct_ids = self._repository.find_edges(Relation.PRINCIPAL_PERMISSIONS, anchor)
            role_ids = self._repository.find_edges(Relation.PRINCIPAL_ROLES, anchor)
            roles = self._repository.get_entities(EntityKind.ROLE, role_ids)
            grants = self._repository.permission_ids_for_roles(r.id for r in roles)

            wanted = set(direct_ids)
            for permission_ids in grants.values():
                wanted.update(permission_ids)
            permissions = {
                record.id: record
                for record in self._repository.get_entities(EntityKind.PERMISSION, wanted)
            }

        def _records(ids: set[UUID]) -> frozenset[PermissionRecord]:
            # Edges to rows deleted mid-read are dropped.
            return frozenset(_as_permission(permissions[i]) for i in ids if i in permissions)

        return EffectivePermissions(
            principal=anchor,
            direct=_records(direct_ids),
            roles=tuple(_as_role(r) for r in roles),
            by_role=MappingProxyType(
                {role.id: _records(grants.get(role.id, set())) for role in roles}
            ),
        )

    def roles_for(
        self,
        principal_id: UUID,
        principal_type: PrincipalType = PrincipalType.USER,
    ) -> list[RoleRecord]:
        anchor = Anchor.principal(principal_id, principal_type)
        role_ids = self._repository.find_edges(Relation.PRINCIPAL_ROLES, anchor)
        return [_as_role(r) for r in self._repository.get_entities(EntityKind.ROLE, role_ids)]

    def direct_permissions_for(
        self,
        principal_id: UUID,
        principal_type: PrincipalType = PrincipalType.USER,
    ) -> list[PermissionRecord]:
        anchor = Anchor.principal(principal_id, principal_type)
        permission_ids = self._repository.find_edges(Relation.PRINCIPAL_PERMISSIONS, anchor)
        return [
            _as_permission(p)
            for p in self._repository.get_entities(EntityKind.PERMISSION, permission_ids)
        ]


def _as_role(record: EntityRecord) -> RoleRecord:
    if not isinstance(record, RoleRecord):
        raise TypeError(f"Expected a role record, got {type(record).__name__}")
    return record


def _as_permission(record: EntityRecord) -> PermissionRecord:
    if not isinstance(record, PermissionRecord):
        raise TypeError(f"Expected a permission record, got {type(record).__name__}")
    return record


__all__ = ["EffectivePermissionResolver", "EffectivePermissions"]
