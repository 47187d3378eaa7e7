"""Type definitions shared across the access graph."""

from __future__ import annotations

import enum
from dataclasses import dataclass
from uuid import UUID


class PrincipalType(str, enum.Enum):
    """Principal kinds that may hold roles and direct permissions."""

    USER = "User"


class EntityKind(str, enum.Enum):
    """Graph entities with their own rows."""

    ROLE = "role"
    PERMISSION = "permission"


class AnchorKind(str, enum.Enum):
    """Which side of a relation is held fixed during reconciliation."""

    ROLE = "role"
    PRINCIPAL = "principal"


class Relation(str, enum.Enum):
    """Edge tables of the authorization graph."""

    ROLE_PERMISSIONS = "role_permissions"
    PRINCIPAL_ROLES = "principal_roles"
    PRINCIPAL_PERMISSIONS = "principal_permissions"

    @property
    def anchor_kind(self) -> AnchorKind:
        if self is Relation.ROLE_PERMISSIONS:
            return AnchorKind.ROLE
        return AnchorKind.PRINCIPAL

    @property
    def target_kind(self) -> EntityKind:
        if self is Relation.PRINCIPAL_ROLES:
            return EntityKind.ROLE
        return EntityKind.PERMISSION

    @property
    def collection(self) -> str:
        """Collection name recorded in audit events for this edge table."""
        return _RELATION_COLLECTIONS[self]


_RELATION_COLLECTIONS = {
    Relation.ROLE_PERMISSIONS: "RolePermission",
    Relation.PRINCIPAL_ROLES: "PrincipalRole",
    Relation.PRINCIPAL_PERMISSIONS: "PrincipalPermission",
}


class ActionType(str, enum.Enum):
    """Audit action classification."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class EdgeWriteStatus(str, enum.Enum):
    """Outcome of a single edge write."""

    CREATED = "created"
    ALREADY_EXISTS = "already_exists"
    DELETED = "deleted"
    NOT_FOUND = "not_found"

    @property
    def present(self) -> bool:
        """Whether the edge exists after the write."""
        return self in {EdgeWriteStatus.CREATED, EdgeWriteStatus.ALREADY_EXISTS}


@dataclass(frozen=True)
class Anchor:
    """Fixed side of a relation: a role, or a typed principal."""

    kind: AnchorKind
    id: UUID
    principal_type: PrincipalType | None = None

    def __post_init__(self) -> None:
        if self.kind is AnchorKind.PRINCIPAL and self.principal_type is None:
            raise ValueError("Principal anchors require a principal_type")
        if self.kind is AnchorKind.ROLE and self.principal_type is not None:
            raise ValueError("Role anchors do not carry a principal_type")

    @classmethod
    def role(cls, role_id: UUID) -> Anchor:
        return cls(kind=AnchorKind.ROLE, id=role_id)

    @classmethod
    def principal(
        cls,
        principal_id: UUID,
        principal_type: PrincipalType = PrincipalType.USER,
    ) -> Anchor:
        return cls(kind=AnchorKind.PRINCIPAL, id=principal_id, principal_type=principal_type)

    @property
    def label(self) -> str:
        if self.principal_type is not None:
            return f"{self.principal_type.value}:{self.id}"
        return f"{self.kind.value}:{self.id}"


@dataclass(frozen=True)
class EdgeFilter:
    """Predicate for bulk edge deletion; unset fields are unconstrained."""

    role_id: UUID | None = None
    permission_id: UUID | None = None
    principal_id: UUID | None = None
    principal_type: PrincipalType | None = None

    def __post_init__(self) -> None:
        if self.role_id is None and self.permission_id is None and self.principal_id is None:
            raise ValueError("EdgeFilter requires role_id, permission_id, or principal_id")


__all__ = [
    "ActionType",
    "Anchor",
    "AnchorKind",
    "EdgeFilter",
    "EdgeWriteStatus",
    "EntityKind",
    "PrincipalType",
    "Relation",
]
