"""Domain errors raised by the access graph core."""

from __future__ import annotations

from uuid import UUID

from .types import EntityKind, Relation


class AccessGraphError(Exception):
    """Base class for access graph errors."""


class NotFoundError(AccessGraphError):
    """Raised when a targeted role or permission does not exist."""

    def __init__(self, kind: EntityKind, entity_id: UUID) -> None:
        self.kind = kind
        self.entity_id = entity_id
        super().__init__(f"{kind.value.capitalize()} not found: {entity_id}")


class RoleNotFoundError(NotFoundError):
    def __init__(self, role_id: UUID) -> None:
        super().__init__(EntityKind.ROLE, role_id)


class PermissionNotFoundError(NotFoundError):
    def __init__(self, permission_id: UUID) -> None:
        super().__init__(EntityKind.PERMISSION, permission_id)


def not_found(kind: EntityKind, entity_id: UUID) -> NotFoundError:
    if kind is EntityKind.ROLE:
        return RoleNotFoundError(entity_id)
    return PermissionNotFoundError(entity_id)


class ValidationError(AccessGraphError, ValueError):
    """Raised when an entity name or guard is blank or too long."""


class ConflictError(AccessGraphError):
    """Raised when an operation would violate name uniqueness."""


class RoleConflictError(ConflictError):
    """Raised when a role name is already taken."""


class PermissionConflictError(ConflictError):
    """Raised when a permission name is already taken."""


class AnchorRelationMismatchError(AccessGraphError, ValueError):
    """Raised when a relation is used with the wrong kind of anchor."""


class EdgeWriteError(AccessGraphError):
    """Raised when the store rejects a single edge write."""

    def __init__(self, relation: Relation, other_id: UUID, reason: str) -> None:
        self.relation = relation
        self.other_id = other_id
        self.reason = reason
        super().__init__(f"{relation.value} edge to {other_id} rejected: {reason}")


class ReferencedEntityError(AccessGraphError):
    """Raised when a reference check blocks a deletion."""

    def __init__(self, kind: EntityKind, entity_id: UUID, *, table: str, column: str, row_id: str):
        self.kind = kind
        self.entity_id = entity_id
        self.table = table
        self.column = column
        self.row_id = row_id
        super().__init__(
            f"Cannot delete {kind.value} {entity_id}: referenced by {table}.{column} (row {row_id})"
        )


__all__ = [
    "AccessGraphError",
    "AnchorRelationMismatchError",
    "ConflictError",
    "EdgeWriteError",
    "NotFoundError",
    "PermissionConflictError",
    "PermissionNotFoundError",
    "ReferencedEntityError",
    "RoleConflictError",
    "RoleNotFoundError",
    "ValidationError",
    "not_found",
]
