"""Authorization graph models: roles, permissions, edges, and the audit log."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID

from sqlalchemy import JSON, ForeignKey, Index, String, Text
from sqlalchemy import Enum as SAEnum
from sqlalchemy.orm import Mapped, mapped_column

from access_graph.types import ActionType, PrincipalType

from .base import Base
from .mixins import ActorStampMixin, TimestampMixin, UUIDPrimaryKeyMixin, utc_now
from .types import UTCDateTime, UUIDType


def _enum_values(enum_cls: type[Enum]) -> list[str]:
    return [member.value for member in enum_cls]


principal_type_enum = SAEnum(
    PrincipalType,
    name="principal_type",
    native_enum=False,
    length=40,
    values_callable=_enum_values,
)

action_type_enum = SAEnum(
    ActionType,
    name="audit_action_type",
    native_enum=False,
    length=20,
    values_callable=_enum_values,
)


class Role(UUIDPrimaryKeyMixin, TimestampMixin, ActorStampMixin, Base):
    """Named bundle of permissions."""

    __tablename__ = "roles"

    name: Mapped[str] = mapped_column(String(150), nullable=False)
    guard_name: Mapped[str] = mapped_column(String(100), nullable=False, default="User")

    __table_args__ = (
        Index("ix_roles_name", "name"),
        Index("ix_roles_guard_name", "guard_name"),
    )


class Permission(UUIDPrimaryKeyMixin, TimestampMixin, ActorStampMixin, Base):
    """Single grantable capability, conventionally named ``action-resource``."""

    __tablename__ = "permissions"

    name: Mapped[str] = mapped_column(String(150), nullable=False)
    guard_name: Mapped[str] = mapped_column(String(100), nullable=False, default="User")

    __table_args__ = (
        Index("ix_permissions_name", "name"),
        Index("ix_permissions_guard_name", "guard_name"),
    )


class RolePermission(Base):
    """Bridge table linking roles and permissions."""

    __tablename__ = "role_permissions"

    role_id: Mapped[UUID] = mapped_column(
        UUIDType(), ForeignKey("roles.id", ondelete="NO ACTION"), primary_key=True
    )
    permission_id: Mapped[UUID] = mapped_column(
        UUIDType(), ForeignKey("permissions.id", ondelete="NO ACTION"), primary_key=True
    )

    __table_args__ = (Index("ix_role_permissions_permission_id", "permission_id"),)


class PrincipalRole(Base):
    """Assignment of a role to a typed principal."""

    __tablename__ = "principal_roles"

    role_id: Mapped[UUID] = mapped_column(
        UUIDType(), ForeignKey("roles.id", ondelete="NO ACTION"), primary_key=True
    )
    principal_type: Mapped[PrincipalType] = mapped_column(principal_type_enum, primary_key=True)
    principal_id: Mapped[UUID] = mapped_column(UUIDType(), primary_key=True)

    __table_args__ = (
        Index("ix_principal_roles_principal", "principal_type", "principal_id"),
    )


class PrincipalPermission(Base):
    """Direct grant of a permission to a typed principal, bypassing roles."""

    __tablename__ = "principal_permissions"

    permission_id: Mapped[UUID] = mapped_column(
        UUIDType(), ForeignKey("permissions.id", ondelete="NO ACTION"), primary_key=True
    )
    principal_type: Mapped[PrincipalType] = mapped_column(principal_type_enum, primary_key=True)
    principal_id: Mapped[UUID] = mapped_column(UUIDType(), primary_key=True)

    __table_args__ = (
        Index("ix_principal_permissions_principal", "principal_type", "principal_id"),
    )


class AuditLog(UUIDPrimaryKeyMixin, Base):
    """Append-only record of authorization mutations."""

    __tablename__ = "audit_events"

    detail: Mapped[str] = mapped_column(Text(), nullable=False)
    action_type: Mapped[ActionType] = mapped_column(action_type_enum, nullable=False)
    collection: Mapped[str] = mapped_column(String(100), nullable=False)
    object_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    changes: Mapped[dict[str, Any] | None] = mapped_column(JSON(), nullable=True)
    actor_id: Mapped[UUID] = mapped_column(UUIDType(), nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utc_now)

    __table_args__ = (
        Index("ix_audit_events_collection_object", "collection", "object_id"),
        Index("ix_audit_events_created_at", "created_at"),
    )


EDGE_MODELS = (RolePermission, PrincipalRole, PrincipalPermission)


__all__ = [
    "AuditLog",
    "EDGE_MODELS",
    "Permission",
    "PrincipalPermission",
    "PrincipalRole",
    "Role",
    "RolePermission",
]
