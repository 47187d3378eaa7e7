"""Database schema, engine, and session helpers for the access graph."""

from .base import NAMING_CONVENTION, Base, metadata
from .engine import (
    assert_tables_exist,
    build_engine,
    build_sessionmaker,
    create_schema,
    session_scope,
)
from .mixins import ActorStampMixin, TimestampMixin, UUIDPrimaryKeyMixin, utc_now
from .models import (
    EDGE_MODELS,
    AuditLog,
    Permission,
    PrincipalPermission,
    PrincipalRole,
    Role,
    RolePermission,
)
from .types import UTCDateTime, UUIDType

__all__ = [
    "ActorStampMixin",
    "AuditLog",
    "Base",
    "EDGE_MODELS",
    "NAMING_CONVENTION",
    "Permission",
    "PrincipalPermission",
    "PrincipalRole",
    "Role",
    "RolePermission",
    "TimestampMixin",
    "UTCDateTime",
    "UUIDPrimaryKeyMixin",
    "UUIDType",
    "assert_tables_exist",
    "build_engine",
    "build_sessionmaker",
    "create_schema",
    "metadata",
    "session_scope",
    "utc_now",
]
