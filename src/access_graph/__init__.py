"""Access graph: reconciliation engine for roles, permissions, and their assignments.

Typical use goes through :class:`AccessGraphService`; the reconciler, cascade
guard, and resolver can also be wired directly against any
:class:`GraphRepository`.
"""

from .audit import AuditChanges, AuditEvent, AuditSink, LoggingAuditSink, SqlAuditSink
from .cascade import CascadeDeletionGuard, DeletionReport, ReferenceCheckTarget
from .cascade import SqlReferenceChecker
from .errors import (
    AccessGraphError,
    ConflictError,
    EdgeWriteError,
    NotFoundError,
    ReferencedEntityError,
    ValidationError,
)
from .reconciler import AssignmentReconciler, ReconcileResult
from .repository import GraphRepository, PermissionRecord, RoleRecord, SqlGraphRepository
from .resolver import EffectivePermissionResolver, EffectivePermissions
from .service import AccessGraphService
from .types import Anchor, EdgeWriteStatus, EntityKind, PrincipalType, Relation

__all__ = [
    "AccessGraphError",
    "AccessGraphService",
    "Anchor",
    "AssignmentReconciler",
    "AuditChanges",
    "AuditEvent",
    "AuditSink",
    "CascadeDeletionGuard",
    "ConflictError",
    "DeletionReport",
    "EdgeWriteError",
    "EdgeWriteStatus",
    "EffectivePermissionResolver",
    "EffectivePermissions",
    "EntityKind",
    "GraphRepository",
    "LoggingAuditSink",
    "NotFoundError",
    "PermissionRecord",
    "PrincipalType",
    "ReconcileResult",
    "ReferenceCheckTarget",
    "ReferencedEntityError",
    "Relation",
    "RoleRecord",
    "SqlAuditSink",
    "SqlGraphRepository",
    "SqlReferenceChecker",
    "ValidationError",
    "__version__",
]
__version__ = "0.1.0"
