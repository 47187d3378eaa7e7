"""Default permission and role catalog.

Seeding creates any missing entries and converges each catalog role's
permission set to the listed names. Keep names stable: callers check
permissions by name.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class PermissionDef:
    """Static permission definition; ``guard_name=None`` uses the service default."""

    name: str
    guard_name: str | None = None


@dataclass(frozen=True)
class RoleDef:
    """Static role definition seeded on demand."""

    name: str
    permissions: tuple[str, ...]
    guard_name: str | None = None


PERMISSIONS: tuple[PermissionDef, ...] = (
    PermissionDef(name="read-dashboard"),
    PermissionDef(name="read-users"),
    PermissionDef(name="read-roles"),
    PermissionDef(name="read-permissions"),
)

ROLES: tuple[RoleDef, ...] = (
    # Read access to every admin surface.
    RoleDef(name="developer", permissions=tuple(defn.name for defn in PERMISSIONS)),
)

__all__ = [
    "PERMISSIONS",
    "PermissionDef",
    "ROLES",
    "RoleDef",
]
