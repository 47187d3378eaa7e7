"""Assignment reconciliation: converge an anchor's edge set to a target set.

Given an anchor (a role, or a typed principal), a relation, and the complete
desired set of related ids, the reconciler reads the current edges, removes
``current - desired``, then adds ``desired - current``. Each edge write is
independent: a rejected write is reported in :attr:`ReconcileResult.failed`
and never blocks its neighbours. Edges that already exist when added (a
concurrent writer won the race) count as added.

Connection-level store errors propagate unchanged. Audit failures are
logged and swallowed.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping
from concurrent.futures import ThreadPoolExecutor
from contextlib import ExitStack
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any
from uuid import UUID

from .audit import AuditChanges, AuditEvent, AuditSink, record_safely
from .errors import EdgeWriteError
from .locks import AnchorLocks
from .logging import log_context
from .repository import GraphRepository, check_anchor, sorted_ids
from .types import ActionType, Anchor, EdgeWriteStatus, PrincipalType, Relation

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReconcileResult:
    """Outcome of one reconciliation.

    ``removed`` and ``added`` hold only ids whose write actually succeeded;
    ``skipped`` holds ids that were already assigned; ``failed`` maps ids
    whose write was rejected to the store's reason.
    """

    anchor: Anchor
    relation: Relation
    removed: frozenset[UUID] = frozenset()
    added: frozenset[UUID] = frozenset()
    skipped: frozenset[UUID] = frozenset()
    failed: Mapping[UUID, str] = field(default_factory=lambda: MappingProxyType({}))

    @property
    def all_assigned(self) -> frozenset[UUID]:
        return self.added | self.skipped

    @property
    def changed(self) -> bool:
        return bool(self.added or self.removed)

    @property
    def is_partial(self) -> bool:
        return bool(self.failed)

    def to_audit_changes(self) -> AuditChanges:
        return AuditChanges(
            before=None,
            after={
                "relation": self.relation.value,
                "removed": [str(i) for i in sorted_ids(self.removed)],
                "added": [str(i) for i in sorted_ids(self.added)],
                "unchanged": [str(i) for i in sorted_ids(self.skipped)],
                "failed": {str(k): self.failed[k] for k in sorted_ids(self.failed)},
            },
        )


class AssignmentReconciler:
    """Computes and applies minimal add/remove deltas against the graph."""

    def __init__(
        self,
        repository: GraphRepository,
        audit_sink: AuditSink,
        *,
        emit_zero_delta_audit: bool = True,
        transactional: bool = False,
        max_workers: int = 1,
        locks: AnchorLocks | None = None,
    ) -> None:
        if max_workers < 1:
            raise ValueError("max_workers must be >= 1")
        self._repository = repository
        self._audit_sink = audit_sink
        self._emit_zero_delta_audit = emit_zero_delta_audit
        self._transactional = transactional
        self._max_workers = max_workers
        self._locks = locks

    # ------------- bulk sync ---------------------

    def reconcile(
        self,
        anchor: Anchor,
        relation: Relation,
        desired_ids: Iterable[UUID],
        *,
        actor_id: UUID,
    ) -> ReconcileResult:
        """Make the anchor's ``relation`` edges equal ``desired_ids``.

        ``desired_ids`` is the full target set, not a delta; an empty set
        removes every edge of this relation for the anchor. Ids are trusted:
        referential validation is the caller's job.
        """
        check_anchor(relation, anchor)
        desired = frozenset(desired_ids)

        with ExitStack() as stack:
            if self._locks is not None:
                stack.enter_context(self._locks.hold(relation, anchor))
            if self._transactional:
                stack.enter_context(self._repository.unit_of_work())
            result = self._apply(anchor, relation, desired)

        self._audit(result, actor_id=actor_id)

        if result.is_partial:
            log, event = logger.warning, "access_graph.reconcile.partial"
        else:
            log, event = logger.info, "access_graph.reconcile.success"
        log(
            event,
            extra=log_context(
                relation=relation,
                actor_id=actor_id,
                anchor=anchor.label,
                added=len(result.added),
                removed=len(result.removed),
                skipped=len(result.skipped),
                failed=len(result.failed),
            ),
        )
        return result

    def _apply(
        self, anchor: Anchor, relation: Relation, desired: frozenset[UUID]
    ) -> ReconcileResult:
        current = frozenset(self._repository.find_edges(relation, anchor))
        to_remove = current - desired
        to_add = desired - current
        unchanged = desired & current

        logger.debug(
            "access_graph.reconcile.start",
            extra=log_context(
                relation=relation,
                anchor=anchor.label,
                current=len(current),
                desired=len(desired),
            ),
        )

        failed: dict[UUID, str] = {}

        removed_outcomes = self._run_batch(
            lambda other_id: self._repository.delete_edge(relation, anchor, other_id),
            to_remove,
        )
        removed: set[UUID] = set()
        for other_id, outcome in removed_outcomes.items():
            if isinstance(outcome, EdgeWriteError):
                failed[other_id] = outcome.reason
            elif outcome is EdgeWriteStatus.DELETED:
                removed.add(other_id)

        added_outcomes = self._run_batch(
            lambda other_id: self._repository.create_edge(relation, anchor, other_id),
            to_add,
        )
        added: set[UUID] = set()
        for other_id, outcome in added_outcomes.items():
            if isinstance(outcome, EdgeWriteError):
                failed[other_id] = outcome.reason
            elif outcome.present:
                added.add(other_id)

        return ReconcileResult(
            anchor=anchor,
            relation=relation,
            removed=frozenset(removed),
            added=frozenset(added),
            skipped=unchanged,
            failed=MappingProxyType(failed),
        )

    def _run_batch(
        self,
        write: Callable[[UUID], EdgeWriteStatus],
        ids: frozenset[UUID],
    ) -> dict[UUID, EdgeWriteStatus | EdgeWriteError]:
        ordered = sorted_ids(ids)

        def _one(other_id: UUID) -> EdgeWriteStatus | EdgeWriteError:
            try:
                return write(other_id)
            except EdgeWriteError as exc:
                return exc

        # A unit of work binds one session; it must not be shared across threads.
        if self._max_workers == 1 or self._transactional or len(ordered) < 2:
            return {other_id: _one(other_id) for other_id in ordered}

        workers = min(self._max_workers, len(ordered))
        with ThreadPoolExecutor(
            max_workers=workers, thread_name_prefix="access-graph-edge"
        ) as pool:
            outcomes = list(pool.map(_one, ordered))
        return dict(zip(ordered, outcomes, strict=True))

    def _audit(self, result: ReconcileResult, *, actor_id: UUID) -> None:
        if not result.changed and not result.is_partial and not self._emit_zero_delta_audit:
            return
        record_safely(
            self._audit_sink,
            AuditEvent(
                detail=(
                    f"Synced {result.relation.value} for {result.anchor.label}: "
                    f"{len(result.added)} added, {len(result.removed)} removed, "
                    f"{len(result.skipped)} unchanged"
                ),
                action_type=ActionType.UPDATE,
                collection=result.relation.collection,
                object_id=str(result.anchor.id),
                actor_id=actor_id,
                changes=result.to_audit_changes(),
            ),
        )

    # ------------- convenience wrappers ----------

    def sync_role_permissions(
        self, role_id: UUID, permission_ids: Iterable[UUID], *, actor_id: UUID
    ) -> ReconcileResult:
        return self.reconcile(
            Anchor.role(role_id), Relation.ROLE_PERMISSIONS, permission_ids, actor_id=actor_id
        )

    def sync_principal_roles(
        self,
        principal_id: UUID,
        role_ids: Iterable[UUID],
        *,
        actor_id: UUID,
        principal_type: PrincipalType = PrincipalType.USER,
    ) -> ReconcileResult:
        return self.reconcile(
            Anchor.principal(principal_id, principal_type),
            Relation.PRINCIPAL_ROLES,
            role_ids,
            actor_id=actor_id,
        )

    def sync_principal_permissions(
        self,
        principal_id: UUID,
        permission_ids: Iterable[UUID],
        *,
        actor_id: UUID,
        principal_type: PrincipalType = PrincipalType.USER,
    ) -> ReconcileResult:
        return self.reconcile(
            Anchor.principal(principal_id, principal_type),
            Relation.PRINCIPAL_PERMISSIONS,
            permission_ids,
            actor_id=actor_id,
        )

    # ------------- single-edge primitives --------

    def assign(
        self, anchor: Anchor, relation: Relation, other_id: UUID, *, actor_id: UUID
    ) -> EdgeWriteStatus:
        """Create one edge; an existing edge is a no-op and is not audited."""
        check_anchor(relation, anchor)
        status = self._repository.create_edge(relation, anchor, other_id)
        if status is EdgeWriteStatus.CREATED:
            self._audit_edge(ActionType.CREATE, anchor, relation, other_id, actor_id=actor_id)
        return status

    def revoke(
        self, anchor: Anchor, relation: Relation, other_id: UUID, *, actor_id: UUID
    ) -> EdgeWriteStatus:
        """Remove one edge; a missing edge is a no-op and is not audited."""
        check_anchor(relation, anchor)
        status = self._repository.delete_edge(relation, anchor, other_id)
        if status is EdgeWriteStatus.DELETED:
            self._audit_edge(ActionType.DELETE, anchor, relation, other_id, actor_id=actor_id)
        return status

    def _audit_edge(
        self,
        action: ActionType,
        anchor: Anchor,
        relation: Relation,
        other_id: UUID,
        *,
        actor_id: UUID,
    ) -> None:
        edge: dict[str, Any] = {"anchor": anchor.label, relation.target_kind.value: str(other_id)}
        verb = "assigned to" if action is ActionType.CREATE else "removed from"
        target = relation.target_kind.value.capitalize()
        record_safely(
            self._audit_sink,
            AuditEvent(
                detail=f"{target} {other_id} {verb} {anchor.label}",
                action_type=action,
                collection=relation.collection,
                object_id=str(anchor.id),
                actor_id=actor_id,
                changes=AuditChanges(
                    before=edge if action is ActionType.DELETE else None,
                    after=edge if action is ActionType.CREATE else None,
                ),
            ),
        )


__all__ = ["AssignmentReconciler", "ReconcileResult"]
