from __future__ import annotations

import threading
import time
from contextlib import nullcontext
from uuid import UUID, uuid4

import pytest

from access_graph.audit import AuditEvent
from access_graph.errors import AnchorRelationMismatchError, EdgeWriteError
from access_graph.locks import AnchorLocks
from access_graph.reconciler import AssignmentReconciler
from access_graph.repository import SqlGraphRepository
from access_graph.resolver import EffectivePermissionResolver
from access_graph.types import ActionType, Anchor, EdgeWriteStatus, Relation


class ExplodingSink:
    def record(self, event: AuditEvent) -> None:
        raise RuntimeError("audit store offline")


class InMemoryEdges:
    """Minimal repository for role-permission edges, recording writer threads."""

    def __init__(self, initial: set[UUID] | None = None, rejected: set[UUID] | None = None):
        self.edges: set[UUID] = set(initial or ())
        self.rejected = set(rejected or ())
        self.threads: set[str] = set()
        self._lock = threading.Lock()

    def unit_of_work(self):
        return nullcontext()

    def find_edges(self, relation: Relation, anchor: Anchor) -> set[UUID]:
        return set(self.edges)

    def create_edge(self, relation: Relation, anchor: Anchor, other_id: UUID) -> EdgeWriteStatus:
        with self._lock:
            self.threads.add(threading.current_thread().name)
            if other_id in self.rejected:
                raise EdgeWriteError(relation, other_id, "rejected")
            if other_id in self.edges:
                return EdgeWriteStatus.ALREADY_EXISTS
            self.edges.add(other_id)
            return EdgeWriteStatus.CREATED

    def delete_edge(self, relation: Relation, anchor: Anchor, other_id: UUID) -> EdgeWriteStatus:
        with self._lock:
            self.threads.add(threading.current_thread().name)
            if other_id not in self.edges:
                return EdgeWriteStatus.NOT_FOUND
            self.edges.discard(other_id)
            return EdgeWriteStatus.DELETED


class FailingAfterFirstAdd(SqlGraphRepository):
    """Simulates a store outage partway through the add phase."""

    def __init__(self, session_factory) -> None:
        super().__init__(session_factory)
        self.creates = 0

    def create_edge(self, relation, anchor, other_id):
        self.creates += 1
        if self.creates > 1:
            raise ConnectionError("store went away")
        return super().create_edge(relation, anchor, other_id)


@pytest.fixture
def reconciler(repository, audit_sink) -> AssignmentReconciler:
    return AssignmentReconciler(repository, audit_sink)


def _seed_role(repository, make_role, make_permission, role_name, permission_names):
    role = make_role(role_name)
    permissions = {name: make_permission(name) for name in permission_names}
    return role, permissions


def test_reconcile_converges_to_desired_set(
    reconciler, repository, make_role, make_permission, actor_id
) -> None:
    role, perms = _seed_role(repository, make_role, make_permission, "editor", "ABCD")
    a, b, c, d = (perms[k].id for k in "ABCD")
    reconciler.sync_role_permissions(role.id, {a, b, c}, actor_id=actor_id)

    result = reconciler.sync_role_permissions(role.id, {b, d}, actor_id=actor_id)

    assert result.removed == {a, c}
    assert result.added == {d}
    assert result.skipped == {b}
    assert result.all_assigned == {b, d}
    assert not result.is_partial
    assert repository.find_edges(Relation.ROLE_PERMISSIONS, Anchor.role(role.id)) == {b, d}


def test_reconcile_twice_is_a_no_op(
    reconciler, repository, make_role, make_permission, actor_id
) -> None:
    role, perms = _seed_role(repository, make_role, make_permission, "editor", ["p1", "p2"])
    desired = {p.id for p in perms.values()}

    reconciler.sync_role_permissions(role.id, desired, actor_id=actor_id)
    second = reconciler.sync_role_permissions(role.id, desired, actor_id=actor_id)

    assert second.added == frozenset()
    assert second.removed == frozenset()
    assert second.skipped == desired
    assert not second.changed
    assert repository.find_edges(Relation.ROLE_PERMISSIONS, Anchor.role(role.id)) == desired


def test_empty_target_removes_every_edge(
    reconciler, repository, make_role, make_permission, actor_id
) -> None:
    role, perms = _seed_role(repository, make_role, make_permission, "editor", ["p1", "p2", "p3"])
    reconciler.sync_role_permissions(role.id, [p.id for p in perms.values()], actor_id=actor_id)

    result = reconciler.sync_role_permissions(role.id, [], actor_id=actor_id)

    assert result.added == frozenset()
    assert result.removed == {p.id for p in perms.values()}
    assert repository.find_edges(Relation.ROLE_PERMISSIONS, Anchor.role(role.id)) == set()


def test_editor_scenario(reconciler, repository, make_role, make_permission, actor_id) -> None:
    editor = make_role("editor")
    read = make_permission("read-docs")
    write = make_permission("write-docs")
    publish = make_permission("publish-docs")
    reconciler.sync_role_permissions(editor.id, {read.id, write.id}, actor_id=actor_id)
    user_id = uuid4()
    reconciler.sync_principal_roles(user_id, {editor.id}, actor_id=actor_id)

    result = reconciler.sync_role_permissions(editor.id, {write.id, publish.id}, actor_id=actor_id)

    assert result.removed == {read.id}
    assert result.added == {publish.id}
    assert result.skipped == {write.id}
    names = {p.name for p in EffectivePermissionResolver(repository).resolve(user_id)}
    assert names == {"write-docs", "publish-docs"}


def test_unknown_ids_are_reported_as_failed(
    reconciler, repository, make_role, make_permission, actor_id, audit_sink
) -> None:
    role = make_role("editor")
    known = make_permission("read-docs")
    unknown = uuid4()

    result = reconciler.sync_role_permissions(role.id, {known.id, unknown}, actor_id=actor_id)

    assert result.added == {known.id}
    assert set(result.failed) == {unknown}
    assert result.is_partial
    assert unknown not in result.all_assigned
    assert repository.find_edges(Relation.ROLE_PERMISSIONS, Anchor.role(role.id)) == {known.id}

    (event,) = audit_sink.events
    assert event.changes.after["failed"].keys() == {str(unknown)}


def test_reconcile_emits_one_update_event_scoped_to_anchor(
    reconciler, make_role, make_permission, actor_id, audit_sink
) -> None:
    role = make_role("editor")
    permission = make_permission("read-docs")

    reconciler.sync_role_permissions(role.id, {permission.id}, actor_id=actor_id)

    (event,) = audit_sink.events
    assert event.action_type is ActionType.UPDATE
    assert event.collection == "RolePermission"
    assert event.object_id == str(role.id)
    assert event.actor_id == actor_id
    assert event.changes.after["added"] == [str(permission.id)]
    assert event.changes.after["removed"] == []


def test_zero_delta_audit_is_configurable(
    repository, audit_sink, make_role, make_permission, actor_id
) -> None:
    role = make_role("editor")
    permission = make_permission("read-docs")
    quiet = AssignmentReconciler(repository, audit_sink, emit_zero_delta_audit=False)
    loud = AssignmentReconciler(repository, audit_sink, emit_zero_delta_audit=True)

    quiet.sync_role_permissions(role.id, {permission.id}, actor_id=actor_id)
    assert len(audit_sink.events) == 1

    quiet.sync_role_permissions(role.id, {permission.id}, actor_id=actor_id)
    assert len(audit_sink.events) == 1

    loud.sync_role_permissions(role.id, {permission.id}, actor_id=actor_id)
    assert len(audit_sink.events) == 2
    assert audit_sink.events[-1].changes.after["unchanged"] == [str(permission.id)]


def test_audit_failure_does_not_break_reconcile(
    repository, make_role, make_permission, actor_id
) -> None:
    role = make_role("editor")
    permission = make_permission("read-docs")
    reconciler = AssignmentReconciler(repository, ExplodingSink())

    result = reconciler.sync_role_permissions(role.id, {permission.id}, actor_id=actor_id)

    assert result.added == {permission.id}
    assert repository.find_edges(Relation.ROLE_PERMISSIONS, Anchor.role(role.id)) == {
        permission.id
    }


def test_anchor_relation_mismatch_is_rejected(reconciler, actor_id, audit_sink) -> None:
    with pytest.raises(AnchorRelationMismatchError):
        reconciler.reconcile(
            Anchor.principal(uuid4()), Relation.ROLE_PERMISSIONS, set(), actor_id=actor_id
        )
    assert audit_sink.events == []


def test_principal_role_sync(reconciler, repository, make_role, actor_id, audit_sink) -> None:
    viewer = make_role("viewer")
    editor = make_role("editor")
    user_id = uuid4()

    reconciler.sync_principal_roles(user_id, {viewer.id}, actor_id=actor_id)
    result = reconciler.sync_principal_roles(user_id, {editor.id}, actor_id=actor_id)

    assert result.removed == {viewer.id}
    assert result.added == {editor.id}
    assert repository.find_edges(Relation.PRINCIPAL_ROLES, Anchor.principal(user_id)) == {
        editor.id
    }
    assert audit_sink.events[-1].collection == "PrincipalRole"
    assert audit_sink.events[-1].object_id == str(user_id)


def test_transactional_reconcile_keeps_per_edge_failures_local(
    repository, audit_sink, make_role, make_permission, actor_id
) -> None:
    role = make_role("editor")
    keep = make_permission("read-docs")
    drop = make_permission("write-docs")
    reconciler = AssignmentReconciler(repository, audit_sink, transactional=True)
    reconciler.sync_role_permissions(role.id, {drop.id}, actor_id=actor_id)
    unknown = uuid4()

    result = reconciler.sync_role_permissions(role.id, {keep.id, unknown}, actor_id=actor_id)

    assert result.removed == {drop.id}
    assert result.added == {keep.id}
    assert set(result.failed) == {unknown}
    assert repository.find_edges(Relation.ROLE_PERMISSIONS, Anchor.role(role.id)) == {keep.id}


def test_transactional_reconcile_rolls_back_on_store_error(
    session_factory, audit_sink, make_role, make_permission, actor_id
) -> None:
    repository = FailingAfterFirstAdd(session_factory)
    role = make_role("editor")
    old = make_permission("old")
    first, second = make_permission("first"), make_permission("second")
    repository.create_edge(Relation.ROLE_PERMISSIONS, Anchor.role(role.id), old.id)
    repository.creates = 0
    reconciler = AssignmentReconciler(repository, audit_sink, transactional=True)

    with pytest.raises(ConnectionError):
        reconciler.sync_role_permissions(role.id, {first.id, second.id}, actor_id=actor_id)

    assert repository.find_edges(Relation.ROLE_PERMISSIONS, Anchor.role(role.id)) == {old.id}
    assert audit_sink.events == []


def test_best_effort_reconcile_keeps_writes_before_store_error(
    session_factory, audit_sink, make_role, make_permission, actor_id
) -> None:
    repository = FailingAfterFirstAdd(session_factory)
    role = make_role("editor")
    old = make_permission("old")
    first, second = make_permission("first"), make_permission("second")
    repository.create_edge(Relation.ROLE_PERMISSIONS, Anchor.role(role.id), old.id)
    repository.creates = 0
    reconciler = AssignmentReconciler(repository, audit_sink)

    with pytest.raises(ConnectionError):
        reconciler.sync_role_permissions(role.id, {first.id, second.id}, actor_id=actor_id)

    remaining = repository.find_edges(Relation.ROLE_PERMISSIONS, Anchor.role(role.id))
    assert old.id not in remaining
    assert len(remaining) == 1


def test_parallel_writes_assemble_deterministic_result(audit_sink, actor_id) -> None:
    stale = {uuid4() for _ in range(5)}
    kept = {uuid4() for _ in range(3)}
    fresh = {uuid4() for _ in range(6)}
    rejected = uuid4()
    store = InMemoryEdges(initial=stale | kept, rejected={rejected})
    reconciler = AssignmentReconciler(store, audit_sink, max_workers=4)

    result = reconciler.sync_role_permissions(
        uuid4(), kept | fresh | {rejected}, actor_id=actor_id
    )

    assert result.removed == stale
    assert result.added == fresh
    assert result.skipped == kept
    assert set(result.failed) == {rejected}
    assert store.edges == kept | fresh
    assert all(name.startswith("access-graph-edge") for name in store.threads)


def test_max_workers_must_be_positive(repository, audit_sink) -> None:
    with pytest.raises(ValueError):
        AssignmentReconciler(repository, audit_sink, max_workers=0)


def test_anchor_locks_are_reused_per_anchor(
    repository, audit_sink, make_role, make_permission, actor_id
) -> None:
    locks = AnchorLocks()
    reconciler = AssignmentReconciler(repository, audit_sink, locks=locks)
    role = make_role("editor")
    permission = make_permission("read-docs")

    reconciler.sync_role_permissions(role.id, {permission.id}, actor_id=actor_id)
    reconciler.sync_role_permissions(role.id, set(), actor_id=actor_id)

    assert len(locks) == 1


def test_assign_and_revoke_audit_only_real_changes(
    reconciler, make_role, make_permission, actor_id, audit_sink
) -> None:
    role = make_role("editor")
    permission = make_permission("read-docs")
    anchor = Anchor.role(role.id)

    assert (
        reconciler.assign(anchor, Relation.ROLE_PERMISSIONS, permission.id, actor_id=actor_id)
        is EdgeWriteStatus.CREATED
    )
    assert (
        reconciler.assign(anchor, Relation.ROLE_PERMISSIONS, permission.id, actor_id=actor_id)
        is EdgeWriteStatus.ALREADY_EXISTS
    )
    assert (
        reconciler.revoke(anchor, Relation.ROLE_PERMISSIONS, permission.id, actor_id=actor_id)
        is EdgeWriteStatus.DELETED
    )
    assert (
        reconciler.revoke(anchor, Relation.ROLE_PERMISSIONS, permission.id, actor_id=actor_id)
        is EdgeWriteStatus.NOT_FOUND
    )

    assert [event.action_type for event in audit_sink.events] == [
        ActionType.CREATE,
        ActionType.DELETE,
    ]
    assert audit_sink.events[0].changes.after == {
        "anchor": anchor.label,
        "permission": str(permission.id),
    }


def test_principal_direct_permission_sync(
    reconciler, repository, make_permission, actor_id, audit_sink
) -> None:
    read = make_permission("read-users")
    write = make_permission("write-users")
    user_id = uuid4()
    reconciler.sync_principal_permissions(user_id, {read.id}, actor_id=actor_id)

    result = reconciler.sync_principal_permissions(user_id, {read.id, write.id}, actor_id=actor_id)

    assert result.added == {write.id}
    assert result.skipped == {read.id}
    assert result.all_assigned == {read.id, write.id}
    assert not result.is_partial
    assert repository.find_edges(
        Relation.PRINCIPAL_PERMISSIONS, Anchor.principal(user_id)
    ) == {read.id, write.id}
    assert audit_sink.events[-1].collection == "PrincipalPermission"
    assert audit_sink.events[-1].changes.after["unchanged"] == [str(read.id)]


class StaleSnapshot(InMemoryEdges):
    """Reports edges as they were before a concurrent writer changed them."""

    def __init__(self, snapshot: set[UUID], actual: set[UUID]) -> None:
        super().__init__(initial=actual)
        self.snapshot = set(snapshot)

    def find_edges(self, relation: Relation, anchor: Anchor) -> set[UUID]:
        return set(self.snapshot)


class BlockingFind(InMemoryEdges):
    """Holds every ``find_edges`` call until ``release`` is set."""

    def __init__(self) -> None:
        super().__init__()
        self.release = threading.Event()
        self.calls: list[Anchor] = []
        self.active = 0
        self.max_active = 0

    def find_edges(self, relation: Relation, anchor: Anchor) -> set[UUID]:
        with self._lock:
            self.calls.append(anchor)
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            self.release.wait(timeout=5)
        finally:
            with self._lock:
                self.active -= 1
        return set(self.edges)


def _run_in_threads(reconciler: AssignmentReconciler, role_ids: list[UUID], actor_id: UUID):
    errors: list[Exception] = []

    def _sync(role_id: UUID) -> None:
        try:
            reconciler.sync_role_permissions(role_id, {uuid4()}, actor_id=actor_id)
        except Exception as exc:
            errors.append(exc)

    threads = [threading.Thread(target=_sync, args=(role_id,)) for role_id in role_ids]
    for thread in threads:
        thread.start()
    return threads, errors


def _wait_for(predicate, timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def test_concurrent_writers_are_counted_as_success(audit_sink, actor_id) -> None:
    kept, raced_in, raced_out = uuid4(), uuid4(), uuid4()
    # raced_in was added and raced_out removed after the snapshot was taken.
    store = StaleSnapshot(snapshot={kept, raced_out}, actual={kept, raced_in})
    reconciler = AssignmentReconciler(store, audit_sink)

    result = reconciler.sync_role_permissions(uuid4(), {raced_in}, actor_id=actor_id)

    assert result.added == {raced_in}
    assert result.all_assigned == {raced_in}
    assert result.removed == {kept}
    assert raced_out not in result.removed
    assert result.failed == {}
    assert store.edges == {raced_in}


def test_anchor_locks_serialise_reconciles_of_one_anchor(audit_sink, actor_id) -> None:
    store = BlockingFind()
    reconciler = AssignmentReconciler(store, audit_sink, locks=AnchorLocks())
    role_id = uuid4()

    threads, errors = _run_in_threads(reconciler, [role_id, role_id], actor_id)
    assert _wait_for(lambda: len(store.calls) >= 1)
    # The second reconcile stays queued behind the lock.
    assert not _wait_for(lambda: len(store.calls) >= 2, timeout=0.3)

    store.release.set()
    for thread in threads:
        thread.join(timeout=5)

    assert errors == []
    assert len(store.calls) == 2
    assert store.max_active == 1
    assert len(audit_sink.events) == 2


def test_anchor_locks_let_different_anchors_run_together(audit_sink, actor_id) -> None:
    store = BlockingFind()
    reconciler = AssignmentReconciler(store, audit_sink, locks=AnchorLocks())

    threads, errors = _run_in_threads(reconciler, [uuid4(), uuid4()], actor_id)
    both_inside = _wait_for(lambda: store.max_active == 2)

    store.release.set()
    for thread in threads:
        thread.join(timeout=5)

    assert both_inside
    assert errors == []
    assert len(store.calls) == 2
