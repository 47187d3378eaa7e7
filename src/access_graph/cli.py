"""access-graph: CLI for the authorization graph."""

from __future__ import annotations

from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from uuid import UUID

import typer

from .db.engine import build_engine, create_schema
from .errors import AccessGraphError
from .logging import setup_logging
from .repository import EntityRecord
from .service import AccessGraphService
from .settings import get_settings
from .types import PrincipalType

app = typer.Typer(
    add_completion=False,
    invoke_without_command=True,
    help="Access graph CLI (init-db, seed, roles, permissions, effective, audit).",
)


@contextmanager
def _domain_errors() -> Iterator[None]:
    try:
        yield
    except AccessGraphError as exc:
        typer.echo(f"❌ {exc}", err=True)
        raise typer.Exit(code=1) from exc


def _service() -> AccessGraphService:
    return AccessGraphService.from_settings(get_settings())


def _print_entities(records: Sequence[EntityRecord], empty: str) -> None:
    if not records:
        typer.echo(empty)
        return
    for record in records:
        typer.echo(f"{record.id}  {record.name}  [{record.guard_name}]")


@app.callback()
def _main(ctx: typer.Context) -> None:
    setup_logging(get_settings())
    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_help())


@app.command(name="init-db", help="Create any missing access graph tables.")
def init_db() -> None:
    settings = get_settings()
    engine = build_engine(settings)
    try:
        create_schema(engine)
    finally:
        engine.dispose()
    typer.echo(f"✅ Schema ready at {engine.url.render_as_string(hide_password=True)}")


@app.command(name="seed", help="Create the default permissions and roles.")
def seed(
    actor_id: UUID = typer.Option(..., "--actor-id", help="Principal recorded as the actor."),
    assign_to: UUID | None = typer.Option(
        None, "--assign-to", help="User id to receive every default role."
    ),
) -> None:
    with _domain_errors():
        result = _service().seed_registry(actor_id=actor_id, assign_to=assign_to)
    typer.echo(
        f"✅ Seeded {len(result.created_permissions)} permission(s) "
        f"and {len(result.created_roles)} role(s)"
    )
    for sync in result.role_syncs:
        typer.echo(
            f"🔗 {sync.anchor.label}: {len(sync.all_assigned)} permission(s) assigned"
        )
    for assignment in result.assignments:
        typer.echo(f"👥 {assignment.anchor.label}: {len(assignment.all_assigned)} role(s)")


@app.command(name="roles", help="List roles.")
def roles(
    guard: str | None = typer.Option(None, "--guard", help="Only roles with this guard."),
) -> None:
    with _domain_errors():
        records = _service().list_roles(guard_name=guard)
    _print_entities(records, "No roles.")


@app.command(name="permissions", help="List permissions.")
def permissions(
    guard: str | None = typer.Option(None, "--guard", help="Only permissions with this guard."),
) -> None:
    with _domain_errors():
        records = _service().list_permissions(guard_name=guard)
    _print_entities(records, "No permissions.")


@app.command(name="effective", help="Show a principal's effective permissions.")
def effective(
    principal_id: UUID = typer.Argument(..., help="Principal id."),
    principal_type: PrincipalType = typer.Option(
        PrincipalType.USER, "--principal-type", help="Principal kind."
    ),
) -> None:
    with _domain_errors():
        explained = _service().explain(principal_id, principal_type)

    if not explained.permissions:
        typer.echo("No permissions.")
        return
    role_names = {role.id: role.name for role in explained.roles}
    direct = {p.id for p in explained.direct}
    for permission in sorted(explained.permissions, key=lambda p: (p.name, str(p.id))):
        sources = ["direct"] if permission.id in direct else []
        sources.extend(
            f"role:{role_names[role_id]}"
            for role_id, granted in explained.by_role.items()
            if permission in granted
        )
        typer.echo(f"{permission.name}  ({', '.join(sorted(sources))})")


@app.command(name="delete-role", help="Delete a role and every edge referencing it.")
def delete_role(
    role_id: UUID = typer.Argument(..., help="Role id."),
    actor_id: UUID = typer.Option(..., "--actor-id", help="Principal recorded as the actor."),
) -> None:
    with _domain_errors():
        report = _service().delete_role(role_id, actor_id=actor_id)
    typer.echo(
        f"🗑️  Deleted role {report.entity.name} ({report.total_edges_removed} edge(s) removed)"
    )


@app.command(name="delete-permission", help="Delete a permission and every edge referencing it.")
def delete_permission(
    permission_id: UUID = typer.Argument(..., help="Permission id."),
    actor_id: UUID = typer.Option(..., "--actor-id", help="Principal recorded as the actor."),
) -> None:
    with _domain_errors():
        report = _service().delete_permission(permission_id, actor_id=actor_id)
    typer.echo(
        f"🗑️  Deleted permission {report.entity.name} "
        f"({report.total_edges_removed} edge(s) removed)"
    )


@app.command(name="audit", help="Show recent audit events, newest first.")
def audit(
    collection: str | None = typer.Option(None, "--collection", help="e.g. Role, RolePermission."),
    object_id: str | None = typer.Option(None, "--object-id", help="Affected object id."),
    limit: int = typer.Option(20, "--limit", min=1, max=1000, help="Maximum events to show."),
) -> None:
    with _domain_errors():
        events = _service().audit_events(collection=collection, object_id=object_id, limit=limit)
    if not events:
        typer.echo("No audit events.")
        return
    for entry in events:
        typer.echo(
            f"{entry.created_at.isoformat()}  {entry.action_type.value:<6}  "
            f"{entry.collection}  {entry.detail}"
        )


if __name__ == "__main__":
    app()
