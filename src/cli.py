"""CLI interface for heritage-desk."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Annotated, Any, Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table

from heritage.config import HeritageConfig, load_config, merge_cli_overrides
from heritage.errors import NotFound, ValidationError, WorkflowError
from heritage.records.fields import field_label
from heritage.records.models import (
    Actor,
    Classification,
    HeritageDeclaration,
    RecordStatus,
    RecordView,
    Role,
)
from heritage.workflow.engine import TransitionResult, WorkflowEngine
from heritage.workflow.staging import reviewer_role_for

app = typer.Typer(
    name="heritage",
    help="Review workflow for heritage-site directory records.",
    no_args_is_help=True,
)

console = Console()
err_console = Console(stderr=True)

_STATUS_STYLES: dict[RecordStatus, str] = {
    RecordStatus.DRAFT: "dim",
    RecordStatus.PENDING_REVIEW: "yellow",
    RecordStatus.SPECIALIST_REVIEW: "magenta",
    RecordStatus.PUBLISHED: "green",
    RecordStatus.RETRACTED: "red",
}

ActorOption = Annotated[str, typer.Option("--actor", "-a", help="Id of the acting user.")]
DataOption = Annotated[
    Optional[Path],
    typer.Option("--data", "-d", help="JSON file with record fields.", exists=True, dir_okay=False),
]
SetOption = Annotated[
    Optional[list[str]],
    typer.Option("--set", "-s", help="Field override as key=value (repeatable)."),
]


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        from heritage import __version__

        console.print(f"heritage-desk {__version__}")
        raise typer.Exit()


def _setup_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        handlers=[RichHandler(console=err_console, show_path=False, rich_tracebacks=True)],
        force=True,
    )


@app.callback()
def main(
    ctx: typer.Context,
    config_path: Annotated[
        Optional[Path],
        typer.Option("--config", "-c", help="Path to a .heritage.toml config file."),
    ] = None,
    store_dir: Annotated[
        Optional[Path],
        typer.Option("--store-dir", help="Directory holding the record store."),
    ] = None,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", help="Log workflow activity to stderr."),
    ] = False,
    version: Annotated[
        bool,
        typer.Option(
            "--version",
            help="Show version and exit.",
            callback=version_callback,
            is_eager=True,
        ),
    ] = False,
) -> None:
    """Heritage Desk - review workflow for heritage-site records."""
    config = load_config(config_path)
    config = merge_cli_overrides(
        config,
        store_dir=store_dir,
        log_level="INFO" if verbose else None,
    )
    _setup_logging(config.logging.level)
    ctx.obj = config


def _engine(ctx: typer.Context) -> WorkflowEngine:
    config: HeritageConfig = ctx.obj
    return WorkflowEngine.from_config(config)


def _parse_set(items: list[str] | None) -> dict[str, Any]:
    """Parse ``key=value`` pairs; values are read as JSON when they parse."""
    result: dict[str, Any] = {}
    for item in items or []:
        key, sep, raw = item.partition("=")
        key = key.strip()
        if not sep or not key:
            raise typer.BadParameter(f"Expected key=value, got {item!r}", param_hint="--set")
        try:
            result[key] = json.loads(raw)
        except json.JSONDecodeError:
            result[key] = raw
    return result


def _load_payload(data_file: Path | None, sets: list[str] | None) -> dict[str, Any]:
    payload: dict[str, Any] = {}
    if data_file is not None:
        try:
            loaded = json.loads(data_file.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise typer.BadParameter(
                f"{data_file} is not valid JSON: {exc}", param_hint="--data"
            ) from exc
        if not isinstance(loaded, dict):
            raise typer.BadParameter(f"{data_file} must hold a JSON object", param_hint="--data")
        payload.update(loaded)
    payload.update(_parse_set(sets))
    return payload


def _fail(exc: WorkflowError) -> typer.Exit:
    err_console.print(f"[red]Error ({exc.code}):[/red] {escape(exc.message)}")
    if isinstance(exc, ValidationError) and exc.fields:
        err_console.print(f"  Fields: {', '.join(field_label(f) for f in exc.fields)}")
    return typer.Exit(2 if isinstance(exc, NotFound) else 1)


def _report(result: TransitionResult) -> None:
    view = result.view
    style = _STATUS_STYLES[view.status]
    console.print(
        f"[green]{result.audit_entry.label}[/green]: {view.id} is now "
        f"[{style}]{view.status.value}[/{style}] (version {view.version})"
    )
    for intent in result.notifications:
        title, _ = intent.render()
        console.print(f"  notify {intent.recipient_role.value}: {title}")


def _print_record(view: RecordView) -> None:
    style = _STATUS_STYLES[view.status]
    console.print(f"[bold]{view.visible_data.get('name') or view.id}[/bold] ({view.id})")
    console.print(f"  Status: [{style}]{view.status.value}[/{style}]")
    console.print(f"  Owner: {view.owner_id}")
    classification = view.classification.value if view.classification else "-"
    console.print(f"  Classification: {classification}")
    console.print(f"  Version: {view.version}")
    if view.review_notes:
        console.print(f"  Review notes: {escape(view.review_notes)}")
    if view.unpublish is not None:
        console.print(f"  Unpublished by {view.unpublish.actor_id}: {view.unpublish.reason}")

    table = Table(title="Visible data", show_header=True)
    table.add_column("Field")
    table.add_column("Value")
    for key in sorted(view.visible_data):
        table.add_row(
            field_label(key), escape(json.dumps(view.visible_data[key], ensure_ascii=False))
        )
    console.print(table)

    change = view.pending_change
    if change is not None:
        reviewer = reviewer_role_for(change).value.replace("_", " ")
        console.print(
            f"[yellow]Pending change[/yellow] by {change.submitted_by}, "
            f"awaiting {reviewer}:"
        )
        for key in change.changed_fields:
            before = view.visible_data.get(key)
            after = change.proposed_data.get(key)
            console.print(f"  {field_label(key)}: {before!r} -> {after!r}")


# ── Lifecycle commands ───────────────────────────────────────────


@app.command()
def create(
    ctx: typer.Context,
    record_id: Annotated[str, typer.Argument(help="New record id.")],
    actor: ActorOption,
    role: Annotated[Role, typer.Option("--role", "-r")] = Role.OWNER,
    data_file: DataOption = None,
    sets: SetOption = None,
) -> None:
    """Create a draft record."""
    payload = _load_payload(data_file, sets)
    try:
        result = _engine(ctx).create_record(record_id, Actor(actor_id=actor, role=role), payload)
    except WorkflowError as exc:
        raise _fail(exc) from exc
    _report(result)


@app.command()
def submit(
    ctx: typer.Context,
    record_id: Annotated[str, typer.Argument(help="Record id.")],
    actor: ActorOption,
    role: Annotated[Role, typer.Option("--role", "-r")] = Role.OWNER,
    data_file: DataOption = None,
    sets: SetOption = None,
) -> None:
    """Submit a draft (or retracted) record for review.

    Fields from --data and --set are layered over the record's current data.
    """
    engine = _engine(ctx)
    try:
        current = engine.get(record_id)
        payload = {**current.visible_data, **_load_payload(data_file, sets)}
        result = engine.submit(record_id, Actor(actor_id=actor, role=role), payload)
    except WorkflowError as exc:
        raise _fail(exc) from exc
    _report(result)


@app.command()
def approve(
    ctx: typer.Context,
    record_id: Annotated[str, typer.Argument(help="Record id.")],
    actor: ActorOption,
    role: Annotated[Role, typer.Option("--role", "-r")] = Role.PRIMARY_REVIEWER,
) -> None:
    """Approve and publish a non-heritage record."""
    try:
        result = _engine(ctx).approve(record_id, Actor(actor_id=actor, role=role))
    except WorkflowError as exc:
        raise _fail(exc) from exc
    _report(result)


@app.command()
def forward(
    ctx: typer.Context,
    record_id: Annotated[str, typer.Argument(help="Record id.")],
    actor: ActorOption,
    role: Annotated[Role, typer.Option("--role", "-r")] = Role.PRIMARY_REVIEWER,
    notes: Annotated[Optional[str], typer.Option("--notes", "-n")] = None,
) -> None:
    """Forward a heritage record to the specialist reviewer."""
    try:
        result = _engine(ctx).forward(record_id, Actor(actor_id=actor, role=role), notes)
    except WorkflowError as exc:
        raise _fail(exc) from exc
    _report(result)


@app.command()
def validate(
    ctx: typer.Context,
    record_id: Annotated[str, typer.Argument(help="Record id.")],
    actor: ActorOption,
    declaration_type: Annotated[
        Classification, typer.Option("--type", "-t", help="Declared classification.")
    ],
    role: Annotated[Role, typer.Option("--role", "-r")] = Role.SPECIALIST_REVIEWER,
    reference_no: Annotated[str, typer.Option("--reference-no")] = "",
    issued_by: Annotated[str, typer.Option("--issued-by")] = "",
    date_issued: Annotated[str, typer.Option("--date-issued")] = "",
    notes: Annotated[Optional[str], typer.Option("--notes", "-n")] = None,
) -> None:
    """Validate heritage information and publish."""
    declaration = HeritageDeclaration(
        type=declaration_type,
        reference_no=reference_no,
        issued_by=issued_by,
        date_issued=date_issued,
        notes=notes or "",
    )
    try:
        result = _engine(ctx).validate(
            record_id, Actor(actor_id=actor, role=role), declaration, notes
        )
    except WorkflowError as exc:
        raise _fail(exc) from exc
    _report(result)


@app.command(name="request-revision")
def request_revision(
    ctx: typer.Context,
    record_id: Annotated[str, typer.Argument(help="Record id.")],
    actor: ActorOption,
    reason: Annotated[str, typer.Option("--reason", help="What the owner must fix.")],
    role: Annotated[Role, typer.Option("--role", "-r")] = Role.PRIMARY_REVIEWER,
) -> None:
    """Send a record under review back to its owner."""
    try:
        result = _engine(ctx).request_revision(
            record_id, Actor(actor_id=actor, role=role), reason
        )
    except WorkflowError as exc:
        raise _fail(exc) from exc
    _report(result)


@app.command()
def unpublish(
    ctx: typer.Context,
    record_id: Annotated[str, typer.Argument(help="Record id.")],
    actor: ActorOption,
    role: Annotated[Role, typer.Option("--role", "-r")] = Role.PRIMARY_REVIEWER,
    reason: Annotated[str, typer.Option("--reason")] = "",
    notify: Annotated[
        bool, typer.Option("--notify/--no-notify", help="Tell the owner.")
    ] = True,
) -> None:
    """Take a published record down."""
    try:
        result = _engine(ctx).unpublish(
            record_id, Actor(actor_id=actor, role=role), reason, notify_owner=notify
        )
    except WorkflowError as exc:
        raise _fail(exc) from exc
    _report(result)


# ── Staged edits ─────────────────────────────────────────────────


@app.command(name="stage-edit")
def stage_edit(
    ctx: typer.Context,
    record_id: Annotated[str, typer.Argument(help="Record id.")],
    actor: ActorOption,
    role: Annotated[Role, typer.Option("--role", "-r")] = Role.OWNER,
    data_file: DataOption = None,
    sets: SetOption = None,
) -> None:
    """Propose changes to a published record."""
    patch = _load_payload(data_file, sets)
    if not patch:
        raise typer.BadParameter("Provide changes with --data or --set")
    try:
        result = _engine(ctx).stage_edit(record_id, Actor(actor_id=actor, role=role), patch)
    except WorkflowError as exc:
        raise _fail(exc) from exc
    _report(result)


@app.command(name="approve-change")
def approve_change(
    ctx: typer.Context,
    record_id: Annotated[str, typer.Argument(help="Record id.")],
    actor: ActorOption,
    role: Annotated[Role, typer.Option("--role", "-r")] = Role.PRIMARY_REVIEWER,
) -> None:
    """Merge the staged change into the public record."""
    try:
        result = _engine(ctx).approve_change(record_id, Actor(actor_id=actor, role=role))
    except WorkflowError as exc:
        raise _fail(exc) from exc
    _report(result)


@app.command(name="reject-change")
def reject_change(
    ctx: typer.Context,
    record_id: Annotated[str, typer.Argument(help="Record id.")],
    actor: ActorOption,
    reason: Annotated[str, typer.Option("--reason")],
    role: Annotated[Role, typer.Option("--role", "-r")] = Role.PRIMARY_REVIEWER,
) -> None:
    """Discard the staged change."""
    try:
        result = _engine(ctx).reject_change(record_id, Actor(actor_id=actor, role=role), reason)
    except WorkflowError as exc:
        raise _fail(exc) from exc
    _report(result)


# ── Read commands ────────────────────────────────────────────────


@app.command()
def show(
    ctx: typer.Context,
    record_id: Annotated[str, typer.Argument(help="Record id.")],
    as_json: Annotated[bool, typer.Option("--json", help="Print JSON.")] = False,
) -> None:
    """Show a record."""
    try:
        view = _engine(ctx).get(record_id)
    except WorkflowError as exc:
        raise _fail(exc) from exc
    if as_json:
        console.print_json(view.model_dump_json())
        return
    _print_record(view)


@app.command()
def audit(
    ctx: typer.Context,
    record_id: Annotated[str, typer.Argument(help="Record id.")],
    as_json: Annotated[bool, typer.Option("--json", help="Print JSON.")] = False,
) -> None:
    """Show a record's audit trail."""
    try:
        entries = _engine(ctx).list_audit_trail(record_id)
    except WorkflowError as exc:
        raise _fail(exc) from exc
    if as_json:
        console.print_json(json.dumps([e.model_dump(mode="json") for e in entries]))
        return

    table = Table(title=f"Audit trail for {record_id}")
    table.add_column("#", justify="right")
    table.add_column("When")
    table.add_column("Actor")
    table.add_column("Action")
    table.add_column("Status")
    table.add_column("Notes")
    for entry in entries:
        before = entry.from_status.value if entry.from_status else "-"
        table.add_row(
            str(entry.sequence),
            entry.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
            f"{entry.actor_id} ({entry.actor_role.value})",
            entry.label,
            f"{before} -> {entry.to_status.value}",
            entry.notes or "",
        )
    console.print(table)


@app.command(name="list")
def list_cmd(
    ctx: typer.Context,
    status: Annotated[Optional[RecordStatus], typer.Option("--status")] = None,
    classification: Annotated[Optional[Classification], typer.Option("--classification")] = None,
    pending: Annotated[
        Optional[bool],
        typer.Option("--pending/--no-pending", help="Only records with/without staged changes."),
    ] = None,
) -> None:
    """List records, e.g. a reviewer's queue."""
    views = _engine(ctx).list_records(
        status=status, classification=classification, has_pending_change=pending
    )
    if not views:
        console.print("[yellow]No records found.[/yellow]")
        return
    table = Table(title="Records")
    table.add_column("Id")
    table.add_column("Name")
    table.add_column("Status")
    table.add_column("Classification")
    table.add_column("Pending change")
    for view in views:
        style = _STATUS_STYLES[view.status]
        table.add_row(
            view.id,
            str(view.visible_data.get("name", "")),
            f"[{style}]{view.status.value}[/{style}]",
            view.classification.value if view.classification else "-",
            "yes" if view.pending_change is not None else "",
        )
    console.print(table)


@app.command()
def actions(
    ctx: typer.Context,
    record_id: Annotated[str, typer.Argument(help="Record id.")],
    actor: ActorOption,
    role: Annotated[Role, typer.Option("--role", "-r")],
) -> None:
    """List what an actor can do with a record right now."""
    try:
        rules = _engine(ctx).available_actions(record_id, Actor(actor_id=actor, role=role))
    except WorkflowError as exc:
        raise _fail(exc) from exc
    if not rules:
        console.print("[yellow]No actions available.[/yellow]")
        return
    for rule in rules:
        console.print(f"  [bold]{rule.label}[/bold] ({rule.transition.value}): {rule.description}")
