"""
CLI entry point for rowaudit.

This module provides the Typer-based command-line interface for rowaudit.

Commands:
    attach        Audit a table, identified by its primary key
    attach-view   Audit a view with explicit identifying columns
    detach        Stop auditing a relation (history is kept)
    rename        Record a rename made outside rowaudit
    apply         Attach every relation listed in a YAML file
    relations     List audited relations
    events        List logged events
    show-event    Show one logged event
    replay        Re-execute the mutation behind a logged event

Every command works on one SQLite database holding both the audited tables
and the audit tables, chosen with --db or the ROWAUDIT_DB environment
variable.
"""

import json
import logging
import sqlite3
import traceback
from datetime import datetime
from pathlib import Path
from typing import Annotated, NoReturn, Optional

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table

from rowaudit import __version__
from rowaudit.engine import AuditEngine
from rowaudit.errors import RowAuditError
from rowaudit.schema import Action, CaptureMode, EventFilter, LogEntry, load_config

# Initialize Typer app with metadata
app = typer.Typer(
    name="rowaudit",
    help="Row-level audit logging and replay for SQLite tables.",
    add_completion=False,
    no_args_is_help=True,
)

# Rich console for formatted output
console = Console()

DEFAULT_DB = "rowaudit.db"
DATETIME_FORMATS = ["%Y-%m-%d", "%Y-%m-%dT%H:%M:%S", "%Y-%m-%d %H:%M:%S"]

DbOption = Annotated[
    Path,
    typer.Option(
        "--db",
        envvar="ROWAUDIT_DB",
        help="Path to the SQLite database.",
        resolve_path=True,
    ),
]
JsonOption = Annotated[
    bool,
    typer.Option(
        "--json",
        help="Output results in JSON format.",
    ),
]


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"[bold]rowaudit[/bold] version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        Optional[bool],
        typer.Option(
            "--version",
            "-v",
            help="Show version and exit.",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
    verbose: Annotated[
        bool,
        typer.Option(
            "--verbose",
            help="Log capture, registry and replay activity.",
        ),
    ] = False,
) -> None:
    """
    rowaudit - Change capture and replay for SQLite tables.

    Attach tables to record every insert, update, delete and truncate in an
    append-only log, then inspect or replay logged events.
    """
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(message)s",
            handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        )


def _open(db: Path) -> AuditEngine:
    if not db.exists():
        console.print(f"[red]Database not found: {db}[/red]")
        raise typer.Exit(code=1)
    return AuditEngine(db)


def _fail(error: Exception, json_output: bool = False, debug: bool = False) -> NoReturn:
    """Report an error and exit with code 1."""
    if json_output:
        if isinstance(error, RowAuditError):
            output = {"error": True, **error.to_dict()}
        else:
            output = {
                "error": True,
                "error_type": error.__class__.__name__,
                "message": str(error),
            }
        if debug:
            output["traceback"] = traceback.format_exc()
        print(json.dumps(output, indent=2, default=str))
    else:
        console.print(f"[red]{escape(str(error))}[/red]")
        if debug:
            console.print(f"[dim]{escape(traceback.format_exc())}[/dim]")
    raise typer.Exit(code=1)


def _parse_action(value: str | None) -> Action | None:
    if value is None:
        return None
    key = value.strip().upper()
    for action in Action:
        if key in (action.value, action.name):
            return action
    raise typer.BadParameter(f"Unknown action: {value}", param_hint="--action")


def _validation_message(error: ValidationError) -> str:
    first = error.errors()[0]
    field_name = ".".join(str(part) for part in first["loc"])
    return f"Invalid {field_name}: {first['msg']}"


def _entry_json(entry: LogEntry) -> dict:
    data = entry.model_dump(mode="json")
    data["action"] = entry.action.name.lower()
    return data


def _short(row_map: dict | None, limit: int = 60) -> str:
    if row_map is None:
        return ""
    text = ", ".join(f"{k}={v!r}" for k, v in row_map.items())
    return text if len(text) <= limit else text[: limit - 3] + "..."


# =============================================================================
# Registration
# =============================================================================


@app.command()
def attach(
    relation: Annotated[
        str,
        typer.Argument(help="Table to audit, optionally schema-qualified."),
    ],
    db: DbOption = Path(DEFAULT_DB),
    statement_only: Annotated[
        bool,
        typer.Option(
            "--statement-only",
            help="Log one entry per statement without row values.",
        ),
    ] = False,
    no_query_text: Annotated[
        bool,
        typer.Option(
            "--no-query-text",
            help="Do not record statement text.",
        ),
    ] = False,
    exclude: Annotated[
        Optional[list[str]],
        typer.Option(
            "--exclude",
            "-x",
            help="Column to leave out of snapshots and diffs. Repeatable.",
        ),
    ] = None,
) -> None:
    """
    Audit a table, identified by its primary key.

    Example:
        $ rowaudit attach accounts --exclude updated_at --db app.db
    """
    with _open(db) as engine:
        try:
            attachment = engine.registry.attach(
                relation,
                mode=CaptureMode.STATEMENT_ONLY if statement_only else CaptureMode.ROW_LEVEL,
                log_query_text=not no_query_text,
                excluded_columns=exclude or [],
            )
        except RowAuditError as e:
            _fail(e)

    console.print(
        f"[green]✓[/green] Attached [bold]{escape(attachment.relation_name)}[/bold] "
        f"({attachment.mode.value}) identified by {escape(', '.join(attachment.identity_columns))}"
    )


@app.command("attach-view")
def attach_view(
    relation: Annotated[
        str,
        typer.Argument(help="View to audit, optionally schema-qualified."),
    ],
    uid: Annotated[
        list[str],
        typer.Option(
            "--uid",
            "-u",
            help="Identifying column. Repeatable, in order.",
        ),
    ],
    db: DbOption = Path(DEFAULT_DB),
    no_query_text: Annotated[
        bool,
        typer.Option(
            "--no-query-text",
            help="Do not record statement text.",
        ),
    ] = False,
    exclude: Annotated[
        Optional[list[str]],
        typer.Option(
            "--exclude",
            "-x",
            help="Column to leave out of snapshots and diffs. Repeatable.",
        ),
    ] = None,
) -> None:
    """
    Audit a view with explicit identifying columns.

    Example:
        $ rowaudit attach-view active_accounts --uid id --db app.db
    """
    with _open(db) as engine:
        try:
            attachment = engine.registry.attach_view(
                relation,
                log_query_text=not no_query_text,
                excluded_columns=exclude or [],
                identifying_columns=uid,
            )
        except RowAuditError as e:
            _fail(e)

    console.print(
        f"[green]✓[/green] Attached view [bold]{escape(attachment.relation_name)}[/bold] "
        f"identified by {escape(', '.join(attachment.identity_columns))}"
    )


@app.command()
def detach(
    relation: Annotated[
        str,
        typer.Argument(help="Relation to stop auditing."),
    ],
    db: DbOption = Path(DEFAULT_DB),
) -> None:
    """
    Stop auditing a relation. Logged events stay replayable.

    Example:
        $ rowaudit detach accounts --db app.db
    """
    with _open(db) as engine:
        try:
            engine.registry.detach(relation)
        except RowAuditError as e:
            _fail(e)

    console.print(f"[green]✓[/green] Detached [bold]{escape(relation)}[/bold]")


@app.command()
def rename(
    relation: Annotated[
        str,
        typer.Argument(help="Name the relation was attached under."),
    ],
    new_name: Annotated[
        str,
        typer.Argument(help="Name the relation has now."),
    ],
    db: DbOption = Path(DEFAULT_DB),
) -> None:
    """
    Record that an audited relation was renamed outside rowaudit.

    The relation keeps its id, options and identity, and capture resumes
    under the new name.

    Example:
        $ rowaudit rename accounts accts --db app.db
    """
    with _open(db) as engine:
        try:
            attachment = engine.registry.rename(relation, new_name)
        except RowAuditError as e:
            _fail(e)

    console.print(
        f"[green]✓[/green] {escape(relation)} is now "
        f"[bold]{escape(attachment.relation_name)}[/bold] "
        f"(relation {attachment.relation_id})"
    )


@app.command()
def apply(
    config_path: Annotated[
        Path,
        typer.Argument(
            help="Path to the attachment YAML file.",
            exists=True,
            readable=True,
            resolve_path=True,
        ),
    ],
    db: DbOption = Path(DEFAULT_DB),
) -> None:
    """
    Attach every relation listed in a YAML file.

    Example:
        $ rowaudit apply audit.yaml --db app.db
    """
    try:
        config = load_config(config_path)
    except (OSError, ValidationError) as e:
        console.print(f"[red]Error loading config: {escape(str(e))}[/red]")
        raise typer.Exit(code=1)

    with _open(db) as engine:
        try:
            attachments = engine.apply_config(config)
        except RowAuditError as e:
            _fail(e)

    for attachment in attachments:
        console.print(
            f"[green]✓[/green] {escape(attachment.relation_name)} ({attachment.mode.value})"
        )


@app.command()
def relations(
    db: DbOption = Path(DEFAULT_DB),
    all_relations: Annotated[
        bool,
        typer.Option(
            "--all",
            help="Include detached relations.",
        ),
    ] = False,
    json_output: JsonOption = False,
) -> None:
    """
    List audited relations.

    Example:
        $ rowaudit relations --all --db app.db
    """
    with _open(db) as engine:
        try:
            attachments = engine.registry.list_attachments(include_inactive=all_relations)
            missing = {a.relation_id for a in engine.registry.missing()}
        except RowAuditError as e:
            _fail(e, json_output)

    if json_output:
        output = []
        for a in attachments:
            data = a.model_dump(mode="json")
            data["missing"] = a.relation_id in missing
            output.append(data)
        print(json.dumps(output, indent=2))
        return

    if not attachments:
        console.print("[dim]No audited relations.[/dim]")
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("ID", justify="right", style="dim")
    table.add_column("Relation", style="cyan", no_wrap=True)
    table.add_column("Kind")
    table.add_column("Mode")
    table.add_column("Identity")
    table.add_column("Excluded")
    table.add_column("Query", width=5)
    table.add_column("Active", width=6)

    for a in attachments:
        table.add_row(
            str(a.relation_id),
            escape(a.relation_name),
            a.kind.value,
            a.mode.value,
            escape(", ".join(a.identity_columns)),
            escape(", ".join(sorted(a.excluded_columns))),
            "yes" if a.log_query_text else "no",
            "[green]yes[/green]" if a.active else "[yellow]no[/yellow]",
        )

    console.print(table)

    for a in attachments:
        if a.relation_id in missing:
            console.print(
                f"[yellow]![/yellow] {escape(a.relation_name)} no longer exists; "
                "if it was renamed, record it with [bold]rowaudit rename[/bold]"
            )


# =============================================================================
# Audit Log
# =============================================================================


@app.command()
def events(
    db: DbOption = Path(DEFAULT_DB),
    relation: Annotated[
        Optional[str],
        typer.Option(
            "--relation",
            "-r",
            help="Only events of this relation.",
        ),
    ] = None,
    action: Annotated[
        Optional[str],
        typer.Option(
            "--action",
            "-a",
            help="Only this action: insert, update, delete, truncate (or I/U/D/T).",
        ),
    ] = None,
    row_id: Annotated[
        Optional[str],
        typer.Option(
            "--row-id",
            help="Only events of this row.",
        ),
    ] = None,
    since: Annotated[
        Optional[datetime],
        typer.Option(
            "--since",
            help="Only events at or after this UTC time.",
            formats=DATETIME_FORMATS,
        ),
    ] = None,
    until: Annotated[
        Optional[datetime],
        typer.Option(
            "--until",
            help="Only events before this UTC time.",
            formats=DATETIME_FORMATS,
        ),
    ] = None,
    limit: Annotated[
        int,
        typer.Option(
            "--limit",
            "-n",
            help="Maximum number of events to show.",
        ),
    ] = 50,
    json_output: JsonOption = False,
) -> None:
    """
    List logged events, newest first.

    Example:
        $ rowaudit events --relation accounts --action update --db app.db
    """
    try:
        event_filter = EventFilter(
            relation=relation,
            action=_parse_action(action),
            row_id=row_id,
            since=since,
            until=until,
            limit=limit,
            descending=True,
        )
    except ValidationError as e:
        _fail(ValueError(_validation_message(e)), json_output)

    with _open(db) as engine:
        try:
            entries = engine.events(event_filter)
        except RowAuditError as e:
            _fail(e, json_output)

    if json_output:
        print(json.dumps([_entry_json(e) for e in entries], indent=2))
        return

    if not entries:
        console.print("[dim]No events found.[/dim]")
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("Event", justify="right", style="cyan")
    table.add_column("Time")
    table.add_column("Relation")
    table.add_column("Action", width=8, no_wrap=True)
    table.add_column("Row")
    table.add_column("Changes")

    for e in entries:
        if e.statement_only:
            changes = "[dim]statement[/dim]"
        elif e.changed_fields is not None:
            changes = escape(_short(e.changed_fields))
        else:
            changes = escape(_short(e.row_data))
        table.add_row(
            str(e.event_id),
            e.timestamp.isoformat()[:19],
            escape(e.relation_name),
            e.action.name.lower(),
            escape(e.row_id or ""),
            changes,
        )

    console.print(table)


@app.command("show-event")
def show_event(
    event_id: Annotated[
        int,
        typer.Argument(help="The event ID to show."),
    ],
    db: DbOption = Path(DEFAULT_DB),
    json_output: JsonOption = False,
) -> None:
    """
    Show one logged event.

    Example:
        $ rowaudit show-event 42 --db app.db
    """
    with _open(db) as engine:
        try:
            entry = engine.get_event(event_id)
        except RowAuditError as e:
            _fail(e, json_output)

    if json_output:
        print(json.dumps(_entry_json(entry), indent=2))
        return

    console.print(
        f"[bold]Event {entry.event_id}[/bold]: "
        f"{entry.action.name.lower()} on {escape(entry.relation_name)}"
    )
    console.print(f"[dim]  Time: {entry.timestamp.isoformat()}[/dim]")
    console.print(f"[dim]  Relation id: {entry.relation_id}[/dim]")
    console.print(f"[dim]  Row id: {escape(entry.row_id or '-')}[/dim]")
    console.print(f"[dim]  Statement only: {'yes' if entry.statement_only else 'no'}[/dim]")
    if entry.client_query:
        console.print(f"[dim]  Query: {escape(entry.client_query)}[/dim]")

    if entry.row_data is not None:
        console.print()
        table = Table(show_header=True, header_style="bold")
        table.add_column("Column", style="cyan")
        table.add_column("Value")
        if entry.changed_fields is not None:
            table.add_column("New value", style="green")
        for column, value in entry.row_data.items():
            cells = [column, "NULL" if value is None else escape(str(value))]
            if entry.changed_fields is not None:
                if column in entry.changed_fields:
                    new = entry.changed_fields[column]
                    cells.append("NULL" if new is None else escape(str(new)))
                else:
                    cells.append("")
            table.add_row(*cells)
        console.print(table)


@app.command()
def replay(
    event_id: Annotated[
        int,
        typer.Argument(help="The event ID to replay."),
    ],
    db: DbOption = Path(DEFAULT_DB),
    json_output: JsonOption = False,
    debug: Annotated[
        bool,
        typer.Option(
            "--debug",
            help="Enable debug mode with full error tracebacks.",
        ),
    ] = False,
) -> None:
    """
    Re-execute the mutation behind a logged event.

    The mutation runs directly against the database, without a dry run, and
    is itself audited if the relation is attached.

    Example:
        $ rowaudit replay 42 --db app.db
    """
    with _open(db) as engine:
        try:
            result = engine.replay(event_id)
        except (RowAuditError, sqlite3.Error) as e:
            _fail(e, json_output, debug)

    if json_output:
        print(json.dumps({
            "event_id": result.event_id,
            "action": result.action.name.lower(),
            "relation": result.relation,
            "sql": result.sql,
            "params": result.params,
            "rows_affected": result.rows_affected,
            "success": result.success,
        }, indent=2, default=str))
    else:
        icon = "[green]✓[/green]" if result.success else "[yellow]![/yellow]"
        console.print(f"{icon} Replayed event [bold]{result.event_id}[/bold] on {escape(result.relation)}")
        console.print(f"[dim]  {result.sql}[/dim]")
        console.print(f"[dim]  Rows affected: {result.rows_affected}[/dim]")

    if not result.success:
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
