#!/usr/bin/env python3
"""
Command-line interface for the GxP case workflow engine.

Provides configuration, database, user and inspection tools, and runs the
HTTP API.
"""

import logging
import sys
from typing import NoReturn, Optional, Tuple

import click
import yaml
from pydantic import ValidationError
from sqlalchemy.exc import IntegrityError
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.tree import Tree

from . import __version__
from .config import WorkflowConfig, set_config
from .engine import WorkflowEngine
from .exceptions import WorkflowError

console = Console()


def _config(ctx: click.Context) -> WorkflowConfig:
    """Configuration from ``--config`` when given, otherwise GXP_* variables."""
    obj = ctx.ensure_object(dict)
    if "config" not in obj:
        path = obj.get("config_path")
        try:
            config = WorkflowConfig.from_file(path) if path else WorkflowConfig.from_env()
        except (OSError, ValueError, ValidationError) as e:
            console.print(f"[red]Error loading configuration: {e}[/red]")
            sys.exit(1)
        set_config(config)
        obj["config"] = config
    return obj["config"]


def _engine(ctx: click.Context) -> WorkflowEngine:
    obj = ctx.ensure_object(dict)
    if "engine" not in obj:
        obj["engine"] = WorkflowEngine.from_config(_config(ctx))
    return obj["engine"]


def _fail(error: WorkflowError) -> NoReturn:
    console.print(f"[red]✗ {error.code}: {error.message}[/red]")
    sys.exit(1)


@click.group(invoke_without_command=True)
@click.version_option(version=__version__)
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False),
    help="JSON or YAML configuration file",
)
@click.pass_context
def cli(ctx: click.Context, config_path: Optional[str]) -> None:
    """GxP Case Workflow - signature-gated OOS, batch record and deviation cases."""
    ctx.ensure_object(dict)["config_path"] = config_path
    if ctx.invoked_subcommand is None:
        console.print(
            Panel.fit(
                f"[bold blue]GxP Case Workflow[/bold blue] v{__version__}\n"
                "[dim]Audited case workflows with electronic signatures[/dim]\n\n"
                "Use [bold]gxp-workflow --help[/bold] to see available commands.",
                border_style="blue",
            )
        )
        return
    logging.basicConfig(
        level=_config(ctx).log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@cli.group()
def config() -> None:
    """Inspect and validate configuration."""


@config.command("show")
@click.option("--format", type=click.Choice(["table", "json", "yaml"]), default="table")
@click.pass_context
def config_show(ctx: click.Context, format: str) -> None:
    """Display current configuration."""
    config_dict = _config(ctx).to_dict()

    if format == "json":
        console.print_json(data=config_dict)
    elif format == "yaml":
        console.print(yaml.dump(config_dict, default_flow_style=False))
    else:
        table = Table(title="Workflow Configuration", show_header=True)
        table.add_column("Setting", style="cyan")
        table.add_column("Value", style="green")

        categories = {
            "General": ["application_name", "environment", "log_level"],
            "Database": ["database_url", "database_echo"],
            "Electronic Signatures": [
                "signature_vocabulary_path",
                "signature_algorithm",
                "signature_key_path",
                "password_hash_scheme",
            ],
            "Workflow": ["notifications_enabled", "approver_roles", "investigator_roles"],
        }

        for category, settings in categories.items():
            table.add_row(f"[bold]{category}[/bold]", "")
            for setting in settings:
                value = config_dict.get(setting)
                if value is None:
                    value = "[dim]Not configured[/dim]"
                elif isinstance(value, bool):
                    value = "✓" if value else "✗"
                elif isinstance(value, list):
                    value = ", ".join(value)
                table.add_row(f"  {setting}", str(value))

        console.print(table)


@config.command("validate")
@click.pass_context
def config_validate(ctx: click.Context) -> None:
    """Validate current configuration."""
    config = _config(ctx)
    issues = []
    warnings = []

    if config.environment == "production":
        if config.database_url.startswith("sqlite"):
            issues.append("SQLite is not supported for production; use PostgreSQL")
        if not config.signature_key_path:
            issues.append("signature_key_path is required in production")
    elif not config.signature_key_path:
        warnings.append("No signature key configured; seals use an ephemeral key")

    if not config.notifications_enabled:
        warnings.append("Notifications are disabled")

    approve_only = set(config.approver_roles) - set(config.investigator_roles)
    if approve_only:
        warnings.append(
            f"Approver roles without investigator rights: {', '.join(sorted(approve_only))}"
        )

    if issues:
        console.print("[red]✗ Configuration validation failed:[/red]")
        for issue in issues:
            console.print(f"  [red]• {issue}[/red]")
        sys.exit(1)
    console.print("[green]✓ Configuration is valid[/green]")

    if warnings:
        console.print("\n[yellow]⚠ Warnings:[/yellow]")
        for warning in warnings:
            console.print(f"  [yellow]• {warning}[/yellow]")


@cli.group()
def db() -> None:
    """Database management."""


@db.command("init")
@click.pass_context
def db_init(ctx: click.Context) -> None:
    """Create all tables."""
    engine = _engine(ctx)
    engine.db.create_all()
    console.print(f"[green]✓[/green] Database initialized at {engine.db.url}")


@cli.group()
def users() -> None:
    """User management."""


@users.command("add")
@click.argument("user_id")
@click.option("--email", required=True)
@click.option("--name", required=True)
@click.option("--role", "roles", multiple=True, required=True, help="May be repeated")
@click.password_option(help="Password used for signing")
@click.pass_context
def users_add(
    ctx: click.Context,
    user_id: str,
    email: str,
    name: str,
    roles: Tuple[str, ...],
    password: str,
) -> None:
    """Add a user; the password is stored as a passlib hash."""
    engine = _engine(ctx)
    try:
        engine.add_user(user_id, email, name, password, list(roles))
    except IntegrityError:
        console.print(f"[red]✗ User {user_id} or email {email} already exists[/red]")
        sys.exit(1)
    console.print(f"[green]✓[/green] Added user {user_id} ({', '.join(roles)})")


@cli.group()
def graph() -> None:
    """State graphs of the case types."""


@graph.command("show")
@click.argument("case_type")
@click.pass_context
def graph_show(ctx: click.Context, case_type: str) -> None:
    """Print the state graph of CASE_TYPE as a tree."""
    engine = _engine(ctx)
    try:
        adapter = engine.adapters.get(case_type.upper())
    except WorkflowError as e:
        _fail(e)
    state_graph = adapter.graph
    tree = Tree(f"[bold]{state_graph.case_type}[/bold] (initial: {state_graph.initial})")
    for state in sorted(state_graph.states):
        if state_graph.is_terminal(state):
            tree.add(f"[red]{state}[/red] [dim](terminal)[/dim]")
            continue
        branch = tree.add(f"[cyan]{state}[/cyan]")
        for successor in sorted(state_graph.successors(state)):
            branch.add(f"→ {successor}")
    console.print(tree)

    table = Table(title="Actions")
    table.add_column("Action", style="cyan")
    table.add_column("Target", style="green")
    table.add_column("Signature", style="yellow")
    table.add_column("Roles", style="dim")
    for action in adapter.actions:
        if action.in_place:
            target = f"(in place from {', '.join(action.from_states)})"
        elif isinstance(action.target, str):
            target = action.target
        else:
            target = "(from payload)"
        table.add_row(
            action.name, target, action.signature_scope or "", action.role_group
        )
    console.print(table)


@cli.command("meanings")
@click.argument("scope", required=False)
@click.pass_context
def meanings(ctx: click.Context, scope: Optional[str]) -> None:
    """List signature scopes, or the meanings allowed for SCOPE."""
    signatures = _engine(ctx).signatures
    if scope is None:
        console.print(f"Vocabulary version {signatures.vocabulary.version}")
        for name in signatures.list_scopes():
            console.print(f"  • {name}")
        return
    try:
        for meaning in signatures.list_meanings(scope):
            console.print(f"  • {meaning}")
    except WorkflowError as e:
        _fail(e)


@cli.command("timeline")
@click.argument("case_type")
@click.argument("case_id", type=int)
@click.pass_context
def timeline(ctx: click.Context, case_type: str, case_id: int) -> None:
    """Show the timeline of one case."""
    engine = _engine(ctx)
    try:
        entries = engine.executor.timeline(case_type.upper(), case_id)
    except WorkflowError as e:
        _fail(e)

    table = Table(title=f"{case_type.upper()} {case_id} timeline")
    table.add_column("Timestamp", style="cyan")
    table.add_column("Action", style="yellow")
    table.add_column("Actor", style="green")
    table.add_column("Status", style="magenta")
    table.add_column("Description")
    for entry in entries:
        if entry.new_status and entry.old_status != entry.new_status:
            status = f"{entry.old_status or '-'} → {entry.new_status}"
        else:
            status = entry.new_status or ""
        table.add_row(
            entry.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
            entry.action,
            entry.actor_id,
            status,
            entry.description or "",
        )
    console.print(table)


@cli.group()
def signatures() -> None:
    """Electronic signature tools."""


@signatures.command("verify")
@click.argument("signature_id")
@click.pass_context
def signatures_verify(ctx: click.Context, signature_id: str) -> None:
    """Check the seal and signer of a stored signature."""
    try:
        result = _engine(ctx).signatures.verify(signature_id)
    except WorkflowError as e:
        _fail(e)

    record = result.signature
    console.print(f"[bold]Signature {record.id}[/bold]")
    console.print(f"  Scope:   {record.scope}")
    console.print(f"  Entity:  {record.entity_type} {record.entity_id}")
    console.print(f"  Signer:  {record.signed_by_id}")
    console.print(f"  Meaning: {record.meaning}")
    console.print(f"  Signed:  {record.signed_at}")
    console.print(
        "  Signer active: " + ("[green]yes[/green]" if result.signer_active else "[red]no[/red]")
    )
    if result.seal_valid:
        console.print("[green]✓ Seal verified[/green]")
    else:
        console.print("[red]✗ Seal does not verify[/red]")
        sys.exit(1)


@cli.group()
def audit() -> None:
    """Audit trail tools."""


@audit.command("verify")
@click.option("--user", "user_id", default="system", show_default=True, help="Recorded as the checker")
@click.pass_context
def audit_verify(ctx: click.Context, user_id: str) -> None:
    """Recompute every audit entry checksum and record the check."""
    report = _engine(ctx).audit.run_integrity_check(user_id)

    console.print(f"Entries checked: {report['total_entries']}")
    if report["integrity_valid"]:
        console.print("[green]✓ Audit trail integrity verified[/green]")
        return
    console.print(f"[red]✗ {len(report['corrupted_entries'])} corrupted entries:[/red]")
    for entry_id in report["corrupted_entries"]:
        console.print(f"  [red]• {entry_id}[/red]")
    sys.exit(1)


@cli.command("serve")
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", default=8000, type=int, show_default=True)
@click.pass_context
def serve(ctx: click.Context, host: str, port: int) -> None:
    """Run the HTTP API with uvicorn."""
    import uvicorn

    from .api import create_app

    engine = _engine(ctx)
    engine.db.create_all()
    uvicorn.run(create_app(engine), host=host, port=port, log_level=engine.config.log_level.lower())


if __name__ == "__main__":
    cli()
