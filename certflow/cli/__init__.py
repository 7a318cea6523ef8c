"""
Command Line Interface for certflow.
"""

import csv
from pathlib import Path
from typing import Optional

import typer
import uvicorn
from rich import print as rprint
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from ..config import get_settings
from ..db.base import get_session_local, init_database
from ..logging_setup import configure_logging
from ..workflow.enums import Role
from ..workflow.errors import WorkflowError
from ..workflow.gateway import NotificationGateway
from ..workflow.ledger import WorkflowLedger
from ..workflow.primitives import Actor
from ..workflow.services import CertificateService

app = typer.Typer(help="certflow - multi-party certificate workflow")
console = Console()


def _local_actor(username: str) -> Actor:
    """Act as a configured user; the CLI runs with operator trust, no password."""
    entry = get_settings().users.get(username)
    if entry is None:
        console.print(f"❌ Unknown user '{username}'")
        raise typer.Exit(code=1)
    return Actor(id=username, role=Role(entry.role), display=entry.display)


@app.callback()
def main() -> None:
    configure_logging(get_settings())


@app.command()
def serve(
    port: Optional[int] = typer.Option(None, help="Port to run the API server on"),
    host: Optional[str] = typer.Option(None, help="Host to bind the server to"),
    dev: bool = typer.Option(False, help="Run in development mode (auto-reload)"),
):
    """Start the certflow API server."""
    settings = get_settings()
    host = host or settings.api_host
    port = port or settings.api_port
    rprint(Panel.fit(f"Starting certflow on http://{host}:{port}", style="bold blue"))
    uvicorn.run(
        "certflow.main:app",
        host=host,
        port=port,
        reload=dev,
        workers=1 if dev else settings.api_workers,
    )


@app.command("init-db")
def init_db():
    """Create all database tables."""
    init_database()
    console.print("✅ Database initialized")


@app.command("import-rows")
def import_rows(
    csv_path: Path = typer.Argument(..., exists=True, dir_okay=False, help="CSV with one row per certificate"),
    template: str = typer.Option(..., "--template", help="Template id"),
    user: str = typer.Option("admin", "--user", help="Issuing user"),
):
    """Create one drafted certificate per CSV row."""
    actor = _local_actor(user)
    with csv_path.open(newline="", encoding="utf-8-sig") as fh:
        rows = [dict(row) for row in csv.DictReader(fh)]

    db = get_session_local()()
    try:
        records = CertificateService(db).create_many(template, rows, actor)
    except WorkflowError as exc:
        console.print(f"❌ {exc.kind}: {exc.message}")
        raise typer.Exit(code=1)
    finally:
        db.close()

    table = Table(title=f"Created {len(records)} certificate(s)", header_style="bold cyan")
    table.add_column("Certificate", style="yellow")
    table.add_column("Name")
    table.add_column("Course")
    for record in records:
        table.add_row(
            record.id,
            record.subject_fields.get("Name", ""),
            record.subject_fields.get("Course", ""),
        )
    console.print(table)


@app.command()
def show(certificate_id: str = typer.Argument(..., help="Certificate id")):
    """Show a certificate's current stage and history."""
    db = get_session_local()()
    try:
        detail = WorkflowLedger(db).read_detail(certificate_id)
    except WorkflowError as exc:
        console.print(f"❌ {exc.kind}: {exc.message}")
        raise typer.Exit(code=1)
    finally:
        db.close()

    console.print(f"[bold]{detail.id}[/bold] at [green]{detail.current_stage.value}[/green]")
    for name, value in detail.subject_fields.items():
        console.print(f"  {name}: {value}")

    table = Table(title="History", header_style="bold magenta")
    table.add_column("#", style="cyan")
    table.add_column("Stage", style="green")
    table.add_column("Actor")
    table.add_column("Artifact")
    table.add_column("Recorded")
    for entry in detail.history:
        table.add_row(
            str(entry.seq),
            entry.stage.value,
            f"{entry.actor_id} ({entry.actor_role.value})",
            entry.artifact_ref[:12] if entry.artifact_ref else "-",
            entry.recorded_at.isoformat(),
        )
    console.print(table)


@app.command()
def inbox(
    role: Role = typer.Argument(..., help="Role whose inbox to list"),
    all_: bool = typer.Option(False, "--all", help="Include acknowledged handoffs"),
):
    """List handoffs waiting for a role."""
    db = get_session_local()()
    try:
        events = NotificationGateway(db).inbox(role, include_acknowledged=all_)
    finally:
        db.close()

    if not events:
        console.print(f"No handoffs for {role.value}")
        return

    table = Table(title=f"Inbox: {role.value}", header_style="bold cyan")
    table.add_column("Handoff", style="yellow")
    table.add_column("Certificate")
    table.add_column("Stage", style="green")
    table.add_column("Deliveries")
    table.add_column("Acknowledged")
    for event in events:
        table.add_row(
            event.id,
            event.certificate_id,
            event.new_stage.value,
            str(event.delivery_count),
            "✅" if event.acknowledged_at else "",
        )
    console.print(table)


if __name__ == "__main__":
    app()
