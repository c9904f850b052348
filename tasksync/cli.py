"""
Command-line interface for tasksync.

Run with: python -m tasksync
"""

import json
import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from . import __version__, calendar_tools, tasks
from .config import get_settings
from .devops_tools import DevOpsClient
from .errors import InvalidConfiguration, RemoteServiceError, RevisionConflict, TaskSyncError
from .pace_tools import PaceClient, format_duration
from .paths import state_paths

app = typer.Typer(
    name="tasksync",
    help="Keep your current task in sync across Azure DevOps, 7pace and your calendar",
    add_completion=False,
)
console = Console()
err_console = Console(stderr=True)

DRY_RUN = "[yellow]\\[DRY-RUN][/yellow]"


# =============================================================================
# Helpers
# =============================================================================

@app.callback()
def _configure(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug logging"),
):
    """Load settings and set up logging before any command runs."""
    with _handle_errors():
        settings = get_settings()
    logging.basicConfig(
        level=logging.DEBUG if verbose else settings.log_level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=False)],
        force=True,
    )


@contextmanager
def _handle_errors() -> Iterator[None]:
    """Render tasksync errors and exit with their code."""
    try:
        yield
    except RevisionConflict as e:
        console.print(f"[red]Conflict:[/red] {escape(str(e))}")
        console.print(f"[dim]Run: tasksync state {e.work_item_id} to see the latest version[/dim]")
        raise typer.Exit(e.exit_code)
    except TaskSyncError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        raise typer.Exit(e.exit_code)
    except RuntimeError as e:
        # Calendar setup problems
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        raise typer.Exit(1)


def _devops_client() -> DevOpsClient:
    settings = get_settings()
    if not settings.devops_organization or not settings.devops_project:
        raise InvalidConfiguration(
            "devops_organization/devops_project",
            None,
            "not set. Add TASKSYNC_DEVOPS_ORGANIZATION and TASKSYNC_DEVOPS_PROJECT",
        )
    return DevOpsClient(
        settings.get_devops_pat(),
        settings.devops_organization,
        settings.devops_project,
        base_url=settings.devops_api_url,
    )


def _pace_client() -> PaceClient:
    settings = get_settings()
    return PaceClient(
        settings.get_devops_pat(),
        settings.devops_organization,
        base_url=settings.pace_api_url,
    )


def _when(moment: datetime | None) -> str:
    return f"{moment:%Y-%m-%d %H:%M %Z}" if moment else "-"


def _print_actions(actions: list[str], dry_run: bool):
    for action in actions:
        if dry_run:
            console.print(f"{DRY_RUN} {escape(action)}")
        else:
            console.print(f"[green]✓[/green] {escape(action)}")


# =============================================================================
# Current task
# =============================================================================

@app.command()
def start(
    work_item_id: int = typer.Argument(..., help="DevOps work item ID (e.g. 12345)"),
    dry_run: bool = typer.Option(
        False, "--dry-run", help="Preview actions without changing anything",
    ),
    schedule_focus: bool = typer.Option(
        False, "--schedule-focus", help="Book a Focus Block in the next free calendar slot",
    ),
    json_output: bool = typer.Option(False, "--json", help="Print the result as JSON"),
):
    """
    Start working on a task.

    Starts a 7pace timer, optionally books a Focus Block, and records the
    task as current.

    Examples:
        tasksync start 12345 --schedule-focus
        tasksync start 12345 --dry-run
    """
    settings = get_settings()
    with _handle_errors():
        # Reject malformed work hours before touching any API
        work_hours = settings.work_hours() if schedule_focus else None
        lock_path, state_path = state_paths(settings.state_dir, create=not dry_run)

        with _devops_client() as devops, _pace_client() as pace:
            result = tasks.start_task(
                work_item_id,
                devops,
                pace,
                lock_path,
                state_path,
                dry_run=dry_run,
                schedule_focus=schedule_focus,
                calendar=calendar_tools if schedule_focus else None,
                work_hours=work_hours,
                focus_minutes=settings.focus_block_minutes,
                horizon_days=settings.slot_horizon_days,
                expiry_hours=settings.task_expiry_hours,
                lock_timeout=settings.state_lock_timeout_seconds,
            )

    if json_output:
        typer.echo(json.dumps(result.to_dict()))
        return
    if result.previous_task and not dry_run:
        console.print(
            f"Stopped previous task: {result.previous_task.id} - {escape(result.previous_task.title)}"
        )
    _print_actions(result.actions, dry_run)


@app.command()
def stop(
    dry_run: bool = typer.Option(False, "--dry-run", help="Preview without stopping the timer"),
    json_output: bool = typer.Option(False, "--json", help="Print the result as JSON"),
):
    """Stop the current task and its timer."""
    settings = get_settings()
    with _handle_errors():
        lock_path, state_path = state_paths(settings.state_dir, create=not dry_run)
        with _pace_client() as pace:
            result = tasks.stop_task(
                pace,
                lock_path,
                state_path,
                dry_run=dry_run,
                lock_timeout=settings.state_lock_timeout_seconds,
            )

    if json_output:
        typer.echo(json.dumps(result.to_dict()))
        return
    _print_stop(result)


def _print_stop(result: tasks.StopResult):
    if result.task is None:
        console.print("No active task to stop.")
    elif result.dry_run:
        console.print(f"{DRY_RUN} Would stop task: {result.task.id} - {escape(result.task.title)}")
    else:
        tracked = f" ({format_duration(result.timer.duration)} tracked)" if result.timer else ""
        console.print(
            f"[green]✓[/green] Stopped task: {result.task.id} - {escape(result.task.title)}{tracked}"
        )


@app.command()
def switch(
    work_item_id: int = typer.Argument(..., help="Work item ID to switch to"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Preview without changing anything"),
    json_output: bool = typer.Option(False, "--json", help="Print the result as JSON"),
):
    """Stop the current task and start another. Does not book a Focus Block."""
    settings = get_settings()
    with _handle_errors():
        lock_path, state_path = state_paths(settings.state_dir, create=not dry_run)
        with _devops_client() as devops, _pace_client() as pace:
            result = tasks.switch_task(
                work_item_id,
                devops,
                pace,
                lock_path,
                state_path,
                dry_run=dry_run,
                expiry_hours=settings.task_expiry_hours,
                lock_timeout=settings.state_lock_timeout_seconds,
            )

    if json_output:
        typer.echo(json.dumps(result.to_dict()))
        return
    _print_stop(result.stopped)
    _print_actions(result.started.actions, dry_run)


@app.command()
def current(
    json_output: bool = typer.Option(False, "--json", help="Print the task as JSON"),
):
    """Show the current task."""
    with _handle_errors():
        _, state_path = state_paths(get_settings().state_dir, create=False)
        task = tasks.current_task(state_path)

    if json_output:
        payload = task.model_dump(mode="json") if task else {"status": "no_active_task"}
        if task:
            payload["expired"] = task.is_expired()
        typer.echo(json.dumps(payload))
        return
    if task is None:
        console.print("[dim]No active task.[/dim]")
        return

    expired = " [yellow](expired)[/yellow]" if task.is_expired() else ""
    console.print(Panel.fit(
        f"[bold]{task.id}[/bold] - {escape(task.title)}{expired}\n"
        f"Started: {_when(task.started_at)}\n"
        f"Expires: {_when(task.expires_at)}\n"
        f"Timer: {task.timer_id or '-'}",
        title="Active Task",
    ))


# =============================================================================
# Work items
# =============================================================================

@app.command()
def show(
    work_item_id: int = typer.Argument(..., help="Work item ID"),
    json_output: bool = typer.Option(False, "--json", help="Print the raw work item as JSON"),
):
    """Show a work item's details and relations."""
    with _handle_errors():
        with _devops_client() as devops:
            item = devops.get_work_item(work_item_id, with_relations=True)

    if json_output:
        typer.echo(item.model_dump_json())
        return

    tags = ", ".join(item.tags) or "-"
    console.print(Panel.fit(
        f"[bold]{item.id}[/bold] - {escape(item.title or 'No Title')}\n"
        f"Type: {escape(item.work_item_type or 'Unknown')}\n"
        f"State: {escape(item.state or 'Unknown')}\n"
        f"Assigned To: {escape(item.assigned_to or 'Unassigned')}\n"
        f"Tags: {escape(tags)}",
        title=f"Work Item (rev {item.rev})",
    ))
    if item.relations:
        console.print("\n[bold]Relations:[/bold]")
        for relation in item.relations:
            console.print(f"  - {escape(relation.rel)}: #{escape(relation.target_id)}")
    console.print("\n[bold]Description:[/bold]")
    console.print(escape(item.description) if item.description else "[dim](No description)[/dim]")


@app.command()
def state(
    work_item_id: int = typer.Argument(..., help="Work item ID"),
    new_state: str = typer.Argument(None, help="Target state; omit to list valid states"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Preview the change without applying it"),
):
    """Show or change a work item's state."""
    with _handle_errors():
        with _devops_client() as devops:
            if new_state is None:
                item = devops.get_work_item(work_item_id)
                console.print(f"Current State: [bold]{escape(item.state or 'Unknown')}[/bold]")
                if item.work_item_type:
                    console.print(f"Valid States for {escape(item.work_item_type)}:")
                    for name in devops.get_work_item_type_states(item.work_item_type):
                        console.print(f"  - {escape(name)}")
                return
            change = tasks.change_state(work_item_id, new_state, devops, dry_run=dry_run)

    old = change.before.get("System.State") or "Unknown"
    if dry_run:
        console.print(f"{DRY_RUN} Would update Task {work_item_id} from {escape(old)} to {escape(new_state)}")
        console.print(f"{DRY_RUN} Patch operations (rev {change.rev}):")
        console.print_json(data=change.ops)
    else:
        console.print(f"[green]✓[/green] Task {work_item_id} updated: {escape(old)} -> {escape(new_state)}")


@app.command()
def update(
    work_item_id: int = typer.Argument(..., help="Work item ID"),
    assigned_to: str = typer.Option(None, "--assigned-to", help="Assign to user (email)"),
    priority: int = typer.Option(None, "--priority", help="Set priority (1-4)"),
    tags: str = typer.Option(None, "--tags", help="Set tags (comma-separated)"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Preview the change without applying it"),
):
    """Update assignee, priority and tags in one request."""
    with _handle_errors():
        with _devops_client() as devops:
            change = tasks.update_fields(
                work_item_id,
                devops,
                assigned_to=assigned_to,
                priority=priority,
                tags=tags,
                dry_run=dry_run,
            )

    table = Table(title=f"Task {work_item_id}")
    table.add_column("Field")
    table.add_column("Before")
    table.add_column("After")
    for op in change.ops:
        name = op["path"].removeprefix("/fields/")
        table.add_row(name, escape(str(change.before.get(name) or "")), escape(str(op["value"])))
    console.print(table)
    if dry_run:
        console.print(f"{DRY_RUN} No changes applied (current rev: {change.rev})")
    else:
        console.print(f"[green]✓[/green] Updated Task {work_item_id} (rev {change.updated.rev})")


# =============================================================================
# Time and calendar
# =============================================================================

@app.command(name="log-time")
def log_time(
    work_item_id: int = typer.Argument(..., help="Work item ID"),
    hours: float = typer.Option(..., "--hours", help="Hours to log (decimal, e.g. 1.5)"),
    comment: str = typer.Option(None, "--comment", help="Optional comment"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Preview without logging"),
):
    """Manually log time to a work item."""
    with _handle_errors():
        with _pace_client() as pace:
            duration, _ = tasks.log_time(
                work_item_id, hours, pace, comment=comment, dry_run=dry_run
            )

    if dry_run:
        console.print(f"{DRY_RUN} Would log {format_duration(duration)} to Task {work_item_id}")
    else:
        console.print(f"[green]✓[/green] Logged {format_duration(duration)} to Task {work_item_id}")


@app.command()
def worklogs(
    days: int = typer.Option(7, "--days", help="Number of days to show"),
    json_output: bool = typer.Option(False, "--json", help="Print the worklogs as JSON"),
):
    """Show worklogs recorded in the last few days."""
    with _handle_errors():
        with _pace_client() as pace:
            logs = tasks.recent_worklogs(pace, days)

    if json_output:
        typer.echo(json.dumps([log.model_dump(mode="json") for log in logs]))
        return
    if not logs:
        console.print(f"No worklogs found in the last {days} days.")
        return

    table = Table(title=f"Worklogs (last {days} days)")
    table.add_column("Task ID", justify="right")
    table.add_column("Comment")
    table.add_column("Duration", justify="right")
    table.add_column("Date")
    for log in logs:
        table.add_row(
            str(log.work_item_id),
            escape(log.comment or "(no comment)"),
            format_duration(log.duration),
            f"{log.timestamp:%Y-%m-%d %H:%M}",
        )
    console.print(table)
    total = sum(log.duration for log in logs)
    console.print(f"Total: [bold]{format_duration(total)}[/bold] ({len(logs)} entries)")


@app.command()
def slot(
    duration: int = typer.Option(None, "--duration", "-d", help="Block length in minutes"),
    json_output: bool = typer.Option(False, "--json", help="Print the slot as JSON"),
):
    """Show the next free Focus Block slot without booking it."""
    settings = get_settings()
    with _handle_errors():
        work_hours = settings.work_hours()
        minutes = duration if duration is not None else settings.focus_block_minutes
        if minutes <= 0:
            raise InvalidConfiguration("duration", minutes, "must be greater than 0")
        with console.status("[bold blue]Checking calendar...[/bold blue]"):
            found = tasks.plan_focus_block(
                calendar_tools,
                datetime.now(timezone.utc),
                minutes,
                work_hours,
                settings.slot_horizon_days,
            )

    if json_output:
        typer.echo(json.dumps(found.to_dict()))
    else:
        console.print(
            f"Next free slot: [bold cyan]{found.start:%a %Y-%m-%d %H:%M}[/bold cyan]"
            f" - [bold cyan]{found.end:%H:%M}[/bold cyan] ({minutes} min)"
        )


@app.command(name="calendar-setup")
def calendar_setup():
    """Authorise Google Calendar access and check that it works.

    Needs an OAuth client of type "Desktop app" from the Google Cloud
    console (APIs & Services > Credentials), saved at
    TASKSYNC_GOOGLE_CALENDAR_CREDENTIALS_FILE. Opens the browser for sign-in,
    saves the token, then reads the configured calendar with it.
    """
    from google_auth_oauthlib.flow import InstalledAppFlow

    settings = get_settings()
    with _handle_errors():
        creds_file = settings.google_calendar_credentials_file
        if not creds_file.exists():
            raise InvalidConfiguration(
                "google_calendar_credentials_file",
                str(creds_file),
                "not found. Download a Desktop app OAuth client JSON and save it there",
            )

        console.print("[dim]Waiting for Google sign-in in your browser...[/dim]")
        try:
            flow = InstalledAppFlow.from_client_secrets_file(str(creds_file), calendar_tools.SCOPES)
            creds = flow.run_local_server(port=0)
        except Exception as e:
            raise RemoteServiceError("Google OAuth", None, str(e)) from e
        settings.google_calendar_token_file.write_text(creds.to_json())

        name = calendar_tools.verify_access()

    console.print(f"[green]✓[/green] Token saved to {settings.google_calendar_token_file.resolve()}")
    console.print(f"[green]✓[/green] Calendar '{escape(name)}' is reachable")


@app.command()
def version():
    """Show version information."""
    console.print(f"tasksync v{__version__}")


def main():
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
