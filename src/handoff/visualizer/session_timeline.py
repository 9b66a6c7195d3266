"""Rich views for session timelines."""

from datetime import datetime
from typing import Optional

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from ..session.models import SessionRecord
from .utils import format_duration, format_timestamp, styled_status, truncate


def _duration_seconds(record: SessionRecord) -> Optional[float]:
	start = record.timestamps.started or record.timestamps.created
	end = record.timestamps.completed or record.timestamps.updated
	try:
		return (datetime.fromisoformat(end) - datetime.fromisoformat(start)).total_seconds()
	except (TypeError, ValueError):
		return None


def render_session_list(records: list[SessionRecord], console: Optional[Console] = None) -> None:
	"""Render a table of sessions with their counters and time ranges."""
	console = console or Console()

	if not records:
		console.print("[dim]No sessions recorded yet.[/dim]")
		return

	table = Table(title="Sessions")
	table.add_column("Session ID", style="cyan")
	table.add_column("State")
	table.add_column("Trigger")
	table.add_column("Agents", justify="right")
	table.add_column("Issues", justify="right")
	table.add_column("Fixes", justify="right")
	table.add_column("Errors", justify="right")
	table.add_column("Duration", justify="right")
	table.add_column("Updated")

	for record in sorted(records, key=lambda r: r.timestamps.updated, reverse=True):
		stats = record.stats
		errors = stats.errors_encountered
		table.add_row(
			record.id,
			styled_status(record.state.value),
			record.metadata.trigger,
			str(stats.agents_invoked),
			str(stats.issues_created),
			str(stats.fixes_applied),
			f"[red]{errors}[/red]" if errors else "0",
			format_duration(_duration_seconds(record)),
			format_timestamp(record.timestamps.updated),
		)

	console.print(table)


def render_session_detail(
	record: SessionRecord,
	console: Optional[Console] = None,
	event_limit: int = 50,
) -> None:
	"""Render one session: header, tracking ledger and a chronological event timeline."""
	console = console or Console()

	tracking = record.tracking
	lines = [
		f"[bold]State:[/bold] {styled_status(record.state.value)}",
		f"[bold]Trigger:[/bold] {record.metadata.trigger}",
		f"[bold]Created:[/bold] {format_timestamp(record.timestamps.created)}",
		f"[bold]Duration:[/bold] {format_duration(_duration_seconds(record))}",
		"",
		f"[bold]Files:[/bold] {len(tracking.files.created)} created, "
		f"{len(tracking.files.modified)} modified, {len(tracking.files.deleted)} deleted",
		f"[bold]Issues:[/bold] {len(tracking.issues.created)} created, {len(tracking.issues.fixed)} fixed, "
		f"{len(tracking.issues.skipped)} skipped, {len(tracking.issues.failed)} failed",
		f"[bold]Findings:[/bold] {len(tracking.findings)}",
		f"[bold]Work units:[/bold] {len(tracking.work)} completed"
		+ (f", 1 active ({tracking.current_work.type})" if tracking.current_work else ""),
		f"[bold]Plans:[/bold] {len(tracking.plans.completed)} finished"
		+ (f", active {tracking.plans.active}" if tracking.plans.active else ""),
	]
	if record.failure_reason:
		lines.append("")
		lines.append(f"[bold red]Failure:[/bold red] {record.failure_reason}")

	console.print(Panel("\n".join(lines), title=f"Session: {record.id}", border_style="cyan"))

	events = record.events[-event_limit:] if event_limit else record.events
	if not events:
		console.print("[dim]No events recorded.[/dim]")
		return

	table = Table(title=f"Timeline for {record.id}")
	table.add_column("#", justify="right", style="dim")
	table.add_column("Time")
	table.add_column("Event", style="cyan")
	table.add_column("Data")

	offset = len(record.events) - len(events)
	for i, event in enumerate(events, offset + 1):
		table.add_row(
			str(i),
			format_timestamp(event.timestamp),
			event.type,
			truncate(", ".join(f"{k}={v}" for k, v in event.data.items()), 70),
		)

	console.print(table)
