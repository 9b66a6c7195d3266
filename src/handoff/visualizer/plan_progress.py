"""Rich views for plan progress visualization."""

from typing import Optional

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.tree import Tree

from ..orchestrator.splitter import SplitResult, complexity_label
from ..plans.models import Plan, SubtaskStatus
from .utils import format_duration, format_timestamp, styled_status, truncate

STATUS_ICONS = {
	SubtaskStatus.PENDING: "[dim][ ][/dim]",
	SubtaskStatus.RUNNING: "[yellow][~][/yellow]",
	SubtaskStatus.COMPLETED: "[green]\\[x][/green]",
	SubtaskStatus.FAILED: "[red]\\[x][/red]",
	SubtaskStatus.BLOCKED: "[red][!][/red]",
	SubtaskStatus.SKIPPED: "[dim][-][/dim]",
}


def render_plan_progress(plan: Plan, console: Optional[Console] = None) -> None:
	"""Render a plan as a Rich Tree of subtasks with their dependencies."""
	console = console or Console()

	progress = plan.get_progress()
	pct = progress["percent_complete"]

	tree = Tree(
		f"[bold]{truncate(plan.objective.description, 80)}[/bold]  "
		f"[dim]({progress['completed']}/{progress['total']} subtasks, {pct:.0f}%)[/dim]"
	)

	for subtask in plan.subtasks:
		icon = STATUS_ICONS.get(subtask.status, "[ ]")
		label = f"{icon} [bold]{subtask.id}[/bold] {subtask.description} [dim]({subtask.worker_type})[/dim]"
		branch = tree.add(label)
		if subtask.dependencies:
			branch.add(f"[dim]depends on: {', '.join(subtask.dependencies)}[/dim]")
		if subtask.last_error:
			branch.add(f"[red]{subtask.last_error.code}: {truncate(subtask.last_error.message, 80)}[/red]")

	console.print(tree)


def render_plan_summary(plan: Plan, console: Optional[Console] = None) -> None:
	"""Render a summary panel for a plan."""
	console = console or Console()

	progress = plan.get_progress()
	pct = progress["percent_complete"]

	lines = []
	lines.append(f"[bold]Objective:[/bold] {plan.objective.description}")
	lines.append(f"[bold]Session:[/bold] {plan.session_id or '-'}")
	lines.append(f"[bold]Status:[/bold] {styled_status(plan.status.value)}")
	lines.append(
		f"[bold]Complexity:[/bold] {plan.objective.complexity} ({complexity_label(plan.objective.complexity)})"
	)
	lines.append(f"[bold]Priority:[/bold] {plan.priority}")
	lines.append("")
	lines.append(f"[bold]Progress:[/bold] {progress['completed']}/{progress['total']} subtasks ({pct:.0f}%)")
	for status in ("failed", "blocked", "skipped"):
		if progress[status]:
			lines.append(f"  - {status}: {progress[status]}")

	if plan.execution.started_at:
		lines.append("")
		lines.append(f"[bold]Started:[/bold] {format_timestamp(plan.execution.started_at)}")
	if plan.execution.completed_at:
		lines.append(f"[bold]Finished:[/bold] {format_timestamp(plan.execution.completed_at)}")
	if plan.cancel_reason:
		lines.append(f"[bold]Cancelled:[/bold] {plan.cancel_reason}")

	console.print(Panel("\n".join(lines), title=f"Plan: {plan.id}", border_style="cyan"))


def render_plan_list(plans: list[Plan], console: Optional[Console] = None) -> None:
	"""Render a table of plans, newest first."""
	console = console or Console()

	if not plans:
		console.print("[dim]No plans found.[/dim]")
		return

	table = Table(title="Plans")
	table.add_column("Plan ID", style="cyan")
	table.add_column("Status")
	table.add_column("Objective")
	table.add_column("Subtasks", justify="right")
	table.add_column("Progress", justify="right")
	table.add_column("Created")

	for plan in plans:
		progress = plan.get_progress()
		table.add_row(
			plan.id,
			styled_status(plan.status.value),
			truncate(plan.objective.description, 50),
			str(progress["total"]),
			f"{progress['percent_complete']:.0f}%",
			format_timestamp(plan.created_at),
		)

	console.print(table)


def render_subtask_table(plan: Plan, console: Optional[Console] = None) -> None:
	"""Render per-subtask attempts, durations and errors."""
	console = console or Console()

	table = Table(title=f"Subtasks of {plan.id}")
	table.add_column("#", justify="right", style="dim")
	table.add_column("Subtask", style="cyan")
	table.add_column("Worker")
	table.add_column("Status")
	table.add_column("Attempts", justify="right")
	table.add_column("Duration", justify="right")
	table.add_column("Error")

	for subtask in plan.subtasks:
		duration = subtask.duration_ms / 1000 if subtask.duration_ms is not None else None
		table.add_row(
			str(subtask.sequence),
			subtask.id,
			subtask.worker_type,
			styled_status(subtask.status.value),
			f"{subtask.retry.current_attempt}/{subtask.retry.max_attempts}",
			format_duration(duration),
			truncate(subtask.last_error.message, 40) if subtask.last_error else "",
		)

	console.print(table)


def render_split_result(text: str, result: SplitResult, console: Optional[Console] = None) -> None:
	"""Render how an objective would be split, without creating a plan."""
	console = console or Console()

	console.print(
		f"\n[bold]Complexity:[/bold] {result.complexity} ({complexity_label(result.complexity)})  "
		f"[dim]{truncate(text, 60)}[/dim]"
	)

	table = Table(title="Subtasks")
	table.add_column("ID", style="cyan")
	table.add_column("Category")
	table.add_column("Worker")
	table.add_column("Priority", justify="right")
	table.add_column("Depends On")
	table.add_column("Description")

	for spec in result.subtasks:
		table.add_row(
			spec.id,
			spec.category,
			spec.worker_type,
			str(int(spec.priority)),
			", ".join(spec.dependencies) or "-",
			truncate(spec.description, 60),
		)

	console.print(table)
