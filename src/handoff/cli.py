"""CLI for handoff: split objectives, build and run plans, inspect sessions."""

import argparse
import asyncio
import json
import sys
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Optional

from importlib.metadata import PackageNotFoundError
from importlib.metadata import version as pkg_version
from rich.console import Console
from rich.markup import escape

from .config import Config, get_config
from .errors import HandoffError
from .logging_config import setup_logging
from .orchestrator.executor import ExecutionHandle, PlanOrchestrator
from .orchestrator.splitter import analyze_task, estimate_execution_time, split_task
from .orchestrator.worker import CommandExecutor, WorkerMode, WorkerRunner
from .plans.models import PlanStatus
from .plans.store import PlanStore
from .priority_queue import Priority
from .session.context import SessionContext
from .session.store import SessionStore
from .storage import DocumentStore
from .visualizer import (
	render_plan_list,
	render_plan_progress,
	render_plan_summary,
	render_session_detail,
	render_session_list,
	render_split_result,
	render_subtask_table,
)

console = Console()


def _version() -> str:
	try:
		return pkg_version("handoff")
	except PackageNotFoundError:
		return "unknown"


def _priority(value: str) -> int:
	"""Accept a priority as a number (1-4) or a name (urgent/high/normal/low)."""
	try:
		return int(Priority[value.upper()])
	except KeyError:
		pass
	try:
		number = int(value)
	except ValueError:
		raise argparse.ArgumentTypeError(f"invalid priority: {value}")
	if number not in tuple(Priority):
		raise argparse.ArgumentTypeError(f"priority must be 1-4, got {number}")
	return number


@asynccontextmanager
async def _stores(config: Config) -> AsyncIterator[tuple[SessionStore, PlanStore]]:
	db = DocumentStore(config.db_path)
	await db.init()
	try:
		yield SessionStore(db), PlanStore(db)
	finally:
		await db.close()


def _build_worker(args: argparse.Namespace, config: Config, session: Optional[SessionContext]) -> WorkerRunner:
	if not getattr(args, "live", False):
		return WorkerRunner(mode=WorkerMode.SIMULATED, timeout=config.worker_timeout, session=session)

	executor = CommandExecutor(config.worker_command) if config.worker_command else None
	if executor is None:
		console.print("[yellow]No worker_command configured; subtasks will return invocation requests.[/yellow]")
	return WorkerRunner(mode=WorkerMode.LIVE, executor=executor, timeout=config.worker_timeout, session=session)


async def _open_session(session_store: SessionStore, config: Config, session_id: Optional[str]) -> Optional[SessionContext]:
	"""Resume the owning session when it is still open."""
	if not session_id:
		return None
	record = await session_store.get(session_id)
	if record is None or record.state.is_terminal:
		return None
	return await SessionContext.resume(session_id, session_store, config=config)


# ----------------------------------------------------------------------
# Commands
# ----------------------------------------------------------------------

async def cmd_split(args: argparse.Namespace, config: Config) -> int:
	"""Show how an objective would be split, without creating a plan."""
	result = split_task(
		args.objective,
		max_subtasks=args.max_subtasks or config.max_subtasks,
		priority_threshold=args.threshold,
	)
	if args.json:
		console.print_json(json.dumps({
			"analysis": analyze_task(args.objective),
			"estimate": estimate_execution_time(args.objective),
			"complexity": result.complexity,
			"subtasks": [
				{
					"id": spec.id,
					"description": spec.description,
					"priority": int(spec.priority),
					"worker_type": spec.worker_type,
					"category": spec.category,
					"dependencies": spec.dependencies,
				}
				for spec in result.subtasks
			],
			"dependencies": result.dependencies,
		}))
	else:
		render_split_result(args.objective, result, console=console)
	return 0


async def cmd_plan_create(args: argparse.Namespace, config: Config) -> int:
	async with _stores(config) as (session_store, plan_store):
		if args.session:
			session = await SessionContext.resume(args.session, session_store, config=config)
		else:
			session = SessionContext(session_store, config=config)
			await session.start({"trigger": "cli"})

		try:
			orchestrator = PlanOrchestrator(
				plan_store,
				session=session,
				worker=_build_worker(args, config, session),
				config=config,
			)
			context = json.loads(args.context) if args.context else None
			plan = await orchestrator.create_plan(
				args.objective,
				max_subtasks=args.max_subtasks,
				priority_threshold=args.threshold,
				context=context,
				max_attempts=args.max_attempts,
			)
			render_plan_summary(plan, console=console)

			if args.run:
				report = await orchestrator.execute(plan.id)
				plan = await orchestrator.get_plan(plan.id)
				render_plan_progress(plan, console=console)
				console.print(f"Plan finished: {report.status}")
		finally:
			await session.close()
	return 0


async def cmd_plan_run(args: argparse.Namespace, config: Config) -> int:
	async with _stores(config) as (session_store, plan_store):
		plan = await plan_store.get(args.plan_id)
		session = await _open_session(session_store, config, plan.session_id if plan else None)
		try:
			orchestrator = PlanOrchestrator(
				plan_store,
				session=session,
				worker=_build_worker(args, config, session),
				config=config,
			)

			def on_subtask_complete(subtask, result):
				console.print(f"  {subtask.id} ({subtask.worker_type}) -> {subtask.status.value}")

			report = await orchestrator.execute(
				args.plan_id,
				on_subtask_complete=on_subtask_complete,
				resume=args.resume,
			)
			if isinstance(report, ExecutionHandle):
				report = await report.wait()
			render_plan_progress(await orchestrator.get_plan(args.plan_id), console=console)
			console.print(f"Plan finished: {report.status}")
		finally:
			if session is not None:
				await session.close()
	return 0 if report.status in (PlanStatus.COMPLETED.value, "already_completed") else 2


async def cmd_plan_status(args: argparse.Namespace, config: Config) -> int:
	async with _stores(config) as (_, plan_store):
		orchestrator = PlanOrchestrator(plan_store, config=config)
		if args.json:
			console.print_json(json.dumps(await orchestrator.get_status(args.plan_id)))
			return 0
		plan = await orchestrator.get_plan(args.plan_id)
		render_plan_summary(plan, console=console)
		render_subtask_table(plan, console=console)
	return 0


async def cmd_plan_list(args: argparse.Namespace, config: Config) -> int:
	async with _stores(config) as (_, plan_store):
		orchestrator = PlanOrchestrator(plan_store, config=config)
		plans = await orchestrator.list_plans(status=args.status, session_id=args.session)
		render_plan_list(plans[:args.limit], console=console)
	return 0


async def cmd_plan_cancel(args: argparse.Namespace, config: Config) -> int:
	async with _stores(config) as (session_store, plan_store):
		plan = await plan_store.get(args.plan_id)
		session = await _open_session(session_store, config, plan.session_id if plan else None)
		try:
			orchestrator = PlanOrchestrator(plan_store, session=session, config=config)
			result = await orchestrator.cancel(args.plan_id, reason=args.reason)
		finally:
			if session is not None:
				await session.close()
	console.print(
		f"Cancelled {result['plan_id']}: {result['reason']} "
		f"({len(result['completed_subtasks'])} subtask(s) already completed)"
	)
	return 0


async def cmd_plan_retry(args: argparse.Namespace, config: Config) -> int:
	async with _stores(config) as (session_store, plan_store):
		plan = await plan_store.get(args.plan_id)
		session = await _open_session(session_store, config, plan.session_id if plan else None)
		try:
			orchestrator = PlanOrchestrator(
				plan_store,
				session=session,
				worker=_build_worker(args, config, session),
				config=config,
			)
			report = await orchestrator.retry(args.plan_id)
			render_plan_progress(await orchestrator.get_plan(args.plan_id), console=console)
			console.print(f"Plan finished: {report.status}")
		finally:
			if session is not None:
				await session.close()
	return 0 if report.status == PlanStatus.COMPLETED.value else 2


async def cmd_session_show(args: argparse.Namespace, config: Config) -> int:
	async with _stores(config) as (session_store, _):
		record = await session_store.get(args.session_id)
	if record is None:
		console.print(f"[red]Session not found: {args.session_id}[/red]")
		return 1
	if args.json:
		console.print_json(record.model_dump_json())
	else:
		render_session_detail(record, console=console, event_limit=args.events)
	return 0


async def cmd_session_list(args: argparse.Namespace, config: Config) -> int:
	async with _stores(config) as (session_store, _):
		records = await session_store.list(state=args.state)
	render_session_list(records[:args.limit], console=console)
	return 0


async def cmd_cleanup(args: argparse.Namespace, config: Config) -> int:
	async with _stores(config) as (_, plan_store):
		orchestrator = PlanOrchestrator(plan_store, config=config)
		deleted = await orchestrator.cleanup(max_age_days=args.days)
	console.print(f"Deleted {deleted} completed plan(s)")
	return 0


# ----------------------------------------------------------------------
# Entry point
# ----------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
	parser = argparse.ArgumentParser(
		prog="handoff",
		description="Durable sessions, priority scheduling and plan orchestration for stateless workers",
	)
	parser.add_argument("--version", action="version", version=f"%(prog)s {_version()}")
	parser.add_argument("--db", type=Path, default=None, help="Database path (default: data dir)")
	parser.add_argument("--log-level", type=str, default=None, help="DEBUG, INFO, WARNING or ERROR")
	subparsers = parser.add_subparsers(dest="command")

	# split
	split_parser = subparsers.add_parser("split", help="Show how an objective would be split")
	split_parser.add_argument("objective", help="Free-text objective")
	split_parser.add_argument("--max-subtasks", type=int, default=None, help="Subtask cap (at most 3)")
	split_parser.add_argument("--threshold", type=_priority, default=int(Priority.LOW), help="Least urgent priority kept")
	split_parser.add_argument("--json", action="store_true", help="Print JSON instead of tables")
	split_parser.set_defaults(func=cmd_split)

	# plan
	plan_parser = subparsers.add_parser("plan", help="Create, run and inspect plans")
	plan_subparsers = plan_parser.add_subparsers(dest="plan_command")

	plan_create = plan_subparsers.add_parser("create", help="Create a plan from an objective")
	plan_create.add_argument("objective", help="Free-text objective")
	plan_create.add_argument("--session", type=str, default=None, help="Attach to an existing session")
	plan_create.add_argument("--max-subtasks", type=int, default=None, help="Subtask cap (at most 3)")
	plan_create.add_argument("--max-attempts", type=int, default=None, help="Attempts per subtask")
	plan_create.add_argument("--threshold", type=_priority, default=int(Priority.LOW), help="Least urgent priority kept")
	plan_create.add_argument("--context", type=str, default=None, help="JSON object handed to every subtask")
	plan_create.add_argument("--run", action="store_true", help="Execute the plan right away")
	plan_create.add_argument("--live", action="store_true", help="Use the configured worker command")
	plan_create.set_defaults(func=cmd_plan_create)

	plan_run = plan_subparsers.add_parser("run", help="Execute a plan")
	plan_run.add_argument("plan_id")
	plan_run.add_argument("--live", action="store_true", help="Use the configured worker command")
	plan_run.add_argument("--resume", action="store_true", help="Resume a plan left running by a crash")
	plan_run.set_defaults(func=cmd_plan_run)

	plan_status = plan_subparsers.add_parser("status", help="Show plan status")
	plan_status.add_argument("plan_id")
	plan_status.add_argument("--json", action="store_true", help="Print JSON instead of tables")
	plan_status.set_defaults(func=cmd_plan_status)

	plan_list = plan_subparsers.add_parser("list", help="List plans")
	plan_list.add_argument("--status", type=str, default=None, choices=[s.value for s in PlanStatus])
	plan_list.add_argument("--session", type=str, default=None, help="Filter by session")
	plan_list.add_argument("--limit", type=int, default=50, help="Max results")
	plan_list.set_defaults(func=cmd_plan_list)

	plan_cancel = plan_subparsers.add_parser("cancel", help="Cancel a running plan")
	plan_cancel.add_argument("plan_id")
	plan_cancel.add_argument("--reason", type=str, default="User cancelled")
	plan_cancel.set_defaults(func=cmd_plan_cancel)

	plan_retry = plan_subparsers.add_parser("retry", help="Retry failed subtasks of a plan")
	plan_retry.add_argument("plan_id")
	plan_retry.add_argument("--live", action="store_true", help="Use the configured worker command")
	plan_retry.set_defaults(func=cmd_plan_retry)

	# session
	session_parser = subparsers.add_parser("session", help="Inspect sessions")
	session_subparsers = session_parser.add_subparsers(dest="session_command")

	session_show = session_subparsers.add_parser("show", help="Show one session")
	session_show.add_argument("session_id")
	session_show.add_argument("--events", type=int, default=50, help="Number of recent events shown")
	session_show.add_argument("--json", action="store_true", help="Print the raw session document")
	session_show.set_defaults(func=cmd_session_show)

	session_list = session_subparsers.add_parser("list", help="List sessions")
	session_list.add_argument(
		"--state", type=str, default=None,
		choices=["created", "running", "paused", "completed", "failed"],
	)
	session_list.add_argument("--limit", type=int, default=50, help="Max results")
	session_list.set_defaults(func=cmd_session_list)

	# cleanup
	cleanup_parser = subparsers.add_parser("cleanup", help="Delete old completed plans")
	cleanup_parser.add_argument("--days", type=int, default=None, help="Retention in days (default: config)")
	cleanup_parser.set_defaults(func=cmd_cleanup)

	return parser


def main(argv: Optional[list[str]] = None) -> int:
	"""CLI entry point."""
	parser = build_parser()
	args = parser.parse_args(argv)

	if not getattr(args, "func", None):
		parser.print_help()
		return 1

	config = get_config()
	if args.db is not None:
		config.db_path = args.db
	setup_logging(level=args.log_level, log_dir=config.log_dir)

	try:
		return asyncio.run(args.func(args, config))
	except HandoffError as e:
		message = escape(f"[{e.code}] {e.message}")
		console.print(f"[red]{message}[/red]")
		return 1
	except json.JSONDecodeError as e:
		console.print(f"[red]Invalid JSON: {escape(str(e))}[/red]")
		return 1


if __name__ == "__main__":
	sys.exit(main())
