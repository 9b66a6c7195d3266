"""Tests for visualizer Rich views."""

from datetime import datetime, timedelta
from io import StringIO

from rich.console import Console

from handoff.orchestrator.splitter import split_task
from handoff.plans.models import Objective, Plan, PlanStatus, Subtask, SubtaskError, SubtaskStatus
from handoff.session.models import SessionEvent, SessionRecord, SessionState
from handoff.visualizer import (
	render_plan_list,
	render_plan_progress,
	render_plan_summary,
	render_session_detail,
	render_session_list,
	render_split_result,
	render_subtask_table,
)
from handoff.visualizer.utils import format_duration, format_timestamp, status_style, styled_status, truncate


def _console() -> Console:
	return Console(file=StringIO(), width=200)


def _output(console: Console) -> str:
	return console.file.getvalue()


# -- utils tests --

def test_format_duration_submillisecond():
	assert format_duration(0.0001) == "<1ms"


def test_format_duration_milliseconds():
	assert format_duration(0.045) == "45ms"


def test_format_duration_seconds():
	assert format_duration(1.23) == "1.2s"


def test_format_duration_minutes():
	assert format_duration(125.0) == "2m 5s"


def test_format_duration_none():
	assert format_duration(None) == "-"


def test_format_timestamp_recent():
	assert format_timestamp(datetime.now().isoformat()).endswith("s ago")


def test_format_timestamp_days():
	assert format_timestamp((datetime.now() - timedelta(days=3)).isoformat()) == "3d ago"


def test_format_timestamp_invalid():
	assert format_timestamp("not-a-date") == "not-a-date"
	assert format_timestamp(None) == "-"


def test_truncate():
	assert truncate("short") == "short"
	result = truncate("x" * 100, max_len=20)
	assert len(result) == 20
	assert result.endswith("...")
	assert truncate("") == ""


def test_status_style():
	assert status_style("completed") == "green"
	assert status_style("failed") == "red"
	assert status_style("mystery") == "white"
	assert styled_status("cancelled") == "[magenta]cancelled[/magenta]"


# -- fixtures --

def _make_plan() -> Plan:
	return Plan(
		id="plan_123",
		session_id="session_abc",
		status=PlanStatus.PARTIAL,
		priority=1,
		objective=Objective(description="Fix the auth bug and add tests", complexity=6),
		subtasks=[
			Subtask(
				id="st_1_aaaaaa", plan_id="plan_123", sequence=1, priority=1,
				description="Fix the auth bug", worker_type="auto-fixer",
				status=SubtaskStatus.COMPLETED, duration_ms=1500,
			),
			Subtask(
				id="st_2_bbbbbb", plan_id="plan_123", sequence=2,
				description="add tests", status=SubtaskStatus.FAILED,
				dependencies=["st_1_aaaaaa"],
				last_error=SubtaskError(message="worker crashed", code="EXECUTION_ERROR"),
			),
		],
	)


def _make_session() -> SessionRecord:
	record = SessionRecord(id="session_abc", state=SessionState.RUNNING)
	record.metadata.trigger = "cli"
	record.stats.agents_invoked = 2
	record.stats.errors_encountered = 1
	record.events = [
		SessionEvent(type="plan_created", data={"plan_id": "plan_123"}),
		SessionEvent(type="worker_started", data={"subtask_id": "st_1_aaaaaa"}),
		SessionEvent(type="worker_failed", data={"subtask_id": "st_2_bbbbbb"}),
	]
	return record


# -- plan views --

def test_render_plan_progress():
	console = _console()
	render_plan_progress(_make_plan(), console=console)
	output = _output(console)
	assert "Fix the auth bug and add tests" in output
	assert "1/2 subtasks" in output
	assert "[x] st_1_aaaaaa" in output
	assert "depends on: st_1_aaaaaa" in output
	assert "EXECUTION_ERROR: worker crashed" in output


def test_render_plan_summary():
	console = _console()
	render_plan_summary(_make_plan(), console=console)
	output = _output(console)
	assert "Plan: plan_123" in output
	assert "partial" in output
	assert "6 (complex)" in output
	assert "failed: 1" in output


def test_render_plan_list():
	console = _console()
	render_plan_list([_make_plan()], console=console)
	output = _output(console)
	assert "plan_123" in output
	assert "50%" in output


def test_render_plan_list_empty():
	console = _console()
	render_plan_list([], console=console)
	assert "No plans found." in _output(console)


def test_render_subtask_table():
	console = _console()
	render_subtask_table(_make_plan(), console=console)
	output = _output(console)
	assert "st_2_bbbbbb" in output
	assert "1.5s" in output
	assert "worker crashed" in output


def test_render_split_result():
	text = "Fix the security bug and also write tests and update the README"
	console = _console()
	render_split_result(text, split_task(text), console=console)
	output = _output(console)
	assert "Complexity: 9 (very_complex)" in output
	assert "security" in output
	assert "docs" in output


# -- session views --

def test_render_session_list():
	console = _console()
	render_session_list([_make_session()], console=console)
	output = _output(console)
	assert "session_abc" in output
	assert "running" in output


def test_render_session_list_empty():
	console = _console()
	render_session_list([], console=console)
	assert "No sessions recorded yet." in _output(console)


def test_render_session_detail():
	console = _console()
	render_session_detail(_make_session(), console=console)
	output = _output(console)
	assert "Session: session_abc" in output
	assert "Trigger: cli" in output
	assert "worker_failed" in output
	assert "subtask_id=st_2_bbbbbb" in output


def test_render_session_detail_event_limit():
	console = _console()
	render_session_detail(_make_session(), console=console, event_limit=1)
	output = _output(console)
	assert "worker_failed" in output
	assert "plan_created" not in output


def test_render_session_detail_no_events():
	record = SessionRecord(id="session_empty")
	console = _console()
	render_session_detail(record, console=console)
	assert "No events recorded." in _output(console)
