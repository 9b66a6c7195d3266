"""Visualizer package - Rich terminal views for plans and sessions."""

from .plan_progress import (
	render_plan_list,
	render_plan_progress,
	render_plan_summary,
	render_split_result,
	render_subtask_table,
)
from .session_timeline import render_session_detail, render_session_list

__all__ = [
	"render_plan_list",
	"render_plan_progress",
	"render_plan_summary",
	"render_session_detail",
	"render_session_list",
	"render_split_result",
	"render_subtask_table",
]
