"""Shared utilities for visualizer views."""

from datetime import datetime
from typing import Optional


def format_duration(seconds: Optional[float]) -> str:
	"""Format a duration for display. e.g. '1.2s', '45ms', '2m 3s'."""
	if seconds is None:
		return "-"
	if seconds < 0.001:
		return "<1ms"
	if seconds < 1.0:
		return f"{seconds * 1000:.0f}ms"
	if seconds < 60.0:
		return f"{seconds:.1f}s"
	minutes = int(seconds // 60)
	secs = seconds % 60
	return f"{minutes}m {secs:.0f}s"


def format_timestamp(iso_str: Optional[str]) -> str:
	"""Format an ISO timestamp as relative time (e.g. '2m ago') or absolute."""
	if not iso_str:
		return "-"
	try:
		dt = datetime.fromisoformat(iso_str)
		delta = datetime.now() - dt
		total_secs = int(delta.total_seconds())

		if total_secs < 0:
			return iso_str[:19]
		if total_secs < 60:
			return f"{total_secs}s ago"
		if total_secs < 3600:
			return f"{total_secs // 60}m ago"
		if total_secs < 86400:
			return f"{total_secs // 3600}h ago"
		days = total_secs // 86400
		return f"{days}d ago"
	except (ValueError, TypeError):
		return str(iso_str)[:19]


def truncate(text: str, max_len: int = 60) -> str:
	"""Shorten text for table display."""
	if not text:
		return ""
	text = text.strip()
	if len(text) <= max_len:
		return text
	return text[:max_len - 3] + "..."


STATUS_STYLES = {
	"completed": "green",
	"success": "green",
	"running": "yellow",
	"paused": "yellow",
	"partial": "yellow",
	"pending": "dim",
	"created": "dim",
	"skipped": "dim",
	"blocked": "red",
	"failed": "red",
	"cancelled": "magenta",
}


def status_style(status: str) -> str:
	"""Return a Rich style string for a plan, subtask or session status."""
	return STATUS_STYLES.get(status, "white")


def styled_status(status: str) -> str:
	style = status_style(status)
	return f"[{style}]{status}[/{style}]"
