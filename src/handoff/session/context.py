"""
Session Context - durable shared state for amnesiac worker invocations.

A SessionContext is the handle through which workers read and write the
session: a path-addressed context tree, an invocation ledger, an event
log, checkpoints, counters and a tracking ledger of files, issues,
findings and work units.

Mutators are synchronous and only schedule persistence; the handle's
CoalescingWriter performs the writes. Lifecycle transitions that end the
session (`complete`, `fail`) and `close()` are async and always flush.

Usage:
	store = SessionStore(config.db_path)
	session = SessionContext(store)
	session_id = await session.start({"trigger": "code-review"})

	session.set("findings.critical", [...], agent="reviewer")
	session.track_file("src/auth.py", "modified")
	session.track_issue("GOO-53", "fixed")

	await session.complete()
"""

import logging
import os
from datetime import datetime
from typing import Any, Iterable, Optional

from .. import ids
from ..config import Config, get_config
from ..errors import (
	CheckpointNotFoundError,
	ConflictError,
	SessionClosedError,
	SessionNotFoundError,
	SummaryConflict,
	ValidationError,
)
from .models import (
	FILE_ACTIONS,
	ISSUE_ACTIONS,
	Checkpoint,
	FileEntry,
	Invocation,
	IssueEntry,
	PlanHistoryEntry,
	SessionEvent,
	SessionMetadata,
	SessionRecord,
	SessionState,
	SessionStats,
	WorkUnit,
)
from .store import SessionStore
from .tree import ContextTree
from .writer import CoalescingWriter

logger = logging.getLogger(__name__)

# Keys compared between a caller-provided completion summary and the derived one
SUMMARY_CHECK_KEYS = ("total_issues", "issues_created", "fixed", "skipped", "files_modified")

MAX_LOGGED_LIST = 10
MAX_LOGGED_STRING = 500


def _now() -> str:
	return datetime.now().isoformat()


def _sanitize(data: Any) -> Any:
	"""Collapse long lists and truncate long strings before logging them."""
	if not isinstance(data, dict):
		if isinstance(data, str) and len(data) > MAX_LOGGED_STRING:
			return data[:MAX_LOGGED_STRING] + "..."
		return data

	sanitized = dict(data)
	for key, value in sanitized.items():
		if isinstance(value, (list, tuple)) and len(value) > MAX_LOGGED_LIST:
			sanitized[key] = f"[List: {len(value)} items]"
		elif isinstance(value, str) and len(value) > MAX_LOGGED_STRING:
			sanitized[key] = value[:MAX_LOGGED_STRING] + "..."
	return sanitized


def _normalize_path(path: str) -> str:
	if path and os.path.isabs(path):
		return os.path.relpath(path, os.getcwd())
	return path


def _count(value: Any) -> int:
	if isinstance(value, (list, dict)):
		return len(value)
	return 0


class SessionContext:
	"""Handle over one session record."""

	def __init__(
		self,
		store: SessionStore,
		config: Optional[Config] = None,
		auto_save: bool = True,
	):
		self.store = store
		self.config = config or get_config()
		self.auto_save = auto_save

		self.record: Optional[SessionRecord] = None
		self._tree = ContextTree()
		self._writer = CoalescingWriter(
			snapshot=self._snapshot,
			persist=self.store.save_raw,
			debounce=self.config.autosave_debounce,
			interval=self.config.autosave_interval,
		)

	# ------------------------------------------------------------------
	# Lifecycle
	# ------------------------------------------------------------------

	async def start(self, metadata: Optional[dict[str, Any]] = None) -> str:
		"""
		Create a new session and persist it.

		Args:
			metadata: trigger, branch, user, config and any extra keys

		Returns:
			The new session ID
		"""
		if self.record is not None:
			raise ConflictError("Session handle already started", session_id=self.record.id)

		self.record = SessionRecord(
			id=ids.session_id(),
			metadata=SessionMetadata.model_validate(metadata or {}),
		)
		self._tree = ContextTree.from_dict(self.record.context)
		await self._writer.flush()

		logger.info(f"Started session {self.record.id} (trigger={self.record.metadata.trigger})")
		return self.record.id

	@classmethod
	async def resume(
		cls,
		session_id: str,
		store: SessionStore,
		config: Optional[Config] = None,
		auto_save: bool = True,
	) -> "SessionContext":
		"""
		Reconstruct a handle from the last durable document.

		Fields missing from older documents are filled with defaults. A
		paused session becomes running again.

		Raises:
			SessionNotFoundError: If no document exists for session_id
		"""
		record = await store.get(session_id)
		if record is None:
			raise SessionNotFoundError(session_id)

		handle = cls(store, config=config, auto_save=auto_save)
		handle.record = record
		handle._tree = ContextTree.from_dict(record.context)

		if not record.state.is_terminal:
			if record.state == SessionState.PAUSED:
				record.state = SessionState.RUNNING
			record.timestamps.updated = _now()
			handle._event("session_resumed", {"state": record.state.value})
			handle._changed()

		logger.info(f"Resumed session {session_id} ({record.state.value})")
		return handle

	@property
	def id(self) -> Optional[str]:
		return self.record.id if self.record else None

	@property
	def state(self) -> Optional[SessionState]:
		return self.record.state if self.record else None

	def mark_running(self):
		"""Mark the session running (first worker started)."""
		record = self._mutable()
		record.state = SessionState.RUNNING
		record.timestamps.started = record.timestamps.started or _now()
		self._changed()

	def pause(self):
		"""Pause the session; `resume` picks it up again."""
		record = self._mutable()
		record.state = SessionState.PAUSED
		self._event("session_paused", {})
		self._changed()

	async def complete(self, summary: Optional[dict[str, Any]] = None) -> dict[str, Any]:
		"""
		Complete the session with a summary derived from tracked data.

		Caller-provided values never override derived ones; disagreements
		on the checked keys are logged as one `summary_conflicts` event and
		the caller's values are kept under `summary["provided"]`.

		Returns:
			The stored summary
		"""
		record = self._mutable()
		provided = dict(summary or {})

		record.state = SessionState.COMPLETED
		record.timestamps.completed = _now()

		derived = self._derive_summary()
		conflicts = self._check_summary_conflicts(derived, provided)
		if conflicts:
			self._event("summary_conflicts", {
				"conflicts": [c.to_dict() for c in conflicts],
				"message": "Provided summary values differ from tracked data",
			})
			logger.warning(
				f"Session {record.id}: {len(conflicts)} summary conflict(s): "
				+ ", ".join(f"{c.key} provided={c.provided} derived={c.derived}" for c in conflicts)
			)

		extra = {k: v for k, v in provided.items() if k not in derived}
		record.summary = {
			**extra,
			**derived,
			"provided": provided,
			"has_conflicts": bool(conflicts),
		}
		self._event("session_completed", {"conflicts": len(conflicts)})

		await self._finish()
		logger.info(f"Completed session {record.id}")
		return record.summary

	async def fail(self, error: BaseException | str):
		"""Mark the session failed with a reason."""
		record = self._mutable()
		record.state = SessionState.FAILED
		record.timestamps.completed = _now()
		record.failure_reason = str(error)
		self._event("session_failed", {"error": record.failure_reason})

		await self._finish()
		logger.warning(f"Session {record.id} failed: {record.failure_reason}")

	async def flush(self):
		"""Force a write of the current state."""
		self._require()
		await self._writer.flush()

	async def close(self):
		"""Stop autosave and write the final state."""
		if self.record is None:
			return
		await self._writer.close()

	async def _finish(self):
		self.record.timestamps.updated = _now()
		await self._writer.close()

	# ------------------------------------------------------------------
	# Context tree
	# ------------------------------------------------------------------

	def set(self, path: str, value: Any, agent: Optional[str] = None):
		"""
		Write a value at a dot path.

		Intermediate levels are created (replacing leaves on the way).
		Every write is logged as a `context_set` event.
		"""
		self._mutable()
		self._tree.set(path, value)
		if isinstance(value, (list, tuple)):
			value_type = f"list[{len(value)}]"
		else:
			value_type = type(value).__name__
		self._event("context_set", {
			"path": path,
			"value_type": value_type,
			"agent": agent or "unknown",
		})
		self._changed()

	def get(self, path: str, default: Any = None) -> Any:
		self._require()
		return self._tree.get(path, default)

	def has(self, path: str) -> bool:
		self._require()
		return self._tree.has(path)

	def append(self, path: str, value: Any):
		"""Append to the sequence at path; raises ValidationError on a non-sequence."""
		self._mutable()
		items = self._tree.append(path, value)
		self._event("context_set", {"path": path, "value_type": f"list[{len(items)}]", "agent": "unknown"})
		self._changed()

	def merge(self, path: str, mapping: dict[str, Any]):
		"""Shallow-merge a mapping at path; raises ValidationError on a non-map."""
		self._mutable()
		self._tree.merge(path, mapping)
		self._event("context_set", {"path": path, "value_type": "dict", "agent": "unknown"})
		self._changed()

	def get_context(self) -> dict[str, Any]:
		"""Return a plain copy of the whole context tree."""
		self._require()
		return self._tree.to_dict()

	# ------------------------------------------------------------------
	# Invocation ledger
	# ------------------------------------------------------------------

	def record_invocation(self, agent: str, input: Any = None, parent: Optional[str] = None) -> str:
		"""Record a worker invocation and return its ID."""
		record = self._mutable()
		invocation = Invocation(
			id=ids.invocation_id(),
			agent=agent,
			parent=parent,
			input=_sanitize(input),
		)
		record.invocations.append(invocation)
		record.stats.agents_invoked += 1
		self._event("agent_invoked", {"agent": agent, "invocation_id": invocation.id})
		self._changed()
		return invocation.id

	def record_invocation_result(self, invocation_id: str, result: Any, status: str = "success") -> bool:
		"""Attach a result to a recorded invocation. Returns False if unknown."""
		record = self._mutable()
		for invocation in record.invocations:
			if invocation.id == invocation_id:
				invocation.completed_at = _now()
				invocation.status = status
				invocation.result = _sanitize(result)
				self._event("agent_completed", {
					"agent": invocation.agent,
					"invocation_id": invocation_id,
					"status": status,
				})
				self._changed()
				return True
		logger.warning(f"Unknown invocation {invocation_id} in session {record.id}")
		return False

	def get_invocation_chain(self) -> list[Invocation]:
		return list(self._require().invocations)

	# ------------------------------------------------------------------
	# Events
	# ------------------------------------------------------------------

	def add_event(self, type: str, data: Optional[dict[str, Any]] = None):
		self._mutable()
		self._event(type, data or {})
		self._changed()

	def get_events(self, type: Optional[str] = None) -> list[SessionEvent]:
		events = self._require().events
		if type:
			return [e for e in events if e.type == type]
		return list(events)

	def _event(self, type: str, data: dict[str, Any]):
		self.record.events.append(SessionEvent(type=type, data=data))

	# ------------------------------------------------------------------
	# Checkpoints
	# ------------------------------------------------------------------

	def checkpoint(self, label: str) -> str:
		"""Snapshot context and counters; returns the checkpoint ID."""
		record = self._mutable()
		checkpoint = Checkpoint(
			id=ids.checkpoint_id(),
			label=label,
			context=self._tree.to_dict(),
			stats=record.stats.model_dump(),
		)
		record.checkpoints.append(checkpoint)
		self._event("checkpoint_created", {"checkpoint_id": checkpoint.id, "label": label})
		self._changed()
		logger.debug(f"Checkpoint {checkpoint.id} ({label}) in session {record.id}")
		return checkpoint.id

	def rollback(self, checkpoint_id: str) -> bool:
		"""
		Restore context and counters from a checkpoint.

		The tracking ledger is not rolled back: files and issues tracked
		after the checkpoint stay recorded, so tracking them again is
		deduplicated and does not rewrite their `fixes.*` / `issues.*`
		mirrors in the restored context.

		Raises:
			CheckpointNotFoundError: If the ID is unknown (live state untouched)
		"""
		record = self._mutable()
		checkpoint = next((c for c in record.checkpoints if c.id == checkpoint_id), None)
		if checkpoint is None:
			raise CheckpointNotFoundError(checkpoint_id)

		self._tree = ContextTree.from_dict(checkpoint.context)
		record.stats = SessionStats.model_validate(checkpoint.stats)
		self._event("rollback", {"checkpoint_id": checkpoint_id, "label": checkpoint.label})
		self._changed()
		logger.info(f"Rolled back session {record.id} to {checkpoint.label}")
		return True

	def get_checkpoints(self) -> list[Checkpoint]:
		return list(self._require().checkpoints)

	# ------------------------------------------------------------------
	# Stats
	# ------------------------------------------------------------------

	def increment_stat(self, name: str, amount: int = 1) -> bool:
		"""Increment a known counter. Unknown counter names are ignored."""
		record = self._mutable()
		if name not in SessionStats.model_fields:
			logger.debug(f"Ignoring unknown stat {name!r}")
			return False
		setattr(record.stats, name, getattr(record.stats, name) + amount)
		self._changed()
		return True

	def get_stats(self) -> dict[str, Any]:
		return self._require().stats.model_dump()

	# ------------------------------------------------------------------
	# Tracking
	# ------------------------------------------------------------------

	def _current_work_id(self) -> Optional[str]:
		work = self.record.tracking.current_work
		return work.id if work else None

	def track_file(self, path: str, action: str = "modified", **meta: Any) -> "SessionContext":
		"""
		Track a file operation (created, modified or deleted).

		Unknown actions fall back to "modified". Absolute paths are made
		relative to the working directory. A path is recorded once per action.
		"""
		record = self._mutable()
		if action not in FILE_ACTIONS:
			action = "modified"
		path = _normalize_path(path)

		bucket: list[FileEntry] = getattr(record.tracking.files, action)
		if any(entry.path == path for entry in bucket):
			return self

		entry = FileEntry(path=path, work_id=self._current_work_id(), **meta)
		bucket.append(entry)
		if action in ("created", "modified"):
			record.stats.fixes_applied += 1

		self._tree.append(f"fixes.{action}", {"file": path, "timestamp": entry.timestamp})
		self._event("file_tracked", {"path": path, "action": action})
		self._changed()
		return self

	def track_files(self, paths: Iterable[str], action: str = "modified", **meta: Any) -> "SessionContext":
		for path in paths:
			self.track_file(path, action, **meta)
		return self

	def track_issue(self, issue_id: str, action: str = "created", **meta: Any) -> "SessionContext":
		"""
		Track an issue operation (created, fixed, skipped or failed).

		Unknown actions fall back to "created". An issue is recorded once
		per action.
		"""
		record = self._mutable()
		if action not in ISSUE_ACTIONS:
			action = "created"

		bucket: list[IssueEntry] = getattr(record.tracking.issues, action)
		if any(entry.id == issue_id for entry in bucket):
			return self

		bucket.append(IssueEntry(id=issue_id, work_id=self._current_work_id(), **meta))
		if action == "created":
			record.stats.issues_created += 1
		elif action == "fixed":
			record.stats.fixes_applied += 1

		self._tree.append(f"issues.{action}", issue_id)
		self._event("issue_tracked", {"id": issue_id, "action": action})
		self._changed()
		return self

	def track_issues(self, issue_ids: Iterable[str], action: str = "created", **meta: Any) -> "SessionContext":
		for issue_id in issue_ids:
			self.track_issue(issue_id, action, **meta)
		return self

	def track_finding(self, finding: dict[str, Any]) -> "SessionContext":
		"""Track a finding (type, file, description, ...)."""
		record = self._mutable()
		entry = {**finding, "timestamp": _now()}
		if entry.get("file"):
			entry["file"] = _normalize_path(entry["file"])
		work_id = self._current_work_id()
		if work_id:
			entry["work_id"] = work_id

		record.tracking.findings.append(entry)
		record.stats.findings_processed += 1

		self._tree.append("findings.all", dict(finding))
		self._event("finding_tracked", {"type": finding.get("type"), "file": finding.get("file")})
		self._changed()
		return self

	def track_findings(self, findings: Iterable[dict[str, Any]]) -> "SessionContext":
		for finding in findings:
			self.track_finding(finding)
		return self

	# ------------------------------------------------------------------
	# Work units
	# ------------------------------------------------------------------

	def start_work(self, type: str, **meta: Any) -> str:
		"""Open a work unit; subsequent tracking is tagged with its ID."""
		record = self._mutable()
		current = record.tracking.current_work
		if current is not None:
			logger.warning(f"Replacing unfinished work unit {current.id} ({current.type})")

		work = WorkUnit(id=ids.work_id(), type=type, metadata=meta)
		record.tracking.current_work = work
		self._event("work_started", {"work_id": work.id, "type": type, **meta})
		self._changed()
		return work.id

	def complete_work(self, result: Optional[dict[str, Any]] = None) -> dict[str, Any]:
		"""
		Close the active work unit and return its summary.

		Without an active unit an ad-hoc summary over the whole session is
		returned and nothing is recorded.
		"""
		record = self._mutable()
		result = result or {}
		work = record.tracking.current_work
		if work is None:
			return self._work_summary(None, result)

		completed_at = _now()
		duration = round(
			(datetime.fromisoformat(completed_at) - datetime.fromisoformat(work.started_at)).total_seconds()
		)
		summary = self._work_summary(work.id, {**work.metadata, **result, "duration": duration})

		work.completed_at = completed_at
		work.summary = summary
		record.tracking.work.append(work)
		record.tracking.current_work = None

		self._event("work_completed", {"work_id": work.id, "type": work.type, "summary": summary})
		self._changed()
		return summary

	def _work_summary(self, work_id: Optional[str], extra: dict[str, Any]) -> dict[str, Any]:
		t = self.record.tracking

		def mine(entry) -> bool:
			if work_id is None:
				return True
			entry_work = entry.get("work_id") if isinstance(entry, dict) else entry.work_id
			return entry_work == work_id

		def count(entries) -> int:
			return sum(1 for e in entries if mine(e))

		unique_files = {f.path for f in t.files.created if mine(f)} | {f.path for f in t.files.modified if mine(f)}

		return {
			"files_created": count(t.files.created),
			"files_modified": count(t.files.modified),
			"files_deleted": count(t.files.deleted),
			"files_total": len(unique_files),
			"issues_created": count(t.issues.created),
			"issues_fixed": count(t.issues.fixed),
			"issues_skipped": count(t.issues.skipped),
			"issues_failed": count(t.issues.failed),
			"findings_processed": count(t.findings),
			**extra,
		}

	def get_current_work(self) -> Optional[WorkUnit]:
		return self._require().tracking.current_work

	def get_completed_work(self) -> list[WorkUnit]:
		return list(self._require().tracking.work)

	def get_tracking_summary(self) -> dict[str, Any]:
		self._require()
		return self._work_summary(None, {})

	# ------------------------------------------------------------------
	# Plans
	# ------------------------------------------------------------------

	def set_active_plan(self, plan_id: Optional[str]):
		record = self._mutable()
		record.tracking.plans.active = plan_id
		self._changed()

	def record_plan_outcome(self, plan_id: str, status: str, subtask_count: int):
		"""Move a plan from active into the completed list and history."""
		record = self._mutable()
		plans = record.tracking.plans
		if plans.active == plan_id:
			plans.active = None
		if plan_id not in plans.completed:
			plans.completed.append(plan_id)
		plans.history.append(PlanHistoryEntry(plan_id=plan_id, status=status, subtask_count=subtask_count))
		self._changed()

	# ------------------------------------------------------------------
	# Errors
	# ------------------------------------------------------------------

	def record_error(self, error: BaseException | str, **context: Any):
		record = self._mutable()
		message = str(error)
		self._tree.append("errors", {
			"message": message,
			"type": type(error).__name__ if isinstance(error, BaseException) else None,
			"context": context,
			"timestamp": _now(),
		})
		record.stats.errors_encountered += 1
		self._event("error", {"message": message})
		self._changed()

	def get_errors(self) -> list[dict[str, Any]]:
		self._require()
		errors = self._tree.get("errors", [])
		return errors if isinstance(errors, list) else []

	# ------------------------------------------------------------------
	# Reporting
	# ------------------------------------------------------------------

	def get_summary(self) -> dict[str, Any]:
		record = self._require()
		return {
			"id": record.id,
			"state": record.state.value,
			"trigger": record.metadata.trigger,
			"duration": self._duration(),
			"stats": record.stats.model_dump(),
			"agent_chain": [{"agent": i.agent, "status": i.status} for i in record.invocations],
			"error_count": len(self.get_errors()),
		}

	def _duration(self) -> int:
		"""Elapsed seconds from creation to completion (or now)."""
		timestamps = self.record.timestamps
		start = datetime.fromisoformat(timestamps.created)
		end = datetime.fromisoformat(timestamps.completed) if timestamps.completed else datetime.now()
		return max(0, round((end - start).total_seconds()))

	def _derive_summary(self) -> dict[str, Any]:
		"""Summary from tracking, then the legacy context namespaces, then counters."""
		record = self.record
		tracking = record.tracking
		stats = record.stats
		ctx = self._tree

		issues_created = len(tracking.issues.created)
		issues_fixed = len(tracking.issues.fixed)
		issues_skipped = len(tracking.issues.skipped)
		issues_failed = len(tracking.issues.failed)
		files_created = len(tracking.files.created)
		files_modified = len(tracking.files.modified)
		findings = len(tracking.findings)

		if issues_created == 0:
			issues_created = _count(ctx.get("issues.created"))
		if issues_fixed == 0:
			issues_fixed = _count(ctx.get("fixes.applied"))
		if issues_failed == 0:
			issues_failed = _count(ctx.get("fixes.failed"))
		if findings == 0:
			findings = _count(ctx.get("findings.all"))

		files = {f.path for f in tracking.files.created} | {f.path for f in tracking.files.modified}
		if not files:
			applied = ctx.get("fixes.applied")
			if isinstance(applied, list):
				files = {fix["file"] for fix in applied if isinstance(fix, dict) and fix.get("file")}

		total_issues = issues_created or stats.issues_created
		fixed = issues_fixed or stats.fixes_applied

		return {
			"total_issues": total_issues,
			"issues_created": issues_created or stats.issues_created,
			"fixed": fixed,
			"failed": issues_failed,
			"skipped": issues_skipped or max(0, total_issues - fixed - issues_failed),
			"files_created": files_created,
			"files_modified": files_modified or len(files),
			"files_total": len(files),
			"findings_processed": findings or stats.findings_processed,
			"errors_encountered": len(self.get_errors()) or stats.errors_encountered,
			"agents_invoked": stats.agents_invoked,
			"duration": self._duration(),
		}

	@staticmethod
	def _check_summary_conflicts(derived: dict[str, Any], provided: dict[str, Any]) -> list[SummaryConflict]:
		return [
			SummaryConflict(key=key, provided=provided[key], derived=derived[key])
			for key in SUMMARY_CHECK_KEYS
			if key in provided and key in derived and provided[key] != derived[key]
		]

	# ------------------------------------------------------------------
	# Internals
	# ------------------------------------------------------------------

	def _require(self) -> SessionRecord:
		if self.record is None:
			raise ConflictError("Session has not been started or resumed")
		return self.record

	def _mutable(self) -> SessionRecord:
		record = self._require()
		if record.state.is_terminal:
			raise SessionClosedError(record.id, record.state.value)
		return record

	def _changed(self):
		self.record.timestamps.updated = _now()
		if self.auto_save:
			self._writer.schedule()

	def _snapshot(self) -> dict[str, Any]:
		data = self.record.model_dump(mode="json")
		data["context"] = self._tree.to_dict()
		return data
