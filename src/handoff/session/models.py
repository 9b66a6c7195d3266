"""
Session Models - Pydantic schemas for the durable session document.

Every structural field has a default so documents written by older
versions (without tracking, plans or newer counters) load cleanly.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class SessionState(str, Enum):
	"""Lifecycle state of a session."""
	CREATED = "created"
	RUNNING = "running"
	PAUSED = "paused"
	COMPLETED = "completed"
	FAILED = "failed"

	@property
	def is_terminal(self) -> bool:
		return self in (SessionState.COMPLETED, SessionState.FAILED)


FILE_ACTIONS = ("created", "modified", "deleted")
ISSUE_ACTIONS = ("created", "fixed", "skipped", "failed")


def _now() -> str:
	return datetime.now().isoformat()


def default_context() -> dict[str, Any]:
	"""Namespaces every new session context starts with."""
	return {
		"findings": {},
		"issues": {},
		"fixes": {},
		"errors": [],
		"custom": {},
	}


class _Backfilled(BaseModel):
	"""Drops explicit nulls so field defaults apply to older documents."""

	@model_validator(mode="before")
	@classmethod
	def _drop_nulls(cls, data: Any) -> Any:
		if isinstance(data, dict):
			required_nullable = {
				name for name, info in cls.model_fields.items()
				if info.default is None and info.default_factory is None
			}
			return {
				k: v for k, v in data.items()
				if v is not None or k in required_nullable
			}
		return data


class SessionMetadata(_Backfilled):
	"""Who or what started the session."""
	model_config = ConfigDict(extra="allow")

	trigger: str = "unknown"
	branch: Optional[str] = None
	user: Optional[str] = None
	config: dict[str, Any] = Field(default_factory=dict)


class SessionTimestamps(_Backfilled):
	created: str = Field(default_factory=_now)
	started: Optional[str] = None
	updated: str = Field(default_factory=_now)
	completed: Optional[str] = None


class SessionStats(_Backfilled):
	"""Counters snapshotted together with the context by checkpoints."""
	model_config = ConfigDict(extra="allow")

	agents_invoked: int = 0
	findings_processed: int = 0
	issues_created: int = 0
	fixes_applied: int = 0
	errors_encountered: int = 0


class SessionEvent(BaseModel):
	"""One entry of the append-only event log."""
	type: str
	data: dict[str, Any] = Field(default_factory=dict)
	timestamp: str = Field(default_factory=_now)


class Invocation(_Backfilled):
	"""One worker invocation in the session ledger."""
	id: str
	agent: str
	parent: Optional[str] = None
	input: Any = None
	started_at: str = Field(default_factory=_now)
	completed_at: Optional[str] = None
	status: str = "running"
	result: Any = None


class Checkpoint(BaseModel):
	"""Immutable snapshot of context and counters."""
	model_config = ConfigDict(frozen=True)

	id: str
	label: str
	timestamp: str = Field(default_factory=_now)
	context: dict[str, Any] = Field(default_factory=dict)
	stats: dict[str, Any] = Field(default_factory=dict)


class FileEntry(BaseModel):
	model_config = ConfigDict(extra="allow")

	path: str
	timestamp: str = Field(default_factory=_now)
	work_id: Optional[str] = None


class IssueEntry(BaseModel):
	model_config = ConfigDict(extra="allow")

	id: str
	timestamp: str = Field(default_factory=_now)
	work_id: Optional[str] = None


class FileTracking(_Backfilled):
	created: list[FileEntry] = Field(default_factory=list)
	modified: list[FileEntry] = Field(default_factory=list)
	deleted: list[FileEntry] = Field(default_factory=list)


class IssueTracking(_Backfilled):
	created: list[IssueEntry] = Field(default_factory=list)
	fixed: list[IssueEntry] = Field(default_factory=list)
	skipped: list[IssueEntry] = Field(default_factory=list)
	failed: list[IssueEntry] = Field(default_factory=list)


class WorkUnit(_Backfilled):
	"""A named grouping of tracked operations."""
	id: str
	type: str
	metadata: dict[str, Any] = Field(default_factory=dict)
	started_at: str = Field(default_factory=_now)
	completed_at: Optional[str] = None
	summary: dict[str, Any] = Field(default_factory=dict)


class PlanHistoryEntry(BaseModel):
	plan_id: str
	status: str
	subtask_count: int = 0
	completed_at: str = Field(default_factory=_now)


class PlanTracking(_Backfilled):
	active: Optional[str] = None
	completed: list[str] = Field(default_factory=list)
	history: list[PlanHistoryEntry] = Field(default_factory=list)


class TrackingLedger(_Backfilled):
	"""Files, issues, findings and work units touched during the session."""
	files: FileTracking = Field(default_factory=FileTracking)
	issues: IssueTracking = Field(default_factory=IssueTracking)
	findings: list[dict[str, Any]] = Field(default_factory=list)
	work: list[WorkUnit] = Field(default_factory=list)
	current_work: Optional[WorkUnit] = None
	plans: PlanTracking = Field(default_factory=PlanTracking)


class SessionRecord(_Backfilled):
	"""
	The durable session document.

	The context tree is stored as a plain nested dict; the live handle
	keeps it as a ContextTree and writes it back on every flush.
	"""
	id: str
	state: SessionState = SessionState.CREATED
	metadata: SessionMetadata = Field(default_factory=SessionMetadata)
	timestamps: SessionTimestamps = Field(default_factory=SessionTimestamps)
	context: dict[str, Any] = Field(default_factory=default_context)
	invocations: list[Invocation] = Field(default_factory=list)
	events: list[SessionEvent] = Field(default_factory=list)
	checkpoints: list[Checkpoint] = Field(default_factory=list)
	stats: SessionStats = Field(default_factory=SessionStats)
	tracking: TrackingLedger = Field(default_factory=TrackingLedger)
	summary: Optional[dict[str, Any]] = None
	failure_reason: Optional[str] = None
