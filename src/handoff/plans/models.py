"""
Plan Models - Pydantic schemas for execution plans and their subtasks.

A plan is the durable record of one objective split into subtasks and
executed by workers. Plan documents are rewritten after every subtask, so
they double as the crash-recovery state.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


def _now() -> str:
	return datetime.now().isoformat()


class PlanStatus(str, Enum):
	"""Status of a plan."""
	PENDING = "pending"
	RUNNING = "running"
	COMPLETED = "completed"
	PARTIAL = "partial"
	FAILED = "failed"
	CANCELLED = "cancelled"

	@property
	def is_terminal(self) -> bool:
		return self in (
			PlanStatus.COMPLETED,
			PlanStatus.PARTIAL,
			PlanStatus.FAILED,
			PlanStatus.CANCELLED,
		)


class SubtaskStatus(str, Enum):
	"""Status of a subtask within a plan."""
	PENDING = "pending"
	RUNNING = "running"
	COMPLETED = "completed"
	FAILED = "failed"
	BLOCKED = "blocked"
	SKIPPED = "skipped"


class DependencyMode(str, Enum):
	"""Whether all or any of a subtask's dependencies must be completed."""
	ALL = "all"
	ANY = "any"


class RetrySettings(BaseModel):
	"""Attempt budget of a subtask."""
	max_attempts: int = Field(default=3, ge=1)
	current_attempt: int = Field(default=0, ge=0)
	backoff_ms: int = Field(default=1000, ge=0)

	@property
	def attempts_remaining(self) -> int:
		return max(0, self.max_attempts - self.current_attempt)


class SubtaskError(BaseModel):
	"""Last failure recorded on a subtask."""
	message: str
	code: str = "EXECUTION_ERROR"
	retryable: bool = False
	timestamp: str = Field(default_factory=_now)


class Subtask(BaseModel):
	"""A single unit of work delegated to one worker."""
	id: str = Field(description="Unique subtask identifier")
	plan_id: str = Field(description="Plan this subtask belongs to")
	sequence: int = Field(description="1-based position assigned at plan creation")
	priority: int = Field(default=3, description="1 (urgent) .. 4 (low)")
	status: SubtaskStatus = Field(default=SubtaskStatus.PENDING)
	description: str = Field(description="What the worker has to do")
	worker_type: str = Field(default="general")
	category: str = Field(default="general")
	input: dict[str, Any] = Field(default_factory=dict)
	dependencies: list[str] = Field(default_factory=list, description="Subtask IDs this depends on")
	dependency_mode: DependencyMode = Field(default=DependencyMode.ALL)
	retry: RetrySettings = Field(default_factory=RetrySettings)
	last_error: Optional[SubtaskError] = Field(default=None)
	started_at: Optional[str] = Field(default=None)
	completed_at: Optional[str] = Field(default=None)
	duration_ms: Optional[int] = Field(default=None)

	@property
	def is_done(self) -> bool:
		return self.status in (SubtaskStatus.COMPLETED, SubtaskStatus.SKIPPED)

	def dependencies_met(self, completed: set[str]) -> bool:
		"""Check dependencies against the IDs of completed subtasks."""
		if not self.dependencies:
			return True
		if self.dependency_mode == DependencyMode.ANY:
			return any(dep in completed for dep in self.dependencies)
		return all(dep in completed for dep in self.dependencies)


class Objective(BaseModel):
	"""The objective a plan was built from."""
	description: str
	complexity: int = Field(default=1, ge=1, le=10)
	context: dict[str, Any] = Field(default_factory=dict)


class ExecutionInfo(BaseModel):
	"""Runtime bookkeeping of a plan."""
	started_at: Optional[str] = Field(default=None)
	completed_at: Optional[str] = Field(default=None)
	current_subtask_id: Optional[str] = Field(default=None)
	checkpoints: list[str] = Field(default_factory=list, description="Session checkpoint IDs")


class Plan(BaseModel):
	"""
	An objective split into dependency-ordered subtasks.

	`results` maps subtask IDs to the result their worker returned.
	"""
	id: str = Field(description="Unique plan identifier")
	session_id: Optional[str] = Field(default=None, description="Session this plan reports to")
	status: PlanStatus = Field(default=PlanStatus.PENDING)
	priority: int = Field(default=3, description="Most urgent priority among subtasks")

	objective: Objective
	subtasks: list[Subtask] = Field(default_factory=list)
	execution: ExecutionInfo = Field(default_factory=ExecutionInfo)
	results: dict[str, Any] = Field(default_factory=dict)
	cancel_reason: Optional[str] = Field(default=None)

	# Timestamps
	created_at: str = Field(default_factory=_now)
	updated_at: str = Field(default_factory=_now)

	def get_subtask(self, subtask_id: str) -> Optional[Subtask]:
		for subtask in self.subtasks:
			if subtask.id == subtask_id:
				return subtask
		return None

	def completed_ids(self) -> set[str]:
		return {st.id for st in self.subtasks if st.status == SubtaskStatus.COMPLETED}

	def get_progress(self) -> dict[str, Any]:
		"""Aggregate counts per subtask status."""
		counts = {status.value: 0 for status in SubtaskStatus}
		for subtask in self.subtasks:
			counts[subtask.status.value] += 1

		total = len(self.subtasks)
		return {
			"total": total,
			**counts,
			"percent_complete": round(counts["completed"] / total * 100, 1) if total else 0,
		}


class ExecutionReport(BaseModel):
	"""Outcome of one execute() run."""
	plan_id: str
	status: str
	subtasks_run: int = 0
	progress: dict[str, Any] = Field(default_factory=dict)
	results: dict[str, Any] = Field(default_factory=dict)
	errors: dict[str, SubtaskError] = Field(default_factory=dict)
	started_at: Optional[str] = None
	completed_at: Optional[str] = None
