"""
Error taxonomy for handoff.

Lookups of unknown ids raise NotFoundError subclasses, state-machine
violations raise ConflictError subclasses, malformed input raises
ValidationError. Worker failures are captured as ExecutionError records on
the subtask and never abort a plan.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any


class HandoffError(Exception):
	"""Base class for all handoff errors."""

	code = "HANDOFF_ERROR"

	def __init__(self, message: str, **context: Any):
		super().__init__(message)
		self.message = message
		self.context = context
		self.timestamp = datetime.now().isoformat()

	def to_dict(self) -> dict:
		"""Convert to a JSON-serializable dict."""
		return {
			"name": type(self).__name__,
			"code": self.code,
			"message": self.message,
			"context": self.context,
			"timestamp": self.timestamp,
		}


class ValidationError(HandoffError):
	"""Raised when plan, subtask or objective input is malformed."""
	code = "VALIDATION_ERROR"


class NotFoundError(HandoffError):
	"""Raised when an id does not resolve to a known record."""
	code = "NOT_FOUND"


class SessionNotFoundError(NotFoundError):
	"""Raised when a session is not found."""
	code = "SESSION_NOT_FOUND"

	def __init__(self, session_id: str):
		super().__init__(f"Session not found: {session_id}", session_id=session_id)


class PlanNotFoundError(NotFoundError):
	"""Raised when a plan is not found."""
	code = "PLAN_NOT_FOUND"

	def __init__(self, plan_id: str):
		super().__init__(f"Plan not found: {plan_id}", plan_id=plan_id)


class SubtaskNotFoundError(NotFoundError):
	"""Raised when a subtask id is not part of a plan."""
	code = "SUBTASK_NOT_FOUND"

	def __init__(self, plan_id: str, subtask_id: str):
		super().__init__(
			f"Subtask {subtask_id} not found in plan {plan_id}",
			plan_id=plan_id,
			subtask_id=subtask_id,
		)


class CheckpointNotFoundError(NotFoundError):
	"""Raised when rolling back to an unknown checkpoint."""
	code = "CHECKPOINT_NOT_FOUND"

	def __init__(self, checkpoint_id: str):
		super().__init__(f"Checkpoint not found: {checkpoint_id}", checkpoint_id=checkpoint_id)


class ConflictError(HandoffError):
	"""Raised when an operation is not valid in the current state."""
	code = "CONFLICT"


class PlanConflictError(ConflictError):
	"""Raised on double execution, cancelling an idle plan, etc."""
	code = "PLAN_CONFLICT"


class SessionClosedError(ConflictError):
	"""Raised when mutating a session after its terminal transition."""
	code = "SESSION_CLOSED"

	def __init__(self, session_id: str, state: str):
		super().__init__(
			f"Session {session_id} is {state}; no further changes allowed",
			session_id=session_id,
			state=state,
		)


class ExecutionError(HandoffError):
	"""A worker raised while executing a subtask."""
	code = "EXECUTION_ERROR"


class RetryableError(ExecutionError):
	"""A failure that is worth re-attempting (timeouts, rate limits, ...)."""
	code = "RETRYABLE_ERROR"


class TerminalError(ExecutionError):
	"""A failure that will not go away by retrying."""
	code = "TERMINAL_ERROR"


@dataclass
class SummaryConflict:
	"""A derived completion summary value disagreeing with the caller's value."""
	key: str
	provided: Any
	derived: Any
	detected_at: str = field(default_factory=lambda: datetime.now().isoformat())

	def to_dict(self) -> dict:
		return {"key": self.key, "provided": self.provided, "derived": self.derived}
