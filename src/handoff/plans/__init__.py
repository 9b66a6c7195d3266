"""Plans module - Plan and subtask records and their storage."""

from .models import (
	DependencyMode,
	ExecutionReport,
	Objective,
	Plan,
	PlanStatus,
	RetrySettings,
	Subtask,
	SubtaskError,
	SubtaskStatus,
)
from .store import PlanStore

__all__ = [
	"DependencyMode",
	"ExecutionReport",
	"Objective",
	"Plan",
	"PlanStatus",
	"PlanStore",
	"RetrySettings",
	"Subtask",
	"SubtaskError",
	"SubtaskStatus",
]
