"""Shared session state: context tree, ledgers, checkpoints and persistence."""

from .context import SessionContext
from .models import (
	Checkpoint,
	Invocation,
	SessionEvent,
	SessionRecord,
	SessionState,
	SessionStats,
	WorkUnit,
)
from .store import SessionStore
from .tree import ContextTree
from .writer import CoalescingWriter

__all__ = [
	"Checkpoint",
	"CoalescingWriter",
	"ContextTree",
	"Invocation",
	"SessionContext",
	"SessionEvent",
	"SessionRecord",
	"SessionState",
	"SessionStats",
	"SessionStore",
	"WorkUnit",
]
