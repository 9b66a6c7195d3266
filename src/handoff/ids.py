"""Opaque identifier generation.

Ids carry a readable prefix and a millisecond timestamp; nothing beyond
uniqueness should be inferred from them.
"""

import secrets
import time


def _now_ms() -> int:
	return int(time.time() * 1000)


def _token(length: int) -> str:
	return secrets.token_hex((length + 1) // 2)[:length]


def session_id() -> str:
	return f"session_{_now_ms()}_{_token(8)}"


def plan_id() -> str:
	return f"plan_{_now_ms()}_{_token(8)}"


def subtask_id(sequence: int) -> str:
	return f"st_{sequence}_{_token(6)}"


def work_id() -> str:
	return f"work_{_now_ms()}_{_token(4)}"


def checkpoint_id() -> str:
	return f"chk_{_now_ms()}_{_token(4)}"


def invocation_id() -> str:
	return f"inv_{_now_ms()}_{_token(6)}"


def queue_item_id() -> str:
	return f"q_{_now_ms()}_{_token(6)}"
