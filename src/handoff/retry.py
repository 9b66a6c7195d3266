"""Deterministic failure classification and retry backoff policy.

Used by the priority queue and the worker boundary to decide whether a
failed attempt is worth repeating.
"""

import asyncio
from dataclasses import dataclass
from typing import Optional

from .errors import RetryableError, TerminalError

TRANSIENT_CODES: tuple[str, ...] = (
	"TIMEOUT",
	"RATE_LIMITED",
	"SERVICE_UNAVAILABLE",
	"NETWORK_ERROR",
)

_TIMEOUT_PATTERNS: tuple[str, ...] = (
	"timeout",
	"timed out",
	"etimedout",
)
_RATE_LIMIT_PATTERNS: tuple[str, ...] = (
	"rate limit",
	"rate-limit",
	"too many requests",
	"429",
)
_UNAVAILABLE_PATTERNS: tuple[str, ...] = (
	"service unavailable",
	"temporarily unavailable",
	"503",
)
_NETWORK_PATTERNS: tuple[str, ...] = (
	"network",
	"connection reset",
	"econnreset",
	"connection refused",
)

_RULES: tuple[tuple[str, str, tuple[str, ...]], ...] = (
	("timeout", "TIMEOUT", _TIMEOUT_PATTERNS),
	("rate_limited", "RATE_LIMITED", _RATE_LIMIT_PATTERNS),
	("service_unavailable", "SERVICE_UNAVAILABLE", _UNAVAILABLE_PATTERNS),
	("network", "NETWORK_ERROR", _NETWORK_PATTERNS),
)


@dataclass(slots=True)
class FailureClassification:
	"""Normalized failure classification result."""

	retryable: bool
	code: str
	matched_rule: str
	matched_pattern: Optional[str] = None


def classify_failure(error: BaseException | str, code: Optional[str] = None) -> FailureClassification:
	"""Classify an error as retryable (transient) or terminal.

	Explicit RetryableError/TerminalError types win, then error codes, then
	exception types, then message signatures. Anything unmatched is terminal.
	"""
	if isinstance(error, TerminalError):
		return FailureClassification(False, error.code, "explicit_terminal")
	if isinstance(error, RetryableError):
		return FailureClassification(True, error.code, "explicit_retryable")

	code = code or getattr(error, "code", None)
	if isinstance(code, str) and code.upper() in TRANSIENT_CODES:
		return FailureClassification(True, code.upper(), "transient_code")

	if isinstance(error, (asyncio.TimeoutError, TimeoutError)):
		return FailureClassification(True, "TIMEOUT", "exception_type")
	if isinstance(error, ConnectionError):
		return FailureClassification(True, "NETWORK_ERROR", "exception_type")

	haystack = str(error).lower()
	for rule, rule_code, patterns in _RULES:
		pattern = _first_match(haystack, patterns)
		if pattern is not None:
			return FailureClassification(True, rule_code, rule, pattern)

	terminal_code = code if isinstance(code, str) and code else "EXECUTION_ERROR"
	return FailureClassification(False, terminal_code, "terminal_default")


def is_retryable(error: BaseException | str) -> bool:
	"""Shortcut for classify_failure(error).retryable."""
	return classify_failure(error).retryable


def _first_match(text: str, patterns: tuple[str, ...]) -> Optional[str]:
	for pattern in patterns:
		if pattern in text:
			return pattern
	return None


@dataclass
class RetryPolicy:
	"""Bounded attempts with exponential backoff."""

	max_attempts: int = 3
	backoff_seconds: float = 1.0
	multiplier: float = 2.0
	max_backoff_seconds: float = 60.0

	def should_retry(self, attempts: int, error: BaseException | str | None = None) -> bool:
		"""True when attempts remain and the error (if given) is transient."""
		if attempts >= self.max_attempts:
			return False
		if error is None:
			return True
		return classify_failure(error).retryable

	def delay_for(self, attempt: int) -> float:
		"""Backoff before the attempt following `attempt` (1-based)."""
		if attempt < 1 or self.backoff_seconds <= 0:
			return 0.0
		delay = self.backoff_seconds * (self.multiplier ** (attempt - 1))
		return min(delay, self.max_backoff_seconds)
