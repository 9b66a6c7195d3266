"""
Objective Splitter - heuristic decomposition of a free-text objective.

Scores the objective's complexity, classifies its clauses into categories
with a data-driven rule table and turns the present categories into at
most MAX_SUBTASKS dependency-ordered subtask specs. Subtask ids here are
local (`st_1`, `st_2`, ...); the plan builder replaces them.
"""

import math
import re
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Optional

from ..errors import ValidationError
from ..priority_queue import Priority

MAX_SUBTASKS = 3


class Complexity(IntEnum):
	"""Complexity thresholds on the 1-10 scale."""
	TRIVIAL = 1
	SIMPLE = 3
	MODERATE = 5
	COMPLEX = 7
	VERY_COMPLEX = 9


@dataclass(frozen=True)
class CategoryRule:
	"""A category of work recognized in objective text."""
	name: str
	pattern: re.Pattern
	priority: int
	worker_type: str

	def matches(self, text: str) -> bool:
		return bool(self.pattern.search(text))


def _rule(name: str, pattern: str, priority: int, worker_type: str) -> CategoryRule:
	return CategoryRule(name, re.compile(pattern, re.IGNORECASE), priority, worker_type)


# Ordered: the first matching rule classifies a clause.
CATEGORY_RULES: tuple[CategoryRule, ...] = (
	_rule(
		"security",
		r"security|vulnerabilit|exploit|injection|xss|csrf|auth|credential|secret|api[- ]?key",
		Priority.URGENT,
		"auto-fixer",
	),
	_rule("bugfix", r"fix|bug|error|crash|fail|broken|issue|problem", Priority.HIGH, "auto-fixer"),
	_rule("review", r"review|audit|check|analyze|inspect|examine", Priority.NORMAL, "reviewer"),
	_rule("refactor", r"refactor|clean|reorganize|restructure|simplify|optimize", Priority.NORMAL, "auto-fixer"),
	_rule("test", r"test|spec|coverage|unit|integration|e2e", Priority.NORMAL, "general"),
	_rule("docs", r"document|readme|comment|docstring", Priority.LOW, "general"),
	_rule("issues", r"create.*issue|linear.*issue|track|ticket", Priority.NORMAL, "issue-creator"),
)

GENERAL_RULE = CategoryRule("general", re.compile(r"(?!)"), Priority.NORMAL, "general")

RULES_BY_NAME: dict[str, CategoryRule] = {rule.name: rule for rule in (*CATEGORY_RULES, GENERAL_RULE)}

# Order in which present categories become subtasks.
PROCESSING_ORDER = ("security", "bugfix", "review", "refactor", "test", "docs", "issues", "general")

# Categories a review subtask gates, and the categories a test subtask waits for.
REVIEWED_CATEGORIES = frozenset({"security", "bugfix"})
FIX_CATEGORIES = frozenset({"security", "bugfix"})


@dataclass(frozen=True)
class ComplexityIndicator:
	name: str
	pattern: re.Pattern
	weight: float
	count_all: bool = False

	def score(self, text: str) -> float:
		if self.count_all:
			return len(self.pattern.findall(text)) * self.weight
		return self.weight if self.pattern.search(text) else 0.0


COMPLEXITY_INDICATORS: tuple[ComplexityIndicator, ...] = (
	ComplexityIndicator("conjunctions", re.compile(r"\band\b|\bthen\b|\balso\b|\bplus\b", re.IGNORECASE), 1, count_all=True),
	ComplexityIndicator("multiple_files", re.compile(r"all files|entire codebase|every|across.*files|multiple", re.IGNORECASE), 2),
	ComplexityIndicator("conditionals", re.compile(r"if.*then|when.*should|depending|based on", re.IGNORECASE), 1.5),
	ComplexityIndicator("verification", re.compile(r"verify|ensure|make sure|confirm|validate|test", re.IGNORECASE), 1),
	ComplexityIndicator("comprehensiveness", re.compile(r"complete|full|comprehensive|thorough|all", re.IGNORECASE), 1.5),
	ComplexityIndicator("sequential_steps", re.compile(r"first.*then|step \d|1\.|2\.|3\.", re.IGNORECASE), 2),
)

_ACTION_SPLIT = re.compile(r"\band\b|\bthen\b|\balso\b|,\s*(?=\w)", re.IGNORECASE)
MIN_ACTION_LENGTH = 10

SECONDS_PER_ACTION = 30


@dataclass
class SubtaskSpec:
	"""A subtask proposed by the splitter, before it becomes part of a plan."""
	id: str
	description: str
	priority: int
	worker_type: str
	category: str
	dependencies: list[str] = field(default_factory=list)
	input: dict[str, Any] = field(default_factory=dict)


@dataclass
class SplitResult:
	complexity: int
	subtasks: list[SubtaskSpec]
	dependencies: dict[str, list[str]] = field(default_factory=dict)


def _round_half_up(value: float) -> int:
	return math.floor(value + 0.5)


def complexity_label(complexity: int) -> str:
	if complexity <= Complexity.TRIVIAL:
		return "trivial"
	if complexity <= Complexity.SIMPLE:
		return "simple"
	if complexity <= Complexity.MODERATE:
		return "moderate"
	if complexity <= Complexity.COMPLEX:
		return "complex"
	return "very_complex"


def detect_complexity(text: str) -> int:
	"""Score objective complexity on a 1-10 scale."""
	score: float = Complexity.SIMPLE

	for indicator in COMPLEXITY_INDICATORS:
		score += indicator.score(text)

	words = len(text.split())
	if words > 50:
		score += 2
	elif words > 25:
		score += 1

	matched = sum(1 for rule in CATEGORY_RULES if rule.matches(text))
	if matched > 2:
		score += 2
	elif matched > 1:
		score += 1

	return min(10, max(1, _round_half_up(score)))


def detect_task_type(text: str) -> CategoryRule:
	"""Return the first matching category rule, or the general fallback."""
	for rule in CATEGORY_RULES:
		if rule.matches(text):
			return rule
	return GENERAL_RULE


def extract_actions(text: str) -> list[str]:
	"""Split at and/then/also/commas, dropping fragments of 10 chars or fewer."""
	actions = [part.strip() for part in _ACTION_SPLIT.split(text)]
	actions = [action for action in actions if len(action) > MIN_ACTION_LENGTH]
	return actions or [text]


def group_actions_by_type(actions: list[str]) -> dict[str, list[str]]:
	groups: dict[str, list[str]] = {name: [] for name in PROCESSING_ORDER}
	for action in actions:
		groups[detect_task_type(action).name].append(action)
	return groups


def _single_subtask(text: str, context: Optional[dict[str, Any]]) -> SubtaskSpec:
	rule = detect_task_type(text)
	payload: dict[str, Any] = {"task": text}
	if context:
		payload["context"] = context
	return SubtaskSpec(
		id="st_1",
		description=text,
		priority=rule.priority,
		worker_type=rule.worker_type,
		category=rule.name,
		input=payload,
	)


def _apply_dependency_rules(subtasks: list[SubtaskSpec]) -> None:
	"""Fix subtasks wait for review; test subtasks wait for the first fix."""
	review = next((st for st in subtasks if st.category == "review"), None)
	fix = next((st for st in subtasks if st.category in FIX_CATEGORIES), None)

	for subtask in subtasks:
		if subtask.category in REVIEWED_CATEGORIES and review is not None:
			subtask.dependencies.append(review.id)
		elif subtask.category == "test" and fix is not None:
			subtask.dependencies.append(fix.id)


def _merge_tail(subtasks: list[SubtaskSpec]) -> None:
	"""Fold the least urgent (last) subtask into its neighbour."""
	last = subtasks.pop()
	target = subtasks[-1]

	target.description = f"{target.description}; {last.description}"
	target.input["actions"] = [*target.input.get("actions", []), *last.input.get("actions", [])]
	target.priority = min(target.priority, last.priority)
	for dep in last.dependencies:
		if dep != target.id and dep not in target.dependencies:
			target.dependencies.append(dep)
	for other in subtasks:
		other.dependencies = [target.id if dep == last.id else dep for dep in other.dependencies]
		if other is target:
			other.dependencies = [dep for dep in other.dependencies if dep != target.id]


def split_task(
	text: str,
	max_subtasks: int = MAX_SUBTASKS,
	priority_threshold: int = Priority.LOW,
	context: Optional[dict[str, Any]] = None,
) -> SplitResult:
	"""
	Split an objective into at most `max_subtasks` subtask specs.

	Args:
		text: Free-text objective
		max_subtasks: Requested cap, clamped to MAX_SUBTASKS
		priority_threshold: Categories less urgent than this are dropped
		context: Extra input passed to every subtask

	Returns:
		SplitResult with complexity, subtasks and a dependency map

	Raises:
		ValidationError: On empty text or a cap below 1
	"""
	if not isinstance(text, str) or not text.strip():
		raise ValidationError("Objective text must be a non-empty string")
	if max_subtasks < 1:
		raise ValidationError(f"max_subtasks must be at least 1, got {max_subtasks}", max_subtasks=max_subtasks)

	text = text.strip()
	cap = min(max_subtasks, MAX_SUBTASKS)
	complexity = detect_complexity(text)

	if complexity <= Complexity.SIMPLE:
		return SplitResult(complexity=complexity, subtasks=[_single_subtask(text, context)], dependencies={"st_1": []})

	groups = group_actions_by_type(extract_actions(text))
	subtasks: list[SubtaskSpec] = []

	for name in PROCESSING_ORDER:
		actions = groups[name]
		if not actions:
			continue
		if len(subtasks) >= cap:
			break

		rule = RULES_BY_NAME[name]
		if rule.priority > priority_threshold:
			continue

		if len(actions) > 1:
			description = f"{name.capitalize()}: {', '.join(actions)}"
		else:
			description = actions[0]

		payload: dict[str, Any] = {
			"task": description,
			"original_task": text,
			"category": name,
			"actions": list(actions),
		}
		if context:
			payload["context"] = context

		subtasks.append(SubtaskSpec(
			id=f"st_{len(subtasks) + 1}",
			description=description,
			priority=rule.priority,
			worker_type=rule.worker_type,
			category=name,
			input=payload,
		))

	if not subtasks:
		subtasks.append(_single_subtask(text, context))

	_apply_dependency_rules(subtasks)

	while len(subtasks) > cap:
		_merge_tail(subtasks)

	return SplitResult(
		complexity=complexity,
		subtasks=subtasks,
		dependencies={st.id: list(st.dependencies) for st in subtasks},
	)


def analyze_task(text: str) -> dict[str, Any]:
	"""Describe how an objective would be split without splitting it."""
	complexity = detect_complexity(text)
	rule = detect_task_type(text)
	actions = extract_actions(text)
	groups = group_actions_by_type(actions)

	return {
		"complexity": complexity,
		"complexity_label": complexity_label(complexity),
		"primary_type": rule.name,
		"suggested_worker_type": rule.worker_type,
		"suggested_priority": rule.priority,
		"action_count": len(actions),
		"active_groups": [
			{"type": name, "count": len(items)} for name, items in groups.items() if items
		],
		"should_split": complexity > Complexity.SIMPLE,
		"suggested_subtasks": min(MAX_SUBTASKS, math.ceil(complexity / 3)),
	}


def should_auto_split(text: str, threshold: int = Complexity.MODERATE) -> bool:
	return detect_complexity(text) >= threshold


def estimate_execution_time(text: str) -> dict[str, Any]:
	"""Rough duration estimate: 30s per action scaled by complexity."""
	complexity = detect_complexity(text)
	actions = extract_actions(text)
	seconds = len(actions) * SECONDS_PER_ACTION * (1 + complexity / 10)

	return {
		"estimated_seconds": round(seconds),
		"estimated_minutes": round(seconds / 60),
		"confidence": "high" if complexity <= Complexity.MODERATE else "low",
		"note": "Complex tasks may take significantly longer" if complexity > Complexity.MODERATE else None,
	}
