"""Tests for the objective splitter."""

import pytest

from handoff.errors import ValidationError
from handoff.orchestrator.splitter import (
	MAX_SUBTASKS,
	analyze_task,
	complexity_label,
	detect_complexity,
	detect_task_type,
	estimate_execution_time,
	extract_actions,
	should_auto_split,
	split_task,
)
from handoff.priority_queue import Priority

MULTI = "Fix the security bug and also write tests and update the README"
SIMPLE = "Rename the helper"


class TestSplitTask:
	"""split_task decomposition."""

	def test_multi_category_objective(self):
		"""Security, test and docs clauses become three ordered subtasks."""
		result = split_task(MULTI)

		assert result.complexity == 9
		assert [st.category for st in result.subtasks] == ["security", "test", "docs"]
		assert [st.id for st in result.subtasks] == ["st_1", "st_2", "st_3"]

		security, test, docs = result.subtasks
		assert security.priority == Priority.URGENT
		assert security.worker_type == "auto-fixer"
		assert security.description == "Fix the security bug"
		assert test.priority == Priority.NORMAL
		assert docs.priority == Priority.LOW
		assert result.dependencies == {"st_1": [], "st_2": ["st_1"], "st_3": []}

	def test_subtask_input(self):
		"""Each subtask carries its actions, the original text and context."""
		result = split_task(MULTI, context={"repo": "acme/api"})
		payload = result.subtasks[1].input
		assert payload["task"] == "write tests"
		assert payload["original_task"] == MULTI
		assert payload["actions"] == ["write tests"]
		assert payload["context"] == {"repo": "acme/api"}

	def test_simple_objective_single_subtask(self):
		"""A low-complexity objective is not split."""
		result = split_task(SIMPLE)
		assert result.complexity <= 3
		assert len(result.subtasks) == 1
		assert result.subtasks[0].description == SIMPLE
		assert result.subtasks[0].category == "general"
		assert result.dependencies == {"st_1": []}

	def test_cap_is_clamped(self):
		"""A requested cap above the maximum is clamped."""
		assert len(split_task(MULTI, max_subtasks=10).subtasks) == MAX_SUBTASKS

	def test_smaller_cap(self):
		"""A smaller cap keeps the most urgent categories."""
		result = split_task(MULTI, max_subtasks=2)
		assert [st.category for st in result.subtasks] == ["security", "test"]
		assert result.dependencies["st_2"] == ["st_1"]

	def test_threshold_drops_less_urgent(self):
		"""Categories less urgent than the threshold are dropped."""
		result = split_task(MULTI, priority_threshold=Priority.NORMAL)
		assert [st.category for st in result.subtasks] == ["security", "test"]

	def test_fix_waits_for_review(self):
		"""A fix subtask depends on the review subtask."""
		result = split_task("Review the login flow and then fix the crash in parser")
		categories = {st.category: st.id for st in result.subtasks}
		assert set(categories) == {"bugfix", "review"}
		assert result.dependencies[categories["bugfix"]] == [categories["review"]]
		assert result.dependencies[categories["review"]] == []

	@pytest.mark.parametrize("text", ["", "   "])
	def test_empty_text_rejected(self, text):
		"""Empty objectives raise ValidationError."""
		with pytest.raises(ValidationError):
			split_task(text)

	def test_cap_below_one_rejected(self):
		"""max_subtasks below 1 raises ValidationError."""
		with pytest.raises(ValidationError):
			split_task(MULTI, max_subtasks=0)


class TestHeuristics:
	"""Complexity scoring and helper analyses."""

	def test_extract_actions(self):
		"""Clauses split at conjunctions and commas; short fragments drop."""
		assert extract_actions(MULTI) == ["Fix the security bug", "write tests", "update the README"]
		assert extract_actions("Update the changelog, then bump the version") == [
			"Update the changelog",
			"bump the version",
		]
		assert extract_actions("do a and b") == ["do a and b"]

	def test_detect_task_type(self):
		"""The first matching rule classifies the text."""
		assert detect_task_type("update the README").name == "docs"
		assert detect_task_type("leaked api key").name == "security"
		assert detect_task_type("something else").name == "general"

	def test_complexity_bounds(self):
		"""Scores stay within 1..10."""
		huge = " and ".join(["fix every bug then verify the complete test suite"] * 20)
		assert detect_complexity(huge) == 10
		assert detect_complexity(SIMPLE) == 3

	def test_complexity_label(self):
		assert complexity_label(1) == "trivial"
		assert complexity_label(3) == "simple"
		assert complexity_label(5) == "moderate"
		assert complexity_label(7) == "complex"
		assert complexity_label(8) == "very_complex"

	def test_analyze_task(self):
		"""analyze_task reports how the objective would be split."""
		analysis = analyze_task(MULTI)
		assert analysis["complexity"] == 9
		assert analysis["complexity_label"] == "very_complex"
		assert analysis["primary_type"] == "security"
		assert analysis["suggested_worker_type"] == "auto-fixer"
		assert analysis["action_count"] == 3
		assert analysis["should_split"] is True
		assert analysis["suggested_subtasks"] == 3
		assert {g["type"] for g in analysis["active_groups"]} == {"security", "test", "docs"}

	def test_should_auto_split(self):
		assert should_auto_split(MULTI) is True
		assert should_auto_split(SIMPLE) is False

	def test_estimate_execution_time(self):
		"""30 seconds per action scaled by complexity."""
		estimate = estimate_execution_time(MULTI)
		assert estimate["estimated_seconds"] == 171
		assert estimate["estimated_minutes"] == 3
		assert estimate["confidence"] == "low"
		assert estimate["note"] is not None

		simple = estimate_execution_time(SIMPLE)
		assert simple["confidence"] == "high"
		assert simple["note"] is None
