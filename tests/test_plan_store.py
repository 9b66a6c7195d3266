"""Tests for plan persistence."""

import typing
from datetime import datetime, timedelta
from pathlib import Path

import pytest

from handoff.plans import Objective, Plan, PlanStatus, PlanStore, Subtask, SubtaskStatus

from .helpers import open_db


def make_plan(plan_id: str, status=PlanStatus.PENDING, session_id=None, created_at=None) -> Plan:
	plan = Plan(
		id=plan_id,
		session_id=session_id,
		status=status,
		objective=Objective(description=f"objective {plan_id}", complexity=4),
		subtasks=[
			Subtask(id="st_1_aaaaaa", plan_id=plan_id, sequence=1, description="first"),
			Subtask(
				id="st_2_bbbbbb",
				plan_id=plan_id,
				sequence=2,
				description="second",
				dependencies=["st_1_aaaaaa"],
			),
		],
	)
	if created_at:
		plan.created_at = created_at
	return plan


class TestPlanStore:
	"""PlanStore round trips and queries."""

	@pytest.mark.asyncio
	async def test_save_and_get(self, tmp_path: Path):
		"""A saved plan reads back with its subtasks."""
		async with open_db(tmp_path) as db:
			store = PlanStore(db)
			plan = make_plan("plan_1")
			plan.subtasks[0].status = SubtaskStatus.COMPLETED
			plan.results["st_1_aaaaaa"] = {"status": "success"}
			await store.save(plan)

			loaded = await store.get("plan_1")
			assert loaded is not None
			assert loaded.objective.description == "objective plan_1"
			assert loaded.subtasks[0].status == SubtaskStatus.COMPLETED
			assert loaded.subtasks[1].dependencies == ["st_1_aaaaaa"]
			assert loaded.results == {"st_1_aaaaaa": {"status": "success"}}

	@pytest.mark.asyncio
	async def test_get_missing(self, tmp_path: Path):
		async with open_db(tmp_path) as db:
			assert await PlanStore(db).get("plan_missing") is None

	@pytest.mark.asyncio
	async def test_save_replaces(self, tmp_path: Path):
		"""Saving again overwrites the document and its status column."""
		async with open_db(tmp_path) as db:
			store = PlanStore(db)
			plan = make_plan("plan_1")
			await store.save(plan)
			plan.status = PlanStatus.RUNNING
			await store.save(plan)

			assert [p.id for p in await store.list(status=PlanStatus.RUNNING)] == ["plan_1"]
			assert await store.list(status="pending") == []

	@pytest.mark.asyncio
	async def test_list_filters(self, tmp_path: Path):
		"""Plans filter by status and by owning session."""
		async with open_db(tmp_path) as db:
			store = PlanStore(db)
			await store.save(make_plan("plan_a", PlanStatus.COMPLETED, "session_1"))
			await store.save(make_plan("plan_b", PlanStatus.FAILED, "session_1"))
			await store.save(make_plan("plan_c", PlanStatus.COMPLETED, "session_2"))

			assert {p.id for p in await store.list()} == {"plan_a", "plan_b", "plan_c"}
			assert {p.id for p in await store.list(status=PlanStatus.COMPLETED)} == {"plan_a", "plan_c"}
			assert {p.id for p in await store.list(session_id="session_1")} == {"plan_a", "plan_b"}
			assert [p.id for p in await store.list(status="completed", session_id="session_2")] == ["plan_c"]

	@pytest.mark.asyncio
	async def test_delete(self, tmp_path: Path):
		async with open_db(tmp_path) as db:
			store = PlanStore(db)
			await store.save(make_plan("plan_1"))
			assert await store.delete("plan_1") is True
			assert await store.delete("plan_1") is False
			assert await store.get("plan_1") is None

	@pytest.mark.asyncio
	async def test_delete_completed_before(self, tmp_path: Path):
		"""Only completed plans older than the cutoff are purged."""
		old = (datetime.now() - timedelta(days=40)).isoformat()
		async with open_db(tmp_path) as db:
			store = PlanStore(db)
			await store.save(make_plan("plan_old", PlanStatus.COMPLETED, created_at=old))
			await store.save(make_plan("plan_old_failed", PlanStatus.FAILED, created_at=old))
			await store.save(make_plan("plan_new", PlanStatus.COMPLETED))

			deleted = await store.delete_completed_before(30)

			assert deleted == ["plan_old"]
			assert {p.id for p in await store.list()} == {"plan_old_failed", "plan_new"}

	def test_annotations_resolve(self):
		"""Method annotations resolve to builtins despite the list() method."""
		hints = typing.get_type_hints(PlanStore.delete_completed_before)
		assert hints["return"] == list[str]
