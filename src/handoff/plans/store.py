"""
Plan Store - persists one JSON document per plan.

Status and owning session are mirrored into indexed columns of the
shared document table so plans can be listed and purged cheaply.
"""

import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional

from ..storage import DocumentStore
from .models import Plan, PlanStatus

logger = logging.getLogger(__name__)

KIND = "plan"


class PlanStore:
	"""
	Plan storage on top of the DocumentStore.

	Usage:
		store = PlanStore("data/handoff.db")
		await store.init()

		await store.save(plan)
		plan = await store.get(plan_id)
		plans = await store.list(status=PlanStatus.RUNNING)
	"""

	def __init__(self, db: DocumentStore | str | Path):
		self.db = db if isinstance(db, DocumentStore) else DocumentStore(db)

	async def init(self):
		await self.db.init()

	async def close(self):
		await self.db.close()

	async def save(self, plan: Plan):
		"""Insert or replace a plan, refreshing its updated_at."""
		plan.updated_at = datetime.now().isoformat()
		await self.db.put(
			KIND,
			plan.id,
			plan.model_dump(mode="json"),
			status=plan.status.value,
			owner=plan.session_id or "",
			created_at=plan.created_at,
			updated_at=plan.updated_at,
		)

	async def get(self, plan_id: str) -> Optional[Plan]:
		data = await self.db.get(KIND, plan_id)
		if data is None:
			return None
		return Plan.model_validate(data)

	async def list(
		self,
		status: Optional[PlanStatus | str] = None,
		session_id: Optional[str] = None,
	) -> list[Plan]:
		"""
		List plans newest first.

		Args:
			status: Filter by plan status
			session_id: Filter by owning session

		Returns:
			Matching plans
		"""
		value = status.value if isinstance(status, PlanStatus) else status
		docs = await self.db.search(KIND, status=value, owner=session_id)
		return [Plan.model_validate(doc) for doc in docs]

	async def delete(self, plan_id: str) -> bool:
		return await self.db.delete(KIND, plan_id)

	async def delete_completed_before(self, max_age_days: int) -> "list[str]":
		"""Delete completed plans created more than max_age_days ago."""
		cutoff = (datetime.now() - timedelta(days=max_age_days)).isoformat()
		deleted = await self.db.delete_where(KIND, PlanStatus.COMPLETED.value, cutoff)
		if deleted:
			logger.info(f"Cleaned up {len(deleted)} completed plan(s) older than {max_age_days} days")
		return deleted
