"""
Session Store - persists one JSON document per session.
"""

import logging
from pathlib import Path
from typing import Any, Optional

from ..storage import DocumentStore
from .models import SessionRecord, SessionState

logger = logging.getLogger(__name__)

KIND = "session"


class SessionStore:
	"""
	Durable session documents on top of the shared DocumentStore.

	Usage:
		store = SessionStore("data/handoff.db")
		await store.init()

		await store.save(record)
		record = await store.get(session_id)
	"""

	def __init__(self, db: DocumentStore | str | Path):
		self.db = db if isinstance(db, DocumentStore) else DocumentStore(db)

	async def init(self):
		await self.db.init()

	async def close(self):
		await self.db.close()

	async def save(self, record: SessionRecord):
		"""Insert or replace a session document."""
		await self.save_raw(record.model_dump(mode="json"))

	async def save_raw(self, data: dict[str, Any]):
		"""Persist an already-serialized session snapshot."""
		timestamps = data.get("timestamps") or {}
		await self.db.put(
			KIND,
			data["id"],
			data,
			status=data.get("state", SessionState.CREATED.value),
			created_at=timestamps.get("created", ""),
			updated_at=timestamps.get("updated", ""),
		)

	async def get(self, session_id: str) -> Optional[SessionRecord]:
		data = await self.db.get(KIND, session_id)
		if data is None:
			return None
		return SessionRecord.model_validate(data)

	async def list(self, state: Optional[SessionState | str] = None) -> list[SessionRecord]:
		"""List sessions newest first, optionally filtered by state."""
		status = state.value if isinstance(state, SessionState) else state
		docs = await self.db.search(KIND, status=status)
		return [SessionRecord.model_validate(doc) for doc in docs]

	async def delete(self, session_id: str) -> bool:
		deleted = await self.db.delete(KIND, session_id)
		if deleted:
			logger.info(f"Deleted session {session_id}")
		return deleted
