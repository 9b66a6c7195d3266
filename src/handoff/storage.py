"""
Document Store - SQLite-backed storage for JSON records.

Every session and every plan is persisted as one JSON document, addressed
by (kind, id). Status and timestamps are mirrored into columns so callers
can filter and purge without parsing documents.
"""

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Optional

import aiosqlite

logger = logging.getLogger(__name__)


class DocumentStore:
	"""
	SQLite-backed JSON document storage.

	Usage:
		store = DocumentStore("data/handoff.db")
		await store.init()

		await store.put("plan", plan_id, data, status="pending", created_at=...)
		data = await store.get("plan", plan_id)
	"""

	def __init__(self, db_path: str | Path):
		"""Initialize the document store."""
		self.db_path = Path(db_path)
		self.db_path.parent.mkdir(parents=True, exist_ok=True)
		self._db: Optional[aiosqlite.Connection] = None
		self._init_lock = asyncio.Lock()

	async def init(self):
		"""Initialize the database schema."""
		async with self._init_lock:
			if self._db is not None:
				return
			self._db = await aiosqlite.connect(str(self.db_path))
			self._db.row_factory = aiosqlite.Row

			await self._db.execute("""
				CREATE TABLE IF NOT EXISTS documents (
					kind TEXT NOT NULL,
					id TEXT NOT NULL,
					status TEXT NOT NULL DEFAULT '',
					owner TEXT NOT NULL DEFAULT '',
					data TEXT NOT NULL,
					created_at TEXT NOT NULL,
					updated_at TEXT NOT NULL,
					PRIMARY KEY (kind, id)
				)
			""")

			await self._db.execute("""
				CREATE INDEX IF NOT EXISTS idx_documents_kind_status ON documents(kind, status)
			""")

			await self._db.execute("""
				CREATE INDEX IF NOT EXISTS idx_documents_owner ON documents(kind, owner)
			""")

			await self._db.commit()
			logger.debug(f"Document store initialized: {self.db_path}")

	async def close(self):
		"""Close the database connection."""
		if self._db:
			await self._db.close()
			self._db = None

	async def _conn(self) -> aiosqlite.Connection:
		if not self._db:
			await self.init()
		return self._db

	async def put(
		self,
		kind: str,
		doc_id: str,
		data: dict[str, Any],
		status: str = "",
		owner: str = "",
		created_at: str = "",
		updated_at: str = "",
	):
		"""
		Insert or replace a document.

		Args:
			kind: Document kind (e.g. "session", "plan")
			doc_id: Document ID
			data: JSON-compatible payload
			status: Mirrored status column
			owner: Mirrored owner column (e.g. the session a plan belongs to)
			created_at: ISO creation timestamp
			updated_at: ISO update timestamp
		"""
		db = await self._conn()
		await db.execute(
			"""
			INSERT INTO documents (kind, id, status, owner, data, created_at, updated_at)
			VALUES (?, ?, ?, ?, ?, ?, ?)
			ON CONFLICT(kind, id) DO UPDATE SET
				status = excluded.status,
				owner = excluded.owner,
				data = excluded.data,
				updated_at = excluded.updated_at
			""",
			(kind, doc_id, status, owner, json.dumps(data), created_at, updated_at or created_at),
		)
		await db.commit()

	async def get(self, kind: str, doc_id: str) -> Optional[dict[str, Any]]:
		"""Get a document by kind and ID, or None."""
		db = await self._conn()
		async with db.execute(
			"SELECT data FROM documents WHERE kind = ? AND id = ?",
			(kind, doc_id),
		) as cursor:
			row = await cursor.fetchone()

		if not row:
			return None
		return json.loads(row["data"])

	async def search(
		self,
		kind: str,
		status: Optional[str] = None,
		owner: Optional[str] = None,
	) -> list[dict[str, Any]]:
		"""
		Search documents of a kind, newest first.

		Args:
			kind: Document kind
			status: Filter by mirrored status
			owner: Filter by mirrored owner

		Returns:
			List of decoded documents
		"""
		db = await self._conn()

		conditions = ["kind = ?"]
		params: list[Any] = [kind]

		if status:
			conditions.append("status = ?")
			params.append(status)

		if owner:
			conditions.append("owner = ?")
			params.append(owner)

		where_clause = " AND ".join(conditions)

		async with db.execute(
			f"SELECT data FROM documents WHERE {where_clause} ORDER BY created_at DESC",
			params,
		) as cursor:
			rows = await cursor.fetchall()

		return [json.loads(row["data"]) for row in rows]

	async def delete(self, kind: str, doc_id: str) -> bool:
		"""Delete a document. Returns True if something was removed."""
		db = await self._conn()
		cursor = await db.execute(
			"DELETE FROM documents WHERE kind = ? AND id = ?",
			(kind, doc_id),
		)
		await db.commit()
		return cursor.rowcount > 0

	async def delete_where(self, kind: str, status: str, created_before: str) -> list[str]:
		"""
		Delete documents of a kind in a status created before a cutoff.

		Returns:
			IDs of the deleted documents
		"""
		db = await self._conn()
		async with db.execute(
			"SELECT id FROM documents WHERE kind = ? AND status = ? AND created_at < ?",
			(kind, status, created_before),
		) as cursor:
			rows = await cursor.fetchall()

		ids = [row["id"] for row in rows]
		if ids:
			await db.executemany(
				"DELETE FROM documents WHERE kind = ? AND id = ?",
				[(kind, doc_id) for doc_id in ids],
			)
			await db.commit()
			logger.info(f"Purged {len(ids)} {kind} document(s) created before {created_before}")
		return ids
