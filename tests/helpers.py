"""Shared test fixtures and helpers for handoff tests."""

import hashlib
import json
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Optional

from handoff.config import Config
from handoff.orchestrator.executor import PlanOrchestrator
from handoff.orchestrator.worker import WorkerMode, WorkerRunner
from handoff.plans.store import PlanStore
from handoff.session.context import SessionContext
from handoff.session.store import SessionStore
from handoff.storage import DocumentStore


def make_config(tmp_path: Path, **overrides: Any) -> Config:
	"""Config rooted in tmp_path with instant autosave debounce."""
	config = Config(
		config_dir=tmp_path / "config",
		data_dir=tmp_path / "data",
		autosave_debounce=0.0,
		autosave_interval=5.0,
	)
	for key, value in overrides.items():
		setattr(config, key, value)
	return config


@asynccontextmanager
async def open_db(tmp_path: Path) -> AsyncIterator[DocumentStore]:
	db = DocumentStore(tmp_path / "data" / "handoff.db")
	await db.init()
	try:
		yield db
	finally:
		await db.close()


@asynccontextmanager
async def started_session(
	tmp_path: Path,
	metadata: Optional[dict[str, Any]] = None,
	**config_overrides: Any,
) -> AsyncIterator[SessionContext]:
	"""A started session backed by a temporary database; closed on exit."""
	config = make_config(tmp_path, **config_overrides)
	async with open_db(tmp_path) as db:
		session = SessionContext(SessionStore(db), config=config)
		await session.start(metadata or {"trigger": "test"})
		try:
			yield session
		finally:
			await session.close()


@asynccontextmanager
async def orchestrator_env(
	tmp_path: Path,
	worker: Optional[WorkerRunner] = None,
	with_session: bool = True,
) -> AsyncIterator[PlanOrchestrator]:
	"""PlanOrchestrator over a temporary database, with a simulated worker."""
	config = make_config(tmp_path)
	async with open_db(tmp_path) as db:
		session = None
		if with_session:
			session = SessionContext(SessionStore(db), config=config)
			await session.start({"trigger": "test"})
		if worker is None:
			worker = WorkerRunner(mode=WorkerMode.SIMULATED, session=session)
		elif worker.session is None:
			worker.session = session
		orchestrator = PlanOrchestrator(PlanStore(db), session=session, worker=worker, config=config)
		try:
			yield orchestrator
		finally:
			if session is not None:
				await session.close()


class InMemoryFindingStore:
	"""Finding store double: exact-match dedup on a content hash."""

	def __init__(self):
		self.items: dict[str, dict[str, Any]] = {}

	@staticmethod
	def _hash(item: dict[str, Any]) -> str:
		key = {k: item.get(k) for k in ("type", "file", "description")}
		return hashlib.sha256(json.dumps(key, sort_keys=True).encode()).hexdigest()[:16]

	def exists(self, item: dict[str, Any]) -> bool:
		return self._hash(item) in self.items

	def add(self, item: dict[str, Any]) -> dict[str, Any]:
		digest = self._hash(item)
		added = digest not in self.items
		self.items.setdefault(digest, dict(item))
		return {"hash": digest, "added": added}

	def query(self, filters: dict[str, Any]) -> list[dict[str, Any]]:
		return [
			item for item in self.items.values()
			if all(item.get(k) == v for k, v in filters.items())
		]


class ScriptedExecutor:
	"""Live executor double returning (or raising) scripted outcomes in order."""

	def __init__(self, *outcomes: Any):
		self.outcomes = list(outcomes)
		self.calls: list[tuple[str, Any]] = []

	async def __call__(self, prompt, options):
		self.calls.append((prompt, options))
		outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
		if isinstance(outcome, BaseException):
			raise outcome
		return outcome
