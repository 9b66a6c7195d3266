"""Tests for the priority queue."""

import asyncio
from pathlib import Path

import pytest

from handoff.config import Config
from handoff.errors import ValidationError
from handoff.priority_queue import (
	ItemState,
	Priority,
	PriorityQueue,
	filter_by_priority,
	group_by_priority,
	priority_of,
	sort_by_priority,
)

from .helpers import started_session

FINDINGS = [
	{"type": "documentation", "file": "README.md"},
	{"type": "potential_issue", "file": "src/a.py"},
	{"type": "critical_security", "file": "src/auth.py"},
	{"type": "refactor_suggestion", "file": "src/b.py"},
	{"type": "potential_issue", "file": "src/c.py"},
]


class TestPriorityOrdering:
	"""Priority resolution and stable ordering."""

	def test_priority_of(self):
		"""Explicit integer priority wins, then the type table, then LOW."""
		assert priority_of({"type": "critical_security"}) == Priority.URGENT
		assert priority_of({"type": "performance"}) == Priority.NORMAL
		assert priority_of({"type": "unknown"}) == Priority.LOW
		assert priority_of({"type": "documentation", "priority": 1}) == 1
		assert priority_of({"type": "critical_security", "priority": True}) == Priority.URGENT

	def test_dequeue_order_is_priority_then_fifo(self):
		"""Most urgent first; equal priorities keep enqueue order."""
		queue = PriorityQueue.from_findings(FINDINGS)
		files = []
		while not queue.is_empty():
			item = queue.dequeue()
			files.append(item.payload["file"])
			queue.mark_completed(item=item)

		assert files == ["src/auth.py", "src/a.py", "src/c.py", "src/b.py", "README.md"]

	def test_peek_and_size(self):
		"""peek does not remove; size and len agree."""
		queue = PriorityQueue()
		assert queue.peek() is None
		assert queue.dequeue() is None
		queue.enqueue_all(FINDINGS[:2])
		assert queue.peek().payload["file"] == "src/a.py"
		assert queue.size() == len(queue) == 2

	def test_threshold_skips(self):
		"""Items less urgent than the threshold are skipped with a reason."""
		queue = PriorityQueue(priority_threshold=Priority.HIGH)
		counts = queue.enqueue_all(FINDINGS)

		assert counts == {"added": 3, "skipped": 2}
		assert len(queue) == 3
		assert all(item.state == ItemState.SKIPPED for item in queue.skipped)
		assert "below threshold" in queue.skipped[0].meta.skip_reason

	def test_max_size_evicts_least_urgent(self):
		"""Overflow beyond max_size moves the tail to evicted."""
		queue = PriorityQueue(max_size=2)
		queue.enqueue({"type": "documentation", "id": "doc"})
		queue.enqueue({"type": "refactor_suggestion", "id": "ref"})
		queue.enqueue({"type": "critical_security", "id": "sec"})

		assert [item.payload["id"] for item in queue.items] == ["sec", "ref"]
		assert [item.payload["id"] for item in queue.evicted] == ["doc"]
		assert queue.evicted[0].meta.skip_reason == "Queue max_size exceeded"
		assert queue.evicted[0].state == ItemState.SKIPPED
		assert queue.get_stats()["evicted"] == 1

	def test_enqueue_reports_own_eviction(self):
		"""An item evicted on arrival is not reported as added."""
		queue = PriorityQueue(max_size=1)
		assert queue.enqueue({"type": "critical_security", "id": "sec"}) is True
		assert queue.enqueue({"type": "documentation", "id": "doc"}) is False
		assert [item.payload["id"] for item in queue.evicted] == ["doc"]
		assert queue.enqueue_all([{"type": "performance", "id": "perf"}]) == {"added": 0, "skipped": 1}
		assert [item.payload["id"] for item in queue.items] == ["sec"]

	def test_from_config(self):
		"""Retries and throttle default to the configured values."""
		config = Config(queue_max_retries=5, queue_throttle=0.25)
		queue = PriorityQueue.from_config(config, max_size=10)
		assert queue.max_retries == 5
		assert queue.retry_policy.max_attempts == 5
		assert queue.throttle == 0.25
		assert queue.max_size == 10

		assert PriorityQueue.from_config(config, max_retries=1).max_retries == 1

	def test_to_dict_carries_meta(self):
		"""Serialized items keep the payload plus a _queue block."""
		queue = PriorityQueue()
		queue.enqueue({"type": "performance", "file": "x.py"})
		data = queue.peek().to_dict()
		assert data["file"] == "x.py"
		assert data["_queue"]["priority"] == 3
		assert data["_queue"]["state"] == "pending"
		assert data["_queue"]["id"].startswith("q_")


class TestRetries:
	"""Failure handling and bounded retries."""

	def test_failed_item_requeued_until_max_retries(self):
		"""An item is retried in place, then moved to failed."""
		queue = PriorityQueue(max_retries=3)
		queue.enqueue({"type": "potential_issue"})

		for attempt in range(1, 4):
			item = queue.dequeue()
			assert item.state == ItemState.PROCESSING
			queue.mark_failed("boom", item=item)
			assert item.meta.attempts == attempt

		assert queue.is_empty()
		assert len(queue.failed) == 1
		assert queue.failed[0].meta.last_error == "boom"
		assert queue.failed[0].state == ItemState.FAILED

	def test_retry_keeps_priority_position(self):
		"""A retried item is re-inserted after equally urgent pending items."""
		queue = PriorityQueue()
		queue.enqueue({"type": "potential_issue", "id": "a"})
		queue.enqueue({"type": "potential_issue", "id": "b"})
		queue.enqueue({"type": "documentation", "id": "c"})

		first = queue.dequeue()
		queue.mark_failed("flaky", item=first)
		assert [item.payload["id"] for item in queue.items] == ["b", "a", "c"]

	def test_retry_transient_only(self):
		"""With retry_transient_only a terminal error fails immediately."""
		queue = PriorityQueue(retry_transient_only=True)
		queue.enqueue({"id": "terminal"})
		queue.enqueue({"id": "transient"})

		queue.mark_failed(ValueError("invalid input"), item=queue.dequeue())
		queue.mark_failed(TimeoutError("timed out"), item=queue.dequeue())

		assert [item.payload["id"] for item in queue.failed] == ["terminal"]
		assert [item.payload["id"] for item in queue.items] == ["transient"]

	def test_retry_failed_resets_attempts(self):
		"""retry_failed moves failed items back with a fresh budget."""
		queue = PriorityQueue(max_retries=1)
		queue.enqueue({"id": "x"})
		queue.mark_failed("nope", item=queue.dequeue())
		assert len(queue.failed) == 1

		assert queue.retry_failed() == 1
		assert queue.failed == []
		assert queue.peek().meta.attempts == 0
		assert queue.peek().state == ItemState.PENDING

	def test_mark_skipped(self):
		"""Skipped items carry their reason."""
		queue = PriorityQueue()
		queue.enqueue({"id": "x"})
		item = queue.dequeue()
		queue.mark_skipped("duplicate")
		assert queue.skipped == [item]
		assert item.meta.skip_reason == "duplicate"
		assert queue.get_stats()["processing"] == 0


class TestProcessing:
	"""process_all / process_batch."""

	@pytest.mark.asyncio
	async def test_process_all_in_priority_order(self):
		"""The drain visits items most urgent first and reports completion."""
		seen = []
		stats = {}

		async def handler(item):
			seen.append(item.payload["file"])
			return "ok"

		queue = PriorityQueue.from_findings(FINDINGS, on_complete=lambda s: stats.update(s))
		outcomes = await queue.process_all(handler)

		assert seen == ["src/auth.py", "src/a.py", "src/c.py", "src/b.py", "README.md"]
		assert all(o.status == "completed" for o in outcomes)
		assert stats["completed"] == 5
		assert queue.processed[0].meta.result == "ok"

	@pytest.mark.asyncio
	async def test_process_all_retries_failures(self):
		"""Handler exceptions go through mark_failed and on_error."""
		calls = {"n": 0}
		errors = []

		def handler(item):
			calls["n"] += 1
			if calls["n"] < 3:
				raise RuntimeError("flaky")
			return "done"

		queue = PriorityQueue(max_retries=3, on_error=lambda e, item: errors.append(str(e)))
		queue.enqueue({"id": "x"})
		outcomes = await queue.process_all(handler)

		assert [o.status for o in outcomes] == ["failed", "failed", "completed"]
		assert errors == ["flaky", "flaky"]
		assert queue.processed[0].meta.attempts == 2

	@pytest.mark.asyncio
	async def test_process_all_requires_handler(self):
		"""Without a handler or on_process a ValidationError is raised."""
		queue = PriorityQueue()
		queue.enqueue({"id": "x"})
		with pytest.raises(ValidationError):
			await queue.process_all()

	@pytest.mark.asyncio
	async def test_pause_stops_drain(self):
		"""Pausing from the handler stops after the current item."""
		queue = PriorityQueue()
		queue.enqueue_all([{"id": i} for i in range(3)])

		def handler(item):
			queue.pause()

		await queue.process_all(handler)
		assert len(queue) == 2
		queue.resume()
		await queue.process_all(handler)
		assert len(queue) == 1

	@pytest.mark.asyncio
	async def test_throttle_between_items(self):
		"""The throttle sleeps between items, not before the first."""
		queue = PriorityQueue(throttle=0.05)
		queue.enqueue_all([{"id": i} for i in range(3)])

		loop = asyncio.get_running_loop()
		start = loop.time()
		await queue.process_all(lambda item: None)
		elapsed = loop.time() - start

		assert elapsed >= 0.09
		assert elapsed < 1.0

	@pytest.mark.asyncio
	async def test_process_batch_runs_concurrently(self):
		"""A batch runs its items at the same time and resolves each."""
		active = {"now": 0, "max": 0}

		async def handler(item):
			active["now"] += 1
			active["max"] = max(active["max"], active["now"])
			await asyncio.sleep(0.02)
			active["now"] -= 1
			if item.payload["id"] == 1:
				raise RuntimeError("bad item")
			return item.payload["id"]

		queue = PriorityQueue(batch_size=3, max_retries=1)
		queue.enqueue_all([{"id": i} for i in range(4)])
		outcomes = await queue.process_batch(handler)

		assert len(outcomes) == 3
		assert active["max"] == 3
		assert len(queue) == 1
		assert len(queue.processed) == 2
		assert queue.failed[0].payload["id"] == 1

	@pytest.mark.asyncio
	async def test_process_all_with_concurrency(self):
		"""concurrency > 1 drains the queue in batches."""
		queue = PriorityQueue()
		queue.enqueue_all([{"id": i} for i in range(5)])
		outcomes = await queue.process_all(lambda item: item.payload["id"], concurrency=2)
		assert len(outcomes) == 5
		assert queue.is_empty()
		assert queue.get_stats()["completed"] == 5


class TestIntrospection:
	"""Stats and module helpers."""

	def test_get_stats(self):
		"""Stats count every bucket and pending items per priority."""
		queue = PriorityQueue(priority_threshold=Priority.NORMAL)
		queue.enqueue_all(FINDINGS)
		queue.mark_completed(item=queue.dequeue())
		queue.dequeue()

		stats = queue.get_stats()
		assert stats["pending"] == 2
		assert stats["processing"] == 1
		assert stats["completed"] == 1
		assert stats["skipped"] == 1
		assert stats["total"] == 4
		assert stats["by_priority"] == {"urgent": 0, "high": 1, "normal": 1, "low": 0}

	def test_get_items_by_state(self):
		"""get_items returns one bucket or all of them."""
		queue = PriorityQueue()
		queue.enqueue_all(FINDINGS[:2])
		queue.mark_completed(item=queue.dequeue())
		assert len(queue.get_items("pending")) == 1
		assert len(queue.get_items(ItemState.COMPLETED)) == 1
		assert set(queue.get_items()) == {"pending", "completed", "failed", "skipped", "evicted"}

	def test_clear(self):
		queue = PriorityQueue()
		queue.enqueue_all(FINDINGS)
		queue.clear()
		assert queue.is_empty()

	def test_helpers(self):
		"""sort / filter / group helpers follow the type table."""
		ordered = sort_by_priority(FINDINGS)
		assert [f["file"] for f in ordered][:3] == ["src/auth.py", "src/a.py", "src/c.py"]
		assert len(filter_by_priority(FINDINGS, Priority.HIGH)) == 3
		groups = group_by_priority(FINDINGS)
		assert {k: len(v) for k, v in groups.items()} == {"urgent": 1, "high": 2, "normal": 1, "low": 1}


class TestSessionSync:
	"""Queue state mirrored into the session context."""

	@pytest.mark.asyncio
	async def test_changes_sync_to_session(self, tmp_path: Path):
		"""Every change writes queue counters into the context."""
		async with started_session(tmp_path) as session:
			queue = PriorityQueue(session=session)
			queue.enqueue_all(FINDINGS[:3])
			queue.mark_completed(item=queue.dequeue())

			assert session.get("queue.pending") == 2
			assert session.get("queue.completed") == 1
			assert session.get("queue.stats.total") == 3

	@pytest.mark.asyncio
	async def test_load_from_session(self, tmp_path: Path):
		"""Pending payloads survive into a fresh queue."""
		async with started_session(tmp_path) as session:
			first = PriorityQueue(session=session)
			first.enqueue_all(FINDINGS[:3])

			second = PriorityQueue()
			assert second.load_from_session(session) == 3
			assert second.peek().payload["file"] == "src/auth.py"

	@pytest.mark.asyncio
	async def test_terminal_session_not_touched(self, tmp_path: Path):
		"""A completed session does not break the queue."""
		async with started_session(tmp_path) as session:
			queue = PriorityQueue(session=session)
			await session.complete()
			assert queue.enqueue({"id": "x"}) is True
