"""
Priority Queue - urgency-ordered scheduling of a flat backlog.

Items are dict payloads (typically findings). Each is wrapped in a
QueueItem carrying queue metadata; lower priority numbers are more
urgent. Insertion is stable: an item lands after every pending item of
equal or higher urgency, so equal priorities are served FIFO.

Failed items are retried in place up to `max_retries` attempts, then
moved to the failed list. Below-threshold items never enter the queue
and are kept in `skipped`; overflow beyond `max_size` is moved to
`evicted`.

Usage:
	queue = PriorityQueue(throttle=0.5)
	queue.enqueue({"type": "documentation", "file": "README.md"})
	queue.enqueue({"type": "critical_security", "file": "auth.py"})

	await queue.process_all(handler)   # critical_security first
"""

import asyncio
import bisect
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum, IntEnum
from typing import TYPE_CHECKING, Any, Callable, Iterable, Optional

from . import ids
from .config import Config, get_config
from .errors import ValidationError
from .orchestrator.batch import BatchItem, BatchProcessor, call_handler
from .retry import RetryPolicy, classify_failure

if TYPE_CHECKING:
	from .session.context import SessionContext

logger = logging.getLogger(__name__)


class Priority(IntEnum):
	"""Priority levels (lower number = more urgent)."""
	URGENT = 1
	HIGH = 2
	NORMAL = 3
	LOW = 4


TYPE_TO_PRIORITY: dict[str, Priority] = {
	"critical_security": Priority.URGENT,
	"potential_issue": Priority.HIGH,
	"refactor_suggestion": Priority.NORMAL,
	"performance": Priority.NORMAL,
	"documentation": Priority.LOW,
}

_PRIORITY_NAMES = {
	Priority.URGENT: "urgent",
	Priority.HIGH: "high",
	Priority.NORMAL: "normal",
	Priority.LOW: "low",
}


class ItemState(str, Enum):
	"""State of a queue item."""
	PENDING = "pending"
	PROCESSING = "processing"
	COMPLETED = "completed"
	FAILED = "failed"
	SKIPPED = "skipped"


def _now() -> str:
	return datetime.now().isoformat()


def priority_of(payload: dict[str, Any]) -> int:
	"""Explicit integer `priority` wins, else the type table, else LOW."""
	explicit = payload.get("priority")
	if isinstance(explicit, int) and not isinstance(explicit, bool):
		return explicit
	return TYPE_TO_PRIORITY.get(payload.get("type"), Priority.LOW)


@dataclass
class QueueMeta:
	"""Bookkeeping the queue keeps alongside each payload."""
	id: str
	priority: int
	sequence: int
	enqueued_at: str = field(default_factory=_now)
	state: ItemState = ItemState.PENDING
	attempts: int = 0
	last_error: Optional[str] = None
	started_at: Optional[str] = None
	completed_at: Optional[str] = None
	failed_at: Optional[str] = None
	skipped_at: Optional[str] = None
	skip_reason: Optional[str] = None
	evicted_at: Optional[str] = None
	result: Any = None


@dataclass
class QueueItem:
	"""A payload plus its queue metadata."""
	payload: dict[str, Any]
	meta: QueueMeta

	@property
	def id(self) -> str:
		return self.meta.id

	@property
	def priority(self) -> int:
		return self.meta.priority

	@property
	def state(self) -> ItemState:
		return self.meta.state

	def to_dict(self) -> dict[str, Any]:
		meta = asdict(self.meta)
		meta["state"] = self.meta.state.value
		return {**self.payload, "_queue": meta}


@dataclass
class ProcessOutcome:
	"""What happened to one item during process_all / process_batch."""
	item: QueueItem
	status: str
	result: Any = None
	error: Optional[str] = None


class PriorityQueue:
	"""Processes payloads in priority order with bounded retries."""

	def __init__(
		self,
		throttle: float = 0.0,
		max_retries: int = 3,
		batch_size: int = 1,
		priority_threshold: int = Priority.LOW,
		max_size: int = 0,
		retry_transient_only: bool = False,
		retry_backoff: float = 0.0,
		session: Optional["SessionContext"] = None,
		on_process: Optional[Callable[[QueueItem], Any]] = None,
		on_complete: Optional[Callable[[dict[str, Any]], Any]] = None,
		on_error: Optional[Callable[[BaseException, QueueItem], Any]] = None,
	):
		"""
		Args:
			throttle: Seconds to wait between sequentially processed items
			max_retries: Attempts before an item is moved to `failed`
			batch_size: Default number of items per process_batch call
			priority_threshold: Least urgent priority still accepted
			max_size: Pending capacity (0 = unlimited); overflow is evicted
			retry_transient_only: Only requeue failures classified as transient
			retry_backoff: Base seconds of exponential backoff before a retry
			session: Session whose context mirrors queue state
			on_process: Default handler for process_all / process_batch
			on_complete: Called with stats when a drain empties the queue
			on_error: Called with (error, item) when a handler raises
		"""
		self.throttle = throttle
		self.max_retries = max_retries
		self.batch_size = batch_size
		self.priority_threshold = priority_threshold
		self.max_size = max_size
		self.retry_transient_only = retry_transient_only
		self.retry_policy = RetryPolicy(max_attempts=max_retries, backoff_seconds=retry_backoff)

		self.session = session
		self.on_process = on_process
		self.on_complete = on_complete
		self.on_error = on_error

		self.items: list[QueueItem] = []
		self.processed: list[QueueItem] = []
		self.failed: list[QueueItem] = []
		self.skipped: list[QueueItem] = []
		self.evicted: list[QueueItem] = []

		self.is_processing = False
		self.is_paused = False
		self.current_item: Optional[QueueItem] = None
		self._in_flight: dict[str, QueueItem] = {}
		self._sequence = 0

	@classmethod
	def from_config(cls, config: Optional[Config] = None, **options: Any) -> "PriorityQueue":
		"""Create a queue whose retries and throttle come from configuration.

		Explicit options override the configured values.
		"""
		config = config or get_config()
		options.setdefault("max_retries", config.queue_max_retries)
		options.setdefault("throttle", config.queue_throttle)
		return cls(**options)

	@classmethod
	def from_findings(cls, findings: Iterable[dict[str, Any]], **options: Any) -> "PriorityQueue":
		"""Create a queue pre-filled with findings."""
		queue = cls(**options)
		queue.enqueue_all(findings)
		return queue

	def get_priority(self, payload: dict[str, Any]) -> int:
		return priority_of(payload)

	# ------------------------------------------------------------------
	# Enqueue / dequeue
	# ------------------------------------------------------------------

	def _next_sequence(self) -> int:
		self._sequence += 1
		return self._sequence

	def _insert(self, item: QueueItem) -> None:
		index = bisect.bisect_right(self.items, item.meta.priority, key=lambda i: i.meta.priority)
		self.items.insert(index, item)

	def enqueue(self, payload: dict[str, Any]) -> bool:
		"""
		Add a payload at its priority position.

		Returns:
			True if the payload is pending. False if it is below the priority
			threshold (kept in `skipped`) or was itself evicted by max_size
		"""
		priority = self.get_priority(payload)
		meta = QueueMeta(id=ids.queue_item_id(), priority=priority, sequence=self._next_sequence())
		item = QueueItem(payload=dict(payload), meta=meta)

		if priority > self.priority_threshold:
			meta.state = ItemState.SKIPPED
			meta.skipped_at = _now()
			meta.skip_reason = f"Priority {priority} below threshold {self.priority_threshold}"
			self.skipped.append(item)
			logger.debug(f"Skipped queue item {meta.id}: {meta.skip_reason}")
			self._sync_to_session()
			return False

		self._insert(item)

		if self.max_size > 0 and len(self.items) > self.max_size:
			overflow = self.items[self.max_size:]
			del self.items[self.max_size:]
			for evicted in overflow:
				evicted.meta.state = ItemState.SKIPPED
				evicted.meta.evicted_at = _now()
				evicted.meta.skip_reason = "Queue max_size exceeded"
				self.evicted.append(evicted)
			logger.info(f"Evicted {len(overflow)} queue item(s) over max_size={self.max_size}")

		self._sync_to_session()
		return meta.state == ItemState.PENDING

	def enqueue_all(self, payloads: Iterable[dict[str, Any]]) -> dict[str, int]:
		"""Enqueue many payloads; returns counts of added and not-added (skipped or evicted on arrival)."""
		outcomes = [self.enqueue(payload) for payload in payloads]
		added = sum(1 for ok in outcomes if ok)
		return {"added": added, "skipped": len(outcomes) - added}

	def dequeue(self) -> Optional[QueueItem]:
		"""Remove and return the most urgent pending item."""
		if not self.items:
			return None

		item = self.items.pop(0)
		item.meta.state = ItemState.PROCESSING
		item.meta.started_at = _now()
		self.current_item = item
		self._in_flight[item.id] = item

		self._sync_to_session()
		return item

	def peek(self) -> Optional[QueueItem]:
		return self.items[0] if self.items else None

	def is_empty(self) -> bool:
		return not self.items

	def size(self) -> int:
		return len(self.items)

	def __len__(self) -> int:
		return len(self.items)

	# ------------------------------------------------------------------
	# Outcomes
	# ------------------------------------------------------------------

	def _target(self, item: Optional[QueueItem]) -> Optional[QueueItem]:
		target = item or self.current_item
		if target is None:
			return None
		self._in_flight.pop(target.id, None)
		if self.current_item is target:
			self.current_item = None
		return target

	def mark_completed(self, result: Any = None, item: Optional[QueueItem] = None):
		"""Mark an item (default: the current one) completed."""
		target = self._target(item)
		if target is None:
			return

		target.meta.state = ItemState.COMPLETED
		target.meta.completed_at = _now()
		target.meta.result = result
		self.processed.append(target)
		self._sync_to_session()

	def mark_failed(self, error: BaseException | str, item: Optional[QueueItem] = None):
		"""
		Record a failed attempt.

		The item is re-inserted at its priority position while attempts
		remain (and, with retry_transient_only, only for transient errors);
		otherwise it moves to `failed`.
		"""
		target = self._target(item)
		if target is None:
			return

		meta = target.meta
		meta.attempts += 1
		meta.last_error = str(error)

		retry = meta.attempts < self.max_retries
		if retry and self.retry_transient_only:
			retry = classify_failure(error).retryable

		if retry:
			meta.state = ItemState.PENDING
			self._insert(target)
			logger.debug(f"Requeued {meta.id} after attempt {meta.attempts}: {meta.last_error}")
		else:
			meta.state = ItemState.FAILED
			meta.failed_at = _now()
			self.failed.append(target)
			logger.warning(f"Queue item {meta.id} failed after {meta.attempts} attempt(s): {meta.last_error}")

		self._sync_to_session()

	def mark_skipped(self, reason: str, item: Optional[QueueItem] = None):
		target = self._target(item)
		if target is None:
			return

		target.meta.state = ItemState.SKIPPED
		target.meta.skipped_at = _now()
		target.meta.skip_reason = reason
		self.skipped.append(target)
		self._sync_to_session()

	# ------------------------------------------------------------------
	# Processing
	# ------------------------------------------------------------------

	def _resolve_handler(self, handler: Optional[Callable]) -> Callable:
		processor = handler or self.on_process
		if processor is None:
			raise ValidationError("No handler provided for queue processing")
		return processor

	async def _notify_error(self, error: BaseException, item: QueueItem):
		if self.on_error:
			await call_handler(self.on_error, error, item)

	async def process_all(
		self,
		handler: Optional[Callable[[QueueItem], Any]] = None,
		concurrency: int = 1,
	) -> list[ProcessOutcome]:
		"""
		Drain the queue in priority order.

		Args:
			handler: Sync or async callable receiving each QueueItem
			concurrency: Items processed at once; > 1 drains via process_batch

		Returns:
			One ProcessOutcome per attempt made
		"""
		processor = self._resolve_handler(handler)
		self.is_processing = True
		outcomes: list[ProcessOutcome] = []

		try:
			if concurrency > 1:
				while not self.is_empty() and not self.is_paused:
					outcomes.extend(await self.process_batch(processor, batch_size=concurrency))
			else:
				while not self.is_empty() and not self.is_paused:
					item = self.dequeue()

					if self.throttle > 0 and outcomes:
						await asyncio.sleep(self.throttle)
					backoff = self.retry_policy.delay_for(item.meta.attempts)
					if backoff > 0:
						await asyncio.sleep(backoff)

					try:
						result = await call_handler(processor, item)
					except Exception as e:
						self.mark_failed(e, item)
						outcomes.append(ProcessOutcome(item, "failed", error=str(e)))
						await self._notify_error(e, item)
						continue

					self.mark_completed(result, item)
					outcomes.append(ProcessOutcome(item, "completed", result=result))
		finally:
			self.is_processing = False

		if self.on_complete and self.is_empty():
			await call_handler(self.on_complete, self.get_stats())

		return outcomes

	async def process_batch(
		self,
		handler: Optional[Callable[[QueueItem], Any]] = None,
		batch_size: Optional[int] = None,
	) -> list[ProcessOutcome]:
		"""Dequeue up to batch_size items and process them concurrently."""
		processor = self._resolve_handler(handler)
		size = batch_size or self.batch_size

		batch: list[QueueItem] = []
		while len(batch) < size and not self.is_empty():
			batch.append(self.dequeue())
		if not batch:
			return []

		by_id = {item.id: item for item in batch}
		outcomes: list[ProcessOutcome] = []

		async def resolve(batch_item: BatchItem[QueueItem], batch_result):
			item = by_id[batch_item.id]
			if batch_result.success:
				self.mark_completed(batch_result.result, item)
				outcomes.append(ProcessOutcome(item, "completed", result=batch_result.result))
			else:
				self.mark_failed(batch_result.exception or batch_result.error, item)
				outcomes.append(ProcessOutcome(item, "failed", error=batch_result.error))
				await self._notify_error(batch_result.exception, item)

		processor_pool = BatchProcessor(max_concurrency=len(batch))
		await processor_pool.execute(
			[BatchItem(id=item.id, data=item) for item in batch],
			processor,
			on_item_complete=resolve,
		)
		return outcomes

	def pause(self):
		self.is_paused = True

	def resume(self):
		self.is_paused = False

	def clear(self):
		"""Drop all pending items."""
		self.items = []
		self.current_item = None
		self._sync_to_session()

	def retry_failed(self) -> int:
		"""Move every failed item back to pending with a fresh attempt budget."""
		to_retry, self.failed = self.failed, []
		for item in to_retry:
			item.meta.attempts = 0
			item.meta.state = ItemState.PENDING
			item.meta.failed_at = None
			item.meta.last_error = None
			self._insert(item)

		if to_retry:
			logger.info(f"Retrying {len(to_retry)} failed queue item(s)")
			self._sync_to_session()
		return len(to_retry)

	# ------------------------------------------------------------------
	# Introspection
	# ------------------------------------------------------------------

	def get_by_priority(self) -> dict[Priority, list[QueueItem]]:
		groups: dict[Priority, list[QueueItem]] = {p: [] for p in Priority}
		for item in self.items:
			if item.meta.priority in groups:
				groups[Priority(item.meta.priority)].append(item)
		return groups

	def get_items(self, state: Optional[str] = None) -> dict[str, list[QueueItem]] | list[QueueItem]:
		"""Items by state; without a state returns every bucket."""
		buckets = {
			ItemState.PENDING.value: self.items,
			ItemState.COMPLETED.value: self.processed,
			ItemState.FAILED.value: self.failed,
			ItemState.SKIPPED.value: self.skipped,
			"evicted": self.evicted,
		}
		if state is None:
			return {key: list(items) for key, items in buckets.items()}
		key = state.value if isinstance(state, ItemState) else state
		return list(buckets.get(key, []))

	def get_stats(self) -> dict[str, Any]:
		by_priority = self.get_by_priority()
		return {
			"pending": len(self.items),
			"processing": len(self._in_flight),
			"completed": len(self.processed),
			"failed": len(self.failed),
			"skipped": len(self.skipped),
			"evicted": len(self.evicted),
			"max_size": self.max_size,
			"total": (
				len(self.items) + len(self.processed) + len(self.failed)
				+ len(self.skipped) + len(self.evicted)
			),
			"by_priority": {_PRIORITY_NAMES[p]: len(items) for p, items in by_priority.items()},
		}

	# ------------------------------------------------------------------
	# Session integration
	# ------------------------------------------------------------------

	def _sync_to_session(self):
		if self.session is None or self.session.record is None:
			return
		if self.session.state.is_terminal:
			return
		self.session.merge("queue", {
			"pending": len(self.items),
			"completed": len(self.processed),
			"failed": len(self.failed),
			"stats": self.get_stats(),
			"items": [item.payload for item in self.items],
		})

	def load_from_session(self, session: "SessionContext") -> int:
		"""Attach a session and re-enqueue the pending payloads it holds."""
		self.session = session
		payloads = session.get("queue.items", []) or []
		if payloads:
			self.enqueue_all(payloads)
		return len(payloads)


def sort_by_priority(findings: Iterable[dict[str, Any]]) -> list[dict[str, Any]]:
	"""Stable sort of findings by their type priority."""
	return sorted(findings, key=priority_of)


def filter_by_priority(findings: Iterable[dict[str, Any]], threshold: int = Priority.LOW) -> list[dict[str, Any]]:
	return [f for f in findings if priority_of(f) <= threshold]


def group_by_priority(findings: Iterable[dict[str, Any]]) -> dict[str, list[dict[str, Any]]]:
	"""Group findings into urgent / high / normal / low buckets."""
	groups: dict[str, list[dict[str, Any]]] = {name: [] for name in _PRIORITY_NAMES.values()}
	for finding in findings:
		name = _PRIORITY_NAMES.get(priority_of(finding))
		if name:
			groups[name].append(finding)
	return groups
