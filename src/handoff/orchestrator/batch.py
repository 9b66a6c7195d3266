"""
Batch Processor - Fan-out/fan-in execution of queue items.

Runs a batch of items concurrently under a semaphore. Each item is
handled independently; a failing item is captured with its exception so
the caller can classify it, and never aborts the rest of the batch.
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


class BatchStatus(str, Enum):
	"""Status of a batch operation."""
	COMPLETED = "completed"
	PARTIAL_FAILURE = "partial_failure"
	FAILED = "failed"


@dataclass
class BatchItem(Generic[T]):
	"""A single item in a batch."""
	id: str
	data: T


@dataclass
class BatchResult(Generic[R]):
	"""Result of processing a single batch item."""
	item_id: str
	success: bool
	result: Optional[R] = None
	error: Optional[str] = None
	exception: Optional[BaseException] = None


@dataclass
class BatchSummary(Generic[R]):
	"""Summary of a completed batch, results in input order."""
	status: BatchStatus
	total: int
	succeeded: int
	failed: int
	results: list[BatchResult[R]] = field(default_factory=list)

	@property
	def success_rate(self) -> float:
		if self.total == 0:
			return 0.0
		return self.succeeded / self.total


async def call_handler(handler: Callable[..., Any], *args: Any) -> Any:
	"""Call a sync or async handler and return its result."""
	result = handler(*args)
	if inspect.isawaitable(result):
		result = await result
	return result


class BatchProcessor(Generic[T, R]):
	"""
	Processes batches of items with concurrency control.

	Usage:
		processor = BatchProcessor(max_concurrency=4)
		summary = await processor.execute(items, handler)
	"""

	def __init__(self, max_concurrency: int = 5):
		"""
		Args:
			max_concurrency: Maximum number of items processed concurrently
		"""
		if max_concurrency < 1:
			raise ValueError("max_concurrency must be at least 1")
		self.max_concurrency = max_concurrency

	async def execute(
		self,
		items: list[BatchItem[T]],
		handler: Callable[[T], Awaitable[R] | R],
		on_item_complete: Optional[Callable[[BatchItem[T], BatchResult[R]], Any]] = None,
	) -> BatchSummary[R]:
		"""
		Execute a batch of items through the handler.

		Args:
			items: Items to process
			handler: Sync or async function receiving each item's data
			on_item_complete: Optional callback after each item resolves

		Returns:
			BatchSummary with one result per item, in input order
		"""
		if not items:
			return BatchSummary(status=BatchStatus.COMPLETED, total=0, succeeded=0, failed=0)

		semaphore = asyncio.Semaphore(self.max_concurrency)
		results: list[Optional[BatchResult[R]]] = [None] * len(items)

		async def process_item(index: int, item: BatchItem[T]) -> None:
			async with semaphore:
				try:
					value = await call_handler(handler, item.data)
					batch_result = BatchResult(item_id=item.id, success=True, result=value)
				except Exception as e:
					logger.warning(f"Batch item {item.id} failed: {e}")
					batch_result = BatchResult(
						item_id=item.id,
						success=False,
						error=str(e),
						exception=e,
					)

				results[index] = batch_result

				if on_item_complete:
					await call_handler(on_item_complete, item, batch_result)

		# Fan out
		await asyncio.gather(*(process_item(i, item) for i, item in enumerate(items)))

		# Fan in
		done = [r for r in results if r is not None]
		succeeded = sum(1 for r in done if r.success)
		failed = len(done) - succeeded

		if failed == 0:
			status = BatchStatus.COMPLETED
		elif succeeded == 0:
			status = BatchStatus.FAILED
		else:
			status = BatchStatus.PARTIAL_FAILURE

		return BatchSummary(
			status=status,
			total=len(items),
			succeeded=succeeded,
			failed=failed,
			results=done,
		)
