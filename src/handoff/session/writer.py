"""
Coalescing Writer - one serialized persistence path per session handle.

Mutations call `schedule()`, which only marks the handle dirty and wakes
the background task. The task waits out a short debounce window so bursts
collapse into a single write, and also writes on a fixed interval while
dirty. An asyncio.Lock guarantees at most one write is in flight; the
snapshot is taken synchronously right before each write is awaited.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


class CoalescingWriter:
	"""
	Debounced + periodic writer driven by a single asyncio task.

	Usage:
		writer = CoalescingWriter(snapshot=record_dict, persist=store.save_raw)
		writer.schedule()      # after every mutation
		await writer.flush()   # force a write now
		await writer.close()   # stop the task and write once more
	"""

	def __init__(
		self,
		snapshot: Callable[[], Any],
		persist: Callable[[Any], Awaitable[None]],
		debounce: float = 0.1,
		interval: float = 5.0,
	):
		self._snapshot = snapshot
		self._persist = persist
		self.debounce = debounce
		self.interval = interval

		self._lock = asyncio.Lock()
		self._wake = asyncio.Event()
		self._task: Optional[asyncio.Task] = None
		self._dirty = False
		self._closed = False
		self.writes = 0

	@property
	def dirty(self) -> bool:
		return self._dirty

	@property
	def closed(self) -> bool:
		return self._closed

	def schedule(self) -> None:
		"""Mark state dirty and wake the writer task (started lazily)."""
		self._dirty = True
		if self._closed:
			return
		try:
			loop = asyncio.get_running_loop()
		except RuntimeError:
			# No loop yet: the next flush() picks the change up.
			return
		if self._task is None or self._task.done():
			self._task = loop.create_task(self._run())
		self._wake.set()

	async def _run(self) -> None:
		while not self._closed:
			try:
				await asyncio.wait_for(self._wake.wait(), timeout=self.interval)
			except asyncio.TimeoutError:
				if self._dirty:
					await self._write(raise_errors=False)
				continue

			self._wake.clear()
			if self._closed:
				break
			if self.debounce > 0:
				await asyncio.sleep(self.debounce)
			if self._dirty:
				await self._write(raise_errors=False)

	async def _write(self, force: bool = False, raise_errors: bool = True) -> bool:
		async with self._lock:
			if not (self._dirty or force):
				return False
			self._dirty = False
			data = self._snapshot()
			try:
				await self._persist(data)
			except Exception as e:
				self._dirty = True
				if raise_errors:
					raise
				logger.error(f"Background session write failed: {e}")
				return False
			self.writes += 1
			return True

	async def flush(self) -> None:
		"""Write the current state now, waiting for any in-flight write first."""
		await self._write(force=True)

	async def close(self) -> None:
		"""Stop the background task and perform a final write."""
		if self._closed:
			return
		self._closed = True
		self._wake.set()
		if self._task is not None and not self._task.done():
			self._task.cancel()
			try:
				await self._task
			except asyncio.CancelledError:
				pass
		self._task = None
		await self._write(force=True)
