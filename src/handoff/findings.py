"""
Finding Store seam.

The similarity/dedup store is an external collaborator; this module only
declares the interface it must satisfy and the helper that consults it
before scheduling findings on a priority queue.
"""

import logging
from typing import Any, Iterable, Protocol, runtime_checkable

from .priority_queue import PriorityQueue

logger = logging.getLogger(__name__)


@runtime_checkable
class FindingStore(Protocol):
	"""Interface of the external finding store."""

	def exists(self, item: dict[str, Any]) -> bool:
		...

	def add(self, item: dict[str, Any]) -> dict[str, Any]:
		"""Store an item; returns {"hash": ..., "added": bool}."""
		...

	def query(self, filters: dict[str, Any]) -> list[dict[str, Any]]:
		...


def schedule_findings(
	queue: PriorityQueue,
	findings: Iterable[dict[str, Any]],
	store: FindingStore,
) -> dict[str, int]:
	"""
	Enqueue findings the store has not seen before.

	Every new finding is added to the store whether or not the queue
	accepts it under its priority threshold.

	Returns:
		Counts of enqueued, duplicate and skipped findings
	"""
	counts = {"enqueued": 0, "duplicates": 0, "skipped": 0}
	for finding in findings:
		if store.exists(finding):
			counts["duplicates"] += 1
			continue
		store.add(finding)
		if queue.enqueue(finding):
			counts["enqueued"] += 1
		else:
			counts["skipped"] += 1

	if counts["duplicates"]:
		logger.info(f"Dropped {counts['duplicates']} already-known finding(s)")
	return counts
