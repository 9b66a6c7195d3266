"""
Plan Orchestrator - builds plans from objectives and executes them.

Subtasks of one plan run strictly one after another, most urgent first
and never before their dependencies. Every subtask is handed to the
WorkerRunner through an isolated WorkerInvocation; its failure is
recorded on the subtask and never aborts the plan. The plan document is
persisted after every subtask so a crashed run can be resumed.

Several plans may execute concurrently as asyncio tasks keyed by plan ID.

Usage:
	orchestrator = PlanOrchestrator(PlanStore(config.db_path), session=session)
	plan = await orchestrator.create_plan("Fix the auth bug and add tests")
	report = await orchestrator.execute(plan.id)
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any, Callable, Optional

from ..config import Config, get_config
from ..errors import (
	PlanConflictError,
	PlanNotFoundError,
	SubtaskNotFoundError,
	ValidationError,
)
from ..ids import plan_id as new_plan_id
from ..ids import subtask_id as new_subtask_id
from ..plans.models import (
	DependencyMode,
	ExecutionReport,
	Objective,
	Plan,
	PlanStatus,
	RetrySettings,
	Subtask,
	SubtaskError,
	SubtaskStatus,
)
from ..plans.store import PlanStore
from ..priority_queue import Priority
from ..retry import RetryPolicy, classify_failure
from ..session.models import SessionState
from .batch import call_handler
from .splitter import split_task
from .worker import WorkerInvocation, WorkerMode, WorkerResult, WorkerRunner, WorkerStatus

if TYPE_CHECKING:
	from ..session.context import SessionContext

logger = logging.getLogger(__name__)

INVOCATION_PENDING = "INVOCATION_PENDING"


def _now() -> str:
	return datetime.now().isoformat()


def _elapsed_ms(start: str, end: str) -> int:
	return int((datetime.fromisoformat(end) - datetime.fromisoformat(start)).total_seconds() * 1000)


def order_subtasks(subtasks: list[Subtask]) -> list[Subtask]:
	"""
	Execution order: priority ascending (stable by sequence), then
	repeated dependency passes. A subtask is placed once its
	dependencies (per its dependency mode) are placed or unknown; when a
	pass places nothing the remainder is appended as-is and will block.
	"""
	ordered = sorted(subtasks, key=lambda st: (st.priority, st.sequence))
	pending = {st.id for st in ordered}
	result: list[Subtask] = []

	while pending:
		placed_any = False
		for subtask in ordered:
			if subtask.id not in pending:
				continue
			satisfied = [dep not in pending for dep in subtask.dependencies]
			if subtask.dependency_mode == DependencyMode.ANY:
				ready = not satisfied or any(satisfied)
			else:
				ready = all(satisfied)
			if ready:
				result.append(subtask)
				pending.discard(subtask.id)
				placed_any = True

		if not placed_any:
			result.extend(st for st in ordered if st.id in pending)
			break

	return result


def final_status(plan: Plan) -> PlanStatus:
	"""completed iff all subtasks completed, partial iff some, failed iff none."""
	completed = sum(1 for st in plan.subtasks if st.status == SubtaskStatus.COMPLETED)
	if plan.subtasks and completed == len(plan.subtasks):
		return PlanStatus.COMPLETED
	if completed > 0:
		return PlanStatus.PARTIAL
	return PlanStatus.FAILED


@dataclass
class ExecutionHandle:
	"""Returned by a non-blocking execute()."""
	plan_id: str
	task: asyncio.Task

	async def wait(self) -> ExecutionReport:
		return await self.task

	@property
	def done(self) -> bool:
		return self.task.done()


class PlanOrchestrator:
	"""Creates, executes, cancels and retries plans."""

	def __init__(
		self,
		store: PlanStore,
		session: Optional["SessionContext"] = None,
		worker: Optional[WorkerRunner] = None,
		config: Optional[Config] = None,
	):
		self.store = store
		self.session = session
		self.config = config or get_config()
		self.worker = worker or WorkerRunner(
			mode=WorkerMode.SIMULATED,
			timeout=self.config.worker_timeout,
			session=session,
		)

		# Plans executing in this process, shared with cancel()
		self._live: dict[str, Plan] = {}
		self._tasks: dict[str, asyncio.Task] = {}

	# ------------------------------------------------------------------
	# Helpers
	# ------------------------------------------------------------------

	def _session_active(self) -> bool:
		return (
			self.session is not None
			and self.session.record is not None
			and not self.session.state.is_terminal
		)

	async def _load(self, plan_id: str) -> Plan:
		live = self._live.get(plan_id)
		if live is not None:
			return live
		plan = await self.store.get(plan_id)
		if plan is None:
			raise PlanNotFoundError(plan_id)
		return plan

	def _report(self, plan: Plan, status: Optional[str] = None, subtasks_run: int = 0) -> ExecutionReport:
		return ExecutionReport(
			plan_id=plan.id,
			status=status or plan.status.value,
			subtasks_run=subtasks_run,
			progress=plan.get_progress(),
			results=dict(plan.results),
			errors={st.id: st.last_error for st in plan.subtasks if st.last_error is not None},
			started_at=plan.execution.started_at,
			completed_at=plan.execution.completed_at,
		)

	# ------------------------------------------------------------------
	# Creation
	# ------------------------------------------------------------------

	async def create_plan(
		self,
		objective: str,
		session_id: Optional[str] = None,
		max_subtasks: Optional[int] = None,
		priority_threshold: int = Priority.LOW,
		context: Optional[dict[str, Any]] = None,
		max_attempts: Optional[int] = None,
		backoff_ms: int = 1000,
	) -> Plan:
		"""
		Split an objective and persist the resulting plan.

		Args:
			objective: Free-text objective
			session_id: Owning session (defaults to the attached session)
			max_subtasks: Subtask cap (clamped to 3)
			priority_threshold: Drop categories less urgent than this
			context: Extra input handed to every subtask
			max_attempts: Attempt budget per subtask
			backoff_ms: Base delay between in-run retries

		Returns:
			The persisted plan

		Raises:
			ValidationError: On an empty objective or invalid limits
		"""
		max_subtasks = self.config.max_subtasks if max_subtasks is None else max_subtasks
		max_attempts = self.config.max_attempts if max_attempts is None else max_attempts
		if max_attempts < 1:
			raise ValidationError(f"max_attempts must be at least 1, got {max_attempts}", max_attempts=max_attempts)
		if backoff_ms < 0:
			raise ValidationError(f"backoff_ms must not be negative, got {backoff_ms}", backoff_ms=backoff_ms)

		split = split_task(
			objective,
			max_subtasks=max_subtasks,
			priority_threshold=priority_threshold,
			context=context,
		)

		plan_id = new_plan_id()
		id_map = {spec.id: new_subtask_id(index + 1) for index, spec in enumerate(split.subtasks)}

		subtasks = [
			Subtask(
				id=id_map[spec.id],
				plan_id=plan_id,
				sequence=index + 1,
				priority=int(spec.priority),
				description=spec.description,
				worker_type=spec.worker_type,
				category=spec.category,
				input=spec.input,
				dependencies=[id_map[dep] for dep in spec.dependencies if dep in id_map],
				retry=RetrySettings(max_attempts=max_attempts, backoff_ms=backoff_ms),
			)
			for index, spec in enumerate(split.subtasks)
		]

		if session_id is None and self.session is not None:
			session_id = self.session.id

		plan = Plan(
			id=plan_id,
			session_id=session_id,
			priority=min((st.priority for st in subtasks), default=int(Priority.LOW)),
			objective=Objective(
				description=objective.strip(),
				complexity=split.complexity,
				context=context or {},
			),
			subtasks=subtasks,
		)
		await self.store.save(plan)

		if self._session_active():
			self.session.set_active_plan(plan.id)
			self.session.add_event("plan_created", {
				"plan_id": plan.id,
				"subtask_count": len(subtasks),
				"complexity": split.complexity,
			})

		logger.info(f"Created plan {plan.id}: {len(subtasks)} subtask(s), complexity {split.complexity}")
		return plan

	# ------------------------------------------------------------------
	# Execution
	# ------------------------------------------------------------------

	async def execute(
		self,
		plan_id: str,
		blocking: bool = True,
		on_subtask_complete: Optional[Callable[[Subtask, Any], Any]] = None,
		resume: bool = False,
	) -> ExecutionReport | ExecutionHandle:
		"""
		Execute a plan's outstanding subtasks.

		Args:
			plan_id: Plan to execute
			blocking: Wait for completion; otherwise return an ExecutionHandle
			on_subtask_complete: Called with (subtask, result) after each subtask
			resume: Accept a plan left "running" by a crashed process

		Returns:
			ExecutionReport, or an ExecutionHandle when not blocking

		Raises:
			PlanNotFoundError: Unknown plan
			PlanConflictError: The plan is already running, or it ended
				partial/failed/cancelled (failed subtasks go through retry())
		"""
		if plan_id in self._live:
			raise PlanConflictError(f"Plan already running: {plan_id}", plan_id=plan_id)

		plan = await self._load(plan_id)
		if plan_id in self._live or (plan.status == PlanStatus.RUNNING and not resume):
			raise PlanConflictError(f"Plan already running: {plan_id}", plan_id=plan_id)
		if plan.status == PlanStatus.COMPLETED:
			return self._report(plan, status="already_completed")
		if plan.status.is_terminal:
			raise PlanConflictError(
				f"Plan {plan_id} already ended {plan.status.value}",
				plan_id=plan_id,
				status=plan.status.value,
			)

		self._live[plan_id] = plan
		try:
			for subtask in plan.subtasks:
				if subtask.status == SubtaskStatus.RUNNING:
					subtask.status = SubtaskStatus.PENDING

			plan.status = PlanStatus.RUNNING
			plan.cancel_reason = None
			plan.execution.started_at = _now()
			plan.execution.completed_at = None
			await self.store.save(plan)

			if self._session_active():
				if self.session.state == SessionState.CREATED:
					self.session.mark_running()
				plan.execution.checkpoints.append(self.session.checkpoint(f"before_plan_{plan_id}"))
				await self.store.save(plan)
		except BaseException:
			self._live.pop(plan_id, None)
			raise

		logger.info(f"Executing plan {plan_id} ({len(plan.subtasks)} subtask(s))")

		if blocking:
			return await self._run(plan, on_subtask_complete)

		task = asyncio.create_task(self._run(plan, on_subtask_complete))
		self._tasks[plan_id] = task
		task.add_done_callback(lambda _: self._tasks.pop(plan_id, None))
		return ExecutionHandle(plan_id=plan_id, task=task)

	async def wait(self, plan_id: str) -> ExecutionReport:
		"""Wait for a non-blocking execution; report the stored state otherwise."""
		task = self._tasks.get(plan_id)
		if task is not None:
			return await task
		return self._report(await self._load(plan_id))

	async def _run(
		self,
		plan: Plan,
		on_subtask_complete: Optional[Callable[[Subtask, Any], Any]],
	) -> ExecutionReport:
		subtasks_run = 0
		try:
			for subtask in order_subtasks(plan.subtasks):
				await self._adopt_external_cancel(plan)
				if plan.status == PlanStatus.CANCELLED:
					break
				if subtask.status not in (SubtaskStatus.PENDING, SubtaskStatus.BLOCKED):
					continue

				if not subtask.dependencies_met(plan.completed_ids()):
					subtask.status = SubtaskStatus.BLOCKED
					logger.info(f"Subtask {subtask.id} blocked on {subtask.dependencies}")
					await self.store.save(plan)
					continue

				await self._execute_subtask(plan, subtask)
				subtasks_run += 1

				if on_subtask_complete:
					await call_handler(on_subtask_complete, subtask, plan.results.get(subtask.id))
				await self._adopt_external_cancel(plan)
				await self.store.save(plan)

			if plan.status != PlanStatus.CANCELLED:
				plan.status = final_status(plan)
			plan.execution.current_subtask_id = None
			plan.execution.completed_at = _now()
			await self.store.save(plan)
		finally:
			self._live.pop(plan.id, None)

		completed = sum(1 for st in plan.subtasks if st.status == SubtaskStatus.COMPLETED)
		if self._session_active():
			self.session.add_event("plan_completed", {
				"plan_id": plan.id,
				"status": plan.status.value,
				"subtasks_completed": completed,
				"subtasks_total": len(plan.subtasks),
			})
			self.session.record_plan_outcome(plan.id, plan.status.value, len(plan.subtasks))

		logger.info(f"Plan {plan.id} finished: {plan.status.value} ({completed}/{len(plan.subtasks)} completed)")
		return self._report(plan, subtasks_run=subtasks_run)

	async def _adopt_external_cancel(self, plan: Plan):
		"""Pick up a cancellation written to the store by another process."""
		if plan.status == PlanStatus.CANCELLED:
			return
		stored = await self.store.get(plan.id)
		if stored is None or stored.status != PlanStatus.CANCELLED:
			return
		plan.status = PlanStatus.CANCELLED
		plan.cancel_reason = stored.cancel_reason
		for subtask in plan.subtasks:
			if subtask.status in (SubtaskStatus.PENDING, SubtaskStatus.BLOCKED):
				subtask.status = SubtaskStatus.SKIPPED
		logger.info(f"Plan {plan.id} was cancelled externally: {plan.cancel_reason}")

	async def _execute_subtask(self, plan: Plan, subtask: Subtask):
		"""Run one subtask, re-attempting retryable failures while attempts remain."""
		plan.execution.current_subtask_id = subtask.id
		policy = RetryPolicy(
			max_attempts=subtask.retry.max_attempts,
			backoff_seconds=subtask.retry.backoff_ms / 1000,
		)

		while True:
			subtask.status = SubtaskStatus.RUNNING
			subtask.started_at = _now()
			subtask.completed_at = None
			subtask.retry.current_attempt += 1
			await self.store.save(plan)

			result: Optional[WorkerResult] = None
			try:
				if self._session_active():
					plan.execution.checkpoints.append(self.session.checkpoint(f"before_subtask_{subtask.id}"))

				completed = plan.completed_ids()
				prior_results = {
					dep: plan.results[dep]
					for dep in subtask.dependencies
					if dep in completed and dep in plan.results
				}
				invocation = WorkerInvocation(
					subtask_id=subtask.id,
					plan_id=plan.id,
					session_id=plan.session_id,
					description=subtask.description,
					worker_type=subtask.worker_type,
					input=subtask.input,
					prior_results=prior_results,
				)
				result = await self.worker.run(invocation)
				error = None
				if result.error is not None:
					error = SubtaskError(
						message=result.error.message,
						code=result.error.code,
						retryable=result.error.retryable,
					)
				elif result.status == WorkerStatus.INVOCATION_CREATED:
					error = SubtaskError(
						message="Invocation created; awaiting external execution",
						code=INVOCATION_PENDING,
						retryable=True,
					)
				plan.results[subtask.id] = result.to_dict()
			except Exception as e:
				classification = classify_failure(e)
				logger.error(f"Subtask {subtask.id} raised: {e}")
				error = SubtaskError(
					message=str(e) or type(e).__name__,
					code=classification.code,
					retryable=classification.retryable,
				)
				plan.results[subtask.id] = {"status": "error", "error": error.model_dump()}

			subtask.completed_at = _now()
			subtask.duration_ms = _elapsed_ms(subtask.started_at, subtask.completed_at)

			if error is None:
				subtask.status = SubtaskStatus.COMPLETED
				subtask.last_error = None
				break

			subtask.status = SubtaskStatus.FAILED
			subtask.last_error = error
			await self._adopt_external_cancel(plan)

			if (
				error.code != INVOCATION_PENDING
				and error.retryable
				and subtask.retry.attempts_remaining > 0
				and plan.status != PlanStatus.CANCELLED
			):
				delay = policy.delay_for(subtask.retry.current_attempt)
				logger.info(
					f"Retrying subtask {subtask.id} in {delay:.1f}s "
					f"(attempt {subtask.retry.current_attempt}/{subtask.retry.max_attempts}): {error.message}"
				)
				await self.store.save(plan)
				if delay > 0:
					await asyncio.sleep(delay)
				continue
			break

		plan.execution.current_subtask_id = None

	# ------------------------------------------------------------------
	# Control
	# ------------------------------------------------------------------

	async def cancel(self, plan_id: str, reason: str = "User cancelled") -> dict[str, Any]:
		"""
		Cancel a running plan.

		Pending and blocked subtasks become skipped; completed ones are
		kept and a subtask already in flight finishes on its own.

		Raises:
			PlanConflictError: The plan is not running
		"""
		plan = await self._load(plan_id)
		if plan.status != PlanStatus.RUNNING:
			raise PlanConflictError(f"Plan is not running: {plan_id}", plan_id=plan_id, status=plan.status.value)

		plan.status = PlanStatus.CANCELLED
		plan.cancel_reason = reason
		plan.execution.completed_at = _now()
		for subtask in plan.subtasks:
			if subtask.status in (SubtaskStatus.PENDING, SubtaskStatus.BLOCKED):
				subtask.status = SubtaskStatus.SKIPPED
		await self.store.save(plan)

		completed = [st.id for st in plan.subtasks if st.status == SubtaskStatus.COMPLETED]
		if self._session_active():
			self.session.add_event("plan_cancelled", {
				"plan_id": plan_id,
				"reason": reason,
				"completed_subtasks": len(completed),
			})
			if plan_id not in self._live:
				self.session.record_plan_outcome(plan_id, plan.status.value, len(plan.subtasks))

		logger.info(f"Cancelled plan {plan_id}: {reason}")
		return {
			"status": PlanStatus.CANCELLED.value,
			"plan_id": plan_id,
			"reason": reason,
			"completed_subtasks": completed,
		}

	async def retry(self, plan_id: str, blocking: bool = True) -> ExecutionReport | ExecutionHandle:
		"""
		Reset failed subtasks that have attempts left (and blocked ones) and re-execute.

		Raises:
			PlanConflictError: The plan is running or nothing is retryable
		"""
		if plan_id in self._live:
			raise PlanConflictError(f"Plan already running: {plan_id}", plan_id=plan_id)

		plan = await self._load(plan_id)
		if plan.status == PlanStatus.RUNNING:
			raise PlanConflictError(f"Plan already running: {plan_id}", plan_id=plan_id)
		retryable = [
			st for st in plan.subtasks
			if st.status == SubtaskStatus.FAILED and st.retry.attempts_remaining > 0
		]
		if not retryable:
			raise PlanConflictError(f"No retryable subtasks in plan {plan_id}", plan_id=plan_id)

		retry_ids = {st.id for st in retryable}
		for subtask in plan.subtasks:
			if subtask.id in retry_ids or subtask.status == SubtaskStatus.BLOCKED:
				subtask.status = SubtaskStatus.PENDING
		plan.status = PlanStatus.PENDING
		await self.store.save(plan)

		logger.info(f"Retrying {len(retryable)} subtask(s) of plan {plan_id}")
		return await self.execute(plan_id, blocking=blocking)

	async def record_external_result(self, plan_id: str, subtask_id: str, result: dict[str, Any]) -> dict[str, Any]:
		"""
		Fold in the result of an invocation executed outside this process.

		A result whose status is "error"/"failed" marks the subtask failed;
		anything else completes it. A finished plan's status is recomputed.

		Raises:
			PlanNotFoundError, SubtaskNotFoundError
			PlanConflictError: The subtask is already completed
		"""
		plan = await self._load(plan_id)
		subtask = plan.get_subtask(subtask_id)
		if subtask is None:
			raise SubtaskNotFoundError(plan_id, subtask_id)
		if subtask.status == SubtaskStatus.COMPLETED:
			raise PlanConflictError(f"Subtask {subtask_id} is already completed", plan_id=plan_id, subtask_id=subtask_id)

		worker_result = self.worker.absorb(
			WorkerInvocation(
				subtask_id=subtask.id,
				plan_id=plan.id,
				session_id=plan.session_id,
				description=subtask.description,
				worker_type=subtask.worker_type,
				input=subtask.input,
			),
			result,
		)

		subtask.completed_at = _now()
		if subtask.started_at:
			subtask.duration_ms = _elapsed_ms(subtask.started_at, subtask.completed_at)
		plan.results[subtask.id] = worker_result.to_dict()

		if worker_result.ok:
			subtask.status = SubtaskStatus.COMPLETED
			subtask.last_error = None
		else:
			subtask.status = SubtaskStatus.FAILED
			subtask.last_error = SubtaskError(
				message=worker_result.error.message,
				code=worker_result.error.code,
				retryable=worker_result.error.retryable,
			)

		if plan.status in (PlanStatus.COMPLETED, PlanStatus.PARTIAL, PlanStatus.FAILED):
			plan.status = final_status(plan)
		await self.store.save(plan)

		logger.info(f"Recorded external result for {subtask_id} in plan {plan_id}: {subtask.status.value}")
		return await self.get_subtask_result(plan_id, subtask_id)

	async def rollback_plan(self, plan_id: str) -> str:
		"""
		Restore the session to the checkpoint taken before the plan started.

		Returns:
			The checkpoint ID rolled back to

		Raises:
			PlanConflictError: No session attached or no checkpoint recorded
			CheckpointNotFoundError: The checkpoint is unknown to the session
		"""
		plan = await self._load(plan_id)
		if self.session is None or self.session.record is None:
			raise PlanConflictError("Rollback requires an attached session", plan_id=plan_id)
		if plan.session_id and plan.session_id != self.session.id:
			raise PlanConflictError(
				f"Plan {plan_id} belongs to session {plan.session_id}",
				plan_id=plan_id,
				session_id=plan.session_id,
			)
		if not plan.execution.checkpoints:
			raise PlanConflictError(f"Plan {plan_id} has no checkpoint", plan_id=plan_id)

		checkpoint_id = plan.execution.checkpoints[0]
		self.session.rollback(checkpoint_id)
		logger.info(f"Rolled back session {self.session.id} to before plan {plan_id}")
		return checkpoint_id

	# ------------------------------------------------------------------
	# Queries
	# ------------------------------------------------------------------

	async def get_plan(self, plan_id: str) -> Plan:
		return await self._load(plan_id)

	async def get_status(self, plan_id: str) -> dict[str, Any]:
		plan = await self._load(plan_id)
		return {
			"plan_id": plan.id,
			"session_id": plan.session_id,
			"status": plan.status.value,
			"priority": plan.priority,
			"objective": plan.objective.description,
			"progress": plan.get_progress(),
			"subtasks": [
				{
					"id": st.id,
					"sequence": st.sequence,
					"status": st.status.value,
					"description": st.description[:100],
					"priority": st.priority,
					"worker_type": st.worker_type,
					"attempts": st.retry.current_attempt,
					"duration_ms": st.duration_ms,
					"last_error": st.last_error.message if st.last_error else None,
				}
				for st in plan.subtasks
			],
			"current_subtask": plan.execution.current_subtask_id,
			"started_at": plan.execution.started_at,
			"completed_at": plan.execution.completed_at,
			"cancel_reason": plan.cancel_reason,
		}

	async def get_subtask_result(self, plan_id: str, subtask_id: str) -> dict[str, Any]:
		plan = await self._load(plan_id)
		subtask = plan.get_subtask(subtask_id)
		if subtask is None:
			raise SubtaskNotFoundError(plan_id, subtask_id)
		return {
			"subtask_id": subtask_id,
			"status": subtask.status.value,
			"description": subtask.description,
			"result": plan.results.get(subtask_id),
			"last_error": subtask.last_error.model_dump() if subtask.last_error else None,
			"started_at": subtask.started_at,
			"completed_at": subtask.completed_at,
			"duration_ms": subtask.duration_ms,
			"attempts": subtask.retry.current_attempt,
		}

	async def list_plans(
		self,
		status: Optional[PlanStatus | str] = None,
		session_id: Optional[str] = None,
	) -> list[Plan]:
		return await self.store.list(status=status, session_id=session_id)

	async def cleanup(self, max_age_days: Optional[int] = None) -> int:
		"""Delete completed plans older than max_age_days; returns the count."""
		days = self.config.plan_retention_days if max_age_days is None else max_age_days
		deleted = await self.store.delete_completed_before(days)
		return len(deleted)
