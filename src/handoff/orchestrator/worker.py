"""
Worker Isolation Boundary - runs one subtask in a fresh, stateless worker.

A worker sees exactly one WorkerInvocation: its task, its input and the
results of the subtasks it depends on. Everything it reports back flows
through WorkerResult; the runner folds tracked files, issues and findings
into the session so later invocations can see them.

Modes:
- SIMULATED: canned results per worker type, for dry runs and tests
- LIVE: a caller-supplied executor receives the rendered prompt; without
  an executor the runner returns an invocation request for the caller
  to execute and report back
"""

import asyncio
import json
import logging
import os
import shlex
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Optional

from ..errors import ExecutionError, TerminalError
from ..retry import classify_failure

if TYPE_CHECKING:
	from ..session.context import SessionContext

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 300.0
PRIOR_RESULT_LIMIT = 1000

TRACKING_OPERATIONS = ("start_work", "track_file", "track_issue", "complete_work")


class WorkerMode(str, Enum):
	"""How the runner executes invocations."""
	SIMULATED = "simulated"
	LIVE = "live"


class WorkerStatus(str, Enum):
	SUCCESS = "success"
	ERROR = "error"
	INVOCATION_CREATED = "invocation_created"


@dataclass
class ExecutorOptions:
	"""Options passed to a live executor alongside the prompt."""
	worker_type: str
	session_id: Optional[str]
	timeout: float


Executor = Callable[[str, ExecutorOptions], Awaitable[dict[str, Any]]]


@dataclass
class WorkerInvocation:
	"""The complete and only input a worker receives."""
	subtask_id: str
	plan_id: str
	session_id: Optional[str]
	description: str
	worker_type: str = "general"
	input: dict[str, Any] = field(default_factory=dict)
	prior_results: dict[str, Any] = field(default_factory=dict)


@dataclass
class WorkerError:
	"""Normalized worker failure."""
	message: str
	code: str = "EXECUTION_ERROR"
	retryable: bool = False

	def to_dict(self) -> dict[str, Any]:
		return asdict(self)


@dataclass
class WorkerResult:
	"""What came back from one invocation."""
	subtask_id: str
	status: WorkerStatus
	mode: WorkerMode
	data: dict[str, Any] = field(default_factory=dict)
	error: Optional[WorkerError] = None
	tracking_warnings: list[str] = field(default_factory=list)
	started_at: str = ""
	completed_at: str = ""

	@property
	def ok(self) -> bool:
		return self.status == WorkerStatus.SUCCESS

	def to_dict(self) -> dict[str, Any]:
		result = {
			**self.data,
			"status": self.status.value,
			"subtask_id": self.subtask_id,
			"mode": self.mode.value,
			"started_at": self.started_at,
			"completed_at": self.completed_at,
		}
		if self.error:
			result["error"] = self.error.to_dict()
		if self.tracking_warnings:
			result["tracking_warnings"] = list(self.tracking_warnings)
		return result


def _now() -> str:
	return datetime.now().isoformat()


def _list(data: dict[str, Any], key: str) -> list:
	value = data.get(key)
	return value if isinstance(value, list) else []


def canned_result(invocation: WorkerInvocation) -> dict[str, Any]:
	"""Deterministic simulated output for a worker type."""
	worker_type = invocation.worker_type or "general"

	if worker_type == "reviewer":
		return {
			"status": "success",
			"type": "review",
			"findings": [
				{"type": "potential_issue", "file": "src/example.py", "description": "Simulated finding 1"},
				{"type": "refactor_suggestion", "file": "src/utils.py", "description": "Simulated finding 2"},
			],
			"summary": {"total_findings": 2, "critical": 0, "high": 1, "medium": 1, "low": 0},
		}

	if worker_type == "issue-creator":
		return {
			"status": "success",
			"type": "issues",
			"issues_created": ["GOO-100", "GOO-101"],
			"duplicates_skipped": 0,
			"summary": {"created": 2, "skipped": 0},
		}

	if worker_type == "auto-fixer":
		return {
			"status": "success",
			"type": "fix",
			"files_modified": ["src/example.py"],
			"issues_fixed": ["GOO-100"],
			"verified": True,
			"summary": {"fixed": 1, "failed": 0, "skipped": 0},
		}

	return {
		"status": "success",
		"type": "general",
		"output": f"Completed: {invocation.description[:50]}",
		"summary": {"completed": True},
	}


def check_tracking_compliance(data: dict[str, Any]) -> list[str]:
	"""Warnings for a successful result that shows no evidence of tracking."""
	tracking = data.get("tracking") if isinstance(data.get("tracking"), dict) else {}
	has_files = bool(_list(data, "files_modified") or _list(data, "files_created") or tracking.get("files"))
	has_issues = bool(_list(data, "issues_created") or _list(data, "issues_fixed") or tracking.get("issues"))
	has_work_unit = bool(data.get("work_unit") or tracking.get("work_completed"))

	warnings = []
	if data.get("status", "success") == "success":
		if not has_files and not has_issues:
			warnings.append("No files or issues tracked; the worker may have skipped the tracking operations.")
		if not has_work_unit:
			warnings.append("No completed work unit reported; the worker may not have called complete_work.")

	output = data.get("output")
	if isinstance(output, str) and ("Edit" in output or "Write" in output) and not has_files:
		warnings.append("Output suggests file modifications but no files were tracked.")
	return warnings


def _reported_error(data: dict[str, Any]) -> tuple[ExecutionError, Optional[str]]:
	"""Error and code from a result whose status says the worker failed."""
	reported = data.get("error")
	if isinstance(reported, dict):
		return ExecutionError(reported.get("message") or "Worker reported failure"), reported.get("code")
	return ExecutionError(str(reported or "Worker reported failure")), None


def _render_prior(result: Any) -> list[str]:
	if isinstance(result, (dict, list)):
		return ["```json", json.dumps(result, indent=2, default=str)[:PRIOR_RESULT_LIMIT], "```"]
	return [str(result)[:PRIOR_RESULT_LIMIT]]


def build_prompt(invocation: WorkerInvocation) -> str:
	"""
	Render the prompt a live worker receives.

	Sections: the task, prior results of its dependencies (each truncated
	to 1000 characters), the worker type, session identifiers, the
	tracking operations it must call and the report format.
	"""
	parts = ["## Task", "", invocation.description, ""]

	if invocation.prior_results:
		parts.extend(["## Prior Results", ""])
		for dep_id, result in invocation.prior_results.items():
			parts.extend([f"### From {dep_id}", ""])
			parts.extend(_render_prior(result))
			parts.append("")

	if invocation.input:
		parts.extend(["## Input", "", "```json", json.dumps(invocation.input, indent=2, default=str), "```", ""])

	parts.extend([
		"## Worker Type",
		"",
		f"Execute as: {invocation.worker_type}",
		"",
		"## Session Context",
		"",
		f"- Session ID: {invocation.session_id}",
		f"- Plan ID: {invocation.plan_id}",
		f"- Subtask ID: {invocation.subtask_id}",
		"",
		"## Required: Tracking",
		"",
		"You have no memory of earlier steps and nothing you do is recorded unless you track it.",
		"",
		f"1. `start_work` first: type \"{invocation.worker_type}\", session \"{invocation.session_id}\", "
		f"subtask \"{invocation.subtask_id}\".",
		"2. `track_file` for every file you create, modify or delete (action: created / modified / deleted).",
		"3. `track_issue` for every issue you create, fix or skip (action: created / fixed / skipped).",
		"4. `complete_work` last, before returning, with a short summary.",
		"",
		"## Report Format",
		"",
		"Finish with a JSON object containing:",
		"- status: success / partial / failed",
		"- files_modified and files_created: paths you touched",
		"- issues_created and issues_fixed: issue IDs",
		"- findings: anything the next steps should know about",
		"",
	])
	return "\n".join(parts)


class CommandExecutor:
	"""
	Live executor that runs a command with the prompt on stdin.

	The command's stdout is parsed as a JSON object when possible and
	otherwise returned as `output`. The session ID and worker type are
	exported as HANDOFF_SESSION_ID / HANDOFF_WORKER_TYPE.
	"""

	def __init__(self, command: str | list[str], cwd: Optional[Path] = None):
		self.argv = shlex.split(command) if isinstance(command, str) else list(command)
		if not self.argv:
			raise ValueError("CommandExecutor requires a non-empty command")
		self.cwd = cwd

	async def __call__(self, prompt: str, options: ExecutorOptions) -> dict[str, Any]:
		env = os.environ.copy()
		env["HANDOFF_WORKER_TYPE"] = options.worker_type
		if options.session_id:
			env["HANDOFF_SESSION_ID"] = options.session_id

		logger.info(f"Running worker command {self.argv[0]} ({len(prompt)} char prompt)")
		try:
			process = await asyncio.create_subprocess_exec(
				*self.argv,
				stdin=asyncio.subprocess.PIPE,
				stdout=asyncio.subprocess.PIPE,
				stderr=asyncio.subprocess.PIPE,
				cwd=self.cwd,
				env=env,
			)
		except FileNotFoundError:
			raise TerminalError(f"Worker command not found: {self.argv[0]}", command=self.argv[0])

		try:
			stdout, stderr = await asyncio.wait_for(
				process.communicate(prompt.encode()),
				timeout=options.timeout,
			)
		except asyncio.TimeoutError:
			process.kill()
			await process.wait()
			raise TimeoutError(f"Worker command timed out after {options.timeout} seconds")

		stdout_text = stdout.decode() if stdout else ""
		stderr_text = stderr.decode() if stderr else ""

		if process.returncode != 0:
			message = stderr_text.strip() or f"Exit code {process.returncode}"
			raise ExecutionError(f"Worker command failed: {message}", returncode=process.returncode)

		try:
			parsed = json.loads(stdout_text)
		except json.JSONDecodeError:
			parsed = None
		if isinstance(parsed, dict):
			return parsed
		return {"status": "success", "output": stdout_text}


class WorkerRunner:
	"""
	Runs invocations and reports them into the session.

	Usage:
		runner = WorkerRunner(mode=WorkerMode.LIVE, executor=my_executor, session=session)
		result = await runner.run(invocation)
	"""

	def __init__(
		self,
		mode: WorkerMode = WorkerMode.SIMULATED,
		executor: Optional[Executor] = None,
		timeout: float = DEFAULT_TIMEOUT,
		simulated_delay: float = 0.0,
		session: Optional["SessionContext"] = None,
		canned_results: Optional[dict[str, dict[str, Any]]] = None,
	):
		self.mode = WorkerMode(mode)
		self.executor = executor
		self.timeout = timeout
		self.simulated_delay = simulated_delay
		self.session = session
		self.canned_results = canned_results or {}

	async def run(self, invocation: WorkerInvocation) -> WorkerResult:
		"""
		Execute one invocation. Worker failures are returned, not raised.
		"""
		started_at = _now()
		invocation_id = self._record_start(invocation)

		try:
			if self.mode == WorkerMode.SIMULATED:
				data = await self._run_simulated(invocation)
			else:
				data = await self._run_live(invocation)
		except Exception as e:
			return self._failed(invocation, invocation_id, e, started_at)

		status = data.get("status", "success")

		if status == WorkerStatus.INVOCATION_CREATED.value:
			if self.session is not None and invocation_id:
				self.session.record_invocation_result(invocation_id, {"status": status}, status="pending")
			return WorkerResult(
				subtask_id=invocation.subtask_id,
				status=WorkerStatus.INVOCATION_CREATED,
				mode=self.mode,
				data=data,
				started_at=started_at,
				completed_at=_now(),
			)

		if status in ("error", "failed"):
			error, code = _reported_error(data)
			return self._failed(invocation, invocation_id, error, started_at, code=code, data=data)

		warnings = check_tracking_compliance(data) if self.mode == WorkerMode.LIVE else []
		if warnings:
			logger.warning(f"Tracking warnings for subtask {invocation.subtask_id}: {warnings}")

		result = WorkerResult(
			subtask_id=invocation.subtask_id,
			status=WorkerStatus.SUCCESS,
			mode=self.mode,
			data=data,
			tracking_warnings=warnings,
			started_at=started_at,
			completed_at=_now(),
		)
		self._record_success(invocation, invocation_id, result)
		return result

	def absorb(self, invocation: WorkerInvocation, data: dict[str, Any]) -> WorkerResult:
		"""
		Fold in a result the caller obtained by executing an invocation request.

		Tracked files, issues and findings are recorded exactly as if the
		worker had run here.
		"""
		started_at = _now()
		status = data.get("status", "success")
		if status in ("error", "failed"):
			error, code = _reported_error(data)
			return self._failed(invocation, None, error, started_at, code=code, data=data)

		warnings = check_tracking_compliance(data)
		if warnings:
			logger.warning(f"Tracking warnings for subtask {invocation.subtask_id}: {warnings}")

		result = WorkerResult(
			subtask_id=invocation.subtask_id,
			status=WorkerStatus.SUCCESS,
			mode=WorkerMode.LIVE,
			data={**data, "status": WorkerStatus.SUCCESS.value},
			tracking_warnings=warnings,
			started_at=started_at,
			completed_at=_now(),
		)
		self._record_success(invocation, None, result)
		return result

	async def _run_simulated(self, invocation: WorkerInvocation) -> dict[str, Any]:
		if self.simulated_delay > 0:
			await asyncio.sleep(self.simulated_delay)
		canned = self.canned_results.get(invocation.worker_type)
		if canned is not None:
			return dict(canned)
		return canned_result(invocation)

	async def _run_live(self, invocation: WorkerInvocation) -> dict[str, Any]:
		prompt = build_prompt(invocation)

		if self.executor is None:
			return {
				"status": WorkerStatus.INVOCATION_CREATED.value,
				"requires_execution": True,
				"invocation": {
					"worker_type": invocation.worker_type,
					"prompt": prompt,
					"session_id": invocation.session_id,
					"plan_id": invocation.plan_id,
					"subtask_id": invocation.subtask_id,
					"input": invocation.input,
					"tracking_required": True,
					"required_operations": list(TRACKING_OPERATIONS),
				},
				"message": (
					"Execute this invocation with the provided prompt and report the result "
					"back with record_external_result."
				),
				"execution_hint": f"Run a {invocation.worker_type} worker with the prompt.",
			}

		options = ExecutorOptions(
			worker_type=invocation.worker_type,
			session_id=invocation.session_id,
			timeout=self.timeout,
		)
		try:
			data = await asyncio.wait_for(self.executor(prompt, options), timeout=self.timeout)
		except asyncio.TimeoutError:
			raise TimeoutError(f"Worker timed out after {self.timeout} seconds")

		if not isinstance(data, dict):
			data = {"status": "success", "output": data}
		return data

	def _record_start(self, invocation: WorkerInvocation) -> Optional[str]:
		if self.session is None:
			return None
		invocation_id = self.session.record_invocation(
			invocation.worker_type,
			{"subtask_id": invocation.subtask_id, "plan_id": invocation.plan_id, "input": invocation.input},
		)
		self.session.add_event("worker_started", {
			"subtask_id": invocation.subtask_id,
			"worker_type": invocation.worker_type,
			"description": invocation.description[:100],
		})
		return invocation_id

	def _record_success(self, invocation: WorkerInvocation, invocation_id: Optional[str], result: WorkerResult):
		if self.session is None:
			return
		data = result.data
		meta = {"subtask_id": invocation.subtask_id}

		self.session.track_files([str(p) for p in _list(data, "files_created")], "created", **meta)
		self.session.track_files([str(p) for p in _list(data, "files_modified")], "modified", **meta)
		self.session.track_issues([str(i) for i in _list(data, "issues_created")], "created")
		self.session.track_issues([str(i) for i in _list(data, "issues_fixed")], "fixed")
		self.session.track_findings([f for f in _list(data, "findings") if isinstance(f, dict)])

		if invocation_id:
			self.session.record_invocation_result(invocation_id, data, status="success")
		self.session.add_event("worker_completed", {
			"subtask_id": invocation.subtask_id,
			"status": result.status.value,
			"tracking_warnings": len(result.tracking_warnings),
		})

	def _failed(
		self,
		invocation: WorkerInvocation,
		invocation_id: Optional[str],
		error: BaseException,
		started_at: str,
		code: Optional[str] = None,
		data: Optional[dict[str, Any]] = None,
	) -> WorkerResult:
		classification = classify_failure(error, code=code)
		worker_error = WorkerError(
			message=str(error) or type(error).__name__,
			code=classification.code,
			retryable=classification.retryable,
		)
		logger.warning(
			f"Worker for subtask {invocation.subtask_id} failed "
			f"({worker_error.code}, retryable={worker_error.retryable}): {worker_error.message}"
		)

		if self.session is not None:
			self.session.add_event("worker_failed", {
				"subtask_id": invocation.subtask_id,
				"error": worker_error.message,
				"code": worker_error.code,
			})
			self.session.record_error(error, subtask_id=invocation.subtask_id)
			if invocation_id:
				self.session.record_invocation_result(invocation_id, worker_error.to_dict(), status="failed")

		return WorkerResult(
			subtask_id=invocation.subtask_id,
			status=WorkerStatus.ERROR,
			mode=self.mode,
			data=data or {},
			error=worker_error,
			started_at=started_at,
			completed_at=_now(),
		)
