"""
runway.orchestration.scheduler - Job Scheduling & Execution Core
==================================================================

The Scheduler turns a PipelineGraph plus a TriggerEvent into a Run and
drives every job of it to a terminal state.

Architecture (one coordinator task per run):

    ┌──────────────────────────── _RunCoordinator ─────────────────────────┐
    │ owns: job states, dependency counters, runnable queue, group counts   │
    │                                                                       │
    │   loop:  message = await queue.get()                                  │
    │          handle(message)      → transitions → RunLedger.append()      │
    │          dispatch()           → start workers while slots are free    │
    └───────────────▲──────────────────────────────┬────────────────────────┘
                    │ completion / retry / cancel  │ create_task(worker)
                    │ messages (asyncio.Queue)     ▼
    ┌───────────────┴──────────────────────────────────────────────────────┐
    │ worker task per running job: steps → Executor, gates → GateEvaluator,  │
    │ outputs → ArtifactStore; STEP/LOG/GATE/ARTIFACT events → RunLedger     │
    └───────────────────────────────────────────────────────────────────────┘

Job Lifecycle:

    PENDING ──→ BLOCKED ──→ RUNNABLE ──→ RUNNING ──→ SUCCEEDED
       │           │  ▲                     │  │
       │           │  └──── retry backoff ──┘  └──→ FAILED
       │           └──→ SKIPPED (required dependency failed)
       └──→ SKIPPED (trigger mismatch)
    any non-terminal ──→ CANCELLED (cancel request, upstream cancelled)

Readiness Rule:
    A dependency is satisfied when it SUCCEEDED, or when it FAILED/SKIPPED
    and that dependency allows failure. Dependencies skipped by their
    trigger are not counted at all. A dependency that was CANCELLED
    cancels its dependents; any other failure skips them.

Dispatch Rule:
    At most ``max_parallel_jobs`` jobs run at once. RUNNABLE jobs are
    taken in FIFO order; a job whose concurrency group is at its limit is
    passed over (it keeps its place) and the next one is tried.

Usage:
    >>> scheduler = Scheduler(executor, store, repository)
    >>> handle = await scheduler.start_run(graph, TriggerEvent(branch="main"))
    >>> snapshot = await handle.wait()
    >>> snapshot.status, snapshot.exit_code
    (<RunStatus.SUCCEEDED: 'succeeded'>, 0)
"""

from __future__ import annotations

import asyncio
import functools
from collections import Counter, deque
from collections.abc import AsyncIterator
from typing import Any, Optional, Union
from uuid import uuid4

import structlog
from pydantic import BaseModel, Field

from runway.core.config import SchedulerConfig
from runway.core.enums import (
    JOB_TRANSITIONS,
    FailureReason,
    JobState,
    RunEventType,
    RunStatus,
    StepKind,
)
from runway.core.exceptions import (
    ArtifactConflictError,
    ArtifactError,
    ArtifactNotFoundError,
    CancellationTimeout,
    GateFailure,
    JobError,
    JobTimeoutError,
    RunError,
    RunwayError,
    StepFailure,
    WorkerLostError,
)
from runway.core.models import JobDefinition, PipelineGraph, TriggerEvent
from runway.core.state import RunEvent, RunSnapshot
from runway.infrastructure.artifact_store import ArtifactStore, RetentionPolicy
from runway.integrations.executor.base import Executor
from runway.orchestration.gate_evaluator import GateEvaluator, GateResult
from runway.orchestration.run_ledger import RunLedger, RunRepository


# =============================================================================
# Logger
# =============================================================================
logger = structlog.get_logger()

_ACTIVE_STATES = frozenset({
    JobState.PENDING, JobState.BLOCKED, JobState.RUNNABLE, JobState.RUNNING,
})


# =============================================================================
# Coordinator Messages
# =============================================================================
class _AttemptOutcome(BaseModel):
    """What a worker reports for one attempt of a job."""

    succeeded: bool
    reason: Optional[FailureReason] = None
    message: Optional[str] = None


class _WorkerDone(BaseModel):
    """Posted by a worker task's done-callback."""

    model_config = {"arbitrary_types_allowed": True}

    job: str
    attempt: int
    outcome: Optional[_AttemptOutcome] = None
    error: Optional[BaseException] = None
    cancelled: bool = False


class _RetryReady(BaseModel):
    """Posted when a job's retry backoff has elapsed."""

    job: str
    attempt: int


class _CancelRequest(BaseModel):
    """Posted by RunHandle.cancel()."""

    reason: Optional[str] = Field(default=None)


_Message = Union[_WorkerDone, _RetryReady, _CancelRequest]


def _failed(reason: FailureReason, message: str) -> _AttemptOutcome:
    return _AttemptOutcome(succeeded=False, reason=reason, message=message)


_ERROR_REASONS: tuple[tuple[type[RunwayError], FailureReason], ...] = (
    (StepFailure, FailureReason.STEP_FAILURE),
    (GateFailure, FailureReason.GATE_FAILURE),
    (JobTimeoutError, FailureReason.JOB_TIMEOUT),
    (WorkerLostError, FailureReason.WORKER_LOST),
    (ArtifactConflictError, FailureReason.ARTIFACT_CONFLICT),
    (ArtifactNotFoundError, FailureReason.MISSING_ARTIFACT),
)


def _reason_for(error: RunwayError) -> Optional[FailureReason]:
    for error_type, reason in _ERROR_REASONS:
        if isinstance(error, error_type):
            return reason
    return None


# =============================================================================
# Run Coordinator
# =============================================================================
class _RunCoordinator:
    """Drives one run. All job state lives here and is touched only by the
    coordinator task; workers communicate through ``_queue``."""

    def __init__(
        self,
        run_id: str,
        graph: PipelineGraph,
        event: TriggerEvent,
        ledger: RunLedger,
        executor: Executor,
        store: ArtifactStore,
        gates: GateEvaluator,
        config: SchedulerConfig,
        retention: RetentionPolicy,
    ) -> None:
        self._run_id = run_id
        self._graph = graph
        self._event = event
        self._ledger = ledger
        self._executor = executor
        self._store = store
        self._gates = gates
        self._config = config
        self._retention = retention

        self._states: dict[str, JobState] = {name: JobState.PENDING for name in graph.jobs}
        self._reasons: dict[str, Optional[FailureReason]] = {}
        self._remaining: dict[str, int] = {}
        self._attempts: Counter[str] = Counter()
        self._runnable: deque[str] = deque()
        self._running: dict[str, asyncio.Task[_AttemptOutcome]] = {}
        self._abandoned: set[asyncio.Task[_AttemptOutcome]] = set()
        self._group_running: Counter[str] = Counter()
        self._retry_timers: dict[str, asyncio.TimerHandle] = {}
        self._topo_index = {name: i for i, name in enumerate(graph.topological_order)}

        self._queue: asyncio.Queue[_Message] = asyncio.Queue()
        self._cancel_requested = False
        self._cancel_deadline: Optional[float] = None

        self._logger = logger.bind(component="scheduler", run_id=run_id)

    # =========================================================================
    # Public (called from outside the coordinator task)
    # =========================================================================

    def request_cancel(self, reason: Optional[str] = None) -> None:
        self._queue.put_nowait(_CancelRequest(reason=reason))

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_requested

    # =========================================================================
    # Main loop
    # =========================================================================

    async def run(self) -> RunSnapshot:
        loop = asyncio.get_running_loop()
        self._record(
            RunEventType.RUN_STARTED,
            data={
                "pipeline": self._graph.name,
                "event_type": self._event.event_type.value,
                "branch": self._event.branch,
                "jobs": len(self._graph.jobs),
            },
        )
        self._logger.info(
            "run_started",
            pipeline=self._graph.name,
            branch=self._event.branch,
            event_type=self._event.event_type.value,
            jobs=len(self._graph.jobs),
        )

        try:
            self._initialize()
            self._dispatch()
            while not self._finished():
                timeout = None
                if self._cancel_deadline is not None:
                    timeout = max(self._cancel_deadline - loop.time(), 0.0)
                try:
                    message = await asyncio.wait_for(self._queue.get(), timeout)
                except asyncio.TimeoutError:
                    self._force_cancel_running()
                    continue
                self._handle(message)
                self._dispatch()
        finally:
            self._release_resources()

        return await self._complete()

    def _finished(self) -> bool:
        return not any(state in _ACTIVE_STATES for state in self._states.values())

    def _handle(self, message: _Message) -> None:
        if isinstance(message, _WorkerDone):
            self._on_worker_done(message)
        elif isinstance(message, _RetryReady):
            self._on_retry_ready(message)
        elif isinstance(message, _CancelRequest):
            self._on_cancel(message.reason)

    # =========================================================================
    # Initialization
    # =========================================================================

    def _initialize(self) -> None:
        order = self._graph.topological_order
        for name in order:
            job = self._graph.jobs[name]
            if not job.trigger.matches(self._event):
                self._transition(
                    name,
                    JobState.SKIPPED,
                    reason=FailureReason.TRIGGER_MISMATCH,
                    message=(
                        f"trigger does not match {self._event.event_type.value} "
                        f"on {self._event.branch}"
                    ),
                )

        for name in order:
            if self._states[name] != JobState.PENDING:
                continue
            job = self._graph.jobs[name]
            self._remaining[name] = sum(
                1 for dependency in set(job.depends_on)
                if self._states[dependency] != JobState.SKIPPED
            )
            self._transition(name, JobState.BLOCKED)

        for name in order:
            if self._states[name] == JobState.BLOCKED and self._remaining[name] == 0:
                self._make_runnable(name)

    # =========================================================================
    # Dispatch
    # =========================================================================

    def _dispatch(self) -> None:
        if self._cancel_requested:
            return
        waiting: deque[str] = deque()
        while self._runnable:
            name = self._runnable.popleft()
            if len(self._running) >= self._config.max_parallel_jobs or not self._group_has_room(name):
                waiting.append(name)
                continue
            self._start_worker(name)
        self._runnable = waiting

    def _group_has_room(self, name: str) -> bool:
        group = self._graph.jobs[name].concurrency_group
        limit = self._graph.group_limit(group)
        return limit is None or self._group_running[group] < limit

    def _make_runnable(self, name: str) -> None:
        self._transition(name, JobState.RUNNABLE)
        self._runnable.append(name)

    def _start_worker(self, name: str) -> None:
        job = self._graph.jobs[name]
        self._attempts[name] += 1
        attempt = self._attempts[name]
        self._transition(name, JobState.RUNNING, attempt=attempt)

        task = asyncio.create_task(
            self._work(job, attempt), name=f"runway-{self._run_id}-{name}-{attempt}",
        )
        task.add_done_callback(functools.partial(self._post_worker_done, name, attempt))
        self._running[name] = task
        if job.concurrency_group:
            self._group_running[job.concurrency_group] += 1

    def _post_worker_done(self, name: str, attempt: int, task: asyncio.Task) -> None:
        self._abandoned.discard(task)
        if task.cancelled():
            message = _WorkerDone(job=name, attempt=attempt, cancelled=True)
        elif task.exception() is not None:
            message = _WorkerDone(job=name, attempt=attempt, error=task.exception())
        else:
            message = _WorkerDone(job=name, attempt=attempt, outcome=task.result())
        self._queue.put_nowait(message)

    def _release_slot(self, name: str) -> bool:
        task = self._running.pop(name, None)
        if task is None:
            return False
        group = self._graph.jobs[name].concurrency_group
        if group:
            self._group_running[group] -= 1
        return True

    # =========================================================================
    # Completion
    # =========================================================================

    def _on_worker_done(self, message: _WorkerDone) -> None:
        name = message.job
        if message.attempt != self._attempts[name] or not self._release_slot(name):
            # Late report from a worker that was already force-cancelled.
            return

        if self._cancel_requested:
            self._transition(
                name,
                JobState.CANCELLED,
                reason=FailureReason.CANCELLED,
                message="cancelled while running",
                attempt=message.attempt,
            )
            self._resolve_dependents(name)
            return

        if message.cancelled:
            outcome = _failed(FailureReason.WORKER_LOST, "worker task was cancelled unexpectedly")
        elif message.error is not None:
            lost = WorkerLostError(
                message=f"{type(message.error).__name__}: {message.error}",
                job=name,
                run_id=self._run_id,
            )
            self._logger.error("worker_lost", attempt=message.attempt, **lost.to_dict())
            outcome = _failed(FailureReason.WORKER_LOST, lost.message)
        else:
            outcome = message.outcome

        if outcome.succeeded:
            self._transition(name, JobState.SUCCEEDED, attempt=message.attempt)
            self._resolve_dependents(name)
            return

        job = self._graph.jobs[name]
        if outcome.reason.is_retryable and job.retry.allows_another(message.attempt):
            self._schedule_retry(job, message.attempt, outcome)
            return

        self._transition(
            name,
            JobState.FAILED,
            reason=outcome.reason,
            message=outcome.message,
            attempt=message.attempt,
        )
        self._resolve_dependents(name)

    def _schedule_retry(self, job: JobDefinition, attempt: int, outcome: _AttemptOutcome) -> None:
        delay = job.retry.calculate_delay(attempt)
        self._transition(
            job.name,
            JobState.BLOCKED,
            reason=outcome.reason,
            message=f"attempt {attempt} failed ({outcome.message}); retrying in {delay:.2f}s",
            attempt=attempt,
        )
        self._logger.warning(
            "job_retry_scheduled",
            job=job.name,
            attempt=attempt,
            reason=outcome.reason.value,
            delay_seconds=round(delay, 3),
        )
        loop = asyncio.get_running_loop()
        self._retry_timers[job.name] = loop.call_later(
            delay, self._queue.put_nowait, _RetryReady(job=job.name, attempt=attempt),
        )

    def _on_retry_ready(self, message: _RetryReady) -> None:
        self._retry_timers.pop(message.job, None)
        if self._cancel_requested or self._states[message.job] != JobState.BLOCKED:
            return
        self._make_runnable(message.job)

    def _resolve_dependents(self, name: str) -> None:
        """Propagate a terminal job to its direct dependents, cascading."""
        pending = deque([name])
        while pending:
            finished = pending.popleft()
            finished_state = self._states[finished]
            tolerated = self._graph.jobs[finished].allow_failure and finished_state in (
                JobState.FAILED, JobState.SKIPPED,
            )
            dependents = sorted(
                self._graph.dependents.get(finished, ()), key=self._topo_index.__getitem__,
            )
            for dependent in dependents:
                if self._states[dependent] != JobState.BLOCKED:
                    continue
                if finished_state == JobState.SUCCEEDED or tolerated:
                    self._remaining[dependent] -= 1
                    if self._remaining[dependent] == 0:
                        self._make_runnable(dependent)
                    continue
                if finished_state == JobState.CANCELLED:
                    self._transition(
                        dependent,
                        JobState.CANCELLED,
                        reason=FailureReason.UPSTREAM_CANCELLED,
                        message=f"dependency '{finished}' was cancelled",
                    )
                else:
                    self._transition(
                        dependent,
                        JobState.SKIPPED,
                        reason=FailureReason.UPSTREAM_FAILED,
                        message=f"dependency '{finished}' {finished_state.value}",
                    )
                pending.append(dependent)

    # =========================================================================
    # Cancellation
    # =========================================================================

    def _on_cancel(self, reason: Optional[str]) -> None:
        if self._cancel_requested:
            return
        self._cancel_requested = True
        self._record(RunEventType.CANCEL_REQUESTED, message=reason or "cancel requested")
        self._logger.info("run_cancel_requested", reason=reason, running=list(self._running))

        for handle in self._retry_timers.values():
            handle.cancel()
        self._retry_timers.clear()
        self._runnable.clear()

        for name in self._graph.topological_order:
            if self._states[name] in (JobState.PENDING, JobState.BLOCKED, JobState.RUNNABLE):
                self._transition(
                    name,
                    JobState.CANCELLED,
                    reason=FailureReason.CANCELLED,
                    message=reason or "cancel requested",
                )

        for task in self._running.values():
            task.cancel()
        if self._running:
            loop = asyncio.get_running_loop()
            self._cancel_deadline = loop.time() + self._config.cancellation_grace_seconds

    def _force_cancel_running(self) -> None:
        grace = self._config.cancellation_grace_seconds
        for name in list(self._running):
            task = self._running[name]
            self._release_slot(name)
            self._abandoned.add(task)
            timeout = CancellationTimeout(
                message=f"worker did not stop within {grace:g}s of cancellation",
                job=name,
                grace_seconds=grace,
                run_id=self._run_id,
            )
            self._logger.warning("job_cancellation_timeout", **timeout.to_dict())
            self._transition(
                name,
                JobState.CANCELLED,
                reason=FailureReason.CANCELLATION_TIMEOUT,
                message=timeout.message,
                attempt=self._attempts[name],
            )
        self._cancel_deadline = None

    def _release_resources(self) -> None:
        for handle in self._retry_timers.values():
            handle.cancel()
        self._retry_timers.clear()
        for task in self._running.values():
            task.cancel()

    # =========================================================================
    # Completion of the run
    # =========================================================================

    def _final_status(self) -> RunStatus:
        if self._cancel_requested:
            return RunStatus.CANCELLED
        for name, state in self._states.items():
            job = self._graph.jobs[name]
            if state == JobState.SUCCEEDED or job.allow_failure:
                continue
            if state == JobState.SKIPPED and self._reasons.get(name) == FailureReason.TRIGGER_MISMATCH:
                continue
            return RunStatus.FAILED
        return RunStatus.SUCCEEDED

    async def _complete(self) -> RunSnapshot:
        status = self._final_status()
        try:
            await self._store.retain(self._run_id, self._retention)
        except ArtifactError as e:
            self._logger.warning("artifact_retention_failed", **e.to_dict())

        counts = Counter(state.value for state in self._states.values())
        self._record(
            RunEventType.RUN_COMPLETED,
            data={"status": status.value, "exit_code": status.exit_code, "jobs": dict(counts)},
        )
        self._logger.info(
            "run_completed",
            status=status.value,
            exit_code=status.exit_code,
            **{f"jobs_{state}": count for state, count in counts.items()},
        )
        # Outcomes live on in the ledger's GATE_EVALUATED events.
        self._gates.clear_run(self._run_id)
        return self._ledger.snapshot()

    # =========================================================================
    # Worker (runs in its own task)
    # =========================================================================

    async def _work(self, job: JobDefinition, attempt: int) -> _AttemptOutcome:
        try:
            if job.timeout_seconds is None:
                return await self._execute_job(job, attempt)
            try:
                return await asyncio.wait_for(
                    self._execute_job(job, attempt), job.timeout_seconds,
                )
            except asyncio.TimeoutError:
                raise JobTimeoutError(
                    message=f"job exceeded its timeout of {job.timeout_seconds:g}s",
                    job=job.name,
                    timeout_seconds=job.timeout_seconds,
                    run_id=self._run_id,
                ) from None
        except (JobError, ArtifactError) as e:
            reason = _reason_for(e)
            if reason is None:
                raise
            return _failed(reason, e.message)

    async def _execute_job(self, job: JobDefinition, attempt: int) -> _AttemptOutcome:
        env = self._job_env(job, attempt)
        produced: dict[str, bytes] = {}

        inputs: dict[str, bytes] = {}
        for artifact in job.inputs:
            inputs[artifact] = await self._store.get(self._run_id, artifact)

        for index, step in enumerate(job.steps):
            self._worker_record(
                job.name, attempt, RunEventType.STEP_STARTED,
                step=step.name, data={"kind": step.kind.value, "index": index},
            )

            if step.kind == StepKind.GATE:
                result = await self._resolve_gate(job, step.gate, attempt, produced, env)
                self._worker_record(
                    job.name, attempt, RunEventType.STEP_COMPLETED,
                    step=step.name, exit_code=0 if result.passed else 1,
                )
                if not result.passed:
                    raise GateFailure(
                        message=f"gate '{step.gate}' failed: {result.reason}",
                        job=job.name,
                        gate=step.gate,
                        run_id=self._run_id,
                    )
                continue

            step_inputs = dict(inputs)
            if step.kind == StepKind.DOWNLOAD_ARTIFACT and step.artifact not in step_inputs:
                if step.artifact in produced:
                    step_inputs[step.artifact] = produced[step.artifact]
                else:
                    try:
                        step_inputs[step.artifact] = await self._store.get(
                            self._run_id, step.artifact,
                        )
                    except ArtifactNotFoundError as e:
                        self._worker_record(
                            job.name, attempt, RunEventType.STEP_COMPLETED,
                            step=step.name, exit_code=1, message=e.message,
                        )
                        raise

            result = await self._executor.execute(step, env, step_inputs)
            for line in result.logs:
                self._worker_record(
                    job.name, attempt, RunEventType.LOG, step=step.name, message=line,
                )
            continued = not result.succeeded and step.continue_on_error
            self._worker_record(
                job.name, attempt, RunEventType.STEP_COMPLETED,
                step=step.name, exit_code=result.exit_code, data={"continued": continued},
            )
            produced.update(result.artifacts)
            if not result.succeeded and not step.continue_on_error:
                raise StepFailure(
                    message=f"step '{step.name}' exited with code {result.exit_code}",
                    job=job.name,
                    step=step.name,
                    exit_code=result.exit_code,
                    run_id=self._run_id,
                )

        missing = [name for name in job.outputs if name not in produced]
        if missing:
            raise ArtifactNotFoundError(
                message=f"declared outputs not produced: {', '.join(missing)}",
                run_id=self._run_id,
                name=missing[0],
            )

        if job.gate:
            result = await self._resolve_gate(job, job.gate, attempt, produced, env)
            if not result.passed:
                raise GateFailure(
                    message=f"gate '{job.gate}' failed: {result.reason}",
                    job=job.name,
                    gate=job.gate,
                    run_id=self._run_id,
                )

        if self._cancel_requested or not self._is_current(job.name, attempt):
            return _failed(FailureReason.CANCELLED, "attempt is no longer current")
        for name, content in produced.items():
            ref = await self._store.put(self._run_id, name, content, producer=job.name)
            self._worker_record(
                job.name, attempt, RunEventType.ARTIFACT_STORED,
                data={"name": name, "digest": ref.digest, "size": ref.size},
            )

        return _AttemptOutcome(succeeded=True)

    async def _resolve_gate(
        self,
        job: JobDefinition,
        gate: str,
        attempt: int,
        produced: dict[str, bytes],
        env: dict[str, str],
    ) -> GateResult:
        result = await self._gates.resolve(
            self._run_id,
            job.name,
            gate,
            context={
                "attempt": attempt,
                "artifacts": dict(produced),
                "store": self._store,
                "env": dict(env),
            },
            attempt=attempt,
        )
        self._worker_record(
            job.name, attempt, RunEventType.GATE_EVALUATED,
            message=result.reason,
            data={"gate": gate, "outcome": result.outcome.value},
        )
        return result

    def _job_env(self, job: JobDefinition, attempt: int) -> dict[str, str]:
        env = dict(self._graph.env)
        env.update(job.env)
        env.update({
            "CI": "true",
            "RUNWAY_RUN_ID": self._run_id,
            "RUNWAY_PIPELINE": self._graph.name,
            "RUNWAY_JOB": job.name,
            "RUNWAY_ATTEMPT": str(attempt),
            "RUNWAY_EVENT": self._event.event_type.value,
            "RUNWAY_BRANCH": self._event.branch,
        })
        if self._event.sha:
            env["RUNWAY_SHA"] = self._event.sha
        return env

    # =========================================================================
    # Ledger helpers
    # =========================================================================

    def _transition(
        self,
        name: str,
        target: JobState,
        reason: Optional[FailureReason] = None,
        message: Optional[str] = None,
        attempt: Optional[int] = None,
    ) -> None:
        current = self._states[name]
        if target not in JOB_TRANSITIONS[current]:
            raise RunError(
                message=f"Illegal transition for job '{name}': {current.value} -> {target.value}",
                run_id=self._run_id,
                error_code="INVALID_TRANSITION",
                details={"job": name},
            )
        self._states[name] = target
        if target.is_terminal:
            self._reasons[name] = reason
        self._record(
            RunEventType.JOB_STATE_CHANGED,
            job=name,
            state=target,
            previous_state=current,
            reason=reason,
            message=message,
            attempt=attempt,
        )
        self._logger.info(
            "job_state_changed",
            job=name,
            state=target.value,
            previous_state=current.value,
            reason=reason.value if reason else None,
        )

    def _record(self, event_type: RunEventType, **fields: Any) -> RunEvent:
        return self._ledger.append(RunEvent(run_id=self._run_id, event_type=event_type, **fields))

    def _is_current(self, job: str, attempt: int) -> bool:
        return self._states[job] == JobState.RUNNING and self._attempts[job] == attempt

    def _worker_record(
        self, job: str, attempt: int, event_type: RunEventType, **fields: Any,
    ) -> None:
        # Reports from an attempt that is no longer current (force-cancelled
        # or superseded) are dropped.
        if not self._is_current(job, attempt):
            return
        self._record(event_type, job=job, attempt=attempt, **fields)


# =============================================================================
# Run Handle
# =============================================================================
class RunHandle:
    """Caller-side view of a started run.

    Example:
        >>> handle = await scheduler.start_run(graph, event)
        >>> async for event in handle.stream():
        ...     print(event.event_type, event.job)
        >>> snapshot = await handle.wait()
    """

    def __init__(
        self,
        run_id: str,
        ledger: RunLedger,
        coordinator: _RunCoordinator,
        task: asyncio.Task[RunSnapshot],
    ) -> None:
        self._run_id = run_id
        self._ledger = ledger
        self._coordinator = coordinator
        self._task = task

    @property
    def run_id(self) -> str:
        return self._run_id

    @property
    def ledger(self) -> RunLedger:
        return self._ledger

    @property
    def done(self) -> bool:
        return self._task.done()

    def snapshot(self) -> RunSnapshot:
        return self._ledger.snapshot()

    def stream(self, offset: int = 0) -> AsyncIterator[RunEvent]:
        return self._ledger.stream(offset)

    async def wait(self, timeout: Optional[float] = None) -> RunSnapshot:
        """Wait for the run to finish and return its final snapshot.

        Cancelling the waiter does not cancel the run.

        Raises:
            asyncio.TimeoutError: If ``timeout`` elapses first.
        """
        return await asyncio.wait_for(asyncio.shield(self._task), timeout)

    async def cancel(self, reason: Optional[str] = None) -> None:
        """Request cancellation; use ``wait()`` to see it complete."""
        if not self._task.done():
            self._coordinator.request_cancel(reason)


# =============================================================================
# Scheduler
# =============================================================================
class Scheduler:
    """Starts runs and keeps track of the active ones.

    Attributes:
        _executor: Runs the steps of every job.
        _store: Artifact store shared by all runs.
        _repository: Where run ledgers are created.
        _gates: Gate evaluator shared by all runs.
        _config: Parallelism and cancellation settings.
        _retention: Retention applied to a run's artifacts when it ends.
        _handles: Active runs by id.
    """

    def __init__(
        self,
        executor: Executor,
        store: ArtifactStore,
        repository: RunRepository,
        gate_evaluator: Optional[GateEvaluator] = None,
        config: Optional[SchedulerConfig] = None,
        retention: Optional[RetentionPolicy] = None,
    ) -> None:
        self._executor = executor
        self._store = store
        self._repository = repository
        self._gates = gate_evaluator or GateEvaluator()
        self._config = config or SchedulerConfig()
        self._retention = retention or RetentionPolicy()
        self._handles: dict[str, RunHandle] = {}
        self._logger = logger.bind(component="scheduler")

    @property
    def gate_evaluator(self) -> GateEvaluator:
        return self._gates

    @property
    def active_runs(self) -> list[str]:
        return [run_id for run_id, handle in self._handles.items() if not handle.done]

    def get_handle(self, run_id: str) -> Optional[RunHandle]:
        return self._handles.get(run_id)

    async def start_run(
        self,
        graph: PipelineGraph,
        event: TriggerEvent,
        run_id: Optional[str] = None,
    ) -> RunHandle:
        """Create the run's ledger and start its coordinator task.

        Raises:
            RunError: If ``run_id`` is already in use.
        """
        run_id = run_id or f"run-{uuid4().hex[:12]}"
        ledger = await self._repository.create(run_id, graph, event)
        coordinator = _RunCoordinator(
            run_id=run_id,
            graph=graph,
            event=event,
            ledger=ledger,
            executor=self._executor,
            store=self._store,
            gates=self._gates,
            config=self._config,
            retention=self._retention,
        )
        task = asyncio.create_task(coordinator.run(), name=f"runway-run-{run_id}")
        handle = RunHandle(run_id, ledger, coordinator, task)
        self._handles[run_id] = handle
        task.add_done_callback(lambda _: self._handles.pop(run_id, None))
        return handle

    async def run(
        self,
        graph: PipelineGraph,
        event: TriggerEvent,
        run_id: Optional[str] = None,
    ) -> RunSnapshot:
        """Start a run and wait for it to finish."""
        handle = await self.start_run(graph, event, run_id=run_id)
        return await handle.wait()

    async def cancel(self, run_id: str, reason: Optional[str] = None) -> bool:
        """Request cancellation of an active run; False if it is not active."""
        handle = self._handles.get(run_id)
        if handle is None or handle.done:
            return False
        await handle.cancel(reason)
        return True

    async def shutdown(self, reason: str = "scheduler shutting down") -> None:
        """Cancel every active run and wait for them to finish."""
        handles = list(self._handles.values())
        for handle in handles:
            await handle.cancel(reason)
        for handle in handles:
            try:
                await handle.wait()
            except RunError as e:
                self._logger.error("run_shutdown_failed", **e.to_dict())
