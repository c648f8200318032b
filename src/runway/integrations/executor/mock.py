"""
runway.integrations.executor.mock - Scripted Executor for Testing
===================================================================

This module provides an executor that runs nothing. Every step completes
with an outcome scripted in advance, which makes scheduler behaviour
deterministic and fast to test. ``runway run --executor scripted`` uses it
for dry runs of a pipeline definition.

Why a Scripted Executor?
    1. **Deterministic**: Exit codes, artifacts and timing are chosen by the test.
    2. **Failure injection**: Non-zero exits, crashes, hangs, and workers that
       ignore cancellation are all one ``script()`` call away.
    3. **Observable**: Every call is recorded along with the peak number of
       steps that were running at the same time.

Script Lookup:
    Outcomes are keyed by ``"job/step"``, ``"job"`` or ``"step"`` and looked
    up in that order (the job name comes from the RUNWAY_JOB variable the
    scheduler sets). For each key, queued one-shot outcomes are used first,
    then a sticky outcome. Unscripted steps succeed; unscripted upload steps
    produce a small placeholder artifact so dry runs satisfy ``outputs``.

Usage:
    >>> executor = ScriptedExecutor()
    >>> executor.script("test", exit_code=1, times=2)   # fail twice, then pass
    >>> executor.script("deploy/publish", hang=True)     # never finishes
    >>> executor.script("build", artifacts={"site": b"<html/>"})
"""

from __future__ import annotations

import asyncio
from collections import deque
from datetime import datetime, timezone
from typing import Any, Optional

import structlog
from pydantic import BaseModel, Field

from runway.core.config import ExecutorConfig
from runway.core.enums import StepKind
from runway.core.models import Step
from runway.integrations.executor.base import ExecutionResult, Executor


# =============================================================================
# Logger
# =============================================================================
logger = structlog.get_logger()


class ScriptedOutcome(BaseModel):
    """What a scripted step does when executed.

    Attributes:
        exit_code: Exit status to report.
        artifacts: Artifacts to report.
        logs: Log lines to report.
        delay: Seconds to "run" before reporting.
        error: If set, raise RuntimeError(error) instead of returning.
        hang: Never finish on its own (until cancelled).
        ignore_cancel: Swallow cancellation until ``delay`` has elapsed.
    """

    exit_code: int = 0
    artifacts: dict[str, bytes] = Field(default_factory=dict)
    logs: list[str] = Field(default_factory=list)
    delay: float = Field(default=0.0, ge=0.0)
    error: Optional[str] = None
    hang: bool = False
    ignore_cancel: bool = False


class ScriptedExecutor(Executor):
    """Executor returning pre-scripted outcomes.

    Attributes:
        _queued: key → one-shot outcomes, consumed FIFO.
        _sticky: key → outcome used whenever the queue for the key is empty.
        _call_history: Every execute() call, in call order.
        _active: Job/step keys currently executing.
        _peak_active: Highest number of simultaneously executing steps.
        _ignored_cancellations: How many cancellations were swallowed.

    Example:
        >>> executor = ScriptedExecutor()
        >>> executor.script("lint", exit_code=2)
        >>> result = await executor.execute(Step(name="lint", command="ruff ."), {})
        >>> result.exit_code
        2
    """

    def __init__(
        self,
        config: Optional[ExecutorConfig] = None,
        default_delay: float = 0.0,
    ) -> None:
        if config is None:
            config = ExecutorConfig(backend="scripted")
        super().__init__(config)

        self._queued: dict[str, deque[ScriptedOutcome]] = {}
        self._sticky: dict[str, ScriptedOutcome] = {}
        self._default_delay = default_delay

        self._call_history: list[dict[str, Any]] = []
        self._active: list[str] = []
        self._peak_active = 0
        self._ignored_cancellations = 0

        self._logger = logger.bind(component="scripted_executor")

    # =========================================================================
    # Properties
    # =========================================================================

    @property
    def call_history(self) -> list[dict[str, Any]]:
        """Recorded calls: job, step, kind, env, inputs, started_at."""
        return self._call_history

    @property
    def call_count(self) -> int:
        return len(self._call_history)

    @property
    def active(self) -> list[str]:
        """``job/step`` keys currently executing."""
        return list(self._active)

    @property
    def peak_active(self) -> int:
        return self._peak_active

    @property
    def ignored_cancellations(self) -> int:
        return self._ignored_cancellations

    def calls_for(self, job: str) -> list[dict[str, Any]]:
        """Calls made on behalf of ``job``."""
        return [call for call in self._call_history if call["job"] == job]

    # =========================================================================
    # Scripting
    # =========================================================================

    def script(
        self,
        key: str,
        exit_code: int = 0,
        *,
        artifacts: Optional[dict[str, bytes]] = None,
        logs: Optional[list[str]] = None,
        delay: float = 0.0,
        error: Optional[str] = None,
        hang: bool = False,
        ignore_cancel: bool = False,
        times: Optional[int] = None,
    ) -> None:
        """Script the outcome of the steps matching ``key``.

        Args:
            key: ``"job/step"``, ``"job"`` or ``"step"``.
            times: Use this outcome for the next ``times`` matching calls
                only. None makes it the sticky outcome for the key.
        """
        outcome = ScriptedOutcome(
            exit_code=exit_code,
            artifacts=artifacts or {},
            logs=logs or [],
            delay=delay,
            error=error,
            hang=hang,
            ignore_cancel=ignore_cancel,
        )
        if times is None:
            self._sticky[key] = outcome
            return
        queue = self._queued.setdefault(key, deque())
        queue.extend(outcome for _ in range(times))

    def clear(self) -> None:
        """Drop all scripts and history."""
        self._queued.clear()
        self._sticky.clear()
        self._call_history.clear()
        self._peak_active = 0
        self._ignored_cancellations = 0

    # =========================================================================
    # Executor Interface
    # =========================================================================

    async def execute(
        self,
        step: Step,
        env: dict[str, str],
        inputs: Optional[dict[str, bytes]] = None,
    ) -> ExecutionResult:
        job = env.get("RUNWAY_JOB", "")
        key = f"{job}/{step.name}"
        outcome = self._lookup(job, step)

        self._call_history.append({
            "job": job,
            "step": step.name,
            "kind": step.kind,
            "env": self.merge_env(env, step),
            "inputs": dict(inputs or {}),
            "started_at": datetime.now(timezone.utc),
        })
        self._active.append(key)
        self._peak_active = max(self._peak_active, len(self._active))
        self._logger.debug("scripted_step_started", job=job, step=step.name)

        try:
            if outcome.hang:
                await asyncio.Event().wait()
            if outcome.ignore_cancel:
                await self._sleep_ignoring_cancel(outcome.delay)
            elif outcome.delay:
                await asyncio.sleep(outcome.delay)
            if outcome.error is not None:
                raise RuntimeError(outcome.error)
        finally:
            self._active.remove(key)

        artifacts = dict(outcome.artifacts)
        if (
            step.kind == StepKind.UPLOAD_ARTIFACT
            and step.artifact not in artifacts
            and outcome.exit_code == 0
        ):
            artifacts[step.artifact] = f"{job}:{step.artifact}".encode("utf-8")

        return ExecutionResult(
            exit_code=outcome.exit_code,
            artifacts=artifacts,
            logs=list(outcome.logs) or [f"{step.name}: exit {outcome.exit_code}"],
        )

    def _lookup(self, job: str, step: Step) -> ScriptedOutcome:
        for key in (f"{job}/{step.name}", job, step.name):
            queue = self._queued.get(key)
            if queue:
                return queue.popleft()
            if key in self._sticky:
                return self._sticky[key]
        return ScriptedOutcome(delay=self._default_delay)

    async def _sleep_ignoring_cancel(self, seconds: float) -> None:
        # Simulates a runner that does not react to cancellation in time.
        loop = asyncio.get_running_loop()
        deadline = loop.time() + seconds
        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                return
            try:
                await asyncio.sleep(remaining)
            except asyncio.CancelledError:
                self._ignored_cancellations += 1
                task = asyncio.current_task()
                if task is not None:
                    task.uncancel()
