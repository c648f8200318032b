"""
runway.orchestration.gate_evaluator - Quality Gate Evaluation
===============================================================

A gate is a pass/fail quality condition that can force a job to FAILED
even though every one of its steps exited 0. Gates come from two places:

    1. Registered GateChecks, evaluated in-process against the job's
       context (artifacts, env). E.g. ThresholdGateCheck reads a metrics
       JSON artifact and compares it with thresholds.
    2. External results pushed in through ``evaluate()``, typically by a
       webhook from a code-quality service. Such a service answers
       asynchronously, so a gate may stay PENDING for a while.

Resolution Flow:

    worker ── resolve(run, job, gate) ──→ ┌───────────────────────────┐
                                          │ GateEvaluator              │
                                          │                            │
                                          │ final result for this gate │
                                          │ and attempt (or unclaimed) │
                                          │ already recorded? → reuse  │
                                          │ registered check? → run it │
                                          │ otherwise → record PENDING │
                                          │                            │
                                          │ wait while PENDING         │
    external ── evaluate(run, job, res) ─→│   (evaluate() wakes it)    │
                                          │ pending_timeout → FAIL     │
    worker ←────────── GateResult ─────── └───────────────────────────┘

Fail-Closed:
    A check that raises, a malformed metrics artifact, and a gate that is
    still PENDING when the timeout elapses all resolve to FAIL.
"""

from __future__ import annotations

import asyncio
import json
from abc import ABC, abstractmethod
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any, Optional, Union

import structlog
from pydantic import BaseModel, Field

from runway.core.config import GateConfig
from runway.core.enums import GateOutcome
from runway.core.exceptions import ArtifactNotFoundError


# =============================================================================
# Logger
# =============================================================================
logger = structlog.get_logger()


def _now() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# Gate Result Model
# =============================================================================
class GateResult(BaseModel):
    """Outcome of a gate for one job of one run.

    Attributes:
        run_id: Run the job belongs to.
        job: Job the gate guards.
        gate: Gate name (check name, or "external").
        outcome: pass, fail or pending.
        reason: Human-readable explanation.
        evaluated_at: When this result was recorded.
        attempt: Job attempt that resolved the gate. None for an external
            verdict no attempt has claimed yet.
        metadata: Check-specific details (metric values, thresholds, ...).
    """

    run_id: str
    job: str
    gate: str = Field(default="external")
    outcome: GateOutcome
    reason: Optional[str] = None
    evaluated_at: datetime = Field(default_factory=_now)
    attempt: Optional[int] = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def passed(self) -> bool:
        return self.outcome == GateOutcome.PASS

    @property
    def is_final(self) -> bool:
        return self.outcome != GateOutcome.PENDING


ExternalResult = Union[GateResult, GateOutcome, bool, str, Mapping]

# Gate name given to external verdicts that arrive before any gate is resolved.
_UNNAMED = "external"

_STATUS_WORDS: dict[str, GateOutcome] = {
    "pass": GateOutcome.PASS,
    "passed": GateOutcome.PASS,
    "success": GateOutcome.PASS,
    "ok": GateOutcome.PASS,
    "fail": GateOutcome.FAIL,
    "failed": GateOutcome.FAIL,
    "failure": GateOutcome.FAIL,
    "error": GateOutcome.FAIL,
    "pending": GateOutcome.PENDING,
    "in_progress": GateOutcome.PENDING,
    "queued": GateOutcome.PENDING,
}


def _outcome_from_word(word: str) -> GateOutcome:
    try:
        return _STATUS_WORDS[word.strip().lower()]
    except KeyError:
        raise ValueError(f"Unrecognized gate status {word!r}") from None


# =============================================================================
# Abstract Base Class: GateCheck
# =============================================================================
# Context Dict Convention:
#
#     Key         Type                  Meaning
#     ───         ────                  ───────
#     run_id      str                   Run being evaluated
#     job         str                   Job the gate guards
#     gate        str                   Gate name being resolved
#     attempt     int                   Job attempt number
#     artifacts   dict[str, bytes]      Artifacts produced so far by the job
#     store       ArtifactStore         Artifacts of upstream jobs
#     env         dict[str, str]        The job's environment
# =============================================================================
class GateCheck(ABC):
    """A named, in-process quality check.

    Subclasses implement ``name``, ``description`` and ``evaluate()``.

    Example:
        >>> class AlwaysPass(GateCheck):
        ...     @property
        ...     def name(self) -> str:
        ...         return "always"
        ...
        ...     @property
        ...     def description(self) -> str:
        ...         return "Never blocks"
        ...
        ...     async def evaluate(self, context):
        ...         return self.result(context, GateOutcome.PASS)
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Gate name that steps and jobs refer to."""
        ...

    @property
    @abstractmethod
    def description(self) -> str:
        """Human-readable description of what the check verifies."""
        ...

    @abstractmethod
    async def evaluate(self, context: dict[str, Any]) -> GateResult:
        """Evaluate the gate against ``context`` (see the table above).

        May return a PENDING result to wait for an external verdict.
        """
        ...

    def result(
        self,
        context: dict[str, Any],
        outcome: GateOutcome,
        reason: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> GateResult:
        """Build a GateResult for this check from the context."""
        return GateResult(
            run_id=context.get("run_id", ""),
            job=context.get("job", ""),
            gate=self.name,
            outcome=outcome,
            reason=reason,
            metadata=metadata or {},
        )


# =============================================================================
# Built-in Check: StaticGateCheck
# =============================================================================
class StaticGateCheck(GateCheck):
    """Always resolves to the configured outcome.

    Handy for switching a gate on or off from configuration, and in tests.
    """

    def __init__(
        self,
        name: str,
        outcome: GateOutcome = GateOutcome.PASS,
        reason: Optional[str] = None,
    ) -> None:
        self._name = name
        self._outcome = outcome
        self._reason = reason

    @property
    def name(self) -> str:
        return self._name

    @property
    def description(self) -> str:
        return f"Always resolves to {self._outcome.value}"

    async def evaluate(self, context: dict[str, Any]) -> GateResult:
        return self.result(context, self._outcome, self._reason or f"static {self._outcome.value}")


# =============================================================================
# Built-in Check: ThresholdGateCheck
# =============================================================================
# Reads a JSON metrics document produced by the job (or an upstream job),
# e.g. {"coverage": {"line": 87.5}, "bugs": 0, "duplication": 2.1},
# and compares metrics addressed by dotted paths with bounds:
#
#     ThresholdGateCheck("quality", artifact="metrics",
#                        minimums={"coverage.line": 80},
#                        maximums={"bugs": 0, "duplication": 3})
# =============================================================================
class ThresholdGateCheck(GateCheck):
    """Passes when every metric in a metrics artifact is within bounds."""

    def __init__(
        self,
        name: str,
        artifact: str,
        minimums: Optional[dict[str, float]] = None,
        maximums: Optional[dict[str, float]] = None,
    ) -> None:
        self._name = name
        self._artifact = artifact
        self._minimums = dict(minimums or {})
        self._maximums = dict(maximums or {})

    @property
    def name(self) -> str:
        return self._name

    @property
    def description(self) -> str:
        bounds = [f"{key} >= {value}" for key, value in self._minimums.items()]
        bounds += [f"{key} <= {value}" for key, value in self._maximums.items()]
        return f"Metrics in artifact '{self._artifact}' satisfy: {', '.join(bounds) or 'nothing'}"

    async def evaluate(self, context: dict[str, Any]) -> GateResult:
        content = await self._load(context)
        if content is None:
            return self.result(
                context,
                GateOutcome.FAIL,
                f"metrics artifact '{self._artifact}' not found",
            )
        try:
            metrics = json.loads(content)
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            return self.result(
                context,
                GateOutcome.FAIL,
                f"metrics artifact '{self._artifact}' is not valid JSON: {e}",
            )

        violations: list[str] = []
        observed: dict[str, Any] = {}
        checks = [(key, bound, True) for key, bound in self._minimums.items()]
        checks += [(key, bound, False) for key, bound in self._maximums.items()]
        for key, bound, is_minimum in checks:
            value = self._lookup(metrics, key)
            observed[key] = value
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                violations.append(f"{key} is missing or not numeric")
            elif is_minimum and value < bound:
                violations.append(f"{key}={value} is below {bound}")
            elif not is_minimum and value > bound:
                violations.append(f"{key}={value} is above {bound}")

        metadata = {
            "metrics": observed,
            "minimums": self._minimums,
            "maximums": self._maximums,
        }
        if violations:
            return self.result(context, GateOutcome.FAIL, "; ".join(violations), metadata)
        return self.result(context, GateOutcome.PASS, "all thresholds met", metadata)

    async def _load(self, context: dict[str, Any]) -> Optional[bytes]:
        produced = context.get("artifacts") or {}
        if self._artifact in produced:
            return produced[self._artifact]
        store = context.get("store")
        if store is None:
            return None
        try:
            return await store.get(context.get("run_id", ""), self._artifact)
        except ArtifactNotFoundError:
            return None

    @staticmethod
    def _lookup(metrics: Any, dotted: str) -> Any:
        value = metrics
        for part in dotted.split("."):
            if not isinstance(value, Mapping) or part not in value:
                return None
            value = value[part]
        return value


# =============================================================================
# Gate Evaluator
# =============================================================================
class GateEvaluator:
    """Records gate outcomes per (run_id, job) and resolves pending gates.

    Attributes:
        _checks: Registered GateChecks by name.
        _results: (run_id, job) → latest GateResult.
        _condition: Wakes ``resolve()`` waiters when a result is recorded.
        _pending_timeout: Seconds a gate may stay PENDING before failing.

    Example:
        >>> evaluator = GateEvaluator(GateConfig(pending_timeout_seconds=30))
        >>> evaluator.register_check(StaticGateCheck("smoke"))
        >>> result = await evaluator.resolve("run-1", "deploy", "smoke")
        >>> result.passed
        True
    """

    def __init__(self, config: Optional[GateConfig] = None) -> None:
        config = config or GateConfig()
        self._pending_timeout = config.pending_timeout_seconds
        self._checks: dict[str, GateCheck] = {}
        self._results: dict[tuple[str, str], GateResult] = {}
        self._condition = asyncio.Condition()
        self._logger = logger.bind(component="gate_evaluator")

    # =========================================================================
    # Check registry
    # =========================================================================

    @property
    def checks(self) -> list[GateCheck]:
        return list(self._checks.values())

    def register_check(self, check: GateCheck) -> None:
        """Register (or replace) the check answering to ``check.name``."""
        self._checks[check.name] = check
        self._logger.info(
            "gate_check_registered",
            gate=check.name,
            description=check.description,
        )

    def unregister_check(self, name: str) -> bool:
        return self._checks.pop(name, None) is not None

    def get_check(self, name: str) -> Optional[GateCheck]:
        return self._checks.get(name)

    # =========================================================================
    # Results
    # =========================================================================

    def get_result(self, run_id: str, job: str) -> Optional[GateResult]:
        return self._results.get((run_id, job))

    def results_for_run(self, run_id: str) -> dict[str, GateResult]:
        return {job: result for (rid, job), result in self._results.items() if rid == run_id}

    def clear_run(self, run_id: str) -> int:
        """Forget every result of ``run_id``; returns how many."""
        keys = [key for key in self._results if key[0] == run_id]
        for key in keys:
            del self._results[key]
        return len(keys)

    async def evaluate(
        self,
        run_id: str,
        job: str,
        external_result: ExternalResult,
        gate: Optional[str] = None,
    ) -> GateResult:
        """Record an externally computed gate result and wake waiters.

        Args:
            external_result: A GateResult, GateOutcome, bool, status word
                ("pass", "fail", "pending", "ok", "error", ...) or a mapping
                with a ``status`` (optionally ``reason``) or a nested
                ``projectStatus`` mapping as quality services report it.
            gate: Gate name. Defaults to the gate currently being resolved
                for the job, else "external".

        Raises:
            ValueError: If the result cannot be interpreted.
        """
        current = self._results.get((run_id, job))
        if gate is None:
            gate = current.gate if current is not None else _UNNAMED
        # A verdict for a gate that is still pending belongs to the waiting attempt.
        attempt = current.attempt if current is not None and not current.is_final else None

        if isinstance(external_result, GateResult):
            result = external_result.model_copy(
                update={"run_id": run_id, "job": job, "attempt": attempt, "evaluated_at": _now()}
            )
        else:
            outcome, reason, metadata = self._coerce(external_result)
            result = GateResult(
                run_id=run_id,
                job=job,
                gate=gate,
                outcome=outcome,
                reason=reason,
                attempt=attempt,
                metadata=metadata,
            )

        await self._record(result)
        return result

    async def resolve(
        self,
        run_id: str,
        job: str,
        gate_name: str,
        context: Optional[dict[str, Any]] = None,
        timeout: Optional[float] = None,
        attempt: Optional[int] = None,
    ) -> GateResult:
        """Resolve gate ``gate_name`` for a job to PASS or FAIL.

        A final result already recorded for the same gate and attempt, or an
        external verdict no attempt has claimed yet, is reused. Otherwise the
        registered check runs; without one, the gate waits for ``evaluate()``.

        Args:
            context: Passed to the check; run_id/job/gate are filled in.
            timeout: Override of the configured pending timeout.
            attempt: Job attempt resolving the gate. A retry never reuses a
                verdict an earlier attempt resolved.

        Returns:
            A final GateResult (never PENDING).
        """
        key = (run_id, job)
        existing = self._results.get(key)
        if (
            existing is not None
            and existing.is_final
            and existing.gate in (gate_name, _UNNAMED)
            and existing.attempt in (None, attempt)
        ):
            if existing.gate != gate_name or existing.attempt != attempt:
                # An unclaimed verdict is claimed by the first gate resolved.
                existing = existing.model_copy(update={"gate": gate_name, "attempt": attempt})
                self._results[key] = existing
            return existing

        check_context = dict(context or {})
        check_context.update({"run_id": run_id, "job": job, "gate": gate_name})

        check = self._checks.get(gate_name)
        if check is None:
            result = GateResult(
                run_id=run_id,
                job=job,
                gate=gate_name,
                outcome=GateOutcome.PENDING,
                reason="awaiting external result",
            )
        else:
            try:
                result = await check.evaluate(check_context)
            except Exception as exc:
                # A broken check blocks the job rather than letting it through.
                self._logger.error(
                    "gate_check_error",
                    run_id=run_id,
                    job=job,
                    gate=gate_name,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
                result = GateResult(
                    run_id=run_id,
                    job=job,
                    gate=gate_name,
                    outcome=GateOutcome.FAIL,
                    reason=f"gate check raised {type(exc).__name__}: {exc}",
                )
        result = result.model_copy(update={"attempt": attempt})
        await self._record(result)
        if result.is_final:
            return result

        wait_seconds = self._pending_timeout if timeout is None else timeout
        try:
            return await asyncio.wait_for(self._wait_final(key, gate_name), wait_seconds)
        except asyncio.TimeoutError:
            timed_out = GateResult(
                run_id=run_id,
                job=job,
                gate=gate_name,
                outcome=GateOutcome.FAIL,
                reason=f"gate still pending after {wait_seconds:g}s",
                attempt=attempt,
                metadata={"timed_out": True},
            )
            await self._record(timed_out)
            return timed_out

    # =========================================================================
    # Internals
    # =========================================================================

    async def _record(self, result: GateResult) -> None:
        async with self._condition:
            self._results[(result.run_id, result.job)] = result
            self._condition.notify_all()
        self._logger.info(
            "gate_evaluated",
            run_id=result.run_id,
            job=result.job,
            gate=result.gate,
            outcome=result.outcome.value,
            reason=result.reason,
        )

    async def _wait_final(self, key: tuple[str, str], gate_name: str) -> GateResult:
        def _done() -> bool:
            current = self._results.get(key)
            return current is not None and current.gate == gate_name and current.is_final

        async with self._condition:
            await self._condition.wait_for(_done)
            return self._results[key]

    @staticmethod
    def _coerce(
        external_result: Any,
    ) -> tuple[GateOutcome, Optional[str], dict[str, Any]]:
        if isinstance(external_result, GateOutcome):
            return external_result, None, {}
        if isinstance(external_result, bool):
            return (GateOutcome.PASS if external_result else GateOutcome.FAIL), None, {}
        if isinstance(external_result, str):
            return _outcome_from_word(external_result), None, {}
        if isinstance(external_result, Mapping):
            payload = external_result
            if "status" not in payload and isinstance(payload.get("projectStatus"), Mapping):
                payload = payload["projectStatus"]
            status = payload.get("status")
            if isinstance(status, bool):
                outcome = GateOutcome.PASS if status else GateOutcome.FAIL
            elif isinstance(status, (str, GateOutcome)):
                outcome = (
                    status if isinstance(status, GateOutcome) else _outcome_from_word(status)
                )
            else:
                raise ValueError("Gate result mapping needs a 'status'")
            reason = payload.get("reason") or payload.get("description")
            metadata = {key: value for key, value in external_result.items() if key != "status"}
            return outcome, reason, metadata
        raise ValueError(f"Cannot interpret gate result of type {type(external_result).__name__}")
