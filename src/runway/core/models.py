"""
runway.core.models - Core Data Models
=======================================

This module defines the Pydantic models that describe WHAT a pipeline is.
They are produced by the parser and consumed, read-only, by every other
component.

Model Hierarchy:
    Step            → One action inside a job (command, artifact, gate)
    TriggerFilter   → Which events a job reacts to (branches, paths)
    RetryPolicy     → How often and how patiently a job is re-attempted
    JobDefinition   → Steps + dependencies + artifacts + scheduling hints
    PipelineGraph   → Validated, acyclic set of jobs with adjacency lists
    TriggerEvent    → The source-control event that starts a run

Data Flow:
    ┌──────────────┐   PipelineGraph    ┌──────────────┐
    │   Parser      │ ────────────────→ │  Scheduler    │
    └──────────────┘                    │              │
                      TriggerEvent      │              │
    SCM / CLI   ──────────────────────→ │              │
                                        └──────────────┘

Design Principles:
    1. Frozen: definitions cannot change once a run starts
    2. Self-validating: Pydantic enforces type/value constraints at creation
    3. Two spellings: the document format's camelCase (dependsOn) and
       Python's snake_case (depends_on) are both accepted
"""

from __future__ import annotations

import random
from fnmatch import fnmatchcase
from typing import Any, Optional

from pydantic import BaseModel, Field, model_validator

from runway.core.enums import StepKind, TriggerEventType


# Shared pydantic settings for every definition model.
_DEFINITION_CONFIG = {
    "frozen": True,
    "populate_by_name": True,
    "extra": "forbid",
}


# =============================================================================
# Step
# =============================================================================
class Step(BaseModel):
    """A single unit of work within a job.

    Steps execute sequentially. A failing step fails its job unless
    ``continue_on_error`` is set.

    Required fields by kind:
        RUN:                command
        UPLOAD_ARTIFACT:    artifact, path
        DOWNLOAD_ARTIFACT:  artifact (path optional, defaults to the name)
        GATE:               gate

    Example:
        >>> Step(name="test", command="pytest -q")
        >>> Step(name="publish", kind=StepKind.UPLOAD_ARTIFACT,
        ...      artifact="site", path="public/")
    """

    model_config = _DEFINITION_CONFIG

    name: str = Field(min_length=1, description="Step name, for logs")
    kind: StepKind = Field(default=StepKind.RUN, description="What the step does")
    command: Optional[str] = Field(default=None, description="Shell command (run)")
    artifact: Optional[str] = Field(default=None, description="Artifact name")
    path: Optional[str] = Field(default=None, description="Workspace path of the artifact")
    gate: Optional[str] = Field(default=None, description="Gate check name (gate)")
    continue_on_error: bool = Field(
        default=False,
        alias="continueOnError",
        description="Keep going if this step fails",
    )
    env: dict[str, str] = Field(default_factory=dict, description="Step-level env vars")

    @model_validator(mode="after")
    def _check_kind_fields(self) -> Step:
        if self.kind == StepKind.RUN and not self.command:
            raise ValueError("run step requires 'command'")
        if self.kind in (StepKind.UPLOAD_ARTIFACT, StepKind.DOWNLOAD_ARTIFACT):
            if not self.artifact:
                raise ValueError(f"{self.kind.value} step requires 'artifact'")
            if self.kind == StepKind.UPLOAD_ARTIFACT and not self.path:
                raise ValueError("upload_artifact step requires 'path'")
        if self.kind == StepKind.GATE and not self.gate:
            raise ValueError("gate step requires 'gate'")
        return self


# =============================================================================
# Trigger Event
# =============================================================================
class TriggerEvent(BaseModel):
    """The event that starts a run.

    Attributes:
        event_type: push, pull_request or manual.
        branch: Branch the event refers to.
        changed_paths: Repository-relative paths touched by the event.
            Empty means "unknown", in which case path filters do not apply.
        sha: Optional commit identifier, exposed to steps as RUNWAY_SHA.
    """

    model_config = {"frozen": True, "populate_by_name": True}

    event_type: TriggerEventType = Field(
        default=TriggerEventType.PUSH, alias="eventType",
    )
    branch: str = Field(default="main")
    changed_paths: list[str] = Field(default_factory=list, alias="changedPaths")
    sha: Optional[str] = Field(default=None)


# =============================================================================
# Trigger Filter
# =============================================================================
class TriggerFilter(BaseModel):
    """Conditions under which a job participates in a run.

    All patterns are shell-style globs matched with ``fnmatchcase``;
    ``*`` also matches ``/`` so ``docs/*`` covers nested files.

    Attributes:
        events: Event types the job reacts to. Empty = all.
        branches: Branch patterns. Empty = all branches.
        paths: If set, at least one changed path must match one of these.
        paths_ignore: Changed paths matching these are disregarded; if
            every changed path is disregarded, the job does not run.
    """

    model_config = _DEFINITION_CONFIG

    events: list[TriggerEventType] = Field(default_factory=list)
    branches: list[str] = Field(default_factory=list)
    paths: list[str] = Field(default_factory=list)
    paths_ignore: list[str] = Field(default_factory=list, alias="pathsIgnore")

    def matches(self, event: TriggerEvent) -> bool:
        """Whether this filter admits ``event``.

        Manual events bypass branch and path filters but still honour
        ``events``.
        """
        if self.events and event.event_type not in self.events:
            return False
        if event.event_type == TriggerEventType.MANUAL:
            return True

        if self.branches and not any(
            fnmatchcase(event.branch, pattern) for pattern in self.branches
        ):
            return False

        if not (self.paths or self.paths_ignore) or not event.changed_paths:
            return True

        relevant = [
            path for path in event.changed_paths
            if not any(fnmatchcase(path, pattern) for pattern in self.paths_ignore)
        ]
        if self.paths:
            relevant = [
                path for path in relevant
                if any(fnmatchcase(path, pattern) for pattern in self.paths)
            ]
        return bool(relevant)


# =============================================================================
# Retry Policy
# =============================================================================
# Backoff Formula:
#   delay(n) = min(backoff * multiplier^(n-1) + jitter, max_delay)
# where n is the number of the attempt that just failed (1-based).
# =============================================================================
class RetryPolicy(BaseModel):
    """Job-level retry configuration.

    Only retryable failure reasons (step failure, worker lost) are retried.

    Attributes:
        attempts: Total number of attempts, including the first one.
        backoff: Delay in seconds before the second attempt.
        backoff_multiplier: Growth factor for subsequent delays.
        max_delay: Upper bound on any single delay.
        jitter: Fraction of the delay added as random noise.

    Example:
        >>> policy = RetryPolicy(attempts=3, backoff=2.0)
        >>> policy.calculate_delay(1)  # ~2.0s
        >>> policy.calculate_delay(2)  # ~4.0s
    """

    model_config = _DEFINITION_CONFIG

    attempts: int = Field(default=1, ge=1, le=20)
    backoff: float = Field(default=0.0, ge=0.0, le=3600.0)
    backoff_multiplier: float = Field(default=2.0, ge=1.0, le=10.0, alias="backoffMultiplier")
    max_delay: float = Field(default=300.0, ge=0.0, alias="maxDelay")
    jitter: float = Field(default=0.1, ge=0.0, le=1.0)

    def calculate_delay(self, attempt: int) -> float:
        """Delay before the attempt following ``attempt``.

        Args:
            attempt: 1-based number of the attempt that just failed.

        Returns:
            Delay in seconds, never above max_delay.
        """
        base_delay = self.backoff * (self.backoff_multiplier ** max(attempt - 1, 0))
        jitter = random.uniform(0, base_delay * self.jitter) if base_delay else 0.0
        return min(base_delay + jitter, self.max_delay)

    def allows_another(self, attempt: int) -> bool:
        """Whether a job that just failed attempt ``attempt`` may try again."""
        return attempt < self.attempts


# =============================================================================
# Job Definition
# =============================================================================
class JobDefinition(BaseModel):
    """A job: ordered steps plus everything the scheduler needs to place it.

    Attributes:
        name: Unique (within the pipeline) job identity.
        steps: Ordered steps, executed sequentially.
        depends_on: Names of jobs that must finish first.
        inputs: Artifact names this job consumes (produced upstream).
        outputs: Artifact names this job must produce.
        concurrency_group: Optional tag limiting simultaneous runs.
        trigger: Event filter; non-matching jobs are skipped.
        allow_failure: If True, this job failing does not fail the run and
            does not block its dependents.
        retry: Retry policy for step failures and lost workers.
        env: Job-level environment variables (override pipeline env).
        gate: Optional gate checked after all steps pass.
        timeout_seconds: Optional wall-clock limit for a single attempt.
    """

    model_config = _DEFINITION_CONFIG

    name: str = Field(min_length=1)
    steps: list[Step] = Field(default_factory=list)
    depends_on: list[str] = Field(default_factory=list, alias="dependsOn")
    inputs: list[str] = Field(default_factory=list)
    outputs: list[str] = Field(default_factory=list)
    concurrency_group: Optional[str] = Field(default=None, alias="concurrencyGroup")
    trigger: TriggerFilter = Field(default_factory=TriggerFilter)
    allow_failure: bool = Field(default=False, alias="allowFailure")
    retry: RetryPolicy = Field(default_factory=RetryPolicy)
    env: dict[str, str] = Field(default_factory=dict)
    gate: Optional[str] = Field(default=None)
    timeout_seconds: Optional[float] = Field(default=None, gt=0, alias="timeoutSeconds")


# =============================================================================
# Pipeline Graph
# =============================================================================
class PipelineGraph(BaseModel):
    """A validated, acyclic pipeline.

    Only the parser builds these; it guarantees that every dependency
    resolves, that ``topological_order`` lists every job after all of its
    dependencies, and that ``dependents`` is the reverse adjacency of
    ``depends_on``.

    Attributes:
        name: Pipeline name.
        jobs: Job name → definition, in document order.
        dependents: Job name → names of jobs that depend on it.
        topological_order: Every job name, dependencies first.
        concurrency_limits: Concurrency group → maximum running jobs.
        env: Pipeline-wide environment variables.
    """

    model_config = {"frozen": True}

    name: str = Field(default="pipeline")
    jobs: dict[str, JobDefinition] = Field(default_factory=dict)
    dependents: dict[str, tuple[str, ...]] = Field(default_factory=dict)
    topological_order: tuple[str, ...] = Field(default_factory=tuple)
    concurrency_limits: dict[str, int] = Field(default_factory=dict)
    env: dict[str, str] = Field(default_factory=dict)

    def job(self, name: str) -> JobDefinition:
        return self.jobs[name]

    def group_limit(self, group: Optional[str]) -> Optional[int]:
        """Running-job limit for ``group`` (None = unlimited)."""
        if group is None:
            return None
        return self.concurrency_limits.get(group)

    def to_summary(self) -> dict[str, Any]:
        """Compact description used by ``runway validate``."""
        return {
            "name": self.name,
            "jobs": len(self.jobs),
            "order": list(self.topological_order),
            "concurrency": dict(self.concurrency_limits),
        }
