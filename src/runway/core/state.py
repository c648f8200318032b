"""
runway.core.state - Run and Job State Models
==============================================

This module defines the dynamic models that describe what a run is DOING.
They are distinct from the static definitions in models.py:

    models.py:  WHAT the pipeline is (JobDefinition), frozen
    state.py:   WHAT happened during a run (RunEvent, snapshots), grows

State Architecture:
    The scheduler appends RunEvents to a per-run RunLedger. Snapshots are
    projections of that event log, rebuilt incrementally as events arrive:

    ┌──────────────┐  append   ┌──────────────┐  snapshot()  ┌─────────────┐
    │  Scheduler    │ ───────→ │  RunLedger    │ ──────────→ │ RunSnapshot │
    │  (+ workers)  │          │ [RunEvent...] │             │  jobs{...}  │
    └──────────────┘          └──────────────┘             └─────────────┘

Design Decision - Immutable Snapshots:
    snapshot() returns a deep copy. Callers may hold on to it; later events
    never change a snapshot they already have.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, Field

from runway.core.enums import (
    FailureReason,
    GateOutcome,
    JobState,
    RunEventType,
    RunStatus,
)
from runway.core.models import TriggerEvent


def _now() -> datetime:
    """Get the current UTC timestamp."""
    return datetime.now(timezone.utc)


# =============================================================================
# Run Event
# =============================================================================
class RunEvent(BaseModel):
    """One entry in a run's append-only ledger.

    ``offset`` is assigned by the ledger on append: 0 for the first event,
    increasing by one for each subsequent event. Observers reconnect by
    passing the offset after the last event they saw.

    Attributes:
        run_id: Owning run.
        offset: Position in the ledger (assigned on append).
        event_type: Category of the entry.
        job: Job the event is about (None for run-level events).
        state: New job state (JOB_STATE_CHANGED) or None.
        previous_state: Previous job state (JOB_STATE_CHANGED) or None.
        reason: Failure/skip/cancel reason when relevant.
        step: Step name for STEP_* and LOG events.
        exit_code: Step exit code for STEP_COMPLETED.
        message: Free-form text (log line, error message).
        attempt: Job attempt number the event belongs to.
        data: Extra structured payload.
        timestamp: When the event was recorded (UTC).
    """

    run_id: str
    offset: int = Field(default=-1)
    event_type: RunEventType
    job: Optional[str] = None
    state: Optional[JobState] = None
    previous_state: Optional[JobState] = None
    reason: Optional[FailureReason] = None
    step: Optional[str] = None
    exit_code: Optional[int] = None
    message: Optional[str] = None
    attempt: Optional[int] = None
    data: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=_now)


# =============================================================================
# Step Result
# =============================================================================
class StepResult(BaseModel):
    """Outcome of one step of one job attempt."""

    step: str
    attempt: int = 1
    exit_code: int
    continued: bool = Field(
        default=False,
        description="Step failed but continue_on_error let the job go on",
    )


# =============================================================================
# Job Snapshot
# =============================================================================
class JobSnapshot(BaseModel):
    """Point-in-time view of one job within a run.

    Attributes:
        name: Job name.
        state: Current JobState.
        reason: Why the job failed, was skipped, or was cancelled.
        error: Human-readable error message for failed jobs.
        attempts: Number of attempts started so far.
        allow_failure: Copied from the definition for status reporting.
        steps: Step results in execution order (all attempts).
        gate: Last gate outcome recorded for the job, if any.
        artifacts: Names of artifacts this job stored.
        started_at: When the first attempt started RUNNING.
        finished_at: When the job reached a terminal state.
    """

    name: str
    state: JobState = JobState.PENDING
    reason: Optional[FailureReason] = None
    error: Optional[str] = None
    attempts: int = 0
    allow_failure: bool = False
    steps: list[StepResult] = Field(default_factory=list)
    gate: Optional[GateOutcome] = None
    artifacts: list[str] = Field(default_factory=list)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.started_at is None or self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()


# =============================================================================
# Run Snapshot
# =============================================================================
class RunSnapshot(BaseModel):
    """Point-in-time view of a whole run.

    Attributes:
        run_id: Run identifier.
        pipeline: Pipeline name.
        trigger: Event that started the run.
        status: Current RunStatus.
        jobs: Job name → JobSnapshot, in pipeline order.
        started_at: When the run was created.
        finished_at: When the run reached a terminal status.
        cancel_requested: Whether an explicit cancel was issued.
        event_count: Number of ledger events folded into this snapshot.
    """

    run_id: str
    pipeline: str
    trigger: TriggerEvent
    status: RunStatus = RunStatus.PENDING
    jobs: dict[str, JobSnapshot] = Field(default_factory=dict)
    started_at: datetime = Field(default_factory=_now)
    finished_at: Optional[datetime] = None
    cancel_requested: bool = False
    event_count: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def exit_code(self) -> int:
        """0 succeeded, 1 failed, 2 cancelled, -1 still running."""
        return self.status.exit_code

    def jobs_in(self, *states: JobState) -> list[str]:
        """Names of jobs currently in any of ``states``."""
        return [name for name, job in self.jobs.items() if job.state in states]

    def failures(self) -> dict[str, dict[str, Any]]:
        """Structured reason for every failed, cancelled or upstream-skipped job."""
        return {
            name: {
                "state": job.state.value,
                "reason": job.reason.value if job.reason else None,
                "error": job.error,
                "allow_failure": job.allow_failure,
            }
            for name, job in self.jobs.items()
            if job.state in (JobState.FAILED, JobState.CANCELLED)
            or (job.state == JobState.SKIPPED and job.reason != FailureReason.TRIGGER_MISMATCH)
        }
