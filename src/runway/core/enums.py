"""
runway.core.enums - Type-Safe Enumerations
============================================

This module defines all enumeration types used throughout Runway.

All enums inherit from both `str` and `Enum`, which means:
    - They serialize to strings in JSON/YAML (Pydantic-friendly)
    - They can be compared with plain strings: JobState.RUNNING == "running"
    - They have human-readable representations

Architecture Mapping:
    ┌─────────────────────────────────────────────────────────────────┐
    │  DEFINITION                                                     │
    │    StepKind: What a single step does (run, upload, gate, ...)   │
    │    TriggerEventType: What started the pipeline                  │
    ├─────────────────────────────────────────────────────────────────┤
    │  SCHEDULING                                                     │
    │    JobState: Per-job lifecycle (PENDING → ... → SUCCEEDED)      │
    │    RunStatus: Per-run lifecycle                                 │
    │    FailureReason: Why a job ended badly                         │
    ├─────────────────────────────────────────────────────────────────┤
    │  GATING & OBSERVABILITY                                         │
    │    GateOutcome: pass / fail / pending                           │
    │    RunEventType: Ledger entry categories                        │
    └─────────────────────────────────────────────────────────────────┘
"""

from enum import Enum


# =============================================================================
# Job State Enumeration
# =============================================================================
# The per-job state machine driven by the Scheduler:
#
#   PENDING → BLOCKED ⇄ RUNNABLE → RUNNING → (SUCCEEDED | FAILED)
#      │         │                    │
#      │         └──→ SKIPPED         └──→ BLOCKED (retry backoff)
#      └──→ SKIPPED (trigger mismatch)
#
#   Any non-terminal state → CANCELLED
# =============================================================================
class JobState(str, Enum):
    """Lifecycle states for a job within a run.

    Terminal states are SUCCEEDED, FAILED, SKIPPED and CANCELLED. Once a
    job reaches one of them it never changes again.

    Usage:
        >>> state = JobState.RUNNING
        >>> state.is_terminal  # False
    """

    PENDING = "pending"         # Created with the run, not yet evaluated
    BLOCKED = "blocked"         # Waiting on dependencies (or a retry backoff)
    RUNNABLE = "runnable"       # All dependencies satisfied, waiting for a slot
    RUNNING = "running"         # Dispatched to a worker
    SUCCEEDED = "succeeded"     # All steps (and gate) passed
    FAILED = "failed"           # A step, gate, or the worker failed
    SKIPPED = "skipped"         # Trigger mismatch or a required dependency failed
    CANCELLED = "cancelled"     # Explicit cancel or upstream cancellation

    @property
    def is_terminal(self) -> bool:
        """Whether this state can no longer change."""
        return self in TERMINAL_JOB_STATES


TERMINAL_JOB_STATES = frozenset({
    JobState.SUCCEEDED,
    JobState.FAILED,
    JobState.SKIPPED,
    JobState.CANCELLED,
})

# Allowed transitions of the job lifecycle graph. The scheduler refuses
# anything not listed here.
JOB_TRANSITIONS: dict[JobState, frozenset[JobState]] = {
    JobState.PENDING: frozenset({
        JobState.BLOCKED, JobState.SKIPPED, JobState.CANCELLED,
    }),
    JobState.BLOCKED: frozenset({
        JobState.RUNNABLE, JobState.SKIPPED, JobState.CANCELLED,
    }),
    JobState.RUNNABLE: frozenset({
        JobState.RUNNING, JobState.BLOCKED, JobState.CANCELLED,
    }),
    JobState.RUNNING: frozenset({
        JobState.SUCCEEDED, JobState.FAILED, JobState.CANCELLED,
        JobState.BLOCKED,
    }),
    JobState.SUCCEEDED: frozenset(),
    JobState.FAILED: frozenset(),
    JobState.SKIPPED: frozenset(),
    JobState.CANCELLED: frozenset(),
}


# =============================================================================
# Run Status Enumeration
# =============================================================================
class RunStatus(str, Enum):
    """Lifecycle states for a whole run.

    The numeric exit code surfaced to callers is derived from the terminal
    status: SUCCEEDED → 0, FAILED → 1, CANCELLED → 2.
    """

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.SUCCEEDED, RunStatus.FAILED, RunStatus.CANCELLED)

    @property
    def exit_code(self) -> int:
        """Process exit code for a terminal run (-1 while still active)."""
        return {
            RunStatus.SUCCEEDED: 0,
            RunStatus.FAILED: 1,
            RunStatus.CANCELLED: 2,
        }.get(self, -1)


# =============================================================================
# Failure Reason Enumeration
# =============================================================================
# Structured reason recorded on a job that did not succeed. Retryable
# reasons are re-attempted according to the job's RetryPolicy.
# =============================================================================
class FailureReason(str, Enum):
    """Why a job ended in FAILED, SKIPPED or CANCELLED."""

    STEP_FAILURE = "step_failure"                   # A step exited non-zero
    WORKER_LOST = "worker_lost"                     # Executor crashed / raised
    GATE_FAILURE = "gate_failure"                   # Gate resolved to fail
    ARTIFACT_CONFLICT = "artifact_conflict"         # Output already stored
    MISSING_ARTIFACT = "missing_artifact"           # Input/output not found
    JOB_TIMEOUT = "job_timeout"                     # timeout_seconds exceeded
    TRIGGER_MISMATCH = "trigger_mismatch"           # Trigger did not match the event
    UPSTREAM_FAILED = "upstream_failed"             # A required dependency failed
    UPSTREAM_CANCELLED = "upstream_cancelled"       # A dependency was cancelled
    CANCELLED = "cancelled"                         # Explicit cancel request
    CANCELLATION_TIMEOUT = "cancellation_timeout"   # Forced after grace period

    @property
    def is_retryable(self) -> bool:
        return self in (FailureReason.STEP_FAILURE, FailureReason.WORKER_LOST)


# =============================================================================
# Step Kind Enumeration
# =============================================================================
class StepKind(str, Enum):
    """What a single step inside a job does."""

    RUN = "run"                                 # Shell command via the executor
    UPLOAD_ARTIFACT = "upload_artifact"         # Collect a file as an artifact
    DOWNLOAD_ARTIFACT = "download_artifact"     # Materialize a stored artifact
    GATE = "gate"                               # Consult the Gate Evaluator


# =============================================================================
# Trigger Event Type Enumeration
# =============================================================================
class TriggerEventType(str, Enum):
    """The source-control event that started a pipeline run."""

    PUSH = "push"
    PULL_REQUEST = "pull_request"
    MANUAL = "manual"


# =============================================================================
# Gate Outcome Enumeration
# =============================================================================
class GateOutcome(str, Enum):
    """Outcome of an internal or external quality check.

    PENDING holds the job in RUNNING until a final outcome arrives or the
    gate timeout elapses (then it resolves to FAIL).
    """

    PASS = "pass"
    FAIL = "fail"
    PENDING = "pending"


# =============================================================================
# Run Event Type Enumeration
# =============================================================================
class RunEventType(str, Enum):
    """Categories of entries in the append-only run ledger."""

    RUN_STARTED = "run_started"
    JOB_STATE_CHANGED = "job_state_changed"
    STEP_STARTED = "step_started"
    STEP_COMPLETED = "step_completed"
    LOG = "log"
    GATE_EVALUATED = "gate_evaluated"
    ARTIFACT_STORED = "artifact_stored"
    CANCEL_REQUESTED = "cancel_requested"
    RUN_COMPLETED = "run_completed"
