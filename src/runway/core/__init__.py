"""
runway.core - Foundation Layer
===============================

The building blocks every other Runway module depends on:

    - config:      Configuration management (RunwayConfig and its sections)
    - enums:       Type-safe enumerations (JobState, RunStatus, GateOutcome, ...)
    - models:      Frozen pipeline definitions (Step, JobDefinition, PipelineGraph)
    - state:       Run-time records (RunEvent, JobSnapshot, RunSnapshot)
    - exceptions:  Structured exception hierarchy

Dependency Rule:
    core/ depends on NOTHING else in the runway package.
    Every other package (infrastructure/, orchestration/, integrations/)
    depends on core/.
"""

from runway.core.config import (
    ArtifactConfig,
    ExecutorConfig,
    GateConfig,
    RunwayConfig,
    SchedulerConfig,
)
from runway.core.enums import (
    FailureReason,
    GateOutcome,
    JobState,
    RunEventType,
    RunStatus,
    StepKind,
    TriggerEventType,
)
from runway.core.exceptions import (
    ArtifactConflictError,
    ArtifactError,
    ArtifactNotFoundError,
    ConfigurationError,
    CyclicGraphError,
    DefinitionError,
    DependencyError,
    GateFailure,
    JobError,
    RunError,
    RunwayError,
    StepFailure,
    UnknownDependencyError,
    WorkerLostError,
)
from runway.core.models import (
    JobDefinition,
    PipelineGraph,
    RetryPolicy,
    Step,
    TriggerEvent,
    TriggerFilter,
)
from runway.core.state import JobSnapshot, RunEvent, RunSnapshot, StepResult

__all__ = [
    # Config
    "RunwayConfig",
    "SchedulerConfig",
    "ArtifactConfig",
    "GateConfig",
    "ExecutorConfig",
    # Enums
    "JobState",
    "RunStatus",
    "FailureReason",
    "StepKind",
    "TriggerEventType",
    "GateOutcome",
    "RunEventType",
    # Models
    "Step",
    "TriggerEvent",
    "TriggerFilter",
    "RetryPolicy",
    "JobDefinition",
    "PipelineGraph",
    # State
    "RunEvent",
    "StepResult",
    "JobSnapshot",
    "RunSnapshot",
    # Exceptions
    "RunwayError",
    "ConfigurationError",
    "DefinitionError",
    "DependencyError",
    "UnknownDependencyError",
    "CyclicGraphError",
    "JobError",
    "StepFailure",
    "WorkerLostError",
    "GateFailure",
    "ArtifactError",
    "ArtifactConflictError",
    "ArtifactNotFoundError",
    "RunError",
]
