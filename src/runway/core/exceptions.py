"""
runway.core.exceptions - Custom Exception Hierarchy
=====================================================

This module defines a structured exception hierarchy for Runway.
Components raise and catch specific exception types that carry contextual
information instead of bare strings.

Exception Hierarchy:
    RunwayError (base)
        ├── ConfigurationError          - Invalid config, bad YAML
        ├── DefinitionError             - Pipeline document rejected at parse time
        │     ├── DuplicateJobNameError
        │     ├── CyclicGraphError
        │     ├── InvalidTriggerPatternError
        │     ├── InvalidConcurrencyGroupError
        │     ├── UnknownArtifactError
        │     └── DependencyError
        │           └── UnknownDependencyError
        ├── JobError                    - Runtime failure scoped to one job
        │     ├── StepFailure
        │     ├── WorkerLostError
        │     ├── GateFailure
        │     ├── JobTimeoutError
        │     └── CancellationTimeout
        ├── ArtifactError               - Artifact store failures
        │     ├── ArtifactConflictError
        │     └── ArtifactNotFoundError
        └── RunError                    - Unknown run, ledger misuse

Error Handling Flow:
    Parser raises DefinitionError
        → the run never starts; the CLI reports job + field and exits 3
    Worker raises JobError (or anything unexpected → WorkerLostError)
        → Scheduler records a FailureReason on the job
        → retryable reasons go back through the job's RetryPolicy
        → dependents are Skipped; sibling branches keep running

Usage:
    >>> from runway.core.exceptions import UnknownDependencyError
    >>> raise UnknownDependencyError(
    ...     message="Job 'deploy' depends on unknown job 'biuld'",
    ...     job="deploy",
    ...     field="dependsOn[0]",
    ...     dependency="biuld",
    ... )
"""

from __future__ import annotations

from typing import Any, Optional


# =============================================================================
# Base Exception
# =============================================================================
# All Runway exceptions inherit from this base class. This allows catching
# all engine-specific errors with a single except clause:
#
#   try:
#       graph = parser.parse_file("pipeline.yaml")
#   except RunwayError as e:
#       logger.error(e.message, error_code=e.error_code, details=e.details)
# =============================================================================
class RunwayError(Exception):
    """Base exception for all Runway errors.

    Attributes:
        message: Human-readable error description.
        error_code: Machine-readable error code for programmatic handling.
            Convention: UPPER_SNAKE_CASE (e.g., "CYCLIC_GRAPH").
        details: Arbitrary dict with additional debugging context.
    """

    def __init__(
        self,
        message: str,
        error_code: str = "UNKNOWN_ERROR",
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)

        self.message = message
        self.error_code = error_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Serialize this exception to a dictionary.

        Used for structured logs, ledger entries and the CLI's JSON output.

        Returns:
            Dictionary with error_type, message, error_code, and details.
        """
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "error_code": self.error_code,
            "details": self.details,
        }

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}("
            f"message={self.message!r}, "
            f"error_code={self.error_code!r}, "
            f"details={self.details!r})"
        )


# =============================================================================
# Configuration Error
# =============================================================================
class ConfigurationError(RunwayError):
    """Raised when Runway configuration is invalid or missing.

    Example:
        >>> raise ConfigurationError(
        ...     message="Unknown executor backend: 'k8s'",
        ...     error_code="UNKNOWN_EXECUTOR",
        ...     details={"backend": "k8s"},
        ... )
    """

    def __init__(
        self,
        message: str,
        error_code: str = "CONFIG_ERROR",
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message=message, error_code=error_code, details=details)


# =============================================================================
# Definition Errors (parse time, fatal, the run never starts)
# =============================================================================
# Every definition error names the offending job and the dotted field path
# inside that job's spec, e.g. job="deploy", field="trigger.branches[1]".
# =============================================================================
class DefinitionError(RunwayError):
    """Raised when a pipeline document fails validation.

    Attributes:
        job: Name of the offending job (None for document-level problems).
        field: Dotted path of the offending field within the job spec
            (or the document when job is None).
    """

    def __init__(
        self,
        message: str,
        job: Optional[str] = None,
        field: Optional[str] = None,
        error_code: str = "DEFINITION_ERROR",
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        enriched_details = details or {}
        enriched_details["job"] = job
        enriched_details["field"] = field

        super().__init__(message=message, error_code=error_code, details=enriched_details)

        self.job = job
        self.field = field


class DuplicateJobNameError(DefinitionError):
    """Two jobs in one pipeline share a name."""

    def __init__(self, message: str, job: str, field: str = "name") -> None:
        super().__init__(
            message=message, job=job, field=field, error_code="DUPLICATE_JOB_NAME",
        )


class CyclicGraphError(DefinitionError):
    """The dependency graph contains a cycle.

    Attributes:
        cycle: Job names along one concrete cycle, first name repeated at
            the end (e.g. ["a", "b", "c", "a"]).
    """

    def __init__(self, message: str, cycle: list[str]) -> None:
        super().__init__(
            message=message,
            job=cycle[0] if cycle else None,
            field="dependsOn",
            error_code="CYCLIC_GRAPH",
            details={"cycle": list(cycle)},
        )
        self.cycle = list(cycle)


class InvalidTriggerPatternError(DefinitionError):
    """A branch or path filter is not a well-formed glob pattern."""

    def __init__(self, message: str, job: str, field: str, pattern: Any) -> None:
        super().__init__(
            message=message,
            job=job,
            field=field,
            error_code="INVALID_TRIGGER_PATTERN",
            details={"pattern": pattern},
        )
        self.pattern = pattern


class InvalidConcurrencyGroupError(DefinitionError):
    """A concurrency group name or limit is malformed."""

    def __init__(
        self, message: str, group: Any, job: Optional[str] = None, field: str = "concurrencyGroup",
    ) -> None:
        super().__init__(
            message=message,
            job=job,
            field=field,
            error_code="INVALID_CONCURRENCY_GROUP",
            details={"group": group},
        )
        self.group = group


class UnknownArtifactError(DefinitionError):
    """A job consumes an artifact no upstream job declares as an output."""

    def __init__(self, message: str, job: str, field: str, artifact: str) -> None:
        super().__init__(
            message=message,
            job=job,
            field=field,
            error_code="UNKNOWN_ARTIFACT",
            details={"artifact": artifact},
        )
        self.artifact = artifact


class DependencyError(DefinitionError):
    """Base class for dependency-reference problems."""

    def __init__(
        self,
        message: str,
        job: Optional[str] = None,
        field: Optional[str] = "dependsOn",
        error_code: str = "DEPENDENCY_ERROR",
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(
            message=message, job=job, field=field, error_code=error_code, details=details,
        )


class UnknownDependencyError(DependencyError):
    """A job depends on a job name that does not exist."""

    def __init__(self, message: str, job: str, field: str, dependency: str) -> None:
        super().__init__(
            message=message,
            job=job,
            field=field,
            error_code="UNKNOWN_DEPENDENCY",
            details={"dependency": dependency},
        )
        self.dependency = dependency


# =============================================================================
# Job Errors (runtime, localized to one job)
# =============================================================================
class JobError(RunwayError):
    """Raised when a job fails at runtime.

    The scheduler never lets these escape a run: each one is turned into a
    FailureReason on the failing job.

    Attributes:
        job: Name of the failing job.
        run_id: Run the job belongs to (if known).
    """

    def __init__(
        self,
        message: str,
        job: str,
        run_id: Optional[str] = None,
        error_code: str = "JOB_ERROR",
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        enriched_details = details or {}
        enriched_details["job"] = job
        if run_id:
            enriched_details["run_id"] = run_id

        super().__init__(message=message, error_code=error_code, details=enriched_details)

        self.job = job
        self.run_id = run_id


class StepFailure(JobError):
    """A step exited non-zero and was not marked continue-on-error."""

    def __init__(
        self,
        message: str,
        job: str,
        step: str,
        exit_code: int,
        run_id: Optional[str] = None,
    ) -> None:
        super().__init__(
            message=message,
            job=job,
            run_id=run_id,
            error_code="STEP_FAILURE",
            details={"step": step, "exit_code": exit_code},
        )
        self.step = step
        self.exit_code = exit_code


class WorkerLostError(JobError):
    """The worker executing a job crashed or the executor raised."""

    def __init__(self, message: str, job: str, run_id: Optional[str] = None) -> None:
        super().__init__(message=message, job=job, run_id=run_id, error_code="WORKER_LOST")


class GateFailure(JobError):
    """A quality gate resolved to FAIL (or timed out while pending)."""

    def __init__(
        self, message: str, job: str, gate: str, run_id: Optional[str] = None,
    ) -> None:
        super().__init__(
            message=message,
            job=job,
            run_id=run_id,
            error_code="GATE_FAILURE",
            details={"gate": gate},
        )
        self.gate = gate


class JobTimeoutError(JobError):
    """A job exceeded its timeout_seconds."""

    def __init__(
        self, message: str, job: str, timeout_seconds: float, run_id: Optional[str] = None,
    ) -> None:
        super().__init__(
            message=message,
            job=job,
            run_id=run_id,
            error_code="JOB_TIMEOUT",
            details={"timeout_seconds": timeout_seconds},
        )
        self.timeout_seconds = timeout_seconds


class CancellationTimeout(JobError):
    """A running job did not acknowledge cancellation within the grace period."""

    def __init__(
        self, message: str, job: str, grace_seconds: float, run_id: Optional[str] = None,
    ) -> None:
        super().__init__(
            message=message,
            job=job,
            run_id=run_id,
            error_code="CANCELLATION_TIMEOUT",
            details={"grace_seconds": grace_seconds},
        )


# =============================================================================
# Artifact Errors
# =============================================================================
class ArtifactError(RunwayError):
    """Raised when artifact store operations fail.

    Attributes:
        run_id: Run that owns (or would own) the artifact.
        name: Artifact name.
    """

    def __init__(
        self,
        message: str,
        run_id: str,
        name: str,
        error_code: str = "ARTIFACT_ERROR",
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        enriched_details = details or {}
        enriched_details["run_id"] = run_id
        enriched_details["name"] = name

        super().__init__(message=message, error_code=error_code, details=enriched_details)

        self.run_id = run_id
        self.name = name


class ArtifactConflictError(ArtifactError):
    """An artifact with this (run_id, name) already exists."""

    def __init__(self, message: str, run_id: str, name: str) -> None:
        super().__init__(
            message=message, run_id=run_id, name=name, error_code="ARTIFACT_ALREADY_EXISTS",
        )


class ArtifactNotFoundError(ArtifactError):
    """No artifact with this (run_id, name) exists (or it was collected)."""

    def __init__(self, message: str, run_id: str, name: str) -> None:
        super().__init__(
            message=message, run_id=run_id, name=name, error_code="ARTIFACT_NOT_FOUND",
        )


# =============================================================================
# Run Error
# =============================================================================
class RunError(RunwayError):
    """Raised for run-level misuse: unknown run id, duplicate run id, etc."""

    def __init__(
        self,
        message: str,
        run_id: str,
        error_code: str = "RUN_ERROR",
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        enriched_details = details or {}
        enriched_details["run_id"] = run_id

        super().__init__(message=message, error_code=error_code, details=enriched_details)

        self.run_id = run_id
