"""
runway.integrations.executor.base - Abstract Executor Interface
=================================================================

This module defines the contract every executor backend implements. It is
the bridge between the scheduler and whatever actually runs a step's
command (a local shell, a container runtime, a remote runner).

Architecture Context:
    Workers never spawn processes themselves. They call the executor
    through this abstract interface, one step at a time:

    ┌───────────────┐   execute(step, env)   ┌──────────────────┐
    │  Job worker    │ ────────────────────→ │  Executor         │
    │  (scheduler)   │                       │  (abstract)       │
    │                │ ←── ExecutionResult ─ │                   │
    └───────────────┘                       └──────────┬────────┘
                                                       │
                                            ┌──────────┴────────┐
                                            │                   │
                                     ┌──────▼─────┐    ┌───────▼──────┐
                                     │  Scripted   │    │ LocalProcess │
                                     │  (tests)    │    │ (subprocess) │
                                     └────────────┘    └──────────────┘

ExecutionResult:
    - exit_code: 0 for success, anything else is a step failure
    - artifacts: name → bytes collected by the step (upload steps)
    - logs: output lines, appended to the run ledger as LOG events

Cancellation Contract:
    The scheduler cancels a worker with ``Task.cancel()``. The resulting
    CancelledError is raised inside ``execute``; implementations must stop
    the underlying work and let the error propagate.

Usage:
    >>> class MyExecutor(Executor):
    ...     async def execute(self, step, env, inputs=None):
    ...         code = await my_runner(step.command, env)
    ...         return ExecutionResult(exit_code=code)
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional

from pydantic import BaseModel, Field

from runway.core.config import ExecutorConfig
from runway.core.models import Step


# =============================================================================
# Execution Result Model
# =============================================================================
class ExecutionResult(BaseModel):
    """Standardized outcome of executing one step.

    Attributes:
        exit_code: Process-style exit status. 0 means success.
        artifacts: Artifact name → content produced by the step.
        logs: Output lines in the order they were produced.

    Example:
        >>> result = ExecutionResult(exit_code=0, logs=["ok"])
        >>> result.succeeded  # True
    """

    exit_code: int = Field(default=0)
    artifacts: dict[str, bytes] = Field(default_factory=dict)
    logs: list[str] = Field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0


# =============================================================================
# Abstract Base Class
# =============================================================================
class Executor(ABC):
    """Abstract base class for all step executors.

    Subclasses must implement:
        - execute(): Run one step and report its outcome.

    What the base class provides:
        - Config storage and the ``backend_name`` property.
        - ``merge_env()`` to layer step env on top of the caller's env.
        - A consistent ``__repr__``.

    Args (execute):
        step: The step to run. RUN and UPLOAD_ARTIFACT/DOWNLOAD_ARTIFACT
            kinds are handled by executors; GATE steps never reach them.
        env: Environment prepared by the scheduler (pipeline + job env,
            plus RUNWAY_* variables describing the run and job).
        inputs: Artifact name → content made available to the step
            (declared job inputs and the artifact of a download step).
    """

    def __init__(self, config: Optional[ExecutorConfig] = None) -> None:
        self._config = config or ExecutorConfig()

    @property
    def config(self) -> ExecutorConfig:
        return self._config

    @property
    def backend_name(self) -> str:
        return self._config.backend

    @staticmethod
    def merge_env(env: dict[str, str], step: Step) -> dict[str, str]:
        """Caller env overlaid with the step's own env (step wins)."""
        merged = dict(env)
        merged.update(step.env)
        return merged

    @abstractmethod
    async def execute(
        self,
        step: Step,
        env: dict[str, str],
        inputs: Optional[dict[str, bytes]] = None,
    ) -> ExecutionResult:
        """Execute ``step`` and return its result.

        Returns:
            An ExecutionResult. A non-zero exit code is a normal outcome
            (the step failed); exceptions mean the worker itself broke and
            are treated by the scheduler as a lost worker.

        Raises:
            asyncio.CancelledError: When the worker is cancelled.
        """
        ...

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(backend={self.backend_name!r})"
