"""
runway.integrations.executor.factory - Executor Factory
=========================================================

Maps ``ExecutorConfig.backend`` to a concrete executor.

Usage:
    >>> from runway.integrations.executor import create_executor
    >>> executor = create_executor(ExecutorConfig(backend="scripted"))
    >>> type(executor)  # ScriptedExecutor
"""

from __future__ import annotations

from runway.core.config import ExecutorConfig
from runway.core.exceptions import ConfigurationError
from runway.integrations.executor.base import Executor


def create_executor(config: ExecutorConfig) -> Executor:
    """Create an executor instance based on configuration.

        - "local"    → LocalProcessExecutor (shell commands in workspace_dir)
        - "scripted" → ScriptedExecutor (no side effects, dry runs and tests)

    Raises:
        ConfigurationError: If the backend name is not recognized.
    """
    backend = config.backend.lower()

    if backend == "local":
        from runway.integrations.executor.local import LocalProcessExecutor
        return LocalProcessExecutor(config)

    if backend == "scripted":
        from runway.integrations.executor.mock import ScriptedExecutor
        return ScriptedExecutor(config)

    raise ConfigurationError(
        message=f"Unknown executor backend: '{backend}'. Supported: local, scripted",
        error_code="UNKNOWN_EXECUTOR",
        details={"backend": backend},
    )
