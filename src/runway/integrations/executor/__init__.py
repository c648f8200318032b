"""
runway.integrations.executor - Step Executors
===============================================

The executor abstraction. Workers run steps through the Executor
interface so the backend can be swapped without touching the scheduler.

Available Executors:
    - Executor:             Abstract base class defining the contract.
    - LocalProcessExecutor: Shell commands in a local workspace directory.
    - ScriptedExecutor:     Pre-scripted outcomes (tests and dry runs).

Usage:
    >>> from runway.integrations.executor import create_executor
    >>> executor = create_executor(config.executor)
    >>> result = await executor.execute(step, env)
"""

from runway.integrations.executor.base import ExecutionResult, Executor
from runway.integrations.executor.factory import create_executor
from runway.integrations.executor.local import LocalProcessExecutor
from runway.integrations.executor.mock import ScriptedExecutor, ScriptedOutcome

__all__ = [
    "Executor",
    "ExecutionResult",
    "LocalProcessExecutor",
    "ScriptedExecutor",
    "ScriptedOutcome",
    "create_executor",
]
