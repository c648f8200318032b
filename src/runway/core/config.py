"""
runway.core.config - Configuration Management
===============================================

This module provides the configuration system for Runway. Configuration
can be loaded from multiple sources with the following priority (highest
first):

    1. Explicit constructor arguments
    2. Environment variables (prefixed with RUNWAY_)
    3. YAML configuration file (runway.yaml)
    4. Default values defined in the models below

Architecture Context:
    The top-level RunwayConfig is created once and passed to the facade,
    which hands each nested section to the component that owns it:

        RunwayConfig
            ├── SchedulerConfig  → Scheduler (parallelism, cancellation grace)
            ├── ArtifactConfig   → ArtifactStore, RetentionSweeper
            ├── GateConfig       → GateEvaluator (pending timeout)
            └── ExecutorConfig   → create_executor() (backend, workspace)

Usage:
    # Load from environment variables:
    config = RunwayConfig()

    # Load from YAML file:
    config = load_config("runway.yaml")

    # Explicit overrides:
    config = RunwayConfig(log_level="DEBUG")

Environment Variables:
    RUNWAY_LOG_LEVEL=DEBUG
    RUNWAY_SCHEDULER__MAX_PARALLEL_JOBS=8
    RUNWAY_ARTIFACTS__BACKEND=local
    RUNWAY_EXECUTOR__BACKEND=local
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Any, Literal, Optional

import structlog
import yaml
from pydantic import BaseModel, Field, ValidationError
from pydantic_settings import BaseSettings

from runway.core.exceptions import ConfigurationError


# =============================================================================
# Scheduler Configuration
# =============================================================================
class SchedulerConfig(BaseModel):
    """Configuration for the scheduler / executor core.

    Attributes:
        max_parallel_jobs: Size of the worker pool, i.e. the maximum number
            of jobs RUNNING at once across all concurrency groups.
        cancellation_grace_seconds: How long running jobs get to acknowledge
            a cancel request before they are force-marked CANCELLED.
        default_group_limit: Limit applied to a concurrency group that the
            pipeline document names but does not bound. None = unlimited.
    """

    max_parallel_jobs: int = Field(
        default=4,
        ge=1,
        le=256,
        description="Maximum number of jobs running simultaneously",
    )
    cancellation_grace_seconds: float = Field(
        default=10.0,
        gt=0,
        le=3600,
        description="Grace period for running jobs to stop after cancel",
    )
    default_group_limit: Optional[int] = Field(
        default=None,
        ge=1,
        description="Limit for concurrency groups without an explicit limit",
    )


# =============================================================================
# Artifact Configuration
# =============================================================================
class ArtifactConfig(BaseModel):
    """Configuration for artifact storage and retention.

    Attributes:
        backend: "memory" keeps blobs in process; "local" writes them under
            root_dir, addressed by sha256 digest.
        root_dir: Directory for the local backend.
        allow_overwrite: Whether put() may replace an existing
            (run_id, name) artifact. False rejects with AlreadyExists.
        retention_seconds: Window after a run finishes before its artifacts
            become eligible for garbage collection.
        sweep_interval_seconds: How often the background sweeper runs.
    """

    backend: Literal["memory", "local"] = Field(
        default="memory",
        description="Artifact store backend: 'memory' or 'local'",
    )
    root_dir: str = Field(
        default=".runway/artifacts",
        description="Root directory for the local artifact backend",
    )
    allow_overwrite: bool = Field(
        default=False,
        description="Allow put() to replace an existing artifact",
    )
    retention_seconds: float = Field(
        default=7 * 24 * 3600.0,
        ge=0,
        description="Retention window after run completion (seconds)",
    )
    sweep_interval_seconds: float = Field(
        default=300.0,
        gt=0,
        description="Interval between retention sweeps (seconds)",
    )


# =============================================================================
# Gate Configuration
# =============================================================================
class GateConfig(BaseModel):
    """Configuration for the gate evaluator.

    Attributes:
        pending_timeout_seconds: How long a PENDING gate holds its job in
            RUNNING before resolving to FAIL.
    """

    pending_timeout_seconds: float = Field(
        default=600.0,
        gt=0,
        description="Seconds a pending gate may wait before failing closed",
    )


# =============================================================================
# Executor Configuration
# =============================================================================
class ExecutorConfig(BaseModel):
    """Configuration for the executor backend.

    Attributes:
        backend: "local" runs commands as subprocesses; "scripted" returns
            canned results (dry runs and tests).
        workspace_dir: Working directory for the local backend.
        shell: Shell used to run commands for the local backend.
        inherit_env: Whether subprocesses inherit the parent's environment.
    """

    backend: Literal["local", "scripted"] = Field(
        default="local",
        description="Executor backend: 'local' or 'scripted'",
    )
    workspace_dir: str = Field(
        default=".",
        description="Working directory for local command execution",
    )
    shell: str = Field(
        default="/bin/sh",
        description="Shell used by the local executor",
    )
    inherit_env: bool = Field(
        default=True,
        description="Pass the parent process environment to steps",
    )


# =============================================================================
# Main Configuration
# =============================================================================
# Environment Variable Mapping:
#   RUNWAY_LOG_LEVEL                       → config.log_level
#   RUNWAY_SCHEDULER__MAX_PARALLEL_JOBS    → config.scheduler.max_parallel_jobs
#   RUNWAY_ARTIFACTS__RETENTION_SECONDS    → config.artifacts.retention_seconds
#   RUNWAY_GATES__PENDING_TIMEOUT_SECONDS  → config.gates.pending_timeout_seconds
# =============================================================================
class RunwayConfig(BaseSettings):
    """Top-level configuration for the Runway engine.

    Attributes:
        log_level: Logging level for structlog output.
        scheduler: Scheduler configuration (see SchedulerConfig).
        artifacts: Artifact store configuration (see ArtifactConfig).
        gates: Gate evaluator configuration (see GateConfig).
        executor: Executor backend configuration (see ExecutorConfig).
    """

    log_level: str = Field(
        default="INFO",
        description="Logging level: DEBUG, INFO, WARNING, ERROR, CRITICAL",
    )

    scheduler: SchedulerConfig = Field(
        default_factory=SchedulerConfig,
        description="Scheduler configuration",
    )
    artifacts: ArtifactConfig = Field(
        default_factory=ArtifactConfig,
        description="Artifact store configuration",
    )
    gates: GateConfig = Field(
        default_factory=GateConfig,
        description="Gate evaluator configuration",
    )
    executor: ExecutorConfig = Field(
        default_factory=ExecutorConfig,
        description="Executor backend configuration",
    )

    model_config = {
        "env_prefix": "RUNWAY_",
        "env_nested_delimiter": "__",
        "case_sensitive": False,
    }


# =============================================================================
# Configuration Loader
# =============================================================================
def load_config(path: Optional[str] = None) -> RunwayConfig:
    """Load Runway configuration from a YAML file and/or environment variables.

    Args:
        path: Path to a YAML configuration file. If None, looks for
            'runway.yaml' in the current directory. If that doesn't exist
            either, uses pure defaults + environment variables.

    Returns:
        A fully validated RunwayConfig instance.

    Raises:
        ConfigurationError: If the YAML file is malformed or holds
            invalid values.
        FileNotFoundError: If an explicit path is provided but doesn't exist.
    """
    if path is None:
        default_path = Path("runway.yaml")
        if default_path.exists():
            path = str(default_path)

    yaml_data: dict[str, Any] = {}
    if path is not None:
        config_path = Path(path)
        if not config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {path}")

        with open(config_path) as f:
            try:
                raw_data = yaml.safe_load(f)
            except yaml.YAMLError as e:
                raise ConfigurationError(
                    message=f"Invalid YAML in configuration file {path}: {e}",
                    error_code="INVALID_CONFIG_YAML",
                    details={"path": path},
                ) from e
            if isinstance(raw_data, dict):
                yaml_data = raw_data

    try:
        return RunwayConfig(**yaml_data)
    except ValidationError as e:
        raise ConfigurationError(
            message=f"Invalid configuration: {e.error_count()} error(s)",
            error_code="INVALID_CONFIG",
            details={"errors": e.errors(include_url=False)},
        ) from e


def get_default_config() -> RunwayConfig:
    """Create a RunwayConfig with all defaults (plus any RUNWAY_ env vars)."""
    return RunwayConfig()


# =============================================================================
# Logging Setup
# =============================================================================
def configure_logging(level: str = "INFO") -> None:
    """Configure structlog to drop records below ``level``.

    Library code only ever calls ``structlog.get_logger()``; this is for
    entry points such as the CLI.

    Args:
        level: Standard logging level name.

    Raises:
        ConfigurationError: If the level name is unknown.
    """
    numeric = logging.getLevelName(level.upper())
    if not isinstance(numeric, int):
        raise ConfigurationError(
            message=f"Unknown log level: {level!r}",
            error_code="INVALID_LOG_LEVEL",
            details={"level": level},
        )
    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(numeric),
        logger_factory=structlog.PrintLoggerFactory(sys.stderr),
    )
