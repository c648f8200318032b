"""
Shared Test Fixtures for Runway
=================================

This module provides reusable pytest fixtures used across the entire
test suite. Fixtures are organized by layer:

    1. Configuration fixtures
    2. Infrastructure fixtures (ArtifactStore)
    3. Orchestration fixtures (parser, gate evaluator, repository, scheduler)
    4. Integration fixtures (scripted executor)
    5. Pipeline definitions
"""

from __future__ import annotations

import pytest
import structlog

from runway.core.config import GateConfig, RunwayConfig, SchedulerConfig
from runway.core.models import PipelineGraph, TriggerEvent
from runway.infrastructure.artifact_store import InMemoryArtifactStore
from runway.integrations.executor.mock import ScriptedExecutor
from runway.orchestration.gate_evaluator import GateEvaluator
from runway.orchestration.parser import PipelineParser
from runway.orchestration.run_ledger import InMemoryRunRepository
from runway.orchestration.scheduler import Scheduler


# =============================================================================
# Configuration
# =============================================================================

@pytest.fixture(autouse=True)
def _reset_logging():
    """Undo configure_logging() calls made by a test."""
    yield
    structlog.reset_defaults()


@pytest.fixture
def config():
    """Runway configuration with defaults."""
    return RunwayConfig()


@pytest.fixture
def scheduler_config():
    """Scheduler configuration with a short cancellation grace period."""
    return SchedulerConfig(max_parallel_jobs=4, cancellation_grace_seconds=0.2)


# =============================================================================
# Infrastructure
# =============================================================================

@pytest.fixture
def artifact_store():
    """Fresh InMemoryArtifactStore."""
    return InMemoryArtifactStore()


# =============================================================================
# Orchestration
# =============================================================================

@pytest.fixture
def parser():
    """PipelineParser with default configuration."""
    return PipelineParser()


@pytest.fixture
def gate_evaluator():
    """GateEvaluator whose pending gates fail after half a second."""
    return GateEvaluator(GateConfig(pending_timeout_seconds=0.5))


@pytest.fixture
def repository():
    """Fresh InMemoryRunRepository."""
    return InMemoryRunRepository()


@pytest.fixture
def scheduler(executor, artifact_store, repository, gate_evaluator, scheduler_config):
    """Scheduler wired to the scripted executor and in-memory stores."""
    return Scheduler(
        executor=executor,
        store=artifact_store,
        repository=repository,
        gate_evaluator=gate_evaluator,
        config=scheduler_config,
    )


# =============================================================================
# Executor
# =============================================================================

@pytest.fixture
def executor():
    """Fresh ScriptedExecutor with nothing scripted (every step passes)."""
    return ScriptedExecutor()


# =============================================================================
# Pipeline Definitions
# =============================================================================

@pytest.fixture
def push_main():
    """A push to main with no changed-path information."""
    return TriggerEvent(branch="main")


@pytest.fixture
def diamond_graph(parser) -> PipelineGraph:
    """{A} -> {B, C} -> {D}."""
    return parser.parse({
        "name": "diamond",
        "jobs": {
            "A": {"steps": ["echo a"]},
            "B": {"dependsOn": ["A"], "steps": ["echo b"]},
            "C": {"dependsOn": ["A"], "steps": ["echo c"]},
            "D": {"dependsOn": ["B", "C"], "steps": ["echo d"]},
        },
    })


@pytest.fixture
def site_graph(parser) -> PipelineGraph:
    """Build, test and deploy a static site, passing the bundle along."""
    return parser.parse({
        "name": "site",
        "env": {"NODE_ENV": "production"},
        "concurrency": {"deploy": 1},
        "jobs": {
            "build": {
                "outputs": ["site"],
                "steps": [
                    {"run": "npm ci", "name": "install"},
                    {"run": "npm run build", "name": "compile"},
                    {"upload": "site", "path": "public/"},
                ],
            },
            "test": {
                "dependsOn": "build",
                "inputs": ["site"],
                "steps": [{"run": "npm test", "name": "unit"}],
            },
            "deploy": {
                "dependsOn": ["test"],
                "concurrencyGroup": "deploy",
                "trigger": {"branches": ["main"]},
                "steps": [
                    {"download": "site", "path": "public/"},
                    {"run": "./deploy.sh", "name": "publish"},
                ],
            },
        },
    })
