"""
runway.facade - Runway Top-Level Facade
=========================================

The single entry point that wires every layer together and owns their
lifecycle.

Architecture Context:

    ┌──────────────────────────────────────────────────┐
    │                 Runway (Facade)                   │
    │                                                   │
    │  ┌─────────────────────────────────────────────┐ │
    │  │         Orchestration Layer                   │ │
    │  │  PipelineParser, Scheduler, GateEvaluator     │ │
    │  │  RunRepository (ledgers)                      │ │
    │  └─────────────────────┬───────────────────────┘ │
    │                        │                          │
    │  ┌─────────────────────▼───────────────────────┐ │
    │  │         Infrastructure Layer                  │ │
    │  │  ArtifactStore, RetentionSweeper              │ │
    │  └─────────────────────┬───────────────────────┘ │
    │                        │                          │
    │  ┌─────────────────────▼───────────────────────┐ │
    │  │         Integration Layer                     │ │
    │  │  Executor (local subprocess, scripted)        │ │
    │  └─────────────────────────────────────────────┘ │
    └──────────────────────────────────────────────────┘

Usage:
    >>> async with Runway(config) as runway:
    ...     graph = runway.load_pipeline("pipeline.yaml")
    ...     snapshot = await runway.run(graph, TriggerEvent(branch="main"))
    ...     snapshot.exit_code
    0
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any, Optional, Union

import structlog

from runway.core.config import RunwayConfig
from runway.core.enums import RunStatus
from runway.core.models import PipelineGraph, TriggerEvent
from runway.core.state import RunEvent, RunSnapshot
from runway.infrastructure.artifact_store import (
    ArtifactRef,
    ArtifactStore,
    InMemoryArtifactStore,
    LocalArtifactStore,
    RetentionPolicy,
)
from runway.infrastructure.retention import RetentionSweeper
from runway.integrations.executor.base import Executor
from runway.integrations.executor.factory import create_executor
from runway.orchestration.gate_evaluator import ExternalResult, GateCheck, GateEvaluator, GateResult
from runway.orchestration.parser import PipelineParser
from runway.orchestration.run_ledger import InMemoryRunRepository, RunRepository
from runway.orchestration.scheduler import RunHandle, Scheduler


logger = structlog.get_logger()


def create_artifact_store(config: RunwayConfig) -> ArtifactStore:
    """Artifact store for ``config.artifacts.backend``."""
    artifacts = config.artifacts
    if artifacts.backend == "local":
        return LocalArtifactStore(artifacts.root_dir, allow_overwrite=artifacts.allow_overwrite)
    return InMemoryArtifactStore(allow_overwrite=artifacts.allow_overwrite)


class Runway:
    """Top-level facade for the Runway pipeline engine.

    Lifecycle:
        1. ``Runway(config)``      - build every component from config
        2. ``await initialize()``  - start the retention sweeper
        3. ``load_pipeline()`` / ``run()`` / ``start_run()`` - do work
        4. ``await shutdown()``    - cancel active runs, stop the sweeper

    Or use the async context manager:
        async with Runway(config) as runway:
            ...

    Attributes:
        _config: Runway configuration.
        _parser: Pipeline definition parser.
        _store: Artifact store shared by all runs.
        _sweeper: Background artifact collector.
        _gates: Gate evaluator shared by all runs.
        _repository: Run ledgers owned by this instance.
        _executor: Step executor.
        _scheduler: Run coordinator factory.
        _initialized: Whether initialize() has been called.
    """

    def __init__(
        self,
        config: Optional[RunwayConfig] = None,
        *,
        executor: Optional[Executor] = None,
        artifact_store: Optional[ArtifactStore] = None,
        repository: Optional[RunRepository] = None,
        gate_evaluator: Optional[GateEvaluator] = None,
    ) -> None:
        self._config = config or RunwayConfig()

        self._parser = PipelineParser(self._config.scheduler)
        self._store = artifact_store or create_artifact_store(self._config)
        self._sweeper = RetentionSweeper(
            self._store, interval_seconds=self._config.artifacts.sweep_interval_seconds,
        )
        self._gates = gate_evaluator or GateEvaluator(self._config.gates)
        self._repository = repository or InMemoryRunRepository()
        self._executor = executor or create_executor(self._config.executor)
        self._scheduler = Scheduler(
            executor=self._executor,
            store=self._store,
            repository=self._repository,
            gate_evaluator=self._gates,
            config=self._config.scheduler,
            retention=RetentionPolicy(retention_seconds=self._config.artifacts.retention_seconds),
        )

        self._initialized = False
        self._logger = logger.bind(component="runway")

    # =========================================================================
    # Properties
    # =========================================================================

    @property
    def config(self) -> RunwayConfig:
        return self._config

    @property
    def parser(self) -> PipelineParser:
        return self._parser

    @property
    def scheduler(self) -> Scheduler:
        return self._scheduler

    @property
    def executor(self) -> Executor:
        return self._executor

    @property
    def artifact_store(self) -> ArtifactStore:
        return self._store

    @property
    def gate_evaluator(self) -> GateEvaluator:
        return self._gates

    @property
    def repository(self) -> RunRepository:
        return self._repository

    @property
    def sweeper(self) -> RetentionSweeper:
        return self._sweeper

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def initialize(self) -> None:
        """Start background components. Idempotent."""
        if self._initialized:
            return
        await self._sweeper.start()
        self._initialized = True
        self._logger.info(
            "runway_initialized",
            executor=self._executor.backend_name,
            artifact_backend=self._config.artifacts.backend,
            max_parallel_jobs=self._config.scheduler.max_parallel_jobs,
        )

    async def shutdown(self) -> None:
        """Cancel active runs and stop background components. Idempotent."""
        if not self._initialized:
            return
        await self._scheduler.shutdown()
        await self._sweeper.stop()
        self._initialized = False
        self._logger.info("runway_shutdown_complete")

    async def __aenter__(self) -> Runway:
        await self.initialize()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.shutdown()

    # =========================================================================
    # Pipelines
    # =========================================================================

    def load_pipeline(self, source: Union[str, Path, dict[str, Any]]) -> PipelineGraph:
        """Parse a pipeline from a file path or an already-loaded mapping.

        Raises:
            DefinitionError: If the definition is invalid.
            FileNotFoundError: If a path does not exist.
        """
        if isinstance(source, dict):
            return self._parser.parse(source)
        return self._parser.parse_file(source)

    def register_gate(self, check: GateCheck) -> None:
        self._gates.register_check(check)

    # =========================================================================
    # Runs
    # =========================================================================

    async def start_run(
        self,
        graph: PipelineGraph,
        event: Optional[TriggerEvent] = None,
        run_id: Optional[str] = None,
    ) -> RunHandle:
        return await self._scheduler.start_run(graph, event or TriggerEvent(), run_id=run_id)

    async def run(
        self,
        graph: PipelineGraph,
        event: Optional[TriggerEvent] = None,
        run_id: Optional[str] = None,
    ) -> RunSnapshot:
        """Run ``graph`` to completion and return the final snapshot."""
        handle = await self.start_run(graph, event, run_id=run_id)
        return await handle.wait()

    async def cancel(self, run_id: str, reason: Optional[str] = None) -> bool:
        return await self._scheduler.cancel(run_id, reason)

    async def query(self, run_id: str) -> RunSnapshot:
        return await self._repository.query(run_id)

    def stream(self, run_id: str, offset: int = 0) -> AsyncIterator[RunEvent]:
        return self._repository.stream(run_id, offset)

    async def list_runs(self, status: Optional[RunStatus] = None) -> list[RunSnapshot]:
        return await self._repository.list_runs(status)

    async def submit_gate_result(
        self,
        run_id: str,
        job: str,
        result: ExternalResult,
        gate: Optional[str] = None,
    ) -> GateResult:
        """Deliver an external gate verdict (e.g. from a quality service)."""
        return await self._gates.evaluate(run_id, job, result, gate=gate)

    # =========================================================================
    # Artifacts
    # =========================================================================

    async def get_artifact(self, run_id: str, name: str) -> bytes:
        return await self._store.get(run_id, name)

    async def list_artifacts(self, run_id: str) -> list[ArtifactRef]:
        return await self._store.list_run(run_id)

    async def collect_artifacts(self) -> int:
        """Run one retention sweep now."""
        return await self._sweeper.sweep_once()
