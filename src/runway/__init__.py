"""
Runway - Declarative CI/CD Pipeline Engine
============================================

Runway parses a declarative pipeline definition into a job graph, runs
the graph against a trigger event with bounded parallelism, retries and
quality gates, and reports every state change as an ordered event log:

    pipeline.yaml  →  PipelineParser  →  PipelineGraph
                                            │
    TriggerEvent  ──────────────────────→  Scheduler  →  Executor (steps)
                                            │      ↘
                                       RunLedger    ArtifactStore
                                  (snapshots, events)  (per-run blobs)

Architecture Layers (top to bottom):
    1. Orchestration Layer  - Parser, Scheduler, Gate Evaluator, Run Ledger
    2. Infrastructure Layer - Artifact Store, Retention Sweeper
    3. Integration Layer    - Executors (local subprocess, scripted)

Quick Start:
    >>> from runway import Runway
    >>> async with Runway() as runway:
    ...     graph = runway.load_pipeline("pipeline.yaml")
    ...     snapshot = await runway.run(graph)
"""

# =============================================================================
# Package Version
# =============================================================================
# Single source of truth for the package version:
#   from runway import __version__
# =============================================================================
__version__ = "0.1.0"

# =============================================================================
# Package-Level Exports
# =============================================================================
# The Runway facade is the main entry point. For specific components,
# import from submodules directly:
#   from runway.core.config import RunwayConfig
#   from runway.core.models import TriggerEvent
#   from runway.orchestration import PipelineParser
# =============================================================================
from runway.facade import Runway

__all__ = ["Runway", "__version__"]
