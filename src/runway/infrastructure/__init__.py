"""
runway.infrastructure - Storage Layer
=======================================

Persistence for the work products that flow between jobs.

Architecture:
    ┌─────────────── ORCHESTRATION LAYER ─────────────────┐
    │  Scheduler, GateEvaluator, RunLedger                 │
    └─────────────────────┬───────────────────────────────┘
                          │ put / get / retain
                          ▼
    ┌─────────────── INFRASTRUCTURE LAYER ────────────────┐
    │  ArtifactStore (ABC)                                │
    │    ├── InMemoryArtifactStore                        │
    │    └── LocalArtifactStore                           │
    │  RetentionSweeper (background collect())            │
    └──────────────────────────────────────────────────────┘

Usage:
    from runway.infrastructure import InMemoryArtifactStore, RetentionPolicy
"""

from runway.infrastructure.artifact_store import (
    ArtifactRef,
    ArtifactStore,
    InMemoryArtifactStore,
    LocalArtifactStore,
    RetentionPolicy,
)
from runway.infrastructure.retention import RetentionSweeper

__all__ = [
    "ArtifactRef",
    "ArtifactStore",
    "InMemoryArtifactStore",
    "LocalArtifactStore",
    "RetentionPolicy",
    "RetentionSweeper",
]
