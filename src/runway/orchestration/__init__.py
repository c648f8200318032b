"""
runway.orchestration - Pipeline Orchestration Layer
=====================================================

    - parser:          PipelineParser (document → PipelineGraph)
    - scheduler:       Scheduler, RunHandle (graph + trigger → run)
    - gate_evaluator:  GateEvaluator, GateCheck and built-in checks
    - run_ledger:      RunLedger, RunRepository (events and snapshots)
"""

from runway.orchestration.gate_evaluator import (
    GateCheck,
    GateEvaluator,
    GateResult,
    StaticGateCheck,
    ThresholdGateCheck,
)
from runway.orchestration.parser import PipelineParser
from runway.orchestration.run_ledger import (
    InMemoryRunRepository,
    RunLedger,
    RunRepository,
)
from runway.orchestration.scheduler import RunHandle, Scheduler

__all__ = [
    "PipelineParser",
    "Scheduler",
    "RunHandle",
    "GateEvaluator",
    "GateCheck",
    "GateResult",
    "StaticGateCheck",
    "ThresholdGateCheck",
    "RunLedger",
    "RunRepository",
    "InMemoryRunRepository",
]
