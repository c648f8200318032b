"""
Dry Run Example - Exercise a Pipeline Without Running Anything
================================================================

This example loads examples/site-pipeline.yaml and runs it with the
scripted executor, so no command actually executes. Outcomes are
scripted to show a retried test job and a quality gate fed by a
metrics artifact.

This is useful for:
    - Checking the shape of a pipeline before wiring real commands
    - Seeing how failures and gates propagate through the graph

Usage:
    python examples/dry_run.py
"""

from __future__ import annotations

import asyncio
import json
from pathlib import Path

from runway.cli import format_event
from runway.core.config import ExecutorConfig, RunwayConfig
from runway.core.models import TriggerEvent
from runway.facade import Runway
from runway.orchestration.gate_evaluator import ThresholdGateCheck
from runway.orchestration.run_ledger import failure_reason_label


PIPELINE = Path(__file__).with_name("site-pipeline.yaml")


async def main() -> None:
    """Dry-run the site pipeline and print its event log."""
    config = RunwayConfig(executor=ExecutorConfig(backend="scripted"))

    async with Runway(config) as runway:
        # Unit tests fail once, then pass on the retry
        runway.executor.script("test/unit", exit_code=1, times=1)
        # The test job reports coverage for the quality gate
        runway.executor.script(
            "test/unit",
            artifacts={"metrics": json.dumps({"coverage": {"line": 86.0}}).encode()},
        )
        runway.register_gate(
            ThresholdGateCheck("quality", artifact="metrics", minimums={"coverage.line": 80}),
        )

        graph = runway.load_pipeline(PIPELINE)
        handle = await runway.start_run(graph, TriggerEvent(branch="main"))
        async for event in handle.stream():
            print(format_event(event))
        snapshot = await handle.wait()

        print()
        print(f"Run {snapshot.run_id}: {snapshot.status.value} (exit {snapshot.exit_code})")
        print("-" * 40)
        for name, job in snapshot.jobs.items():
            print(f"{name:<10} {job.state.value:<10} {failure_reason_label(job.reason)}")


if __name__ == "__main__":
    asyncio.run(main())
