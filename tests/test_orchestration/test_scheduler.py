"""
Tests for runway.orchestration.scheduler
==========================================

What's Being Tested:
    - Dependency ordering and failure propagation
    - allow_failure, continue_on_error and trigger skips
    - Retries (retryable and non-retryable reasons)
    - Gates: registered checks, early and late external verdicts, timeout
    - Cancellation, including a worker that ignores it
    - Parallelism and concurrency group limits
    - Artifact passing, job environment, timeouts and lost workers

All tests use the ScriptedExecutor, so nothing is actually executed.
"""

import asyncio
import json
from typing import Callable

import pytest

from runway.core.config import SchedulerConfig
from runway.core.enums import FailureReason, GateOutcome, JobState, RunEventType, RunStatus
from runway.core.exceptions import RunError
from runway.core.models import TriggerEvent
from runway.core.state import RunEvent
from runway.infrastructure.artifact_store import InMemoryArtifactStore
from runway.integrations.executor.mock import ScriptedExecutor
from runway.orchestration.gate_evaluator import GateEvaluator, StaticGateCheck, ThresholdGateCheck
from runway.orchestration.run_ledger import InMemoryRunRepository
from runway.orchestration.scheduler import Scheduler


async def _wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll ``predicate`` until it holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


def _peak_running(events: list[RunEvent], jobs: set[str]) -> int:
    """Highest number of ``jobs`` that were RUNNING at the same time."""
    running: set[str] = set()
    peak = 0
    for event in events:
        if event.event_type != RunEventType.JOB_STATE_CHANGED or event.job not in jobs:
            continue
        if event.state == JobState.RUNNING:
            running.add(event.job)
        else:
            running.discard(event.job)
        peak = max(peak, len(running))
    return peak


def _scheduler(executor: ScriptedExecutor, **config) -> Scheduler:
    return Scheduler(
        executor=executor,
        store=InMemoryArtifactStore(),
        repository=InMemoryRunRepository(),
        config=SchedulerConfig(**config),
    )


# =============================================================================
# Tests: Ordering and Failure Propagation
# =============================================================================
class TestDependencies:
    """Jobs run after their dependencies; failures propagate."""

    async def test_diamond_succeeds(self, scheduler, executor, diamond_graph, push_main) -> None:
        snapshot = await scheduler.run(diamond_graph, push_main)

        assert snapshot.status == RunStatus.SUCCEEDED
        assert snapshot.exit_code == 0
        assert snapshot.jobs_in(JobState.SUCCEEDED) == ["A", "B", "C", "D"]

        order = [call["job"] for call in executor.call_history]
        assert order[0] == "A"
        assert order[-1] == "D"

    async def test_failed_job_skips_dependents(
        self, scheduler, executor, diamond_graph, push_main,
    ) -> None:
        executor.script("C", exit_code=1)

        snapshot = await scheduler.run(diamond_graph, push_main)

        assert snapshot.status == RunStatus.FAILED
        assert snapshot.exit_code == 1
        assert snapshot.jobs["B"].state == JobState.SUCCEEDED
        assert snapshot.jobs["C"].state == JobState.FAILED
        assert snapshot.jobs["C"].reason == FailureReason.STEP_FAILURE
        assert snapshot.jobs["C"].error == "step 'step-1' exited with code 1"
        assert snapshot.jobs["D"].state == JobState.SKIPPED
        assert snapshot.jobs["D"].reason == FailureReason.UPSTREAM_FAILED
        assert executor.calls_for("D") == []

    async def test_skip_cascades_transitively(self, scheduler, executor, parser, push_main) -> None:
        graph = parser.parse({
            "a": {"steps": ["x"]},
            "b": {"dependsOn": ["a"], "steps": ["x"]},
            "c": {"dependsOn": ["b"], "steps": ["x"]},
        })
        executor.script("a", exit_code=2)

        snapshot = await scheduler.run(graph, push_main)

        assert snapshot.jobs["b"].reason == FailureReason.UPSTREAM_FAILED
        assert snapshot.jobs["c"].reason == FailureReason.UPSTREAM_FAILED
        assert set(snapshot.failures()) == {"a", "b", "c"}

    async def test_allowed_failure_satisfies_dependents(
        self, scheduler, executor, parser, push_main,
    ) -> None:
        graph = parser.parse({
            "lint": {"allowFailure": True, "steps": ["ruff ."]},
            "build": {"dependsOn": ["lint"], "steps": ["make"]},
        })
        executor.script("lint", exit_code=1)

        snapshot = await scheduler.run(graph, push_main)

        assert snapshot.jobs["lint"].state == JobState.FAILED
        assert snapshot.jobs["build"].state == JobState.SUCCEEDED
        assert snapshot.status == RunStatus.SUCCEEDED

    async def test_continue_on_error(self, scheduler, executor, parser, push_main) -> None:
        graph = parser.parse({"check": {"steps": [
            {"run": "ruff .", "name": "lint", "continueOnError": True},
            {"run": "pytest", "name": "unit"},
        ]}})
        executor.script("check/lint", exit_code=1)

        snapshot = await scheduler.run(graph, push_main)

        job = snapshot.jobs["check"]
        assert job.state == JobState.SUCCEEDED
        assert [(step.step, step.exit_code, step.continued) for step in job.steps] == [
            ("lint", 1, True),
            ("unit", 0, False),
        ]

    async def test_lost_worker(self, scheduler, executor, parser, push_main) -> None:
        graph = parser.parse({"build": {"steps": ["make"]}})
        executor.script("build", error="runner crashed")

        snapshot = await scheduler.run(graph, push_main)

        assert snapshot.jobs["build"].reason == FailureReason.WORKER_LOST
        assert "runner crashed" in snapshot.jobs["build"].error
        assert snapshot.status == RunStatus.FAILED


# =============================================================================
# Tests: Triggers
# =============================================================================
class TestTriggers:

    async def test_trigger_mismatch_skips_job(self, scheduler, executor, site_graph) -> None:
        snapshot = await scheduler.run(site_graph, TriggerEvent(branch="feature/login"))

        assert snapshot.jobs["deploy"].state == JobState.SKIPPED
        assert snapshot.jobs["deploy"].reason == FailureReason.TRIGGER_MISMATCH
        assert snapshot.status == RunStatus.SUCCEEDED
        assert "deploy" not in snapshot.failures()
        assert executor.calls_for("deploy") == []

    async def test_trigger_skipped_dependency_is_ignored(
        self, scheduler, parser, push_main,
    ) -> None:
        graph = parser.parse({
            "docs": {"trigger": {"paths": ["docs/**"]}, "steps": ["mkdocs build"]},
            "notify": {"dependsOn": ["docs"], "steps": ["./notify.sh"]},
        })

        snapshot = await scheduler.run(
            graph, TriggerEvent(branch="main", changed_paths=["src/app.py"]),
        )

        assert snapshot.jobs["docs"].reason == FailureReason.TRIGGER_MISMATCH
        assert snapshot.jobs["notify"].state == JobState.SUCCEEDED


# =============================================================================
# Tests: Retries
# =============================================================================
class TestRetries:

    async def test_flaky_job_succeeds_on_retry(self, scheduler, executor, parser, push_main) -> None:
        graph = parser.parse({"e2e": {"retry": {"attempts": 2}, "steps": ["npm run e2e"]}})
        executor.script("e2e", exit_code=1, times=1)

        snapshot = await scheduler.run(graph, push_main)

        job = snapshot.jobs["e2e"]
        assert job.state == JobState.SUCCEEDED
        assert job.attempts == 2
        assert [step.attempt for step in job.steps] == [1, 2]
        assert [call["env"]["RUNWAY_ATTEMPT"] for call in executor.calls_for("e2e")] == ["1", "2"]

    async def test_retries_exhausted(self, scheduler, executor, parser, push_main) -> None:
        graph = parser.parse({"e2e": {"retry": {"attempts": 3}, "steps": ["npm run e2e"]}})
        executor.script("e2e", exit_code=1)

        snapshot = await scheduler.run(graph, push_main)

        assert snapshot.jobs["e2e"].state == JobState.FAILED
        assert snapshot.jobs["e2e"].attempts == 3
        assert len(executor.calls_for("e2e")) == 3

    async def test_gate_failure_is_not_retried(
        self, scheduler, executor, gate_evaluator, parser, push_main,
    ) -> None:
        gate_evaluator.register_check(StaticGateCheck("quality", GateOutcome.FAIL))
        graph = parser.parse({"analyze": {
            "retry": {"attempts": 3},
            "steps": ["make", {"gate": "quality"}],
        }})

        snapshot = await scheduler.run(graph, push_main)

        assert snapshot.jobs["analyze"].reason == FailureReason.GATE_FAILURE
        assert len(executor.calls_for("analyze")) == 1

    async def test_retry_reevaluates_gate(
        self, scheduler, executor, gate_evaluator, parser, push_main,
    ) -> None:
        gate_evaluator.register_check(
            ThresholdGateCheck("quality", artifact="metrics", maximums={"bugs": 0}),
        )
        graph = parser.parse({"analyze": {
            "retry": {"attempts": 2},
            "steps": [
                {"run": "make metrics", "name": "measure"},
                {"gate": "quality"},
                {"run": "make report", "name": "report"},
            ],
        }})
        passing = json.dumps({"bugs": 0}).encode()
        failing = json.dumps({"bugs": 9}).encode()
        executor.script("analyze/measure", artifacts={"metrics": passing}, times=1)
        executor.script("analyze/measure", artifacts={"metrics": failing})
        executor.script("analyze/report", exit_code=1, times=1)

        snapshot = await scheduler.run(graph, push_main)

        job = snapshot.jobs["analyze"]
        assert job.state == JobState.FAILED
        assert job.reason == FailureReason.GATE_FAILURE
        assert job.attempts == 2
        assert "bugs=9 is above 0" in job.error


# =============================================================================
# Tests: Gates
# =============================================================================
class TestGates:

    async def test_failing_gate_step(self, scheduler, gate_evaluator, parser, push_main) -> None:
        gate_evaluator.register_check(
            StaticGateCheck("quality", GateOutcome.FAIL, reason="coverage too low"),
        )
        graph = parser.parse({"analyze": {"steps": ["make", {"gate": "quality"}, "make report"]}})

        snapshot = await scheduler.run(graph, push_main)

        job = snapshot.jobs["analyze"]
        assert job.state == JobState.FAILED
        assert job.reason == FailureReason.GATE_FAILURE
        assert "coverage too low" in job.error
        assert job.gate == GateOutcome.FAIL
        assert [step.step for step in job.steps] == ["step-1", "gate-quality"]

    async def test_passing_job_gate(self, scheduler, gate_evaluator, parser, push_main) -> None:
        gate_evaluator.register_check(StaticGateCheck("smoke"))
        graph = parser.parse({"deploy": {"gate": "smoke", "steps": ["./deploy.sh"]}})

        snapshot = await scheduler.run(graph, push_main)

        assert snapshot.jobs["deploy"].state == JobState.SUCCEEDED
        assert snapshot.jobs["deploy"].gate == GateOutcome.PASS

    async def test_early_external_verdict(
        self, scheduler, gate_evaluator, parser, push_main,
    ) -> None:
        graph = parser.parse({"analyze": {"gate": "sonar", "steps": ["make"]}})
        await gate_evaluator.evaluate(
            "run-early", "analyze", {"projectStatus": {"status": "OK"}},
        )

        handle = await scheduler.start_run(graph, push_main, run_id="run-early")
        snapshot = await handle.wait(timeout=2)

        assert snapshot.jobs["analyze"].state == JobState.SUCCEEDED
        gate_events = [
            event for event in handle.ledger.events()
            if event.event_type == RunEventType.GATE_EVALUATED
        ]
        assert gate_events[-1].data == {"gate": "sonar", "outcome": "pass"}

    async def test_gate_results_cleared_when_run_completes(
        self, scheduler, gate_evaluator, parser, push_main,
    ) -> None:
        gate_evaluator.register_check(StaticGateCheck("smoke"))
        graph = parser.parse({"deploy": {"gate": "smoke", "steps": ["./deploy.sh"]}})
        await gate_evaluator.evaluate("run-other", "deploy", True)

        await scheduler.run(graph, push_main, run_id="run-done")

        assert gate_evaluator.results_for_run("run-done") == {}
        assert set(gate_evaluator.results_for_run("run-other")) == {"deploy"}

    async def test_late_external_verdict(
        self, scheduler, gate_evaluator, parser, push_main,
    ) -> None:
        graph = parser.parse({"analyze": {"gate": "sonar", "steps": ["make"]}})
        handle = await scheduler.start_run(graph, push_main, run_id="run-late")

        def pending() -> bool:
            result = gate_evaluator.get_result("run-late", "analyze")
            return result is not None and result.outcome == GateOutcome.PENDING

        await _wait_until(pending)
        await gate_evaluator.evaluate("run-late", "analyze", "error")
        snapshot = await handle.wait(timeout=2)

        assert snapshot.jobs["analyze"].reason == FailureReason.GATE_FAILURE
        gate_events = [
            event for event in handle.ledger.events()
            if event.event_type == RunEventType.GATE_EVALUATED
        ]
        assert gate_events[-1].data == {"gate": "sonar", "outcome": "fail"}

    async def test_unanswered_gate_fails_closed(self, scheduler, parser, push_main) -> None:
        graph = parser.parse({"analyze": {"gate": "sonar", "steps": ["make"]}})

        snapshot = await scheduler.run(graph, push_main)

        assert snapshot.jobs["analyze"].reason == FailureReason.GATE_FAILURE
        assert "pending" in snapshot.jobs["analyze"].error


# =============================================================================
# Tests: Cancellation
# =============================================================================
class TestCancellation:

    async def test_cancel_running_and_blocked_jobs(
        self, scheduler, executor, parser, push_main,
    ) -> None:
        graph = parser.parse({
            "slow": {"steps": ["sleep 3600"]},
            "stubborn": {"steps": ["./ignore-signals.sh"]},
            "after": {"dependsOn": ["slow"], "steps": ["x"]},
        })
        executor.script("slow", hang=True)
        executor.script("stubborn", delay=0.6, ignore_cancel=True)

        handle = await scheduler.start_run(graph, push_main)
        await _wait_until(lambda: len(executor.active) == 2)
        await handle.cancel("superseded by a newer push")
        snapshot = await handle.wait(timeout=2)

        assert snapshot.status == RunStatus.CANCELLED
        assert snapshot.exit_code == 2
        assert snapshot.cancel_requested
        assert snapshot.jobs["slow"].state == JobState.CANCELLED
        assert snapshot.jobs["slow"].reason == FailureReason.CANCELLED
        assert snapshot.jobs["after"].state == JobState.CANCELLED
        assert snapshot.jobs["after"].error == "superseded by a newer push"
        assert snapshot.jobs["stubborn"].state == JobState.CANCELLED
        assert snapshot.jobs["stubborn"].reason == FailureReason.CANCELLATION_TIMEOUT
        assert executor.ignored_cancellations >= 1

        # The abandoned worker finishes on its own without touching the ledger.
        event_count = len(handle.ledger)
        await _wait_until(lambda: not executor.active)
        await asyncio.sleep(0.02)
        assert len(handle.ledger) == event_count

    async def test_cancel_unknown_or_finished_run(
        self, scheduler, diamond_graph, push_main,
    ) -> None:
        assert await scheduler.cancel("run-missing") is False
        snapshot = await scheduler.run(diamond_graph, push_main)
        assert await scheduler.cancel(snapshot.run_id) is False

    async def test_shutdown_cancels_active_runs(
        self, scheduler, executor, parser, push_main,
    ) -> None:
        graph = parser.parse({"slow": {"steps": ["sleep 3600"]}})
        executor.script("slow", hang=True)
        handle = await scheduler.start_run(graph, push_main)
        await _wait_until(lambda: executor.active)
        assert scheduler.active_runs == [handle.run_id]

        await scheduler.shutdown()

        assert handle.snapshot().status == RunStatus.CANCELLED
        assert scheduler.active_runs == []

    async def test_waiter_timeout_does_not_cancel_run(
        self, scheduler, executor, parser, push_main,
    ) -> None:
        graph = parser.parse({"build": {"steps": ["make"]}})
        executor.script("build", delay=0.2)
        handle = await scheduler.start_run(graph, push_main)

        with pytest.raises(asyncio.TimeoutError):
            await handle.wait(timeout=0.01)

        snapshot = await handle.wait(timeout=2)
        assert snapshot.status == RunStatus.SUCCEEDED


# =============================================================================
# Tests: Parallelism
# =============================================================================
class TestParallelism:

    async def test_max_parallel_jobs(self, parser, push_main) -> None:
        executor = ScriptedExecutor(default_delay=0.05)
        scheduler = _scheduler(executor, max_parallel_jobs=2)
        graph = parser.parse({f"job{i}": {"steps": ["x"]} for i in range(6)})

        snapshot = await scheduler.run(graph, push_main)

        assert snapshot.status == RunStatus.SUCCEEDED
        assert executor.peak_active == 2

    async def test_concurrency_group_limit(self, parser, push_main) -> None:
        executor = ScriptedExecutor(default_delay=0.05)
        scheduler = _scheduler(executor, max_parallel_jobs=4)
        graph = parser.parse({
            "concurrency": {"deploy": 1},
            "jobs": {
                "deploy-eu": {"concurrencyGroup": "deploy", "steps": ["x"]},
                "deploy-us": {"concurrencyGroup": "deploy", "steps": ["x"]},
                "deploy-ap": {"concurrencyGroup": "deploy", "steps": ["x"]},
                "lint": {"steps": ["x"]},
            },
        })

        handle = await scheduler.start_run(graph, push_main)
        snapshot = await handle.wait(timeout=5)

        assert snapshot.status == RunStatus.SUCCEEDED
        events = handle.ledger.events()
        assert _peak_running(events, {"deploy-eu", "deploy-us", "deploy-ap"}) == 1
        # lint is not held back by the deploy group.
        assert _peak_running(events, {"deploy-eu", "lint"}) == 2

    async def test_blocked_group_keeps_fifo_order(self, parser, push_main) -> None:
        executor = ScriptedExecutor(default_delay=0.02)
        scheduler = _scheduler(executor, max_parallel_jobs=4)
        graph = parser.parse({
            "concurrency": {"deploy": 1},
            "jobs": {
                "first": {"concurrencyGroup": "deploy", "steps": ["x"]},
                "second": {"concurrencyGroup": "deploy", "steps": ["x"]},
                "third": {"concurrencyGroup": "deploy", "steps": ["x"]},
            },
        })

        await scheduler.run(graph, push_main)

        assert [call["job"] for call in executor.call_history] == ["first", "second", "third"]


# =============================================================================
# Tests: Artifacts and Environment
# =============================================================================
class TestArtifacts:

    async def test_artifacts_flow_downstream(
        self, scheduler, executor, artifact_store, site_graph, push_main,
    ) -> None:
        snapshot = await scheduler.run(site_graph, push_main)

        assert snapshot.status == RunStatus.SUCCEEDED
        assert snapshot.jobs["build"].artifacts == ["site"]
        assert await artifact_store.get(snapshot.run_id, "site") == b"build:site"
        assert executor.calls_for("test")[0]["inputs"] == {"site": b"build:site"}
        download = executor.calls_for("deploy")[0]
        assert download["step"] == "download-site"
        assert download["inputs"]["site"] == b"build:site"

    async def test_artifacts_are_retained_when_run_ends(
        self, scheduler, artifact_store, site_graph, push_main,
    ) -> None:
        snapshot = await scheduler.run(site_graph, push_main)

        ref = await artifact_store.get_ref(snapshot.run_id, "site")
        assert ref.producer == "build"
        assert ref.expires_at is not None

    async def test_missing_declared_output(self, scheduler, parser, push_main) -> None:
        graph = parser.parse({"report": {"outputs": ["coverage"], "steps": ["pytest"]}})

        snapshot = await scheduler.run(graph, push_main)

        assert snapshot.jobs["report"].reason == FailureReason.MISSING_ARTIFACT
        assert "coverage" in snapshot.jobs["report"].error

    async def test_failed_job_stores_nothing(
        self, scheduler, executor, artifact_store, site_graph, push_main,
    ) -> None:
        executor.script("build/compile", exit_code=1)

        snapshot = await scheduler.run(site_graph, push_main)

        assert snapshot.jobs["build"].artifacts == []
        assert await artifact_store.list_run(snapshot.run_id) == []

    async def test_job_environment(self, scheduler, executor, site_graph) -> None:
        event = TriggerEvent(branch="main", sha="abc123")

        snapshot = await scheduler.run(site_graph, event)

        env = executor.calls_for("build")[0]["env"]
        assert env["NODE_ENV"] == "production"
        assert env["CI"] == "true"
        assert env["RUNWAY_RUN_ID"] == snapshot.run_id
        assert env["RUNWAY_PIPELINE"] == "site"
        assert env["RUNWAY_JOB"] == "build"
        assert env["RUNWAY_BRANCH"] == "main"
        assert env["RUNWAY_SHA"] == "abc123"

    async def test_job_timeout(self, scheduler, executor, parser, push_main) -> None:
        graph = parser.parse({"e2e": {"timeoutSeconds": 0.1, "steps": ["npm run e2e"]}})
        executor.script("e2e", hang=True)

        snapshot = await scheduler.run(graph, push_main)

        assert snapshot.jobs["e2e"].reason == FailureReason.JOB_TIMEOUT


# =============================================================================
# Tests: Ledger Integration
# =============================================================================
class TestRunLifecycle:

    async def test_stream_replays_whole_run(self, scheduler, diamond_graph, push_main) -> None:
        handle = await scheduler.start_run(diamond_graph, push_main)
        events = [event async for event in handle.stream()]

        assert [event.offset for event in events] == list(range(len(events)))
        assert events[0].event_type == RunEventType.RUN_STARTED
        assert events[-1].event_type == RunEventType.RUN_COMPLETED
        assert events[-1].data["status"] == "succeeded"
        assert events[-1].data["exit_code"] == 0
        assert events[-1].data["jobs"] == {"succeeded": 4}

    async def test_duplicate_run_id(self, scheduler, diamond_graph, push_main) -> None:
        await scheduler.run(diamond_graph, push_main, run_id="run-1")
        with pytest.raises(RunError) as exc_info:
            await scheduler.start_run(diamond_graph, push_main, run_id="run-1")
        assert exc_info.value.error_code == "DUPLICATE_RUN"

    async def test_terminal_snapshot_is_stable(
        self, scheduler, repository, diamond_graph, push_main,
    ) -> None:
        snapshot = await scheduler.run(diamond_graph, push_main)
        again = await repository.query(snapshot.run_id)
        assert again == snapshot

    async def test_gate_context_reaches_check(self, scheduler, parser, push_main) -> None:
        seen = {}

        class Recording(StaticGateCheck):
            async def evaluate(self, context):
                seen.update(context)
                return await super().evaluate(context)

        evaluator: GateEvaluator = scheduler.gate_evaluator
        evaluator.register_check(Recording("record"))
        graph = parser.parse({"build": {
            "gate": "record",
            "outputs": ["bundle"],
            "steps": [{"upload": "bundle", "path": "dist"}],
        }})

        snapshot = await scheduler.run(graph, push_main)

        assert seen["run_id"] == snapshot.run_id
        assert seen["job"] == "build"
        assert seen["attempt"] == 1
        assert seen["artifacts"] == {"bundle": b"build:bundle"}
