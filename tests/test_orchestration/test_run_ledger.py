"""
Tests for runway.orchestration.run_ledger
===========================================

What's Being Tested:
    - Offsets and projection of events into the snapshot
    - Rejected appends (wrong run, closed ledger, illegal transition)
    - stream(): replay, live tail, resume from an offset
    - InMemoryRunRepository lookups
"""

import asyncio

import pytest

from runway.core.enums import FailureReason, GateOutcome, JobState, RunEventType, RunStatus
from runway.core.exceptions import RunError
from runway.core.models import TriggerEvent
from runway.core.state import RunEvent
from runway.orchestration.run_ledger import (
    InMemoryRunRepository,
    RunLedger,
    failure_reason_label,
)


@pytest.fixture
def ledger(diamond_graph) -> RunLedger:
    return RunLedger("run-1", diamond_graph, TriggerEvent(branch="main"))


def _event(event_type: RunEventType, **fields) -> RunEvent:
    return RunEvent(run_id="run-1", event_type=event_type, **fields)


def _move(ledger: RunLedger, job: str, *states: JobState, **fields) -> None:
    for state in states:
        ledger.append(_event(RunEventType.JOB_STATE_CHANGED, job=job, state=state, **fields))


def _complete(ledger: RunLedger, status: RunStatus = RunStatus.SUCCEEDED) -> None:
    ledger.append(_event(
        RunEventType.RUN_COMPLETED,
        data={"status": status.value, "exit_code": status.exit_code},
    ))


# =============================================================================
# Tests: Appending
# =============================================================================
class TestAppend:

    def test_offsets_are_sequential(self, ledger: RunLedger) -> None:
        first = ledger.append(_event(RunEventType.RUN_STARTED))
        second = ledger.append(_event(RunEventType.LOG, job="A", message="hello"))
        assert (first.offset, second.offset) == (0, 1)
        assert len(ledger) == 2

    def test_projection(self, ledger: RunLedger) -> None:
        ledger.append(_event(RunEventType.RUN_STARTED))
        _move(ledger, "A", JobState.BLOCKED, JobState.RUNNABLE)
        _move(ledger, "A", JobState.RUNNING, attempt=1)
        ledger.append(_event(
            RunEventType.STEP_COMPLETED, job="A", step="compile", exit_code=0, attempt=1,
        ))
        ledger.append(_event(
            RunEventType.GATE_EVALUATED, job="A", data={"gate": "smoke", "outcome": "pass"},
        ))
        ledger.append(_event(RunEventType.ARTIFACT_STORED, job="A", data={"name": "bundle"}))
        _move(ledger, "A", JobState.SUCCEEDED)

        snapshot = ledger.snapshot()
        job = snapshot.jobs["A"]
        assert snapshot.status == RunStatus.RUNNING
        assert job.state == JobState.SUCCEEDED
        assert job.attempts == 1
        assert job.steps[0].step == "compile"
        assert job.gate == GateOutcome.PASS
        assert job.artifacts == ["bundle"]
        assert job.started_at is not None and job.finished_at is not None
        assert snapshot.event_count == 8

    def test_failure_reason_recorded(self, ledger: RunLedger) -> None:
        _move(ledger, "B", JobState.BLOCKED)
        _move(
            ledger, "B", JobState.SKIPPED,
            reason=FailureReason.UPSTREAM_FAILED, message="dependency 'A' failed",
        )
        job = ledger.snapshot().jobs["B"]
        assert job.reason == FailureReason.UPSTREAM_FAILED
        assert job.error == "dependency 'A' failed"

    def test_wrong_run_rejected(self, ledger: RunLedger) -> None:
        with pytest.raises(RunError) as exc_info:
            ledger.append(RunEvent(run_id="run-2", event_type=RunEventType.RUN_STARTED))
        assert exc_info.value.error_code == "WRONG_RUN"

    def test_unknown_job_rejected(self, ledger: RunLedger) -> None:
        with pytest.raises(RunError) as exc_info:
            ledger.append(_event(RunEventType.LOG, job="Z", message="?"))
        assert exc_info.value.error_code == "UNKNOWN_JOB"

    def test_illegal_transition_rejected(self, ledger: RunLedger) -> None:
        with pytest.raises(RunError) as exc_info:
            _move(ledger, "A", JobState.SUCCEEDED)
        assert exc_info.value.error_code == "INVALID_TRANSITION"
        assert ledger.snapshot().jobs["A"].state == JobState.PENDING
        assert len(ledger) == 0

    def test_closed_after_completion(self, ledger: RunLedger) -> None:
        ledger.append(_event(RunEventType.RUN_STARTED))
        _complete(ledger, RunStatus.FAILED)
        assert ledger.closed

        with pytest.raises(RunError) as exc_info:
            ledger.append(_event(RunEventType.LOG, job="A", message="late"))
        assert exc_info.value.error_code == "LEDGER_CLOSED"
        assert ledger.snapshot().status == RunStatus.FAILED

    def test_snapshot_is_a_copy(self, ledger: RunLedger) -> None:
        before = ledger.snapshot()
        _move(ledger, "A", JobState.BLOCKED)
        assert before.jobs["A"].state == JobState.PENDING
        assert ledger.snapshot().jobs["A"].state == JobState.BLOCKED


# =============================================================================
# Tests: Streaming
# =============================================================================
class TestStream:

    async def test_replay_of_finished_run(self, ledger: RunLedger) -> None:
        ledger.append(_event(RunEventType.RUN_STARTED))
        _complete(ledger)
        events = [event async for event in ledger.stream()]
        assert [event.offset for event in events] == [0, 1]

    async def test_resume_from_offset(self, ledger: RunLedger) -> None:
        ledger.append(_event(RunEventType.RUN_STARTED))
        ledger.append(_event(RunEventType.LOG, job="A", message="one"))
        _complete(ledger)
        events = [event async for event in ledger.stream(offset=1)]
        assert [event.event_type for event in events] == [
            RunEventType.LOG, RunEventType.RUN_COMPLETED,
        ]
        assert ledger.events(offset=2)[0].event_type == RunEventType.RUN_COMPLETED

    async def test_live_tail(self, ledger: RunLedger) -> None:
        received: list[RunEvent] = []

        async def consume() -> None:
            async for event in ledger.stream():
                received.append(event)

        consumer = asyncio.create_task(consume())
        await asyncio.sleep(0.01)
        ledger.append(_event(RunEventType.RUN_STARTED))
        await asyncio.sleep(0.01)
        assert len(received) == 1

        ledger.append(_event(RunEventType.LOG, job="A", message="building"))
        _complete(ledger)
        await asyncio.wait_for(consumer, 1)
        assert [event.offset for event in received] == [0, 1, 2]


# =============================================================================
# Tests: Repository
# =============================================================================
class TestInMemoryRunRepository:

    async def test_create_and_query(self, repository: InMemoryRunRepository, diamond_graph) -> None:
        ledger = await repository.create("run-1", diamond_graph, TriggerEvent())
        assert await repository.get_ledger("run-1") is ledger
        snapshot = await repository.query("run-1")
        assert snapshot.pipeline == "diamond"
        assert list(snapshot.jobs) == ["A", "B", "C", "D"]

    async def test_duplicate_run(self, repository: InMemoryRunRepository, diamond_graph) -> None:
        await repository.create("run-1", diamond_graph, TriggerEvent())
        with pytest.raises(RunError) as exc_info:
            await repository.create("run-1", diamond_graph, TriggerEvent())
        assert exc_info.value.error_code == "DUPLICATE_RUN"

    async def test_unknown_run(self, repository: InMemoryRunRepository) -> None:
        with pytest.raises(RunError) as exc_info:
            await repository.query("run-404")
        assert exc_info.value.error_code == "RUN_NOT_FOUND"

    async def test_list_runs_by_status(
        self, repository: InMemoryRunRepository, diamond_graph,
    ) -> None:
        first = await repository.create("run-1", diamond_graph, TriggerEvent())
        await repository.create("run-2", diamond_graph, TriggerEvent())
        first.append(RunEvent(run_id="run-1", event_type=RunEventType.RUN_STARTED))

        assert [snap.run_id for snap in await repository.list_runs()] == ["run-1", "run-2"]
        running = await repository.list_runs(RunStatus.RUNNING)
        assert [snap.run_id for snap in running] == ["run-1"]

    async def test_stream_through_repository(
        self, repository: InMemoryRunRepository, diamond_graph,
    ) -> None:
        ledger = await repository.create("run-1", diamond_graph, TriggerEvent())
        ledger.append(RunEvent(run_id="run-1", event_type=RunEventType.RUN_STARTED))
        ledger.append(RunEvent(
            run_id="run-1", event_type=RunEventType.RUN_COMPLETED,
            data={"status": "succeeded", "exit_code": 0},
        ))
        events = [event async for event in repository.stream("run-1")]
        assert len(events) == 2

    async def test_delete(self, repository: InMemoryRunRepository, diamond_graph) -> None:
        await repository.create("run-1", diamond_graph, TriggerEvent())
        assert await repository.delete("run-1") is True
        assert await repository.delete("run-1") is False


def test_failure_reason_label() -> None:
    assert failure_reason_label(FailureReason.UPSTREAM_FAILED) == "upstream failed"
    assert failure_reason_label(None) == "-"
