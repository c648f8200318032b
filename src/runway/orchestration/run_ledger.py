"""
runway.orchestration.run_ledger - Run Ledger & Status Reporting
=================================================================

Every run owns one RunLedger: an append-only list of RunEvents plus a
RunSnapshot kept up to date as events arrive. The scheduler (and its
workers) are the only writers; everyone else reads.

Architecture:

    ┌──────────────┐  append(event)   ┌───────────────────────────┐
    │ Coordinator   │ ───────────────→ │ RunLedger                  │
    │ + workers     │                  │   events: [e0, e1, e2 ...] │
    └──────────────┘                  │   snapshot (folded)        │
                                      └─────────────┬─────────────┘
                    snapshot() ── deep copy ────────┤
                    events(offset) ── list slice ───┤
                    stream(offset) ── async iter ───┘  (ends after RUN_COMPLETED)

    RunRepository: run_id → RunLedger (create / get / query / stream / list)

Offsets:
    Events are numbered 0, 1, 2, ... in append order. A client that saw up
    to offset N reconnects with ``stream(N + 1)`` and misses nothing.

Closing:
    RUN_COMPLETED is the last event of a ledger. Appending after it raises
    RunError, so a terminal run's snapshot never changes again.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from typing import Optional

import structlog

from runway.core.enums import (
    JOB_TRANSITIONS,
    FailureReason,
    GateOutcome,
    JobState,
    RunEventType,
    RunStatus,
)
from runway.core.exceptions import RunError
from runway.core.models import PipelineGraph, TriggerEvent
from runway.core.state import JobSnapshot, RunEvent, RunSnapshot, StepResult


# =============================================================================
# Logger
# =============================================================================
logger = structlog.get_logger()


# =============================================================================
# Run Ledger
# =============================================================================
class RunLedger:
    """Append-only event log of a single run, with a live snapshot.

    Attributes:
        _events: Every event, index == offset.
        _snapshot: Projection of ``_events``; never handed out directly.
        _closed: Set once RUN_COMPLETED has been appended.
        _waiter: Event replaced on every append; ``stream()`` sleeps on it.

    Example:
        >>> ledger = RunLedger("run-1", graph, TriggerEvent(branch="main"))
        >>> ledger.append(RunEvent(run_id="run-1", event_type=RunEventType.RUN_STARTED))
        >>> async for event in ledger.stream():
        ...     print(event.offset, event.event_type)
    """

    def __init__(self, run_id: str, pipeline: PipelineGraph, trigger: TriggerEvent) -> None:
        self._run_id = run_id
        self._events: list[RunEvent] = []
        self._snapshot = RunSnapshot(
            run_id=run_id,
            pipeline=pipeline.name,
            trigger=trigger,
            jobs={
                name: JobSnapshot(name=name, allow_failure=job.allow_failure)
                for name, job in pipeline.jobs.items()
            },
        )
        self._closed = False
        self._waiter = asyncio.Event()
        self._logger = logger.bind(component="run_ledger", run_id=run_id)

    @property
    def run_id(self) -> str:
        return self._run_id

    @property
    def closed(self) -> bool:
        return self._closed

    def __len__(self) -> int:
        return len(self._events)

    # =========================================================================
    # Writing
    # =========================================================================

    def append(self, event: RunEvent) -> RunEvent:
        """Assign the next offset to ``event``, store it and fold it in.

        Returns:
            The stored event (a copy carrying its offset).

        Raises:
            RunError: If the event belongs to another run, the ledger is
                closed, or a job state change is not a legal transition.
        """
        if event.run_id != self._run_id:
            raise RunError(
                message=f"Event for run {event.run_id} appended to ledger of {self._run_id}",
                run_id=self._run_id,
                error_code="WRONG_RUN",
            )
        if self._closed:
            raise RunError(
                message=f"Run {self._run_id} is complete; its ledger is closed",
                run_id=self._run_id,
                error_code="LEDGER_CLOSED",
                details={"event_type": event.event_type.value},
            )

        stored = event.model_copy(update={"offset": len(self._events)})
        self._apply(stored)
        self._events.append(stored)
        if stored.event_type == RunEventType.RUN_COMPLETED:
            self._closed = True

        waiter, self._waiter = self._waiter, asyncio.Event()
        waiter.set()
        return stored

    # =========================================================================
    # Reading
    # =========================================================================

    def snapshot(self) -> RunSnapshot:
        """Deep copy of the current state; later events never change it."""
        return self._snapshot.model_copy(deep=True)

    def events(self, offset: int = 0) -> list[RunEvent]:
        """Events from ``offset`` on (already recorded ones only)."""
        return list(self._events[max(offset, 0):])

    async def stream(self, offset: int = 0) -> AsyncIterator[RunEvent]:
        """Yield events from ``offset``, waiting for new ones as they come.

        The iterator ends after RUN_COMPLETED has been yielded, so iterating
        a finished run replays it and stops.
        """
        offset = max(offset, 0)
        while True:
            while offset < len(self._events):
                yield self._events[offset]
                offset += 1
            if self._closed:
                return
            await self._waiter.wait()

    # =========================================================================
    # Projection
    # =========================================================================

    def _apply(self, event: RunEvent) -> None:
        snap = self._snapshot

        if event.event_type == RunEventType.RUN_STARTED:
            snap.status = RunStatus.RUNNING
        elif event.event_type == RunEventType.CANCEL_REQUESTED:
            snap.cancel_requested = True
        elif event.event_type == RunEventType.RUN_COMPLETED:
            snap.status = RunStatus(event.data["status"])
            snap.finished_at = event.timestamp
        elif event.job is not None:
            job = snap.jobs.get(event.job)
            if job is None:
                raise RunError(
                    message=f"Unknown job '{event.job}' in run {self._run_id}",
                    run_id=self._run_id,
                    error_code="UNKNOWN_JOB",
                )
            self._apply_job_event(job, event)

        snap.event_count += 1

    def _apply_job_event(self, job: JobSnapshot, event: RunEvent) -> None:
        if event.event_type == RunEventType.JOB_STATE_CHANGED:
            target = event.state
            if target is None or target not in JOB_TRANSITIONS[job.state]:
                raise RunError(
                    message=(
                        f"Illegal transition for job '{job.name}': "
                        f"{job.state.value} -> {target.value if target else None}"
                    ),
                    run_id=self._run_id,
                    error_code="INVALID_TRANSITION",
                    details={"job": job.name},
                )
            job.state = target
            if target == JobState.RUNNING:
                job.attempts = event.attempt or job.attempts + 1
                job.started_at = job.started_at or event.timestamp
            if target in (JobState.FAILED, JobState.SKIPPED, JobState.CANCELLED):
                job.reason = event.reason
                job.error = event.message
            if target.is_terminal:
                job.finished_at = event.timestamp

        elif event.event_type == RunEventType.STEP_COMPLETED:
            job.steps.append(StepResult(
                step=event.step or "",
                attempt=event.attempt or job.attempts,
                exit_code=event.exit_code if event.exit_code is not None else 0,
                continued=bool(event.data.get("continued")),
            ))
        elif event.event_type == RunEventType.GATE_EVALUATED:
            job.gate = GateOutcome(event.data["outcome"])
        elif event.event_type == RunEventType.ARTIFACT_STORED:
            job.artifacts.append(event.data["name"])


# =============================================================================
# Run Repository
# =============================================================================
# Owned by the Runway facade instance; there is no module-level registry.
# =============================================================================
class RunRepository(ABC):
    """Abstract store of run ledgers.

    Methods:
        create(run_id, pipeline, trigger): Start a new ledger.
        get_ledger(run_id): The live ledger of a run.
        query(run_id): Snapshot of a run.
        stream(run_id, offset): Event stream of a run.
        list_runs(status): Snapshots of all runs, oldest first.
        delete(run_id): Forget a run.
    """

    @abstractmethod
    async def create(
        self, run_id: str, pipeline: PipelineGraph, trigger: TriggerEvent,
    ) -> RunLedger:
        """Create the ledger for a new run.

        Raises:
            RunError: If ``run_id`` is already in use.
        """

    @abstractmethod
    async def get_ledger(self, run_id: str) -> RunLedger:
        """Return the ledger of ``run_id``.

        Raises:
            RunError: If the run is unknown.
        """

    @abstractmethod
    async def list_runs(self, status: Optional[RunStatus] = None) -> list[RunSnapshot]:
        """Snapshots of all runs (optionally only those with ``status``)."""

    @abstractmethod
    async def delete(self, run_id: str) -> bool:
        """Forget ``run_id``; False if it was unknown."""

    async def query(self, run_id: str) -> RunSnapshot:
        ledger = await self.get_ledger(run_id)
        return ledger.snapshot()

    async def stream(self, run_id: str, offset: int = 0) -> AsyncIterator[RunEvent]:
        ledger = await self.get_ledger(run_id)
        async for event in ledger.stream(offset):
            yield event


class InMemoryRunRepository(RunRepository):
    """Dict-backed repository; runs live as long as the process."""

    def __init__(self) -> None:
        self._ledgers: dict[str, RunLedger] = {}
        self._logger = logger.bind(component="run_repository")

    async def create(
        self, run_id: str, pipeline: PipelineGraph, trigger: TriggerEvent,
    ) -> RunLedger:
        if run_id in self._ledgers:
            raise RunError(
                message=f"Run {run_id} already exists",
                run_id=run_id,
                error_code="DUPLICATE_RUN",
            )
        ledger = RunLedger(run_id, pipeline, trigger)
        self._ledgers[run_id] = ledger
        self._logger.debug("run_created", run_id=run_id, pipeline=pipeline.name)
        return ledger

    async def get_ledger(self, run_id: str) -> RunLedger:
        ledger = self._ledgers.get(run_id)
        if ledger is None:
            raise RunError(
                message=f"Run {run_id} not found",
                run_id=run_id,
                error_code="RUN_NOT_FOUND",
            )
        return ledger

    async def list_runs(self, status: Optional[RunStatus] = None) -> list[RunSnapshot]:
        snapshots = [ledger.snapshot() for ledger in self._ledgers.values()]
        if status is not None:
            snapshots = [snap for snap in snapshots if snap.status == status]
        return sorted(snapshots, key=lambda snap: snap.started_at)

    async def delete(self, run_id: str) -> bool:
        return self._ledgers.pop(run_id, None) is not None


def failure_reason_label(reason: Optional[FailureReason]) -> str:
    """Short label for status output (``-`` when there is no reason)."""
    return reason.value.replace("_", " ") if reason else "-"
