"""
runway.infrastructure.retention - Background Artifact Collection
==================================================================

The scheduler only *marks* a finished run's artifacts for expiry
(``ArtifactStore.retain``). Actually deleting them is the job of the
RetentionSweeper: a background task that calls ``ArtifactStore.collect()``
on a fixed interval, so run completion reporting never waits on garbage
collection.

Lifecycle:
    sweeper = RetentionSweeper(store, interval_seconds=300)
    await sweeper.start()      # spawns the background task
    ...
    await sweeper.sweep_once() # manual sweep (tests, CLI)
    await sweeper.stop()       # cancels the task and waits for it
"""

from __future__ import annotations

import asyncio
from typing import Optional

import structlog

from runway.core.exceptions import RunwayError
from runway.infrastructure.artifact_store import ArtifactStore


logger = structlog.get_logger()


class RetentionSweeper:
    """Periodically garbage-collects expired artifacts.

    Attributes:
        _store: The artifact store to sweep.
        _interval: Seconds between sweeps.
        _task: The background asyncio task (None when stopped).
        _collected_total: Artifacts removed since start (for status/tests).
    """

    def __init__(self, store: ArtifactStore, interval_seconds: float = 300.0) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self._store = store
        self._interval = interval_seconds
        self._task: Optional[asyncio.Task[None]] = None
        self._collected_total = 0
        self._logger = logger.bind(component="retention_sweeper")

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def collected_total(self) -> int:
        return self._collected_total

    async def start(self) -> None:
        """Start the background sweep loop (idempotent)."""
        if self.is_running:
            return
        self._task = asyncio.create_task(self._loop(), name="runway-retention-sweeper")
        self._logger.info("retention_sweeper_started", interval_seconds=self._interval)

    async def stop(self) -> None:
        """Stop the background loop and wait for it to exit."""
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        self._logger.info("retention_sweeper_stopped", collected_total=self._collected_total)

    async def sweep_once(self) -> int:
        """Run a single collection pass now.

        Returns:
            Number of artifacts removed.
        """
        removed = await self._store.collect()
        self._collected_total += removed
        return removed

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            try:
                await self.sweep_once()
            except RunwayError as e:
                # One failed pass must not kill the loop; the next pass retries.
                self._logger.warning("retention_sweep_failed", **e.to_dict())
            except OSError as e:
                self._logger.warning("retention_sweep_failed", error=str(e))
