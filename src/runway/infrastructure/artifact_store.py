"""
runway.infrastructure.artifact_store - Artifact Persistence Layer
===================================================================

This module provides artifact storage for Runway. Artifacts are the named
outputs a job hands to its dependents within the same run: a built site,
a coverage report, a test-results bundle.

Architecture Context:
    ┌───────────────┐   put(run, name, bytes)   ┌──────────────────────┐
    │  build job     │ ───────────────────────→ │    ArtifactStore      │
    └───────────────┘                           │                      │
    ┌───────────────┐   get(run, name)          │  refs: (run, name)   │
    │  deploy job    │ ←─────────────────────── │    → ArtifactRef     │
    └───────────────┘                           │  blobs: digest→bytes │
                                                └──────────────────────┘

Key Schema:
    Artifacts are keyed by (run_id, name). The content itself is stored
    once per sha256 digest, so two runs uploading the same bundle share a
    single blob. A blob is deleted when its last reference is collected.

Write-Once Semantics:
    ``put`` for an existing (run_id, name) raises ArtifactConflictError
    unless the store was created with ``allow_overwrite=True``.

Retention Lifecycle:
    1. Run reaches a terminal state → scheduler calls ``retain(run_id, policy)``
       which stamps ``expires_at`` on that run's artifacts (cheap, no I/O).
    2. RetentionSweeper (see retention.py) periodically calls ``collect()``
       which drops expired references and unreferenced blobs.

Storage Implementations:
    - InMemoryArtifactStore: Dict-based, for development/testing
    - LocalArtifactStore:    Directory-based, blobs addressed by digest

Usage:
    >>> store = InMemoryArtifactStore()
    >>> ref = await store.put("run-1", "site", b"<html>...</html>", producer="build")
    >>> content = await store.get("run-1", "site")
    >>> await store.retain("run-1", RetentionPolicy(retention_seconds=3600))
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import re
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional, Union

import structlog
from pydantic import BaseModel, Field

from runway.core.exceptions import (
    ArtifactConflictError,
    ArtifactError,
    ArtifactNotFoundError,
)


# =============================================================================
# Logger
# =============================================================================
logger = structlog.get_logger()

ArtifactContent = Union[bytes, str]


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _digest(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def _as_bytes(content: ArtifactContent) -> bytes:
    if isinstance(content, str):
        return content.encode("utf-8")
    return bytes(content)


# =============================================================================
# Models
# =============================================================================
class RetentionPolicy(BaseModel):
    """How long a finished run's artifacts are kept.

    Attributes:
        retention_seconds: Window after ``retain()`` before the artifacts
            become eligible for collection. 0 = collectable immediately.
    """

    retention_seconds: float = Field(default=7 * 24 * 3600.0, ge=0)

    def expires_at(self, start: datetime) -> datetime:
        return start + timedelta(seconds=self.retention_seconds)


class ArtifactRef(BaseModel):
    """Reference to a stored artifact.

    Attributes:
        run_id: Run that produced the artifact. The reference is only
            meaningful inside that run.
        name: Artifact name, unique within the run.
        digest: sha256 hex digest of the content.
        size: Content length in bytes.
        producer: Job that produced the artifact (if known).
        created_at: When the artifact was stored (UTC).
        expires_at: When it becomes collectable (None until retained).
    """

    run_id: str
    name: str
    digest: str
    size: int = Field(ge=0)
    producer: Optional[str] = None
    created_at: datetime = Field(default_factory=_now)
    expires_at: Optional[datetime] = None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return self.expires_at <= (now or _now())


# =============================================================================
# Abstract Base Class
# =============================================================================
class ArtifactStore(ABC):
    """Abstract interface for artifact persistence.

    Methods:
        put(run_id, name, content, producer): Store a new artifact.
        get(run_id, name): Read artifact content.
        get_ref(run_id, name): Read artifact metadata.
        list_run(run_id): All artifact references of a run.
        retain(run_id, policy): Start the retention window for a run.
        collect(now): Garbage-collect expired artifacts.
        delete_run(run_id): Drop every artifact of a run.
        count(): Number of stored artifact references.
    """

    @abstractmethod
    async def put(
        self,
        run_id: str,
        name: str,
        content: ArtifactContent,
        producer: Optional[str] = None,
    ) -> ArtifactRef:
        """Store ``content`` as artifact ``name`` of run ``run_id``.

        Raises:
            ArtifactConflictError: If (run_id, name) exists and overwrite is
                not allowed.
        """

    @abstractmethod
    async def get(self, run_id: str, name: str) -> bytes:
        """Return the content of artifact ``name`` of run ``run_id``.

        Raises:
            ArtifactNotFoundError: If no such artifact exists.
        """

    @abstractmethod
    async def get_ref(self, run_id: str, name: str) -> Optional[ArtifactRef]:
        """Return the reference for (run_id, name), or None."""

    @abstractmethod
    async def list_run(self, run_id: str) -> list[ArtifactRef]:
        """All references of a run, oldest first."""

    @abstractmethod
    async def retain(self, run_id: str, policy: RetentionPolicy) -> int:
        """Stamp the retention deadline on every artifact of ``run_id``.

        Returns:
            Number of artifacts affected.
        """

    @abstractmethod
    async def collect(self, now: Optional[datetime] = None) -> int:
        """Delete expired artifacts and blobs nothing refers to.

        Returns:
            Number of artifact references removed.
        """

    @abstractmethod
    async def delete_run(self, run_id: str) -> int:
        """Delete every artifact of ``run_id``; returns how many."""

    @abstractmethod
    async def count(self) -> int:
        """Number of stored artifact references."""


# =============================================================================
# Shared Index Implementation
# =============================================================================
# Both backends keep the (run_id, name) → ArtifactRef index in memory and
# differ only in where blob bytes live. Subclasses implement the four blob
# primitives plus an optional hook to persist a run's index.
# =============================================================================
class _IndexedArtifactStore(ArtifactStore):
    """Reference bookkeeping shared by the concrete stores."""

    def __init__(self, allow_overwrite: bool = False) -> None:
        self._allow_overwrite = allow_overwrite
        self._refs: dict[tuple[str, str], ArtifactRef] = {}
        self._lock = asyncio.Lock()
        self._logger = logger.bind(component=self._component_name)

    _component_name = "artifact_store"

    @property
    def allow_overwrite(self) -> bool:
        return self._allow_overwrite

    # -------------------------------------------------------------------------
    # Blob primitives
    # -------------------------------------------------------------------------
    @abstractmethod
    async def _write_blob(self, digest: str, data: bytes) -> None: ...

    @abstractmethod
    async def _read_blob(self, digest: str) -> Optional[bytes]: ...

    @abstractmethod
    async def _delete_blob(self, digest: str) -> None: ...

    async def _persist_run(self, run_id: str) -> None:
        """Hook for backends that keep an on-disk index."""

    async def _load_run(self, run_id: str) -> None:
        """Hook for backends that keep an on-disk index."""

    async def _load_all(self) -> None:
        """Hook for backends that keep an on-disk index."""

    # -------------------------------------------------------------------------
    # ArtifactStore API
    # -------------------------------------------------------------------------
    async def put(
        self,
        run_id: str,
        name: str,
        content: ArtifactContent,
        producer: Optional[str] = None,
    ) -> ArtifactRef:
        data = _as_bytes(content)
        digest = _digest(data)
        await self._load_run(run_id)
        # A blob may be shared with any run, loaded or not.
        await self._load_all()

        async with self._lock:
            key = (run_id, name)
            existing = self._refs.get(key)
            if existing is not None and not self._allow_overwrite:
                raise ArtifactConflictError(
                    message=f"Artifact '{name}' already exists in run {run_id}",
                    run_id=run_id,
                    name=name,
                )

            await self._write_blob(digest, data)
            ref = ArtifactRef(
                run_id=run_id,
                name=name,
                digest=digest,
                size=len(data),
                producer=producer,
            )
            self._refs[key] = ref
            if existing is not None and existing.digest != digest:
                await self._drop_blob_if_unreferenced(existing.digest)
            await self._persist_run(run_id)

        self._logger.debug(
            "artifact_stored",
            run_id=run_id,
            name=name,
            digest=digest[:12],
            size=len(data),
            producer=producer,
            overwritten=existing is not None,
        )
        return ref

    async def get(self, run_id: str, name: str) -> bytes:
        await self._load_run(run_id)
        ref = self._refs.get((run_id, name))
        if ref is None:
            raise ArtifactNotFoundError(
                message=f"Artifact '{name}' not found in run {run_id}",
                run_id=run_id,
                name=name,
            )
        data = await self._read_blob(ref.digest)
        if data is None:
            raise ArtifactNotFoundError(
                message=f"Content of artifact '{name}' in run {run_id} is missing",
                run_id=run_id,
                name=name,
            )
        return data

    async def get_ref(self, run_id: str, name: str) -> Optional[ArtifactRef]:
        await self._load_run(run_id)
        return self._refs.get((run_id, name))

    async def list_run(self, run_id: str) -> list[ArtifactRef]:
        await self._load_run(run_id)
        refs = [ref for (rid, _), ref in self._refs.items() if rid == run_id]
        return sorted(refs, key=lambda r: r.created_at)

    async def retain(self, run_id: str, policy: RetentionPolicy) -> int:
        await self._load_run(run_id)
        expires_at = policy.expires_at(_now())
        async with self._lock:
            keys = [key for key in self._refs if key[0] == run_id]
            for key in keys:
                self._refs[key] = self._refs[key].model_copy(
                    update={"expires_at": expires_at}
                )
            if keys:
                await self._persist_run(run_id)

        self._logger.debug(
            "artifacts_retained",
            run_id=run_id,
            count=len(keys),
            expires_at=expires_at.isoformat(),
        )
        return len(keys)

    async def collect(self, now: Optional[datetime] = None) -> int:
        now = now or _now()
        await self._load_all()
        async with self._lock:
            expired = [key for key, ref in self._refs.items() if ref.is_expired(now)]
            digests = {self._refs[key].digest for key in expired}
            runs = {key[0] for key in expired}
            for key in expired:
                del self._refs[key]
            for digest in digests:
                await self._drop_blob_if_unreferenced(digest)
            for run_id in runs:
                await self._persist_run(run_id)

        if expired:
            self._logger.info("artifacts_collected", count=len(expired), runs=len(runs))
        return len(expired)

    async def delete_run(self, run_id: str) -> int:
        await self._load_run(run_id)
        # A blob may be shared with any run, loaded or not.
        await self._load_all()
        async with self._lock:
            keys = [key for key in self._refs if key[0] == run_id]
            digests = {self._refs[key].digest for key in keys}
            for key in keys:
                del self._refs[key]
            for digest in digests:
                await self._drop_blob_if_unreferenced(digest)
            await self._persist_run(run_id)
        return len(keys)

    async def count(self) -> int:
        await self._load_all()
        return len(self._refs)

    async def _drop_blob_if_unreferenced(self, digest: str) -> None:
        if not any(ref.digest == digest for ref in self._refs.values()):
            await self._delete_blob(digest)


# =============================================================================
# In-Memory Implementation
# =============================================================================
class InMemoryArtifactStore(_IndexedArtifactStore):
    """In-memory artifact store for development and testing.

    Not suitable for production: data is lost when the process exits and is
    not shared between processes.

    Example:
        >>> store = InMemoryArtifactStore()
        >>> await store.put("run-1", "report", "coverage: 91%")
        >>> await store.blob_count()
        1
    """

    _component_name = "in_memory_artifact_store"

    def __init__(self, allow_overwrite: bool = False) -> None:
        super().__init__(allow_overwrite=allow_overwrite)
        self._blobs: dict[str, bytes] = {}

    async def blob_count(self) -> int:
        """Number of distinct content blobs held (after deduplication)."""
        return len(self._blobs)

    async def _write_blob(self, digest: str, data: bytes) -> None:
        self._blobs.setdefault(digest, data)

    async def _read_blob(self, digest: str) -> Optional[bytes]:
        return self._blobs.get(digest)

    async def _delete_blob(self, digest: str) -> None:
        self._blobs.pop(digest, None)


# =============================================================================
# Local Filesystem Implementation
# =============================================================================
# Layout under root_dir:
#   blobs/ab/abcdef...        content, addressed by sha256 digest
#   runs/<run_id>.json        the run's reference index
#
# Blocking file I/O is pushed to a worker thread so the event loop (and
# with it the scheduler's coordinator) never stalls on disk.
# =============================================================================
_SAFE_RUN_ID = re.compile(r"^[A-Za-z0-9_.-]+$")


class LocalArtifactStore(_IndexedArtifactStore):
    """Filesystem-backed artifact store.

    Survives process restarts: a run's index is reloaded from
    ``runs/<run_id>.json`` the first time the run is touched. Anything that
    can delete a blob (put, collect, delete_run) loads every index first.

    Example:
        >>> store = LocalArtifactStore(".runway/artifacts")
        >>> await store.put("run-1", "site", site_tarball, producer="build")
    """

    _component_name = "local_artifact_store"

    def __init__(self, root_dir: Union[str, Path], allow_overwrite: bool = False) -> None:
        super().__init__(allow_overwrite=allow_overwrite)
        self._root = Path(root_dir)
        self._loaded_runs: set[str] = set()
        self._all_loaded = False

    @property
    def root(self) -> Path:
        return self._root

    def _blob_path(self, digest: str) -> Path:
        return self._root / "blobs" / digest[:2] / digest

    def _index_path(self, run_id: str) -> Path:
        if not _SAFE_RUN_ID.match(run_id):
            raise ArtifactError(
                message=f"Run id {run_id!r} cannot be used as a file name",
                run_id=run_id,
                name="",
                error_code="INVALID_RUN_ID",
            )
        return self._root / "runs" / f"{run_id}.json"

    async def _write_blob(self, digest: str, data: bytes) -> None:
        path = self._blob_path(digest)

        def _write() -> None:
            if path.exists():
                return
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp = path.with_suffix(".tmp")
            tmp.write_bytes(data)
            tmp.replace(path)

        await asyncio.to_thread(_write)

    async def _read_blob(self, digest: str) -> Optional[bytes]:
        path = self._blob_path(digest)

        def _read() -> Optional[bytes]:
            if not path.exists():
                return None
            return path.read_bytes()

        return await asyncio.to_thread(_read)

    async def _delete_blob(self, digest: str) -> None:
        path = self._blob_path(digest)
        await asyncio.to_thread(path.unlink, missing_ok=True)

    async def _persist_run(self, run_id: str) -> None:
        path = self._index_path(run_id)
        refs = [
            ref.model_dump(mode="json")
            for (rid, _), ref in self._refs.items()
            if rid == run_id
        ]

        def _write() -> None:
            if not refs:
                path.unlink(missing_ok=True)
                return
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(json.dumps(refs, sort_keys=True, indent=2))

        await asyncio.to_thread(_write)

    async def _load_run(self, run_id: str) -> None:
        if run_id in self._loaded_runs:
            return
        path = self._index_path(run_id)

        def _read() -> list[dict]:
            if not path.exists():
                return []
            return json.loads(path.read_text())

        raw_refs = await asyncio.to_thread(_read)
        async with self._lock:
            if run_id in self._loaded_runs:
                return
            for raw in raw_refs:
                ref = ArtifactRef.model_validate(raw)
                self._refs.setdefault((ref.run_id, ref.name), ref)
            self._loaded_runs.add(run_id)

    async def _load_all(self) -> None:
        """Load the index of every run on disk, once per store."""
        if self._all_loaded:
            return
        runs_dir = self._root / "runs"

        def _scan() -> list[str]:
            if not runs_dir.is_dir():
                return []
            return sorted(
                path.stem for path in runs_dir.glob("*.json")
                if _SAFE_RUN_ID.match(path.stem)
            )

        for run_id in await asyncio.to_thread(_scan):
            await self._load_run(run_id)
        self._all_loaded = True
