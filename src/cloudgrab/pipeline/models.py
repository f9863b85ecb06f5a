"""Domain models for the descriptor queue and remote job lifecycle."""

from __future__ import annotations

import asyncio
import hashlib
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

ESTIMATED_SIZE_MULTIPLIER = 1000
"""Descriptor payloads are unknown until the remote resolves them."""


class JobKind(str, Enum):
    """Supported descriptor kinds, keyed by file extension."""

    TORRENT = "torrent"
    MAGNET = "magnet"
    NZB = "nzb"

    @classmethod
    def from_path(cls, path: Path) -> JobKind | None:
        return _KIND_BY_EXTENSION.get(path.suffix.lower())


_KIND_BY_EXTENSION: dict[str, JobKind] = {
    ".torrent": JobKind.TORRENT,
    ".magnet": JobKind.MAGNET,
    ".nzb": JobKind.NZB,
}
SUPPORTED_EXTENSIONS: frozenset[str] = frozenset(_KIND_BY_EXTENSION)


class QueueItemStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    ERROR = "error"


class JobStatus(str, Enum):
    """Local lifecycle states of one remote submission."""

    PENDING = "pending"
    QUEUED = "queued"
    DOWNLOADING = "downloading"
    DOWNLOADED = "downloaded"
    DOWNLOADING_LOCALLY = "downloading_locally"
    INVALID = "invalid"


class FingerprintState(str, Enum):
    IDLE = "idle"
    QUEUED = "queued"
    PROCESSING = "processing"
    RECENTLY_COMPLETED = "recently_completed"


@dataclass(frozen=True, slots=True)
class JobDescriptor:
    """Immutable reference to a descriptor file found by the orchestrator."""

    source_path: Path
    kind: JobKind
    content_fingerprint: str
    size_bytes: int = 0

    @classmethod
    def from_path(cls, path: Path) -> JobDescriptor:
        """Build a descriptor, computing its kind, size and fingerprint."""

        kind = JobKind.from_path(path)
        if kind is None:
            raise ValueError(f"Unsupported descriptor extension: {path.suffix!r} ({path})")
        try:
            size_bytes = path.stat().st_size
        except OSError:
            size_bytes = 0
        return cls(
            source_path=path,
            kind=kind,
            content_fingerprint=compute_fingerprint(path),
            size_bytes=size_bytes,
        )

    @property
    def estimated_size(self) -> int:
        return self.size_bytes * ESTIMATED_SIZE_MULTIPLIER

    @property
    def folder_hint(self) -> str:
        return self.source_path.stem


def compute_fingerprint(path: Path) -> str:
    """Content hash of a descriptor, falling back to size and mtime."""

    try:
        return hashlib.sha256(path.read_bytes()).hexdigest()
    except OSError:
        pass
    try:
        stat = path.stat()
    except OSError:
        return f"unreadable-{path}-{time.time_ns()}"
    return f"{stat.st_size}-{stat.st_mtime_ns}"


@dataclass(slots=True)
class JobOutcome:
    """Value resolved on a job's completion channel."""

    request_id: str
    succeeded: bool
    reached_local: bool
    retryable: bool = False
    error: str | None = None
    remote_status: str | None = None


@dataclass(slots=True)
class JobResult:
    """Returned by a process function once the remote accepted a descriptor.

    When ``completion`` is set the queue slot stays held until it resolves.
    """

    request_id: str
    completion: asyncio.Future[JobOutcome] | None = None


ProcessFn = Callable[[Path], Awaitable[JobResult | None]]


@dataclass(slots=True)
class QueueItem:
    """One pending descriptor owned by the queue manager."""

    descriptor: JobDescriptor
    process_fn: ProcessFn
    enqueued_at: float
    priority: int = 1
    status: QueueItemStatus = QueueItemStatus.QUEUED
    retries: int = 0
    max_retries: int = 3
    estimated_size: int = 0
    last_error: str | None = None

    @property
    def fingerprint(self) -> str:
        return self.descriptor.content_fingerprint

    @property
    def sort_key(self) -> tuple[int, float]:
        return (self.priority, self.enqueued_at)


@dataclass(frozen=True, slots=True)
class CapacityEstimate:
    """Estimated remote storage usage."""

    total_capacity_bytes: int
    used_bytes: int
    free_bytes: int
    computed_at: float


@dataclass(slots=True)
class FingerprintRecord:
    state: FingerprintState
    source_path: Path | None
    updated_at: float


@dataclass(slots=True)
class CleanupReport:
    """Result of one remote cleanup pass."""

    removed: int = 0
    freed_bytes: int = 0
    errors: int = 0
    removed_request_ids: list[str] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class QueueStats:
    """Read-only queue snapshot for introspection."""

    queue_length: int
    active_downloads: int
    pending_items: int
    processing_items: int
    error_items: int
    capacity: CapacityEstimate | None
    dedup_map_size: int
