"""Fingerprint-keyed dedup table for descriptors."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from pathlib import Path

from cloudgrab.pipeline.models import FingerprintRecord, FingerprintState

logger = logging.getLogger(__name__)

DEFAULT_DEDUP_WINDOW_SECONDS = 3600.0
DEFAULT_RETENTION_SECONDS = 86_400.0
DEFAULT_MAX_ENTRIES = 1000

_LIVE_STATES = frozenset({FingerprintState.QUEUED, FingerprintState.PROCESSING})


class FingerprintTable:
    """Single source of truth for which descriptors are live or recently done."""

    def __init__(
        self,
        *,
        clock: Callable[[], float] = time.time,
        dedup_window_seconds: float = DEFAULT_DEDUP_WINDOW_SECONDS,
        retention_seconds: float = DEFAULT_RETENTION_SECONDS,
        max_entries: int = DEFAULT_MAX_ENTRIES,
    ) -> None:
        self._clock = clock
        self.dedup_window_seconds = dedup_window_seconds
        self.retention_seconds = retention_seconds
        self.max_entries = max_entries
        self._records: dict[str, FingerprintRecord] = {}

    def __len__(self) -> int:
        return len(self._records)

    def state_of(self, fingerprint: str) -> FingerprintState:
        record = self._records.get(fingerprint)
        return record.state if record is not None else FingerprintState.IDLE

    def is_blocked(self, fingerprint: str) -> bool:
        """True when a new queue item for this fingerprint must not be created."""

        record = self._records.get(fingerprint)
        if record is None:
            return False
        if record.state in _LIVE_STATES:
            return True
        if record.state == FingerprintState.RECENTLY_COMPLETED:
            return self._clock() - record.updated_at < self.dedup_window_seconds
        return False

    def mark(
        self,
        fingerprint: str,
        state: FingerprintState,
        *,
        source_path: Path | None = None,
    ) -> None:
        previous = self._records.get(fingerprint)
        if state == FingerprintState.IDLE:
            self._records.pop(fingerprint, None)
            return
        self._records[fingerprint] = FingerprintRecord(
            state=state,
            source_path=source_path or (previous.source_path if previous else None),
            updated_at=self._clock(),
        )
        if len(self._records) > self.max_entries:
            self.prune()

    def prune(self) -> int:
        """Drop finished entries older than the retention period."""

        now = self._clock()
        stale = [
            fingerprint
            for fingerprint, record in self._records.items()
            if record.state not in _LIVE_STATES
            and now - record.updated_at > self.retention_seconds
        ]
        for fingerprint in stale:
            del self._records[fingerprint]
        if stale:
            logger.debug("Cleaned up %d entries from fingerprint table", len(stale))
        return len(stale)
