"""TTL-cached estimate of remote storage usage."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable

from cloudgrab.pipeline.models import CapacityEstimate
from cloudgrab.remote.base import REMOTE_STATUS_STORED, RemoteService

logger = logging.getLogger(__name__)

GIB = 1024**3
MIB = 1024**2
DEFAULT_ASSUMED_TOTAL_BYTES = 50 * GIB
DEFAULT_MIN_RESERVED_BYTES = 500 * MIB
DEFAULT_TTL_SECONDS = 60.0
SAFETY_MARGIN = 1.2


class CapacityEstimator:
    """Estimates free remote storage from the job history.

    The remote exposes no reliable quota, so the total is a conservative
    static constant and usage is the sum of stored items.
    """

    def __init__(
        self,
        remote: RemoteService,
        *,
        assumed_total_bytes: int = DEFAULT_ASSUMED_TOTAL_BYTES,
        min_reserved_bytes: int = DEFAULT_MIN_RESERVED_BYTES,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.remote = remote
        self.assumed_total_bytes = assumed_total_bytes
        self.min_reserved_bytes = min_reserved_bytes
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._estimate: CapacityEstimate | None = None
        self._checked_at: float | None = None

    @property
    def estimate(self) -> CapacityEstimate | None:
        return self._estimate

    def invalidate(self) -> None:
        self._checked_at = None

    async def refresh(self) -> CapacityEstimate:
        now = self._clock()
        if (
            self._estimate is not None
            and self._checked_at is not None
            and now - self._checked_at < self.ttl_seconds
        ):
            return self._estimate

        try:
            history = await self.remote.list_history()
        except Exception as exc:  # noqa: BLE001
            logger.error("Error getting storage info: %s", exc)
            if self._estimate is not None:
                logger.warning("Using cached storage information from previous check")
                return self._estimate
            self._estimate = CapacityEstimate(
                total_capacity_bytes=self.assumed_total_bytes,
                used_bytes=0,
                free_bytes=self.assumed_total_bytes,
                computed_at=now,
            )
            logger.warning("Using default storage information due to error")
            return self._estimate

        used = sum(
            item.file_size
            for item in history
            if item.status == REMOTE_STATUS_STORED and item.file_size
        )
        self._estimate = CapacityEstimate(
            total_capacity_bytes=self.assumed_total_bytes,
            used_bytes=used,
            free_bytes=self.assumed_total_bytes - used,
            computed_at=now,
        )
        self._checked_at = now
        logger.info(
            "Storage info updated - Free: %.2fMB, Used: %.2fMB, Total: %.2fMB",
            self._estimate.free_bytes / MIB,
            self._estimate.used_bytes / MIB,
            self._estimate.total_capacity_bytes / MIB,
        )
        return self._estimate

    def has_capacity(self, estimated_size: int) -> bool:
        """Admission check: strict, with a 20% margin and a fixed reserve."""

        if self._estimate is None:
            return False
        needed = estimated_size * SAFETY_MARGIN
        available = self._estimate.free_bytes - self.min_reserved_bytes
        if available > needed:
            return True
        logger.warning(
            "Storage check failed - Need: %.2fMB, Available: %.2fMB",
            needed / MIB,
            available / MIB,
        )
        return False
