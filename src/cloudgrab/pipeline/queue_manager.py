"""Admission-controlled descriptor queue."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from functools import partial

from cloudgrab.pipeline.capacity import MIB, CapacityEstimator
from cloudgrab.pipeline.failure_classifier import classify_error
from cloudgrab.pipeline.fingerprints import FingerprintTable
from cloudgrab.pipeline.models import (
    CleanupReport,
    FingerprintState,
    JobDescriptor,
    JobOutcome,
    ProcessFn,
    QueueItem,
    QueueItemStatus,
    QueueStats,
)
from cloudgrab.pipeline.retry import RetryExecutor, SleepFn
from cloudgrab.remote.base import REMOTE_STATUS_STORED, DeleteStrategy, RemoteService

logger = logging.getLogger(__name__)

DEFAULT_MAX_CONCURRENT_JOBS = 3
DEFAULT_ITEM_MAX_RETRIES = 3
PROCESS_BASE_DELAY_SECONDS = 5.0
REQUEUE_BACKOFF_BASE_SECONDS = 5.0
REDRIVE_DELAY_SECONDS = 5.0
COMPLETION_REDRIVE_DELAY_SECONDS = 2.0
OPPORTUNISTIC_CLEANUP_BACKLOG = 5
OPPORTUNISTIC_CLEANUP_MAX_AGE_HOURS = 12.0
CLEANUP_MAX_AGE_HOURS = 24.0
MAINTENANCE_INTERVAL_SECONDS = 3600.0
CLEANUP_DELETE_MAX_RETRIES = 3


class QueueManager:
    """Holds pending descriptors and admits them under concurrency and capacity limits.

    All bookkeeping (active count, fingerprint states, queue membership) is
    updated synchronously right before or after each ``await``, so interleaved
    coroutines on the event loop never double-admit or overshoot the limit.
    A successfully submitted item hands its slot to the live job; the slot is
    released when the job's completion future resolves.
    """

    def __init__(  # noqa: PLR0913
        self,
        remote: RemoteService,
        *,
        retry_executor: RetryExecutor | None = None,
        estimator: CapacityEstimator | None = None,
        fingerprints: FingerprintTable | None = None,
        clock: Callable[[], float] = time.time,
        sleep: SleepFn = asyncio.sleep,
        max_concurrent_jobs: int = DEFAULT_MAX_CONCURRENT_JOBS,
        item_max_retries: int = DEFAULT_ITEM_MAX_RETRIES,
        process_base_delay_seconds: float = PROCESS_BASE_DELAY_SECONDS,
        requeue_backoff_base_seconds: float = REQUEUE_BACKOFF_BASE_SECONDS,
        redrive_delay_seconds: float = REDRIVE_DELAY_SECONDS,
        completion_redrive_delay_seconds: float = COMPLETION_REDRIVE_DELAY_SECONDS,
        maintenance_interval_seconds: float = MAINTENANCE_INTERVAL_SECONDS,
        cleanup_max_age_hours: float = CLEANUP_MAX_AGE_HOURS,
    ) -> None:
        if max_concurrent_jobs <= 0:
            raise ValueError("max_concurrent_jobs must be > 0")
        self.remote = remote
        self.retry = retry_executor or RetryExecutor(sleep=sleep)
        self.estimator = estimator or CapacityEstimator(remote, clock=clock)
        self.fingerprints = fingerprints or FingerprintTable(clock=clock)
        self._clock = clock
        self._sleep = sleep
        self.max_concurrent_jobs = max_concurrent_jobs
        self.item_max_retries = item_max_retries
        self.process_base_delay_seconds = process_base_delay_seconds
        self.requeue_backoff_base_seconds = requeue_backoff_base_seconds
        self.redrive_delay_seconds = redrive_delay_seconds
        self.completion_redrive_delay_seconds = completion_redrive_delay_seconds
        self.maintenance_interval_seconds = maintenance_interval_seconds
        self.cleanup_max_age_hours = cleanup_max_age_hours

        self.queue: list[QueueItem] = []
        self.active_downloads = 0
        self.is_processing = False
        self._in_flight: dict[str, QueueItem] = {}
        self._live_request_ids: dict[str, str] = {}
        self._redrive_handle: asyncio.TimerHandle | None = None
        self._drive_task: asyncio.Task[None] | None = None
        self._pending_requeues: set[asyncio.Task[None]] = set()
        self._maintenance: list[asyncio.Task[None]] = []
        self._closed = False

    def add_to_queue(self, descriptor: JobDescriptor, process_fn: ProcessFn) -> QueueItem | None:
        """Enqueue a descriptor unless its fingerprint is live or recently done."""

        fingerprint = descriptor.content_fingerprint
        if self.fingerprints.is_blocked(fingerprint):
            logger.warning(
                "Skipping %s as it's already processed or being processed",
                descriptor.source_path,
            )
            return None

        item = QueueItem(
            descriptor=descriptor,
            process_fn=process_fn,
            enqueued_at=self._clock(),
            max_retries=self.item_max_retries,
            estimated_size=descriptor.estimated_size,
        )
        self.fingerprints.mark(
            fingerprint,
            FingerprintState.QUEUED,
            source_path=descriptor.source_path,
        )
        self.queue.append(item)
        logger.info(
            "Added '%s' to download queue (position: %d)",
            descriptor.source_path,
            len(self.queue),
        )
        if not self.is_processing:
            self._spawn_process_queue()
        return item

    def next_item(self) -> QueueItem | None:
        """Lowest priority value first, ties broken by enqueue time."""

        candidates = [item for item in self.queue if item.status != QueueItemStatus.PROCESSING]
        if not candidates:
            return None
        return min(candidates, key=lambda item: item.sort_key)

    async def process_queue(self) -> None:
        """Admit queued items until slots or capacity run out. Single-flight."""

        if self.is_processing or not self.queue or self._closed:
            return
        self.is_processing = True
        try:
            await self.estimator.refresh()
            while self._has_pending() and self.active_downloads < self.max_concurrent_jobs:
                item = self.next_item()
                if item is None:
                    break
                if not await self._admit(item):
                    break
                await self._process_item(item)
        except Exception:
            logger.exception("Error processing queue")
        finally:
            self.is_processing = False
            if self._has_pending() and self.active_downloads < self.max_concurrent_jobs:
                self._schedule_redrive(self.redrive_delay_seconds)

    async def _admit(self, item: QueueItem) -> bool:
        if self.estimator.has_capacity(item.estimated_size):
            return True

        logger.warning("Not enough storage available remotely. Waiting for space to free up.")
        logger.info("Current queue length: %d items, will retry later.", len(self.queue))
        if len(self.queue) <= OPPORTUNISTIC_CLEANUP_BACKLOG:
            return False

        logger.info("Attempting to clean up old downloads to free space...")
        await self.cleanup_completed_downloads(max_age_hours=OPPORTUNISTIC_CLEANUP_MAX_AGE_HOURS)
        await self.estimator.refresh()
        if self.estimator.has_capacity(item.estimated_size):
            logger.info("Cleanup successful, continuing with queue processing")
            return True
        return False

    async def _process_item(self, item: QueueItem) -> None:
        path = item.descriptor.source_path
        self.active_downloads += 1
        item.status = QueueItemStatus.PROCESSING
        self.fingerprints.mark(item.fingerprint, FingerprintState.PROCESSING)
        next_state = FingerprintState.RECENTLY_COMPLETED
        handed_off = False
        try:
            logger.info(
                "Processing queued file: %s (%d/%d active)",
                path,
                self.active_downloads,
                self.max_concurrent_jobs,
            )
            result = await self.retry.execute(
                partial(item.process_fn, path),
                max_retries=max(0, item.max_retries - item.retries),
                base_delay=self.process_base_delay_seconds,
                operation_name=f"Process {path}",
            )
            self._remove(item)
            if result is not None and result.completion is not None:
                self._hand_off(item, result.request_id, result.completion)
                handed_off = True
                next_state = FingerprintState.PROCESSING
        except Exception as exc:  # noqa: BLE001
            if await self._handle_failure(item, exc):
                next_state = FingerprintState.QUEUED
        finally:
            if not handed_off:
                self.active_downloads = max(0, self.active_downloads - 1)
            self.fingerprints.mark(item.fingerprint, next_state)

    async def _handle_failure(self, item: QueueItem, error: Exception) -> bool:
        """Record a processing failure; returns True when the item was requeued."""

        classification = classify_error(error)
        path = item.descriptor.source_path
        logger.error(
            "Error processing %s: %s (%s)",
            path,
            error,
            classification.reason_code,
        )
        item.status = QueueItemStatus.ERROR
        item.last_error = str(error)
        item.retries += 1

        if item.retries >= item.max_retries:
            logger.error("Max retries reached for %s, removing from queue", path)
            self._remove(item)
            return False

        item.status = QueueItemStatus.QUEUED
        item.priority += 1
        logger.info(
            "Requeued %s for retry (attempt %d/%d)",
            path,
            item.retries,
            item.max_retries,
        )
        backoff = self.requeue_backoff_base_seconds * (2**item.retries)
        logger.debug("Will retry after %.0f seconds (backoff)", backoff)
        await self._sleep(backoff)
        return True

    def _hand_off(
        self,
        item: QueueItem,
        request_id: str,
        completion: asyncio.Future[JobOutcome],
    ) -> None:
        self._in_flight[item.fingerprint] = item
        self._live_request_ids[item.fingerprint] = request_id
        item.status = QueueItemStatus.PROCESSING
        completion.add_done_callback(partial(self._on_job_completed, item))

    def _on_job_completed(self, item: QueueItem, completion: asyncio.Future[JobOutcome]) -> None:
        self._in_flight.pop(item.fingerprint, None)
        self._live_request_ids.pop(item.fingerprint, None)
        outcome: JobOutcome | None = None
        if not completion.cancelled():
            if completion.exception() is not None:
                logger.error(
                    "Job for %s completed with unexpected error: %s",
                    item.descriptor.source_path,
                    completion.exception(),
                )
            else:
                outcome = completion.result()

        if outcome is not None and not outcome.succeeded and outcome.retryable:
            self._requeue_after_job_failure(item, outcome)
        else:
            self.fingerprints.mark(item.fingerprint, FingerprintState.RECENTLY_COMPLETED)
        self.download_completed()

    def _requeue_after_job_failure(self, item: QueueItem, outcome: JobOutcome) -> None:
        path = item.descriptor.source_path
        item.retries += 1
        item.last_error = outcome.error
        if item.retries >= item.max_retries or self._closed:
            logger.error("Max retries reached for %s after job failure, dropping", path)
            self.fingerprints.mark(item.fingerprint, FingerprintState.RECENTLY_COMPLETED)
            return
        item.status = QueueItemStatus.QUEUED
        item.priority += 1
        self.fingerprints.mark(item.fingerprint, FingerprintState.QUEUED)
        backoff = self.requeue_backoff_base_seconds * (2**item.retries)
        logger.info(
            "Requeueing %s after job failure in %.0f seconds (attempt %d/%d)",
            path,
            backoff,
            item.retries,
            item.max_retries,
        )
        task = asyncio.get_running_loop().create_task(self._requeue_later(item, backoff))
        self._pending_requeues.add(task)
        task.add_done_callback(self._pending_requeues.discard)

    async def _requeue_later(self, item: QueueItem, backoff: float) -> None:
        await self._sleep(backoff)
        if self._closed:
            self.fingerprints.mark(item.fingerprint, FingerprintState.RECENTLY_COMPLETED)
            return
        self.queue.append(item)
        logger.info("Requeued %s after backoff", item.descriptor.source_path)
        if not self.is_processing:
            self._spawn_process_queue()

    def download_completed(self) -> None:
        """Release one slot after a job reached its terminal state."""

        self.active_downloads = max(0, self.active_downloads - 1)
        self.estimator.invalidate()
        if not self.is_processing and self.queue:
            self._schedule_redrive(self.completion_redrive_delay_seconds)

    async def cleanup_completed_downloads(
        self,
        max_age_hours: float = CLEANUP_MAX_AGE_HOURS,
    ) -> CleanupReport:
        """Delete remote jobs that finished downloading more than ``max_age_hours`` ago."""

        logger.info("Running cleanup of completed downloads older than %s hours", max_age_hours)
        report = CleanupReport()
        try:
            history = await self.remote.list_history()
        except Exception as exc:  # noqa: BLE001
            logger.error("Error during cleanup: %s", exc)
            return report

        now = datetime.fromtimestamp(self._clock(), tz=UTC)
        live_ids = set(self._live_request_ids.values())
        for entry in history:
            if entry.status != REMOTE_STATUS_STORED or not entry.file_size:
                continue
            if entry.created_on is None or entry.request_id in live_ids:
                continue
            age_hours = (now - entry.created_on).total_seconds() / 3600
            if age_hours <= max_age_hours:
                continue
            request_id = entry.request_id
            try:
                await self.retry.execute(
                    lambda request_id=request_id: self.remote.delete_remote(
                        request_id,
                        strategy=DeleteStrategy.DIRECT_REMOVE,
                    ),
                    max_retries=CLEANUP_DELETE_MAX_RETRIES,
                    operation_name=f"Delete old download {entry.file_name or request_id}",
                )
            except Exception as exc:  # noqa: BLE001
                logger.error("Error cleaning up download %s: %s", request_id, exc)
                report.errors += 1
                continue
            report.removed += 1
            report.freed_bytes += entry.file_size
            report.removed_request_ids.append(request_id)
            logger.info("Cleaned up old download: %s (%s)", entry.file_name, request_id)

        if report.removed:
            logger.info(
                "Cleaned up %d old downloads, freed %.2fMB of space",
                report.removed,
                report.freed_bytes / MIB,
            )
            self.estimator.invalidate()
        elif report.errors:
            logger.warning(
                "Attempted to clean up downloads but encountered %d errors",
                report.errors,
            )
        else:
            logger.debug("No old downloads to clean up")
        return report

    def prune_fingerprints(self) -> int:
        return self.fingerprints.prune()

    def start_maintenance(self) -> None:
        """Schedule hourly remote cleanup and fingerprint pruning."""

        if self._maintenance or self._closed:
            return
        loop = asyncio.get_running_loop()
        self._maintenance = [
            loop.create_task(self._periodic(self._cleanup_tick)),
            loop.create_task(self._periodic(self._prune_tick)),
        ]
        logger.debug("Scheduled periodic cleanup of completed downloads and fingerprint table")

    async def _cleanup_tick(self) -> None:
        await self.cleanup_completed_downloads(self.cleanup_max_age_hours)

    async def _prune_tick(self) -> None:
        self.prune_fingerprints()

    async def _periodic(self, tick: Callable[[], Awaitable[None]]) -> None:
        while True:
            await asyncio.sleep(self.maintenance_interval_seconds)
            try:
                await tick()
            except Exception:
                logger.exception("Periodic maintenance failed")

    def get_queue_stats(self) -> QueueStats:
        tracked = [*self.queue, *self._in_flight.values()]
        return QueueStats(
            queue_length=len(self.queue),
            active_downloads=self.active_downloads,
            pending_items=sum(1 for item in self.queue if item.status == QueueItemStatus.QUEUED),
            processing_items=sum(
                1 for item in tracked if item.status == QueueItemStatus.PROCESSING
            ),
            error_items=sum(1 for item in self.queue if item.status == QueueItemStatus.ERROR),
            capacity=self.estimator.estimate,
            dedup_map_size=len(self.fingerprints),
        )

    def cleanup(self) -> None:
        """Cancel timers and background tasks. Safe to call more than once."""

        if self._closed:
            return
        self._closed = True
        for task in self._maintenance:
            task.cancel()
        self._maintenance = []
        if self._redrive_handle is not None:
            self._redrive_handle.cancel()
            self._redrive_handle = None
        if self._drive_task is not None:
            self._drive_task.cancel()
        for task in self._pending_requeues:
            task.cancel()
        self._pending_requeues.clear()
        logger.debug("Queue manager resources cleaned up")

    def _has_pending(self) -> bool:
        return any(item.status != QueueItemStatus.PROCESSING for item in self.queue)

    def _remove(self, item: QueueItem) -> None:
        try:
            self.queue.remove(item)
        except ValueError:
            return
        logger.info("Removed '%s' from download queue", item.descriptor.source_path)

    def _spawn_process_queue(self) -> None:
        if self._redrive_handle is not None:
            self._redrive_handle.cancel()
            self._redrive_handle = None
        if self._closed:
            return
        if self._drive_task is not None and not self._drive_task.done():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._drive_task = loop.create_task(self.process_queue())

    def _schedule_redrive(self, delay: float) -> None:
        if self._closed or self._redrive_handle is not None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._redrive_handle = loop.call_later(delay, self._spawn_process_queue)
