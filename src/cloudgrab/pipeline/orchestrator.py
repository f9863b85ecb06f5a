"""Watch folder scanning and the job polling loop."""

from __future__ import annotations

import asyncio
import logging
import signal
import time
from collections.abc import Awaitable, Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from cloudgrab.http.materializer import Materializer
from cloudgrab.pipeline.job import Job
from cloudgrab.pipeline.models import (
    SUPPORTED_EXTENSIONS,
    JobDescriptor,
    JobOutcome,
    JobResult,
    QueueItem,
)
from cloudgrab.pipeline.queue_manager import QueueManager
from cloudgrab.pipeline.retry import RetryExecutor, SleepFn
from cloudgrab.remote.base import RemoteService

logger = logging.getLogger(__name__)

IGNORED_SUFFIXES = frozenset({".queued", ".part", ".downloading"})
DEFAULT_POLL_INTERVAL_SECONDS = 10.0
DEFAULT_POLL_PAUSE_SECONDS = 0.5
DEFAULT_QUEUE_INTERVAL_SECONDS = 30.0
DEFAULT_HEALTH_CHECK_INTERVAL_SECONDS = 300.0
DEFAULT_STALL_THRESHOLD_SECONDS = 1800.0

JobFactory = Callable[[JobDescriptor], Job]


@dataclass(slots=True)
class _Observation:
    size: int
    mtime_ns: int
    since: float


class Orchestrator:
    """Feeds the queue from a watch folder and polls live jobs until they finish."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        queue_manager: QueueManager,
        remote: RemoteService,
        materializer: Materializer,
        watch_dir: Path,
        retry_executor: RetryExecutor | None = None,
        watch_rate_seconds: float = 5.0,
        file_stable_seconds: float = 5.0,
        poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
        poll_pause_seconds: float = DEFAULT_POLL_PAUSE_SECONDS,
        queue_interval_seconds: float = DEFAULT_QUEUE_INTERVAL_SECONDS,
        health_check_interval_seconds: float = DEFAULT_HEALTH_CHECK_INTERVAL_SECONDS,
        stall_threshold_seconds: float = DEFAULT_STALL_THRESHOLD_SECONDS,
        clock: Callable[[], float] = time.time,
        sleep: SleepFn = asyncio.sleep,
        job_factory: JobFactory | None = None,
    ) -> None:
        self.queue_manager = queue_manager
        self.remote = remote
        self.materializer = materializer
        self.watch_dir = watch_dir
        self.retry = retry_executor or queue_manager.retry
        self.watch_rate_seconds = watch_rate_seconds
        self.file_stable_seconds = file_stable_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self.poll_pause_seconds = poll_pause_seconds
        self.queue_interval_seconds = queue_interval_seconds
        self.health_check_interval_seconds = health_check_interval_seconds
        self.stall_threshold_seconds = stall_threshold_seconds
        self._clock = clock
        self._sleep = sleep
        self._job_factory = job_factory or self._build_job

        self.jobs: dict[str, Job] = {}
        self._observed: dict[Path, _Observation] = {}
        self._enqueued: set[Path] = set()
        self._stop = asyncio.Event()
        self._loops: list[asyncio.Task[None]] = []

    def _build_job(self, descriptor: JobDescriptor) -> Job:
        return Job(
            descriptor=descriptor,
            remote=self.remote,
            materializer=self.materializer,
            retry_executor=self.retry,
            clock=self._clock,
        )

    def scan_once(self) -> list[QueueItem]:
        """Enqueue stable, supported, not yet seen descriptors from the watch folder."""

        if not self.watch_dir.is_dir():
            logger.warning("Watch directory %s does not exist", self.watch_dir)
            return []

        now = self._clock()
        present: set[Path] = set()
        added: list[QueueItem] = []
        for path in sorted(self.watch_dir.rglob("*")):
            if not _is_candidate(path):
                continue
            present.add(path)
            if path in self._enqueued or not self._is_stable(path, now):
                continue
            try:
                descriptor = JobDescriptor.from_path(path)
            except ValueError as exc:
                logger.warning("Ignoring %s: %s", path, exc)
                continue
            logger.info("Found new file: %s", path.name)
            self._enqueued.add(path)
            item = self.queue_manager.add_to_queue(descriptor, self.process_file)
            if item is not None:
                added.append(item)

        for path in list(self._observed):
            if path not in present:
                del self._observed[path]
        self._enqueued &= present
        return added

    def _is_stable(self, path: Path, now: float) -> bool:
        try:
            stat = path.stat()
        except OSError:
            return False
        previous = self._observed.get(path)
        signature = (stat.st_size, stat.st_mtime_ns)
        if previous is None or (previous.size, previous.mtime_ns) != signature:
            self._observed[path] = _Observation(stat.st_size, stat.st_mtime_ns, now)
            return self.file_stable_seconds <= 0
        return now - previous.since >= self.file_stable_seconds

    async def process_file(self, path: Path) -> JobResult:
        """Queue process function: submit the descriptor and start watching the job."""

        descriptor = JobDescriptor.from_path(path)
        job = self._job_factory(descriptor)
        result = await job.start()
        self.jobs[result.request_id] = job
        job.completion.add_done_callback(
            lambda completion, request_id=result.request_id: self._forget(request_id, completion),
        )
        return result

    def _forget(self, request_id: str, completion: asyncio.Future[JobOutcome]) -> None:
        self.jobs.pop(request_id, None)
        if not completion.cancelled() and completion.exception() is None:
            outcome = completion.result()
            logger.debug(
                "Job %s left the watch list (succeeded=%s)",
                request_id,
                outcome.succeeded,
            )

    async def poll_jobs(self) -> None:
        """Poll every live job once, pausing briefly between remote calls."""

        for index, job in enumerate(list(self.jobs.values())):
            if index and self.poll_pause_seconds > 0:
                await self._sleep(self.poll_pause_seconds)
            try:
                await job.update()
            except Exception:
                logger.exception("Error updating job %s", job.label)

    async def drive_queue(self) -> None:
        stats = self.queue_manager.get_queue_stats()
        logger.info(
            "Queue status: %d items in queue, %d active downloads, %d live jobs",
            stats.queue_length,
            stats.active_downloads,
            len(self.jobs),
        )
        await self.queue_manager.process_queue()

    async def health_check(self) -> int:
        """Force an immediate poll of stalled jobs; returns how many were nudged."""

        stalled = [
            job
            for job in self.jobs.values()
            if job.is_stalled(threshold_seconds=self.stall_threshold_seconds)
        ]
        for job in stalled:
            logger.warning("Job %s appears stalled, forcing status refresh", job.label)
            job.force_poll()
            try:
                await job.update()
            except Exception:
                logger.exception("Error refreshing stalled job %s", job.label)
        return len(stalled)

    async def run(self) -> None:
        """Run scan, poll, queue and health loops until ``stop`` is requested."""

        logger.info("Watching %s for new descriptors", self.watch_dir)
        self.queue_manager.start_maintenance()
        loop = asyncio.get_running_loop()
        self._loops = [
            loop.create_task(self._every(self.watch_rate_seconds, self._scan_tick)),
            loop.create_task(self._every(self.poll_interval_seconds, self.poll_jobs)),
            loop.create_task(self._every(self.queue_interval_seconds, self.drive_queue)),
            loop.create_task(self._every(self.health_check_interval_seconds, self._health_tick)),
        ]
        with self._signal_handlers(loop):
            try:
                await self._stop.wait()
            finally:
                await self.cleanup()

    def stop(self) -> None:
        self._stop.set()

    async def cleanup(self) -> None:
        for task in self._loops:
            task.cancel()
        if self._loops:
            await asyncio.gather(*self._loops, return_exceptions=True)
        self._loops = []
        self.queue_manager.cleanup()
        logger.info("Orchestrator stopped with %d live job(s)", len(self.jobs))

    async def _scan_tick(self) -> None:
        self.scan_once()

    async def _health_tick(self) -> None:
        await self.health_check()

    async def _every(self, interval: float, tick: Callable[[], Awaitable[None]]) -> None:
        while not self._stop.is_set():
            try:
                await tick()
            except Exception:
                logger.exception("Periodic task failed")
            await asyncio.sleep(interval)

    @contextmanager
    def _signal_handlers(self, loop: asyncio.AbstractEventLoop) -> Iterator[None]:
        installed: list[signal.Signals] = []
        for signum in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(signum, self._request_stop, signum.name)
            except (NotImplementedError, RuntimeError, ValueError):
                continue
            installed.append(signum)
        try:
            yield
        finally:
            for signum in installed:
                loop.remove_signal_handler(signum)

    def _request_stop(self, signal_name: str) -> None:
        logger.info("Received %s, shutting down", signal_name)
        self.stop()


def _is_candidate(path: Path) -> bool:
    name = path.name
    if name.startswith("."):
        return False
    suffix = path.suffix.lower()
    if suffix in IGNORED_SUFFIXES or suffix not in SUPPORTED_EXTENSIONS:
        return False
    return path.is_file()
