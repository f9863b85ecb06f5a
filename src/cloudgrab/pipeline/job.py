"""Lifecycle of one descriptor submitted to the remote service."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import TypeVar
from urllib.parse import quote

from cloudgrab.http.materializer import MaterializeError, Materializer, MaterializeResult
from cloudgrab.pipeline.failure_classifier import is_retryable_error
from cloudgrab.pipeline.models import JobDescriptor, JobKind, JobOutcome, JobResult, JobStatus
from cloudgrab.pipeline.retry import RetryExecutor
from cloudgrab.remote.base import (
    DELETE_STRATEGY_ORDER,
    RemoteApiError,
    RemoteService,
    RemoteStatus,
    SubmissionAck,
    UnsupportedArchiveError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_UPDATE_RETRIES = 5
DEFAULT_POLL_FAILURE_COOLDOWN_SECONDS = 30.0
DEFAULT_POLL_FAILURE_MAX_BACKOFF_SECONDS = 60.0
DEFAULT_STALL_THRESHOLD_SECONDS = 1800.0
REMOTE_CALL_MAX_RETRIES = 3
REMOTE_CALL_BASE_DELAY_SECONDS = 1.0
MATERIALIZE_MAX_RETRIES = 2
MATERIALIZE_BASE_DELAY_SECONDS = 5.0
DELETE_MAX_RETRIES = 2

_POLLABLE_STATUSES = frozenset({JobStatus.QUEUED, JobStatus.DOWNLOADING})


class InvalidTransitionError(RuntimeError):
    """A lifecycle operation was called in the wrong state."""


class Job:
    """State machine for a single remote submission.

    pending -> queued -> downloading -> downloaded -> downloading_locally -> invalid,
    with a direct edge to invalid on remote error/canceled or when polling keeps
    failing. ``completion`` resolves exactly once, when invalid is entered.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        descriptor: JobDescriptor,
        remote: RemoteService,
        materializer: Materializer,
        retry_executor: RetryExecutor,
        clock: Callable[[], float] = time.time,
        max_update_retries: int = DEFAULT_MAX_UPDATE_RETRIES,
        poll_failure_cooldown_seconds: float = DEFAULT_POLL_FAILURE_COOLDOWN_SECONDS,
        poll_failure_max_backoff_seconds: float = DEFAULT_POLL_FAILURE_MAX_BACKOFF_SECONDS,
    ) -> None:
        self.descriptor = descriptor
        self.remote = remote
        self.materializer = materializer
        self.retry = retry_executor
        self._clock = clock
        self.max_update_retries = max_update_retries
        self.poll_failure_cooldown_seconds = poll_failure_cooldown_seconds
        self.poll_failure_max_backoff_seconds = poll_failure_max_backoff_seconds

        self.status = JobStatus.PENDING
        self.request_id: str | None = None
        self.remote_url: str | None = None
        self.is_directory = False
        self.last_polled_at: float | None = None
        self.last_poll_failed_at: float | None = None
        self.poll_failure_count = 0
        self.last_error: str | None = None
        self.last_remote_status: str | None = None
        self.submitted_at: float | None = None
        self.completion: asyncio.Future[JobOutcome] = asyncio.get_running_loop().create_future()
        self._finishing = False

    @property
    def local_file(self) -> Path:
        return self.descriptor.source_path

    @property
    def label(self) -> str:
        return self.local_file.name

    def result(self) -> JobResult:
        if self.request_id is None:
            raise InvalidTransitionError(f"Job {self.label!r} has not been submitted")
        return JobResult(request_id=self.request_id, completion=self.completion)

    async def start(self) -> JobResult:
        """Submit the descriptor and begin remote downloading."""

        await self.submit()
        self._begin_download()
        return self.result()

    async def submit(self) -> SubmissionAck:
        """Submit to the remote; pending -> queued."""

        if self.status != JobStatus.PENDING:
            raise InvalidTransitionError(
                f"Cannot submit {self.label!r} in state {self.status.value}",
            )

        if self.descriptor.kind == JobKind.MAGNET:
            link = self.local_file.read_text("utf-8").strip()
            ack = await self._remote_call(
                lambda: self.remote.submit_magnet(link),
                operation_name=f"Submit magnet {self.label}",
            )
        else:
            ack = await self._submit_uploaded()

        self.request_id = ack.request_id
        self.remote_url = ack.url
        self.submitted_at = self._clock()
        self.status = JobStatus.QUEUED
        logger.info("'%s' added to remote queue (%s)", self.label, self.request_id)
        return ack

    async def _submit_uploaded(self) -> SubmissionAck:
        upload = await self._remote_call(
            lambda: self.remote.upload_file(self.local_file),
            operation_name=f"Upload {self.label}",
        )
        if not upload.success or not upload.url:
            raise RemoteApiError(f"Upload of {self.label!r} was rejected: {upload.raw!r}")
        upload_url = upload.url

        if self.descriptor.kind == JobKind.NZB:
            name = upload.file_name or self.label
            return await self._remote_call(
                lambda: self.remote.submit_usenet(upload_url, name),
                operation_name=f"Submit usenet {self.label}",
            )
        return await self._remote_call(
            lambda: self.remote.submit_cloud(upload_url),
            operation_name=f"Submit cloud {self.label}",
        )

    def _begin_download(self) -> None:
        if self.status != JobStatus.QUEUED:
            raise InvalidTransitionError(
                f"Cannot begin download of {self.label!r} in state {self.status.value}",
            )
        self.status = JobStatus.DOWNLOADING
        logger.info("'%s' downloading remotely", self.label)

    def in_poll_cooldown(self, now: float | None = None) -> bool:
        if self.last_poll_failed_at is None or self.poll_failure_count == 0:
            return False
        now = self._clock() if now is None else now
        cooldown = min(
            self.poll_failure_max_backoff_seconds,
            self.poll_failure_cooldown_seconds * (2 ** (self.poll_failure_count - 1)),
        )
        return now - self.last_poll_failed_at < cooldown

    def force_poll(self) -> None:
        """Clear the poll cool-down so the next ``update`` hits the remote."""

        self.last_poll_failed_at = None

    def is_stalled(self, *, threshold_seconds: float = DEFAULT_STALL_THRESHOLD_SECONDS) -> bool:
        if self.status != JobStatus.DOWNLOADING:
            return False
        last_progress = self.last_polled_at or self.submitted_at
        if last_progress is None:
            return False
        return self._clock() - last_progress > threshold_seconds

    async def update(self) -> None:
        """Poll the remote once and advance the state machine."""

        if self.status not in _POLLABLE_STATUSES or self.request_id is None:
            return
        now = self._clock()
        if self.in_poll_cooldown(now):
            logger.debug("Skipping poll of %s: previous poll failed recently", self.label)
            return

        try:
            info = await self.remote.get_status(self.request_id)
        except Exception as exc:  # noqa: BLE001
            await self._record_poll_failure(exc, now)
            return

        self.poll_failure_count = 0
        self.last_poll_failed_at = None
        self.last_polled_at = now
        await self._handle_update(info)

    async def _record_poll_failure(self, error: Exception, now: float) -> None:
        self.poll_failure_count += 1
        self.last_poll_failed_at = now
        self.last_error = f"status poll failed: {error}"
        logger.warning(
            "Status poll for '%s' failed (%d/%d): %s",
            self.label,
            self.poll_failure_count,
            self.max_update_retries,
            error,
        )
        if self.poll_failure_count > self.max_update_retries:
            await self.finish(
                JobOutcome(
                    request_id=self.request_id or "",
                    succeeded=False,
                    reached_local=False,
                    error=self.last_error,
                    remote_status=self.last_remote_status,
                ),
            )

    async def _handle_update(self, info: RemoteStatus) -> None:
        self.last_remote_status = info.status
        if info.is_terminal_error:
            self.last_error = f"remote reported {info.status}"
            await self.finish(
                JobOutcome(
                    request_id=self.request_id or "",
                    succeeded=False,
                    reached_local=False,
                    error=self.last_error,
                    remote_status=info.status,
                ),
            )
            return

        if self.status == JobStatus.QUEUED:
            self._begin_download()
        logger.info(
            "'%s' id: %s local: %s remote: %s size: %s bytes",
            self.label,
            self.request_id,
            self.status.value,
            info.status,
            info.file_size,
        )
        if info.is_downloaded and self.status == JobStatus.DOWNLOADING:
            self.status = JobStatus.DOWNLOADED
            self.is_directory = info.is_directory
            await self._download_locally(info)

    async def _download_locally(self, info: RemoteStatus) -> None:
        self.status = JobStatus.DOWNLOADING_LOCALLY
        try:
            urls = await self._resolve_urls(info)
            logger.info("'%s' downloading locally (%d link(s))", self.label, len(urls))
            result: MaterializeResult = await self.retry.execute(
                lambda: self.materializer.materialize(urls, self.descriptor.folder_hint),
                max_retries=MATERIALIZE_MAX_RETRIES,
                base_delay=MATERIALIZE_BASE_DELAY_SECONDS,
                should_retry=_should_retry_materialize,
                operation_name=f"Materialize {self.label}",
            )
        except Exception as exc:  # noqa: BLE001
            self.last_error = f"local download failed: {exc}"
            await self.finish(
                JobOutcome(
                    request_id=self.request_id or "",
                    succeeded=False,
                    reached_local=True,
                    retryable=True,
                    error=self.last_error,
                    remote_status=info.status,
                ),
            )
            return

        if result.failed:
            logger.warning("'%s' finished with %d failed link(s)", self.label, len(result.failed))
        await self.finish(
            JobOutcome(
                request_id=self.request_id or "",
                succeeded=True,
                reached_local=True,
                remote_status=info.status,
            ),
        )

    async def _resolve_urls(self, info: RemoteStatus) -> list[str]:
        base_url = (self.remote_url or "").rstrip("/")
        if not info.is_directory:
            return [f"{base_url}/{quote(info.file_name or '')}"]

        request_id = self.request_id or ""
        try:
            return await self._remote_call(
                lambda: self.remote.explore(request_id),
                operation_name=f"Explore {self.label}",
            )
        except UnsupportedArchiveError:
            logger.info("'%s' explore unsupported, downloading archive directly", self.label)
            return [base_url]

    async def finish(self, outcome: JobOutcome) -> None:
        """Enter the terminal state: clean up locally and remotely, then complete."""

        if self._finishing:
            return
        self._finishing = True
        previous = self.status
        self.status = JobStatus.INVALID
        try:
            self._log_terminal(outcome, previous)
            if not outcome.retryable:
                self._delete_local_file()
            await self._delete_remote()
        finally:
            if not self.completion.done():
                self.completion.set_result(outcome)

    def _log_terminal(self, outcome: JobOutcome, previous: JobStatus) -> None:
        if outcome.succeeded:
            logger.info(
                "[COMPLETED] '%s' (%s) downloaded locally, cleaning up remote",
                self.label,
                self.request_id,
            )
            return
        logger.error(
            "[TERMINAL-FAILURE] '%s' (%s) state=%s remote_status=%s reached_local=%s error=%s",
            self.label,
            self.request_id,
            previous.value,
            outcome.remote_status or self.last_remote_status,
            outcome.reached_local,
            outcome.error or self.last_error,
        )

    def _delete_local_file(self) -> None:
        try:
            self.local_file.unlink()
        except FileNotFoundError:
            logger.info("File %s already deleted or doesn't exist", self.local_file)
        except OSError as exc:
            logger.error("Error deleting local file %s: %s", self.local_file, exc)
        else:
            logger.info("'%s' deleted locally", self.label)

    async def _delete_remote(self) -> None:
        if self.request_id is None:
            return
        request_id = self.request_id
        for strategy in DELETE_STRATEGY_ORDER:
            try:
                await self.retry.execute(
                    lambda strategy=strategy: self.remote.delete_remote(
                        request_id,
                        strategy=strategy,
                    ),
                    max_retries=DELETE_MAX_RETRIES,
                    operation_name=f"Delete {request_id} via {strategy.value}",
                )
            except Exception as exc:  # noqa: BLE001
                logger.warning(
                    "Remote delete of %s via %s failed: %s",
                    request_id,
                    strategy.value,
                    exc,
                )
                continue
            logger.info("'%s' deleted remotely", self.label)
            return
        logger.warning(
            "Could not delete remote job %s after %d strategies, proceeding anyway",
            request_id,
            len(DELETE_STRATEGY_ORDER),
        )

    async def _remote_call(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        operation_name: str,
    ) -> T:
        return await self.retry.execute(
            operation,
            max_retries=REMOTE_CALL_MAX_RETRIES,
            base_delay=REMOTE_CALL_BASE_DELAY_SECONDS,
            operation_name=operation_name,
        )


def _should_retry_materialize(error: BaseException) -> bool:
    return isinstance(error, MaterializeError) or is_retryable_error(error)
