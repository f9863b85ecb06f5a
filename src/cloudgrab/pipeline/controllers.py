"""Controllers for pipeline CLI commands."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from cloudgrab.config import Settings
from cloudgrab.http.materializer import HttpMaterializer
from cloudgrab.pipeline.capacity import MIB, CapacityEstimator
from cloudgrab.pipeline.orchestrator import Orchestrator
from cloudgrab.pipeline.queue_manager import QueueManager
from cloudgrab.pipeline.retry import RetryExecutor
from cloudgrab.remote.base import RemoteService
from cloudgrab.remote.offcloud import OffcloudClient


class ClosableRemote(RemoteService, Protocol):
    async def close(self) -> None:
        """Release network resources."""
        raise NotImplementedError


RemoteFactory = Callable[[Settings], ClosableRemote]


@dataclass(slots=True)
class RunCommand:
    """CLI input for the long-running watch loop."""

    watch_dir: Path | None = None
    max_concurrent: int | None = None


@dataclass(slots=True)
class HistoryCommand:
    limit: int
    status: str | None = None


@dataclass(slots=True)
class CleanupCommand:
    """CLI input for deleting old completed remote jobs."""

    max_age_hours: float


def _offcloud_client(settings: Settings) -> OffcloudClient:
    return OffcloudClient(
        settings.remote.api_key,
        api_base_url=settings.remote.api_base_url,
        site_base_url=settings.remote.site_base_url,
        timeout_seconds=settings.remote.request_timeout_seconds,
    )


class PipelineCliController:
    """Wires settings, remote client and pipeline components for CLI commands."""

    def __init__(
        self,
        *,
        remote_factory: RemoteFactory | None = None,
        settings_loader: Callable[[], Settings] = Settings.from_env,
    ) -> None:
        self._remote_factory = remote_factory or _offcloud_client
        self._settings_loader = settings_loader

    def load_settings(self) -> Settings:
        settings = self._settings_loader()
        settings.validate_for_remote()
        return settings

    def run(self, command: RunCommand) -> list[str]:
        settings = self.load_settings()
        if command.watch_dir:
            settings.watch.watch_dir = command.watch_dir
        if command.max_concurrent:
            settings.queue.max_concurrent_downloads = command.max_concurrent
        asyncio.run(self._run(settings))
        return ["Watcher stopped."]

    async def _run(self, settings: Settings) -> None:
        async with self._remote(settings) as remote:
            materializer = HttpMaterializer(
                in_progress_dir=settings.materializer.in_progress_dir,
                completed_dir=settings.materializer.completed_dir,
            )
            async with materializer:
                retry = RetryExecutor()
                queue_manager = QueueManager(
                    remote,
                    retry_executor=retry,
                    estimator=_estimator(remote, settings),
                    max_concurrent_jobs=settings.queue.max_concurrent_downloads,
                )
                orchestrator = Orchestrator(
                    queue_manager=queue_manager,
                    remote=remote,
                    materializer=materializer,
                    retry_executor=retry,
                    watch_dir=settings.watch.watch_dir,
                    watch_rate_seconds=settings.watch.watch_rate_seconds,
                    file_stable_seconds=settings.watch.file_stable_seconds,
                )
                await orchestrator.run()

    def history(self, command: HistoryCommand) -> list[str]:
        settings = self.load_settings()
        return asyncio.run(self._history(settings, command))

    async def _history(self, settings: Settings, command: HistoryCommand) -> list[str]:
        async with self._remote(settings) as remote:
            items = await remote.list_history()

        if command.status:
            items = [item for item in items if item.status == command.status]
        if not items:
            return ["No remote jobs found."]
        lines = [f"Remote jobs: {len(items)}"]
        for item in items[: command.limit]:
            created = item.created_on.isoformat() if item.created_on else "-"
            lines.append(
                f"- {item.request_id} status={item.status} "
                f"size={item.file_size / MIB:.2f}MB created={created} "
                f"name={item.file_name or '-'}",
            )
        return lines

    def capacity(self) -> list[str]:
        settings = self.load_settings()
        return asyncio.run(self._capacity(settings))

    async def _capacity(self, settings: Settings) -> list[str]:
        async with self._remote(settings) as remote:
            estimate = await _estimator(remote, settings).refresh()
        return [
            "Remote capacity estimate:",
            f"- total: {estimate.total_capacity_bytes / MIB:.2f}MB",
            f"- used: {estimate.used_bytes / MIB:.2f}MB",
            f"- free: {estimate.free_bytes / MIB:.2f}MB",
            f"- reserved: {settings.queue.min_reserved_bytes / MIB:.2f}MB",
        ]

    def cleanup(self, command: CleanupCommand) -> list[str]:
        settings = self.load_settings()
        return asyncio.run(self._cleanup(settings, command))

    async def _cleanup(self, settings: Settings, command: CleanupCommand) -> list[str]:
        async with self._remote(settings) as remote:
            queue_manager = QueueManager(remote, estimator=_estimator(remote, settings))
            try:
                report = await queue_manager.cleanup_completed_downloads(command.max_age_hours)
            finally:
                queue_manager.cleanup()
        lines = [
            "Cleanup completed: "
            f"removed={report.removed} freed={report.freed_bytes / MIB:.2f}MB "
            f"errors={report.errors}",
        ]
        lines.extend(f"- removed {request_id}" for request_id in report.removed_request_ids)
        return lines

    @asynccontextmanager
    async def _remote(self, settings: Settings) -> AsyncIterator[ClosableRemote]:
        remote = self._remote_factory(settings)
        try:
            yield remote
        finally:
            await remote.close()


def _estimator(remote: RemoteService, settings: Settings) -> CapacityEstimator:
    return CapacityEstimator(
        remote,
        assumed_total_bytes=settings.queue.assumed_total_bytes,
        min_reserved_bytes=settings.queue.min_reserved_bytes,
    )
