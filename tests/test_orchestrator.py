from __future__ import annotations

import asyncio
from pathlib import Path

import allure
import pytest

from cloudgrab.pipeline.capacity import CapacityEstimator
from cloudgrab.pipeline.fingerprints import FingerprintTable
from cloudgrab.pipeline.models import FingerprintState, JobDescriptor, JobStatus
from cloudgrab.pipeline.orchestrator import Orchestrator
from cloudgrab.pipeline.queue_manager import QueueManager
from cloudgrab.pipeline.retry import RetryExecutor
from cloudgrab.remote.base import RemoteStatus
from tests.fakes import FakeClock, FakeMaterializer, FakeRemote, RecordingSleep, write_descriptor

pytestmark = [
    allure.epic("Pipeline"),
    allure.feature("Orchestrator"),
]


@pytest.fixture()
def watch_dir(tmp_path: Path) -> Path:
    path = tmp_path / "watch"
    path.mkdir()
    return path


def _orchestrator(  # noqa: PLR0913
    watch_dir: Path,
    remote: FakeRemote,
    materializer: FakeMaterializer,
    retry: RetryExecutor,
    clock: FakeClock,
    sleep: RecordingSleep,
    *,
    file_stable_seconds: float = 0,
) -> Orchestrator:
    queue_manager = QueueManager(
        remote,
        retry_executor=retry,
        estimator=CapacityEstimator(remote, clock=clock),
        fingerprints=FingerprintTable(clock=clock),
        clock=clock,
        sleep=sleep,
    )
    return Orchestrator(
        queue_manager=queue_manager,
        remote=remote,
        materializer=materializer,
        watch_dir=watch_dir,
        retry_executor=retry,
        file_stable_seconds=file_stable_seconds,
        clock=clock,
        sleep=sleep,
    )


async def test_scan_ignores_work_files_and_unsupported_extensions(  # noqa: PLR0913
    watch_dir: Path,
    remote: FakeRemote,
    materializer: FakeMaterializer,
    retry: RetryExecutor,
    clock: FakeClock,
    sleep: RecordingSleep,
) -> None:
    for name in ("a.torrent", ".hidden.torrent", "b.torrent.part", "c.queued", "notes.txt"):
        write_descriptor(watch_dir, name)
    nested = watch_dir / "sub"
    nested.mkdir()
    write_descriptor(nested, "d.nzb")
    orchestrator = _orchestrator(watch_dir, remote, materializer, retry, clock, sleep)

    added = orchestrator.scan_once()

    assert sorted(item.descriptor.source_path.name for item in added) == ["a.torrent", "d.nzb"]
    assert orchestrator.scan_once() == []
    orchestrator.queue_manager.cleanup()


async def test_scan_waits_for_file_to_be_stable(  # noqa: PLR0913
    watch_dir: Path,
    remote: FakeRemote,
    materializer: FakeMaterializer,
    retry: RetryExecutor,
    clock: FakeClock,
    sleep: RecordingSleep,
) -> None:
    path = write_descriptor(watch_dir, "a.magnet", "magnet:?xt=urn:btih:1")
    orchestrator = _orchestrator(
        watch_dir,
        remote,
        materializer,
        retry,
        clock,
        sleep,
        file_stable_seconds=5,
    )

    assert orchestrator.scan_once() == []
    clock.advance(3)
    path.write_text("magnet:?xt=urn:btih:12", "utf-8")
    assert orchestrator.scan_once() == []
    clock.advance(5)
    assert len(orchestrator.scan_once()) == 1
    orchestrator.queue_manager.cleanup()


async def test_process_file_starts_job_and_tracks_it_until_completion(  # noqa: PLR0913
    watch_dir: Path,
    remote: FakeRemote,
    materializer: FakeMaterializer,
    retry: RetryExecutor,
    clock: FakeClock,
    sleep: RecordingSleep,
) -> None:
    path = write_descriptor(watch_dir, "movie.torrent")
    orchestrator = _orchestrator(watch_dir, remote, materializer, retry, clock, sleep)

    result = await orchestrator.process_file(path)

    job = orchestrator.jobs[result.request_id]
    assert job.status == JobStatus.DOWNLOADING
    remote.statuses[result.request_id] = [RemoteStatus(status="downloaded", file_name="movie.mkv")]

    await orchestrator.poll_jobs()
    await asyncio.sleep(0)

    assert job.status == JobStatus.INVALID
    assert orchestrator.jobs == {}
    assert not path.exists()


async def test_poll_jobs_pauses_between_requests(  # noqa: PLR0913
    watch_dir: Path,
    remote: FakeRemote,
    materializer: FakeMaterializer,
    retry: RetryExecutor,
    clock: FakeClock,
    sleep: RecordingSleep,
) -> None:
    orchestrator = _orchestrator(watch_dir, remote, materializer, retry, clock, sleep)
    for name in ("a.torrent", "b.torrent", "c.torrent"):
        await orchestrator.process_file(write_descriptor(watch_dir, name))

    await orchestrator.poll_jobs()

    assert remote.count("get_status") == 3
    assert sleep.delays == [0.5, 0.5]


async def test_health_check_forces_poll_of_stalled_jobs(  # noqa: PLR0913
    watch_dir: Path,
    remote: FakeRemote,
    materializer: FakeMaterializer,
    retry: RetryExecutor,
    clock: FakeClock,
    sleep: RecordingSleep,
) -> None:
    orchestrator = _orchestrator(watch_dir, remote, materializer, retry, clock, sleep)
    result = await orchestrator.process_file(write_descriptor(watch_dir, "a.torrent"))
    job = orchestrator.jobs[result.request_id]
    job.poll_failure_count = 1
    job.last_poll_failed_at = clock.now

    assert await orchestrator.health_check() == 0
    clock.advance(1_801)
    job.last_poll_failed_at = clock.now

    assert await orchestrator.health_check() == 1
    assert remote.count("get_status") == 1
    assert job.last_polled_at == clock.now


async def test_scanned_descriptor_flows_through_queue_to_a_live_job(  # noqa: PLR0913
    watch_dir: Path,
    remote: FakeRemote,
    materializer: FakeMaterializer,
    retry: RetryExecutor,
    clock: FakeClock,
    sleep: RecordingSleep,
) -> None:
    write_descriptor(watch_dir, "a.magnet", "magnet:?xt=urn:btih:1")
    orchestrator = _orchestrator(watch_dir, remote, materializer, retry, clock, sleep)

    orchestrator.scan_once()
    await orchestrator.drive_queue()

    assert list(orchestrator.jobs) == ["req-1"]
    assert orchestrator.queue_manager.active_downloads == 1
    await orchestrator.cleanup()


async def test_canceled_remote_job_releases_slot_without_requeue(  # noqa: PLR0913
    watch_dir: Path,
    remote: FakeRemote,
    materializer: FakeMaterializer,
    retry: RetryExecutor,
    clock: FakeClock,
    sleep: RecordingSleep,
) -> None:
    write_descriptor(watch_dir, "movie.torrent")
    orchestrator = _orchestrator(watch_dir, remote, materializer, retry, clock, sleep)
    queue_manager = orchestrator.queue_manager
    [item] = orchestrator.scan_once()
    await orchestrator.drive_queue()
    assert queue_manager.active_downloads == 1

    remote.statuses["req-1"] = [RemoteStatus(status="canceled")]
    await orchestrator.poll_jobs()
    for _ in range(3):
        await asyncio.sleep(0)

    assert item.retries == 0
    assert queue_manager.active_downloads == 0
    assert queue_manager.queue == []
    assert orchestrator.jobs == {}
    assert materializer.calls == []
    assert remote.count("upload_file") == 1
    assert queue_manager.fingerprints.state_of(item.fingerprint) == (
        FingerprintState.RECENTLY_COMPLETED
    )
    await orchestrator.cleanup()


async def test_run_stops_on_request(  # noqa: PLR0913
    watch_dir: Path,
    remote: FakeRemote,
    materializer: FakeMaterializer,
    retry: RetryExecutor,
    clock: FakeClock,
    sleep: RecordingSleep,
) -> None:
    orchestrator = _orchestrator(watch_dir, remote, materializer, retry, clock, sleep)
    runner = asyncio.create_task(orchestrator.run())
    await asyncio.sleep(0)

    orchestrator.stop()
    await asyncio.wait_for(runner, timeout=5)

    assert runner.done()


def test_unsupported_descriptor_is_rejected(tmp_path: Path) -> None:
    with pytest.raises(ValueError, match="Unsupported"):
        JobDescriptor.from_path(write_descriptor(tmp_path, "a.txt"))
