from __future__ import annotations

from datetime import UTC, datetime, timedelta

import allure
import pytest
from click.testing import CliRunner

from cloudgrab import __version__, main
from cloudgrab.config import RemoteSettings, Settings
from cloudgrab.main import cloudgrab
from cloudgrab.pipeline.controllers import PipelineCliController
from cloudgrab.remote.base import RemoteHistoryItem, TransientRemoteError
from tests.fakes import FakeRemote

pytestmark = [
    allure.epic("CLI"),
    allure.feature("Commands"),
]


@pytest.fixture()
def fake_remote(monkeypatch: pytest.MonkeyPatch) -> FakeRemote:
    remote = FakeRemote()
    controller = PipelineCliController(
        remote_factory=lambda settings: remote,
        settings_loader=lambda: Settings(remote=RemoteSettings(api_key="test-key")),
    )
    monkeypatch.setattr(main, "PIPELINE_CONTROLLER", controller)
    return remote


def test_version_option() -> None:
    result = CliRunner().invoke(cloudgrab, ["--version"])
    assert result.exit_code == 0
    assert __version__ in result.output


def test_history_lists_remote_jobs(fake_remote: FakeRemote) -> None:
    fake_remote.history = [
        RemoteHistoryItem(
            request_id="r1",
            status="downloaded",
            file_name="a.iso",
            file_size=1024**2,
        ),
        RemoteHistoryItem(request_id="r2", status="downloading", file_name="b.iso"),
    ]

    result = CliRunner().invoke(cloudgrab, ["history", "--status", "downloaded"])

    assert result.exit_code == 0, result.output
    assert "Remote jobs: 1" in result.output
    assert "r1 status=downloaded size=1.00MB" in result.output
    assert "r2" not in result.output
    assert fake_remote.closed


def test_capacity_reports_estimate(fake_remote: FakeRemote) -> None:
    fake_remote.history = [
        RemoteHistoryItem(request_id="r1", status="downloaded", file_size=10 * 1024**2),
    ]

    result = CliRunner().invoke(cloudgrab, ["capacity"])

    assert result.exit_code == 0, result.output
    assert "- used: 10.00MB" in result.output
    assert "- reserved: 500.00MB" in result.output


def test_cleanup_deletes_old_jobs(fake_remote: FakeRemote) -> None:
    now = datetime.now(tz=UTC)
    fake_remote.history = [
        RemoteHistoryItem(
            request_id="old",
            status="downloaded",
            file_size=1024**2,
            created_on=now - timedelta(hours=5),
        ),
        RemoteHistoryItem(
            request_id="new",
            status="downloaded",
            file_size=1024**2,
            created_on=now - timedelta(minutes=5),
        ),
    ]

    result = CliRunner().invoke(cloudgrab, ["cleanup", "--max-age-hours", "1"])

    assert result.exit_code == 0, result.output
    assert "removed=1 freed=1.00MB errors=0" in result.output
    assert "- removed old" in result.output


def test_remote_errors_surface_as_click_errors(fake_remote: FakeRemote) -> None:
    fake_remote.history_error = TransientRemoteError("offline")

    result = CliRunner().invoke(cloudgrab, ["history"])

    assert result.exit_code == 1
    assert "offline" in result.output


def test_missing_api_key_is_a_usage_error(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("CLOUDGRAB_API_KEY", raising=False)
    monkeypatch.setattr(main, "PIPELINE_CONTROLLER", PipelineCliController())

    result = CliRunner().invoke(cloudgrab, ["capacity"])

    assert result.exit_code == 1
    assert "CLOUDGRAB_API_KEY" in result.output


def test_invalid_log_level_is_a_usage_error(
    fake_remote: FakeRemote,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("CLOUDGRAB_LOG_LEVEL", "CHATTY")

    result = CliRunner().invoke(cloudgrab, ["history"])

    assert result.exit_code == 1
    assert "Invalid CLOUDGRAB_LOG_LEVEL" in result.output
    assert fake_remote.calls == []
