from __future__ import annotations

from pathlib import Path

import allure
import httpx
import pytest

from cloudgrab.http import materializer as materializer_module
from cloudgrab.http.materializer import (
    HttpMaterializer,
    MaterializeError,
    filename_for,
    sanitize_folder_name,
)

pytestmark = [
    allure.epic("Local Download"),
    allure.feature("HTTP Materializer"),
]


def _materializer(tmp_path: Path, handler) -> HttpMaterializer:
    return HttpMaterializer(
        in_progress_dir=tmp_path / "in-progress",
        completed_dir=tmp_path / "completed",
        transport=httpx.MockTransport(handler),
    )


async def test_files_are_streamed_then_moved_to_completed(tmp_path: Path) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("e01.mkv"):
            return httpx.Response(200, content=b"episode one")
        return httpx.Response(
            200,
            content=b"episode two",
            headers={"content-disposition": 'attachment; filename="Episode 2.mkv"'},
        )

    async with _materializer(tmp_path, handler) as materializer:
        result = await materializer.materialize(
            ["https://dl.example/r1/e01.mkv", "https://dl.example/r1/download"],
            "Show.S01",
        )

    assert result.success == ["e01.mkv", "Episode 2.mkv"]
    assert result.failed == []
    assert (tmp_path / "completed" / "Show.S01" / "e01.mkv").read_bytes() == b"episode one"
    assert (tmp_path / "completed" / "Show.S01" / "Episode 2.mkv").read_bytes() == b"episode two"
    assert not (tmp_path / "in-progress" / "Show.S01").exists()


async def test_partial_failure_is_reported(tmp_path: Path) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if "broken" in request.url.path:
            return httpx.Response(500)
        return httpx.Response(200, content=b"ok")

    async with _materializer(tmp_path, handler) as materializer:
        result = await materializer.materialize(
            ["https://dl.example/good.bin", "https://dl.example/broken.bin"],
            "mixed",
        )

    assert result.success == ["good.bin"]
    assert result.failed == ["https://dl.example/broken.bin"]


async def test_all_links_failing_raises(tmp_path: Path) -> None:
    async with _materializer(tmp_path, lambda request: httpx.Response(404)) as materializer:
        with pytest.raises(MaterializeError, match="Failed to download any files"):
            await materializer.materialize(["https://dl.example/a", "https://dl.example/b"], "x")


async def test_existing_completed_file_is_kept(tmp_path: Path) -> None:
    target = tmp_path / "completed" / "movie" / "movie.mkv"
    target.parent.mkdir(parents=True)
    target.write_bytes(b"original")

    async with _materializer(tmp_path, lambda request: httpx.Response(200, content=b"new")) as m:
        result = await m.materialize(["https://dl.example/movie.mkv"], "movie")

    assert result.success == ["movie.mkv"]
    assert target.read_bytes() == b"original"


def test_filename_prefers_content_disposition() -> None:
    disposition = "attachment; filename*=UTF-8''caf%C3%A9.txt"
    assert filename_for("https://x/a.bin", disposition) == "café.txt"
    assert filename_for("https://x/a%20b.bin", None) == "a b.bin"
    assert filename_for("https://x/dir/", "inline") == "dir"


def test_folder_names_are_sanitized() -> None:
    assert sanitize_folder_name("Show: Part 1?") == "Show_ Part 1_"
    assert sanitize_folder_name("/watch/nested/movie.torrent") == "movie"
    assert sanitize_folder_name("   ").startswith("download_")


class _DroppedStream(httpx.AsyncByteStream):
    async def __aiter__(self):
        yield b"partial"
        raise httpx.ReadError("connection dropped")


async def test_interrupted_download_leaves_no_partial_file(tmp_path: Path) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if "dropped" in request.url.path:
            return httpx.Response(200, stream=_DroppedStream())
        return httpx.Response(200, content=b"ok")

    async with _materializer(tmp_path, handler) as materializer:
        result = await materializer.materialize(
            ["https://dl.example/dropped.bin", "https://dl.example/good.bin"],
            "show",
        )

    assert result.success == ["good.bin"]
    assert result.failed == ["https://dl.example/dropped.bin"]
    assert not (tmp_path / "in-progress" / "show").exists()
    assert not (tmp_path / "completed" / "show" / "dropped.bin").exists()


async def test_failed_move_keeps_earlier_successes(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    original_move = materializer_module._move_file

    def move(source: Path, destination: Path) -> None:
        if source.name == "b.bin":
            raise OSError(28, "No space left on device")
        original_move(source, destination)

    monkeypatch.setattr(materializer_module, "_move_file", move)

    async with _materializer(tmp_path, lambda request: httpx.Response(200, content=b"x")) as m:
        result = await m.materialize(["https://dl.example/a.bin", "https://dl.example/b.bin"], "d")

    assert result.success == ["a.bin"]
    assert result.failed == ["https://dl.example/b.bin"]
    assert (tmp_path / "completed" / "d" / "a.bin").exists()
