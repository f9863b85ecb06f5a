from __future__ import annotations

import json
from datetime import UTC, datetime
from pathlib import Path
from urllib.parse import parse_qs

import allure
import httpx
import pytest

from cloudgrab.remote.base import (
    DeleteStrategy,
    PermanentRemoteError,
    RemoteApiError,
    TransientRemoteError,
    UnsupportedArchiveError,
)
from cloudgrab.remote.offcloud import OffcloudClient

pytestmark = [
    allure.epic("Remote Service"),
    allure.feature("Offcloud Client"),
]


class Recorder:
    def __init__(self, handler) -> None:
        self.requests: list[httpx.Request] = []
        self._handler = handler

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self._handler(request)


def _client(handler) -> tuple[OffcloudClient, Recorder]:
    recorder = Recorder(handler)
    client = OffcloudClient(
        "secret",
        api_base_url="https://api.example/api",
        site_base_url="https://site.example",
        transport=httpx.MockTransport(recorder),
    )
    return client, recorder


def _form(request: httpx.Request) -> dict[str, list[str]]:
    return parse_qs(request.content.decode())


def test_api_key_is_required() -> None:
    with pytest.raises(ValueError, match="API key"):
        OffcloudClient("")


async def test_submit_magnet_posts_url_with_key() -> None:
    client, recorder = _client(
        lambda request: httpx.Response(200, json={"requestId": "r1", "url": "https://dl/r1"}),
    )
    async with client:
        ack = await client.submit_magnet("  magnet:?xt=urn:btih:abc \n")

    request = recorder.requests[0]
    assert request.method == "POST"
    assert str(request.url).startswith("https://api.example/api/cloud?")
    assert request.url.params["key"] == "secret"
    assert _form(request) == {"url": ["magnet:?xt=urn:btih:abc"]}
    assert ack.request_id == "r1"
    assert ack.url == "https://dl/r1"


async def test_submit_usenet_sends_custom_file_name() -> None:
    client, recorder = _client(
        lambda request: httpx.Response(200, json={"requestId": 7, "url": "https://dl/7"}),
    )
    async with client:
        ack = await client.submit_usenet("https://up/x.nzb", "show.nzb")

    assert _form(recorder.requests[0]) == {
        "url": ["https://up/x.nzb"],
        "customFileName": ["show.nzb"],
    }
    assert ack.request_id == "7"


async def test_upload_file_posts_multipart_to_site(tmp_path: Path) -> None:
    descriptor = tmp_path / "linux.torrent"
    descriptor.write_bytes(b"d8:announce")
    client, recorder = _client(
        lambda request: httpx.Response(
            200,
            json={"success": True, "url": "https://up/linux.torrent", "fileName": "linux.torrent"},
        ),
    )
    async with client:
        result = await client.upload_file(descriptor)

    request = recorder.requests[0]
    assert str(request.url).startswith("https://site.example/torrent/upload?")
    assert request.headers["content-type"].startswith("multipart/form-data")
    assert b"d8:announce" in request.content
    assert result.success
    assert result.url == "https://up/linux.torrent"


async def test_get_status_parses_nested_payload() -> None:
    payload = {
        "status": {
            "status": "downloaded",
            "fileName": "ubuntu.iso",
            "fileSize": "4096",
            "isDirectory": False,
        },
    }
    client, recorder = _client(lambda request: httpx.Response(200, json=payload))
    async with client:
        status = await client.get_status("r1")

    assert recorder.requests[0].url.path == "/api/cloud/status"
    assert status.is_downloaded
    assert status.file_name == "ubuntu.iso"
    assert status.file_size == 4096


async def test_server_errors_are_transient_and_client_errors_permanent() -> None:
    codes = iter([503, 429, 400])
    client, _ = _client(lambda request: httpx.Response(next(codes), text="nope"))
    async with client:
        with pytest.raises(TransientRemoteError) as unavailable:
            await client.get_status("r1")
        with pytest.raises(TransientRemoteError):
            await client.get_status("r1")
        with pytest.raises(PermanentRemoteError) as bad_request:
            await client.get_status("r1")

    assert unavailable.value.status_code == 503
    assert bad_request.value.retryable is False


async def test_connection_errors_are_transient() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection reset", request=request)

    client, _ = _client(handler)
    async with client:
        with pytest.raises(TransientRemoteError) as caught:
            await client.submit_cloud("https://up/x")

    assert caught.value.code == "connection"


async def test_error_field_and_bad_archive_are_mapped() -> None:
    bodies = iter([{"error": "Bad archive"}, {"error": "Premium required"}])
    client, _ = _client(lambda request: httpx.Response(200, json=next(bodies)))
    async with client:
        with pytest.raises(UnsupportedArchiveError):
            await client.explore("r1")
        with pytest.raises(RemoteApiError, match="Premium required"):
            await client.explore("r1")


async def test_malformed_json_is_a_permanent_error() -> None:
    client, _ = _client(lambda request: httpx.Response(200, text="<html>"))
    async with client:
        with pytest.raises(RemoteApiError, match="Malformed"):
            await client.submit_cloud("https://up/x")


async def test_delete_strategies_hit_distinct_endpoints() -> None:
    client, recorder = _client(lambda request: httpx.Response(200, json={"success": True}))
    async with client:
        for strategy in DeleteStrategy:
            await client.delete_remote("r9", strategy=strategy)

    calls = [(request.method, request.url.host, request.url.path) for request in recorder.requests]
    assert calls == [
        ("GET", "site.example", "/cloud/remove/r9"),
        ("POST", "api.example", "/api/cloud/delete"),
        ("POST", "api.example", "/api/cloud/remove/r9"),
    ]
    assert _form(recorder.requests[1]) == {"requestId": ["r9"]}


async def test_delete_of_missing_job_is_not_an_error() -> None:
    client, _ = _client(lambda request: httpx.Response(404))
    async with client:
        await client.delete_remote("gone")


async def test_list_history_parses_items_and_tolerates_404() -> None:
    history = [
        {
            "requestId": "a",
            "status": "downloaded",
            "fileName": "a.iso",
            "fileSize": 10,
            "createdOn": "2026-01-02T03:04:05.000Z",
        },
        {"status": "downloaded"},
        "junk",
    ]
    client, _ = _client(lambda request: httpx.Response(200, content=json.dumps(history)))
    async with client:
        items = await client.list_history()

    assert len(items) == 1
    assert items[0].created_on == datetime(2026, 1, 2, 3, 4, 5, tzinfo=UTC)
    assert items[0].file_size == 10

    missing, _ = _client(lambda request: httpx.Response(404))
    async with missing:
        assert await missing.list_history() == []


async def test_list_history_rejects_non_list_payload() -> None:
    client, _ = _client(lambda request: httpx.Response(200, json={"items": []}))
    async with client:
        with pytest.raises(RemoteApiError, match="Invalid history format"):
            await client.list_history()
