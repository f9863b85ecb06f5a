"""Async Offcloud API client."""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import httpx

from cloudgrab.remote.base import (
    DeleteStrategy,
    PermanentRemoteError,
    RemoteApiError,
    RemoteHistoryItem,
    RemoteNotFoundError,
    RemoteStatus,
    SubmissionAck,
    TransientRemoteError,
    UnsupportedArchiveError,
    UploadResult,
    is_retryable_status,
)

logger = logging.getLogger(__name__)

DEFAULT_API_BASE_URL = "https://offcloud.com/api/"
DEFAULT_SITE_BASE_URL = "https://offcloud.com/"
DEFAULT_TIMEOUT_SECONDS = 30.0
HISTORY_TIMEOUT_SECONDS = 60.0
UPLOAD_TIMEOUT_SECONDS = 60.0
HTTP_NOT_FOUND = 404
BAD_ARCHIVE_MARKER = "bad archive"


class OffcloudClient:
    """Offcloud implementation of the remote service capabilities.

    Errors are surfaced as ``TransientRemoteError`` (connection, timeout, 5xx,
    429, 408) or ``PermanentRemoteError`` subclasses; retrying is left to the
    caller's retry executor.
    """

    def __init__(
        self,
        api_key: str,
        *,
        api_base_url: str = DEFAULT_API_BASE_URL,
        site_base_url: str = DEFAULT_SITE_BASE_URL,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not api_key:
            raise ValueError("Offcloud API key is required.")
        self._api_key = api_key
        self.api_base_url = api_base_url.rstrip("/") + "/"
        self.site_base_url = site_base_url.rstrip("/") + "/"
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            transport=transport,
            follow_redirects=True,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> OffcloudClient:
        return self

    async def __aexit__(self, *_: object) -> None:
        await self.close()

    async def submit_magnet(self, link: str) -> SubmissionAck:
        return _parse_ack(await self._post("cloud", data={"url": link.strip()}))

    async def upload_file(self, path: Path) -> UploadResult:
        with path.open("rb") as handle:
            payload = await self._request(
                "POST",
                f"{self.site_base_url}torrent/upload",
                files={"file": (path.name, handle.read())},
                data={"name": "file", "filename": path.name},
                timeout=UPLOAD_TIMEOUT_SECONDS,
            )
        body = _expect_dict(payload, "torrent/upload")
        return UploadResult(
            success=bool(body.get("success")),
            url=_optional_str(body.get("url")),
            file_name=_optional_str(body.get("fileName")),
            raw=body,
        )

    async def submit_cloud(self, url: str) -> SubmissionAck:
        return _parse_ack(await self._post("cloud", data={"url": url}))

    async def submit_usenet(self, url: str, name: str) -> SubmissionAck:
        return _parse_ack(await self._post("cloud", data={"url": url, "customFileName": name}))

    async def get_status(self, request_id: str) -> RemoteStatus:
        body = _expect_dict(
            await self._post("cloud/status", data={"requestId": request_id}),
            "cloud/status",
        )
        status = body.get("status")
        details = status if isinstance(status, dict) else body
        value = details.get("status")
        if not isinstance(value, str):
            raise RemoteApiError(f"Malformed status response for {request_id}: {body!r}")
        return RemoteStatus(
            status=value,
            file_name=_optional_str(details.get("fileName")),
            file_size=_optional_int(details.get("fileSize")),
            is_directory=bool(details.get("isDirectory", False)),
        )

    async def explore(self, request_id: str) -> list[str]:
        payload = await self._post("cloud/explore", data={"requestId": request_id})
        if not isinstance(payload, list):
            raise RemoteApiError(f"Malformed explore response for {request_id}: {payload!r}")
        return [str(entry) for entry in payload]

    async def delete_remote(
        self,
        request_id: str,
        *,
        strategy: DeleteStrategy = DeleteStrategy.DIRECT_REMOVE,
    ) -> None:
        try:
            if strategy == DeleteStrategy.DIRECT_REMOVE:
                await self._request("GET", f"{self.site_base_url}cloud/remove/{request_id}")
            elif strategy == DeleteStrategy.POST_DELETE:
                await self._post("cloud/delete", data={"requestId": request_id})
            else:
                await self._post(f"cloud/remove/{request_id}")
        except RemoteNotFoundError:
            logger.info("Remote job %s already deleted or not found", request_id)

    async def list_history(self) -> list[RemoteHistoryItem]:
        try:
            payload = await self._request("GET", "cloud/history", timeout=HISTORY_TIMEOUT_SECONDS)
        except RemoteNotFoundError:
            return []
        if not isinstance(payload, list):
            raise RemoteApiError(f"Invalid history format received from API: {payload!r}")
        items: list[RemoteHistoryItem] = []
        for entry in payload:
            if not isinstance(entry, dict) or "requestId" not in entry:
                continue
            items.append(
                RemoteHistoryItem(
                    request_id=str(entry["requestId"]),
                    status=str(entry.get("status", "")),
                    file_name=_optional_str(entry.get("fileName")),
                    file_size=_optional_int(entry.get("fileSize")) or 0,
                    created_on=_parse_created_on(entry.get("createdOn")),
                ),
            )
        return items

    async def _post(self, endpoint: str, *, data: dict[str, str] | None = None) -> Any:
        return await self._request("POST", endpoint, data=data)

    async def _request(
        self,
        method: str,
        endpoint: str,
        *,
        data: dict[str, str] | None = None,
        files: dict[str, tuple[str, bytes]] | None = None,
        timeout: float | None = None,
    ) -> Any:
        url = endpoint
        if not endpoint.startswith(("http://", "https://")):
            url = self.api_base_url + endpoint
        logger.debug("Offcloud request %s %s", method, url)
        try:
            response = await self._client.request(
                method,
                url,
                params={"key": self._api_key},
                data=data,
                files=files,
                timeout=timeout if timeout is not None else httpx.USE_CLIENT_DEFAULT,
            )
        except httpx.TimeoutException as exc:
            raise TransientRemoteError(
                f"Timeout calling {endpoint}: {exc}",
                code="timeout",
            ) from exc
        except httpx.TransportError as exc:
            raise TransientRemoteError(
                f"Connection error calling {endpoint}: {exc}",
                code="connection",
            ) from exc

        if response.status_code == HTTP_NOT_FOUND:
            raise RemoteNotFoundError(f"Endpoint returned 404: {endpoint}")
        if response.status_code >= 400:  # noqa: PLR2004
            message = f"Offcloud API error {response.status_code} for {endpoint}"
            if is_retryable_status(response.status_code):
                raise TransientRemoteError(message, status_code=response.status_code)
            raise PermanentRemoteError(message, status_code=response.status_code)

        if not response.content:
            return {}
        try:
            body = response.json()
        except ValueError as exc:
            raise RemoteApiError(
                f"Malformed response from {endpoint}: {response.text[:200]!r}",
            ) from exc
        if isinstance(body, dict) and body.get("error"):
            error_text = str(body["error"])
            if BAD_ARCHIVE_MARKER in error_text.lower():
                raise UnsupportedArchiveError(error_text)
            raise RemoteApiError(error_text, status_code=response.status_code)
        return body


def _expect_dict(payload: Any, endpoint: str) -> dict[str, Any]:
    if not isinstance(payload, dict):
        raise RemoteApiError(f"Malformed response from {endpoint}: {payload!r}")
    return payload


def _parse_ack(payload: Any) -> SubmissionAck:
    body = _expect_dict(payload, "cloud")
    request_id = body.get("requestId")
    url = body.get("url")
    if not request_id or not isinstance(url, str):
        raise RemoteApiError(f"Submission response without requestId/url: {body!r}")
    return SubmissionAck(
        request_id=str(request_id),
        url=url,
        file_name=_optional_str(body.get("fileName")),
        raw=body,
    )


def _optional_str(value: object) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _optional_int(value: object) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(str(value))
    except ValueError:
        return None


def _parse_created_on(value: object) -> datetime | None:
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed
