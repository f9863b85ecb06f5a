"""Remote processing service contract and error taxonomy."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Protocol

RETRYABLE_HTTP_STATUS_CODES: frozenset[int] = frozenset({408, 429})
REMOTE_STATUS_STORED = "downloaded"
REMOTE_TERMINAL_STATUSES: frozenset[str] = frozenset({"error", "canceled"})


class RemoteError(Exception):
    """Base error raised by remote service adapters."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        retryable: bool | None = None,
        code: str = "remote_error",
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.retryable = retryable
        self.code = code

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}(message={self.message!r}, "
            f"status_code={self.status_code}, retryable={self.retryable})"
        )


class TransientRemoteError(RemoteError):
    """Connection, timeout, 5xx, 429 or 408 failure."""

    def __init__(self, message: str, *, status_code: int | None = None, code: str = "transient"):
        super().__init__(message, status_code=status_code, retryable=True, code=code)


class PermanentRemoteError(RemoteError):
    """Failure that will not go away by retrying the same call."""

    def __init__(self, message: str, *, status_code: int | None = None, code: str = "permanent"):
        super().__init__(message, status_code=status_code, retryable=False, code=code)


class RemoteNotFoundError(PermanentRemoteError):
    def __init__(self, message: str = "Resource not found") -> None:
        super().__init__(message, status_code=404, code="not_found")


class RemoteApiError(PermanentRemoteError):
    """The service answered with an ``error`` field in its body."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message, status_code=status_code, code="api_error")


class UnsupportedArchiveError(RemoteApiError):
    """Explore cannot enumerate the directory (reported as "Bad archive")."""


def is_retryable_status(status_code: int) -> bool:
    return status_code >= 500 or status_code in RETRYABLE_HTTP_STATUS_CODES


class DeleteStrategy(str, Enum):
    """Remote deletion endpoints, tried in this order."""

    DIRECT_REMOVE = "direct_remove"
    POST_DELETE = "post_delete"
    POST_REMOVE = "post_remove"


DELETE_STRATEGY_ORDER: tuple[DeleteStrategy, ...] = (
    DeleteStrategy.DIRECT_REMOVE,
    DeleteStrategy.POST_DELETE,
    DeleteStrategy.POST_REMOVE,
)


@dataclass(slots=True)
class SubmissionAck:
    """Remote acknowledgement of a new cloud job."""

    request_id: str
    url: str
    file_name: str | None = None
    raw: dict[str, object] = field(default_factory=dict)


@dataclass(slots=True)
class UploadResult:
    success: bool
    url: str | None
    file_name: str | None
    raw: dict[str, object] = field(default_factory=dict)


@dataclass(slots=True)
class RemoteStatus:
    """Parsed ``cloud/status`` answer."""

    status: str
    file_name: str | None = None
    file_size: int | None = None
    is_directory: bool = False

    @property
    def is_terminal_error(self) -> bool:
        return self.status in REMOTE_TERMINAL_STATUSES

    @property
    def is_downloaded(self) -> bool:
        return self.status == REMOTE_STATUS_STORED


@dataclass(slots=True)
class RemoteHistoryItem:
    request_id: str
    status: str
    file_name: str | None = None
    file_size: int = 0
    created_on: datetime | None = None


class RemoteService(Protocol):
    """Capabilities the queue and job lifecycle need from the remote."""

    async def submit_magnet(self, link: str) -> SubmissionAck:
        raise NotImplementedError

    async def upload_file(self, path: Path) -> UploadResult:
        raise NotImplementedError

    async def submit_cloud(self, url: str) -> SubmissionAck:
        raise NotImplementedError

    async def submit_usenet(self, url: str, name: str) -> SubmissionAck:
        raise NotImplementedError

    async def get_status(self, request_id: str) -> RemoteStatus:
        raise NotImplementedError

    async def explore(self, request_id: str) -> list[str]:
        raise NotImplementedError

    async def delete_remote(
        self,
        request_id: str,
        *,
        strategy: DeleteStrategy = DeleteStrategy.DIRECT_REMOVE,
    ) -> None:
        raise NotImplementedError

    async def list_history(self) -> list[RemoteHistoryItem]:
        raise NotImplementedError
