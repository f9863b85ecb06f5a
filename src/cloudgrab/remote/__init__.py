"""Remote processing service contract and adapters."""

from cloudgrab.remote.base import (
    DELETE_STRATEGY_ORDER,
    DeleteStrategy,
    PermanentRemoteError,
    RemoteApiError,
    RemoteError,
    RemoteHistoryItem,
    RemoteNotFoundError,
    RemoteService,
    RemoteStatus,
    SubmissionAck,
    TransientRemoteError,
    UnsupportedArchiveError,
    UploadResult,
)
from cloudgrab.remote.offcloud import OffcloudClient

__all__ = [
    "DELETE_STRATEGY_ORDER",
    "DeleteStrategy",
    "OffcloudClient",
    "PermanentRemoteError",
    "RemoteApiError",
    "RemoteError",
    "RemoteHistoryItem",
    "RemoteNotFoundError",
    "RemoteService",
    "RemoteStatus",
    "SubmissionAck",
    "TransientRemoteError",
    "UnsupportedArchiveError",
    "UploadResult",
]
