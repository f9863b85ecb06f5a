"""Runtime configuration for the watch/queue/download pipeline."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

from cloudgrab.pipeline.capacity import DEFAULT_ASSUMED_TOTAL_BYTES, DEFAULT_MIN_RESERVED_BYTES
from cloudgrab.remote.offcloud import DEFAULT_API_BASE_URL, DEFAULT_SITE_BASE_URL


@dataclass(slots=True)
class RemoteSettings:
    """Remote service credentials and endpoints."""

    api_key: str = ""
    api_base_url: str = DEFAULT_API_BASE_URL
    site_base_url: str = DEFAULT_SITE_BASE_URL
    request_timeout_seconds: float = 30.0


@dataclass(slots=True)
class QueueSettings:
    """Admission limits."""

    max_concurrent_downloads: int = 3
    assumed_total_bytes: int = DEFAULT_ASSUMED_TOTAL_BYTES
    min_reserved_bytes: int = DEFAULT_MIN_RESERVED_BYTES


@dataclass(slots=True)
class WatchSettings:
    watch_dir: Path = Path("/watch")
    watch_rate_seconds: float = 5.0
    file_stable_seconds: float = 5.0


@dataclass(slots=True)
class MaterializerSettings:
    in_progress_dir: Path = Path("/in-progress")
    completed_dir: Path = Path("/completed")


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    remote: RemoteSettings = field(default_factory=RemoteSettings)
    queue: QueueSettings = field(default_factory=QueueSettings)
    watch: WatchSettings = field(default_factory=WatchSettings)
    materializer: MaterializerSettings = field(default_factory=MaterializerSettings)
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> Settings:
        """Load settings from ``CLOUDGRAB_*`` environment variables."""

        return cls(
            remote=RemoteSettings(
                api_key=os.getenv("CLOUDGRAB_API_KEY", "").strip(),
                api_base_url=os.getenv("CLOUDGRAB_API_BASE_URL", DEFAULT_API_BASE_URL),
                site_base_url=os.getenv("CLOUDGRAB_SITE_BASE_URL", DEFAULT_SITE_BASE_URL),
                request_timeout_seconds=_env_float("CLOUDGRAB_REQUEST_TIMEOUT_SECONDS", 30.0),
            ),
            queue=QueueSettings(
                max_concurrent_downloads=_env_int("CLOUDGRAB_MAX_CONCURRENT_DOWNLOADS", 3),
                assumed_total_bytes=_env_int(
                    "CLOUDGRAB_ASSUMED_TOTAL_BYTES",
                    DEFAULT_ASSUMED_TOTAL_BYTES,
                ),
                min_reserved_bytes=_env_int(
                    "CLOUDGRAB_MIN_RESERVED_BYTES",
                    DEFAULT_MIN_RESERVED_BYTES,
                ),
            ),
            watch=WatchSettings(
                watch_dir=Path(os.getenv("CLOUDGRAB_WATCH_DIR", "/watch")),
                watch_rate_seconds=_env_float("CLOUDGRAB_WATCH_RATE_SECONDS", 5.0),
                file_stable_seconds=_env_float("CLOUDGRAB_FILE_STABLE_SECONDS", 5.0),
            ),
            materializer=MaterializerSettings(
                in_progress_dir=Path(os.getenv("CLOUDGRAB_IN_PROGRESS_DIR", "/in-progress")),
                completed_dir=Path(os.getenv("CLOUDGRAB_COMPLETED_DIR", "/completed")),
            ),
            log_level=os.getenv("CLOUDGRAB_LOG_LEVEL", "INFO").strip().upper(),
        )

    def validate(self) -> None:
        """Raise configuration error for values the pipeline cannot run with."""

        validate_log_level(self.log_level)
        if self.remote.request_timeout_seconds <= 0:
            raise ValueError("CLOUDGRAB_REQUEST_TIMEOUT_SECONDS must be > 0.")
        _validate_base_url("CLOUDGRAB_API_BASE_URL", self.remote.api_base_url)
        _validate_base_url("CLOUDGRAB_SITE_BASE_URL", self.remote.site_base_url)
        if self.queue.max_concurrent_downloads <= 0:
            raise ValueError("CLOUDGRAB_MAX_CONCURRENT_DOWNLOADS must be a positive integer.")
        if self.queue.assumed_total_bytes <= 0:
            raise ValueError("CLOUDGRAB_ASSUMED_TOTAL_BYTES must be > 0.")
        if self.queue.min_reserved_bytes < 0:
            raise ValueError("CLOUDGRAB_MIN_RESERVED_BYTES must be >= 0.")
        if self.watch.watch_rate_seconds <= 0:
            raise ValueError("CLOUDGRAB_WATCH_RATE_SECONDS must be > 0.")
        if self.watch.file_stable_seconds < 0:
            raise ValueError("CLOUDGRAB_FILE_STABLE_SECONDS must be >= 0.")

    def validate_for_remote(self) -> None:
        """Like ``validate`` but also requires remote credentials."""

        self.validate()
        if not self.remote.api_key:
            raise ValueError("CLOUDGRAB_API_KEY is required for remote commands.")


def validate_log_level(value: str) -> str:
    """Return the upper-cased level name, or raise for unknown levels."""

    level = value.strip().upper()
    if logging.getLevelName(level) == f"Level {level}":
        raise ValueError(f"Invalid CLOUDGRAB_LOG_LEVEL: {value!r}")
    return level


def _validate_base_url(name: str, value: str) -> None:
    parsed = urlparse(value)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError(
            f"Invalid {name}: {value!r}. Expected an absolute URL with http:// or https:// scheme.",
        )


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value.strip())
    except ValueError as error:
        raise ValueError(f"Invalid integer value for {name}: {value!r}") from error


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value.strip())
    except ValueError as error:
        raise ValueError(f"Invalid number for {name}: {value!r}") from error
