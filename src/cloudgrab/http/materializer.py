"""Downloads resolved artifact URLs to local storage."""

from __future__ import annotations

import logging
import re
import shutil
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol
from urllib.parse import unquote, urlparse

import httpx

logger = logging.getLogger(__name__)

DEFAULT_DOWNLOAD_TIMEOUT_SECONDS = 300.0
DEFAULT_CHUNK_SIZE = 1024 * 1024
_UNSAFE_FOLDER_CHARS = re.compile(r'[\\/:*?"<>|]')
_UNSAFE_FILE_CHARS = re.compile(r'[/\\?%*:|"<>]')


class MaterializeError(Exception):
    """No artifact could be downloaded."""


@dataclass(slots=True)
class MaterializeResult:
    success: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)


class Materializer(Protocol):
    async def materialize(self, urls: list[str], folder_hint: str) -> MaterializeResult:
        """Download ``urls`` into a folder named after ``folder_hint``."""
        raise NotImplementedError


class HttpMaterializer:
    """Streams files into an in-progress folder, then moves them to completed."""

    def __init__(
        self,
        *,
        in_progress_dir: Path,
        completed_dir: Path,
        timeout_seconds: float = DEFAULT_DOWNLOAD_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.in_progress_dir = in_progress_dir
        self.completed_dir = completed_dir
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            transport=transport,
            follow_redirects=True,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> HttpMaterializer:
        return self

    async def __aexit__(self, *_: object) -> None:
        await self.close()

    async def materialize(self, urls: list[str], folder_hint: str) -> MaterializeResult:
        folder_name = sanitize_folder_name(folder_hint)
        in_progress = self.in_progress_dir / folder_name
        completed = self.completed_dir / folder_name
        in_progress.mkdir(parents=True, exist_ok=True)
        completed.mkdir(parents=True, exist_ok=True)

        result = MaterializeResult()
        for url in urls:
            try:
                file_name = await self._download_one(url, in_progress)
                _move_file(in_progress / file_name, completed / file_name)
            except (httpx.HTTPError, OSError) as exc:
                logger.warning("Error processing link %s: %s", url, exc)
                result.failed.append(url)
                continue
            result.success.append(file_name)

        if result.success:
            _remove_dir_if_empty(in_progress)
            return result
        raise MaterializeError(f"Failed to download any files from {len(urls)} links")

    async def _download_one(self, url: str, destination: Path) -> str:
        logger.info("Starting download of: %s", url)
        async with self._client.stream("GET", url) as response:
            response.raise_for_status()
            file_name = filename_for(url, response.headers.get("content-disposition"))
            target = destination / file_name
            received = 0
            try:
                with target.open("wb") as handle:
                    async for chunk in response.aiter_bytes(DEFAULT_CHUNK_SIZE):
                        handle.write(chunk)
                        received += len(chunk)
            except BaseException:
                target.unlink(missing_ok=True)
                raise
        logger.info("File downloaded: %s (%d bytes)", file_name, received)
        return file_name


def sanitize_folder_name(hint: str) -> str:
    """Folder name derived from a descriptor name or path."""

    name = hint.strip()
    if "/" in name:
        name = Path(name).stem
    if not name:
        name = f"download_{int(time.time() * 1000)}"
    return _UNSAFE_FOLDER_CHARS.sub("_", name)


def filename_for(url: str, content_disposition: str | None) -> str:
    """File name from ``Content-Disposition``, falling back to the URL path."""

    name = ""
    if content_disposition:
        name = unquote(content_disposition)
        if "'" in name:
            name = name[name.rfind("'") + 1 :]
        elif "filename=" in name:
            name = name.split("filename=", 1)[1].strip().strip('"')
        else:
            name = ""
    if not name.strip():
        name = unquote(Path(urlparse(url).path).name)
    if not name.strip():
        name = f"download_{int(time.time() * 1000)}"
    return _UNSAFE_FILE_CHARS.sub("_", name)


def _move_file(source: Path, destination: Path) -> None:
    if destination.exists():
        logger.info("Destination file already exists: %s", destination)
        source.unlink(missing_ok=True)
        return
    destination.parent.mkdir(parents=True, exist_ok=True)
    shutil.move(str(source), str(destination))


def _remove_dir_if_empty(path: Path) -> None:
    try:
        next(path.iterdir())
    except StopIteration:
        path.rmdir()
        logger.debug("Removed empty directory: %s", path)
    except OSError as exc:
        logger.warning("Error checking/removing directory %s: %s", path, exc)
