"""CLI entrypoint for cloudgrab."""

import logging
import os
from collections.abc import Callable
from pathlib import Path

import rich_click as click

from cloudgrab import __version__
from cloudgrab.config import validate_log_level
from cloudgrab.pipeline.controllers import (
    CleanupCommand,
    HistoryCommand,
    PipelineCliController,
    RunCommand,
)
from cloudgrab.remote.base import RemoteError

click.rich_click.USE_MARKDOWN = True
PIPELINE_CONTROLLER = PipelineCliController()
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


@click.group()
@click.version_option(version=__version__, prog_name="cloudgrab")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default=None,
    help="Logging level. Defaults to `CLOUDGRAB_LOG_LEVEL` or INFO.",
)
def cloudgrab(log_level: str | None) -> None:
    """Submit watch-folder descriptors to a remote downloader and fetch the results."""

    try:
        level = validate_log_level(log_level or os.getenv("CLOUDGRAB_LOG_LEVEL", "INFO"))
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    logging.basicConfig(level=level, format=LOG_FORMAT)


@cloudgrab.command("run")
@click.option(
    "--watch-dir",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Folder to watch for `.torrent`, `.magnet` and `.nzb` files.",
)
@click.option(
    "--max-concurrent",
    type=click.IntRange(min=1),
    default=None,
    help="Maximum number of live remote jobs.",
)
def run(watch_dir: Path | None, max_concurrent: int | None) -> None:
    """Watch for descriptors and process them until interrupted."""

    _emit_lines(
        _call(
            lambda: PIPELINE_CONTROLLER.run(
                RunCommand(watch_dir=watch_dir, max_concurrent=max_concurrent),
            ),
        ),
    )


@cloudgrab.command("history")
@click.option(
    "--limit",
    type=click.IntRange(min=1),
    default=50,
    show_default=True,
    help="Maximum number of rows to print.",
)
@click.option("--status", default=None, help="Only show jobs with this remote status.")
def history(limit: int, status: str | None) -> None:
    """List remote jobs."""

    _emit_lines(
        _call(lambda: PIPELINE_CONTROLLER.history(HistoryCommand(limit=limit, status=status))),
    )


@cloudgrab.command("capacity")
def capacity() -> None:
    """Show the remote storage estimate used for admission."""

    _emit_lines(_call(PIPELINE_CONTROLLER.capacity))


@cloudgrab.command("cleanup")
@click.option(
    "--max-age-hours",
    type=click.FloatRange(min=0),
    default=24.0,
    show_default=True,
    help="Delete completed remote jobs older than this.",
)
def cleanup(max_age_hours: float) -> None:
    """Delete old completed jobs from remote storage."""

    _emit_lines(
        _call(lambda: PIPELINE_CONTROLLER.cleanup(CleanupCommand(max_age_hours=max_age_hours))),
    )


def _call(action: Callable[[], list[str]]) -> list[str]:
    try:
        return action()
    except (ValueError, RemoteError) as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    cloudgrab()
