"""Bounded retry with exponential backoff and jitter for async operations."""

from __future__ import annotations

import asyncio
import inspect
import logging
import random
import time
from collections.abc import Awaitable, Callable
from typing import TypeVar

from cloudgrab.pipeline.failure_classifier import is_retryable_error

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_RETRIES = 3
DEFAULT_BASE_DELAY_SECONDS = 1.0
DEFAULT_MAX_DELAY_SECONDS = 60.0
JITTER_RATIO = 0.1

SleepFn = Callable[[float], Awaitable[None]]
RetryPredicate = Callable[[BaseException], bool]
RetryCallback = Callable[[int, BaseException], object]


class RetryTimeoutError(Exception):
    """Overall retry budget would be exceeded."""

    def __init__(self, operation_name: str, timeout: float, attempts: int) -> None:
        super().__init__(
            f"Operation {operation_name!r} would exceed timeout of {timeout:.1f}s "
            f"after {attempts} attempt(s)",
        )
        self.operation_name = operation_name
        self.timeout = timeout
        self.attempts = attempts


def compute_backoff(
    retry_number: int,
    base_delay: float,
    max_delay: float,
    rng: random.Random | None = None,
) -> float:
    """Exponential delay for the given retry number with ±10% jitter."""

    capped = min(max_delay, base_delay * (2**retry_number))
    jitter = capped * JITTER_RATIO
    return capped + (rng or random).uniform(-jitter, jitter)  # noqa: S311


class RetryExecutor:
    """Runs async operations with bounded retries.

    Holds only injected collaborators, so one instance can serve any number
    of concurrent ``execute`` calls.
    """

    def __init__(
        self,
        *,
        sleep: SleepFn = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        rng: random.Random | None = None,
    ) -> None:
        self._sleep = sleep
        self._clock = clock
        self._random = rng or random.Random()  # noqa: S311

    async def execute(  # noqa: PLR0913
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        max_retries: int = DEFAULT_MAX_RETRIES,
        base_delay: float = DEFAULT_BASE_DELAY_SECONDS,
        max_delay: float = DEFAULT_MAX_DELAY_SECONDS,
        timeout: float | None = None,
        should_retry: RetryPredicate = is_retryable_error,
        on_retry: RetryCallback | None = None,
        operation_name: str = "operation",
    ) -> T:
        """Invoke ``operation`` until it succeeds or the retry budget is spent."""

        started = self._clock()
        retry_count = 0
        while True:
            try:
                return await self._invoke(
                    operation,
                    started=started,
                    timeout=timeout,
                    operation_name=operation_name,
                    attempts=retry_count + 1,
                )
            except RetryTimeoutError:
                raise
            except Exception as error:
                if not should_retry(error):
                    logger.debug(
                        "Not retrying %s: non-retryable %s",
                        operation_name,
                        type(error).__name__,
                    )
                    raise
                if retry_count >= max_retries:
                    _attach_attempts(error, retry_count + 1, operation_name)
                    raise

                delay = compute_backoff(retry_count + 1, base_delay, max_delay, self._random)
                if timeout is not None and (self._clock() - started) + delay > timeout:
                    raise RetryTimeoutError(operation_name, timeout, retry_count + 1) from error

                retry_count += 1
                logger.warning(
                    "%s failed: %s. Retrying in %.1fs (attempt %d/%d)",
                    operation_name,
                    error,
                    delay,
                    retry_count,
                    max_retries,
                )
                await self._notify(on_retry, retry_count, error)
                await self._sleep(delay)

    async def _invoke(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        started: float,
        timeout: float | None,
        operation_name: str,
        attempts: int,
    ) -> T:
        if timeout is None:
            return await operation()
        remaining = timeout - (self._clock() - started)
        if remaining <= 0:
            raise RetryTimeoutError(operation_name, timeout, attempts)
        try:
            async with asyncio.timeout(remaining) as budget:
                return await operation()
        except TimeoutError as error:
            if not budget.expired():
                raise
            raise RetryTimeoutError(operation_name, timeout, attempts) from error

    async def _notify(
        self,
        on_retry: RetryCallback | None,
        attempt: int,
        error: BaseException,
    ) -> None:
        if on_retry is None:
            return
        try:
            result = on_retry(attempt, error)
            if inspect.isawaitable(result):
                await result
        except Exception as callback_error:  # noqa: BLE001
            logger.warning("Error in retry callback: %s", callback_error)


def _attach_attempts(error: BaseException, attempts: int, operation_name: str) -> None:
    error.add_note(f"{operation_name} gave up after {attempts} attempt(s)")
    try:
        error.retry_attempts = attempts  # type: ignore[attr-defined]
    except AttributeError:
        pass
