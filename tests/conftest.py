"""Shared test fixtures."""

from __future__ import annotations

import random

import pytest

from cloudgrab.pipeline.retry import RetryExecutor
from tests.fakes import FakeClock, FakeMaterializer, FakeRemote, RecordingSleep


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def sleep(clock: FakeClock) -> RecordingSleep:
    return RecordingSleep(clock)


@pytest.fixture()
def retry(sleep: RecordingSleep, clock: FakeClock) -> RetryExecutor:
    return RetryExecutor(sleep=sleep, clock=clock, rng=random.Random(7))


@pytest.fixture()
def remote() -> FakeRemote:
    return FakeRemote()


@pytest.fixture()
def materializer() -> FakeMaterializer:
    return FakeMaterializer()
