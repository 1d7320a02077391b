"""Tests for infrastructure retry helpers."""

import pytest
from conftest import run

from app.crawl_engine.utils.retry import AsyncRetrier, RetryConfig, RetryError

NO_DELAY = RetryConfig(max_attempts=3, base_delay=0.0, jitter=False)


def test_calculate_delay_is_capped():
    config = RetryConfig(base_delay=1.0, max_delay=5.0, exponential_base=2.0, jitter=False)

    assert [config.calculate_delay(attempt) for attempt in range(5)] == [1.0, 2.0, 4.0, 5.0, 5.0]


def test_retrier_recovers_from_listed_exceptions():
    attempts = []

    async def flaky():
        attempts.append(1)
        if len(attempts) < 3:
            raise ConnectionError("reset")
        return "ok"

    retrier = AsyncRetrier(NO_DELAY)

    assert run(retrier.call(flaky, (ConnectionError,))) == "ok"
    assert len(attempts) == 3
    assert retrier.get_stats() == {"total_calls": 1, "successful_calls": 1, "failed_calls": 0}


def test_retrier_gives_up_after_max_attempts():
    async def broken():
        raise ConnectionError("down")

    retrier = AsyncRetrier(NO_DELAY)

    with pytest.raises(RetryError) as exc_info:
        run(retrier.call(broken, (ConnectionError,)))

    assert exc_info.value.attempts == 3
    assert isinstance(exc_info.value.last_exception, ConnectionError)
    assert retrier.get_stats()["failed_calls"] == 1


def test_unlisted_exceptions_propagate_immediately():
    attempts = []

    async def invalid():
        attempts.append(1)
        raise ValueError("bad input")

    with pytest.raises(ValueError):
        run(AsyncRetrier(NO_DELAY).call(invalid, (ConnectionError,)))

    assert len(attempts) == 1
