"""Tests for crawl error classification."""

import asyncio

import pytest

from app.crawl_engine.core.exceptions import (
    AuthRequiredError,
    BlockedError,
    CaptchaRequiredError,
    CrawlTimeoutError,
    NetworkError,
    NotFoundError,
    RateLimitedError,
)
from app.crawl_engine.core.types import CrawlErrorType, ErrorAction, QueueStatus
from app.crawl_engine.worker.error_handler import CrawlErrorClassifier, detect_error_type


@pytest.fixture
def classifier():
    return CrawlErrorClassifier(max_retries=3, base_backoff_seconds=5.0, backoff_multiplier=2.0)


def test_timeout_backoff_is_deterministic(classifier):
    """Test that delays follow base * multiplier^retry_count without jitter."""
    delays = [classifier.classify(CrawlTimeoutError("slow"), retry_count).delay_seconds for retry_count in range(3)]
    assert delays == [5.0, 10.0, 20.0]


def test_backoff_is_capped():
    classifier = CrawlErrorClassifier(base_backoff_seconds=5.0, max_backoff_seconds=8.0)
    assert classifier.calculate_backoff_delay(0) == 5.0
    assert classifier.calculate_backoff_delay(1) == 8.0
    assert classifier.calculate_backoff_delay(5) == 8.0


def test_exhausted_retries_escalate_to_admin(classifier):
    verdict = classifier.classify(CrawlTimeoutError("slow"), retry_count=3)

    assert verdict.action == ErrorAction.SKIP_NOTIFY_ADMIN
    assert verdict.escalated is True
    assert verdict.error_type == CrawlErrorType.TIMEOUT
    assert verdict.is_terminal


def test_network_error_retries_immediately_once(classifier):
    first = classifier.classify(NetworkError("connection reset"), retry_count=0)
    second = classifier.classify(NetworkError("connection reset"), retry_count=1)

    assert first.action == ErrorAction.RETRY_IMMEDIATE
    assert first.delay_seconds == 0.0
    assert second.action == ErrorAction.RETRY_DELAYED
    assert second.delay_seconds == 10.0


def test_timeout_grows_request_timeout(classifier):
    verdict = classifier.classify(asyncio.TimeoutError(), retry_count=0)

    assert verdict.error_type == CrawlErrorType.TIMEOUT
    assert verdict.timeout_multiplier == 1.5


def test_rate_limit_honours_retry_after(classifier):
    verdict = classifier.classify(RateLimitedError("HTTP 429", retry_after=60), retry_count=0)

    assert verdict.action == ErrorAction.RETRY_DELAYED
    assert verdict.delay_seconds == 60.0


@pytest.mark.parametrize(
    "error, action, queue_status",
    [
        (CaptchaRequiredError("captcha"), ErrorAction.SKIP_MARK_MANUAL, QueueStatus.FAILED),
        (AuthRequiredError("login"), ErrorAction.SKIP_NOTIFY_ADMIN, QueueStatus.FAILED),
        (BlockedError("HTTP 403"), ErrorAction.SKIP_NOTIFY_ADMIN, QueueStatus.FAILED),
        (NotFoundError("HTTP 404"), ErrorAction.SKIP_PERMANENT, QueueStatus.SKIPPED),
        (KeyError("missing selector"), ErrorAction.SKIP_LOG, QueueStatus.SKIPPED),
    ],
)
def test_non_retryable_errors(classifier, error, action, queue_status):
    verdict = classifier.classify(error, retry_count=0)

    assert verdict.action == action
    assert verdict.action.terminal_queue_status == queue_status
    assert not verdict.escalated


def test_detect_error_type_from_untyped_errors():
    assert detect_error_type(ConnectionRefusedError()) == CrawlErrorType.NETWORK_ERROR
    assert detect_error_type(TimeoutError()) == CrawlErrorType.TIMEOUT
    assert detect_error_type(RuntimeError("HTTP 403 Forbidden")) == CrawlErrorType.BLOCKED
    assert detect_error_type(RuntimeError("Too Many Requests")) == CrawlErrorType.RATE_LIMITED
    assert detect_error_type(RuntimeError("bad page"), "Please verify you are human") == CrawlErrorType.CAPTCHA_REQUIRED
    assert detect_error_type(ValueError("unexpected markup")) == CrawlErrorType.PARSE_ERROR


def test_policy_override():
    classifier = CrawlErrorClassifier(policy_overrides={CrawlErrorType.NOT_FOUND: ErrorAction.RETRY_DELAYED})
    assert classifier.classify(NotFoundError("gone"), 0).action == ErrorAction.RETRY_DELAYED


def test_policy_is_exposed_read_only():
    classifier = CrawlErrorClassifier(policy_overrides={CrawlErrorType.NOT_FOUND: ErrorAction.RETRY_DELAYED})
    policy = classifier.policy
    policy[CrawlErrorType.NOT_FOUND] = ErrorAction.SKIP_LOG

    assert classifier.policy[CrawlErrorType.NOT_FOUND] == ErrorAction.RETRY_DELAYED
    assert classifier.policy[CrawlErrorType.TIMEOUT] == ErrorAction.RETRY_DELAYED


def test_retry_schedule(classifier):
    assert classifier.get_retry_schedule(CrawlTimeoutError("slow")) == [(1, 5.0), (2, 10.0), (3, 20.0)]
    assert classifier.get_retry_schedule(NotFoundError("gone")) == []
