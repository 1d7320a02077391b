"""
Error classification for the crawl dispatcher.

Maps a raw failure to a CrawlErrorType and the ErrorAction prescribed by a
fixed, extensible policy table. Classification is a pure function of the
configured policy and the observed retry count; the dispatcher performs
the prescribed action.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional, Tuple

from aiohttp import ClientConnectionError, ClientPayloadError

from ..core.exceptions import CrawlError, RateLimitedError
from ..core.types import CrawlErrorType, ErrorAction, ErrorVerdict

logger = logging.getLogger(__name__)

# Keyword heuristics for failures that do not carry a typed error, checked in order
_MESSAGE_RULES: List[Tuple[CrawlErrorType, Tuple[str, ...]]] = [
    (CrawlErrorType.TIMEOUT, ("timed out", "timeout")),
    (CrawlErrorType.BLOCKED, ("403", "forbidden")),
    (CrawlErrorType.NOT_FOUND, ("404", "not found")),
    (CrawlErrorType.RATE_LIMITED, ("429", "rate limit", "too many requests")),
    (CrawlErrorType.NETWORK_ERROR, ("connection", "connect", "dns", "network")),
]

_BODY_RULES: List[Tuple[CrawlErrorType, Tuple[str, ...]]] = [
    (CrawlErrorType.CAPTCHA_REQUIRED, ("captcha", "recaptcha", "verify you are human")),
    (CrawlErrorType.AUTH_REQUIRED, ("login", "sign in", "authentication")),
]


def detect_error_type(error: BaseException, response_body: Optional[str] = None) -> CrawlErrorType:
    """
    Determine the CrawlErrorType of a raw failure.

    Typed CrawlErrors are trusted as-is. Otherwise the exception class is
    checked first (timeouts before generic OS errors, since TimeoutError is an
    OSError), then keywords in the message and response body.
    """
    if isinstance(error, CrawlError):
        return error.error_type

    if isinstance(error, (asyncio.TimeoutError, TimeoutError)):
        return CrawlErrorType.TIMEOUT

    if isinstance(error, (ClientConnectionError, ClientPayloadError, ConnectionError, OSError)):
        return CrawlErrorType.NETWORK_ERROR

    message = str(error).lower()
    for error_type, keywords in _MESSAGE_RULES:
        if any(keyword in message for keyword in keywords):
            return error_type

    body = (response_body or "").lower()
    for error_type, keywords in _BODY_RULES:
        if any(keyword in body or keyword in message for keyword in keywords):
            return error_type

    return CrawlErrorType.PARSE_ERROR


class CrawlErrorClassifier:
    """
    Maps failures to (CrawlErrorType, ErrorAction) verdicts.

    Transient errors (network, timeout, rate limit) are retried with
    deterministic exponential backoff up to max_retries; exhausting the
    retries escalates to SKIP_NOTIFY_ADMIN. Actionable, permanent and
    structural errors are never retried.
    """

    def __init__(
        self,
        max_retries: int = 3,
        base_backoff_seconds: float = 5.0,
        max_backoff_seconds: float = 300.0,
        backoff_multiplier: float = 2.0,
        timeout_backoff_factor: float = 1.5,
        policy_overrides: Optional[Dict[CrawlErrorType, ErrorAction]] = None,
    ):
        self.max_retries = max_retries
        self.base_backoff_seconds = base_backoff_seconds
        self.max_backoff_seconds = max_backoff_seconds
        self.backoff_multiplier = backoff_multiplier
        self.timeout_backoff_factor = timeout_backoff_factor

        self._policy = self._initialize_policy()
        if policy_overrides:
            self._policy.update(policy_overrides)

        logger.info(
            f"Initialized error classifier with max_retries={max_retries}, "
            f"base_backoff={base_backoff_seconds}s, max_backoff={max_backoff_seconds}s"
        )

    @classmethod
    def from_settings(cls, settings: Any) -> "CrawlErrorClassifier":
        return cls(
            max_retries=settings.max_retries,
            base_backoff_seconds=settings.base_backoff_seconds,
            max_backoff_seconds=settings.max_backoff_seconds,
            backoff_multiplier=settings.backoff_multiplier,
            timeout_backoff_factor=settings.timeout_backoff_factor,
        )

    @property
    def policy(self) -> Dict[CrawlErrorType, ErrorAction]:
        """Base action per error type, overrides applied"""
        return dict(self._policy)

    def _initialize_policy(self) -> Dict[CrawlErrorType, ErrorAction]:
        """Base action per error type (NETWORK_ERROR is refined by attempt count)"""
        return {
            # Transient
            CrawlErrorType.NETWORK_ERROR: ErrorAction.RETRY_IMMEDIATE,
            CrawlErrorType.TIMEOUT: ErrorAction.RETRY_DELAYED,
            CrawlErrorType.RATE_LIMITED: ErrorAction.RETRY_DELAYED,
            # Actionable
            CrawlErrorType.CAPTCHA_REQUIRED: ErrorAction.SKIP_MARK_MANUAL,
            CrawlErrorType.AUTH_REQUIRED: ErrorAction.SKIP_NOTIFY_ADMIN,
            CrawlErrorType.BLOCKED: ErrorAction.SKIP_NOTIFY_ADMIN,
            # Permanent
            CrawlErrorType.NOT_FOUND: ErrorAction.SKIP_PERMANENT,
            # Structural
            CrawlErrorType.PARSE_ERROR: ErrorAction.SKIP_LOG,
        }

    def action_for(self, error_type: CrawlErrorType, retry_count: int) -> ErrorAction:
        action = self._policy.get(error_type, ErrorAction.SKIP_LOG)
        if action == ErrorAction.RETRY_IMMEDIATE and retry_count > 0:
            return ErrorAction.RETRY_DELAYED
        return action

    def calculate_backoff_delay(self, retry_count: int) -> float:
        """
        Delay before the next attempt, given how many retries already happened.

        With base 5s and multiplier 2 this yields 5s, 10s, 20s for retry
        counts 0, 1, 2. No jitter is applied so the sequence is monotonic.
        """
        delay = self.base_backoff_seconds * (self.backoff_multiplier**retry_count)
        return min(delay, self.max_backoff_seconds)

    def classify(
        self, error: BaseException, retry_count: int = 0, response_body: Optional[str] = None
    ) -> ErrorVerdict:
        """
        Classify a failure observed after `retry_count` earlier retries.

        Args:
            error: The exception that occurred
            retry_count: Retries already performed for this queue item
            response_body: Optional response body for keyword heuristics

        Returns:
            ErrorVerdict with the prescribed action and backoff
        """
        if response_body is None and isinstance(error, CrawlError):
            response_body = error.response_body

        error_type = detect_error_type(error, response_body)
        action = self.action_for(error_type, retry_count)

        if action.is_retry and retry_count >= self.max_retries:
            return ErrorVerdict(
                error_type=error_type,
                action=ErrorAction.SKIP_NOTIFY_ADMIN,
                retry_count=retry_count,
                escalated=True,
                reason=f"Retries exhausted ({retry_count}/{self.max_retries}) for {error_type.value}: {error}",
            )

        delay = 0.0
        timeout_multiplier = 1.0
        if action == ErrorAction.RETRY_DELAYED:
            delay = self.calculate_backoff_delay(retry_count)
            if isinstance(error, RateLimitedError) and error.retry_after:
                delay = max(delay, float(error.retry_after))
            if error_type == CrawlErrorType.TIMEOUT:
                timeout_multiplier = self.timeout_backoff_factor

        return ErrorVerdict(
            error_type=error_type,
            action=action,
            delay_seconds=delay,
            timeout_multiplier=timeout_multiplier,
            retry_count=retry_count,
            reason=f"{error_type.value}: {error}",
        )

    def get_retry_schedule(self, error: BaseException) -> List[Tuple[int, float]]:
        """Full (attempt, delay) schedule a failure would follow if it kept recurring"""
        schedule: List[Tuple[int, float]] = []
        for retry_count in range(self.max_retries + 1):
            verdict = self.classify(error, retry_count)
            if not verdict.action.is_retry:
                break
            schedule.append((retry_count + 1, verdict.delay_seconds))
        return schedule
