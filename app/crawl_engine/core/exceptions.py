"""
Exception hierarchy for the crawl engine.

Crawl failures carry a CrawlErrorType so the error classifier can map them
without heuristics. Engine errors signal misuse of the job/queue contracts.
"""

from typing import Iterable, Optional

from .types import CrawlErrorType, CrawlStatus, Interruption, InterruptionKind


class CrawlError(Exception):
    """Base exception for crawling errors"""

    error_type: CrawlErrorType = CrawlErrorType.PARSE_ERROR

    def __init__(
        self,
        message: str,
        error_type: Optional[CrawlErrorType] = None,
        original_error: Optional[Exception] = None,
        response_body: Optional[str] = None,
    ):
        if error_type is not None:
            self.error_type = error_type
        self.original_error = original_error
        self.response_body = response_body
        super().__init__(message)


class NetworkError(CrawlError):
    error_type = CrawlErrorType.NETWORK_ERROR


class CrawlTimeoutError(CrawlError):
    error_type = CrawlErrorType.TIMEOUT


class RateLimitedError(CrawlError):
    """Raised when the remote side throttles us"""

    error_type = CrawlErrorType.RATE_LIMITED

    def __init__(self, message: str, retry_after: Optional[float] = None, **kwargs):
        self.retry_after = retry_after
        super().__init__(message, **kwargs)


class CaptchaRequiredError(CrawlError):
    error_type = CrawlErrorType.CAPTCHA_REQUIRED


class AuthRequiredError(CrawlError):
    error_type = CrawlErrorType.AUTH_REQUIRED


class NotFoundError(CrawlError):
    error_type = CrawlErrorType.NOT_FOUND


class ParseError(CrawlError):
    error_type = CrawlErrorType.PARSE_ERROR


class BlockedError(CrawlError):
    error_type = CrawlErrorType.BLOCKED


class CrawlException(Exception):
    """
    Control-flow signal raised by processors that unwind on pause or cancel.

    It is never an error: the dispatcher filters it out before classification.
    """

    PAUSED = "paused"
    CANCELLED = "cancelled"

    def __init__(self, job_id: str, reason: str, resume_index: Optional[int] = None):
        self.job_id = job_id
        self.reason = reason
        self.resume_index = resume_index
        super().__init__(f"Job {job_id} {reason}")

    @classmethod
    def paused(cls, job_id: str, current_index: int) -> "CrawlException":
        return cls(job_id, cls.PAUSED, current_index)

    @classmethod
    def cancelled(cls, job_id: str) -> "CrawlException":
        return cls(job_id, cls.CANCELLED)

    @classmethod
    def from_interruption(cls, interruption: Interruption) -> "CrawlException":
        if interruption.kind == InterruptionKind.PAUSE:
            return cls.paused(interruption.job_id or "", interruption.at_index or 0)
        return cls.cancelled(interruption.job_id or "")

    def to_interruption(self) -> Interruption:
        if self.reason == self.PAUSED:
            return Interruption.paused(self.job_id, self.resume_index or 0)
        return Interruption.cancelled(self.job_id)


class EngineError(Exception):
    """Base exception for engine contract violations"""

    pass


class JobNotFoundError(EngineError):
    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Crawl job not found: {job_id}")


class QueueItemNotFoundError(EngineError):
    def __init__(self, item_id: str):
        self.item_id = item_id
        super().__init__(f"Queue item not found: {item_id}")


class InvalidTransitionError(EngineError):
    """Raised when a status transition is not allowed from the current status"""

    def __init__(self, job_id: str, current: CrawlStatus, target: CrawlStatus, allowed: Iterable[CrawlStatus] = ()):
        self.job_id = job_id
        self.current = current
        self.target = target
        self.allowed = tuple(allowed)
        super().__init__(f"Job {job_id} cannot move from {current.value} to {target.value}")


class LeaseNotHeldError(EngineError):
    """Raised when a worker acts on a queue item it does not hold"""

    pass


class StoreError(EngineError):
    """Base exception for persistence failures"""

    def __init__(self, message: str, original_error: Optional[Exception] = None):
        self.original_error = original_error
        super().__init__(message)


class ConditionalCheckFailedError(StoreError):
    """Raised when a conditional write loses a race"""

    pass
