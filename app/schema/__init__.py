from .common import ErrorResponse, HealthStatus
from .crawl import CreateJobRequest, JobResponse, QueueSnapshot, RetryRequest, RetryResponse

__all__ = [
    # common
    "ErrorResponse",
    "HealthStatus",
    # crawl
    "CreateJobRequest",
    "JobResponse",
    "QueueSnapshot",
    "RetryRequest",
    "RetryResponse",
]
