"""
Job persistence and lifecycle for the crawl engine.

Use create_job_store() to get the backend matching the configuration.
"""

from ..config.settings import EngineSettings
from .cleanup import RetentionSweeper
from .job_store import JobStore, LocalJobStore
from .state_machine import ALLOWED_TRANSITIONS, JobStateMachine


def create_job_store(settings: EngineSettings) -> JobStore:
    """
    Create the job store for the configured backend.

    Returns:
        LocalJobStore for the local backend (file-backed when state_dir is set),
        DynamoJobStore for dynamodb
    """
    if settings.store_backend == "dynamodb":
        from .client import DynamoDBClient
        from .dynamo_job_store import DynamoJobStore

        return DynamoJobStore(DynamoDBClient(settings))

    jobs_file = settings.state_dir / "crawl_jobs.json" if settings.state_dir else None
    return LocalJobStore(jobs_file)


__all__ = [
    "ALLOWED_TRANSITIONS",
    "JobStateMachine",
    "JobStore",
    "LocalJobStore",
    "RetentionSweeper",
    "create_job_store",
]
