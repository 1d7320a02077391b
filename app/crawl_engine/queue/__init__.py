"""
Durable queue of crawl work items.

Use create_queue_store() to get the backend matching the configuration.
"""

from ..config.settings import EngineSettings
from .local_store import LocalQueueStore
from .store import QueueStore


def create_queue_store(settings: EngineSettings) -> QueueStore:
    """
    Create the queue store for the configured backend.

    Returns:
        LocalQueueStore for the local backend (file-backed when state_dir is set),
        DynamoQueueStore for dynamodb
    """
    if settings.store_backend == "dynamodb":
        from ..state.client import DynamoDBClient
        from .dynamo_store import DynamoQueueStore

        return DynamoQueueStore(DynamoDBClient(settings))

    queue_file = settings.state_dir / "crawl_queue.json" if settings.state_dir else None
    return LocalQueueStore(queue_file)


__all__ = ["LocalQueueStore", "QueueStore", "create_queue_store"]
