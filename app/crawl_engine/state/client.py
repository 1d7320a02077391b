"""
DynamoDB client wrapper for the crawl engine stores.

Provides centralized error mapping, retry of transient failures, and
LocalStack support for all DynamoDB operations.
"""

import logging
import os
from typing import Any, Callable, List, Optional, Type, TypeVar

from botocore.exceptions import ConnectionError, EndpointConnectionError, ReadTimeoutError
from pynamodb.exceptions import DoesNotExist, PynamoDBException
from pynamodb.models import Model

from ..config.settings import EngineSettings
from ..core.exceptions import ConditionalCheckFailedError, StoreError
from ..utils.retry import DATABASE_RETRY_CONFIG, AsyncRetrier, RetryError
from .models import initialize_models

logger = logging.getLogger(__name__)

ModelType = TypeVar("ModelType", bound=Model)
T = TypeVar("T")

_THROTTLING_CODES = {"ProvisionedThroughputExceededException", "ThrottlingException", "RequestLimitExceeded"}


class ThrottlingError(StoreError):
    """Raised when DynamoDB requests are being throttled"""

    pass


class _TransientStoreError(StoreError):
    """Connection-level failure worth retrying"""

    pass


class DynamoDBClient:
    """
    DynamoDB client with retry logic for the job and queue stores.

    PynamoDB calls are synchronous; they are issued from coroutines the same
    way throughout the engine so callers can stay async.
    """

    def __init__(self, settings: EngineSettings):
        self.settings = settings
        self.retrier = AsyncRetrier(DATABASE_RETRY_CONFIG)

        os.environ.setdefault("AWS_DEFAULT_REGION", settings.aws_region)
        if settings.aws_access_key_id:
            os.environ["AWS_ACCESS_KEY_ID"] = settings.aws_access_key_id
        if settings.aws_secret_access_key:
            os.environ["AWS_SECRET_ACCESS_KEY"] = settings.aws_secret_access_key

        initialize_models(settings)
        logger.info(f"DynamoDB client initialized for region {settings.aws_region}")

    @staticmethod
    def _translate(error: Exception, operation: str) -> Exception:
        if isinstance(error, PynamoDBException):
            code = error.cause_response_code
            if code == "ConditionalCheckFailedException":
                return ConditionalCheckFailedError(f"Conditional check failed during {operation}", error)
            if code in _THROTTLING_CODES:
                return ThrottlingError(f"DynamoDB throughput exceeded during {operation}", error)
            return StoreError(f"PynamoDB error during {operation}: {error}", error)
        return _TransientStoreError(f"DynamoDB connection error during {operation}: {error}", error)

    async def execute_with_retry(self, operation: Callable[[], T], operation_name: str) -> T:
        """
        Run a synchronous PynamoDB operation, retrying throttling and connection errors.

        Raises:
            ConditionalCheckFailedError: Immediately, never retried
            StoreError: If the operation fails after all retries
        """

        async def _attempt() -> T:
            try:
                return operation()
            except (PynamoDBException, ConnectionError, EndpointConnectionError, ReadTimeoutError) as e:
                raise self._translate(e, operation_name) from e

        _attempt.__name__ = operation_name
        try:
            return await self.retrier.call(_attempt, exceptions=(ThrottlingError, _TransientStoreError))
        except RetryError as e:
            raise StoreError(f"DynamoDB {operation_name} failed after {e.attempts} attempts", e.last_exception)

    async def get_item(self, model_class: Type[ModelType], hash_key: Any) -> Optional[ModelType]:
        def _get_item():
            try:
                return model_class.get(hash_key, consistent_read=True)
            except DoesNotExist:
                return None

        return await self.execute_with_retry(_get_item, f"get {model_class.__name__}")

    async def put_item(self, item: Model, condition: Optional[Any] = None) -> None:
        await self.execute_with_retry(lambda: item.save(condition=condition), f"put {type(item).__name__}")

    async def update_item(self, item: Model, actions: List[Any], condition: Optional[Any] = None) -> None:
        await self.execute_with_retry(
            lambda: item.update(actions=actions, condition=condition), f"update {type(item).__name__}"
        )

    async def delete_item(self, item: Model, condition: Optional[Any] = None) -> None:
        await self.execute_with_retry(lambda: item.delete(condition=condition), f"delete {type(item).__name__}")

    async def query_index(
        self,
        index: Any,
        hash_key: Any,
        range_key_condition: Optional[Any] = None,
        filter_condition: Optional[Any] = None,
        limit: Optional[int] = None,
    ) -> List[Any]:
        def _query():
            return list(
                index.query(
                    hash_key, range_key_condition=range_key_condition, filter_condition=filter_condition, limit=limit
                )
            )

        return await self.execute_with_retry(_query, f"query {getattr(index, 'Meta').index_name}")

    async def scan_items(
        self, model_class: Type[ModelType], filter_condition: Optional[Any] = None, limit: Optional[int] = None
    ) -> List[ModelType]:
        return await self.execute_with_retry(
            lambda: list(model_class.scan(filter_condition=filter_condition, limit=limit)),
            f"scan {model_class.__name__}",
        )

    async def create_table_if_not_exists(self, model_class: Type[ModelType]) -> bool:
        def _create_table():
            if model_class.exists():
                return False
            model_class.create_table(wait=True, billing_mode="PAY_PER_REQUEST")
            logger.info(f"Created DynamoDB table: {model_class.Meta.table_name}")
            return True

        return await self.execute_with_retry(_create_table, f"create table {model_class.__name__}")

    def get_stats(self):
        return self.retrier.get_stats()
