"""
Type processor contract.

A processor turns one CrawlJob into a ProcessOutcome: success with the
children it discovered and the bytes it downloaded, a duplicate verdict, or
a failure. Site-specific extraction lives entirely in processors.
"""

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Dict, List, Optional

from ..core.exceptions import CrawlException
from ..core.types import CrawlJob, CrawlType, Interruption, ProcessOutcome, ProgressEvent, ProgressEventType

if TYPE_CHECKING:
    from ..http_client.client import CrawlHTTPClient
    from ..state.state_machine import JobStateMachine
    from ..storage.artifacts import ArtifactStorage


class ProcessContext:
    """
    What a processor may use while handling one job.

    Long-running processors call raise_if_interrupted() between units of
    their own work so a pause or cancel unwinds them early.
    """

    def __init__(
        self,
        job: CrawlJob,
        state_machine: "JobStateMachine",
        http_client: Optional["CrawlHTTPClient"] = None,
        storage: Optional["ArtifactStorage"] = None,
        timeout_seconds: Optional[float] = None,
    ):
        self.job = job
        self.state_machine = state_machine
        self.http_client = http_client
        self.storage = storage
        self.timeout_seconds = timeout_seconds or float(job.settings.timeout_seconds)

    async def check_interruption(self, at_index: int = 0) -> Interruption:
        return await self.state_machine.check_interruption(self.job.id, at_index)

    async def raise_if_interrupted(self, at_index: int = 0) -> None:
        interruption = await self.check_interruption(at_index)
        if interruption.should_stop:
            raise CrawlException.from_interruption(interruption)

    def message(self, text: str, **data) -> None:
        """Publish a free-form progress message for the job"""
        self.state_machine.publisher.publish(
            ProgressEvent(
                job_id=self.job.id,
                root_id=self.job.root_id,
                event_type=ProgressEventType.MESSAGE_ADDED,
                message=text,
                data=data,
            )
        )


class CrawlProcessor(ABC):
    """Processor for one CrawlType"""

    crawl_type: CrawlType

    @abstractmethod
    async def process(self, job: CrawlJob, context: ProcessContext) -> ProcessOutcome:
        """
        Handle one job.

        Processors may return ProcessOutcome.failure(error) or simply raise;
        the dispatcher classifies both the same way. CrawlException is a
        pause/cancel signal, not a failure.
        """


class ProcessorRegistry:
    """Maps each CrawlType to its processor"""

    def __init__(self, processors: Optional[List[CrawlProcessor]] = None):
        self._processors: Dict[CrawlType, CrawlProcessor] = {}
        for processor in processors or []:
            self.register(processor)

    def register(self, processor: CrawlProcessor) -> None:
        self._processors[processor.crawl_type] = processor

    def get(self, crawl_type: CrawlType) -> Optional[CrawlProcessor]:
        return self._processors.get(crawl_type)

    @property
    def crawl_types(self) -> List[CrawlType]:
        return list(self._processors)
