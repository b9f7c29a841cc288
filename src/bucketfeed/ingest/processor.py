"""
Processor: handles one listed object from admission to cleanup.
"""

from __future__ import annotations

from collections.abc import Callable
from enum import Enum

from bucketfeed.exceptions import DecompressionError, ObjectGoneError
from bucketfeed.ingest.event_processor import EventProcessor
from bucketfeed.ingest.policies import ProcessingPolicyValidator
from bucketfeed.ingest.post_processors import PostProcessorChain
from bucketfeed.ingest.remote_file import RemoteFile
from bucketfeed.ingest.types import RemoteObjectDescriptor
from bucketfeed.utils.logging import get_logger

logger = get_logger("bucketfeed.ingest.processor")


class Outcome(str, Enum):
    """How a call to ``Processor.handle`` ended."""

    COMPLETED = "completed"  # every line emitted, post-processors ran
    SKIPPED = "skipped"  # rejected by the policy chain
    GONE = "gone"  # object deleted under our feet
    CHANGED = "changed"  # a newer version was fetched than the one listed
    CORRUPT = "corrupt"  # read stopped at a corrupt member, then recorded as processed


class Processor:
    """
    Shared by all workers; every call works on its own RemoteFile.

    The event processor and post-processors must therefore be thread-safe.
    """

    def __init__(
        self,
        validator: ProcessingPolicyValidator,
        event_processor: EventProcessor,
        post_processors: PostProcessorChain,
        remote_file_factory: Callable[[RemoteObjectDescriptor], RemoteFile],
    ):
        self.validator = validator
        self.event_processor = event_processor
        self.post_processors = post_processors
        self._remote_file_factory = remote_file_factory

    def handle(self, descriptor: RemoteObjectDescriptor) -> Outcome:
        """
        Validate, fetch, emit every line, then run the post-processors.

        A corrupt compressed member stops the read; lines already emitted stay
        emitted and the post-processors still run, so the object is not offered again.
        The staging file is removed on every path out of this method.

        Raises:
            TransientFetchError: Fetch retries exhausted
        """
        # The object may have been completed by another worker since it was listed
        result = self.validator.validate(descriptor)
        if not result:
            logger.debug(f"Skipping {descriptor.key}: rejected by {result.rejected_by}")
            return Outcome.SKIPPED

        remote_file = self._remote_file_factory(descriptor)
        try:
            remote_file.download()
            if remote_file.changed_since_listing:
                logger.info(
                    f"{descriptor.key} was updated after listing "
                    f"(etag {descriptor.etag} -> {remote_file.response.get('ETag')}), will process in the next cycle"
                )
                return Outcome.CHANGED

            outcome = Outcome.COMPLETED
            lines = 0
            try:
                for line in remote_file.each_line():
                    self.event_processor.process(line, remote_file.metadata)
                    lines += 1
            except DecompressionError as e:
                logger.error(f"Failed to read {descriptor.key} after {lines} lines, processing skipped: {e}")
                outcome = Outcome.CORRUPT

            failed = self.post_processors.run(remote_file)
            if failed:
                logger.warning(f"Processed {descriptor.key} ({lines} lines); post-processors failed: {failed}")
            else:
                logger.debug(f"Processed {descriptor.key} ({lines} lines)")
            return outcome
        except ObjectGoneError:
            logger.debug(f"{descriptor.key} no longer exists, abandoning it")
            return Outcome.GONE
        finally:
            remote_file.cleanup()
