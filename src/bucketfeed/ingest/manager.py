"""
Bounded worker pool fed through a zero-capacity handoff.

The poller's ``enqueue`` only succeeds when a worker is waiting to receive, so
a busy pool stalls the poller instead of growing a queue. Both sides wait with
a short timeout (``handoff_timeout``) and re-check the stop flag in between;
lowering it shortens shutdown latency at the cost of more wakeups.
"""

from __future__ import annotations

import threading
import time
from typing import Any

from bucketfeed.exceptions import TransientFetchError
from bucketfeed.ingest.processor import Processor
from bucketfeed.ingest.types import RemoteObjectDescriptor
from bucketfeed.retry import RetryManager, broken_pipe_retry_policy
from bucketfeed.utils.logging import get_logger

logger = get_logger("bucketfeed.ingest.manager")

HANDOFF_TIMEOUT = 0.15  # seconds

_EMPTY = object()


class RendezvousChannel:
    """
    Zero-capacity channel: ``offer`` succeeds only when a ``take`` is waiting.

    An offered item is reserved for one waiting taker, which always collects it,
    so nothing is ever buffered or lost.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._item: Any = _EMPTY
        self._waiting_takers = 0

    def offer(self, item: Any, timeout: float, cancelled: threading.Event | None = None) -> bool:
        deadline = time.monotonic() + timeout
        with self._cond:
            while self._item is not _EMPTY or self._waiting_takers == 0:
                if cancelled is not None and cancelled.is_set():
                    return False
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                self._cond.wait(remaining)
            self._item = item
            self._waiting_takers -= 1
            self._cond.notify_all()
            return True

    def take(self, timeout: float) -> Any | None:
        deadline = time.monotonic() + timeout
        with self._cond:
            self._waiting_takers += 1
            self._cond.notify_all()
            while self._item is _EMPTY:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    self._waiting_takers -= 1
                    return None
                self._cond.wait(remaining)
            item, self._item = self._item, _EMPTY
            # The offer already released this taker's slot
            self._cond.notify_all()
            return item

    def cancel(self, event: threading.Event) -> None:
        """
        Set an offer's ``cancelled`` event and wake every waiter.

        The event is set under the channel lock, so once this returns no offer
        waiting on it can still hand its item over.
        """
        with self._cond:
            event.set()
            self._cond.notify_all()


class ProcessorManager:
    """
    Owns ``processors_count`` worker threads sharing one Processor.

    Args:
        processor: Handles each received descriptor
        processors_count: Number of worker threads
        broken_pipe_retries: Attempts for a broken stream before the item is abandoned
        handoff_timeout: Seconds each side waits on the channel before re-checking stop
        retry_manager: Runs the broken-pipe retries (injectable sleep for tests)
    """

    def __init__(
        self,
        processor: Processor,
        *,
        processors_count: int = 5,
        broken_pipe_retries: int = 10,
        handoff_timeout: float = HANDOFF_TIMEOUT,
        retry_manager: RetryManager | None = None,
    ):
        if processors_count < 1:
            raise ValueError("processors_count must be >= 1")
        self.processor = processor
        self.processors_count = processors_count
        self.handoff_timeout = handoff_timeout
        self.retry_policy = broken_pipe_retry_policy(broken_pipe_retries)
        self.retry_manager = retry_manager or RetryManager()

        self._channel = RendezvousChannel()
        self._stopped = threading.Event()
        # Set once no more items may be handed to the workers
        self._refusing = threading.Event()
        self._workers: list[threading.Thread] = []

    @property
    def stopped(self) -> bool:
        return self._stopped.is_set()

    def enqueue(self, descriptor: RemoteObjectDescriptor) -> bool:
        """
        Block until a worker accepts the descriptor or stop is requested.

        Returns:
            True if a worker took it, False if it was dropped because of shutdown
            (it is rediscovered on a later listing: nothing was recorded)
        """
        logger.debug(f"Enqueuing work {descriptor.key}")
        while not self._refusing.is_set():
            if self._channel.offer(descriptor, self.handoff_timeout, cancelled=self._refusing):
                return True
        logger.debug(f"Dropping {descriptor.key}: processors are stopping")
        return False

    def stop_accepting(self) -> None:
        """Refuse new items; a pending ``enqueue`` returns False. Workers keep their current item."""
        self._channel.cancel(self._refusing)

    def start(self) -> None:
        logger.debug(f"Starting {self.processors_count} processors")
        self._stopped.clear()
        self._refusing.clear()
        for worker_id in range(self.processors_count):
            thread = threading.Thread(
                target=self._run_worker,
                args=(worker_id,),
                name=self._thread_name(worker_id, "Waiting for work"),
                daemon=True,
            )
            self._workers.append(thread)
            thread.start()

    def stop(self) -> None:
        """Request stop and wait for every worker to finish its current item."""
        logger.debug("Stopping processors")
        self.stop_accepting()
        self._stopped.set()
        for thread in self._workers:
            thread.join()
        self._workers.clear()
        logger.debug("Processors stopped")

    def _thread_name(self, worker_id: int, status: str) -> str:
        return f"[S3 processor {worker_id}/{self.processors_count}] {status}"

    def _run_worker(self, worker_id: int) -> None:
        thread = threading.current_thread()
        while not self.stopped:
            descriptor = self._channel.take(self.handoff_timeout)
            if descriptor is None:
                continue
            thread.name = self._thread_name(
                worker_id, f"Working on {descriptor.bucket_name}/{descriptor.key} size: {descriptor.size}"
            )
            self._process(descriptor, worker_id)
            thread.name = self._thread_name(worker_id, "Waiting for work")

    def _process(self, descriptor: RemoteObjectDescriptor, worker_id: int) -> None:
        """Handle one item; no per-object error escapes the worker."""
        try:
            self.retry_manager.execute_sync(
                self.processor.handle,
                descriptor,
                policy=self.retry_policy,
                name=f"processing {descriptor.key}",
            )
        except BrokenPipeError as e:
            logger.error(
                f"Broken pipe when processing {descriptor.key}, giving up after "
                f"{self.retry_policy.max_attempts + 1} attempts (not adding to SinceDB): {e}"
            )
        except TransientFetchError as e:
            logger.error(f"Skipping {descriptor.key} for now (not adding to SinceDB): {e}")
        except OSError as e:
            logger.error(f"I/O error when processing {descriptor.key}, skipping for now (not adding to SinceDB): {e}")
        except Exception as e:
            logger.error(f"Worker {worker_id} failed processing {descriptor.key}: {e}", exc_info=True)
