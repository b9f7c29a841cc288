"""
Poller: periodically lists the bucket and offers candidates to the workers.

Two listing modes:

- full listing (default): every tick walks the whole prefix; the ledger check in
  the workers filters what was already processed.
- watermark listing (``use_start_after``): every call asks for at most
  ``batch_size`` keys strictly after the last key fetched, seeded from the
  ledger's oldest key on a cold start. A full batch is followed by an immediate
  re-list so backlogs drain without waiting for the next tick. This relies on
  key order following modification-time order; disagreements are logged.
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from datetime import datetime

from bucketfeed.connections.s3 import S3Connection
from bucketfeed.exceptions import ListingError
from bucketfeed.ingest.policies import ProcessingPolicyValidator, SkipNewerThan
from bucketfeed.ingest.sincedb import SinceDB
from bucketfeed.ingest.types import RemoteObjectDescriptor
from bucketfeed.utils.logging import get_logger

logger = get_logger("bucketfeed.ingest.poller")


class Poller:
    """
    Args:
        connection: Source bucket connection
        enqueue: Offers one descriptor to the workers; blocks under backpressure and
            returns False once the pool is stopping
        sincedb: Seeds the watermark on a cold start
        validator: Admission chain applied before offering (workers apply it again on receipt)
        prefix: Only list keys under this prefix
        interval: Seconds between listing ticks
        batch_size: Keys per listing call in watermark mode, page size otherwise
        use_start_after: Enable watermark listing
        watch_for_new_files: False lists once (draining full batches) and returns
    """

    def __init__(
        self,
        connection: S3Connection,
        enqueue: Callable[[RemoteObjectDescriptor], bool],
        sincedb: SinceDB | None,
        *,
        validator: ProcessingPolicyValidator,
        prefix: str = "",
        interval: float = 60,
        batch_size: int = 1000,
        use_start_after: bool = False,
        watch_for_new_files: bool = True,
    ):
        self.connection = connection
        self._enqueue = enqueue
        self.sincedb = sincedb
        self.validator = validator
        self.prefix = prefix or ""
        self.interval = interval
        self.batch_size = batch_size
        self.use_start_after = use_start_after
        self.watch_for_new_files = watch_for_new_files

        self.last_key_fetched: str | None = None
        self._last_mtime_fetched: datetime | None = None
        # Whether the previous watermark listing returned a full batch and moved forward
        self._more_pending = False
        self._stopped = threading.Event()

    @property
    def stopped(self) -> bool:
        return self._stopped.is_set()

    def stop(self) -> None:
        """Ask the loop to exit; an in-flight listing call is not interrupted."""
        self._stopped.set()

    def run(self) -> None:
        """Poll until stopped (or once, when not watching for new files)."""
        logger.info(
            f"Polling s3://{self.connection.bucket}/{self.prefix} every {self.interval}s "
            f"(use_start_after={self.use_start_after}, batch_size={self.batch_size})"
        )
        while not self.stopped:
            candidates = self.list_new_files()
            if self.stopped:
                break

            offered = 0
            for descriptor in candidates:
                if self.stopped:
                    break
                if self._enqueue(descriptor):
                    offered += 1
            if candidates:
                logger.info(f"Offered {offered}/{len(candidates)} objects to processors")

            if self._more_pending:
                continue
            if not self.watch_for_new_files:
                logger.info("Single pass finished, not watching for new files")
                break
            self._stopped.wait(self.interval)

    def list_new_files(self) -> list[RemoteObjectDescriptor]:
        """
        One listing call, filtered by the poller's validator.

        Returns:
            Accepted descriptors sorted by ascending last_modified. A failed listing
            is logged and yields nothing.
        """
        self._more_pending = False
        try:
            listed = self._list()
        except ListingError as e:
            logger.error(f"Unable to list objects in bucket: {e}", exc_info=e.__cause__ is not None)
            return []

        if not listed:
            logger.info(f"No files found in bucket (prefix={self.prefix!r})")
            return []

        accepted: list[RemoteObjectDescriptor] = []
        first_deferred: int | None = None
        for index, descriptor in enumerate(listed):
            result = self.validator.validate(descriptor)
            if result:
                accepted.append(descriptor)
            elif result.rejected_by == SkipNewerThan.name:
                logger.debug(f"{descriptor.key} modified inside the cutoff window, will retry next cycle")
                if self.use_start_after:
                    # Keys after it are listed again next cycle, once it settles
                    first_deferred = index
                    break

        if self.use_start_after:
            self._advance_watermark(listed, first_deferred)

        accepted.sort(key=lambda d: (d.last_modified, d.key))
        logger.debug(f"Listed {len(listed)} objects, {len(accepted)} candidates")
        return accepted

    def _list(self) -> list[RemoteObjectDescriptor]:
        if not self.use_start_after:
            return self.connection.list_descriptors(self.prefix, max_keys=self.batch_size)

        start_after = self._start_after()
        return self.connection.list_descriptors(
            self.prefix,
            start_after=start_after,
            limit=self.batch_size,
            max_keys=self.batch_size,
        )

    def _start_after(self) -> str | None:
        if self.last_key_fetched:
            logger.debug(f"Setting start_after to last_key_fetched={self.last_key_fetched}")
            return self.last_key_fetched
        oldest_key = self.sincedb.oldest_key() if self.sincedb is not None else None
        if oldest_key:
            logger.debug(f"Setting start_after to SinceDB oldest_key={oldest_key}")
            return oldest_key
        logger.debug("No previous key in SinceDB and no last_key_fetched, listing from the beginning of the bucket")
        return None

    def _advance_watermark(self, listed: list[RemoteObjectDescriptor], first_deferred: int | None) -> None:
        """Move the watermark over the listed keys, stopping before the first deferred one."""
        passed = listed if first_deferred is None else listed[:first_deferred]
        for descriptor in passed:
            if (
                self.last_key_fetched is not None
                and self._last_mtime_fetched is not None
                and self._last_mtime_fetched > descriptor.last_modified
            ):
                logger.warning(
                    "S3 object listing is not consistent. Results may be incomplete or out of order "
                    f"(previous key={self.last_key_fetched} mtime={self._last_mtime_fetched.isoformat()}, "
                    f"current key={descriptor.key} mtime={descriptor.last_modified.isoformat()})"
                )
            self.last_key_fetched = descriptor.key
            self._last_mtime_fetched = descriptor.last_modified

        if passed:
            logger.debug(f"Setting last_key_fetched={self.last_key_fetched}")
        self._more_pending = len(listed) >= self.batch_size and first_deferred is None
