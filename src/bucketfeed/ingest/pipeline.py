"""
S3Input: lifecycle facade that wires the ingestion pipeline together.

A host embeds the input through three calls and one callback:

    input = S3Input(settings, sink)
    input.start()   # or input.run() to block until stopped
    ...
    input.stop()

``sink(line, metadata)`` is called from worker threads, once per emitted line.
Shutdown order is poller, then workers (each finishes its current object),
then a final compaction and fsync'ed flush of the ledger.
"""

from __future__ import annotations

import json
import threading
from collections.abc import Callable
from pathlib import Path
from typing import Any, TextIO

from bucketfeed.config.settings import InputSettings
from bucketfeed.connections.s3 import TRANSIENT_ERRORS, S3Connection
from bucketfeed.exceptions import ConfigurationError, PersistenceError
from bucketfeed.ingest.downloader import StreamDownloader
from bucketfeed.ingest.event_processor import EventProcessor
from bucketfeed.ingest.manager import ProcessorManager
from bucketfeed.ingest.policies import Clock, build_policy_chain, utcnow
from bucketfeed.ingest.poller import Poller
from bucketfeed.ingest.post_processors import build_post_processors
from bucketfeed.ingest.processor import Processor
from bucketfeed.ingest.remote_file import RemoteFile
from bucketfeed.ingest.sincedb import SinceDB
from bucketfeed.ingest.types import EventSink, RemoteObjectDescriptor
from bucketfeed.retry import RetryManager, fetch_retry_policy
from bucketfeed.utils.logging import get_logger

logger = get_logger("bucketfeed.ingest.pipeline")


class S3Input:
    """
    Args:
        settings: Validated input settings
        sink: Downstream consumer of ``(line, metadata)``
        connection: Pre-built connection (tests); built from settings otherwise
        retry_manager: Shared by fetch and broken-pipe retries (tests inject a no-op sleep)
        clock: UTC clock for the admission policies
    """

    def __init__(
        self,
        settings: InputSettings,
        sink: EventSink,
        *,
        connection: S3Connection | None = None,
        retry_manager: RetryManager | None = None,
        clock: Clock = utcnow,
    ):
        self.settings = settings
        self.sink = sink
        self.connection = connection or S3Connection("input", settings.connection_config())
        self.retry_manager = retry_manager or RetryManager()
        self.clock = clock
        self.sincedb_path = settings.resolved_sincedb_path()
        self.staging_dir = settings.resolved_temporary_directory()

        self.sincedb: SinceDB | None = None
        self.poller: Poller | None = None
        self.manager: ProcessorManager | None = None
        self._poller_thread: threading.Thread | None = None
        self._failure: PersistenceError | None = None
        self._lock = threading.Lock()
        self._started = False
        self._closed = False

    # --- administrative one-shots ---------------------------------------------

    def purge_sincedb(self) -> bool:
        """Delete the ledger file. Returns True if one existed."""
        return SinceDB.purge(self.sincedb_path)

    def reseed_sincedb(self, descriptor: RemoteObjectDescriptor | None = None) -> None:
        """
        Replace the ledger with a single entry (``sincedb_start_value`` by default).

        Raises:
            PersistenceError: The ledger could not be written
        """
        descriptor = descriptor or self.settings.start_value_descriptor()
        if descriptor is None:
            raise ValueError("No sincedb start value given")
        sincedb = SinceDB(self.sincedb_path, bookkeeping=False)
        sincedb.reseed(descriptor)

    # --- lifecycle ------------------------------------------------------------

    def register(self) -> None:
        """Build every component and bootstrap backup targets. Called by ``start``."""
        settings = self.settings
        if settings.sincedb_expire_seconds is not None and not settings.use_start_after:
            logger.warning(
                "sincedb_expire_seconds is set without use_start_after: expired objects "
                "still present in the bucket will be processed again"
            )

        self._bootstrap()

        self.sincedb = SinceDB(
            self.sincedb_path,
            ignore_older_than=settings.ignore_older_than,
            expire_seconds=settings.sincedb_expire_seconds,
            flush_interval=settings.sincedb_flush_interval,
            flush_failure=settings.sincedb_flush_failure,
            on_failure=self._on_sincedb_failure,
            bookkeeping=False,
        )

        downloader = StreamDownloader(
            self.connection,
            retry_policy=fetch_retry_policy(settings.fetch_retries, TRANSIENT_ERRORS),
            retry_manager=self.retry_manager,
        )

        def remote_file_factory(descriptor: RemoteObjectDescriptor) -> RemoteFile:
            return RemoteFile(
                descriptor,
                downloader,
                staging_dir=self.staging_dir,
                gzip_pattern=settings.gzip_pattern,
                include_object_properties=settings.include_object_properties,
            )

        validator = build_policy_chain(
            sincedb=self.sincedb,
            prefix=settings.prefix,
            ignore_newer_than=settings.ignore_newer_than,
            ignore_older_than=settings.ignore_older_than,
            exclude_pattern=settings.exclude_pattern,
            backup_prefix=settings.backup_prefix_in_source,
            clock=self.clock,
        )
        post_processors = build_post_processors(
            sincedb=self.sincedb,
            connection=self.connection,
            backup_to_bucket=settings.backup_to_bucket,
            backup_add_prefix=settings.backup_add_prefix,
            backup_to_dir=settings.backup_to_dir,
            delete_after_processing=settings.delete_after_processing,
        )
        processor = Processor(validator, EventProcessor(self.sink), post_processors, remote_file_factory)

        self.manager = ProcessorManager(
            processor,
            processors_count=settings.processors_count,
            broken_pipe_retries=settings.broken_pipe_retries,
            handoff_timeout=settings.handoff_timeout,
            retry_manager=self.retry_manager,
        )
        self.poller = Poller(
            self.connection,
            self.manager.enqueue,
            self.sincedb,
            validator=validator,
            prefix=settings.prefix or "",
            interval=settings.interval,
            batch_size=settings.batch_size,
            use_start_after=settings.use_start_after,
            watch_for_new_files=settings.watch_for_new_files,
        )
        logger.debug(f"Registered S3 input: {validator!r}, post-processors={len(post_processors)}")

    def _bootstrap(self) -> None:
        """
        Raises:
            StorageError: The backup bucket cannot be checked or created
            ConfigurationError: A local directory cannot be created
        """
        settings = self.settings
        if settings.backup_to_bucket:
            self.connection.ensure_bucket(settings.backup_to_bucket)
        try:
            if settings.backup_to_dir:
                Path(settings.backup_to_dir).expanduser().mkdir(mode=0o700, parents=True, exist_ok=True)
            self.staging_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ConfigurationError(f"Unable to create directory {e.filename}: {e.strerror}") from e

    def start(self) -> None:
        """Start bookkeeping, workers and the poller thread; returns immediately."""
        with self._lock:
            if self._started:
                return
            self._started = True
        if self.poller is None:
            self.register()

        logger.info(
            f"Starting S3 input for s3://{self.settings.bucket}/{self.settings.prefix or ''} "
            f"(sincedb={self.sincedb_path})"
        )
        self.sincedb.start_bookkeeping()
        self.manager.start()
        self._poller_thread = threading.Thread(target=self.poller.run, name="S3 poller", daemon=True)
        self._poller_thread.start()

    def stop(self) -> None:
        """
        Ask the poller to stop and the workers to refuse new items.

        Objects already taken by a worker are finished by ``close``. Safe from
        signal handlers and other threads.
        """
        logger.info("Stopping S3 input")
        if self.poller is not None:
            self.poller.stop()
        if self.manager is not None:
            self.manager.stop_accepting()

    def run(self) -> None:
        """
        Start and block until the poller exits (stop requested or single pass done), then close.

        Raises:
            PersistenceError: The ledger could not be written under the fatal policy
        """
        self.start()
        try:
            while self._poller_thread.is_alive():
                self._poller_thread.join(0.5)
        finally:
            self.close()
        if self._failure is not None:
            raise self._failure

    def close(self) -> None:
        """
        Stop everything in order and flush the ledger.

        Raises:
            PersistenceError: The final flush failed under the fatal policy
        """
        with self._lock:
            if self._closed or not self._started:
                return
            self._closed = True

        self.stop()
        if self._poller_thread is not None and self._poller_thread is not threading.current_thread():
            self._poller_thread.join()
        self.manager.stop()
        self.sincedb.close()
        logger.info("S3 input stopped")

    @property
    def failure(self) -> PersistenceError | None:
        return self._failure

    def _on_sincedb_failure(self, error: PersistenceError) -> None:
        self._failure = error
        self.stop()


def json_lines_sink(stream: TextIO) -> Callable[[bytes, dict[str, Any]], None]:
    """
    Sink writing one JSON object per line to ``stream``.

    Output shape: ``{"message": "<line>", "@metadata": {...}}``. Workers call it
    concurrently, so writes are serialized.
    """
    lock = threading.Lock()

    def sink(line: bytes, metadata: dict[str, Any]) -> None:
        record = {"message": line.decode("utf-8", errors="replace"), "@metadata": metadata}
        encoded = json.dumps(record, default=str)
        with lock:
            stream.write(encoded + "\n")
            stream.flush()

    return sink
