"""
SinceDB: durable ledger of fully processed object versions.

The ledger lives in memory behind a lock and is replayed at startup from a
newline-delimited JSON file. A bookkeeping thread compacts it and rewrites the
file wholesale whenever something changed.

File format, one record per line::

    {"key": ["logs/a.gz", "9b2cf535f27731c974343645a3985328", "my-bucket"], "value": [1700000000.0, 1700000060.5]}

``value`` is ``[last_modified, recorded_at]`` in epoch seconds; a record with only
``last_modified`` is accepted and stamped with the load time.
"""

from __future__ import annotations

import json
import os
import tempfile
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from bucketfeed.exceptions import PersistenceError
from bucketfeed.ingest.types import RemoteObjectDescriptor
from bucketfeed.utils.logging import get_logger

logger = get_logger("bucketfeed.ingest.sincedb")

FLUSH_FAILURE_POLICIES = ("fatal", "log")


@dataclass(frozen=True)
class SinceDBKey:
    """Identity of one object version: a new etag under the same key is a new version."""

    key: str
    etag: str
    bucket_name: str

    @classmethod
    def from_remote(cls, descriptor: RemoteObjectDescriptor) -> SinceDBKey:
        return cls(descriptor.key, descriptor.etag, descriptor.bucket_name)

    def to_list(self) -> list[str]:
        return [self.key, self.etag, self.bucket_name]


@dataclass(frozen=True)
class SinceDBValue:
    last_modified: float
    # Wall-clock write time, only used for expiry
    recorded_at: float

    def to_list(self) -> list[float]:
        return [self.last_modified, self.recorded_at]


class SinceDB:
    """
    Thread-safe ledger of processed objects with background compaction and flush.

    Workers call ``completed``, the poller calls ``oldest_key`` and the bookkeeping
    thread iterates a snapshot for compaction and serialization. Every read and
    every mutation happens under one lock; iteration always works on a copy.

    Args:
        path: Ledger file location
        ignore_older_than: Absolute expiry: drop entries whose last_modified is at
            least this many seconds before now (None disables)
        expire_seconds: Relative expiry: drop entries trailing the newest entry's
            last_modified by more than this many seconds (None disables)
        flush_interval: Seconds between bookkeeping ticks
        flush_failure: "fatal" stops bookkeeping and records a PersistenceError,
            "log" keeps retrying on every tick
        on_failure: Called once with the PersistenceError under the fatal policy
        bookkeeping: Start the background thread (disable in tests to drive
            ``periodic_sync`` by hand)
        clock: Wall-clock source in epoch seconds
    """

    def __init__(
        self,
        path: str | Path,
        *,
        ignore_older_than: float | None = None,
        expire_seconds: float | None = None,
        flush_interval: float = 1.0,
        flush_failure: str = "fatal",
        on_failure: Callable[[PersistenceError], None] | None = None,
        bookkeeping: bool = True,
        clock: Callable[[], float] = time.time,
    ):
        if flush_failure not in FLUSH_FAILURE_POLICIES:
            raise ValueError(f"flush_failure must be one of {FLUSH_FAILURE_POLICIES}, got '{flush_failure}'")

        self.path = Path(path)
        self.ignore_older_than = ignore_older_than
        self.expire_seconds = expire_seconds
        self.flush_interval = flush_interval
        self.flush_failure = flush_failure
        self._on_failure = on_failure
        self._clock = clock

        self._db: dict[SinceDBKey, SinceDBValue] = {}
        self._lock = threading.Lock()
        self._dirty = False
        self._failure: PersistenceError | None = None

        self._stopped = threading.Event()
        self._stopped.set()
        self._thread: threading.Thread | None = None

        self._load()

        if bookkeeping:
            self.start_bookkeeping()

    # --- lifecycle ------------------------------------------------------------

    def start_bookkeeping(self) -> None:
        """Start the background compaction/flush thread."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._stopped.clear()
        self._thread = threading.Thread(target=self._bookkeeping_loop, name="sincedb-bookkeeping", daemon=True)
        self._thread.start()

    def _bookkeeping_loop(self) -> None:
        logger.debug(f"SinceDB bookkeeping started (interval={self.flush_interval}s, path={self.path})")
        while not self._stopped.wait(self.flush_interval):
            self.periodic_sync()
            if self._failure is not None:
                break

    def stop_bookkeeping(self) -> None:
        self._stopped.set()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join()
        self._thread = None

    def close(self) -> None:
        """
        Stop bookkeeping, compact once more and flush synchronously with fsync.

        Raises:
            PersistenceError: If the final flush fails under the fatal policy
        """
        self.stop_bookkeeping()
        self.compact()
        try:
            self.flush(fsync=True, force=True)
        except PersistenceError as e:
            logger.error(f"Final SinceDB flush failed, processed state may be lost: {e}")
            if self.flush_failure == "fatal":
                raise
        logger.debug(f"SinceDB closed with {len(self)} entries")

    @property
    def failure(self) -> PersistenceError | None:
        """The flush error that stopped bookkeeping under the fatal policy, if any."""
        return self._failure

    # --- ledger operations ----------------------------------------------------

    def processed(self, descriptor: RemoteObjectDescriptor) -> bool:
        """Whether this exact object version was recorded as fully processed."""
        key = SinceDBKey.from_remote(descriptor)
        with self._lock:
            return key in self._db

    def completed(self, descriptor: RemoteObjectDescriptor) -> None:
        """Record an object version as fully processed."""
        key = SinceDBKey.from_remote(descriptor)
        value = SinceDBValue(descriptor.last_modified.timestamp(), self._clock())
        with self._lock:
            self._db[key] = value
            self._dirty = True

    def oldest_key(self) -> str | None:
        """Key of the entry with the smallest last_modified, used to seed watermark listing."""
        with self._lock:
            if not self._db:
                return None
            oldest = min(self._db.items(), key=lambda item: (item[1].last_modified, item[0].key))
        return oldest[0].key

    def reseed(self, descriptor: RemoteObjectDescriptor) -> None:
        """
        Replace the whole ledger with a single entry and flush it.

        Meant as a one-shot administrative rewind/fast-forward followed by exit.
        """
        key = SinceDBKey.from_remote(descriptor)
        with self._lock:
            self._db.clear()
            self._db[key] = SinceDBValue(descriptor.last_modified.timestamp(), self._clock())
            self._dirty = True
        logger.info(f"SinceDB reseeded with key={descriptor.key} last_modified={descriptor.last_modified.isoformat()}")
        self.flush(fsync=True)

    @staticmethod
    def purge(path: str | Path) -> bool:
        """Delete a ledger file. Returns True if a file was removed."""
        path = Path(path)
        if path.exists():
            path.unlink()
            logger.info(f"SinceDB purged: {path}")
            return True
        logger.info(f"No SinceDB to purge at {path}")
        return False

    def __len__(self) -> int:
        with self._lock:
            return len(self._db)

    def __contains__(self, key: SinceDBKey) -> bool:
        with self._lock:
            return key in self._db

    def snapshot(self) -> dict[SinceDBKey, SinceDBValue]:
        with self._lock:
            return dict(self._db)

    # --- bookkeeping ----------------------------------------------------------

    def periodic_sync(self) -> None:
        """One bookkeeping tick: compact, then flush if anything changed."""
        self.compact()
        try:
            self.flush()
        except PersistenceError as e:
            if self.flush_failure == "fatal":
                logger.critical(f"SinceDB flush failed, stopping bookkeeping: {e}")
                self._failure = e
                if self._on_failure is not None:
                    self._on_failure(e)
            else:
                logger.error(f"SinceDB flush failed, will retry on next tick: {e}")

    def compact(self, now: float | None = None) -> int:
        """
        Apply absolute and relative expiry.

        Returns:
            Number of entries removed
        """
        now = self._clock() if now is None else now
        entries = self.snapshot()
        if not entries:
            return 0

        expired: list[tuple[SinceDBKey, SinceDBValue]] = []

        if self.ignore_older_than is not None:
            for key, value in entries.items():
                if now - value.last_modified >= self.ignore_older_than:
                    expired.append((key, value))

        if self.expire_seconds is not None and len(entries) > 1:
            newest = max(value.last_modified for value in entries.values())
            for key, value in entries.items():
                if newest - value.last_modified > self.expire_seconds:
                    expired.append((key, value))

        removed = 0
        with self._lock:
            for key, value in expired:
                # Skip entries re-recorded since the snapshot was taken
                if self._db.get(key) is value:
                    del self._db[key]
                    removed += 1
            if removed:
                self._dirty = True

        if removed:
            logger.debug(f"SinceDB compaction removed {removed} entries, {len(self)} remain")
        return removed

    def flush(self, *, fsync: bool = False, force: bool = False) -> bool:
        """
        Rewrite the ledger file if it changed since the last flush.

        Args:
            fsync: fsync the file before it replaces the previous one
            force: Write even if nothing changed

        Returns:
            True if the file was written

        Raises:
            PersistenceError: If the file cannot be written
        """
        with self._lock:
            if not (self._dirty or force):
                return False
            entries = list(self._db.items())
            self._dirty = False

        try:
            self._write(entries, fsync=fsync)
        except OSError as e:
            with self._lock:
                self._dirty = True
            raise PersistenceError(f"Unable to write SinceDB file {self.path}: {e}") from e
        return True

    def _write(self, entries: list[tuple[SinceDBKey, SinceDBValue]], *, fsync: bool) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{self.path.name}.", suffix=".tmp", dir=self.path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                for key, value in entries:
                    f.write(json.dumps({"key": key.to_list(), "value": value.to_list()}))
                    f.write("\n")
                f.flush()
                if fsync:
                    os.fsync(f.fileno())
            os.replace(tmp_name, self.path)
        except OSError:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

    def _load(self) -> None:
        if not self.path.exists():
            logger.debug(f"No SinceDB file at {self.path}, starting empty")
            return

        loaded = 0
        skipped = 0
        now = self._clock()
        with open(self.path, encoding="utf-8") as f:
            for line_no, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    record = json.loads(line)
                    key_parts = record["key"]
                    value_parts = record["value"]
                    key = SinceDBKey(str(key_parts[0]), str(key_parts[1]), str(key_parts[2]))
                    recorded_at = float(value_parts[1]) if len(value_parts) > 1 else now
                    value = SinceDBValue(float(value_parts[0]), recorded_at)
                except (ValueError, KeyError, IndexError, TypeError) as e:
                    skipped += 1
                    logger.warning(f"Skipping unreadable SinceDB record at {self.path}:{line_no}: {e}")
                    continue
                self._db[key] = value
                loaded += 1

        logger.info(f"Loaded {loaded} SinceDB entries from {self.path}" + (f" ({skipped} skipped)" if skipped else ""))
