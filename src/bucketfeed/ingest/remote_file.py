"""
RemoteFile: one unit of work from fetch to cleanup.

A RemoteFile owns the local staging file of a single listed object for as long
as a worker handles it. ``cleanup`` must run on every path out of the worker.
"""

from __future__ import annotations

import os
import re
import tempfile
from collections.abc import Iterator
from pathlib import Path
from typing import Any

from bucketfeed.ingest.downloader import StreamDownloader, read_gzip_lines, read_lines
from bucketfeed.ingest.types import RemoteObjectDescriptor
from bucketfeed.utils.logging import get_logger

logger = get_logger("bucketfeed.ingest.remote_file")

DEFAULT_GZIP_PATTERN = r"\.gz(ip)?$"


class RemoteFile:
    """
    A listed object plus its local staging file and per-object metadata.

    Args:
        descriptor: Listing snapshot of the object
        downloader: Fetches bytes from the store
        staging_dir: Directory for the transient local copy
        gzip_pattern: Keys matching this regex are decompressed
        include_object_properties: Attach all descriptor properties to emitted metadata
    """

    def __init__(
        self,
        descriptor: RemoteObjectDescriptor,
        downloader: StreamDownloader,
        *,
        staging_dir: str | Path,
        gzip_pattern: str | re.Pattern[str] = DEFAULT_GZIP_PATTERN,
        include_object_properties: bool = False,
    ):
        self.descriptor = descriptor
        self.downloader = downloader
        self.staging_dir = Path(staging_dir)
        self.gzip_pattern = re.compile(gzip_pattern)

        self.local_path: Path | None = None
        self.response: dict[str, Any] = {}

        s3_metadata = descriptor.properties() if include_object_properties else {}
        s3_metadata["key"] = descriptor.key
        self.metadata: dict[str, Any] = {"s3": s3_metadata}

    @property
    def key(self) -> str:
        return self.descriptor.key

    @property
    def bucket_name(self) -> str:
        return self.descriptor.bucket_name

    @property
    def etag(self) -> str:
        return self.descriptor.etag

    @property
    def size(self) -> int:
        return self.descriptor.size

    @property
    def downloaded(self) -> bool:
        return self.local_path is not None and bool(self.response)

    @property
    def compressed(self) -> bool:
        """Decided from the key pattern or the declared content encoding of the fetch."""
        if self.gzip_pattern.search(self.key):
            return True
        return (self.response.get("ContentEncoding") or "").lower() in ("gzip", "x-gzip")

    @property
    def changed_since_listing(self) -> bool:
        """Whether the fetched bytes belong to a newer version than the one listed."""
        fetched = self.response.get("ETag")
        return bool(fetched) and fetched != self.etag

    def download(self) -> Path:
        """
        Fetch the object into a fresh staging file.

        Raises:
            ObjectGoneError: The object was deleted after listing
            TransientFetchError: Retry budget exhausted
        """
        self.staging_dir.mkdir(parents=True, exist_ok=True)
        basename = os.path.basename(self.key) or "object"
        fd, name = tempfile.mkstemp(prefix=f"{basename}.", dir=self.staging_dir)
        self.local_path = Path(name)
        logger.debug(f"Downloading s3://{self.bucket_name}/{self.key} to {self.local_path}")
        with os.fdopen(fd, "w+b") as f:
            self.response = self.downloader.fetch(self.key, f)
        return self.local_path

    def each_line(self) -> Iterator[bytes]:
        """
        Lines of the staged object, decompressed when needed.

        Raises:
            DecompressionError: A compressed member is corrupt (lines before it were already yielded)
        """
        if self.local_path is None:
            raise RuntimeError(f"{self.key} has not been downloaded")
        with open(self.local_path, "rb") as f:
            if self.compressed:
                yield from read_gzip_lines(f, self.key)
            else:
                yield from read_lines(f)

    def cleanup(self) -> None:
        """Delete the staging file. Safe to call more than once."""
        if self.local_path is not None:
            try:
                self.local_path.unlink(missing_ok=True)
            except OSError as e:
                logger.warning(f"Could not remove staging file {self.local_path}: {e}")
            self.local_path = None

    def __repr__(self) -> str:
        return f"RemoteFile(s3://{self.bucket_name}/{self.key}, etag={self.etag}, size={self.size})"
