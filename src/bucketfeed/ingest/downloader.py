"""
Fetching object bytes and turning them back into lines.

``StreamDownloader`` streams one object into a local sink, retrying transient
network failures with exponential backoff. ``read_lines`` / ``read_gzip_lines``
split the staged bytes into lines; the gzip reader walks every member of a
multi-member stream in order.
"""

from __future__ import annotations

import zlib
from collections.abc import Iterable, Iterator
from typing import Any, BinaryIO

from bucketfeed.connections.s3 import TRANSIENT_ERRORS, S3Connection
from bucketfeed.exceptions import DecompressionError, TransientFetchError
from bucketfeed.retry import RetryManager, RetryPolicy, fetch_retry_policy
from bucketfeed.utils.logging import get_logger

logger = get_logger("bucketfeed.ingest.downloader")

READ_SIZE = 64 * 1024

# zlib window bits for a gzip header and trailer
GZIP_WBITS = 16 + zlib.MAX_WBITS


class StreamDownloader:
    """Streams objects from one connection into caller-supplied files."""

    def __init__(
        self,
        connection: S3Connection,
        *,
        retry_policy: RetryPolicy | None = None,
        retry_manager: RetryManager | None = None,
    ):
        self.connection = connection
        self.retry_policy = retry_policy or fetch_retry_policy(5, TRANSIENT_ERRORS)
        self.retry_manager = retry_manager or RetryManager()

    def fetch(self, key: str, sink: BinaryIO) -> dict[str, Any]:
        """
        Download ``key`` into ``sink``, rewinding the sink before every attempt.

        Returns:
            Response headers from the successful attempt

        Raises:
            ObjectGoneError: The object no longer exists (never retried)
            TransientFetchError: Transient failures outlasted the retry budget
        """

        def attempt() -> dict[str, Any]:
            sink.seek(0)
            sink.truncate()
            return self.connection.get_object_to(key, sink)

        try:
            headers = self.retry_manager.execute_sync(attempt, policy=self.retry_policy, name=f"get_object {key}")
        except TRANSIENT_ERRORS as e:
            raise TransientFetchError(key, str(e), attempts=self.retry_policy.max_attempts + 1) from e
        sink.flush()
        return headers


def split_lines(chunks: Iterable[bytes]) -> Iterator[bytes]:
    """
    Re-chunk a byte stream into lines.

    Lines are yielded without their "\\n" or "\\r\\n" terminator; a trailing line
    without terminator is yielded as well.
    """
    # Only each new chunk is searched; a partial line is kept as a list of pieces
    pending: list[bytes] = []
    for chunk in chunks:
        start = 0
        while True:
            end = chunk.find(b"\n", start)
            if end == -1:
                break
            pending.append(chunk[start:end])
            yield _strip_cr(b"".join(pending))
            pending.clear()
            start = end + 1
        if start < len(chunk):
            pending.append(chunk[start:])
    if pending:
        yield _strip_cr(b"".join(pending))


def _strip_cr(line: bytes) -> bytes:
    return line[:-1] if line.endswith(b"\r") else line


def _read_chunks(stream: BinaryIO, size: int = READ_SIZE) -> Iterator[bytes]:
    while True:
        chunk = stream.read(size)
        if not chunk:
            return
        yield chunk


def gzip_members(stream: BinaryIO, key: str = "", size: int = READ_SIZE) -> Iterator[bytes]:
    """
    Decompress every member of a (possibly multi-member) gzip stream.

    When a member ends, any bytes left over are treated as the start of the next
    member, until nothing remains. Zero padding between or after members is skipped.

    Yields:
        Decompressed chunks, in member order

    Raises:
        DecompressionError: A member is corrupt or truncated. Chunks from earlier
            members have already been yielded.
    """
    member = 0
    decompressor = zlib.decompressobj(GZIP_WBITS)
    in_member = False
    pending = b""
    chunks = _read_chunks(stream, size)

    while True:
        if pending:
            data, pending = pending, b""
        else:
            data = next(chunks, b"")
            if not data:
                break

        if not in_member:
            data = data.lstrip(b"\x00")
            if not data:
                continue
            in_member = True

        try:
            out = decompressor.decompress(data)
        except zlib.error as e:
            raise DecompressionError(key, str(e), member=member) from e
        if out:
            yield out

        if decompressor.eof:
            pending = decompressor.unused_data
            member += 1
            in_member = False
            decompressor = zlib.decompressobj(GZIP_WBITS)
            if pending:
                logger.debug(f"Found trailing bytes after member {member - 1} of '{key}', reading next member")

    if in_member:
        raise DecompressionError(key, "unexpected end of stream", member=member)


def read_lines(stream: BinaryIO) -> Iterator[bytes]:
    """Lines of an uncompressed stream."""
    return split_lines(_read_chunks(stream))


def read_gzip_lines(stream: BinaryIO, key: str = "") -> Iterator[bytes]:
    """Lines across all members of a gzip stream, as one sequence."""
    return split_lines(gzip_members(stream, key))
