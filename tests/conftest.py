"""
Shared fixtures for BucketFeed tests.
"""

import gzip
import logging
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from bucketfeed.ingest.types import RemoteObjectDescriptor

NOW = datetime(2024, 6, 1, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def reset_logging():
    """Drop handlers installed by setup_logging so they never outlive a test."""
    yield
    logger = logging.getLogger("bucketfeed")
    for handler in logger.handlers:
        handler.close()
    logger.handlers.clear()
    logger.setLevel(logging.NOTSET)


@pytest.fixture
def now():
    """Fixed "current time" used by clocks in tests."""
    return NOW


@pytest.fixture
def clock():
    return lambda: NOW


@pytest.fixture
def make_descriptor():
    """Factory for listing snapshots; ``age`` is seconds before NOW."""

    def _make(
        key="logs/a.log",
        *,
        etag="etag-1",
        size=10,
        age=3600,
        last_modified=None,
        bucket="source-bucket",
        storage_class="STANDARD",
        restore_in_progress=None,
        restore_expiry=None,
    ):
        return RemoteObjectDescriptor(
            key=key,
            etag=etag,
            bucket_name=bucket,
            size=size,
            last_modified=last_modified or NOW - timedelta(seconds=age),
            storage_class=storage_class,
            restore_in_progress=restore_in_progress,
            restore_expiry=restore_expiry,
        )

    return _make


@pytest.fixture
def gzip_payload():
    """Build a multi-member gzip payload from several lists of lines."""

    def _build(*members):
        return b"".join(gzip.compress(b"".join(line + b"\n" for line in lines)) for lines in members)

    return _build


@pytest.fixture
def mock_connection():
    """S3Connection stand-in serving bodies from an in-memory dict keyed by object key."""
    connection = MagicMock()
    connection.bucket = "source-bucket"
    connection.objects = {}

    def get_object_to(key, sink, chunk_size=None):
        from bucketfeed.exceptions import ObjectGoneError

        if key not in connection.objects:
            raise ObjectGoneError(key, bucket="source-bucket")
        body, etag = connection.objects[key]
        sink.write(body)
        return {"ETag": etag, "ContentEncoding": None, "ContentType": None, "LastModified": None}

    connection.get_object_to.side_effect = get_object_to
    return connection
