"""
BucketFeed - polls an S3 bucket and streams the lines of new objects downstream.
"""

__version__ = "0.1.0"

from bucketfeed.config import InputSettings, load_config
from bucketfeed.exceptions import (
    BucketFeedError,
    ConfigurationError,
    DecompressionError,
    ListingError,
    ObjectGoneError,
    PersistenceError,
    StorageError,
    TransientFetchError,
)
from bucketfeed.ingest.pipeline import S3Input, json_lines_sink

__all__ = [
    "__version__",
    "S3Input",
    "InputSettings",
    "load_config",
    "json_lines_sink",
    "BucketFeedError",
    "ConfigurationError",
    "StorageError",
    "ListingError",
    "ObjectGoneError",
    "TransientFetchError",
    "DecompressionError",
    "PersistenceError",
]
