"""
Object store connections.
"""

from bucketfeed.connections.s3 import TRANSIENT_ERRORS, S3Connection
from bucketfeed.connections.storage import BaseStorageConnection

__all__ = [
    "BaseStorageConnection",
    "S3Connection",
    "TRANSIENT_ERRORS",
]
