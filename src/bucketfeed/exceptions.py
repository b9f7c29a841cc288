"""
BucketFeed exception hierarchy.

All domain-specific exceptions inherit from BucketFeedError, making it easy
to catch any ingestion error with a single base class while still allowing
fine-grained handling when needed.

Hierarchy::

    BucketFeedError
    ├── ConfigurationError        - config loading, parsing, validation (fatal at startup)
    ├── StorageError              - object store failures
    │   ├── ListingError          - a list call failed (tick yields nothing)
    │   ├── ObjectGoneError       - object vanished between listing and use (benign)
    │   └── TransientFetchError   - fetch retry budget exhausted
    ├── DecompressionError        - corrupt compressed member
    └── PersistenceError          - ledger file cannot be written
"""

from __future__ import annotations


class BucketFeedError(Exception):
    """Base exception for all BucketFeed errors."""

    def __init__(self, message: str, *, details: dict | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


# --- Configuration -----------------------------------------------------------


class ConfigurationError(BucketFeedError):
    """Raised when configuration loading, parsing, or validation fails."""


# --- Object store ------------------------------------------------------------


class StorageError(BucketFeedError):
    """Raised when the object store rejects or fails a request."""


class ListingError(StorageError):
    """Raised when a bucket listing call fails."""

    def __init__(self, message: str, *, bucket: str | None = None, prefix: str | None = None) -> None:
        super().__init__(message, details={"bucket": bucket, "prefix": prefix})
        self.bucket = bucket
        self.prefix = prefix


class ObjectGoneError(StorageError):
    """Raised when an object no longer exists in the store."""

    def __init__(self, key: str, *, bucket: str | None = None) -> None:
        super().__init__(f"Object not found: {bucket}/{key}", details={"key": key, "bucket": bucket})
        self.key = key
        self.bucket = bucket


class TransientFetchError(StorageError):
    """Raised when a fetch keeps failing after the retry budget is spent."""

    def __init__(self, key: str, message: str, *, attempts: int = 0) -> None:
        super().__init__(f"Fetching '{key}' failed after {attempts} attempts: {message}", details={"key": key})
        self.key = key
        self.attempts = attempts


# --- Content -----------------------------------------------------------------


class DecompressionError(BucketFeedError):
    """Raised when a compressed member cannot be decoded."""

    def __init__(self, key: str, message: str, *, member: int = 0) -> None:
        super().__init__(f"Corrupt compressed member {member} in '{key}': {message}", details={"key": key})
        self.key = key
        self.member = member


# --- Ledger ------------------------------------------------------------------


class PersistenceError(BucketFeedError):
    """Raised when the sincedb ledger cannot be written."""
