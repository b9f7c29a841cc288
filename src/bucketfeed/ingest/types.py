"""
Type definitions for the ingestion pipeline.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    from bucketfeed.ingest.remote_file import RemoteFile

ARCHIVED_STORAGE_CLASSES = frozenset({"GLACIER", "DEEP_ARCHIVE"})


@dataclass(frozen=True)
class RemoteObjectDescriptor:
    """
    Snapshot of one object taken at listing time.

    The object may be updated or deleted before it is fetched, so nothing here is
    guaranteed to still hold when a worker picks it up.
    """

    key: str
    etag: str
    bucket_name: str
    size: int
    last_modified: datetime
    storage_class: str = "STANDARD"
    # Restore status is only reported for archived objects
    restore_in_progress: bool | None = None
    restore_expiry: datetime | None = None

    @classmethod
    def from_listing(cls, obj: dict[str, Any], bucket_name: str) -> RemoteObjectDescriptor:
        """Build a descriptor from one ``Contents`` entry of a ListObjectsV2 page."""
        restore = obj.get("RestoreStatus") or {}
        return cls(
            key=obj["Key"],
            etag=str(obj.get("ETag", "")).strip('"'),
            bucket_name=bucket_name,
            size=int(obj.get("Size", 0) or 0),
            last_modified=_as_utc(obj["LastModified"]),
            storage_class=obj.get("StorageClass") or "STANDARD",
            restore_in_progress=restore.get("IsRestoreInProgress"),
            restore_expiry=_as_utc(restore["RestoreExpiryDate"]) if restore.get("RestoreExpiryDate") else None,
        )

    @property
    def is_archived(self) -> bool:
        return self.storage_class in ARCHIVED_STORAGE_CLASSES

    def properties(self) -> dict[str, Any]:
        """Object properties attached to emitted records when requested."""
        return {
            "key": self.key,
            "bucket_name": self.bucket_name,
            "etag": self.etag,
            "content_length": self.size,
            "last_modified": self.last_modified.isoformat(),
            "storage_class": self.storage_class,
        }


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class Policy(Protocol):
    """
    Admission predicate over a listed object.

    Policies must not mutate the descriptor.
    """

    name: str

    def accepts(self, descriptor: RemoteObjectDescriptor) -> bool: ...


class PostProcessor(Protocol):
    """Completion action run after an object has been fully read."""

    name: str

    def process(self, remote_file: RemoteFile) -> None: ...


# Downstream consumer: receives one raw line (without its terminator) plus metadata
EventSink = Callable[[bytes, dict[str, Any]], None]
