"""
Admission policies for listed objects.

``ProcessingPolicyValidator`` evaluates an ordered, immutable chain of policies,
cheapest and most certain first, and stops at the first rejection. The canonical
chain is assembled by ``build_policy_chain``:

1. SkipDirectoryMarker   - keys ending in "/" (or equal to the listing prefix)
2. SkipEmptyFile         - zero-length objects
3. SkipNewerThan         - objects modified inside the cutoff window
4. SkipOlderThan         - objects older than the retention horizon
5. ExcludePattern        - keys matching the exclusion regex
6. SkipBackupFiles       - keys written by our own backup step
7. SkipArchived          - archived storage classes without a live restore
8. AlreadyProcessed      - object versions recorded in SinceDB
"""

from __future__ import annotations

import re
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

from bucketfeed.ingest.types import Policy, RemoteObjectDescriptor
from bucketfeed.utils.logging import get_logger

if TYPE_CHECKING:
    from bucketfeed.ingest.sincedb import SinceDB

logger = get_logger("bucketfeed.ingest.policies")

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SkipDirectoryMarker:
    name = "skip_directory_marker"

    def __init__(self, prefix: str | None = None):
        self.prefix = prefix

    def accepts(self, descriptor: RemoteObjectDescriptor) -> bool:
        if self.prefix and descriptor.key == self.prefix:
            return False
        return not descriptor.key.endswith("/")


class SkipEmptyFile:
    name = "skip_empty_file"

    def accepts(self, descriptor: RemoteObjectDescriptor) -> bool:
        return descriptor.size > 0


class SkipNewerThan:
    """Defers objects modified within the last ``seconds``: they may still be uploading."""

    name = "skip_newer_than"

    def __init__(self, seconds: float, clock: Clock = utcnow):
        self.window = timedelta(seconds=seconds)
        self._clock = clock

    def accepts(self, descriptor: RemoteObjectDescriptor) -> bool:
        return descriptor.last_modified <= self._clock() - self.window


class SkipOlderThan:
    name = "skip_older_than"

    def __init__(self, seconds: float, clock: Clock = utcnow):
        self.horizon = timedelta(seconds=seconds)
        self._clock = clock

    def accepts(self, descriptor: RemoteObjectDescriptor) -> bool:
        return self._clock() - descriptor.last_modified < self.horizon


class ExcludePattern:
    name = "exclude_pattern"

    def __init__(self, pattern: str | re.Pattern[str]):
        self.pattern = re.compile(pattern)

    def accepts(self, descriptor: RemoteObjectDescriptor) -> bool:
        return self.pattern.search(descriptor.key) is None


class SkipBackupFiles(ExcludePattern):
    """Rejects copies our backup step wrote into the bucket being read."""

    name = "skip_backup_files"

    def __init__(self, backup_prefix: str):
        super().__init__("^" + re.escape(backup_prefix))


class SkipArchived:
    """Rejects GLACIER/DEEP_ARCHIVE objects unless a finished restore is still valid."""

    name = "skip_archived"

    def __init__(self, clock: Clock = utcnow):
        self._clock = clock

    def accepts(self, descriptor: RemoteObjectDescriptor) -> bool:
        if not descriptor.is_archived:
            return True
        if descriptor.restore_in_progress is False and descriptor.restore_expiry is not None:
            return self._clock() < descriptor.restore_expiry
        return False


class AlreadyProcessed:
    name = "already_processed"

    def __init__(self, sincedb: SinceDB):
        self.sincedb = sincedb

    def accepts(self, descriptor: RemoteObjectDescriptor) -> bool:
        return not self.sincedb.processed(descriptor)


@dataclass(frozen=True)
class ValidationResult:
    accepted: bool
    rejected_by: str | None = None

    def __bool__(self) -> bool:
        return self.accepted


class ProcessingPolicyValidator:
    """
    Ordered, short-circuit chain of policies.

    The chain is fixed at construction; build a new validator to change it.
    """

    def __init__(self, policies: Iterable[Policy]):
        self._policies: tuple[Policy, ...] = tuple(policies)

    @property
    def policies(self) -> tuple[Policy, ...]:
        return self._policies

    def validate(self, descriptor: RemoteObjectDescriptor) -> ValidationResult:
        """Run the chain left to right; report the first policy that rejects."""
        for policy in self._policies:
            if not policy.accepts(descriptor):
                logger.debug(f"Rejected key={descriptor.key} by {policy.name}")
                return ValidationResult(False, policy.name)
        return ValidationResult(True)

    def accepts(self, descriptor: RemoteObjectDescriptor) -> bool:
        return self.validate(descriptor).accepted

    def __len__(self) -> int:
        return len(self._policies)

    def __repr__(self) -> str:
        return f"ProcessingPolicyValidator([{', '.join(p.name for p in self._policies)}])"


def build_policy_chain(
    *,
    sincedb: SinceDB | None = None,
    prefix: str | None = None,
    ignore_newer_than: float | None = None,
    ignore_older_than: float | None = None,
    exclude_pattern: str | None = None,
    backup_prefix: str | None = None,
    skip_archived: bool = True,
    clock: Clock = utcnow,
) -> ProcessingPolicyValidator:
    """
    Assemble the canonical chain from the enabled options.

    ``backup_prefix`` should only be given when backups land in the bucket being read.
    """
    policies: list[Policy] = [SkipDirectoryMarker(prefix), SkipEmptyFile()]
    if ignore_newer_than is not None:
        policies.append(SkipNewerThan(ignore_newer_than, clock))
    if ignore_older_than is not None:
        policies.append(SkipOlderThan(ignore_older_than, clock))
    if exclude_pattern:
        policies.append(ExcludePattern(exclude_pattern))
    if backup_prefix:
        policies.append(SkipBackupFiles(backup_prefix))
    if skip_archived:
        policies.append(SkipArchived(clock))
    if sincedb is not None:
        policies.append(AlreadyProcessed(sincedb))
    return ProcessingPolicyValidator(policies)

