"""
Completion actions run after an object has been fully read.

``PostProcessorChain`` runs its members in a fixed order. Each member runs
best-effort: a failure is logged and the remaining members still run. Nothing
is rolled back.
"""

from __future__ import annotations

import filecmp
import shutil
from collections.abc import Iterable
from pathlib import Path

from bucketfeed.connections.s3 import S3Connection
from bucketfeed.exceptions import ObjectGoneError
from bucketfeed.ingest.remote_file import RemoteFile
from bucketfeed.ingest.sincedb import SinceDB
from bucketfeed.ingest.types import PostProcessor
from bucketfeed.utils.logging import get_logger

logger = get_logger("bucketfeed.ingest.post_processors")


class UpdateSinceDB:
    """Records the object version as processed."""

    name = "update_sincedb"

    def __init__(self, sincedb: SinceDB):
        self.sincedb = sincedb

    def process(self, remote_file: RemoteFile) -> None:
        self.sincedb.completed(remote_file.descriptor)


class BackupToBucket:
    """Copies the object to ``<backup_bucket>/<prefix><key>``; with ``move`` the source is then deleted."""

    name = "backup_to_bucket"

    def __init__(self, connection: S3Connection, backup_bucket: str, prefix: str = "", *, move: bool = False):
        self.connection = connection
        self.backup_bucket = backup_bucket
        self.prefix = prefix or ""
        self.move = move

    def backup_key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    def process(self, remote_file: RemoteFile) -> None:
        dest_key = self.backup_key(remote_file.key)
        self.connection.copy_object(remote_file.key, self.backup_bucket, dest_key)
        logger.debug(f"Backed up {remote_file.key} to s3://{self.backup_bucket}/{dest_key}")
        if self.move:
            self.connection.delete_object(remote_file.key)


class BackupToDirectory:
    """
    Copies the staged bytes into a local directory, keeping the key's relative path.

    If a different file already sits at the target, the copy is suffixed with the etag.
    """

    name = "backup_to_dir"

    def __init__(self, directory: str | Path):
        self.directory = Path(directory).expanduser()

    def target_path(self, remote_file: RemoteFile) -> Path:
        relative = remote_file.key.lstrip("/").replace("..", "__")
        target = self.directory / relative
        if target.exists() and not (
            remote_file.local_path is not None and filecmp.cmp(target, remote_file.local_path, shallow=False)
        ):
            target = target.with_name(f"{target.name}.{remote_file.etag}")
        return target

    def process(self, remote_file: RemoteFile) -> None:
        if remote_file.local_path is None:
            raise RuntimeError(f"No staged copy of {remote_file.key} to back up")
        target = self.target_path(remote_file)
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(remote_file.local_path, target)
        logger.debug(f"Backed up {remote_file.key} to {target}")


class DeleteFromSource:
    name = "delete_from_source"

    def __init__(self, connection: S3Connection):
        self.connection = connection

    def process(self, remote_file: RemoteFile) -> None:
        self.connection.delete_object(remote_file.key)
        logger.debug(f"Deleted s3://{remote_file.bucket_name}/{remote_file.key}")


class PostProcessorChain:
    """Immutable ordered list of completion actions."""

    def __init__(self, post_processors: Iterable[PostProcessor]):
        self._post_processors: tuple[PostProcessor, ...] = tuple(post_processors)

    @property
    def post_processors(self) -> tuple[PostProcessor, ...]:
        return self._post_processors

    def run(self, remote_file: RemoteFile) -> list[str]:
        """
        Run every member in order.

        Returns:
            Names of the members that failed
        """
        failed: list[str] = []
        for post_processor in self._post_processors:
            try:
                post_processor.process(remote_file)
            except ObjectGoneError:
                logger.debug(f"{post_processor.name}: {remote_file.key} disappeared before post-processing")
                failed.append(post_processor.name)
            except Exception as e:
                logger.error(f"{post_processor.name} failed for {remote_file.key}: {e}", exc_info=True)
                failed.append(post_processor.name)
        return failed

    def __len__(self) -> int:
        return len(self._post_processors)


def build_post_processors(
    *,
    sincedb: SinceDB,
    connection: S3Connection,
    backup_to_bucket: str | None = None,
    backup_add_prefix: str | None = None,
    backup_to_dir: str | Path | None = None,
    delete_after_processing: bool = False,
) -> PostProcessorChain:
    """
    Assemble the chain from the enabled options.

    The ledger is updated first, so a crash during backup/delete never leads to
    the same lines being emitted twice.
    """
    chain: list[PostProcessor] = [UpdateSinceDB(sincedb)]
    if backup_to_bucket:
        chain.append(BackupToBucket(connection, backup_to_bucket, backup_add_prefix or "", move=delete_after_processing))
    if backup_to_dir:
        chain.append(BackupToDirectory(backup_to_dir))
    if delete_after_processing and not backup_to_bucket:
        chain.append(DeleteFromSource(connection))
    return PostProcessorChain(chain)
