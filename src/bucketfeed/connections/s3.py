"""
S3 connection for the ingestion pipeline.

Provides a lazily created boto3 client and the handful of object store calls the
pipeline needs: list (optionally after a watermark key), streaming get, copy,
delete and bucket bootstrap.
"""

from __future__ import annotations

from collections.abc import Iterator
from typing import Any, BinaryIO, Optional

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    IncompleteReadError,
    ReadTimeoutError,
    ResponseStreamingError,
)

from bucketfeed.connections.storage import BaseStorageConnection
from bucketfeed.exceptions import ConfigurationError, ListingError, ObjectGoneError, StorageError
from bucketfeed.ingest.types import RemoteObjectDescriptor
from bucketfeed.utils.logging import get_logger

logger = get_logger("bucketfeed.connections.s3")

# Network failures worth another attempt. BrokenPipeError is left to the workers.
TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (
    EndpointConnectionError,
    ConnectionClosedError,
    ConnectTimeoutError,
    ReadTimeoutError,
    IncompleteReadError,
    ResponseStreamingError,
    ConnectionResetError,
    ConnectionAbortedError,
    TimeoutError,
)

NOT_FOUND_CODES = ("404", "NoSuchKey", "NotFound", "NoSuchBucket")

CHUNK_SIZE = 1024 * 1024


class S3Connection(BaseStorageConnection):
    """
    S3 connection wrapper for one source bucket.

    Supports AWS credentials from config, environment, or IAM role.

    Config example:
        type: s3
        config:
          bucket: my-bucket
          region: us-east-1
          access_key_id: AKIA...  # Optional, uses env/IAM if not set
          secret_access_key: ...   # Optional
          session_token: ...       # Optional (for temp creds)
          endpoint_url: ...        # Optional (for S3-compatible services)
          additional_settings:     # Optional, passed to botocore.config.Config
            retries: {max_attempts: 2}
    """

    def __init__(self, name: str, config: dict[str, Any]):
        super().__init__(name, config)
        self._client = None
        bucket_name = self._cfg.get("bucket", "")
        if not bucket_name:
            raise ConfigurationError(
                f"S3 connection '{name}' requires 'bucket' in config. "
                f"Example: input.bucket = 'my-bucket'"
            )
        self._boto_config = self._build_boto_config()

    @property
    def bucket(self) -> str:
        """Get S3 bucket name from config."""
        return self._cfg["bucket"]

    @property
    def region(self) -> Optional[str]:
        """Get AWS region from config."""
        return self._cfg.get("region")

    @property
    def endpoint_url(self) -> Optional[str]:
        """Get custom endpoint URL (for S3-compatible services like MinIO)."""
        return self._cfg.get("endpoint_url")

    def _build_boto_config(self) -> BotoConfig | None:
        """Validate low-level transport settings up front so bad options fail at startup."""
        settings = self._cfg.get("additional_settings") or {}
        if not settings:
            return None
        if not isinstance(settings, dict):
            raise ConfigurationError(f"S3 connection '{self.name}': additional_settings must be a mapping")
        try:
            return BotoConfig(**settings)
        except (TypeError, ValueError, BotoCoreError) as e:
            raise ConfigurationError(f"S3 connection '{self.name}': invalid additional_settings: {e}") from e

    def _get_client_kwargs(self) -> dict[str, Any]:
        """Build kwargs for boto3 client initialization."""
        kwargs: dict[str, Any] = {}

        if self.region:
            kwargs["region_name"] = self.region

        if self.endpoint_url:
            kwargs["endpoint_url"] = self.endpoint_url

        # Explicit credentials from config (override env/IAM)
        access_key = self._cfg.get("access_key_id")
        secret_key = self._cfg.get("secret_access_key")
        session_token = self._cfg.get("session_token")

        if access_key and secret_key:
            kwargs["aws_access_key_id"] = access_key
            kwargs["aws_secret_access_key"] = secret_key
            if session_token:
                kwargs["aws_session_token"] = session_token

        if self._boto_config is not None:
            kwargs["config"] = self._boto_config

        return kwargs

    @property
    def client(self):
        """
        Get boto3 S3 client (lazy initialization).

        boto3 clients are thread-safe, so workers share this one.

        Returns:
            boto3.client('s3') instance
        """
        if self._client is None:
            self._client = boto3.client("s3", **self._get_client_kwargs())
        return self._client

    @staticmethod
    def is_not_found(error: BaseException) -> bool:
        """Whether a botocore error means the object (or bucket) does not exist."""
        if isinstance(error, ClientError):
            error_code = error.response.get("Error", {}).get("Code")
            http_status = error.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
            return error_code in NOT_FOUND_CODES or http_status == 404
        return False

    # --- listing --------------------------------------------------------------

    def list_objects(
        self,
        prefix: str = "",
        *,
        start_after: str | None = None,
        limit: int | None = None,
        max_keys: int = 1000,
    ) -> Iterator[dict[str, Any]]:
        """
        List objects in key order.

        Args:
            prefix: Key prefix to filter objects
            start_after: Only return keys strictly after this one
            limit: Stop after this many objects (None = whole listing)
            max_keys: Page size for each request

        Yields:
            Raw ``Contents`` entries (Key, Size, LastModified, ETag, StorageClass, RestoreStatus)

        Raises:
            ListingError: If the store rejects or fails a list request
        """
        params: dict[str, Any] = {
            "Bucket": self.bucket,
            "Prefix": prefix or "",
            "OptionalObjectAttributes": ["RestoreStatus"],
            "PaginationConfig": {"PageSize": min(max_keys, limit) if limit else max_keys},
        }
        if start_after:
            params["StartAfter"] = start_after

        count = 0
        try:
            # Client construction happens lazily here and fails on e.g. a malformed endpoint_url
            paginator = self.client.get_paginator("list_objects_v2")
            for page in paginator.paginate(**params):
                for obj in page.get("Contents", []):
                    yield obj
                    count += 1
                    if limit is not None and count >= limit:
                        return
        except (ClientError, BotoCoreError, ValueError) as e:
            raise ListingError(
                f"Unable to list objects in bucket '{self.bucket}': {e}", bucket=self.bucket, prefix=prefix
            ) from e

    def list_descriptors(
        self,
        prefix: str = "",
        *,
        start_after: str | None = None,
        limit: int | None = None,
        max_keys: int = 1000,
    ) -> list[RemoteObjectDescriptor]:
        """List objects as descriptors, in key order."""
        return [
            RemoteObjectDescriptor.from_listing(obj, self.bucket)
            for obj in self.list_objects(prefix, start_after=start_after, limit=limit, max_keys=max_keys)
        ]

    # --- objects --------------------------------------------------------------

    def get_object_to(self, key: str, sink: BinaryIO, *, chunk_size: int = CHUNK_SIZE) -> dict[str, Any]:
        """
        Stream one object into a writable binary sink.

        Returns:
            Response headers of interest: ETag, ContentEncoding, ContentType, LastModified

        Raises:
            ObjectGoneError: If the object no longer exists
        """
        try:
            response = self.client.get_object(Bucket=self.bucket, Key=key)
        except ClientError as e:
            if self.is_not_found(e):
                raise ObjectGoneError(key, bucket=self.bucket) from e
            raise

        body = response["Body"]
        try:
            for chunk in body.iter_chunks(chunk_size):
                sink.write(chunk)
        finally:
            body.close()

        return {
            "ETag": str(response.get("ETag", "")).strip('"'),
            "ContentEncoding": response.get("ContentEncoding"),
            "ContentType": response.get("ContentType"),
            "LastModified": response.get("LastModified"),
        }

    def copy_object(self, source_key: str, dest_bucket: str, dest_key: str) -> None:
        """
        Server-side copy of an object from the source bucket.

        Raises:
            ObjectGoneError: If the source object no longer exists
        """
        try:
            self.client.copy_object(
                Bucket=dest_bucket,
                CopySource={"Bucket": self.bucket, "Key": source_key},
                Key=dest_key,
            )
        except ClientError as e:
            if self.is_not_found(e):
                raise ObjectGoneError(source_key, bucket=self.bucket) from e
            raise

    def delete_object(self, key: str) -> None:
        """Delete an object from the source bucket."""
        try:
            self.client.delete_object(Bucket=self.bucket, Key=key)
        except ClientError as e:
            if self.is_not_found(e):
                raise ObjectGoneError(key, bucket=self.bucket) from e
            raise

    # --- buckets --------------------------------------------------------------

    def head_bucket(self, bucket: str) -> bool:
        """Check whether a bucket exists and is reachable."""
        try:
            self.client.head_bucket(Bucket=bucket)
            return True
        except ClientError as e:
            if self.is_not_found(e):
                return False
            raise

    def ensure_bucket(self, bucket: str) -> None:
        """
        Create a bucket if it does not exist yet.

        Raises:
            StorageError: If the bucket cannot be checked or created (e.g. access denied)
        """
        try:
            if self.head_bucket(bucket):
                return
            logger.info(f"Creating bucket '{bucket}'")
            kwargs: dict[str, Any] = {"Bucket": bucket}
            if self.region and self.region != "us-east-1":
                kwargs["CreateBucketConfiguration"] = {"LocationConstraint": self.region}
            self.client.create_bucket(**kwargs)
        except (ClientError, BotoCoreError, ValueError) as e:
            raise StorageError(f"Unable to use bucket '{bucket}': {e}", details={"bucket": bucket}) from e

    def close(self) -> None:
        """Drop the client; boto3 clients need no explicit closing."""
        self._client = None

    def __enter__(self) -> "S3Connection":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
