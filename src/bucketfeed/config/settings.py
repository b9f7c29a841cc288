"""
Validated settings for the S3 input.

``InputSettings.from_dict`` turns the ``input:`` section of the configuration into
an immutable dataclass, raising ConfigurationError for anything the pipeline
could not run with. Values substituted from ``${VAR}`` placeholders arrive as
strings, so numeric and boolean options also accept their string forms.
"""

from __future__ import annotations

import hashlib
import re
import tempfile
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError

from bucketfeed.exceptions import ConfigurationError
from bucketfeed.ingest.remote_file import DEFAULT_GZIP_PATTERN
from bucketfeed.ingest.sincedb import FLUSH_FAILURE_POLICIES
from bucketfeed.ingest.types import RemoteObjectDescriptor

DEFAULT_DATA_PATH = "~/.bucketfeed"

_TRUE = ("true", "yes", "on", "1")
_FALSE = ("false", "no", "off", "0")


@dataclass(frozen=True)
class StartValue:
    """Single ledger entry written by a reseed."""

    key: str
    last_modified: datetime
    etag: str = ""


@dataclass(frozen=True)
class InputSettings:
    bucket: str

    # Connection
    region: str | None = None
    endpoint_url: str | None = None
    access_key_id: str | None = None
    secret_access_key: str | None = None
    session_token: str | None = None
    additional_settings: dict[str, Any] = field(default_factory=dict)

    # Listing
    prefix: str | None = None
    interval: float = 60
    watch_for_new_files: bool = True
    batch_size: int = 1000
    use_start_after: bool = False

    # Admission
    exclude_pattern: str | None = None
    gzip_pattern: str = DEFAULT_GZIP_PATTERN
    ignore_older_than: float | None = None
    ignore_newer_than: float = 3

    # Workers
    processors_count: int = 5
    fetch_retries: int = 5
    broken_pipe_retries: int = 10
    handoff_timeout: float = 0.15
    temporary_directory: str | None = None
    include_object_properties: bool = False

    # Ledger
    sincedb_path: str | None = None
    sincedb_expire_seconds: float | None = None
    sincedb_flush_interval: float = 1.0
    sincedb_flush_failure: str = "fatal"
    purge_sincedb: bool = False
    sincedb_start_value: StartValue | None = None
    data_path: str | None = None

    # Completion actions
    backup_to_bucket: str | None = None
    backup_add_prefix: str | None = None
    backup_to_dir: str | None = None
    delete_after_processing: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> InputSettings:
        """
        Validate and build settings from the ``input:`` section.

        Raises:
            ConfigurationError: Unknown keys, wrong types, invalid values or
                conflicting options
        """
        if not isinstance(data, dict):
            raise ConfigurationError(f"'input' must be a mapping, got {type(data).__name__}")

        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigurationError(
                f"Unknown input option(s): {', '.join(unknown)}", details={"unknown": unknown}
            )

        values: dict[str, Any] = {}
        for name, value in data.items():
            if value is None:
                continue
            values[name] = _coerce(name, value)

        if not values.get("bucket"):
            raise ConfigurationError("input.bucket is required. Example: input.bucket = 'my-bucket'")

        settings = cls(**values)
        settings._check()
        return settings

    def _check(self) -> None:
        for name in ("interval", "sincedb_flush_interval", "handoff_timeout"):
            if getattr(self, name) <= 0:
                raise ConfigurationError(f"input.{name} must be > 0, got {getattr(self, name)}")
        for name in ("batch_size", "processors_count"):
            if getattr(self, name) < 1:
                raise ConfigurationError(f"input.{name} must be >= 1, got {getattr(self, name)}")
        for name in ("fetch_retries", "broken_pipe_retries", "ignore_newer_than"):
            if getattr(self, name) < 0:
                raise ConfigurationError(f"input.{name} must be >= 0, got {getattr(self, name)}")
        for name in ("ignore_older_than", "sincedb_expire_seconds"):
            value = getattr(self, name)
            if value is not None and value <= 0:
                raise ConfigurationError(f"input.{name} must be > 0 when set, got {value}")

        for name in ("exclude_pattern", "gzip_pattern"):
            pattern = getattr(self, name)
            if pattern is None:
                continue
            try:
                re.compile(pattern)
            except re.error as e:
                raise ConfigurationError(f"input.{name} is not a valid regular expression: {e}") from e

        if self.sincedb_flush_failure not in FLUSH_FAILURE_POLICIES:
            raise ConfigurationError(
                f"input.sincedb_flush_failure must be one of {', '.join(FLUSH_FAILURE_POLICIES)}, "
                f"got '{self.sincedb_flush_failure}'"
            )

        if self.backup_add_prefix and not self.backup_to_bucket:
            raise ConfigurationError("input.backup_add_prefix requires input.backup_to_bucket")
        if self.backup_to_bucket == self.bucket and not self.backup_add_prefix:
            raise ConfigurationError(
                "input.backup_to_bucket is the bucket being read: set input.backup_add_prefix "
                "so backups are not read back as new objects"
            )

        if self.purge_sincedb and self.sincedb_start_value is not None:
            raise ConfigurationError("input.purge_sincedb and input.sincedb_start_value cannot be used together")

        if self.additional_settings:
            try:
                BotoConfig(**self.additional_settings)
            except (TypeError, ValueError, BotoCoreError) as e:
                raise ConfigurationError(f"input.additional_settings rejected by botocore: {e}") from e

    # --- derived values -------------------------------------------------------

    def connection_config(self) -> dict[str, Any]:
        """Config mapping for ``S3Connection``."""
        cfg: dict[str, Any] = {"bucket": self.bucket}
        for name in ("region", "endpoint_url", "access_key_id", "secret_access_key", "session_token"):
            value = getattr(self, name)
            if value:
                cfg[name] = value
        if self.additional_settings:
            cfg["additional_settings"] = dict(self.additional_settings)
        return {"type": "s3", "config": cfg}

    @property
    def backup_prefix_in_source(self) -> str | None:
        """Prefix of backups written into the bucket being read, if any."""
        if self.backup_to_bucket == self.bucket:
            return self.backup_add_prefix
        return None

    def resolved_sincedb_path(self) -> Path:
        """``sincedb_path``, or a per-bucket/prefix file under ``data_path``."""
        if self.sincedb_path:
            return Path(self.sincedb_path).expanduser()
        digest = hashlib.md5(f"{self.bucket}+{self.prefix or ''}".encode()).hexdigest()
        data_path = Path(self.data_path or DEFAULT_DATA_PATH).expanduser()
        return data_path / "plugins" / "inputs" / "s3" / f"sincedb_{digest}"

    def resolved_temporary_directory(self) -> Path:
        if self.temporary_directory:
            return Path(self.temporary_directory).expanduser()
        return Path(tempfile.gettempdir()) / "bucketfeed"

    def start_value_descriptor(self) -> RemoteObjectDescriptor | None:
        if self.sincedb_start_value is None:
            return None
        return RemoteObjectDescriptor(
            key=self.sincedb_start_value.key,
            etag=self.sincedb_start_value.etag,
            bucket_name=self.bucket,
            size=0,
            last_modified=self.sincedb_start_value.last_modified,
        )


# --- coercion ------------------------------------------------------------------

_STRINGS = {
    "bucket",
    "region",
    "endpoint_url",
    "access_key_id",
    "secret_access_key",
    "session_token",
    "prefix",
    "exclude_pattern",
    "gzip_pattern",
    "temporary_directory",
    "sincedb_path",
    "sincedb_flush_failure",
    "data_path",
    "backup_to_bucket",
    "backup_add_prefix",
    "backup_to_dir",
}
_INTS = {"batch_size", "processors_count", "fetch_retries", "broken_pipe_retries"}
_FLOATS = {
    "interval",
    "ignore_older_than",
    "ignore_newer_than",
    "handoff_timeout",
    "sincedb_expire_seconds",
    "sincedb_flush_interval",
}
_BOOLS = {
    "watch_for_new_files",
    "use_start_after",
    "include_object_properties",
    "purge_sincedb",
    "delete_after_processing",
}


def _coerce(name: str, value: Any) -> Any:
    if name in _STRINGS:
        if not isinstance(value, str):
            _type_error(name, "a string", value)
        return value
    if name in _INTS:
        if isinstance(value, bool):
            _type_error(name, "an integer", value)
        if isinstance(value, int):
            return value
        if isinstance(value, str) and value.strip().lstrip("-").isdigit():
            return int(value)
        _type_error(name, "an integer", value)
    if name in _FLOATS:
        if isinstance(value, bool):
            _type_error(name, "a number of seconds", value)
        if isinstance(value, (int, float)):
            return float(value)
        if isinstance(value, str):
            try:
                return float(value)
            except ValueError:
                pass
        _type_error(name, "a number of seconds", value)
    if name in _BOOLS:
        if isinstance(value, bool):
            return value
        if isinstance(value, str) and value.lower() in _TRUE + _FALSE:
            return value.lower() in _TRUE
        _type_error(name, "a boolean", value)
    if name == "additional_settings":
        if not isinstance(value, dict):
            _type_error(name, "a mapping", value)
        return dict(value)
    if name == "sincedb_start_value":
        return _start_value(value)
    raise ConfigurationError(f"Unknown input option: {name}")


def _start_value(value: Any) -> StartValue:
    if not isinstance(value, dict):
        _type_error("sincedb_start_value", "a mapping with 'key' and 'last_modified'", value)
    unknown = sorted(set(value) - {"key", "last_modified", "etag"})
    if unknown:
        raise ConfigurationError(f"Unknown sincedb_start_value option(s): {', '.join(unknown)}")
    key = value.get("key")
    if not isinstance(key, str) or not key:
        raise ConfigurationError("input.sincedb_start_value.key must be a non-empty string")
    etag = value.get("etag") or ""
    if not isinstance(etag, str):
        _type_error("sincedb_start_value.etag", "a string", etag)
    return StartValue(key=key, last_modified=parse_timestamp(value.get("last_modified")), etag=etag.strip('"'))


def parse_timestamp(value: Any) -> datetime:
    """
    ISO 8601 string (or a datetime, as YAML decodes unquoted timestamps) to aware UTC.

    Naive values are taken as UTC.
    """
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError as e:
            raise ConfigurationError(f"Invalid ISO 8601 timestamp '{value}': {e}") from e
    else:
        raise ConfigurationError(f"Expected an ISO 8601 timestamp, got {value!r}")
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _type_error(name: str, expected: str, value: Any) -> None:
    raise ConfigurationError(
        f"input.{name} must be {expected}, got {type(value).__name__} ({value!r})", details={"option": name}
    )
