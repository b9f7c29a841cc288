"""
Hands raw lines to the downstream consumer with their object metadata.
"""

from __future__ import annotations

from typing import Any

from bucketfeed.ingest.types import EventSink

CLOUDFRONT_VERSION = b"#Version: "
CLOUDFRONT_FIELDS = b"#Fields: "


class EventProcessor:
    """
    Forwards each line and a copy of its metadata to the sink.

    CloudFront access logs open with ``#Version:`` and ``#Fields:`` header lines;
    those are folded into the object's metadata and not forwarded.
    """

    def __init__(self, sink: EventSink):
        self._sink = sink

    def process(self, line: bytes, metadata: dict[str, Any]) -> None:
        if line.startswith(CLOUDFRONT_VERSION):
            metadata["cloudfront_version"] = _header_value(line, CLOUDFRONT_VERSION)
            return
        if line.startswith(CLOUDFRONT_FIELDS):
            metadata["cloudfront_fields"] = _header_value(line, CLOUDFRONT_FIELDS)
            return

        event_metadata = dict(metadata)
        event_metadata["s3"] = dict(metadata.get("s3", {}))
        self._sink(line, event_metadata)


def _header_value(line: bytes, header: bytes) -> str:
    return line[len(header) :].strip().decode("utf-8", errors="replace")
