"""
Ingestion pipeline: listing, admission, fetching, emission and bookkeeping.

Submodules are imported directly (``from bucketfeed.ingest.poller import Poller``);
this package does not re-export them.
"""
