"""
Tests for the Poller: listing, filtering, ordering and the watermark.
"""

import logging
import threading
from unittest.mock import MagicMock

import pytest

from bucketfeed.exceptions import ListingError
from bucketfeed.ingest.policies import build_policy_chain
from bucketfeed.ingest.poller import Poller
from bucketfeed.ingest.sincedb import SinceDB


def fake_bucket(descriptors):
    """Connection stand-in listing descriptors in key order, honouring StartAfter and limit."""
    ordered = sorted(descriptors, key=lambda d: d.key)
    connection = MagicMock()
    connection.bucket = "source-bucket"

    def list_descriptors(prefix="", *, start_after=None, limit=None, max_keys=1000):
        items = [d for d in ordered if d.key.startswith(prefix) and (start_after is None or d.key > start_after)]
        return items[:limit] if limit else items

    connection.list_descriptors.side_effect = list_descriptors
    return connection


@pytest.fixture
def sincedb(tmp_path):
    return SinceDB(tmp_path / "sincedb", bookkeeping=False)


@pytest.fixture
def make_poller(sincedb, clock):
    def _make(connection, enqueue=None, *, exclude_pattern=None, **kwargs):
        validator = build_policy_chain(
            sincedb=sincedb,
            prefix=kwargs.get("prefix"),
            ignore_newer_than=3,
            exclude_pattern=exclude_pattern,
            clock=clock,
        )
        return Poller(connection, enqueue or (lambda d: True), sincedb, validator=validator, **kwargs)

    return _make


class TestListNewFiles:
    """Tests for filtering and ordering of listing results."""

    def test_five_descriptor_scenario(self, make_poller, make_descriptor):
        """Test that only the single valid descriptor survives the filter."""
        connection = fake_bucket(
            [
                make_descriptor("logs/a.tmp"),
                make_descriptor("logs/b.tmp"),
                make_descriptor("logs/empty.log", size=0),
                make_descriptor("logs/fresh.log", age=1),
                make_descriptor("logs/valid.log"),
            ]
        )

        result = make_poller(connection, exclude_pattern=r"\.tmp$").list_new_files()

        assert [d.key for d in result] == ["logs/valid.log"]

    def test_sorted_by_last_modified_and_filtered(self, make_poller, make_descriptor, sincedb):
        """Test ascending last_modified order, with markers and processed versions left out."""
        done = make_descriptor("logs/done.log", age=50)
        sincedb.completed(done)
        connection = fake_bucket(
            [
                make_descriptor("logs/a.log", age=10),
                make_descriptor("logs/b.log", age=300),
                make_descriptor("logs/", age=400),
                make_descriptor("logs/c.log", age=100),
                done,
            ]
        )

        result = make_poller(connection, prefix="logs/").list_new_files()

        assert [d.key for d in result] == ["logs/b.log", "logs/c.log", "logs/a.log"]

    def test_listing_error_yields_nothing(self, make_poller, caplog):
        connection = MagicMock()
        connection.list_descriptors.side_effect = ListingError("denied", bucket="source-bucket", prefix="")

        with caplog.at_level(logging.ERROR, logger="bucketfeed"):
            assert make_poller(connection).list_new_files() == []

        assert "Unable to list objects" in caplog.text

    def test_full_listing_has_no_watermark(self, make_poller, make_descriptor):
        connection = fake_bucket([make_descriptor("logs/a.log")])
        poller = make_poller(connection)

        poller.list_new_files()

        assert poller.last_key_fetched is None
        assert connection.list_descriptors.call_args.kwargs.get("start_after") is None


class TestWatermark:
    """Tests for start_after listing."""

    def test_cold_start_seeds_from_sincedb(self, make_poller, make_descriptor, sincedb):
        sincedb.completed(make_descriptor("logs/b.log", age=500))
        sincedb.completed(make_descriptor("logs/c.log", age=400))
        connection = fake_bucket([make_descriptor(f"logs/{c}.log", age=600 - i) for i, c in enumerate("abcde")])

        result = make_poller(connection, use_start_after=True, batch_size=10).list_new_files()

        assert connection.list_descriptors.call_args.kwargs["start_after"] == "logs/b.log"
        assert [d.key for d in result] == ["logs/d.log", "logs/e.log"]

    def test_watermark_advances_between_calls(self, make_poller, make_descriptor):
        connection = fake_bucket([make_descriptor(f"logs/{c}.log", age=600 - i) for i, c in enumerate("abcde")])
        poller = make_poller(connection, use_start_after=True, batch_size=2)

        first = poller.list_new_files()
        second = poller.list_new_files()
        third = poller.list_new_files()

        assert [d.key for d in first] == ["logs/a.log", "logs/b.log"]
        assert [d.key for d in second] == ["logs/c.log", "logs/d.log"]
        assert [d.key for d in third] == ["logs/e.log"]
        assert poller.last_key_fetched == "logs/e.log"

    def test_deferred_object_holds_the_watermark(self, make_poller, make_descriptor):
        """Test that an object inside the cutoff window is listed again next cycle."""
        connection = fake_bucket(
            [
                make_descriptor("logs/a.log", age=100),
                make_descriptor("logs/b.log", age=1),
                make_descriptor("logs/c.log", age=50),
            ]
        )
        poller = make_poller(connection, use_start_after=True, batch_size=10)

        result = poller.list_new_files()

        assert [d.key for d in result] == ["logs/a.log"]
        assert poller.last_key_fetched == "logs/a.log"

        poller.list_new_files()
        assert connection.list_descriptors.call_args.kwargs["start_after"] == "logs/a.log"

    def test_inconsistent_listing_is_logged(self, make_poller, make_descriptor, caplog):
        """Test a warning when key order and modification order disagree."""
        connection = fake_bucket(
            [
                make_descriptor("logs/a.log", age=100),
                make_descriptor("logs/b.log", age=500),
            ]
        )

        with caplog.at_level(logging.WARNING, logger="bucketfeed"):
            make_poller(connection, use_start_after=True, batch_size=10).list_new_files()

        assert "not consistent" in caplog.text

    def test_consistent_listing_is_quiet(self, make_poller, make_descriptor, caplog):
        connection = fake_bucket([make_descriptor("logs/a.log", age=500), make_descriptor("logs/b.log", age=100)])

        with caplog.at_level(logging.WARNING, logger="bucketfeed"):
            make_poller(connection, use_start_after=True, batch_size=10).list_new_files()

        assert "not consistent" not in caplog.text


class TestRun:
    """Tests for the polling loop."""

    def test_single_pass_drains_full_batches(self, make_poller, make_descriptor):
        """Test that a full batch is re-listed at once and a single pass then returns."""
        connection = fake_bucket([make_descriptor(f"logs/{c}.log", age=600 - i) for i, c in enumerate("abcde")])
        offered = []
        poller = make_poller(
            connection,
            lambda d: offered.append(d.key) or True,
            use_start_after=True,
            batch_size=2,
            watch_for_new_files=False,
            interval=3600,
        )

        poller.run()

        assert offered == ["logs/a.log", "logs/b.log", "logs/c.log", "logs/d.log", "logs/e.log"]
        assert connection.list_descriptors.call_count == 3

    def test_single_pass_full_listing(self, make_poller, make_descriptor):
        connection = fake_bucket([make_descriptor("logs/a.log"), make_descriptor("logs/b.log", age=7200)])
        offered = []

        make_poller(connection, lambda d: offered.append(d.key) or True, watch_for_new_files=False).run()

        assert offered == ["logs/b.log", "logs/a.log"]
        assert connection.list_descriptors.call_count == 1

    def test_stop_ends_the_loop(self, make_poller, make_descriptor):
        """Test that stop interrupts the wait between ticks."""
        connection = fake_bucket([make_descriptor("logs/a.log")])
        poller = make_poller(connection, interval=3600)

        thread = threading.Thread(target=poller.run)
        thread.start()
        poller.stop()
        thread.join(5)

        assert not thread.is_alive()
        assert poller.stopped

    def test_refused_offers_stop_the_batch_when_stopping(self, make_poller, make_descriptor):
        connection = fake_bucket([make_descriptor(f"logs/{c}.log", age=600 - i) for i, c in enumerate("abc")])
        offered = []

        def enqueue(descriptor):
            offered.append(descriptor.key)
            poller.stop()
            return False

        poller = make_poller(connection, enqueue, interval=3600)
        poller.run()

        assert offered == ["logs/a.log"]
