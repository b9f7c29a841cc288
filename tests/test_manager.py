"""
Tests for the rendezvous handoff and the ProcessorManager worker pool.
"""

import threading
import time
from unittest.mock import MagicMock

import pytest

from bucketfeed.exceptions import TransientFetchError
from bucketfeed.ingest.manager import ProcessorManager, RendezvousChannel
from bucketfeed.retry import RetryManager


def wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


class GatedProcessor:
    """Processor stand-in whose handle blocks until the gate opens."""

    def __init__(self):
        self.gate = threading.Event()
        self.lock = threading.Lock()
        self.in_flight = 0
        self.max_in_flight = 0
        self.started = []
        self.finished = []

    def handle(self, descriptor):
        with self.lock:
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
            self.started.append(descriptor.key)
        self.gate.wait(10)
        with self.lock:
            self.in_flight -= 1
            self.finished.append(descriptor.key)


class TestRendezvousChannel:
    """Tests for the zero-capacity channel."""

    def test_offer_without_taker_times_out(self):
        channel = RendezvousChannel()
        start = time.monotonic()
        assert channel.offer("item", timeout=0.05) is False
        assert time.monotonic() - start >= 0.04

    def test_take_without_offer_times_out(self):
        assert RendezvousChannel().take(timeout=0.05) is None

    def test_handoff_to_waiting_taker(self):
        channel = RendezvousChannel()
        received = []
        taker = threading.Thread(target=lambda: received.append(channel.take(timeout=5)))
        taker.start()

        assert wait_for(lambda: channel.offer("item", timeout=0.05))
        taker.join(5)

        assert received == ["item"]

    def test_cancelled_offer_returns_immediately(self):
        cancelled = threading.Event()
        cancelled.set()
        assert RendezvousChannel().offer("item", timeout=5, cancelled=cancelled) is False


class TestProcessorManager:
    """Tests for the bounded worker pool."""

    @pytest.fixture
    def gated(self):
        return GatedProcessor()

    @pytest.fixture
    def manager_factory(self):
        managers = []

        def _make(processor, **kwargs):
            kwargs.setdefault("handoff_timeout", 0.02)
            kwargs.setdefault("retry_manager", RetryManager(sleep=lambda delay: None))
            manager = ProcessorManager(processor, **kwargs)
            managers.append(manager)
            return manager

        yield _make
        for manager in managers:
            manager.stop()

    def test_backpressure_limits_in_flight_items(self, gated, manager_factory, make_descriptor):
        """Test that offer P+1 blocks until a worker frees up, so at most P items run at once."""
        manager = manager_factory(gated, processors_count=2)
        manager.start()

        accepted = []

        def offer_all():
            for i in range(3):
                accepted.append(manager.enqueue(make_descriptor(f"logs/{i}.log")))

        poller = threading.Thread(target=offer_all)
        poller.start()

        assert wait_for(lambda: len(gated.started) == 2)
        time.sleep(0.3)
        # Third offer is still blocked: both workers are busy
        assert accepted == [True, True]
        assert poller.is_alive()

        gated.gate.set()
        poller.join(5)

        assert accepted == [True, True, True]
        assert wait_for(lambda: len(gated.finished) == 3)
        assert gated.max_in_flight == 2

    def test_stop_waits_for_in_flight_item(self, gated, manager_factory, make_descriptor):
        """Test that stop returns only after the current item completes."""
        manager = manager_factory(gated, processors_count=1)
        manager.start()
        assert manager.enqueue(make_descriptor("logs/slow.log")) is True
        assert wait_for(lambda: gated.started == ["logs/slow.log"])

        stopper = threading.Thread(target=manager.stop)
        stopper.start()
        time.sleep(0.2)
        assert stopper.is_alive()
        assert gated.finished == []

        gated.gate.set()
        stopper.join(5)

        assert not stopper.is_alive()
        assert gated.finished == ["logs/slow.log"]

    def test_no_item_accepted_after_stop(self, gated, manager_factory, make_descriptor):
        manager = manager_factory(gated, processors_count=2)
        manager.start()
        manager.stop()

        assert manager.stopped
        assert manager.enqueue(make_descriptor("logs/late.log")) is False
        assert gated.started == []

    def test_stop_unblocks_waiting_enqueue(self, gated, manager_factory, make_descriptor):
        """Test that a poller blocked on a full pool is released by stop."""
        manager = manager_factory(gated, processors_count=1)
        manager.start()
        manager.enqueue(make_descriptor("logs/busy.log"))
        assert wait_for(lambda: len(gated.started) == 1)

        results = []
        poller = threading.Thread(target=lambda: results.append(manager.enqueue(make_descriptor("logs/next.log"))))
        poller.start()
        time.sleep(0.1)

        stopper = threading.Thread(target=manager.stop)
        stopper.start()
        poller.join(5)
        assert results == [False]

        gated.gate.set()
        stopper.join(5)
        assert gated.started == ["logs/busy.log"]

    def test_worker_survives_errors(self, manager_factory, make_descriptor):
        processor = MagicMock()
        handled = []

        def handle(descriptor):
            handled.append(descriptor.key)
            if descriptor.key == "logs/bad.log":
                raise RuntimeError("unexpected")
            if descriptor.key == "logs/flaky.log":
                raise TransientFetchError(descriptor.key, "timeout", attempts=6)

        processor.handle.side_effect = handle
        manager = manager_factory(processor, processors_count=1)
        manager.start()

        for key in ("logs/bad.log", "logs/flaky.log", "logs/good.log"):
            assert manager.enqueue(make_descriptor(key)) is True

        assert wait_for(lambda: handled == ["logs/bad.log", "logs/flaky.log", "logs/good.log"])

    def test_invalid_pool_size(self):
        with pytest.raises(ValueError):
            ProcessorManager(MagicMock(), processors_count=0)


class TestBrokenPipeRetries:
    """Tests for the fixed-backoff broken pipe retries."""

    def test_retried_with_one_second_sleeps(self, make_descriptor):
        processor = MagicMock()
        processor.handle.side_effect = [BrokenPipeError(), BrokenPipeError(), "completed"]
        sleeps = []
        manager = ProcessorManager(
            processor, broken_pipe_retries=3, retry_manager=RetryManager(sleep=sleeps.append)
        )

        manager._process(make_descriptor(), worker_id=0)

        assert processor.handle.call_count == 3
        assert sleeps == [1.0, 1.0]

    def test_abandoned_after_budget(self, make_descriptor):
        """Test that an exhausted budget is logged and the item dropped without raising."""
        processor = MagicMock()
        processor.handle.side_effect = BrokenPipeError("pipe")
        sleeps = []
        manager = ProcessorManager(
            processor, broken_pipe_retries=2, retry_manager=RetryManager(sleep=sleeps.append)
        )

        manager._process(make_descriptor(), worker_id=0)

        assert processor.handle.call_count == 3
        assert sleeps == [1.0, 1.0]

    def test_other_errors_are_not_retried(self, make_descriptor):
        processor = MagicMock()
        processor.handle.side_effect = ConnectionResetError("reset")
        manager = ProcessorManager(processor, retry_manager=RetryManager(sleep=lambda delay: None))

        manager._process(make_descriptor(), worker_id=0)

        assert processor.handle.call_count == 1
