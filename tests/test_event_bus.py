"""Tests for the event broker and its enqueue filters."""
import asyncio
import threading

import pytest

from event_bus import EventBroker
from events import FeatureReportingEvent, GenericEvent, RawLineEvent
from tests.conftest import RecordingConsumer


def zone_report(feature_id="z1", level=50.0):
    return FeatureReportingEvent(feature_id=feature_id, attrs={"level": level})


def is_report_for(feature_id):
    return lambda e: isinstance(e, FeatureReportingEvent) and e.feature_id == feature_id


class TestConsumers:

    def test_delivers_to_interested_consumers_only(self, broker):
        reports = RecordingConsumer(lambda e: isinstance(e, FeatureReportingEvent))
        lines = RecordingConsumer(lambda e: isinstance(e, RawLineEvent))
        broker.add_consumer(reports)
        broker.add_consumer(lines)

        assert broker.enqueue(zone_report()) is True

        assert len(reports.events) == 1
        assert lines.events == []

    def test_add_consumer_twice_subscribes_once(self, broker):
        consumer = RecordingConsumer()
        assert broker.add_consumer(consumer) is True
        assert broker.add_consumer(consumer) is False

        broker.enqueue(GenericEvent(name="x"))

        assert len(consumer.events) == 1
        assert broker.consumer_count == 1

    def test_removed_consumer_gets_nothing(self, broker):
        consumer = RecordingConsumer()
        broker.add_consumer(consumer)
        assert broker.remove_consumer(consumer) is True
        assert broker.remove_consumer(consumer) is False

        broker.enqueue(GenericEvent(name="x"))

        assert consumer.events == []

    def test_consumer_error_does_not_reach_producer(self, broker):
        class Exploding:
            def accepts(self, event):
                return True

            def consume(self, event):
                raise RuntimeError("boom")

        survivor = RecordingConsumer()
        broker.add_consumer(Exploding())
        broker.add_consumer(survivor)

        assert broker.enqueue(GenericEvent(name="x")) is True
        assert len(survivor.events) == 1
        assert broker.get_stats()["errors"] == 1

    def test_consumer_may_unsubscribe_during_delivery(self, broker):
        class OneShot(RecordingConsumer):
            def consume(self, event):
                super().consume(event)
                broker.remove_consumer(self)

        consumer = OneShot()
        broker.add_consumer(consumer)
        broker.enqueue(GenericEvent(name="a"))
        broker.enqueue(GenericEvent(name="b"))

        assert [e.name for e in consumer.events] == ["a"]


class TestEnqueueFilters:

    def test_filter_blocks_until_deadline_and_allows_from_it(self, broker, clock):
        consumer = RecordingConsumer()
        broker.add_consumer(consumer)
        broker.add_enqueue_filter("z1", is_report_for("z1"), ttl=2.0)

        assert broker.enqueue(zone_report()) is False
        clock.now = 1001.999
        assert broker.enqueue(zone_report()) is False
        clock.now = 1002.0
        assert broker.enqueue(zone_report()) is True

        assert len(consumer.events) == 1

    def test_filter_only_drops_matching_events(self, broker):
        consumer = RecordingConsumer()
        broker.add_consumer(consumer)
        broker.add_enqueue_filter("z1", is_report_for("z1"), ttl=5.0)

        broker.enqueue(zone_report("z2"))
        broker.enqueue(GenericEvent(name="button.press"))

        assert len(consumer.events) == 2

    def test_new_filter_replaces_old_one(self, broker, clock):
        broker.add_enqueue_filter("z1", is_report_for("z1"), ttl=1.0)
        broker.add_enqueue_filter("z1", is_report_for("z1"), ttl=5.0)

        clock.advance(2.0)

        assert broker.enqueue(zone_report()) is False
        assert broker.get_stats()["filters"] == 1

    def test_remove_filter_is_idempotent(self, broker):
        broker.add_enqueue_filter("z1", is_report_for("z1"), ttl=5.0)

        assert broker.remove_enqueue_filter("z1") is True
        assert broker.remove_enqueue_filter("z1") is False
        assert broker.enqueue(zone_report()) is True

    def test_stale_expiry_does_not_evict_replacement(self, broker):
        old = broker.add_enqueue_filter("z1", is_report_for("z1"), ttl=5.0)
        broker.add_enqueue_filter("z1", is_report_for("z1"), ttl=5.0)

        broker._expire_filter("z1", old)

        assert broker.has_enqueue_filter("z1")

    async def test_timer_evicts_filter(self):
        broker = EventBroker()
        broker.add_enqueue_filter("z1", is_report_for("z1"), ttl=0.01)
        assert broker.get_stats()["filters"] == 1

        await asyncio.sleep(0.05)

        assert broker.get_stats()["filters"] == 0
        assert broker.enqueue(zone_report()) is True

    def test_failing_predicate_does_not_drop(self, broker):
        def bad(event):
            raise ValueError("bad predicate")

        broker.add_enqueue_filter("z1", bad, ttl=5.0)

        assert broker.enqueue(zone_report()) is True


class TestProducers:

    async def test_producer_runs_until_exhausted(self):
        broker = EventBroker()
        consumer = RecordingConsumer()
        broker.add_consumer(consumer)

        class Producer:
            name = "counter"

            async def start_producing(self, b):
                for i in range(3):
                    b.enqueue(GenericEvent(name=f"n{i}"))

        task = broker.add_producer(Producer())
        await task

        assert [e.name for e in consumer.events] == ["n0", "n1", "n2"]
        assert broker.get_stats()["producers"] == 0

    async def test_remove_producer_cancels_it(self):
        broker = EventBroker()
        started = asyncio.Event()

        class Forever:
            async def start_producing(self, b):
                started.set()
                await asyncio.sleep(3600)

        producer = Forever()
        task = broker.add_producer(producer)
        await started.wait()
        broker.remove_producer(producer)

        with pytest.raises(asyncio.CancelledError):
            await task


def test_error_counts_are_exact_across_threads(broker):
    class Exploding:
        def accepts(self, event):
            return True

        def consume(self, event):
            raise RuntimeError("boom")

    broker.add_consumer(Exploding())

    def publish():
        for _ in range(200):
            broker.enqueue(GenericEvent(name="x"))

    threads = [threading.Thread(target=publish) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    stats = broker.get_stats()
    assert stats["errors"] == 1600
    assert stats["enqueued"] == 1600
