"""Tests for the command processor."""
import asyncio

import pytest

from command_queue import CommandError, CommandProcessor
from commands import CommandGroup, SceneSet, ZoneSetLevel
from error_handler import ErrorHandler
from events import COMMAND_FAILED, FeatureReportingEvent, GenericEvent
from tests.conftest import FakeWriter, RecordingConsumer, attach_writer


def set_level(zone_id="z1", address="2", level=75.0, device_id="bridge1"):
    return ZoneSetLevel(device_id=device_id, zone_id=zone_id, zone_address=address,
                        zone_name=zone_id, level=level)


@pytest.fixture
def processor(service):
    return CommandProcessor(service, max_queue_size=3, max_retries=0,
                            transmit_timeout=1.0, error_handler=ErrorHandler())


class TestEnqueue:

    def test_rejects_empty_group(self, processor):
        with pytest.raises(CommandError):
            processor.enqueue(CommandGroup("nothing", []))

    def test_rejects_non_group(self, processor):
        with pytest.raises(CommandError):
            processor.enqueue(set_level())

    def test_overflow_drops_oldest(self, processor):
        groups = [CommandGroup(f"g{i}", [set_level()]) for i in range(4)]
        for group in groups:
            processor.enqueue(group)

        stats = processor.get_stats()
        assert stats["queue_size"] == 3
        assert stats["dropped"] == 1
        assert processor._pop() is groups[1]


class TestTransmission:

    async def test_group_commands_sent_in_order(self, service, processor):
        writer = attach_writer(service.devices["bridge1"])
        processor.enqueue(CommandGroup("two", [set_level("z1", "2", 75),
                                               set_level("z2", "3", 10)]))

        await processor.flush()

        assert writer.lines == ["#OUTPUT,2,1,75.00\r\n", "#OUTPUT,3,1,10.00\r\n"]
        assert processor.get_stats()["groups_completed"] == 1

    async def test_scene_command(self, service, processor):
        writer = attach_writer(service.devices["bridge1"])
        processor.enqueue(CommandGroup("scene", [SceneSet(device_id="bridge1", scene_id="s1",
                                                          scene_address="1",
                                                          scene_name="Evening")]))

        await processor.flush()

        assert writer.lines == ["#DEVICE,1,1,3\r\n"]

    async def test_worker_drains_queue(self, service, processor):
        writer = attach_writer(service.devices["bridge1"])
        await processor.start()
        try:
            processor.enqueue(CommandGroup("g", [set_level()]))
            for _ in range(50):
                if writer.data:
                    break
                await asyncio.sleep(0.01)
        finally:
            await processor.stop()

        assert writer.lines == ["#OUTPUT,2,1,75.00\r\n"]

    async def test_stop_flushes_remaining(self, service, processor):
        writer = attach_writer(service.devices["bridge1"])
        processor.enqueue(CommandGroup("g", [set_level()]))
        await processor.start()
        await processor.stop()

        assert writer.lines == ["#OUTPUT,2,1,75.00\r\n"]
        assert processor.get_stats()["queue_size"] == 0

    async def test_failure_aborts_group_and_reports(self, service, processor):
        attach_writer(service.devices["bridge1"], FakeWriter(fail_with=OSError("unsupported socket")))
        failures = RecordingConsumer(
            lambda e: isinstance(e, GenericEvent) and e.name == COMMAND_FAILED)
        service.broker.add_consumer(failures)

        ok = await processor.process_group(
            CommandGroup("two", [set_level("z1", "2", 75), set_level("z2", "3", 10)]))

        assert ok is False
        stats = processor.get_stats()
        assert stats["commands_failed"] == 1
        assert stats["commands_sent"] == 0
        (event,) = failures.events
        assert event.payload["group"] == "two"
        assert "unsupported" in event.payload["error"]

    async def test_unknown_device_is_reported(self, service, processor):
        failures = RecordingConsumer(
            lambda e: isinstance(e, GenericEvent) and e.name == COMMAND_FAILED)
        service.broker.add_consumer(failures)

        await processor.process_group(CommandGroup("g", [set_level(device_id="ghost")]))

        assert len(failures.events) == 1

    async def test_disconnected_device_retries_then_fails(self, service):
        processor = CommandProcessor(service, max_retries=1, transmit_timeout=1.0,
                                     backoff_base=0, error_handler=ErrorHandler())
        failures = RecordingConsumer(
            lambda e: isinstance(e, GenericEvent) and e.name == COMMAND_FAILED)
        service.broker.add_consumer(failures)

        ok = await processor.process_group(CommandGroup("g", [set_level()]))

        assert ok is False
        assert processor.error_handler.get_stats()["total_retries"] == 1
        assert len(failures.events) == 1


class TestReportingSuppression:

    def test_replay_then_suppress(self, service):
        processor = CommandProcessor(service)
        reports = RecordingConsumer(lambda e: isinstance(e, FeatureReportingEvent))
        service.broker.add_consumer(reports)

        processor.suppress_feature_reporting("z1", {"level": 75.0}, delay=2.0)

        # The replay passes, the echo that follows is dropped
        assert [dict(e.attrs) for e in reports.events] == [{"level": 75.0}]
        assert service.broker.enqueue(
            FeatureReportingEvent(feature_id="z1", attrs={"level": 40.0})) is False
        assert service.broker.enqueue(
            FeatureReportingEvent(feature_id="z2", attrs={"level": 40.0})) is True

    def test_second_command_replays_despite_active_filter(self, service):
        processor = CommandProcessor(service)
        reports = RecordingConsumer(lambda e: isinstance(e, FeatureReportingEvent))
        service.broker.add_consumer(reports)

        processor.suppress_feature_reporting("z1", {"level": 75.0}, delay=2.0)
        processor.suppress_feature_reporting("z1", {"level": 10.0}, delay=2.0)

        assert [e.attrs["level"] for e in reports.events] == [75.0, 10.0]

    async def test_sending_level_suppresses_echo(self, service, processor):
        attach_writer(service.devices["bridge1"])
        reports = RecordingConsumer(lambda e: isinstance(e, FeatureReportingEvent))
        service.broker.add_consumer(reports)

        await processor.process_group(CommandGroup("g", [set_level(level=75)]))

        assert [e.attrs["level"] for e in reports.events] == [75.0]
        assert service.broker.has_enqueue_filter("z1")
