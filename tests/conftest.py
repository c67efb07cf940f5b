"""Shared fixtures for the recipe controller tests."""
import asyncio
from datetime import datetime

import pytest

from core import HomeService, load_inventory
from event_bus import EventBroker
from yaml_loader import DEFAULT_CONFIG, merge_config

INVENTORY = {
    "devices": [
        {
            "id": "bridge1",
            "name": "Bridge",
            "address": "192.168.0.10:23",
            "model_number": "l-bdgpro2-wh",
            "login": "lutron",
            "password": "integration",
            "zones": [
                {"id": "z1", "name": "Living Room", "address": "2"},
                {"id": "z2", "name": "Kitchen", "address": "3"},
            ],
            "buttons": [{"id": "b1", "name": "Pico On", "address": "2"}],
        }
    ],
    "scenes": [
        {"id": "s1", "name": "Evening", "address": "1", "device_id": "bridge1"},
        {"id": "s2", "name": "Reading",
         "commands": [{"zone_id": "z1", "level": 80}, {"zone_id": "z2", "level": 20}]},
    ],
}


class FakeClock:
    """Monotonic clock driven by the test."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class RecordingConsumer:
    """Consumer that records every event matching a predicate."""

    def __init__(self, predicate=None, name="recorder"):
        self.predicate = predicate or (lambda event: True)
        self.name = name
        self.events = []

    def accepts(self, event) -> bool:
        return self.predicate(event)

    def consume(self, event):
        self.events.append(event)


class FakeWriter:
    """Stand-in for an asyncio StreamWriter."""

    def __init__(self, fail_with=None):
        self.data = []
        self.fail_with = fail_with
        self.closed = False

    def write(self, data: bytes):
        if self.fail_with is not None:
            raise self.fail_with
        self.data.append(data)

    async def drain(self):
        pass

    def close(self):
        self.closed = True

    async def wait_closed(self):
        pass

    @property
    def lines(self):
        return [d.decode() for d in self.data]


def attach_writer(device, writer=None) -> FakeWriter:
    """Mark a device as connected through a fake writer."""
    writer = writer or FakeWriter()
    device._writer = writer
    device._write_lock = asyncio.Lock()
    return writer


class RecordingProcessor:
    """Command processor stand-in that keeps submitted groups."""

    def __init__(self):
        self.groups = []

    def enqueue(self, group):
        self.groups.append(group)
        return True


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def broker(clock):
    b = EventBroker(clock=clock)
    yield b
    b.close()


@pytest.fixture
def config(tmp_path):
    return merge_config(DEFAULT_CONFIG, {
        "recipes": {"data_path": str(tmp_path / "recipes")},
        "commands": {"max_retries": 0, "transmit_timeout": 1.0},
        "extensions": {"lutron": {"suppress_delay_ms": 500}},
    })


@pytest.fixture
def service(config):
    svc = HomeService(config)
    load_inventory(svc, INVENTORY)
    yield svc
    svc.broker.close()


@pytest.fixture
def data_path(config):
    return config["recipes"]["data_path"]


@pytest.fixture
def evening():
    """20:00 on a Wednesday."""
    return datetime(2024, 5, 1, 20, 0, 5)
