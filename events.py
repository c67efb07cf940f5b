"""
Event Types
===========
Immutable values describing something that happened on a device.

Kinds:
  raw_line   - one framed line read from a device connection
  reporting  - reported attribute values for a feature (e.g. a zone level)
  generic    - everything else (button presses, clock ticks, failures)

Events are frozen dataclasses. Synthetic events (clock ticks, replays from
the command processor) carry no device.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any, Mapping, Optional

# Generic event names used across the system
BUTTON_PRESS = "button.press"
BUTTON_RELEASE = "button.release"
CLOCK_TICK = "clock.tick"
COMMAND_FAILED = "command.failed"
DEVICE_DISCONNECTED = "device.disconnected"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _freeze(values: Optional[Mapping[str, Any]]) -> Mapping[str, Any]:
    return MappingProxyType(dict(values or {}))


@dataclass(frozen=True)
class Event:
    """Base event. Use one of the concrete kinds below."""
    device: Any = field(default=None, compare=False)
    timestamp: datetime = field(default_factory=_utc_now, compare=False)

    kind = "event"

    @property
    def device_id(self) -> Optional[str]:
        return getattr(self.device, "id", None)


@dataclass(frozen=True)
class RawLineEvent(Event):
    line: str = ""

    kind = "raw_line"

    def __str__(self) -> str:
        return f"RawLineEvent[{self.device_id}]: {self.line.strip()}"


@dataclass(frozen=True)
class FeatureReportingEvent(Event):
    feature_id: str = ""
    attrs: Mapping[str, Any] = field(default_factory=dict)

    kind = "reporting"

    def __post_init__(self):
        object.__setattr__(self, "attrs", _freeze(self.attrs))

    def __str__(self) -> str:
        return f"FeatureReportingEvent[{self.feature_id}]: {dict(self.attrs)}"


@dataclass(frozen=True)
class GenericEvent(Event):
    name: str = ""
    payload: Mapping[str, Any] = field(default_factory=dict)

    kind = "generic"

    def __post_init__(self):
        object.__setattr__(self, "payload", _freeze(self.payload))

    def __str__(self) -> str:
        return f"GenericEvent[{self.name}]: {dict(self.payload)}"


def button_press(device, button_id: str, **extra) -> GenericEvent:
    """Build a button press event for a registered button."""
    return GenericEvent(device=device, name=BUTTON_PRESS,
                        payload={"button_id": button_id, **extra})


def clock_tick(now: datetime) -> GenericEvent:
    """Build a clock tick carrying the local wall-clock time."""
    return GenericEvent(name=CLOCK_TICK, payload={"now": now})
