"""
Triggers - Event conditions that start a recipe.

State machine:
  stopped -> started/enabled <-> started/disabled -> stopped

A started trigger is subscribed to the broker. Only a started, enabled
trigger evaluates events; when its condition matches it calls on_fire,
which the owning recipe points at its action. Stopping unsubscribes and
the started flag is checked again on every delivery, so a stopped trigger
never fires even for an event already in flight.
"""
import logging
import threading
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from events import BUTTON_PRESS, CLOCK_TICK, Event, GenericEvent

from .ingredients import (
    DURATION,
    INTEGER,
    STRING,
    BindError,
    Ingredient,
    bind_values,
    dump_values,
)

logger = logging.getLogger("modules.triggers")

WEEKDAYS = ("mon", "tue", "wed", "thu", "fri", "sat", "sun")


class Trigger:
    """Base class for trigger variants."""

    NAME = ""
    DESCRIPTION = ""
    INGREDIENTS: Tuple[Ingredient, ...] = ()

    def __init__(self):
        self.enabled = True
        self.on_fire: Optional[Callable[["Trigger"], None]] = None
        self._broker = None
        self._started = False
        self._lock = threading.RLock()

    # =========================================================================
    # DESCRIPTION / BINDING
    # =========================================================================

    @classmethod
    def type(cls) -> str:
        return cls.__name__

    def name(self) -> str:
        return self.NAME

    def description(self) -> str:
        return self.DESCRIPTION

    @classmethod
    def ingredients(cls) -> List[Ingredient]:
        return list(cls.INGREDIENTS)

    @classmethod
    def new(cls) -> "Trigger":
        """A zero-valued, stopped instance of the same variant."""
        return cls()

    @classmethod
    def bind(cls, values: Dict[str, Any]) -> "Trigger":
        raise NotImplementedError

    def ingredient_values(self) -> Dict[str, Any]:
        raise NotImplementedError

    def dump_ingredients(self) -> Dict[str, Any]:
        return dump_values(self.INGREDIENTS, self.ingredient_values())

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    @property
    def started(self) -> bool:
        return self._started

    def set_enabled(self, enabled: bool):
        with self._lock:
            self.enabled = bool(enabled)
            self.reset()

    def start(self, broker):
        with self._lock:
            if self._started:
                return
            self._broker = broker
            self._started = True
            self.reset()
        broker.add_consumer(self)
        logger.debug(f"{self.type()} started")

    def stop(self):
        with self._lock:
            if not self._started:
                return
            broker, self._broker = self._broker, None
            self._started = False
        broker.remove_consumer(self)
        logger.debug(f"{self.type()} stopped")

    # =========================================================================
    # CONSUMER
    # =========================================================================

    def accepts(self, event: Event) -> bool:
        return self._started and self.enabled and self.wants(event)

    def consume(self, event: Event):
        with self._lock:
            if not (self._started and self.enabled):
                return
            fired = self.evaluate(event)
        if fired and self._started:
            callback = self.on_fire
            if callback is not None:
                callback(self)

    def wants(self, event: Event) -> bool:
        """Cheap interest check for events the variant evaluates."""
        return False

    def evaluate(self, event: Event) -> bool:
        """Update state for an accepted event. Returns True to fire."""
        return False

    def reset(self):
        """Clear any evaluation state."""
        pass

    def __repr__(self) -> str:
        return f"{self.type()}({self.ingredient_values()})"


class ButtonTrigger(Trigger):
    """
    Fires when a button is pressed PressCount times within MaxDuration.

    The first press opens the window. A press after the window has closed
    starts counting again.
    """

    NAME = "Button Click"
    DESCRIPTION = "Fires when a button is clicked a number of times within a time window"
    INGREDIENTS = (
        Ingredient("ButtonID", "Button", "The button that is pressed", STRING,
                   required=True, reference="button"),
        Ingredient("PressCount", "Press Count",
                   "How many times the button must be pressed", INTEGER, required=True),
        Ingredient("MaxDuration", "Max Duration",
                   "Window the presses must happen in", DURATION, required=True),
    )

    def __init__(self, button_id: str = "", press_count: int = 0,
                 max_duration: timedelta = timedelta(0)):
        super().__init__()
        self.button_id = button_id
        self.press_count = press_count
        self.max_duration = max_duration
        self._count = 0
        self._window_start: Optional[datetime] = None

    @classmethod
    def bind(cls, values: Dict[str, Any]) -> "ButtonTrigger":
        bound = bind_values(cls.INGREDIENTS, values)
        if bound["PressCount"] < 1:
            raise BindError("PressCount", "must be at least 1")
        return cls(button_id=bound["ButtonID"],
                   press_count=bound["PressCount"],
                   max_duration=bound["MaxDuration"])

    def ingredient_values(self) -> Dict[str, Any]:
        return {
            "ButtonID": self.button_id,
            "PressCount": self.press_count,
            "MaxDuration": self.max_duration,
        }

    def wants(self, event: Event) -> bool:
        return (isinstance(event, GenericEvent)
                and event.name == BUTTON_PRESS
                and event.payload.get("button_id") == self.button_id)

    def evaluate(self, event: Event) -> bool:
        now = event.timestamp
        if self._count == 0 or now - self._window_start > self.max_duration:
            self._count = 0
            self._window_start = now

        self._count += 1
        if self._count >= self.press_count:
            self.reset()
            return True
        return False

    def reset(self):
        self._count = 0
        self._window_start = None


class TimeTrigger(Trigger):
    """Fires at a wall-clock time, optionally only on some weekdays."""

    NAME = "Time"
    DESCRIPTION = "Fires at a specific time of day"
    INGREDIENTS = (
        Ingredient("Time", "Time", "Time of day, HH:MM (24h)", STRING, required=True),
        Ingredient("Days", "Days",
                   "Comma separated weekdays (mon,tue,...), empty for every day", STRING),
    )

    def __init__(self, at: str = "", days: str = ""):
        super().__init__()
        self.at = at
        self.days = days
        self._hour, self._minute = _parse_time(at) if at else (None, None)
        self._weekdays = _parse_days(days)
        self._last_fired = None

    @classmethod
    def bind(cls, values: Dict[str, Any]) -> "TimeTrigger":
        bound = bind_values(cls.INGREDIENTS, values)
        try:
            _parse_time(bound["Time"])
        except ValueError as e:
            raise BindError("Time", str(e))
        try:
            _parse_days(bound["Days"])
        except ValueError as e:
            raise BindError("Days", str(e))
        return cls(at=bound["Time"], days=bound["Days"])

    def ingredient_values(self) -> Dict[str, Any]:
        return {"Time": self.at, "Days": self.days}

    def wants(self, event: Event) -> bool:
        return isinstance(event, GenericEvent) and event.name == CLOCK_TICK

    def evaluate(self, event: Event) -> bool:
        now = event.payload.get("now")
        if not isinstance(now, datetime) or self._hour is None:
            return False
        if (now.hour, now.minute) != (self._hour, self._minute):
            return False
        if self._weekdays and now.weekday() not in self._weekdays:
            return False
        if self._last_fired == now.date():
            return False
        self._last_fired = now.date()
        return True

    def reset(self):
        self._last_fired = None


def _parse_time(value: str) -> Tuple[int, int]:
    hour, sep, minute = value.strip().partition(":")
    if not sep or not hour.isdigit() or not minute.isdigit() or len(minute) != 2:
        raise ValueError(f"invalid time '{value}', expected HH:MM")
    hour, minute = int(hour), int(minute)
    if hour > 23 or minute > 59:
        raise ValueError(f"invalid time '{value}', expected HH:MM")
    return hour, minute


def _parse_days(value: str) -> frozenset:
    days = set()
    for part in (value or "").split(","):
        part = part.strip().lower()[:3]
        if not part:
            continue
        if part not in WEEKDAYS:
            raise ValueError(f"unknown weekday '{part}'")
        days.add(WEEKDAYS.index(part))
    return frozenset(days)


TRIGGER_TYPES = (ButtonTrigger, TimeTrigger)
