"""Tests for trigger variants and the trigger state machine."""
from datetime import datetime, timedelta, timezone

import pytest

from events import GenericEvent, button_press, clock_tick
from modules.ingredients import BindError
from modules.triggers import ButtonTrigger, TimeTrigger

T0 = datetime(2024, 5, 1, 20, 0, tzinfo=timezone.utc)


def press(button_id="b1", at=T0):
    event = button_press(None, button_id)
    return GenericEvent(name=event.name, payload=event.payload, timestamp=at)


def started(trigger, broker):
    fired = []
    trigger.on_fire = fired.append
    trigger.start(broker)
    return fired


class TestTriggerLifecycle:

    def test_start_is_idempotent(self, broker):
        trigger = TimeTrigger.bind({"Time": "20:00"})
        trigger.start(broker)
        trigger.start(broker)

        assert broker.consumer_count == 1

    def test_stop_on_stopped_trigger_is_safe(self, broker):
        trigger = TimeTrigger.bind({"Time": "20:00"})
        trigger.stop()
        trigger.start(broker)
        trigger.stop()
        trigger.stop()

        assert broker.consumer_count == 0
        assert not trigger.started

    def test_stopped_trigger_never_fires(self, broker, evening):
        trigger = TimeTrigger.bind({"Time": "20:00"})
        fired = started(trigger, broker)
        trigger.stop()

        broker.enqueue(clock_tick(evening))
        trigger.consume(clock_tick(evening))

        assert fired == []

    def test_disabled_trigger_stays_subscribed_but_silent(self, broker, evening):
        trigger = TimeTrigger.bind({"Time": "20:00"})
        fired = started(trigger, broker)
        trigger.set_enabled(False)

        broker.enqueue(clock_tick(evening))

        assert fired == []
        assert broker.has_consumer(trigger)

        trigger.set_enabled(True)
        broker.enqueue(clock_tick(evening))
        assert fired == [trigger]

    def test_new_returns_zero_valued_instance(self):
        trigger = ButtonTrigger.bind({"ButtonID": "b1", "PressCount": 2, "MaxDuration": 1000})
        fresh = trigger.new()

        assert isinstance(fresh, ButtonTrigger)
        assert fresh.ingredient_values() == {"ButtonID": "", "PressCount": 0,
                                             "MaxDuration": timedelta(0)}
        assert not fresh.started


class TestButtonTrigger:

    def test_single_press(self, broker):
        trigger = ButtonTrigger.bind({"ButtonID": "b1", "PressCount": 1, "MaxDuration": 500})
        fired = started(trigger, broker)

        broker.enqueue(press())

        assert fired == [trigger]

    def test_double_press_within_window(self, broker):
        trigger = ButtonTrigger.bind({"ButtonID": "b1", "PressCount": 2, "MaxDuration": 1000})
        fired = started(trigger, broker)

        broker.enqueue(press(at=T0))
        assert fired == []
        broker.enqueue(press(at=T0 + timedelta(milliseconds=400)))
        assert fired == [trigger]

    def test_press_after_window_restarts_count(self, broker):
        trigger = ButtonTrigger.bind({"ButtonID": "b1", "PressCount": 2, "MaxDuration": 1000})
        fired = started(trigger, broker)

        broker.enqueue(press(at=T0))
        broker.enqueue(press(at=T0 + timedelta(seconds=2)))
        assert fired == []

        broker.enqueue(press(at=T0 + timedelta(seconds=2.5)))
        assert fired == [trigger]

    def test_other_buttons_are_ignored(self, broker):
        trigger = ButtonTrigger.bind({"ButtonID": "b1", "PressCount": 1, "MaxDuration": 500})
        fired = started(trigger, broker)

        broker.enqueue(press("b2"))

        assert fired == []

    def test_press_count_must_be_positive(self):
        with pytest.raises(BindError) as exc:
            ButtonTrigger.bind({"ButtonID": "b1", "PressCount": 0, "MaxDuration": 500})
        assert exc.value.field == "PressCount"

    def test_missing_button_fails(self):
        with pytest.raises(BindError) as exc:
            ButtonTrigger.bind({"PressCount": 1, "MaxDuration": 500})
        assert exc.value.field == "ButtonID"


class TestTimeTrigger:

    def test_fires_once_per_day(self, broker, evening):
        trigger = TimeTrigger.bind({"Time": "20:00"})
        fired = started(trigger, broker)

        broker.enqueue(clock_tick(evening))
        broker.enqueue(clock_tick(evening + timedelta(seconds=30)))
        assert len(fired) == 1

        broker.enqueue(clock_tick(evening + timedelta(days=1)))
        assert len(fired) == 2

    def test_other_minutes_do_not_fire(self, broker, evening):
        trigger = TimeTrigger.bind({"Time": "20:00"})
        fired = started(trigger, broker)

        broker.enqueue(clock_tick(evening - timedelta(minutes=1)))
        broker.enqueue(clock_tick(evening + timedelta(minutes=1)))

        assert fired == []

    def test_days_restrict_firing(self, broker, evening):
        # 2024-05-01 is a Wednesday
        trigger = TimeTrigger.bind({"Time": "20:00", "Days": "mon,tue"})
        fired = started(trigger, broker)

        broker.enqueue(clock_tick(evening))
        assert fired == []

        broker.enqueue(clock_tick(evening + timedelta(days=6)))
        assert fired == [trigger]

    @pytest.mark.parametrize("value", ["8pm", "24:00", "20:60", "20", "20:5"])
    def test_invalid_time_fails(self, value):
        with pytest.raises(BindError) as exc:
            TimeTrigger.bind({"Time": value})
        assert exc.value.field == "Time"

    def test_invalid_day_fails(self):
        with pytest.raises(BindError) as exc:
            TimeTrigger.bind({"Time": "20:00", "Days": "mon,funday"})
        assert exc.value.field == "Days"
