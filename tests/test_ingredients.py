"""Tests for ingredient binding."""
from datetime import timedelta

import pytest

from modules.ingredients import (
    BOOLEAN,
    DATETIME,
    DURATION,
    FLOAT,
    INTEGER,
    STRING,
    BindError,
    Ingredient,
    bind_values,
    dump_values,
)

ALL_OPTIONAL = [
    Ingredient("S", "S", "", STRING),
    Ingredient("B", "B", "", BOOLEAN),
    Ingredient("I", "I", "", INTEGER),
    Ingredient("F", "F", "", FLOAT),
    Ingredient("D", "D", "", DURATION),
    Ingredient("T", "T", "", DATETIME),
]


class TestBindValues:

    def test_converts_wire_values(self):
        bound = bind_values(ALL_OPTIONAL, {"S": "abc", "B": True, "I": 3.0, "F": 2, "D": 1500})

        assert bound["S"] == "abc"
        assert bound["B"] is True
        assert bound["I"] == 3 and isinstance(bound["I"], int)
        assert bound["F"] == 2.0 and isinstance(bound["F"], float)
        assert bound["D"] == timedelta(milliseconds=1500)

    def test_missing_optional_gets_zero_value(self):
        bound = bind_values(ALL_OPTIONAL, {})

        assert bound == {"S": "", "B": False, "I": 0, "F": 0.0, "D": timedelta(0), "T": None}

    def test_missing_required_fails(self):
        ingredients = [Ingredient("ZoneID", "Zone", "", STRING, required=True)]

        with pytest.raises(BindError) as exc:
            bind_values(ingredients, {})

        assert exc.value.field == "ZoneID"
        assert exc.value.message == "required"

    @pytest.mark.parametrize("ingredient_type,value", [
        (STRING, 5),
        (BOOLEAN, "true"),
        (INTEGER, 1.5),
        (INTEGER, True),
        (FLOAT, "75"),
        (DURATION, "1s"),
        (DURATION, -1),
        (INTEGER, float("nan")),
        (INTEGER, float("inf")),
        (FLOAT, float("nan")),
        (FLOAT, float("-inf")),
        (DURATION, float("nan")),
        (DURATION, float("inf")),
        (DURATION, 10 ** 400),
    ])
    def test_type_mismatch_fails(self, ingredient_type, value):
        ingredients = [Ingredient("X", "X", "", ingredient_type)]

        with pytest.raises(BindError) as exc:
            bind_values(ingredients, {"X": value})

        assert exc.value.field == "X"

    def test_datetime_value_is_rejected(self):
        with pytest.raises(BindError):
            bind_values(ALL_OPTIONAL, {"T": "2024-01-01T00:00:00"})

    def test_unknown_type_fails(self):
        with pytest.raises(BindError):
            bind_values([Ingredient("X", "X", "", "colour")], {"X": "red"})

    def test_non_mapping_values_fail(self):
        with pytest.raises(BindError):
            bind_values(ALL_OPTIONAL, ["not", "a", "dict"])


def test_dump_values_writes_durations_as_milliseconds():
    ingredients = [Ingredient("D", "D", "", DURATION), Ingredient("F", "F", "", FLOAT)]

    dumped = dump_values(ingredients, {"D": timedelta(seconds=2.5), "F": 75.0})

    assert dumped == {"D": 2500, "F": 75.0}
