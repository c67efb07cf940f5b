"""
Ingredients - Typed, user-configurable parameters.

Triggers and actions declare their ingredients statically. Values arrive as
JSON-decoded data (numbers are floats, durations are milliseconds) and are
converted by bind_values() before a variant instance is constructed, so a
failed bind never leaves a half-configured trigger or action behind.
"""
import math
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, Mapping, Sequence

STRING = "string"
BOOLEAN = "boolean"
INTEGER = "integer"
FLOAT = "float"
DURATION = "duration"
DATETIME = "datetime"

INGREDIENT_TYPES = (STRING, BOOLEAN, INTEGER, FLOAT, DURATION, DATETIME)

ZERO_VALUES = {
    STRING: "",
    BOOLEAN: False,
    INTEGER: 0,
    FLOAT: 0.0,
    DURATION: timedelta(0),
    DATETIME: None,
}


class BindError(ValueError):
    """Raised when an ingredient value is missing or has the wrong type."""

    def __init__(self, field: str, message: str):
        super().__init__(f"{field}: {message}")
        self.field = field
        self.message = message


@dataclass(frozen=True)
class Ingredient:
    id: str
    name: str
    description: str
    type: str
    required: bool = False
    reference: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "type": self.type,
            "required": self.required,
            "reference": self.reference,
        }


def _is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _is_finite(value) -> bool:
    # ints decoded from JSON can be too large for a float but are always finite
    return isinstance(value, int) or math.isfinite(value)


def convert_value(ingredient: Ingredient, value):
    """Convert one wire value to the ingredient's Python type."""
    kind = ingredient.type
    if kind == STRING:
        if not isinstance(value, str):
            raise BindError(ingredient.id, "expected a string")
        return value

    if kind == BOOLEAN:
        if not isinstance(value, bool):
            raise BindError(ingredient.id, "expected a boolean")
        return value

    if kind == INTEGER:
        if not _is_number(value) or not _is_finite(value):
            raise BindError(ingredient.id, "expected an integer")
        if isinstance(value, float) and not value.is_integer():
            raise BindError(ingredient.id, "expected a whole number")
        return int(value)

    if kind == FLOAT:
        if not _is_number(value) or not _is_finite(value):
            raise BindError(ingredient.id, "expected a number")
        try:
            return float(value)
        except OverflowError:
            raise BindError(ingredient.id, "number out of range")

    if kind == DURATION:
        if not _is_number(value) or not _is_finite(value):
            raise BindError(ingredient.id, "expected a duration in milliseconds")
        if value < 0:
            raise BindError(ingredient.id, "duration cannot be negative")
        try:
            return timedelta(milliseconds=value)
        except OverflowError:
            raise BindError(ingredient.id, "duration out of range")

    if kind == DATETIME:
        raise BindError(ingredient.id, "datetime ingredients are not supported yet")

    raise BindError(ingredient.id, f"unknown ingredient type '{kind}'")


def bind_values(ingredients: Sequence[Ingredient],
                values: Mapping[str, Any]) -> Dict[str, Any]:
    """
    Validate and convert values for a list of ingredients.

    Returns:
        Converted values keyed by ingredient ID. Missing optional
        ingredients get the zero value of their type.

    Raises:
        BindError: for the first missing required or mistyped value
    """
    if values is None:
        values = {}
    if not isinstance(values, Mapping):
        raise BindError("ingredients", "expected an object")

    bound = {}
    for ingredient in ingredients:
        if ingredient.type not in INGREDIENT_TYPES:
            raise BindError(ingredient.id, f"unknown ingredient type '{ingredient.type}'")

        value = values.get(ingredient.id)
        if value is None:
            if ingredient.required:
                raise BindError(ingredient.id, "required")
            bound[ingredient.id] = ZERO_VALUES[ingredient.type]
            continue
        bound[ingredient.id] = convert_value(ingredient, value)
    return bound


def dump_value(ingredient: Ingredient, value):
    if ingredient.type == DURATION:
        return value // timedelta(milliseconds=1) if value is not None else 0
    return value


def dump_values(ingredients: Sequence[Ingredient],
                values: Mapping[str, Any]) -> Dict[str, Any]:
    """Inverse of bind_values(): wire representation of bound values."""
    return {i.id: dump_value(i, values.get(i.id, ZERO_VALUES.get(i.type)))
            for i in ingredients}
