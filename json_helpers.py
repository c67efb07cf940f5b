"""
JSON Serialisation Helpers
==========================
Serialisation utilities for the values recipes, events and commands carry
that aren't natively JSON-serialisable.

This module provides:
1. Durations as integer milliseconds (the wire and file format)
2. datetime/date as ISO strings, Enums as their value
3. Dataclasses and read-only mappings (event attrs) as plain dicts
4. Recursive handling of nested structures
"""
import dataclasses
import logging
from collections.abc import Mapping
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Any

logger = logging.getLogger("json_helpers")


def serialise_value(value: Any) -> Any:
    """
    Recursively serialise a value to be JSON-compatible.

    Args:
        value: Any value that needs to be JSON-serialisable

    Returns:
        JSON-serialisable representation of the value
    """
    if value is None:
        return None

    # Basic JSON types (fast path)
    if isinstance(value, (str, int, float, bool)):
        return value

    if isinstance(value, timedelta):
        return value // timedelta(milliseconds=1)

    if isinstance(value, (datetime, date)):
        return value.isoformat()

    if isinstance(value, Enum):
        return value.value

    if isinstance(value, bytes):
        try:
            return value.decode('utf-8')
        except UnicodeDecodeError:
            return value.hex()

    # Mappings include the MappingProxyType used for event payloads
    if isinstance(value, Mapping):
        return {serialise_key(k): serialise_value(v) for k, v in value.items()}

    if isinstance(value, (list, tuple, set, frozenset)):
        return [serialise_value(item) for item in value]

    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {f.name: serialise_value(getattr(value, f.name))
                for f in dataclasses.fields(value) if not f.name.startswith('_')}

    if hasattr(value, 'to_dict'):
        return serialise_value(value.to_dict())

    try:
        return str(value)
    except Exception as e:
        logger.warning(f"Failed to serialise {type(value).__name__}: {e}")
        return f"<{type(value).__name__}>"


def serialise_key(key: Any) -> str:
    """Convert any key type to a string for JSON dict keys."""
    if key is None:
        return "null"
    if isinstance(key, str):
        return key
    if isinstance(key, Enum):
        return str(key.value)
    return str(key)


def prepare_for_json(data: Any) -> Any:
    """
    Prepare data structure for JSON serialisation.

    Use this before json.dump() or returning data from an API route.
    """
    return serialise_value(data)
