"""
Dotted field paths and nested get/set over JSON-like records.
"""

import copy
from dataclasses import dataclass
from typing import Any, Dict, List, Tuple, Union

from medvault.errors import InvalidFieldPath

Value = Union[str, int, float, bool, None, List["Value"], Dict[str, "Value"]]
Record = Dict[str, Value]


class _Absent:
    """Marker for a path that does not resolve to a value."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self):
        return "ABSENT"

    def __bool__(self):
        return False


ABSENT = _Absent()


@dataclass(frozen=True)
class FieldPath:
    """An ordered, non-empty sequence of non-empty key segments."""
    segments: Tuple[str, ...]

    def __str__(self) -> str:
        return path_string(self)


def parse(path: str) -> FieldPath:
    """Split a dotted identifier such as ``vitals.heartRate`` into a FieldPath."""
    if not isinstance(path, str) or not path:
        raise InvalidFieldPath(f"Field path must be a non-empty string, got {path!r}.", path=path)
    segments = tuple(path.split("."))
    if any(not seg for seg in segments):
        raise InvalidFieldPath(f"Field path '{path}' contains an empty segment.", path=path)
    return FieldPath(segments)


def path_string(path: FieldPath) -> str:
    return ".".join(path.segments)


def _as_path(path: Union[str, FieldPath]) -> FieldPath:
    return path if isinstance(path, FieldPath) else parse(path)


def get(record: Any, path: Union[str, FieldPath]) -> Any:
    """
    Return the value at *path* inside *record*, or ABSENT.
    Missing keys and non-mapping intermediates are a normal outcome, not an error.
    """
    current = record
    for seg in _as_path(path).segments:
        if not isinstance(current, dict) or seg not in current:
            return ABSENT
        current = current[seg]
    return current


def set_value(record: Dict[str, Any], path: Union[str, FieldPath], value: Any) -> None:
    """
    Assign a copy of *value* at *path* inside the destination *record*,
    creating empty mappings for missing (or non-mapping) intermediates.
    """
    segments = _as_path(path).segments
    target = record
    for seg in segments[:-1]:
        if not isinstance(target.get(seg), dict):
            target[seg] = {}
        target = target[seg]
    target[segments[-1]] = copy.deepcopy(value)
