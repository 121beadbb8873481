"""
Converts arbitrary runtime values into bounded, acyclic, JSON-safe data
before they leave the execution context.

Nothing returned here holds a live reference into user code: callables,
instances and other engine objects become short text labels.
"""

import collections
import datetime
import enum
import inspect
import re
import traceback
from typing import Any, Optional, Set

MAX_DEPTH = 10
MAX_ARRAY_LENGTH = 100
MAX_OBJECT_KEYS = 50
MAX_LABEL_TEXT = 50
MAX_SAFE_INTEGER = 2 ** 53 - 1

DEPTH_MARKER = "[Max depth reached]"
CIRCULAR_MARKER = "[Circular Reference]"
TRUNCATED_KEY = "..."


class Sanitizer:
    """Each limit degrades only the value that exceeds it."""

    def __init__(self, max_depth: int = MAX_DEPTH, max_array_length: int = MAX_ARRAY_LENGTH,
                 max_object_keys: int = MAX_OBJECT_KEYS):
        self.max_depth = max_depth
        self.max_array_length = max_array_length
        self.max_object_keys = max_object_keys

    def sanitize(self, value: Any, depth: int = 0, visited: Optional[Set[int]] = None) -> Any:
        if depth > self.max_depth:
            return DEPTH_MARKER

        if value is None or type(value) in (bool, str, float):
            return value
        if type(value) is int:
            return value if abs(value) <= MAX_SAFE_INTEGER else f"{value}n"
        if inspect.isroutine(value) or isinstance(value, type):
            return f"[Function: {_callable_name(value)}]"
        if isinstance(value, enum.Enum):
            return f"[Symbol: {type(value).__name__}.{value.name}]"
        if value is Ellipsis or value is NotImplemented:
            return f"[Symbol: {value!r}]"

        if visited is None:
            visited = set()
        key = id(value)
        if key in visited:
            return CIRCULAR_MARKER
        visited.add(key)
        try:
            return self._sanitize_container(value, depth, visited)
        finally:
            # Only the current path counts: shared, acyclic references render in full.
            visited.discard(key)

    def _sanitize_container(self, value: Any, depth: int, visited: Set[int]) -> Any:
        match value:
            case set() | frozenset():
                return self._sanitize_array(_ordered(value), depth, visited)
            case list() | collections.deque():
                return self._sanitize_array(value, depth, visited)
            case tuple() if type(value) is tuple:
                return self._sanitize_array(value, depth, visited)
            case BaseException():
                return self.sanitize(
                    {'name': type(value).__name__, 'message': str(value), 'stack': _first_trace_line(value) + '...'},
                    depth + 1,
                    visited,
                )
            case datetime.datetime() | datetime.date() | datetime.time():
                return value.isoformat()
            case re.Pattern():
                return repr(value)
            case dict():
                return self._sanitize_dict(value, depth, visited)
            case _:
                return _label(value)

    def _sanitize_array(self, value, depth: int, visited: Set[int]) -> list:
        items = list(value)
        out = [self.sanitize(item, depth + 1, visited) for item in items[:self.max_array_length]]
        if len(items) > self.max_array_length:
            out.append(f"... {len(items) - self.max_array_length} more items")
        return out

    def _sanitize_dict(self, value: dict, depth: int, visited: Set[int]) -> dict:
        out = {}
        keys = list(value.keys())
        shown = keys[:self.max_object_keys]
        taken = {k for k in shown if isinstance(k, str)}
        for k in shown:
            name = k if isinstance(k, str) else _key_name(k, taken)
            out[name] = self.sanitize(value[k], depth + 1, visited)
        if len(keys) > self.max_object_keys:
            out[TRUNCATED_KEY] = f"{len(keys) - self.max_object_keys} more keys"
        return out


def _ordered(items) -> list:
    """Set members in sorted order when they compare, else iteration order."""
    try:
        return sorted(items)
    except TypeError:
        return list(items)


def _key_name(key: Any, taken: Set[str]) -> str:
    """Text form of a non-string key that does not collide with another key.

    String keys keep their exact text; a colliding key gets its type appended,
    then a counter.
    """
    name = repr(key)
    if name in taken:
        base = f"{name} ({type(key).__name__})"
        name = base
        n = 2
        while name in taken:
            name = f"{base} #{n}"
            n += 1
    taken.add(name)
    return name


def _callable_name(value: Any) -> str:
    name = getattr(value, '__name__', None)
    if not isinstance(name, str) or not name or name == '<lambda>':
        return 'anonymous'
    return name


def _first_trace_line(error: BaseException) -> str:
    lines = traceback.format_exception_only(type(error), error)
    return lines[0].rstrip("\n") if lines else type(error).__name__


def _label(value: Any) -> str:
    cls = type(value)
    name = cls.__name__
    try:
        if cls.__str__ is object.__str__ and cls.__repr__ is object.__repr__:
            return f"[{name}]"
        text = str(value)
    except Exception:
        return f"[Instance of {name}]"
    if len(text) > MAX_LABEL_TEXT:
        text = text[:MAX_LABEL_TEXT] + "..."
    return f"[{name}: {text}]"


_default = Sanitizer()


def sanitize(value: Any, depth: int = 0, visited: Optional[Set[int]] = None) -> Any:
    """Sanitize with the default limits."""
    return _default.sanitize(value, depth, visited)
