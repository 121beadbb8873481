"""
A plain-text printer for trace events.
"""
import json

from scry.scry_datatypes import EventKind, TraceEvent

INLINE_ARRAY_ITEMS = 10
INLINE_STRING_LENGTH = 50


class EventPrinter:
    """Formats trace events as the lines a results gutter would show."""

    def __init__(self, indent_width=2):
        self.indent_width = indent_width

    def pformat(self, event: TraceEvent) -> str:
        """Public entry point to format one event."""
        if event.kind is EventKind.LOG:
            body = self._pformat_log(event)
        else:
            body = self._pformat_value(event.data)
        return self._prefix(event, body)

    def _prefix(self, event, body):
        if event.kind is EventKind.LOG:
            tag = f"[{event.level.value}]"
        else:
            tag = "=>"
        where = f"L{event.line}" if event.line is not None else "L?"
        lines = body.split("\n") if body else [""]
        return "\n".join(f"{where} {tag} {line}".rstrip() for line in lines)

    def _pformat_log(self, event):
        batches = event.data or []
        return "\n".join(" ".join(self._pformat_arg(arg) for arg in batch) for batch in batches)

    def _pformat_arg(self, arg):
        # Strings print bare in log output, as a console would show them.
        if isinstance(arg, str):
            return arg
        return json.dumps(arg, ensure_ascii=False)

    def _pformat_value(self, value):
        match value:
            case str():
                return value
            case list() if self._is_simple_array(value):
                items = ", ".join(json.dumps(v, ensure_ascii=False) for v in value)
                return f"[{items}] ({len(value)})"
            case list() | dict():
                return json.dumps(value, indent=self.indent_width, ensure_ascii=False)
            case _:
                return json.dumps(value, ensure_ascii=False)

    @staticmethod
    def _is_simple_array(value):
        if len(value) > INLINE_ARRAY_ITEMS:
            return False
        for item in value:
            if isinstance(item, (list, dict)):
                return False
            if isinstance(item, str) and len(item) > INLINE_STRING_LENGTH:
                return False
        return True
