"""
Assembles instrumented code into one executable body and runs it.

The body is compiled once into a coroutine function whose sole parameter is
the reporting callback. Every call gets a fresh namespace holding the
helpers, the pending-log map and the `console` object, so nothing leaks
between runs.
"""

import ast
import builtins
import functools
import inspect
import linecache
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import pystache

from scry.scry_datatypes import InstrumentationError, LogLevel, TraceEvent
from scry.scry_locator import error_message
from scry.scry_rewriter import (
    ACCUMULATE, DEFAULT_CONSOLE, EVENT, FLUSH, LOG_CALL, PENDING, REPORT,
)

logger = logging.getLogger(__name__)

EXECUTION_FILENAME = "<scry>"

# Future statements must come first, so the pragma precedes the helpers.
PRAGMA = "from __future__ import annotations"

HELPERS_TEMPLATE = """\
{{pending}} = {}

def {{accumulate}}(level, line, args):
    entry = {{pending}}.get(line)
    if entry is None:
        {{pending}}[line] = (level, [args])
    else:
        entry[1].append(args)

def {{log_call}}(level, line):
    def log(*args, **kwargs):
        {{accumulate}}(level, line, list(args))
    return log

def {{flush}}(report):
    pending = list({{pending}}.items())
    {{pending}}.clear()
    for line, (level, batches) in pending:
        report({'kind': 'log', 'level': level, 'line': line, 'data': batches})

def {{report}}(value, line, report, flush):
    flush(report)
    report({'kind': 'result', 'line': line, 'data': value})
    return value
"""

ReportEvent = Callable[[Dict[str, Any]], None]


@functools.lru_cache(maxsize=None)
def render_helpers() -> str:
    renderer = pystache.Renderer(escape=lambda u: u)
    return renderer.render(HELPERS_TEMPLATE, {
        'pending': PENDING,
        'accumulate': ACCUMULATE,
        'log_call': LOG_CALL,
        'flush': FLUSH,
        'report': REPORT,
    })


@dataclass(frozen=True)
class AssembledBody:
    text: str
    helper_line_offset: int


def assemble_body(instrumented_text: str, helpers_required: bool) -> AssembledBody:
    prefix = PRAGMA + "\n"
    if helpers_required:
        prefix += render_helpers()
        if not prefix.endswith("\n"):
            prefix += "\n"
    return AssembledBody(prefix + instrumented_text, prefix.count("\n"))


class Console:
    """The `console` object visible to user code.

    Rewritten calls never reach it. It serves what the rewriter cannot see:
    aliased methods, calls inside f-strings, `getattr(console, ...)`. Those
    calls have no known line.
    """

    def __init__(self, namespace: Dict[str, Any], report_event: ReportEvent):
        self._namespace = namespace
        self._report_event = report_event

    def _emit(self, level: LogLevel, args) -> None:
        accumulate = self._namespace.get(ACCUMULATE)
        if callable(accumulate):
            accumulate(level.value, None, list(args))
        else:
            self._report_event({'kind': 'log', 'level': level.value, 'line': None, 'data': [list(args)]})

    def log(self, *args, **kwargs):
        self._emit(LogLevel.LOG, args)

    def info(self, *args, **kwargs):
        self._emit(LogLevel.INFO, args)

    def warn(self, *args, **kwargs):
        self._emit(LogLevel.WARN, args)

    def error(self, *args, **kwargs):
        self._emit(LogLevel.ERROR, args)

    def debug(self, *args, **kwargs):
        self._emit(LogLevel.DEBUG, args)

    def dir(self, *args, **kwargs):
        self._emit(LogLevel.DIR, args)

    def clear(self):
        pass

    def __repr__(self):
        return "<console>"


def build_callable(body: AssembledBody, console_name: str = DEFAULT_CONSOLE,
                   filename: str = EXECUTION_FILENAME):
    """Compile `body` into `async def execute(report_event)`."""
    try:
        code = compile(body.text, filename, "exec",
                       flags=ast.PyCF_ALLOW_TOP_LEVEL_AWAIT, dont_inherit=True)
    except (SyntaxError, ValueError) as e:
        raise InstrumentationError(f"instrumented code does not compile: {e}") from e
    # Lets tracebacks and the sanitizer show source lines for the virtual file.
    linecache.cache[filename] = (len(body.text), None, body.text.splitlines(True), filename)

    async def execute(report_event: ReportEvent) -> None:
        namespace: Dict[str, Any] = {
            '__name__': '__main__',
            '__builtins__': builtins,
            EVENT: report_event,
        }
        namespace[console_name] = Console(namespace, report_event)
        try:
            outcome = eval(code, namespace)
            if inspect.iscoroutine(outcome):
                await outcome
        finally:
            flush = namespace.get(FLUSH)
            if callable(flush):
                flush(report_event)

    return execute


def unhandled_event(context: Dict[str, Any]) -> TraceEvent:
    """Describe an asyncio loop exception-handler context as one error event."""
    exc: Optional[BaseException] = context.get('exception')
    detail = error_message(exc) if exc is not None else str(context.get('message') or 'unknown error')
    return TraceEvent.error("Unhandled exception in task:", detail)
