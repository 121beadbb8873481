# scry_runtime.py

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional, Tuple

from scry.scry_compiler import CompilerDelegate, TypedPythonCompiler
from scry.scry_config import ScryConfig
from scry.scry_datatypes import (
    CompilerError, Diagnostic, EventKind, InstrumentationError, LogLevel, TraceEvent,
)
from scry.scry_executor import EXECUTION_FILENAME, assemble_body, build_callable
from scry.scry_locator import locate_error
from scry.scry_rewriter import Rewriter
from scry.scry_sanitizer import Sanitizer
from scry.scry_sourcemap import PositionMapper

logger = logging.getLogger(__name__)

INTERNAL_ERROR_MESSAGE = "Internal error: could not instrument code"
EVENT_ERROR_MESSAGE = "[Internal Error processing event]"


class ScriptRunner:
    """Compiles, instruments and executes one script, collecting its trace.

    This is the in-process pipeline. The host runs it inside a worker
    process; embedding code and tests may call it directly.
    """

    def __init__(self, config: Optional[ScryConfig] = None,
                 compiler: Optional[CompilerDelegate] = None,
                 on_start: Optional[Callable[[], None]] = None):
        self.config = config or ScryConfig()
        self.compiler = compiler or TypedPythonCompiler()
        self.rewriter = Rewriter(console_name=self.config.console_name)
        self.sanitizer = Sanitizer(
            max_depth=self.config.max_depth,
            max_array_length=self.config.max_array_length,
            max_object_keys=self.config.max_object_keys,
        )
        self.on_start = on_start

    def _make_reporter(self, events: List[TraceEvent]) -> Callable[[Dict[str, Any]], None]:
        sanitize = self.sanitizer.sanitize

        def report_event(raw: Dict[str, Any]) -> None:
            line = raw.get('line')
            try:
                kind = EventKind(raw['kind'])
                if kind is EventKind.LOG:
                    data = [sanitize(batch) for batch in raw.get('data') or []]
                    events.append(TraceEvent.log(data, line, LogLevel.parse(raw.get('level'))))
                else:
                    events.append(TraceEvent.result(sanitize(raw.get('data')), line))
            except Exception as e:
                logger.debug("event sanitization failed: %r", e)
                events.append(TraceEvent.error(EVENT_ERROR_MESSAGE, str(e), line=line if isinstance(line, int) and line > 0 else None))

        return report_event

    @staticmethod
    def _diagnostic_event(diagnostic: Diagnostic) -> TraceEvent:
        level = LogLevel.ERROR if diagnostic.is_error else LogLevel.WARN
        line = diagnostic.line if diagnostic.line and diagnostic.line > 0 else None
        return TraceEvent.log([[diagnostic.format()]], line, level)

    def _prepare(self, source_code: str, events: List[TraceEvent]):
        """Compile and instrument. Returns (callable, mapper, helper offset) or None to abort."""
        try:
            output = self.compiler.compile(source_code)
        except CompilerError as e:
            logger.warning("compiler delegate failed: %s", e)
            events.append(TraceEvent.error(INTERNAL_ERROR_MESSAGE))
            return None

        for diagnostic in output.diagnostics:
            events.append(self._diagnostic_event(diagnostic))
        if output.has_errors:
            logger.debug("aborting run: %d diagnostic(s)", len(output.diagnostics))
            return None

        generated, mapper = PositionMapper.from_inline(output.generated_text)
        try:
            rewritten = self.rewriter.rewrite(generated, mapper)
            body = assemble_body(rewritten.instrumented_text, rewritten.helpers_required)
            execute = build_callable(body, console_name=self.config.console_name)
        except InstrumentationError as e:
            logger.warning("instrumentation failed: %s", e)
            events.append(TraceEvent.error(INTERNAL_ERROR_MESSAGE))
            return None
        return execute, rewritten.mapper, body.helper_line_offset

    async def handle_script(self, source_code: str) -> Tuple[TraceEvent, ...]:
        """The main entry point: run a script and return its frozen trace."""
        events: List[TraceEvent] = []
        prepared = self._prepare(source_code, events)
        if prepared is None:
            return tuple(events)
        execute, mapper, helper_line_offset = prepared

        report_event = self._make_reporter(events)
        if self.on_start is not None:
            self.on_start()
        try:
            await execute(report_event)
            logger.debug("execution finished normally")
        except SystemExit:
            logger.debug("script exited")
        except asyncio.CancelledError as e:
            if _cancelling():
                raise
            events.append(self._thrown_event(e, mapper, helper_line_offset))
        except BaseException as e:
            # KeyboardInterrupt, GeneratorExit and bare BaseException subclasses
            # raised by the script are ordinary throws here.
            events.append(self._thrown_event(e, mapper, helper_line_offset))
        return tuple(events)

    @staticmethod
    def _thrown_event(error: BaseException, mapper, helper_line_offset: int) -> TraceEvent:
        location = locate_error(error, mapper, helper_line_offset, filename=EXECUTION_FILENAME)
        return TraceEvent.error(location.display(), line=location.line)


def _cancelling() -> bool:
    """True when the task running the script is itself being cancelled."""
    task = asyncio.current_task()
    cancelling = getattr(task, 'cancelling', None)
    return bool(cancelling()) if cancelling is not None else False
