"""
Maps a runtime exception back to the original source line it came from.
"""

import logging
import re
import traceback
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)

# "<file>:<line>:<column>", file being anything without whitespace or parens.
FRAME_REFERENCE = re.compile(r"(?P<file>[^\s()]+):(?P<line>\d+):(?P<column>\d+)")


@dataclass(frozen=True)
class ErrorLocation:
    message: str
    line: Optional[int] = None
    column: Optional[int] = None

    def display(self) -> str:
        if self.line is None:
            return self.message
        return f"{self.message} (at line {self.line})"


def error_message(error: BaseException) -> str:
    name = type(error).__name__
    text = str(error)
    return f"{name}: {text}" if text else name


def format_trace(error: BaseException) -> Optional[str]:
    """Render the traceback innermost frame first, one
    `at <function> (<file>:<line>:<column>)` line per frame, columns 1-based.
    The message line is omitted."""
    tb = error.__traceback__
    if tb is None:
        return None
    lines = []
    for frame in reversed(traceback.extract_tb(tb)):
        colno = getattr(frame, 'colno', None)
        column = colno + 1 if colno is not None else 0
        lines.append(f"    at {frame.name} ({frame.filename}:{frame.lineno}:{column})")
    return "\n".join(lines)


def locate_error(error: BaseException, mapper=None, helper_line_offset: int = 0,
                 filename: Optional[str] = None) -> ErrorLocation:
    message = error_message(error)
    trace = format_trace(error)
    if not trace or mapper is None:
        return ErrorLocation(message)

    for trace_line in trace.splitlines():
        match = FRAME_REFERENCE.search(trace_line)
        if not match:
            continue
        if filename is not None and match.group('file') != filename:
            continue
        line = int(match.group('line')) - helper_line_offset
        column = int(match.group('column'))
        if line <= 0:
            logger.debug("skipping frame inside injected helpers: %s", trace_line.strip())
            continue
        original = mapper.original_position_for(line, column - 1 if column > 0 else 0)
        if original is None or original.line <= 0:
            logger.debug("frame did not map: %s", trace_line.strip())
            continue
        return ErrorLocation(message, original.line, original.column + 1)

    logger.debug("no frame of %s mapped to the original source", type(error).__name__)
    return ErrorLocation(message)
