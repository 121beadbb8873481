"""
Instruments generated Python so that top-level expression results and
`console.<level>(...)` calls are reported as trace events.

The rewriter splices text around located nodes instead of reprinting the
tree. Every edit keeps the newlines of the text it replaces, so the
instrumented program has exactly the line structure of the generated one and
only columns move. `SplicedPositionMapper` undoes those column moves.
"""

import ast
import logging
from bisect import bisect_right
from dataclasses import dataclass
from typing import List, Optional, Tuple, Union

from scry.scry_datatypes import DIAGNOSTIC_LEVELS, InstrumentationError
from scry.scry_sourcemap import OriginalPosition, PositionMapper

logger = logging.getLogger(__name__)

# Dunder on both sides: exempt from private name mangling inside classes.
ACCUMULATE = "__scry_accumulate__"
FLUSH = "__scry_flush__"
REPORT = "__scry_report__"
EVENT = "__scry_event__"
LOG_CALL = "__scry_log_call__"
PENDING = "__scry_pending__"

DEFAULT_CONSOLE = "console"

_INSERT_BEFORE = 0
_REPLACE = 1
_INSERT_AFTER = 2


@dataclass(frozen=True)
class _Edit:
    start: int
    rank: int
    end: int
    text: str


class _LineIndex:
    """Converts between (1-based line, byte column) and absolute byte offsets."""

    def __init__(self, data: bytes):
        starts = [0]
        for chunk in data.splitlines(keepends=True):
            starts.append(starts[-1] + len(chunk))
        self.starts = starts

    @property
    def line_count(self) -> int:
        return len(self.starts) - 1

    def offset(self, line: int, column: int) -> int:
        return self.starts[line - 1] + column

    def position(self, offset: int) -> Tuple[int, int]:
        idx = bisect_right(self.starts, offset) - 1
        return idx + 1, offset - self.starts[idx]


def _newlines(removed: bytes) -> str:
    # Counted the way the tokenizer counts them: \r\n, \r and \n.
    breaks = sum(1 for chunk in removed.splitlines(keepends=True) if chunk.endswith((b"\n", b"\r")))
    return "\n" * breaks


class SplicedPositionMapper:
    """Position mapper for instrumented text.

    Translates an instrumented position back to the generated position it
    was copied from, then asks the generated-code mapper. Positions inside
    inserted text snap forward to the next copied character, which is the
    start of the wrapped expression.
    """

    def __init__(self, base: PositionMapper, generated: bytes, instrumented: bytes,
                 segments: List[Tuple[int, int, int]]):
        self.base = base
        self._generated = _LineIndex(generated)
        self._instrumented = _LineIndex(instrumented)
        self._segments = segments
        self._segment_starts = [s[0] for s in segments]

    def _to_generated(self, offset: int) -> Optional[int]:
        idx = bisect_right(self._segment_starts, offset) - 1
        if idx >= 0:
            out_start, gen_start, length = self._segments[idx]
            if offset < out_start + length:
                return gen_start + (offset - out_start)
        if idx + 1 < len(self._segments):
            return self._segments[idx + 1][1]
        return None

    def original_position_for(self, line: int, column: int) -> Optional[OriginalPosition]:
        if line < 1 or line > self._instrumented.line_count:
            return None
        generated_offset = self._to_generated(self._instrumented.offset(line, max(column, 0)))
        if generated_offset is None:
            return None
        return self.base.original_position_for(*self._generated.position(generated_offset))


@dataclass
class RewriteResult:
    instrumented_text: str
    helpers_required: bool
    mapper: Optional[Union[PositionMapper, SplicedPositionMapper]] = None


class _DiagnosticCallFinder(ast.NodeVisitor):
    def __init__(self, console_name: str):
        self.console_name = console_name
        self.calls: List[ast.Call] = []

    def visit_JoinedStr(self, node):
        # Replacement fields are left to the runtime console object.
        return

    def visit_Call(self, node):
        if is_diagnostic_call(node, self.console_name):
            self.calls.append(node)
        self.generic_visit(node)


def is_diagnostic_call(node: ast.AST, console_name: str = DEFAULT_CONSOLE) -> bool:
    return (
        isinstance(node, ast.Call)
        and isinstance(node.func, ast.Attribute)
        and isinstance(node.func.value, ast.Name)
        and node.func.value.id == console_name
        and node.func.attr in DIAGNOSTIC_LEVELS
    )


def _is_docstring(index: int, stmt: ast.stmt) -> bool:
    return (
        index == 0
        and isinstance(stmt, ast.Expr)
        and isinstance(stmt.value, ast.Constant)
        and isinstance(stmt.value.value, str)
    )


class Rewriter:
    def __init__(self, console_name: str = DEFAULT_CONSOLE):
        self.console_name = console_name

    def rewrite(self, generated_text: str, mapper: Optional[PositionMapper] = None) -> RewriteResult:
        try:
            tree = ast.parse(generated_text)
        except (SyntaxError, ValueError) as e:
            raise InstrumentationError(f"cannot parse generated code: {e}") from e

        data = generated_text.encode("utf-8")
        index = _LineIndex(data)
        edits: List[_Edit] = []

        finder = _DiagnosticCallFinder(self.console_name)
        finder.visit(tree)
        for call in finder.calls:
            edits.extend(self._diagnostic_edits(call, data, index, mapper))

        for i, stmt in enumerate(tree.body):
            if not isinstance(stmt, ast.Expr) or _is_docstring(i, stmt):
                continue
            if is_diagnostic_call(stmt.value, self.console_name):
                continue
            edits.extend(self._report_edits(stmt, index, mapper))

        if not edits:
            return RewriteResult(generated_text, False, mapper)

        instrumented, segments = self._apply(data, edits)
        logger.debug("instrumented %d call(s) and %d edit(s) in total", len(finder.calls), len(edits))
        spliced = SplicedPositionMapper(mapper, data, instrumented, segments) if mapper else None
        return RewriteResult(instrumented.decode("utf-8"), True, spliced)

    @staticmethod
    def _resolve_line(mapper: Optional[PositionMapper], line: int, column: int) -> Optional[int]:
        if mapper is None:
            return None
        pos = mapper.original_position_for(line, column)
        return pos.line if pos is not None else None

    def _diagnostic_edits(self, call: ast.Call, data: bytes, index: _LineIndex,
                          mapper: Optional[PositionMapper]) -> List[_Edit]:
        level = call.func.attr
        line = self._resolve_line(mapper, call.lineno, call.col_offset)
        start = index.offset(call.lineno, call.col_offset)
        end = index.offset(call.end_lineno, call.end_col_offset)

        if call.keywords:
            func_end = index.offset(call.func.end_lineno, call.func.end_col_offset)
            head = f"{LOG_CALL}({level!r}, {line!r}" + _newlines(data[start:func_end]) + ")"
            return [_Edit(start, _REPLACE, func_end, head)]

        head = f"{ACCUMULATE}({level!r}, {line!r}, ["
        if not call.args:
            return [_Edit(start, _REPLACE, end, head + _newlines(data[start:end]) + "])")]

        first, last = call.args[0], call.args[-1]
        first_start = index.offset(first.lineno, first.col_offset)
        last_end = index.offset(last.end_lineno, last.end_col_offset)
        return [
            _Edit(start, _REPLACE, first_start, head + _newlines(data[start:first_start])),
            _Edit(last_end, _REPLACE, end, "]" + _newlines(data[last_end:end]) + ")"),
        ]

    def _report_edits(self, stmt: ast.Expr, index: _LineIndex,
                      mapper: Optional[PositionMapper]) -> List[_Edit]:
        line = self._resolve_line(mapper, stmt.value.lineno, stmt.value.col_offset)
        start = index.offset(stmt.lineno, stmt.col_offset)
        end = index.offset(stmt.end_lineno, stmt.end_col_offset)
        return [
            _Edit(start, _INSERT_BEFORE, start, f"{REPORT}(("),
            _Edit(end, _INSERT_AFTER, end, f"), {line!r}, {EVENT}, {FLUSH})"),
        ]

    @staticmethod
    def _apply(data: bytes, edits: List[_Edit]) -> Tuple[bytes, List[Tuple[int, int, int]]]:
        out = bytearray()
        segments: List[Tuple[int, int, int]] = []
        cursor = 0
        for edit in sorted(edits, key=lambda e: (e.start, e.rank)):
            if edit.start < cursor:
                raise InstrumentationError(f"overlapping edits at byte {edit.start}")
            if edit.start > cursor:
                segments.append((len(out), cursor, edit.start - cursor))
                out += data[cursor:edit.start]
            out += edit.text.encode("utf-8")
            cursor = edit.end
        if cursor < len(data):
            segments.append((len(out), cursor, len(data) - cursor))
            out += data[cursor:]
        return bytes(out), segments
