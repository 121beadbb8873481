"""
Defines the core data types shared by the scry engine, its worker process,
and the host.

A run produces a tuple of `TraceEvent` objects. Events cross the worker
boundary as plain dictionaries (see `TraceEvent.to_dict`), so every payload
must already be sanitized by the time an event is built.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class ScryError(Exception):
    """Base class for engine failures."""


class InstrumentationError(ScryError):
    """The generated code could not be instrumented or assembled."""


class CompilerError(ScryError):
    """The compiler delegate produced output the engine cannot use."""


# =================================================================
# Event model
# =================================================================

class EventKind(str, Enum):
    RESULT = "result"
    LOG = "log"


class LogLevel(str, Enum):
    """Diagnostic levels understood by the rewriter.

    `console.clear` is not a level; it never becomes an event.
    """
    LOG = "log"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"
    DEBUG = "debug"
    DIR = "dir"

    @classmethod
    def parse(cls, value: Any) -> 'LogLevel':
        if isinstance(value, LogLevel):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            return cls.LOG


DIAGNOSTIC_LEVELS = frozenset(level.value for level in LogLevel)


@dataclass(frozen=True)
class TraceEvent:
    """One captured top-level result or one (merged) diagnostic call."""
    kind: EventKind
    data: Any = None
    line: Optional[int] = None
    level: Optional[LogLevel] = None

    def __post_init__(self):
        if self.kind is EventKind.LOG and self.level is None:
            object.__setattr__(self, 'level', LogLevel.LOG)
        elif self.kind is EventKind.RESULT and self.level is not None:
            raise ValueError("result events carry no level")
        if self.line is not None and self.line < 1:
            raise ValueError(f"line must be positive, got {self.line}")

    @classmethod
    def result(cls, value: Any, line: Optional[int] = None) -> 'TraceEvent':
        return cls(EventKind.RESULT, value, line)

    @classmethod
    def log(cls, batches: List[List[Any]], line: Optional[int] = None,
            level: LogLevel = LogLevel.LOG) -> 'TraceEvent':
        return cls(EventKind.LOG, batches, line, level)

    @classmethod
    def error(cls, *parts: Any, line: Optional[int] = None) -> 'TraceEvent':
        """A single-batch error log, used for every engine-generated failure."""
        return cls(EventKind.LOG, [list(parts)], line, LogLevel.ERROR)

    @property
    def is_error(self) -> bool:
        return self.kind is EventKind.LOG and self.level is LogLevel.ERROR

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {'kind': self.kind.value, 'line': self.line, 'data': self.data}
        if self.level is not None:
            out['level'] = self.level.value
        return out

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> 'TraceEvent':
        kind = EventKind(raw['kind'])
        level = LogLevel.parse(raw.get('level')) if kind is EventKind.LOG else None
        return cls(kind, raw.get('data'), raw.get('line'), level)


# =================================================================
# Compiler output
# =================================================================

@dataclass(frozen=True)
class Diagnostic:
    code: str
    message: str
    category: str = 'error'
    line: Optional[int] = None
    column: Optional[int] = None

    @property
    def is_error(self) -> bool:
        return self.category == 'error'

    @classmethod
    def from_syntax_error(cls, e: SyntaxError) -> 'Diagnostic':
        return cls(
            code=type(e).__name__,
            message=e.msg or str(e),
            category='error',
            line=e.lineno,
            column=e.offset,
        )

    def format(self) -> str:
        where = ""
        if self.line is not None:
            where = f" (line {self.line}" + (f", col {self.column}" if self.column is not None else "") + ")"
        return f"{self.code}: {self.message}{where}"


@dataclass
class CompileOutput:
    """What a compiler delegate hands back: generated text (with its inline
    position map appended) and any diagnostics."""
    generated_text: str
    diagnostics: List[Diagnostic] = field(default_factory=list)

    @property
    def has_errors(self) -> bool:
        return any(d.is_error for d in self.diagnostics)
