"""
Source Map v3 support: the base64-VLQ codec, a builder used by the compiler
delegate, inline map helpers, and the `PositionMapper` that answers
"which original position produced this generated position?".

Lines are 1-based everywhere in the public API. Columns are 0-based UTF-8
byte offsets, which is what both `ast` and the interpreter's tracebacks
report.
"""

import base64
import json
import logging
from bisect import bisect_right
from typing import Any, Dict, List, NamedTuple, Optional, Tuple

logger = logging.getLogger(__name__)

_BASE64_DIGITS = "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789+/"
_BASE64_VALUES = {ch: i for i, ch in enumerate(_BASE64_DIGITS)}

VLQ_SHIFT = 5
VLQ_CONTINUATION_BIT = 1 << VLQ_SHIFT
VLQ_MASK = VLQ_CONTINUATION_BIT - 1

INLINE_MAP_PREFIX = "# sourceMappingURL=data:application/json;base64,"


# --------------------------
# VLQ codec
# --------------------------

def encode_vlq(value: int) -> str:
    vlq = ((-value) << 1) | 1 if value < 0 else value << 1
    digits = []
    while True:
        digit = vlq & VLQ_MASK
        vlq >>= VLQ_SHIFT
        if vlq:
            digit |= VLQ_CONTINUATION_BIT
        digits.append(_BASE64_DIGITS[digit])
        if not vlq:
            return "".join(digits)


def decode_vlq(segment: str) -> List[int]:
    """Decode every value packed into one mapping segment."""
    values = []
    shift = 0
    acc = 0
    for ch in segment:
        digit = _BASE64_VALUES.get(ch)
        if digit is None:
            raise ValueError(f"invalid base64 digit {ch!r} in segment {segment!r}")
        acc += (digit & VLQ_MASK) << shift
        if digit & VLQ_CONTINUATION_BIT:
            shift += VLQ_SHIFT
            continue
        negative = acc & 1
        acc >>= 1
        values.append(-acc if negative else acc)
        acc = 0
        shift = 0
    if shift:
        raise ValueError(f"truncated segment {segment!r}")
    return values


# --------------------------
# Building maps
# --------------------------

class SourceMapBuilder:
    """Collects (generated -> original) position pairs for one source file."""

    def __init__(self, source_name: str = "<input>", source_text: Optional[str] = None,
                 file: Optional[str] = None):
        self.source_name = source_name
        self.source_text = source_text
        self.file = file
        self._lines: Dict[int, Dict[int, Tuple[int, int]]] = {}

    def add_mapping(self, generated_line: int, generated_column: int,
                    original_line: int, original_column: int) -> None:
        # First mapping recorded for a generated position wins; an outer node
        # and its first child start at the same place anyway.
        columns = self._lines.setdefault(generated_line, {})
        columns.setdefault(generated_column, (original_line, original_column))

    def encode_mappings(self) -> str:
        if not self._lines:
            return ""
        groups = []
        prev_orig_line = 0
        prev_orig_col = 0
        for line in range(1, max(self._lines) + 1):
            prev_gen_col = 0
            columns = self._lines.get(line, {})
            segments = []
            for gen_col in sorted(columns):
                orig_line, orig_col = columns[gen_col]
                segments.append(
                    encode_vlq(gen_col - prev_gen_col)
                    + encode_vlq(0)
                    + encode_vlq(orig_line - 1 - prev_orig_line)
                    + encode_vlq(orig_col - prev_orig_col)
                )
                prev_gen_col = gen_col
                prev_orig_line = orig_line - 1
                prev_orig_col = orig_col
            groups.append(",".join(segments))
        return ";".join(groups)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "version": 3,
            "sources": [self.source_name],
            "names": [],
            "mappings": self.encode_mappings(),
        }
        if self.file is not None:
            out["file"] = self.file
        if self.source_text is not None:
            out["sourcesContent"] = [self.source_text]
        return out


def encode_inline(source_map: Dict[str, Any]) -> str:
    payload = base64.b64encode(json.dumps(source_map).encode("utf-8")).decode("ascii")
    return INLINE_MAP_PREFIX + payload


def split_inline(text: str) -> Tuple[str, Optional[Dict[str, Any]]]:
    """Detach a trailing inline map comment from generated text.

    Returns the code without the comment and the decoded map, or the text
    unchanged and None when there is no usable map.
    """
    idx = text.rfind(INLINE_MAP_PREFIX)
    if idx == -1 or (idx > 0 and text[idx - 1] != "\n"):
        logger.debug("no inline position map found")
        return text, None
    code = text[:idx].rstrip()
    payload = text[idx + len(INLINE_MAP_PREFIX):].strip()
    try:
        source_map = json.loads(base64.b64decode(payload, validate=True).decode("utf-8"))
    except ValueError as e:
        logger.debug("inline position map could not be decoded: %s", e)
        return code, None
    if not isinstance(source_map, dict):
        return code, None
    return code, source_map


# --------------------------
# Lookup
# --------------------------

class OriginalPosition(NamedTuple):
    line: int
    column: int
    source: Optional[str] = None


class PositionMapper:
    """Decodes a Source Map v3 once and answers original-position queries."""

    def __init__(self, source_map: Dict[str, Any]):
        if source_map.get("version") != 3:
            raise ValueError(f"unsupported source map version: {source_map.get('version')!r}")
        self.sources: List[str] = list(source_map.get("sources") or [])
        self._lines = self._decode(source_map.get("mappings") or "")

    @classmethod
    def from_inline(cls, text: str) -> Tuple[str, Optional['PositionMapper']]:
        code, source_map = split_inline(text)
        if source_map is None:
            return code, None
        try:
            return code, cls(source_map)
        except ValueError as e:
            logger.debug("position map rejected: %s", e)
            return code, None

    @staticmethod
    def _decode(mappings: str):
        lines = []
        source = 0
        orig_line = 0
        orig_col = 0
        for group in mappings.split(";"):
            gen_col = 0
            pairs = []
            for segment in group.split(","):
                if not segment:
                    continue
                fields = decode_vlq(segment)
                gen_col += fields[0]
                if len(fields) < 4:
                    continue
                source += fields[1]
                orig_line += fields[2]
                orig_col += fields[3]
                pairs.append((gen_col, (source, orig_line + 1, orig_col)))
            pairs.sort(key=lambda p: p[0])
            lines.append(([c for c, _ in pairs], [e for _, e in pairs]))
        return lines

    @property
    def line_count(self) -> int:
        return len(self._lines)

    def original_position_for(self, line: int, column: int) -> Optional[OriginalPosition]:
        """Greatest mapped column <= `column` on `line`, else the first mapping on it."""
        if line < 1 or line > len(self._lines):
            return None
        columns, entries = self._lines[line - 1]
        if not columns:
            return None
        idx = max(bisect_right(columns, column) - 1, 0)
        source, orig_line, orig_col = entries[idx]
        name = self.sources[source] if 0 <= source < len(self.sources) else None
        return OriginalPosition(orig_line, orig_col, name)
