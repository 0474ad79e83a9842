"""Apache AGE agtype result helpers.

AGE returns every Cypher column as ``agtype``, which psycopg hands back as
text. Rows coming out of ``GraphRepository.execute_cypher`` keep that raw
text (``{"c": "3"}``); the helpers here turn it into Python values.

Usage:
    rows = graph.execute_cypher("MATCH (d:Doctor) RETURN count(d)")
    n    = extract_int_value(result_value(rows, "c"))   # 3
    gv   = classify(rows[0]["c"])                       # GraphValue(kind=NUMBER, ...)
    flat = flatten_value('{"id": 1, "label": "Doctor", "properties": {}}::vertex')
"""

from __future__ import annotations

import json
import logging
import math
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

logger = logging.getLogger("db_result_helpers")

_BARE_INTEGER = re.compile(r"^\d+$")
_SIGNED_INTEGER = re.compile(r"^[+-]?\d+$")
_FLOAT = re.compile(r"^[+-]?(\d+\.\d*|\.\d+|\d+)([eE][+-]?\d+)?$")
_TYPE_ANNOTATION = re.compile(r"::([A-Za-z_]+)$")
_COLON_INTEGER = re.compile(r":\s*([+-]?\d+)\s*$")


class GraphValueKind(str, Enum):
    VERTEX = "vertex"
    EDGE = "edge"
    NUMBER = "number"
    BOOLEAN = "boolean"
    MAP = "map"
    RAW = "raw"


@dataclass
class GraphValue:
    """One classified agtype value.

    ``field`` is the key the value takes when the value is not itself a map,
    e.g. a bare integer result is reported under ``count(*)``.
    """
    kind: GraphValueKind
    value: Any
    raw: str = ""
    field: str = "value"

    def as_flat_map(self) -> dict:
        if isinstance(self.value, dict):
            return dict(self.value)
        return {self.field: self.value}


class AgtypeParseError(ValueError):
    pass


# =============================================================================
# RECURSIVE-DESCENT AGTYPE PARSER
# =============================================================================

class _AgtypeParser:
    """Parser for agtype text: JSON plus ``::type`` annotations, single-quoted
    strings, bare keys and the NaN/Infinity float spellings."""

    def __init__(self, text: str):
        self.text = text
        self.pos = 0

    def parse(self):
        value = self._value()
        self._skip_ws()
        if self.pos != len(self.text):
            raise AgtypeParseError(f"Unexpected trailing text at {self.pos}: {self.text[self.pos:self.pos + 20]!r}")
        return value

    def _skip_ws(self):
        while self.pos < len(self.text) and self.text[self.pos].isspace():
            self.pos += 1

    def _peek(self) -> str:
        return self.text[self.pos] if self.pos < len(self.text) else ""

    def _expect(self, ch: str):
        self._skip_ws()
        if self._peek() != ch:
            raise AgtypeParseError(f"Expected {ch!r} at {self.pos}")
        self.pos += 1

    def _value(self):
        self._skip_ws()
        ch = self._peek()
        if ch == "{":
            value = self._object()
        elif ch == "[":
            value = self._array()
        elif ch in ("'", '"'):
            value = self._string()
        elif ch == "":
            raise AgtypeParseError("Unexpected end of input")
        else:
            value = self._scalar()
        self._skip_annotation()
        return value

    def _skip_annotation(self):
        # {...}::vertex, [...]::path, 1.5::numeric
        if self.text.startswith("::", self.pos):
            self.pos += 2
            while self.pos < len(self.text) and (self.text[self.pos].isalnum() or self.text[self.pos] == "_"):
                self.pos += 1

    def _object(self) -> dict:
        self._expect("{")
        result = {}
        self._skip_ws()
        if self._peek() == "}":
            self.pos += 1
            return result
        while True:
            self._skip_ws()
            key = self._string() if self._peek() in ("'", '"') else self._bare_word()
            self._expect(":")
            result[key] = self._value()
            self._skip_ws()
            ch = self._peek()
            self.pos += 1
            if ch == "}":
                return result
            if ch != ",":
                raise AgtypeParseError(f"Expected ',' or '}}' at {self.pos - 1}")

    def _array(self) -> list:
        self._expect("[")
        result = []
        self._skip_ws()
        if self._peek() == "]":
            self.pos += 1
            return result
        while True:
            result.append(self._value())
            self._skip_ws()
            ch = self._peek()
            self.pos += 1
            if ch == "]":
                return result
            if ch != ",":
                raise AgtypeParseError(f"Expected ',' or ']' at {self.pos - 1}")

    def _string(self) -> str:
        quote = self._peek()
        self.pos += 1
        chars = []
        while self.pos < len(self.text):
            ch = self.text[self.pos]
            if ch == "\\":
                self.pos += 1
                esc = self._peek()
                if esc == "u":
                    chars.append(chr(int(self.text[self.pos + 1:self.pos + 5], 16)))
                    self.pos += 5
                    continue
                chars.append({"n": "\n", "r": "\r", "t": "\t", "b": "\b", "f": "\f"}.get(esc, esc))
                self.pos += 1
            elif ch == quote:
                self.pos += 1
                return "".join(chars)
            else:
                chars.append(ch)
                self.pos += 1
        raise AgtypeParseError("Unterminated string")

    def _bare_word(self) -> str:
        start = self.pos
        while self.pos < len(self.text) and self.text[self.pos] not in ",:{}[]" \
                and not self.text[self.pos].isspace() and not self.text.startswith("::", self.pos):
            self.pos += 1
        word = self.text[start:self.pos]
        if not word:
            raise AgtypeParseError(f"Expected a value at {start}")
        return word

    def _scalar(self):
        word = self._bare_word()
        lowered = word.lower()
        if lowered == "null":
            return None
        if lowered == "true":
            return True
        if lowered == "false":
            return False
        if lowered in ("nan", "infinity", "-infinity"):
            return float(word)
        if _SIGNED_INTEGER.match(word):
            return int(word)
        if _FLOAT.match(word):
            return float(word)
        raise AgtypeParseError(f"Unrecognised literal {word!r}")


def parse_agtype(text: str):
    """Parse agtype text into plain Python values.

    Vertices and edges become dicts with their ``properties`` kept as a
    nested dict; type annotations are dropped.
    """
    return _AgtypeParser(text.strip()).parse()


# =============================================================================
# CLASSIFICATION
# =============================================================================

def _strip_suffix(raw: str, suffix: str) -> str:
    return raw[: -len(suffix)].strip()


def _parse_structure(body: str, kind: GraphValueKind, field: str, raw: str) -> GraphValue:
    if body.startswith("{") and body.endswith("}"):
        return GraphValue(kind, parse_agtype(body), raw, field)
    return GraphValue(GraphValueKind.RAW, body, raw, field)


def _colon_count(raw: str, field: str) -> GraphValue:
    match = _COLON_INTEGER.search(raw)
    count = int(match.group(1)) if match else 0
    return GraphValue(GraphValueKind.MAP, {field: count}, raw, field)


def _generic(raw: str) -> GraphValue:
    lowered = raw.lower()
    if lowered in ("true", "false"):
        return GraphValue(GraphValueKind.BOOLEAN, lowered == "true", raw)
    if _SIGNED_INTEGER.match(raw):
        return GraphValue(GraphValueKind.NUMBER, int(raw), raw)
    if _FLOAT.match(raw):
        return GraphValue(GraphValueKind.NUMBER, float(raw), raw)
    if len(raw) >= 2 and raw[0] == raw[-1] and raw[0] in ("'", '"'):
        return GraphValue(GraphValueKind.RAW, parse_agtype(raw), raw)
    return GraphValue(GraphValueKind.RAW, raw, raw)


def classify(raw: Optional[str]) -> Optional[GraphValue]:
    """Classify one raw agtype value.

    Checked in order: ``::vertex`` suffix, ``::edge`` suffix, bare integer,
    ``{...}`` object, ``relationshipCount:`` text, ``count(*)`` text, then
    boolean / number / string. Anything that fails to parse is kept as RAW.
    """
    if raw is None:
        return None
    text = str(raw).strip()

    try:
        if text.endswith("::vertex"):
            return _parse_structure(_strip_suffix(text, "::vertex"), GraphValueKind.VERTEX, "vertex", text)
        if text.endswith("::edge"):
            return _parse_structure(_strip_suffix(text, "::edge"), GraphValueKind.EDGE, "edge", text)
        if _BARE_INTEGER.match(text):
            return GraphValue(GraphValueKind.NUMBER, int(text), text, "count(*)")
        if text.startswith("{") and text.endswith("}"):
            return GraphValue(GraphValueKind.MAP, parse_agtype(text), text)
        if "relationshipCount:" in text:
            return _colon_count(text, "relationshipCount")
        if "count(*)" in text:
            return _colon_count(text, "count(*)")

        annotation = _TYPE_ANNOTATION.search(text)
        if annotation and annotation.group(1) in ("numeric", "float", "integer"):
            text = text[:annotation.start()].strip()
        return _generic(text)
    except (AgtypeParseError, ValueError, IndexError) as e:
        logger.warning(f"Could not parse agtype value, keeping raw text: {text[:200]} ({e})")
        return GraphValue(GraphValueKind.RAW, text, text)


def flatten_value(raw: Optional[str]) -> dict:
    """Flat key/value view of one raw value (``{}`` for None)."""
    value = classify(raw)
    return value.as_flat_map() if value else {}


def parse_rows(rows: list[dict]) -> list[dict[str, GraphValue]]:
    """Classify every column of raw result rows."""
    parsed = []
    for row in rows:
        typed = {column: classify(raw) for column, raw in row.items() if raw is not None}
        if typed:
            parsed.append(typed)
    return parsed


# =============================================================================
# ROW ACCESS
# =============================================================================

def result_single(rows: list[dict]) -> dict | None:
    """First row, or None if the result is empty."""
    return rows[0] if rows else None


def result_value(rows: list[dict], key: str = "c", default=None, fallback_key: Optional[str] = None):
    """Value of ``key`` in the first row.

    Single-column results always come back under ``c``; ``fallback_key`` lets
    callers also accept the Cypher alias.
    """
    row = result_single(rows)
    if row is None:
        return default
    value = row.get(key)
    if value is None and fallback_key:
        value = row.get(fallback_key)
    return default if value is None else value


def extract_string_value(value) -> Optional[str]:
    """Plain string from a raw agtype value, with surrounding quotes removed."""
    if value is None:
        return None
    if isinstance(value, GraphValue):
        value = value.value
    if not isinstance(value, str):
        return str(value)
    text = value.strip()
    if len(text) >= 2 and text[0] == text[-1] and text[0] in ("'", '"'):
        try:
            decoded = parse_agtype(text)
        except AgtypeParseError:
            decoded = text[1:-1]
        return decoded if isinstance(decoded, str) else json.dumps(decoded)
    return text


def extract_int_value(value) -> Optional[int]:
    """Integer from a raw agtype count value, or None when there isn't one."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return None if math.isnan(value) or math.isinf(value) else int(value)

    parsed = value if isinstance(value, GraphValue) else classify(str(value))
    if parsed is None:
        return None
    if parsed.kind == GraphValueKind.NUMBER:
        return extract_int_value(parsed.value)
    if parsed.kind == GraphValueKind.MAP:
        for key in ("count(*)", "relationshipCount", "count", "cnt"):
            if key in parsed.value:
                return extract_int_value(parsed.value[key])
    if parsed.kind == GraphValueKind.RAW and isinstance(parsed.value, str):
        text = parsed.value.strip()
        if _SIGNED_INTEGER.match(text):
            return int(text)
    return None
