"""
Packet filter expressions — compile grid-style filter text into a predicate.

Grammar (keywords case-insensitive, parentheses ignored):

    filter := clause (AND clause)*
    clause := [Column] IN value (, value)*

A value that reads as a number matches a column equal to that number; any
other value matches a column whose text contains it (case-sensitive).
Values are split on commas, so an unquoted value may contain spaces. Values
of one clause are OR-ed, clauses are AND-ed, and a column without a value
never matches.

    [Type] IN 'C1', 'C2' AND [Code] IN 241
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Callable, Iterable

from mu_analyzer.sniffer.packet import Packet


class FilterError(ValueError):
    """Filter text can't be parsed."""


# Column name (lowercase) → accessor
COLUMNS: dict[str, Callable[[Packet], Any]] = {
    "timestamp": lambda p: p.timestamp,
    "direction": lambda p: p.direction,
    "type": lambda p: p.header_type or None,
    "code": lambda p: p.code,
    "subcode": lambda p: p.sub_code,
    "size": lambda p: p.size,
    "data": lambda p: p.hex_dump,
}

_NUMBER_RE = re.compile(r"^[+-]?(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][+-]?\d+)?$")

_TOKEN_RE = re.compile(r"""
    \s*(?:
        (?P<column>\[[^\[\]]*\])
      | (?P<quoted>'[^']*')
      | (?P<comma>,)
      | (?P<word>[^\s,\[\]']+)
    )""", re.VERBOSE)


def _as_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return float(value)
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str) and _NUMBER_RE.match(value.strip()):
        return float(value)
    return None


# ---- Predicate nodes ----

@dataclass(frozen=True)
class NumberEquals:
    number: float

    def matches(self, value: Any) -> bool:
        return _as_number(value) == self.number

    def __str__(self) -> str:
        return f"{self.number:g}"


@dataclass(frozen=True)
class TextContains:
    text: str

    def matches(self, value: Any) -> bool:
        return self.text in str(value)

    def __str__(self) -> str:
        return f"'{self.text}'"


@dataclass(frozen=True)
class ColumnClause:
    """[column] IN v1, v2, ...: true if any value matches a non-null column."""
    column: str
    matchers: tuple[NumberEquals | TextContains, ...]

    def __call__(self, packet: Packet) -> bool:
        value = COLUMNS[self.column.lower()](packet)
        if value is None:
            return False
        return any(m.matches(value) for m in self.matchers)

    def __str__(self) -> str:
        return f"[{self.column}] IN " + ", ".join(str(m) for m in self.matchers)


@dataclass(frozen=True)
class FilterPredicate:
    """Compiled filter: all clauses must hold."""
    clauses: tuple[ColumnClause, ...]
    source: str = ""

    def __call__(self, packet: Packet) -> bool:
        return all(clause(packet) for clause in self.clauses)

    def apply(self, packets: Iterable[Packet]) -> list[Packet]:
        return [p for p in packets if self(p)]

    def __str__(self) -> str:
        return " AND ".join(f"({c})" for c in self.clauses)


# ---- Compiler ----

Token = tuple[str, str, int, int]  # kind, text, start, end


def _tokenize(text: str) -> list[Token]:
    tokens = []
    pos = 0
    text = text.rstrip()
    while pos < len(text):
        m = _TOKEN_RE.match(text, pos)
        if not m:
            raise FilterError(f"Unexpected character {text[pos]!r} at position {pos}")
        kind = m.lastgroup
        tokens.append((kind, m.group(kind), m.start(kind), m.end(kind)))
        pos = m.end()
    return tokens


def _is_and(token: Token) -> bool:
    return token[0] == "word" and token[1].upper() == "AND"


def _parse_value(kind: str, raw: str) -> NumberEquals | TextContains:
    value = raw.replace("'", "").strip()
    if kind == "word" and not value:
        raise FilterError("Empty filter value")
    if _NUMBER_RE.match(value):
        return NumberEquals(float(value))
    return TextContains(value)


def _parse_clause(tokens: list[Token], pos: int, text: str) -> tuple[ColumnClause, int]:
    if pos >= len(tokens) or tokens[pos][0] != "column":
        raise FilterError("Expected [Column]")
    column = tokens[pos][1].strip("[]").strip()
    if column.lower() not in COLUMNS:
        raise FilterError(f"Unknown column: {column!r}")
    pos += 1

    if pos >= len(tokens) or tokens[pos][0] != "word" or tokens[pos][1].upper() != "IN":
        raise FilterError(f"Expected IN after [{column}]")
    pos += 1

    matchers = []
    while True:
        if pos >= len(tokens) or tokens[pos][0] not in ("quoted", "word") or _is_and(tokens[pos]):
            raise FilterError(f"Expected a value for [{column}]")
        kind, raw, start, end = tokens[pos]
        pos += 1
        if kind == "word":
            # An unquoted value runs up to the next comma or AND: "C1 04" is one value
            while pos < len(tokens) and tokens[pos][0] == "word" and not _is_and(tokens[pos]):
                end = tokens[pos][3]
                pos += 1
            raw = text[start:end]
        matchers.append(_parse_value(kind, raw))
        if pos < len(tokens) and tokens[pos][0] == "comma":
            pos += 1
            continue
        break
    return ColumnClause(column, tuple(matchers)), pos


def compile_filter(text: str | None) -> FilterPredicate | None:
    """Compile filter text. Empty text means no filter (returns None).

    Raises FilterError for text that doesn't follow the grammar.
    """
    if text is None or not text.strip():
        return None

    stripped = text.replace("(", "").replace(")", "")
    tokens = _tokenize(stripped)
    clauses = []
    pos = 0
    while True:
        clause, pos = _parse_clause(tokens, pos, stripped)
        clauses.append(clause)
        if pos >= len(tokens):
            break
        if not _is_and(tokens[pos]):
            raise FilterError(f"Expected AND, got {tokens[pos][1]!r}")
        pos += 1
    return FilterPredicate(tuple(clauses), text)
