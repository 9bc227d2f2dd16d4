"""Zinc grid encoding.

Wire layout, one item per line:

    ver:"3.0" name name:value ...     header and grid metadata
    col1,col2,...                     column names, or the word ``empty``
    cell,cell,...                     one line per row

Quoted strings, backtick URIs and bracketed values are scanned as literals:
commas and spaces inside them do not split. The scanner keeps a single
"inside literal" flag that every quote, backtick or bracket character flips.
It is not a nesting counter, so ``[a,[b,c]]`` splits after ``[a,[b`` exactly
as existing servers expect.

Strings are quoted without escaping on encode but ``\\"`` and ``\\n`` are
unescaped on decode. A string holding a double quote therefore does not
survive a round trip unchanged.
"""

from __future__ import annotations

import re
from datetime import datetime
from typing import Any, Final

from ..errors import GridError
from ..grid import MARKER, Coord, Grid, Number, Ref, Symbol, Uri, format_datetime, to_display
from .base import DEFAULT_VERSION, ZINC, GridCodec

_TOGGLES: Final = frozenset("`()[]{}")

_NUMBER_RE: Final = re.compile(
    r"(-?\d[\d_]*(?:\.\d+)?(?:[eE][+-]?\d+)?)"
    r"([A-Za-z%_/$\u0080-\uffff][A-Za-z0-9%_/$\u0080-\uffff]*)?"
)
_REF_RE: Final = re.compile(r'@([^\s"]+)(?:\s+"(.*)")?', re.DOTALL)
_SYMBOL_RE: Final = re.compile(r"\^(\S+)")


def _scan(line: str, start: int, stop: str) -> tuple[str, int]:
    """Read up to the next ``stop`` character outside a literal.

    Returns the token and the index of the stop character (or the line
    length when the line ran out).
    """
    inside = False
    n = start
    length = len(line)
    while n < length:
        ch = line[n]
        if ch == stop and not inside:
            break
        if ch == '"':
            if n == 0 or line[n - 1] != "\\":
                inside = not inside
        elif ch in _TOGGLES:
            inside = not inside
        n += 1
    return line[start:n], n


def split_row(line: str) -> list[str]:
    """Split a row line into cell tokens on commas outside literals."""
    tokens: list[str] = []
    n = 0
    length = len(line)
    while n < length:
        token, n = _scan(line, n, ",")
        tokens.append(token)
        if n < length:
            n += 1
    return tokens


def parse_header(line: str) -> dict[str, Any]:
    """Parse a header line into metadata; bare names become markers."""
    meta: dict[str, Any] = {}
    n = 0
    length = len(line)
    while n < length:
        start = n
        while n < length and line[n] not in ": ":
            n += 1
        name = line[start:n]
        token = ""
        if n < length:
            separator = line[n]
            n += 1
            if separator == ":":
                token, n = _scan(line, n, " ")
                if n < length:
                    n += 1
        if name:
            meta[name] = MARKER if token == "" else decode_cell(token)
    return meta


def _unescape(text: str) -> str:
    return text.replace('\\"', '"').replace("\\n", "\n")


def _looks_like_datetime(token: str) -> bool:
    # Fixed-width ISO 8601 date prefix puts the T at offset 10.
    return len(token) > 10 and token[10] == "T" and token.split(" ", 1)[0].endswith("Z")


def decode_cell(token: str) -> Any:
    """Decode one cell token into a cell value."""
    if token == "":
        return None
    if token == "M":
        return MARKER
    if token == "true":
        return True
    if token == "false":
        return False
    if token.startswith('"'):
        return _unescape(token[1:-1])
    if token.startswith("`"):
        return Uri(_unescape(token[1:-1]))
    if _looks_like_datetime(token):
        try:
            return datetime.fromisoformat(token.split(" ", 1)[0])
        except ValueError:
            return token

    match = _NUMBER_RE.fullmatch(token)
    if match:
        literal, unit = match.groups()
        literal = literal.replace("_", "")
        if "." in literal or "e" in literal or "E" in literal:
            return Number(float(literal), unit)
        return Number(int(literal), unit)

    match = _REF_RE.fullmatch(token)
    if match:
        ref_id, dis = match.groups()
        return Ref(ref_id, None if dis is None else _unescape(dis))

    match = _SYMBOL_RE.fullmatch(token)
    if match:
        return Symbol(match.group(1))

    return token


def _encode_str(value: str) -> str:
    if value[:1].isdigit() or (value[:1] == "-" and value[1:2].isdigit()):
        return value
    if value.startswith(("@", "^")):
        return value
    if _looks_like_datetime(value):
        return value
    if value.startswith("http"):
        return f"`{value}`"
    return f'"{value}"'


def encode_cell(value: Any) -> str:
    """Encode one cell value as a Zinc token."""
    if value is None:
        return ""
    if value is MARKER:
        return "M"
    if value is True:
        return "true"
    if value is False:
        return "false"
    if isinstance(value, str):
        return _encode_str(value)
    if isinstance(value, (int, float)):
        return str(Number(value))
    if isinstance(value, datetime):
        return format_datetime(value)
    if isinstance(value, Uri):
        return f"`{value.val}`"
    if isinstance(value, (Number, Symbol, Ref, Coord)):
        return str(value)
    if isinstance(value, list):
        return "[" + ",".join(encode_cell(item) for item in value) + "]"
    if isinstance(value, dict):
        return "{" + " ".join(_encode_tag(name, item) for name, item in value.items()) + "}"
    return str(value)


def _encode_tag(name: str, value: Any) -> str:
    if value is None or value is MARKER or value == "":
        return name
    return f"{name}:{encode_cell(value)}"


class ZincCodec(GridCodec):
    """Zinc text codec."""

    content_type = ZINC

    def encode(self, grid: Grid, version: str | None = None) -> str:
        version = version or grid.version or DEFAULT_VERSION
        header = [f'ver:"{version}"']
        header.extend(
            _encode_tag(name, value) for name, value in grid.meta.items() if name != "ver"
        )
        lines = [" ".join(header)]

        if grid.column_count() > 0:
            lines.append(",".join(grid.names))
            columns = [grid.column(name) for name in grid.names]
            for y in range(grid.row_count()):
                lines.append(
                    ",".join(
                        encode_cell(values[y] if y < len(values) else None)
                        for values in columns
                    )
                )
        else:
            lines.append("empty")

        return "".join(line + "\n" for line in lines)

    def decode(self, text: str) -> tuple[Grid, str | None]:
        lines = [line.rstrip("\r") for line in text.split("\n")]

        header = lines[0]
        if not header.startswith("ver"):
            raise GridError(f"Failed to parse response: {ZINC}")

        meta = parse_header(header)
        version = meta.pop("ver", None)
        grid = Grid(version=to_display(version) or None, meta=meta)

        if "err" in meta:
            dis = meta.get("dis")
            return grid, to_display(dis) if dis is not None else "Unknown server error"

        columns = lines[1] if len(lines) > 1 else ""
        if columns == "":
            raise GridError("Response is not grid")
        if columns == "empty":
            return grid, None

        names = columns.split(",")
        for name in names:
            grid.add_column(name)

        for line in lines[2:]:
            if line == "":
                break
            tokens = split_row(line)
            for n, name in enumerate(names):
                grid.add(name, decode_cell(tokens[n]) if n < len(tokens) else None)

        return grid, None
