"""Haystack grid model.

A grid is an ordered set of named columns, a header metadata mapping and,
per column, an ordered list of cell values. Columns grow independently:
``add`` appends to one column only, so columns may have different lengths.
The row count is the length of the longest column and a missing cell reads
as absent. Decoders rely on this; it is part of the model, not an accident.

Cell values are one of:

- ``None``: absent (never written)
- ``MARKER``: presence-only tag
- ``bool``, ``str``
- ``Number``, ``Symbol``, ``Ref``, ``Uri``, ``Coord``
- timezone-aware ``datetime``
- ``list`` / ``dict`` of cell values
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Final


class _Marker:
    """Singleton type of the ``MARKER`` value."""

    _instance: _Marker | None = None

    def __new__(cls) -> _Marker:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "MARKER"

    def __str__(self) -> str:
        return "M"


MARKER: Final = _Marker()


@dataclass(frozen=True)
class Number:
    """Numeric cell with an optional unit suffix."""

    val: int | float
    unit: str | None = None

    def __str__(self) -> str:
        val = self.val
        if isinstance(val, float) and val.is_integer() and abs(val) < 1e16:
            val = int(val)
        return f"{val}{self.unit or ''}"


@dataclass(frozen=True)
class Symbol:
    """Symbol cell, ``^name`` on the wire."""

    name: str

    def __str__(self) -> str:
        return f"^{self.name}"


@dataclass(frozen=True)
class Ref:
    """Entity reference with an optional display string."""

    id: str
    dis: str | None = None

    def __str__(self) -> str:
        if self.dis is None:
            return f"@{self.id}"
        return f'@{self.id} "{self.dis}"'


@dataclass(frozen=True)
class Uri:
    """URI cell, backtick quoted on the wire."""

    val: str

    def __str__(self) -> str:
        return self.val


@dataclass(frozen=True)
class Coord:
    """Geographic coordinate."""

    lat: float
    lng: float

    def __str__(self) -> str:
        return f"C({self.lat},{self.lng})"


def format_datetime(value: datetime) -> str:
    """Render a date-time as ISO 8601 in UTC with millisecond precision."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    text = value.astimezone(UTC).isoformat(timespec="milliseconds")
    return text.replace("+00:00", "Z")


def to_display(value: Any) -> str:
    """Return the display text of a raw cell value (absent is empty)."""
    if value is None:
        return ""
    if value is True:
        return "true"
    if value is False:
        return "false"
    if isinstance(value, datetime):
        return format_datetime(value)
    if isinstance(value, list):
        return "[" + ",".join(to_display(item) for item in value) + "]"
    if isinstance(value, dict):
        tags = (
            name if item is MARKER else f"{name}:{to_display(item)}"
            for name, item in value.items()
        )
        return "{" + " ".join(tags) + "}"
    return str(value)


def cell_type(raw: Any) -> str:
    """Classify a raw cell value by its Haystack kind.

    Plain strings are classified by their leading sigil so values typed on
    the command line read the same as decoded ones.
    """
    if raw is None or raw is MARKER:
        return "Marker"
    if isinstance(raw, bool):
        return "Bool"
    if isinstance(raw, (Number, int, float)):
        return "Number"
    if isinstance(raw, Symbol):
        return "Symbol"
    if isinstance(raw, Ref):
        return "Reference"
    if isinstance(raw, Uri):
        return "URI"
    if isinstance(raw, Coord):
        return "Coord"
    if isinstance(raw, datetime):
        return "DateTime"
    if isinstance(raw, list):
        return "Array"
    if isinstance(raw, str):
        if raw.startswith("["):
            return "Array"
        if raw.startswith("^"):
            return "Symbol"
        if raw.startswith("@"):
            return "Reference"
        if raw.startswith("http"):
            return "URI"
        return "String"
    return "Dictionary"


class Grid:
    """In-memory Haystack grid.

    Usage:
        grid = Grid(version="3.0")
        grid.add("filter", "point")
        grid.add("limit", Number(10))
    """

    def __init__(
        self,
        version: str | None = None,
        meta: dict[str, Any] | None = None,
    ) -> None:
        self.version = version
        self.meta: dict[str, Any] = dict(meta) if meta else {}
        self._columns: dict[str, list[Any]] = {}

    def __repr__(self) -> str:
        return (
            f"Grid(version={self.version!r}, names={self.names!r}, "
            f"rows={self.row_count()})"
        )

    @property
    def names(self) -> list[str]:
        """Column names in display order."""
        return list(self._columns)

    # -------------------------------------------------------------------------
    # Mutation
    # -------------------------------------------------------------------------

    def add(self, name: str, value: Any) -> None:
        """Append a cell to a column, creating the column on first use."""
        self._columns.setdefault(name, []).append(value)

    def add_column(self, name: str) -> None:
        """Create an empty column if it does not exist yet."""
        self._columns.setdefault(name, [])

    def set_meta(self, name: str, value: Any = MARKER) -> None:
        """Set a header metadata entry (a marker tag by default)."""
        self.meta[name] = value

    def project(self, names: Iterable[str]) -> None:
        """Keep only the given columns, in the order given."""
        columns = self._columns
        self._columns = {name: columns[name] for name in names if name in columns}

    def limit(self, rows: int) -> None:
        """Truncate every column to at most ``rows`` cells."""
        for values in self._columns.values():
            del values[rows:]

    def clear(self) -> None:
        """Drop all columns and cells."""
        self._columns.clear()

    # -------------------------------------------------------------------------
    # Access
    # -------------------------------------------------------------------------

    def column_count(self) -> int:
        return len(self._columns)

    def row_count(self) -> int:
        return max((len(values) for values in self._columns.values()), default=0)

    def index(self, name: str) -> int | None:
        """Return the position of a column, or None when it does not exist."""
        for x, column in enumerate(self._columns):
            if column == name:
                return x
        return None

    def name(self, x: int) -> str:
        return self.names[x]

    def column(self, name: str) -> list[Any]:
        return self._columns[name]

    def raw(self, x: int, y: int) -> Any:
        """Return the raw cell at column ``x``, row ``y`` (None when absent)."""
        values = self._columns[self.name(x)]
        return values[y] if y < len(values) else None

    def value(self, x: int, y: int) -> str:
        """Return the display text of a cell."""
        return to_display(self.raw(x, y))

    def rows(self) -> Iterator[dict[str, Any]]:
        """Iterate rows as dicts, leaving out absent cells."""
        for y in range(self.row_count()):
            row = {}
            for name, values in self._columns.items():
                if y < len(values) and values[y] is not None:
                    row[name] = values[y]
            yield row
