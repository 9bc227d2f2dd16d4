"""Haystack JSON grid encoding.

Grids are objects of ``_kind: "grid"`` with ``meta``, ``cols`` and ``rows``.
Typed cells are objects tagged by ``_kind`` (``marker``, ``number``,
``symbol``, ``ref``, ``uri``, ``dateTime``, ``coord``); strings, booleans,
lists and plain objects are native JSON.
"""

from __future__ import annotations

import json
import math
from datetime import datetime
from typing import Any

from ..errors import GridError
from ..grid import MARKER, Coord, Grid, Number, Ref, Symbol, Uri, format_datetime, to_display
from .base import DEFAULT_VERSION, JSON, GridCodec


def _looks_numeric(value: str) -> bool:
    try:
        number = float(value)
    except ValueError:
        return False
    return math.isfinite(number)


def to_json(value: Any) -> Any:
    """Convert a cell value to its JSON form (None stays None)."""
    if value is None or isinstance(value, bool):
        return value
    if value is MARKER:
        return {"_kind": "marker"}
    if isinstance(value, Number):
        cell: dict[str, Any] = {"_kind": "number", "val": value.val}
        if value.unit is not None:
            cell["unit"] = value.unit
        return cell
    if isinstance(value, (int, float)):
        return {"_kind": "number", "val": value}
    if isinstance(value, Symbol):
        return {"_kind": "symbol", "val": value.name}
    if isinstance(value, Ref):
        cell = {"_kind": "ref", "val": value.id}
        if value.dis is not None:
            cell["dis"] = value.dis
        return cell
    if isinstance(value, Uri):
        return {"_kind": "uri", "val": value.val}
    if isinstance(value, Coord):
        return {"_kind": "coord", "lat": value.lat, "lng": value.lng}
    if isinstance(value, datetime):
        return {"_kind": "dateTime", "val": format_datetime(value)}
    if isinstance(value, list):
        return [to_json(item) for item in value]
    if isinstance(value, dict):
        return {name: to_json(item) for name, item in value.items()}
    if isinstance(value, str):
        # Command-line strings carry their kind in a leading sigil.
        if _looks_numeric(value):
            number = float(value)
            if number.is_integer() and "." not in value:
                return {"_kind": "number", "val": int(number)}
            return {"_kind": "number", "val": number}
        if value.startswith("^"):
            return {"_kind": "symbol", "val": value[1:]}
        if value.startswith("@"):
            return {"_kind": "ref", "val": value[1:]}
        if value.startswith("http"):
            return {"_kind": "uri", "val": value}
        return value
    return str(value)


def from_json(value: Any) -> Any:
    """Convert a JSON cell to a cell value."""
    if isinstance(value, list):
        return [from_json(item) for item in value]
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return Number(value)
    if not isinstance(value, dict):
        return value

    kind = value.get("_kind")
    if kind == "marker":
        return MARKER
    if kind == "number":
        return Number(value.get("val", 0), value.get("unit"))
    if kind == "symbol":
        return Symbol(str(value.get("val", "")))
    if kind == "ref":
        return Ref(str(value.get("val", "")), value.get("dis"))
    if kind == "uri":
        return Uri(str(value.get("val", "")))
    if kind == "dateTime":
        try:
            return datetime.fromisoformat(str(value.get("val", "")))
        except ValueError:
            return str(value.get("val", ""))
    if kind == "coord":
        return Coord(float(value.get("lat", 0)), float(value.get("lng", 0)))
    return {name: from_json(item) for name, item in value.items()}


class JsonCodec(GridCodec):
    """Haystack JSON codec."""

    content_type = JSON

    def encode(self, grid: Grid, version: str | None = None) -> str:
        meta: dict[str, Any] = {"ver": version or grid.version or DEFAULT_VERSION}
        meta.update(
            (name, to_json(value)) for name, value in grid.meta.items() if name != "ver"
        )

        if grid.column_count() > 0:
            cols = [{"name": name} for name in grid.names]
            rows = []
            for row in grid.rows():
                rows.append({name: to_json(value) for name, value in row.items()})
        else:
            cols = [{"name": "empty"}]
            rows = []

        return json.dumps({"_kind": "grid", "meta": meta, "cols": cols, "rows": rows})

    def decode(self, text: str) -> tuple[Grid, str | None]:
        try:
            data = json.loads(text)
        except ValueError as err:
            raise GridError(f"Failed to parse response: {JSON}") from err

        if not isinstance(data, dict) or data.get("_kind") != "grid":
            raise GridError("Response is not grid")

        try:
            return self._build(data)
        except (AttributeError, TypeError, ValueError) as err:
            raise GridError(f"Malformed grid: {err}") from err

    def _build(self, data: dict[str, Any]) -> tuple[Grid, str | None]:
        meta = {name: from_json(value) for name, value in (data.get("meta") or {}).items()}
        version = meta.pop("ver", None)
        grid = Grid(version=to_display(version) or None, meta=meta)

        if "err" in meta:
            dis = meta.get("dis")
            return grid, to_display(dis) if dis is not None else "Unknown server error"

        cols = data.get("cols") or []
        names = [str(col.get("name")) for col in cols]
        if names == ["empty"]:
            names = []
        for name in names:
            grid.add_column(name)

        for row in data.get("rows") or []:
            for name in names:
                grid.add(name, from_json(row.get(name)))

        return grid, None
