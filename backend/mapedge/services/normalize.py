"""Cell value normalisers used when turning records into feature properties."""

from __future__ import annotations

import json
import math
import re
from typing import Any, Callable, Optional

from mapedge.models.record import RECORD_ID_RE, FieldValue, ValueKind, classify_value

# Preferred display keys on object-shaped values, highest priority first.
DISPLAY_KEYS = ("email", "name", "text", "value")
GEOMETRY_TYPES = {
    "Point", "MultiPoint", "LineString", "MultiLineString",
    "Polygon", "MultiPolygon", "GeometryCollection",
}

_PARENTHETICAL_RE = re.compile(r"\s*\([^()]*\)\s*$")
_EDGE_PUNCT_RE = re.compile(r"^[\[\]\"']+|[\[\]\"']+$")
_SPACES_RE = re.compile(r"\s+")
_LEADER_SPLIT_RE = re.compile(r"[;,]")


def _scalars(value: FieldValue, out: list[str]) -> None:
    kind = value.kind
    if kind is ValueKind.EMPTY:
        return
    if kind is ValueKind.LIST:
        for item in value.raw:
            _scalars(classify_value(item), out)
        return
    if kind in (ValueKind.OBJECT, ValueKind.ATTACHMENT):
        for key in DISPLAY_KEYS:
            candidate = value.raw.get(key)
            if candidate is not None:
                text = str(candidate).strip()
                if text:
                    out.append(text)
                return
        for item in value.raw.values():
            _scalars(classify_value(item), out)
        return
    if kind is ValueKind.BOOLEAN:
        out.append("true" if value.raw else "false")
        return
    if kind is ValueKind.NUMBER:
        number = value.raw
        out.append(str(int(number)) if isinstance(number, float) and number.is_integer() else str(number))
        return
    # TEXT and RECORD_LINK
    text = str(value.raw).strip()
    if text:
        out.append(text)


def normalize_value(value: Any, transform: Optional[Callable[[str], str]] = None) -> str:
    """Flatten a cell value into a display string.

    Nested lists are flattened, objects contribute their preferred display key,
    repeated scalars are dropped and the result is joined with ``", "``.
    """
    parts: list[str] = []
    _scalars(value if isinstance(value, FieldValue) else classify_value(value), parts)
    if transform is not None:
        parts = [transform(p).strip() for p in parts]
    return ", ".join(dict.fromkeys(p for p in parts if p))


def strip_parenthetical(text: str) -> str:
    """``"Baptist (Southern Convention)"`` -> ``"Baptist"``."""
    previous = None
    while previous != text:
        previous = text
        text = _PARENTHETICAL_RE.sub("", text)
    return text.strip()


def normalize_denomination(value: Any) -> str:
    return normalize_value(value, transform=strip_parenthetical)


def normalize_leaders(value: Any) -> str:
    """Leader names from linked/lookup cells, minus stray quoting and record ids."""
    parts: list[str] = []

    def push_clean(item: Any) -> None:
        if item is None:
            return
        text = _EDGE_PUNCT_RE.sub("", str(item).strip())
        text = _SPACES_RE.sub(" ", text).strip()
        if not text or RECORD_ID_RE.fullmatch(text):
            return
        parts.append(text)

    if isinstance(value, list):
        for item in value:
            if isinstance(item, dict) and "name" in item:
                push_clean(item["name"])
            elif isinstance(item, str) and '","' in item:
                for piece in item.split('","'):
                    push_clean(piece.strip('"'))
            else:
                push_clean(item)
    elif isinstance(value, str):
        text = value.strip()
        parsed: Any = None
        if text.startswith("[") and text.endswith("]"):
            try:
                parsed = json.loads(text)
            except ValueError:
                parsed = None
        if isinstance(parsed, list):
            for item in parsed:
                push_clean(item)
        elif parsed is not None:
            push_clean(parsed)
        else:
            for piece in _LEADER_SPLIT_RE.split(text):
                push_clean(piece)
    elif value is not None:
        push_clean(value)

    return ", ".join(dict.fromkeys(parts))


def to_number(value: Any) -> float:
    """Coerce a coordinate cell to float; NaN when it is not a single number."""
    if isinstance(value, (list, tuple)):
        if len(value) != 1:
            return math.nan
        value = value[0]
    if value is None or isinstance(value, bool):
        return math.nan
    if isinstance(value, str):
        value = value.strip()
        if not value:
            return math.nan
    try:
        return float(value)
    except (TypeError, ValueError):
        return math.nan


def parse_geometry(raw: Any) -> Optional[dict]:
    """Return a GeoJSON geometry from a dict or JSON string, else ``None``."""
    if not raw:
        return None
    geometry = raw
    if isinstance(raw, str):
        try:
            geometry = json.loads(raw)
        except ValueError:
            return None
    if isinstance(geometry, dict) and geometry.get("type") == "Feature":
        geometry = geometry.get("geometry")
    if not isinstance(geometry, dict) or geometry.get("type") not in GEOMETRY_TYPES:
        return None
    return geometry
