"""Typed view of upstream table records.

A raw record is ``{"id": "rec…", "fields": {...}, "createdTime": "…"}``.  Each
cell value is classified once, at the boundary, into a :class:`FieldValue`
tagged with a :class:`ValueKind` so normalisers can dispatch on the tag.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

RECORD_ID_RE = re.compile(r"rec[a-zA-Z0-9]{14}")


class ValueKind(str, Enum):
    EMPTY = "empty"
    TEXT = "text"
    NUMBER = "number"
    BOOLEAN = "boolean"
    LIST = "list"
    ATTACHMENT = "attachment"
    RECORD_LINK = "record_link"
    OBJECT = "object"


@dataclass(frozen=True)
class FieldValue:
    kind: ValueKind
    raw: Any = None


def classify_value(raw: Any) -> FieldValue:
    """Tag a raw cell value with its kind."""
    if raw is None or (isinstance(raw, str) and not raw.strip()):
        return FieldValue(ValueKind.EMPTY, raw)
    if isinstance(raw, bool):
        return FieldValue(ValueKind.BOOLEAN, raw)
    if isinstance(raw, (int, float)):
        return FieldValue(ValueKind.NUMBER, raw)
    if isinstance(raw, str):
        if RECORD_ID_RE.fullmatch(raw.strip()):
            return FieldValue(ValueKind.RECORD_LINK, raw.strip())
        return FieldValue(ValueKind.TEXT, raw)
    if isinstance(raw, (list, tuple)):
        if not raw:
            return FieldValue(ValueKind.EMPTY, raw)
        return FieldValue(ValueKind.LIST, list(raw))
    if isinstance(raw, dict):
        if raw.get("url") or raw.get("thumbnails"):
            return FieldValue(ValueKind.ATTACHMENT, raw)
        return FieldValue(ValueKind.OBJECT, raw)
    return FieldValue(ValueKind.TEXT, str(raw))


@dataclass
class AirtableRecord:
    id: str
    fields: dict[str, Any] = field(default_factory=dict)
    created_time: Optional[str] = None

    @classmethod
    def from_api(cls, payload: dict[str, Any]) -> "AirtableRecord":
        return cls(
            id=str(payload.get("id") or ""),
            fields=dict(payload.get("fields") or {}),
            created_time=payload.get("createdTime"),
        )

    def raw(self, name: str, default: Any = None) -> Any:
        return self.fields.get(name, default)

    def value(self, name: str) -> FieldValue:
        return classify_value(self.fields.get(name))
