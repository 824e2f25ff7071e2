"""Attachment URL resolution.

Attachment cells arrive in many shapes: proper attachment objects (with
``url`` and ``thumbnails``), bare URL strings, comma-separated URL strings,
JSON-encoded arrays or objects, or lists mixing all of the above.  The helpers
below flatten any of these into a list of canonical, de-duplicated URLs.
"""

from __future__ import annotations

import json
import re
from typing import Any, Optional

_HTTP_RE = re.compile(r"^https?://", re.IGNORECASE)
_LEADING_SPACE_RE = re.compile(r"^(%20)+", re.IGNORECASE)
_SCHEME_SLASHES_RE = re.compile(r"^(https?:)/{2,}", re.IGNORECASE)
_PATH_SLASHES_RE = re.compile(r"([^:])/{2,}")


def is_attachment_object(value: Any) -> bool:
    return isinstance(value, dict) and bool(value.get("url") or value.get("thumbnails"))


def is_attachment_list(value: Any) -> bool:
    """True for a list whose first entry is an attachment object."""
    return isinstance(value, list) and bool(value) and is_attachment_object(value[0])


def pick_attachment_url(att: Any) -> Optional[str]:
    """Return the preferred URL of one attachment (large thumb, full thumb, original)."""
    if not att:
        return None
    if isinstance(att, str):
        candidate = att.strip()
        return candidate if _HTTP_RE.match(candidate) else None
    if not isinstance(att, dict):
        return None
    thumbnails = att.get("thumbnails") or {}
    for size in ("large", "full"):
        url = (thumbnails.get(size) or {}).get("url") if isinstance(thumbnails, dict) else None
        if url:
            return url
    return att.get("url") or None


def normalize_url(url: Any) -> str:
    s = str(url or "").strip()
    s = _LEADING_SPACE_RE.sub("", s).lstrip()
    s = _SCHEME_SLASHES_RE.sub(lambda m: f"{m.group(1)}//", s)
    return _PATH_SLASHES_RE.sub(r"\1/", s)


def collect_attachment_urls(value: Any) -> list[str]:
    """Flatten any attachment-ish value into unique canonical URLs, first-seen order."""
    urls: dict[str, None] = {}

    def push(url: Optional[str]) -> None:
        if url:
            urls.setdefault(normalize_url(url), None)

    def walk(v: Any) -> None:
        if v is None:
            return
        if isinstance(v, (list, tuple)):
            for item in v:
                walk(item)
            return
        if isinstance(v, str):
            s = v.strip()
            if (s.startswith("[") and s.endswith("]")) or (s.startswith("{") and s.endswith("}")):
                try:
                    walk(json.loads(s))
                    return
                except ValueError:
                    pass
            for part in s.split(",") if "," in s else [s]:
                push(pick_attachment_url(part))
            return
        if isinstance(v, dict):
            if v.get("url") or v.get("thumbnails"):
                push(pick_attachment_url(v))
                return
            for item in v.values():
                walk(item)

    walk(value)
    return list(urls)
