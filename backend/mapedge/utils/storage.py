"""Filesystem & object storage helpers.

The published documents, the transient export chunks and the image cache all
live in one key-value object store.  :class:`BlobStore` is the contract the
rest of the code-base talks to; two implementations are provided:

* :class:`LocalBlobStore` keeps every object as a file below ``BLOB_ROOT``
  with a small JSON sidecar holding its metadata;
* :class:`InMemoryBlobStore` keeps everything in a dict (tests, local dev).
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from mapedge.config import settings

logger = logging.getLogger(__name__)

_META_SUFFIX = ".meta.json"


def ensure_dir_exists(path: Path) -> Path:
    """Ensure that the given directory exists, creating it if necessary."""
    path.mkdir(parents=True, exist_ok=True)
    return path


def is_safe_key(key: str) -> bool:
    """Reject empty keys, absolute keys and keys walking up the tree."""
    if not isinstance(key, str) or not key.strip():
        return False
    if key.startswith("/") or "\\" in key:
        return False
    return ".." not in key.split("/")


@dataclass
class BlobObject:
    key: str
    body: bytes = b""
    size: int = 0
    content_type: Optional[str] = None
    cache_control: Optional[str] = None
    uploaded: Optional[datetime] = None


@dataclass
class BlobListing:
    objects: list[BlobObject] = field(default_factory=list)
    truncated: bool = False
    cursor: Optional[str] = None


class BlobStore(ABC):
    """Abstract key-value object store (get/put/delete/head/list)."""

    @abstractmethod
    async def get(self, key: str) -> Optional[BlobObject]:
        """Return the object with its body, or ``None`` when absent."""

    @abstractmethod
    async def head(self, key: str) -> Optional[BlobObject]:
        """Return the object's metadata only (empty body), or ``None``."""

    @abstractmethod
    async def put(
        self,
        key: str,
        body: bytes | str,
        content_type: Optional[str] = None,
        cache_control: Optional[str] = None,
    ) -> BlobObject:
        """Store ``body`` under ``key``, replacing any previous object."""

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Delete ``key``. Deleting a missing key is not an error."""

    @abstractmethod
    async def list(
        self, prefix: str = "", cursor: Optional[str] = None, limit: int = 1000
    ) -> BlobListing:
        """List objects (metadata only) in key order, ``limit`` at a time."""

    @staticmethod
    def _check_key(key: str) -> None:
        if not is_safe_key(key):
            raise ValueError(f"Invalid object key: {key!r}")

    @staticmethod
    def _page(keys: list[str], cursor: Optional[str], limit: int) -> tuple[list[str], bool, Optional[str]]:
        # The cursor is the last key returned by the previous page.
        if cursor:
            keys = [k for k in keys if k > cursor]
        page = keys[:limit]
        truncated = len(keys) > limit
        return page, truncated, (page[-1] if truncated and page else None)


class InMemoryBlobStore(BlobStore):
    """Dict-backed store for local development and testing."""

    def __init__(self) -> None:
        self._objects: dict[str, BlobObject] = {}

    async def get(self, key: str) -> Optional[BlobObject]:
        self._check_key(key)
        obj = self._objects.get(key)
        if obj is None:
            return None
        return BlobObject(
            key=obj.key,
            body=obj.body,
            size=obj.size,
            content_type=obj.content_type,
            cache_control=obj.cache_control,
            uploaded=obj.uploaded,
        )

    async def head(self, key: str) -> Optional[BlobObject]:
        obj = await self.get(key)
        if obj is not None:
            obj.body = b""
        return obj

    async def put(self, key, body, content_type=None, cache_control=None) -> BlobObject:
        self._check_key(key)
        data = body.encode("utf-8") if isinstance(body, str) else bytes(body)
        obj = BlobObject(
            key=key,
            body=data,
            size=len(data),
            content_type=content_type,
            cache_control=cache_control,
            uploaded=datetime.now(timezone.utc),
        )
        self._objects[key] = obj
        return obj

    async def delete(self, key: str) -> None:
        self._check_key(key)
        self._objects.pop(key, None)

    async def list(self, prefix="", cursor=None, limit=1000) -> BlobListing:
        keys = sorted(k for k in self._objects if k.startswith(prefix))
        page, truncated, next_cursor = self._page(keys, cursor, limit)
        objects = [await self.head(k) for k in page]
        return BlobListing(objects=objects, truncated=truncated, cursor=next_cursor)

    def keys(self) -> list[str]:
        return sorted(self._objects)


class LocalBlobStore(BlobStore):
    """
    Local disk implementation of BlobStore.
    Stores objects below a root directory; blocking file I/O runs in a thread.
    """

    def __init__(self, root_dir: str | Path):
        self.root_dir = Path(root_dir)
        ensure_dir_exists(self.root_dir)
        # Held while swapping or reading a body/sidecar pair.
        self._lock = threading.Lock()

    def _path(self, key: str) -> Path:
        self._check_key(key)
        return self.root_dir / key

    @staticmethod
    def _meta_path(path: Path) -> Path:
        return path.with_name(path.name + _META_SUFFIX)

    def _read_meta(self, key: str, path: Path) -> BlobObject:
        meta: dict = {}
        meta_path = self._meta_path(path)
        if meta_path.exists():
            try:
                meta = json.loads(meta_path.read_text(encoding="utf-8"))
            except (OSError, ValueError) as exc:
                logger.warning("Unreadable metadata for %s: %s", key, exc)
        stat = path.stat()
        return BlobObject(
            key=key,
            size=stat.st_size,
            content_type=meta.get("content_type"),
            cache_control=meta.get("cache_control"),
            uploaded=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
        )

    @staticmethod
    def _stage(target: Path, data: bytes) -> Path:
        """Write ``data`` to a uniquely named temp file beside ``target``."""
        fd, tmp_name = tempfile.mkstemp(dir=target.parent, prefix=f".{target.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(data)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        return Path(tmp_name)

    def _get_sync(self, key: str, with_body: bool) -> Optional[BlobObject]:
        path = self._path(key)
        with self._lock:
            if not path.is_file():
                return None
            obj = self._read_meta(key, path)
            if with_body:
                obj.body = path.read_bytes()
        return obj

    def _put_sync(self, key: str, data: bytes, content_type, cache_control) -> BlobObject:
        path = self._path(key)
        meta_path = self._meta_path(path)
        ensure_dir_exists(path.parent)
        meta = json.dumps({"content_type": content_type, "cache_control": cache_control}).encode("utf-8")
        staged: list[tuple[Path, Path]] = []
        try:
            # Stage body and sidecar in private temp files, then swap both in together.
            staged.append((self._stage(path, data), path))
            staged.append((self._stage(meta_path, meta), meta_path))
            with self._lock:
                for tmp_path, target in staged:
                    os.replace(tmp_path, target)
                return self._read_meta(key, path)
        finally:
            for tmp_path, _ in staged:
                tmp_path.unlink(missing_ok=True)

    def _delete_sync(self, key: str) -> None:
        path = self._path(key)
        with self._lock:
            path.unlink(missing_ok=True)
            self._meta_path(path).unlink(missing_ok=True)

    def _keys_sync(self, prefix: str) -> list[str]:
        keys = []
        for path in self.root_dir.rglob("*"):
            if not path.is_file() or path.name.endswith(_META_SUFFIX) or path.name.endswith(".tmp"):
                continue
            key = path.relative_to(self.root_dir).as_posix()
            if key.startswith(prefix):
                keys.append(key)
        return sorted(keys)

    async def get(self, key: str) -> Optional[BlobObject]:
        return await asyncio.to_thread(self._get_sync, key, True)

    async def head(self, key: str) -> Optional[BlobObject]:
        return await asyncio.to_thread(self._get_sync, key, False)

    async def put(self, key, body, content_type=None, cache_control=None) -> BlobObject:
        data = body.encode("utf-8") if isinstance(body, str) else bytes(body)
        obj = await asyncio.to_thread(self._put_sync, key, data, content_type, cache_control)
        logger.debug("Stored %s (%d bytes)", key, obj.size)
        return obj

    async def delete(self, key: str) -> None:
        await asyncio.to_thread(self._delete_sync, key)

    async def list(self, prefix="", cursor=None, limit=1000) -> BlobListing:
        keys = await asyncio.to_thread(self._keys_sync, prefix)
        page, truncated, next_cursor = self._page(keys, cursor, limit)
        objects = [await self.head(k) for k in page]
        return BlobListing(objects=[o for o in objects if o is not None], truncated=truncated, cursor=next_cursor)


_default_store: Optional[BlobStore] = None


def get_blob_store() -> BlobStore:
    """Process-wide store rooted at ``settings.BLOB_ROOT`` (FastAPI dependency)."""
    global _default_store
    if _default_store is None:
        _default_store = LocalBlobStore(settings.BLOB_ROOT)
        logger.info("Blob store rooted at %s", Path(settings.BLOB_ROOT).resolve())
    return _default_store
