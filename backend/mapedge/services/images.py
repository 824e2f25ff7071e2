"""Image prewarm and pull-through cache for record attachments.

Attachment URLs handed out by the upstream store are short-lived signed URLs,
so features never point at them directly.  They point at
``/<prefix>/<recordId>/<index>`` instead, served by :class:`ImageProxy`:

* hit: bytes come straight from the blob store;
* miss: the record is re-read for a fresh URL, the bytes are fetched and
  returned, and the caller schedules :meth:`ImageProxy.write_cache` in the
  background so the next request is a hit.

:func:`prewarm_records` fills the same cache ahead of demand after an export
completes.  It is best effort: failures are logged per item and skipped.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable, Optional, Sequence

import ffmpeg
import httpx

from mapedge.config import settings
from mapedge.exceptions import AttachmentFetchError, NotFoundError, UpstreamError, ValidationFailure
from mapedge.models.record import RECORD_ID_RE, AirtableRecord
from mapedge.publishers import ImageField, Publisher
from mapedge.services.attachments import collect_attachment_urls, is_attachment_list
from mapedge.utils.ffmpeg import WEBP_CONTENT_TYPE, transcode_image
from mapedge.utils.storage import BlobStore

logger = logging.getLogger(__name__)

_INDEX_RE = re.compile(r"[0-9]+")
_FIELD_SLUG_RE = re.compile(r"[^a-z0-9_-]+")


def cache_key(record_id: str, field_name: str, index: int) -> str:
    field_slug = _FIELD_SLUG_RE.sub("-", field_name.lower()).strip("-") or "field"
    return f"images/{record_id}/{field_slug}/{index}"


async def run_bounded(
    items: Iterable[Any],
    limit: int,
    fn: Callable[[Any], Awaitable[Any]],
) -> list[Any]:
    """Run ``fn`` over ``items`` with a fixed pool of ``limit`` workers.

    A failing item is logged and leaves ``None`` in its result slot.
    """
    pending = list(items)
    results: list[Any] = [None] * len(pending)
    queue: asyncio.Queue = asyncio.Queue()
    for position, item in enumerate(pending):
        queue.put_nowait((position, item))

    async def worker() -> None:
        while True:
            try:
                position, item = queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            try:
                results[position] = await fn(item)
            except Exception as exc:
                logger.warning("Background item %r failed: %s", item, exc, exc_info=True)

    workers = min(max(limit, 1), len(pending))
    if workers:
        await asyncio.gather(*(worker() for _ in range(workers)))
    return results


async def render_image(body: bytes, content_type: Optional[str]) -> tuple[bytes, str]:
    """Resize/transcode to WebP when enabled; the original bytes on any failure."""
    original_type = content_type or "application/octet-stream"
    if not settings.IMAGE_RESIZE_ENABLED:
        return body, original_type
    try:
        resized = await asyncio.to_thread(
            transcode_image, body, settings.IMAGE_WIDTH, settings.IMAGE_QUALITY
        )
    except ffmpeg.Error as exc:
        stderr = exc.stderr.decode("utf8", errors="replace") if exc.stderr else str(exc)
        logger.warning("ffmpeg could not transcode image, keeping original: %s", stderr[:300])
        return body, original_type
    except OSError as exc:
        logger.warning("ffmpeg unavailable (%s), keeping original image", exc)
        return body, original_type
    return resized, WEBP_CONTENT_TYPE


async def fetch_attachment(client: httpx.AsyncClient, url: str) -> tuple[bytes, Optional[str]]:
    try:
        response = await client.get(url)
    except httpx.RequestError as exc:
        logger.error("Request error fetching attachment: %s", exc)
        raise AttachmentFetchError(url) from exc
    if response.status_code < 200 or response.status_code >= 300:
        raise AttachmentFetchError(url, response.status_code)
    return response.content, response.headers.get("content-type")


def _attachment_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=settings.IMAGE_FETCH_TIMEOUT, follow_redirects=True)


# ---------------------------------------------------------------------------
# Prewarm
# ---------------------------------------------------------------------------


@dataclass
class PrewarmStats:
    records: int = 0
    stored: int = 0
    skipped: int = 0
    failed: int = 0

    def as_dict(self) -> dict[str, int]:
        return {"records": self.records, "stored": self.stored, "skipped": self.skipped, "failed": self.failed}


@dataclass
class _WarmItem:
    record_id: str
    field_name: str
    index: int
    url: str = field(repr=False)


async def prewarm_records(
    records: Sequence[AirtableRecord],
    image_fields: Sequence[ImageField],
    store: BlobStore,
    flush: bool = False,
) -> PrewarmStats:
    """Populate the image cache for every record with attachments.

    ``flush=False`` skips keys already present in the cache; ``flush=True``
    overwrites them.
    """
    stats = PrewarmStats()
    max_count = settings.IMAGE_MAX_COUNT

    async with _attachment_client() as client:

        async def warm_one(item: _WarmItem) -> None:
            key = cache_key(item.record_id, item.field_name, item.index)
            if not flush and await store.head(key) is not None:
                stats.skipped += 1
                return
            try:
                body, content_type = await fetch_attachment(client, item.url)
                body, content_type = await render_image(body, content_type)
                await store.put(key, body, content_type=content_type, cache_control=settings.IMAGE_CACHE_CONTROL)
            except Exception as exc:
                stats.failed += 1
                logger.warning("Prewarm failed for %s: %s", key, exc)
                return
            stats.stored += 1
            logger.debug("Prewarmed %s", key)

        async def warm_record(record: AirtableRecord) -> None:
            items = []
            for image in image_fields:
                value = record.raw(image.field_name)
                if not is_attachment_list(value):
                    continue
                urls = collect_attachment_urls(value)[:max_count]
                items.extend(_WarmItem(record.id, image.field_name, idx, url) for idx, url in enumerate(urls))
            if not items:
                return
            stats.records += 1
            await run_bounded(items, settings.IMAGE_FETCH_CONCURRENCY, warm_one)

        await run_bounded(records, settings.IMAGE_RECORD_CONCURRENCY, warm_record)

    logger.info("Prewarm finished (flush=%s): %s", flush, stats.as_dict())
    return stats


async def prewarm_publisher(publisher: Publisher, fetcher, store: BlobStore, flush: bool = False) -> PrewarmStats:
    """Re-read the publisher's attachment columns and prewarm them."""
    if not publisher.image_fields:
        return PrewarmStats()
    fields = [image.field_name for image in publisher.image_fields]
    records = await fetcher.fetch_all(publisher.table, fields)
    return await prewarm_records(records, publisher.image_fields, store, flush=flush)


# ---------------------------------------------------------------------------
# Pull-through proxy
# ---------------------------------------------------------------------------


@dataclass
class ServedImage:
    key: str
    body: bytes
    content_type: str
    cache_control: str
    cache_hit: bool

    @property
    def needs_cache_write(self) -> bool:
        return not self.cache_hit


class ImageProxy:
    """Serves one attachment field of one publisher through the cache."""

    def __init__(self, publisher: Publisher, image: ImageField, fetcher, store: BlobStore) -> None:
        self.publisher = publisher
        self.image = image
        self.fetcher = fetcher
        self.store = store

    @staticmethod
    def validate(record_id: str, index: str | int) -> int:
        if not isinstance(record_id, str) or not RECORD_ID_RE.fullmatch(record_id):
            raise ValidationFailure("Bad record id")
        if isinstance(index, int):
            idx = index
        elif isinstance(index, str) and _INDEX_RE.fullmatch(index):
            idx = int(index)
        else:
            raise ValidationFailure("Bad index")
        if idx < 0 or idx >= settings.IMAGE_MAX_COUNT:
            raise ValidationFailure("Bad index")
        return idx

    async def serve(self, record_id: str, index: str | int) -> ServedImage:
        idx = self.validate(record_id, index)
        key = cache_key(record_id, self.image.field_name, idx)

        cached = await self.store.get(key)
        if cached is not None:
            return ServedImage(
                key=key,
                body=cached.body,
                content_type=cached.content_type or "application/octet-stream",
                cache_control=cached.cache_control or settings.IMAGE_CACHE_CONTROL,
                cache_hit=True,
            )

        logger.info("Image cache miss for %s", key)
        try:
            record = await self.fetcher.fetch_record(self.publisher.table, record_id)
        except UpstreamError as exc:
            if exc.upstream_status == 404:
                raise NotFoundError("Record not found") from exc
            raise

        urls = collect_attachment_urls(record.raw(self.image.field_name))
        if idx >= len(urls):
            raise NotFoundError(f"{self.image.field_name} URL missing")

        async with _attachment_client() as client:
            body, content_type = await fetch_attachment(client, urls[idx])
        body, content_type = await render_image(body, content_type)
        return ServedImage(
            key=key,
            body=body,
            content_type=content_type,
            cache_control=settings.IMAGE_CACHE_CONTROL,
            cache_hit=False,
        )

    async def write_cache(self, served: ServedImage) -> None:
        """Background cache fill after a miss; failures are only logged."""
        try:
            await self.store.put(
                served.key,
                served.body,
                content_type=served.content_type,
                cache_control=served.cache_control,
            )
            logger.debug("Cached %s (%d bytes)", served.key, len(served.body))
        except Exception as exc:
            logger.error("Failed to cache %s: %s", served.key, exc, exc_info=True)
