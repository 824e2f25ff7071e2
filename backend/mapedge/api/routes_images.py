"""Image proxy endpoints: ``GET /<prefix>/<recordId>/<index>``.

One route is registered per attachment field of each publisher (``/img`` for
network photos, ``/image`` for network images).  Cache hits are served from
the blob store; misses are fetched from the origin and written back to the
cache in the background.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, BackgroundTasks, Depends, Response

from ..publishers import ImageField, Publisher, image_routes
from ..services.airtable import AirtableClient, get_airtable_client
from ..services.images import ImageProxy
from ..utils.storage import BlobStore, get_blob_store

router = APIRouter()
logger = logging.getLogger(__name__)


def _make_endpoint(publisher: Publisher, image: ImageField):
    async def serve_image(
        record_id: str,
        index: str,
        background_tasks: BackgroundTasks,
        store: BlobStore = Depends(get_blob_store),
        fetcher: AirtableClient = Depends(get_airtable_client),
    ) -> Response:
        proxy = ImageProxy(publisher, image, fetcher, store)
        served = await proxy.serve(record_id, index)
        if served.needs_cache_write:
            background_tasks.add_task(proxy.write_cache, served)
        return Response(
            content=served.body,
            media_type=served.content_type,
            headers={
                "Cache-Control": served.cache_control,
                "X-Cache": "HIT" if served.cache_hit else "MISS",
            },
        )

    serve_image.__doc__ = f"Serve attachment ``index`` of '{image.field_name}' on a {publisher.slug} record."
    return serve_image


for _publisher, _image in image_routes():
    router.add_api_route(
        f"/{_image.prefix}/{{record_id}}/{{index}}",
        _make_endpoint(_publisher, _image),
        methods=["GET"],
        name=f"{_publisher.slug}-{_image.prefix}",
    )
