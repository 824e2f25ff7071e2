"""Endpoints serving and regenerating the published GeoJSON documents.

* ``GET  /{slug}.geojson``               – latest published document.
* ``POST /{slug}/regenerate``            – run one export step (admin).
* ``POST /{slug}/regenerate/run``        – loop steps until completion (admin).
* ``POST /{slug}/regenerate/async``      – hand the loop to a worker (admin).
* ``POST /{slug}/prewarm``               – fill the image cache now (admin).
"""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request, Response, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from ..config import settings
from ..db.database import get_session_factory
from ..exceptions import AppBaseException, NotFoundError
from ..publishers import Publisher
from ..services.airtable import AirtableClient, get_airtable_client
from ..services.export_job import GEOJSON_CONTENT_TYPE, ExportJobRunner, new_job_id
from ..services.images import prewarm_publisher
from ..utils.storage import BlobStore, get_blob_store
from ..workers.tasks import prewarm_images_task, run_export_job_task
from .dependencies import public_origin, publisher_or_404, require_admin

router = APIRouter()
logger = logging.getLogger(__name__)


class RegenerateRequest(BaseModel):
    jobId: Optional[str] = None
    cursor: Optional[str] = None
    maxPages: Optional[int] = Field(default=None, ge=1)
    maxIterations: Optional[int] = Field(default=None, ge=1)


def queue_prewarm(publisher: Publisher, flush: bool = False) -> None:
    """Best-effort hand-off of the image prewarm to the worker queue."""
    if not publisher.image_fields or not settings.PREWARM_ON_COMPLETE:
        return
    try:
        prewarm_images_task.delay(publisher.slug, flush)
        logger.info("Queued image prewarm for '%s'", publisher.slug)
    except Exception as exc:
        logger.warning("Could not queue image prewarm for '%s': %s", publisher.slug, exc)


def _runner(publisher: Publisher, fetcher: AirtableClient, store: BlobStore, session_factory) -> ExportJobRunner:
    return ExportJobRunner(publisher, fetcher, store, session_factory)


@router.get("/{slug}.geojson")
async def get_document(slug: str, store: BlobStore = Depends(get_blob_store)) -> Response:
    """Return the latest published document of ``slug``."""
    publisher = publisher_or_404(slug)
    obj = await store.get(publisher.object_key)
    if obj is None:
        raise NotFoundError("GeoJSON not generated yet")
    return Response(
        content=obj.body,
        media_type=GEOJSON_CONTENT_TYPE,
        headers={"Cache-Control": settings.DOCUMENT_CACHE_CONTROL},
    )


@router.post("/{slug}/regenerate", dependencies=[Depends(require_admin)])
async def regenerate_step(
    slug: str,
    request: Request,
    payload: Optional[RegenerateRequest] = None,
    store: BlobStore = Depends(get_blob_store),
    fetcher: AirtableClient = Depends(get_airtable_client),
    session_factory=Depends(get_session_factory),
) -> dict:
    """Run one bounded export step; repeat with the returned ``jobId`` until completed."""
    publisher = publisher_or_404(slug)
    payload = payload or RegenerateRequest()
    result = await _runner(publisher, fetcher, store, session_factory).step(
        job_id=payload.jobId,
        cursor=payload.cursor,
        max_pages=payload.maxPages,
        origin=public_origin(request),
    )
    if result.completed:
        queue_prewarm(publisher)
    return result.to_payload()


@router.post("/{slug}/regenerate/run", dependencies=[Depends(require_admin)])
async def regenerate_to_completion(
    slug: str,
    request: Request,
    payload: Optional[RegenerateRequest] = None,
    store: BlobStore = Depends(get_blob_store),
    fetcher: AirtableClient = Depends(get_airtable_client),
    session_factory=Depends(get_session_factory),
) -> dict:
    """Loop export steps in-process and answer once, when the job is done."""
    publisher = publisher_or_404(slug)
    payload = payload or RegenerateRequest()
    result = await _runner(publisher, fetcher, store, session_factory).run_to_completion(
        job_id=payload.jobId,
        cursor=payload.cursor,
        max_pages=payload.maxPages,
        max_iterations=payload.maxIterations,
        origin=public_origin(request),
    )
    if result.completed:
        queue_prewarm(publisher)
    return result.to_payload()


@router.post("/{slug}/regenerate/async", dependencies=[Depends(require_admin)])
async def regenerate_in_background(
    slug: str,
    request: Request,
    payload: Optional[RegenerateRequest] = None,
) -> JSONResponse:
    """Queue the whole export on a worker; poll ``/api/jobs/{jobId}`` for progress."""
    publisher = publisher_or_404(slug)
    payload = payload or RegenerateRequest()
    job_id = payload.jobId or new_job_id()
    try:
        run_export_job_task.delay(slug, job_id, payload.maxPages, public_origin(request))
    except Exception as exc:
        logger.error("Could not queue export job %s: %s", job_id, exc, exc_info=True)
        raise AppBaseException("Task queue unavailable", status_code=status.HTTP_503_SERVICE_UNAVAILABLE)
    logger.info("Queued export job %s for '%s'", job_id, slug)
    return JSONResponse(
        status_code=status.HTTP_202_ACCEPTED,
        content={"ok": True, "status": "queued", "jobId": job_id, "objectKey": publisher.object_key},
    )


@router.post("/{slug}/prewarm", dependencies=[Depends(require_admin)])
async def prewarm_images(
    slug: str,
    flush: bool = False,
    store: BlobStore = Depends(get_blob_store),
    fetcher: AirtableClient = Depends(get_airtable_client),
) -> dict:
    """Fill the image cache for ``slug`` right away and report what happened."""
    publisher = publisher_or_404(slug)
    stats = await prewarm_publisher(publisher, fetcher, store, flush=flush)
    return {"ok": True, "publisher": slug, "flush": flush, **stats.as_dict()}
