"""Celery task definitions.

Two kinds of background work run outside the request cycle:

* ``prewarm_images_task`` fills the image cache after a publish;
* ``run_export_job_task`` drives an export job to completion for callers
  that do not want to poll the regenerate endpoint themselves.

Both are thin synchronous shells around the async services.
"""

import asyncio
import logging

from celery import Celery, Task

from mapedge.config import settings
from mapedge.db.database import SessionLocal, create_tables
from mapedge.logging_config import setup_logging as setup_app_logging
from mapedge.publishers import get_publisher
from mapedge.services.airtable import AirtableClient
from mapedge.services.export_job import ExportJobRunner
from mapedge.services.images import prewarm_publisher
from mapedge.utils.storage import get_blob_store

# --- Logger Setup ---
setup_app_logging()
logger = logging.getLogger(__name__)


# --- Celery Application Setup ---
celery_app = Celery(
    "mapedge",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["mapedge.workers.tasks"],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
)


class LoggedTask(Task):
    """Base Celery Task that logs calls, failures and results."""

    abstract = True

    def __call__(self, *args, **kwargs):
        logger.info(f"Task {self.name} [{self.request.id}] called with args: {args}, kwargs: {kwargs}")
        return super().__call__(*args, **kwargs)

    def on_failure(self, exc, task_id, args, kwargs, einfo):
        logger.error(f"Task {self.name} [{task_id}] failed: {exc}", exc_info=einfo)
        super().on_failure(exc, task_id, args, kwargs, einfo)

    def on_success(self, retval, task_id, args, kwargs):
        logger.info(f"Task {self.name} [{task_id}] completed successfully. Result: {retval}")
        super().on_success(retval, task_id, args, kwargs)


def _publisher_or_fail(slug: str):
    publisher = get_publisher(slug)
    if publisher is None:
        raise ValueError(f"Unknown publisher '{slug}'")
    return publisher


# --- Image Prewarm Task ---
@celery_app.task(name="prewarm_images_task", base=LoggedTask)
def prewarm_images_task(slug: str, flush: bool = False) -> dict:
    publisher = _publisher_or_fail(slug)
    stats = asyncio.run(prewarm_publisher(publisher, AirtableClient(), get_blob_store(), flush=flush))
    return {"publisher": slug, "flush": flush, **stats.as_dict()}


# --- Export Job Task ---
@celery_app.task(name="run_export_job_task", base=LoggedTask)
def run_export_job_task(slug: str, job_id: str, max_pages: int | None = None, origin: str = "") -> dict:
    publisher = _publisher_or_fail(slug)
    create_tables()
    runner = ExportJobRunner(publisher, AirtableClient(), get_blob_store(), SessionLocal)
    result = asyncio.run(runner.run_to_completion(job_id=job_id, max_pages=max_pages, origin=origin))
    if result.completed and publisher.image_fields and settings.PREWARM_ON_COMPLETE:
        prewarm_images_task.delay(slug)
    return result.to_payload()


logger.info("Celery tasks defined and logging configured.")
