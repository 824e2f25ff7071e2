"""Checkpointed, resumable export of a table into a published GeoJSON document.

A regenerate call runs one *step*: it reads a bounded number of pages from the
upstream table, converts the records to features and either

* stores the features as the next chunk object and advances the checkpoint
  (``in_progress``), or
* when the table is exhausted, merges every chunk in order with the final
  batch, publishes the document and removes chunks and checkpoint
  (``completed``).

Steps of one job are serialised by a per-job lock inside the process and by
the checkpoint's optimistic version across processes.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Optional, Protocol, Sequence

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from mapedge.config import settings
from mapedge.exceptions import ExportJobError, JobConflictError, NotFoundError, ValidationFailure
from mapedge.models.job import ExportJobState, JobStatus, utcnow
from mapedge.publishers import Publisher
from mapedge.services.airtable import PageBatch
from mapedge.utils.storage import BlobStore

logger = logging.getLogger(__name__)

CHUNK_PREFIX = "_jobs/"
GEOJSON_CONTENT_TYPE = "application/geo+json; charset=utf-8"
JOB_ID_RE = re.compile(r"[A-Za-z0-9_-]{1,64}")


class PageFetcher(Protocol):
    async def fetch_page(
        self,
        table: str,
        fields: Sequence[str] | None = None,
        cursor: Optional[str] = None,
        max_pages: int | None = None,
        cell_format: Optional[str] = None,
    ) -> PageBatch: ...


@dataclass
class StepResult:
    status: JobStatus
    job_id: str
    object_key: str
    processed: int = 0
    total_features: int = 0
    next_cursor: Optional[str] = None
    updated_at: Optional[str] = None

    @property
    def completed(self) -> bool:
        return self.status is JobStatus.COMPLETED

    def to_payload(self) -> dict[str, Any]:
        if self.completed:
            return {
                "ok": True,
                "status": self.status.value,
                "jobId": self.job_id,
                "features": self.total_features,
                "updatedAt": self.updated_at,
                "objectKey": self.object_key,
            }
        return {
            "ok": True,
            "status": self.status.value,
            "jobId": self.job_id,
            "nextCursor": self.next_cursor,
            "processed": self.processed,
            "totalFeatures": self.total_features,
            "objectKey": self.object_key,
        }


@dataclass
class SweepReport:
    checkpoints: int = 0
    chunks: int = 0


def new_job_id() -> str:
    return uuid.uuid4().hex


def chunk_key(job_id: str, seq: int) -> str:
    return f"{CHUNK_PREFIX}{job_id}/chunk-{seq:05d}.json"


# ---------------------------------------------------------------------------
# Per-job serialisation inside one process
# ---------------------------------------------------------------------------

_job_locks: dict[str, list] = {}


@asynccontextmanager
async def job_lock(job_id: str):
    """Hold the in-process lock of ``job_id``; entries are dropped when unused."""
    entry = _job_locks.setdefault(job_id, [asyncio.Lock(), 0])
    entry[1] += 1
    try:
        async with entry[0]:
            yield
    finally:
        entry[1] -= 1
        if entry[1] == 0:
            _job_locks.pop(job_id, None)


def _commit(db: Session, job_id: str) -> None:
    try:
        db.commit()
    except (StaleDataError, IntegrityError) as exc:
        db.rollback()
        logger.warning("Checkpoint for job %s changed underneath us: %s", job_id, exc)
        raise JobConflictError(f"Job {job_id} was modified by a concurrent step; retry") from exc


async def _delete_chunks(store: BlobStore, keys: Sequence[str]) -> None:
    for key in keys:
        try:
            await store.delete(key)
        except Exception as exc:
            logger.warning("Could not delete chunk %s: %s", key, exc)


async def discard_state(db: Session, store: BlobStore, state: ExportJobState) -> int:
    """Delete a checkpoint and its chunks; returns the number of chunks removed."""
    keys = list(state.chunk_keys or [])
    job_id = state.job_id
    db.delete(state)
    _commit(db, job_id)
    await _delete_chunks(store, keys)
    logger.info("Discarded job %s (%d chunk(s))", job_id, len(keys))
    return len(keys)


class ExportJobRunner:
    """Drives the export of one publisher's table, step by step."""

    def __init__(
        self,
        publisher: Publisher,
        fetcher: PageFetcher,
        store: BlobStore,
        session_factory,
        checkpoint_ttl: timedelta | None = None,
    ) -> None:
        self.publisher = publisher
        self.fetcher = fetcher
        self.store = store
        self.session_factory = session_factory
        self.checkpoint_ttl = checkpoint_ttl or timedelta(minutes=settings.CHECKPOINT_TTL_MINUTES)

    async def step(
        self,
        job_id: Optional[str] = None,
        cursor: Optional[str] = None,
        max_pages: int | None = None,
        origin: str = "",
    ) -> StepResult:
        """Run one bounded step of ``job_id`` (a new job when omitted).

        An explicit ``cursor`` takes precedence over the checkpointed one.
        """
        job_id = job_id or new_job_id()
        if not JOB_ID_RE.fullmatch(job_id):
            raise ValidationFailure("jobId must be 1-64 characters of [A-Za-z0-9_-]")

        async with job_lock(job_id):
            with self.session_factory() as db:
                state = db.get(ExportJobState, job_id)
                if state is None:
                    state = await self._claim(db, job_id)
                elif state.publisher != self.publisher.slug:
                    raise JobConflictError(f"Job {job_id} belongs to publisher '{state.publisher}'")

                start_cursor = cursor or state.cursor
                logger.info(
                    "Job %s step %d for '%s' starting at cursor %r",
                    job_id, state.chunk_count + 1, self.publisher.slug, start_cursor,
                )
                batch = await self.fetcher.fetch_page(
                    self.publisher.table,
                    self.publisher.fields,
                    start_cursor,
                    max_pages,
                    self.publisher.cell_format,
                )
                features = self.publisher.to_features(batch.records, origin)
                dropped = len(batch.records) - len(features)
                if dropped:
                    logger.debug("Job %s dropped %d record(s) without usable geometry", job_id, dropped)

                if batch.next_cursor is not None:
                    return await self._persist_chunk(db, state, features, batch.next_cursor)
                return await self._finalize(db, state, features)

    async def run_to_completion(
        self,
        job_id: Optional[str] = None,
        cursor: Optional[str] = None,
        max_pages: int | None = None,
        max_iterations: int | None = None,
        origin: str = "",
    ) -> StepResult:
        """Call :meth:`step` until the job completes or the iteration ceiling is hit.

        When the ceiling is reached the last ``in_progress`` result is returned
        so the caller can resume with its ``job_id``.
        """
        limit = max_iterations or settings.EXPORT_MAX_ITERATIONS
        result: Optional[StepResult] = None
        for iteration in range(limit):
            result = await self.step(
                job_id=job_id,
                cursor=cursor if iteration == 0 else None,
                max_pages=max_pages,
                origin=origin,
            )
            job_id = result.job_id
            if result.completed:
                return result
        logger.warning("Job %s still in progress after %d iteration(s)", job_id, limit)
        return result

    async def abandon(self, job_id: str) -> int:
        return await abandon_job(self.store, self.session_factory, job_id)

    async def _check_destination(self, db: Session, job_id: str) -> None:
        object_key = self.publisher.object_key
        query = db.query(ExportJobState).filter(
            ExportJobState.object_key == object_key, ExportJobState.job_id != job_id
        )
        for other in query.all():
            if other.is_expired(self.checkpoint_ttl):
                logger.warning("Sweeping expired job %s before starting %s", other.job_id, job_id)
                await discard_state(db, self.store, other)
            else:
                raise JobConflictError(f"Job {other.job_id} is already publishing {object_key}")

    async def _claim(self, db: Session, job_id: str) -> ExportJobState:
        """Check the destination is free and build an unsaved checkpoint.

        The row is only written once a step has a chunk to record, so a first
        step that fails leaves nothing behind.
        """
        await self._check_destination(db, job_id)
        now = utcnow()
        return ExportJobState(
            job_id=job_id,
            publisher=self.publisher.slug,
            object_key=self.publisher.object_key,
            cursor=None,
            chunk_keys=[],
            chunk_count=0,
            total_features=0,
            created_at=now,
            updated_at=now,
        )

    async def _persist_chunk(
        self, db: Session, state: ExportJobState, features: list[dict], next_cursor: str
    ) -> StepResult:
        is_new = state not in db
        if is_new:
            # Another job may have claimed the destination while we were fetching.
            await self._check_destination(db, state.job_id)

        seq = state.chunk_count + 1
        key = chunk_key(state.job_id, seq)
        await self.store.put(key, json.dumps(features), content_type="application/json")

        # Chunk first, checkpoint second: a crash in between repeats this page
        # range on resume and rewrites the same chunk key.
        state.chunk_keys = [*(state.chunk_keys or []), key]
        state.chunk_count = seq
        state.total_features = (state.total_features or 0) + len(features)
        state.cursor = next_cursor
        state.updated_at = utcnow()
        if is_new:
            db.add(state)
        _commit(db, state.job_id)
        if is_new:
            logger.info("Created job %s for '%s' -> %s", state.job_id, self.publisher.slug, state.object_key)

        logger.info(
            "Job %s persisted chunk %d (%d features, %d total)",
            state.job_id, seq, len(features), state.total_features,
        )
        return StepResult(
            status=JobStatus.IN_PROGRESS,
            job_id=state.job_id,
            object_key=state.object_key,
            processed=len(features),
            total_features=state.total_features,
            next_cursor=next_cursor,
        )

    async def _finalize(self, db: Session, state: ExportJobState, features: list[dict]) -> StepResult:
        merged: list[dict] = []
        chunk_keys = list(state.chunk_keys or [])
        for key in chunk_keys:
            obj = await self.store.get(key)
            if obj is None:
                raise ExportJobError(f"Chunk {key} of job {state.job_id} is missing; abandon and restart the job")
            merged.extend(json.loads(obj.body))
        merged.extend(features)

        document = json.dumps({"type": "FeatureCollection", "features": merged})
        await self.store.put(
            state.object_key,
            document,
            content_type=GEOJSON_CONTENT_TYPE,
            cache_control=settings.DOCUMENT_STORE_CACHE_CONTROL,
        )
        published_at = utcnow().isoformat()

        job_id, object_key = state.job_id, state.object_key
        if state in db:
            db.delete(state)
            _commit(db, job_id)
        await _delete_chunks(self.store, chunk_keys)

        logger.info("Job %s published %s with %d features", job_id, object_key, len(merged))
        return StepResult(
            status=JobStatus.COMPLETED,
            job_id=job_id,
            object_key=object_key,
            processed=len(features),
            total_features=len(merged),
            updated_at=published_at,
        )


async def abandon_job(store: BlobStore, session_factory, job_id: str) -> int:
    """Drop an unfinished job: its checkpoint and every chunk it wrote."""
    async with job_lock(job_id):
        with session_factory() as db:
            state = db.get(ExportJobState, job_id)
            if state is None:
                raise NotFoundError(f"Job {job_id} not found")
            return await discard_state(db, store, state)


async def sweep_stale_jobs(store: BlobStore, session_factory, ttl_minutes: int | None = None) -> SweepReport:
    """Remove expired checkpoints with their chunks, then unreferenced old chunks."""
    ttl = timedelta(minutes=ttl_minutes if ttl_minutes is not None else settings.CHECKPOINT_TTL_MINUTES)
    cutoff = utcnow() - ttl
    report = SweepReport()
    live_jobs: set[str] = set()

    with session_factory() as db:
        for state in db.query(ExportJobState).all():
            if state.is_expired(ttl):
                report.chunks += await discard_state(db, store, state)
                report.checkpoints += 1
            else:
                live_jobs.add(state.job_id)

    cursor = None
    while True:
        listing = await store.list(prefix=CHUNK_PREFIX, cursor=cursor)
        for obj in listing.objects:
            owner = obj.key[len(CHUNK_PREFIX):].split("/", 1)[0]
            if owner in live_jobs or (obj.uploaded and obj.uploaded >= cutoff):
                continue
            await store.delete(obj.key)
            report.chunks += 1
        if not listing.truncated:
            break
        cursor = listing.cursor

    logger.info("Sweep removed %d checkpoint(s) and %d chunk(s)", report.checkpoints, report.chunks)
    return report
