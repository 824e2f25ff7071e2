from __future__ import annotations

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Response, status
from pydantic import BaseModel

from ..db.database import get_session_factory
from ..exceptions import NotFoundError
from ..models.job import ExportJobState
from ..services.export_job import abandon_job, sweep_stale_jobs
from ..utils.storage import BlobStore, get_blob_store
from .dependencies import require_admin

router = APIRouter(dependencies=[Depends(require_admin)])
logger = logging.getLogger(__name__)


class JobInfo(BaseModel):
    jobId: str
    publisher: str
    objectKey: str
    status: str
    cursor: Optional[str] = None
    chunkKeys: List[str] = []
    chunkCount: int
    totalFeatures: int
    createdAt: Optional[str] = None
    updatedAt: Optional[str] = None


@router.get("", response_model=List[JobInfo])
async def list_jobs(session_factory=Depends(get_session_factory)) -> List[JobInfo]:
    """Return every unfinished export job checkpoint, newest first."""
    with session_factory() as db:
        states = db.query(ExportJobState).order_by(ExportJobState.updated_at.desc()).all()
        return [JobInfo(**state.to_dict()) for state in states]


@router.get("/{job_id}", response_model=JobInfo)
async def get_job(job_id: str, session_factory=Depends(get_session_factory)) -> JobInfo:
    """Return one checkpoint; 404 once the job completed or was never started."""
    with session_factory() as db:
        state = db.get(ExportJobState, job_id)
        if state is None:
            raise NotFoundError("Job not found")
        return JobInfo(**state.to_dict())


@router.delete("/{job_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_job(
    job_id: str,
    store: BlobStore = Depends(get_blob_store),
    session_factory=Depends(get_session_factory),
) -> Response:
    """Abandon an unfinished job, removing its checkpoint and chunks."""
    await abandon_job(store, session_factory, job_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/sweep")
async def sweep_jobs(
    ttl_minutes: Optional[int] = None,
    store: BlobStore = Depends(get_blob_store),
    session_factory=Depends(get_session_factory),
) -> dict:
    """Remove expired checkpoints and chunk objects no job refers to."""
    report = await sweep_stale_jobs(store, session_factory, ttl_minutes)
    return {"ok": True, "checkpoints": report.checkpoints, "chunks": report.chunks}
